"""Runtime configuration read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_MAX_AGE = 300
DEFAULT_LEDGER_MAX_ATTEMPTS = 3


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(
            "Ignoring non-integer environment value",
            extra={"variable": name, "value": raw},
        )
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Settings:
    webhook_secret: str | None
    catalog_max_age: int = DEFAULT_CATALOG_MAX_AGE
    ledger_max_attempts: int = DEFAULT_LEDGER_MAX_ATTEMPTS
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            webhook_secret=os.getenv("SUBSCRIPTION_WEBHOOK_SECRET") or None,
            catalog_max_age=_int_from_env("CATALOG_MAX_AGE_SECONDS", DEFAULT_CATALOG_MAX_AGE),
            ledger_max_attempts=_int_from_env("LEDGER_MAX_ATTEMPTS", DEFAULT_LEDGER_MAX_ATTEMPTS),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def get_settings() -> Settings:
    # Not cached: tests patch the environment between requests.
    return Settings.from_env()
