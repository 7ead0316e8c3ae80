"""Plan hierarchy and effective plan resolution."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime

from .constants import DEFAULT_PLAN_ORDER
from .errors import ConfigurationError
from .periods import as_utc

FREE_RANK = 0
# Rank for a required plan nobody can hold; such features never bypass the quota.
UNREACHABLE_RANK = sys.maxsize


def normalize_plan(plan_value: str | None) -> str | None:
    if not plan_value:
        return None
    normalized = plan_value.strip().lower()
    if normalized.startswith("plan_"):
        normalized = normalized[len("plan_") :]
    return normalized or None


@dataclass(frozen=True)
class PlanHierarchy:
    ranks: Mapping[str, int]
    flags: Mapping[str, Mapping[str, bool]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        seen: dict[int, str] = {}
        for name, rank in self.ranks.items():
            if rank in seen:
                raise ConfigurationError(
                    f"Plans {seen[rank]!r} and {name!r} share rank {rank}; tiers must be totally ordered"
                )
            seen[rank] = name

    @classmethod
    def default(cls) -> "PlanHierarchy":
        return cls(ranks=dict(DEFAULT_PLAN_ORDER))

    @classmethod
    def from_tiers(cls, tiers: Iterable) -> "PlanHierarchy":
        """Build from PlanTier-like objects; fall back to the default order when empty."""
        ranks: dict[str, int] = {}
        flags: dict[str, dict[str, bool]] = {}
        for tier in tiers:
            name = normalize_plan(tier.name)
            if name is None:
                raise ConfigurationError("Plan tier without a name")
            ranks[name] = int(tier.rank)
            flags[name] = dict(tier.flags or {})
        if not ranks:
            return cls.default()
        return cls(ranks=ranks, flags=flags)

    def rank_of(self, plan_name: str | None) -> int | None:
        normalized = normalize_plan(plan_name)
        if normalized is None:
            return None
        return self.ranks.get(normalized)

    def required_rank(self, plan_name: str | None) -> int:
        rank = self.rank_of(plan_name)
        return UNREACHABLE_RANK if rank is None else rank

    def ordered(self) -> list[tuple[str, int]]:
        return sorted(self.ranks.items(), key=lambda item: item[1])


@dataclass(frozen=True)
class UserEntitlement:
    """A user's plan as seen at decision time. Never stored on its own."""

    current_plan_rank: int
    plan_expiry: datetime | None = None

    @classmethod
    def for_user(cls, plan_name: str | None, plan_expiry: datetime | None, hierarchy: PlanHierarchy) -> "UserEntitlement":
        rank = hierarchy.rank_of(plan_name)
        return cls(current_plan_rank=FREE_RANK if rank is None else rank, plan_expiry=plan_expiry)

    def is_expired(self, now: datetime) -> bool:
        return self.plan_expiry is not None and as_utc(self.plan_expiry) <= as_utc(now)

    def effective_rank(self, now: datetime) -> int:
        if self.is_expired(now):
            return FREE_RANK
        return self.current_plan_rank


ANONYMOUS = UserEntitlement(current_plan_rank=FREE_RANK)
