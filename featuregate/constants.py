"""Plan, catalog and verdict vocabulary."""

from __future__ import annotations

from enum import Enum
from typing import Final

PlanName = str

FREE_PLAN: Final[PlanName] = "free"

DEFAULT_PLAN_ORDER: Final[dict[PlanName, int]] = {
    "free": 0,
    "basic": 1,
    "premium": 2,
    "pro": 3,
}

PER_DAY: Final = "per_day"
PER_WEEK: Final = "per_week"
PER_MONTH: Final = "per_month"
TOTAL: Final = "total"

UNLIMITED: Final = -1
NO_FREE_USAGE: Final = 0


class Reason(str, Enum):
    OK = "ok"
    NOT_AUTHENTICATED = "not_authenticated"
    FEATURE_INACTIVE = "feature_inactive"
    PLAN_INSUFFICIENT = "plan_insufficient"
    QUOTA_EXHAUSTED = "quota_exhausted"
    VERIFICATION_FAILED = "verification_failed"

# Call session types admitted only through a feature check; anything else
# (plain chat) needs no entitlement.
CALL_FEATURE_KEYS: Final[dict[str, str]] = {
    "voice": "voice_calls",
    "voice_call": "voice_calls",
    "video": "video_calls",
    "video_call": "video_calls",
    "group_voice_call": "group_calls",
    "group_video_call": "group_calls",
}
