"""Pydantic schemas for API requests and responses.

Entitlement payloads use camelCase on the wire (`canAccess`, `freeLimit`)
since they are consumed directly by the mobile client.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import Reason

Category = Literal["games", "communication", "learning", "social", "premium"]
LimitType = Literal["per_day", "per_week", "per_month", "total"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(BaseModel):
    email: str = Field(min_length=5, max_length=255)
    full_name: str = Field(min_length=2, max_length=200)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    full_name: str
    created_at: datetime


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class ProfileOut(WireModel):
    id: int
    email: str
    plan: str
    plan_rank: int
    plan_expiry: datetime | None = None


class FeatureDefinition(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    key: str
    name: str
    description: str | None = None
    category: Category
    is_paid: bool = False
    is_active: bool = True
    required_plan: str = "free"
    free_limit: int = Field(default=-1, ge=-1)
    free_limit_type: LimitType = "per_day"
    show_in_menu: bool = True
    requires_auth: bool = True
    sort_order: int = 0


class PlanTierOut(WireModel):
    name: str
    rank: int
    flags: dict[str, bool] = Field(default_factory=dict)


class CatalogSnapshot(WireModel):
    version: str
    max_age: int
    plans: list[PlanTierOut]
    features: list[FeatureDefinition]


class AccessRequest(WireModel):
    feature_key: str = Field(min_length=1)


class AccessVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allow: bool = Field(alias="canAccess")
    reason: Reason
    remaining: int | None = Field(default=None, ge=0)

    @classmethod
    def grant(cls, remaining: int | None = None) -> "AccessVerdict":
        return cls(allow=True, reason=Reason.OK, remaining=remaining)

    @classmethod
    def deny(cls, reason: Reason, remaining: int | None = None) -> "AccessVerdict":
        if reason is Reason.OK:
            raise ValueError("A denial needs a non-ok reason")
        return cls(allow=False, reason=reason, remaining=remaining)

    @property
    def granted(self) -> bool:
        """True only for an allow carrying the ok reason."""
        return self.allow and self.reason is Reason.OK


class UsageRecorded(WireModel):
    feature_key: str
    recorded: bool


class CallSessionRequest(WireModel):
    session_type: str = Field(min_length=1, max_length=64)


class CallAdmission(WireModel):
    session_type: str
    feature_key: str | None = None
    remaining: int | None = None
