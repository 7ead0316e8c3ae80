"""Client-side entitlement cache.

Holds a time-boxed copy of the catalog and the user's plan so the UI can
draw badges and disabled buttons without waiting on the network. It is
advisory only: nothing here may be the last word on an action with side
effects, and it never guesses at metered usage.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

import httpx

from .client import EntitlementApiClient
from .constants import NO_FREE_USAGE, UNLIMITED
from .errors import ConfigurationError
from .periods import utc_now
from .plans import ANONYMOUS, PlanHierarchy, UserEntitlement
from .schemas import CatalogSnapshot, FeatureDefinition, ProfileOut

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class EntitlementCache:
    def __init__(
        self,
        api: EntitlementApiClient,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.api = api
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._features: dict[str, FeatureDefinition] = {}
        self._hierarchy = PlanHierarchy.default()
        self._entitlement: UserEntitlement = ANONYMOUS
        self._authenticated = False
        self._version: str | None = None
        self._loaded_at: datetime | None = None
        self._refresh_task: asyncio.Task | None = None

    @property
    def loaded(self) -> bool:
        return self._version is not None

    @property
    def version(self) -> str | None:
        return self._version

    @property
    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at >= timedelta(seconds=self.ttl_seconds)

    async def refresh(self) -> bool:
        """Pull the catalog and plan profile. On failure the old snapshot stays."""
        try:
            snapshot = await self.api.fetch_catalog(self._version)
            profile = await self.api.fetch_profile()
            hierarchy = PlanHierarchy.from_tiers(snapshot.plans) if snapshot is not None else None
        except (httpx.HTTPError, ValueError, ConfigurationError) as exc:
            logger.warning(
                "Entitlement cache refresh failed; keeping previous snapshot",
                extra={"error": str(exc), "catalog_version": self._version},
            )
            return False

        if snapshot is not None:
            self._apply_snapshot(snapshot, hierarchy)
        self._apply_profile(profile)
        self._loaded_at = self._clock()
        return True

    def refresh_in_background(self) -> asyncio.Task:
        """Start a refresh, superseding (cancelling) one already in flight."""
        self.cancel_refresh()
        self._refresh_task = asyncio.create_task(self.refresh())
        return self._refresh_task

    def cancel_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None

    def invalidate(self) -> None:
        """Mark the snapshot stale; it keeps serving until a refresh lands."""
        self._loaded_at = None

    def _apply_snapshot(self, snapshot: CatalogSnapshot, hierarchy: PlanHierarchy) -> None:
        self._features = {feature.key: feature for feature in snapshot.features}
        self._hierarchy = hierarchy
        self._version = snapshot.version
        if snapshot.max_age > 0:
            self.ttl_seconds = snapshot.max_age

    def _apply_profile(self, profile: ProfileOut | None) -> None:
        if profile is None:
            self._entitlement = ANONYMOUS
            self._authenticated = False
            return
        self._entitlement = UserEntitlement(
            current_plan_rank=profile.plan_rank,
            plan_expiry=profile.plan_expiry,
        )
        self._authenticated = True

    def info(self, feature_key: str) -> FeatureDefinition | None:
        return self._features.get(feature_key.strip().lower())

    def menu_features(self, category: str | None = None) -> list[FeatureDefinition]:
        features = [
            feature
            for feature in self._features.values()
            if feature.is_active and feature.show_in_menu
            and (category is None or feature.category == category)
        ]
        return sorted(features, key=lambda feature: (feature.sort_order, feature.key))

    def accessible_features(self) -> list[FeatureDefinition]:
        return [feature for feature in self._features.values() if self.advisory_access(feature.key) is True]

    def locked_features(self) -> list[FeatureDefinition]:
        """Active paid features the current plan cannot open (upgrade badges).

        Metered features with free uses left to discover are not locked; only
        the server knows their count.
        """
        return [
            feature
            for feature in self._features.values()
            if feature.is_paid and feature.is_active and self.advisory_access(feature.key) is False
        ]

    def advisory_access(self, feature_key: str) -> bool | None:
        """Best guess for UI affordances.

        Returns None when only the server can tell: nothing cached yet, or a
        paid feature with a free quota the client cannot see.
        """
        if not self.loaded:
            return None

        feature = self.info(feature_key)
        if feature is None or not feature.is_active:
            return False
        if feature.requires_auth and not self._authenticated:
            return False
        if not feature.is_paid:
            return True

        rank = self._entitlement.effective_rank(self._clock())
        if rank >= self._hierarchy.required_rank(feature.required_plan):
            return True
        if feature.free_limit == UNLIMITED:
            return True
        if feature.free_limit <= NO_FREE_USAGE:
            return False
        return None
