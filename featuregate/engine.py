"""Server-authoritative access decisions.

`AccessDecisionEngine.decide` is the trust boundary for every paid feature.
It is stateless: all shared state lives in the database and the only write
it performs is the ledger's conditional increment. Every path returns a
verdict; any failure becomes `verification_failed` (fail closed).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.orm import Session

from . import db as database
from .catalog import get_feature, load_hierarchy
from .constants import NO_FREE_USAGE, UNLIMITED, Reason
from .ledger import UsageLedger
from .models import Feature, User
from .periods import as_utc, period_start, utc_now
from .plans import ANONYMOUS, UserEntitlement
from .schemas import AccessVerdict
from .settings import DEFAULT_LEDGER_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


class AccessDecisionEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        max_attempts: int = DEFAULT_LEDGER_MAX_ATTEMPTS,
    ) -> None:
        self._session_factory = session_factory or database.open_session
        self.max_attempts = max_attempts

    def decide(self, user_id: int | None, feature_key: str, now: datetime | None = None) -> AccessVerdict:
        now = as_utc(now) if now is not None else utc_now()
        try:
            with self._session_factory() as db:
                verdict = self._decide(db, user_id, feature_key, now)
        except Exception:
            logger.exception(
                "Access verification failed",
                extra={"user_id": user_id, "feature_key": feature_key},
            )
            return AccessVerdict.deny(Reason.VERIFICATION_FAILED)

        if not verdict.allow:
            logger.info(
                "Access denied",
                extra={"user_id": user_id, "feature_key": feature_key, "reason": verdict.reason.value},
            )
        return verdict

    def _decide(self, db: Session, user_id: int | None, feature_key: str, now: datetime) -> AccessVerdict:
        feature = get_feature(db, feature_key)
        if feature is None or not feature.is_active:
            return AccessVerdict.deny(Reason.FEATURE_INACTIVE)

        if feature.requires_auth and user_id is None:
            return AccessVerdict.deny(Reason.NOT_AUTHENTICATED)

        if not feature.is_paid:
            return AccessVerdict.grant()

        hierarchy = load_hierarchy(db)
        user = db.get(User, user_id) if user_id is not None else None
        if user_id is not None and user is None:
            return AccessVerdict.deny(Reason.NOT_AUTHENTICATED)

        entitlement = (
            UserEntitlement.for_user(user.plan, user.plan_expiry, hierarchy) if user is not None else ANONYMOUS
        )
        if entitlement.effective_rank(now) >= hierarchy.required_rank(feature.required_plan):
            return AccessVerdict.grant()

        if feature.free_limit == UNLIMITED:
            return AccessVerdict.grant()
        if feature.free_limit <= NO_FREE_USAGE:
            return AccessVerdict.deny(Reason.PLAN_INSUFFICIENT)

        if user is None:
            # Metered usage needs someone to charge it to.
            return AccessVerdict.deny(Reason.NOT_AUTHENTICATED)
        return self._consume(db, user, feature, now)

    def _consume(self, db: Session, user: User, feature: Feature, now: datetime) -> AccessVerdict:
        ledger = UsageLedger(db, max_attempts=self.max_attempts)
        result = ledger.try_consume(
            user.id,
            feature.key,
            period_start(feature.free_limit_type, now),
            feature.free_limit,
            now=now,
        )
        if not result.granted:
            return AccessVerdict.deny(Reason.QUOTA_EXHAUSTED)
        return AccessVerdict.grant(remaining=result.remaining(feature.free_limit))
