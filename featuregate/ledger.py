"""Per-user, per-feature usage counters.

The ledger is the only writer of `usage_counters`. Consumption is a single
conditional UPDATE (`count < limit`) so that concurrent requests from any
number of replicas can never push a counter past its limit; no application
lock is involved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import LedgerConflictError
from .models import UsageCounter
from .periods import utc_now
from .settings import DEFAULT_LEDGER_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumeResult:
    granted: bool
    count_before: int

    def remaining(self, limit: int) -> int:
        if not self.granted:
            return 0
        return max(limit - self.count_before - 1, 0)


class UsageLedger:
    def __init__(self, db: Session, *, max_attempts: int = DEFAULT_LEDGER_MAX_ATTEMPTS) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.db = db
        self.max_attempts = max_attempts

    @staticmethod
    def _key(user_id: int, feature_key: str, period_start: datetime):
        return and_(
            UsageCounter.user_id == user_id,
            UsageCounter.feature_key == feature_key,
            UsageCounter.period_start == period_start,
        )

    def current_count(self, user_id: int, feature_key: str, period_start: datetime) -> int:
        count = self.db.scalar(
            select(UsageCounter.count).where(self._key(user_id, feature_key, period_start))
        )
        return count or 0

    def try_consume(
        self,
        user_id: int,
        feature_key: str,
        period_start: datetime,
        limit: int,
        *,
        now: datetime | None = None,
    ) -> ConsumeResult:
        """Increment the counter by one if it is still below `limit`.

        Returns the pre-increment count. A refused consume leaves the
        counter untouched.
        """
        if limit < 1:
            raise ValueError("limit must be positive for a metered feature")
        now = now or utc_now()
        key = self._key(user_id, feature_key, period_start)

        for attempt in range(1, self.max_attempts + 1):
            result = self.db.execute(
                update(UsageCounter)
                .where(key, UsageCounter.count < limit)
                .values(count=UsageCounter.count + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                count_after = self.db.scalar(select(UsageCounter.count).where(key))
                self.db.commit()
                return ConsumeResult(granted=True, count_before=count_after - 1)

            existing = self.db.scalar(select(UsageCounter.count).where(key))
            if existing is not None:
                self.db.rollback()
                return ConsumeResult(granted=False, count_before=existing)

            self.db.add(
                UsageCounter(
                    user_id=user_id,
                    feature_key=feature_key,
                    period_start=period_start,
                    count=1,
                    updated_at=now,
                )
            )
            try:
                self.db.commit()
            except IntegrityError:
                # Another request created the counter first; retry the conditional update.
                self.db.rollback()
                logger.info(
                    "Usage counter creation raced, retrying",
                    extra={"user_id": user_id, "feature_key": feature_key, "attempt": attempt},
                )
                continue
            return ConsumeResult(granted=True, count_before=0)

        raise LedgerConflictError(user_id, feature_key, self.max_attempts)

    def sweep(self, before: datetime) -> int:
        """Delete counters whose period started before `before`."""
        result = self.db.execute(
            delete(UsageCounter)
            .where(UsageCounter.period_start < before)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount:
            logger.info("Swept stale usage counters", extra={"deleted": result.rowcount})
        return result.rowcount
