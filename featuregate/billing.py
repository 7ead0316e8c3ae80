"""Subscription lifecycle events reported by the payment provider.

The payment provider is the single source of truth for a user's plan; these
events only ever set `plan` and `plan_expiry`. Expiry itself is evaluated at
decision time, so no job has to downgrade anyone.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from .constants import FREE_PLAN
from .models import User
from .plans import PlanHierarchy, normalize_plan

logger = logging.getLogger(__name__)

ACTIVATING_EVENTS = {
    "subscription.activated",
    "subscription.renewed",
    "subscription.updated",
}
CANCELLED_EVENT = "subscription.cancelled"
EXPIRED_EVENT = "subscription.expired"
SUBSCRIPTION_EVENTS = ACTIVATING_EVENTS | {CANCELLED_EVENT, EXPIRED_EVENT}


def _parse_period_end(value) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def _resolve_user(db: Session, event_object: dict) -> User | None:
    user_id = event_object.get("user_id")
    if isinstance(user_id, int) and not isinstance(user_id, bool):
        return db.get(User, user_id)
    email = event_object.get("user_email")
    if isinstance(email, str) and email.strip():
        return db.scalar(select(User).where(User.email == email.strip().lower()))
    return None


def process_subscription_event(
    db: Session,
    event_payload: dict,
    hierarchy: PlanHierarchy,
) -> tuple[bool, int | None]:
    """Apply a subscription event to the user it names.

    Returns:
      - bool: whether the user's plan was updated
      - user_id: target user id when resolved
    """
    event_type = event_payload.get("type")
    if event_type not in SUBSCRIPTION_EVENTS:
        return False, None

    data = event_payload.get("data")
    if not isinstance(data, dict):
        return False, None
    event_object = data.get("object")
    if not isinstance(event_object, dict):
        return False, None

    user = _resolve_user(db, event_object)
    if user is None:
        logger.warning("Subscription event for unknown user", extra={"event_type": event_type})
        return False, None

    period_end = _parse_period_end(event_object.get("current_period_end"))

    if event_type == EXPIRED_EVENT:
        user.plan = FREE_PLAN
        user.plan_expiry = None
    elif event_type == CANCELLED_EVENT:
        # Cancelling keeps the paid tier until the period already paid for ends.
        if period_end is None:
            user.plan = FREE_PLAN
            user.plan_expiry = None
        else:
            user.plan_expiry = period_end
    else:
        plan = normalize_plan(event_object.get("plan"))
        if plan is None or hierarchy.rank_of(plan) is None:
            logger.warning(
                "Subscription event with unknown plan",
                extra={"event_type": event_type, "user_id": user.id, "plan": event_object.get("plan")},
            )
            return False, user.id
        user.plan = plan
        user.plan_expiry = period_end

    logger.info(
        "Subscription updated",
        extra={"event_type": event_type, "user_id": user.id, "plan": user.plan},
    )
    return True, user.id
