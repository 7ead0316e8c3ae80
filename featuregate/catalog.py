"""Read access to the feature catalog and plan tiers."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Feature, PlanTier, UsageEvent
from .plans import PlanHierarchy
from .schemas import CatalogSnapshot, FeatureDefinition, PlanTierOut

logger = logging.getLogger(__name__)


def normalize_key(feature_key: str) -> str:
    return feature_key.strip().lower()


def get_feature(db: Session, feature_key: str) -> Feature | None:
    return db.scalar(select(Feature).where(Feature.key == normalize_key(feature_key)))


def list_features(db: Session) -> list[Feature]:
    return list(
        db.scalars(select(Feature).order_by(Feature.category, Feature.sort_order, Feature.key)).all()
    )


def load_hierarchy(db: Session) -> PlanHierarchy:
    return PlanHierarchy.from_tiers(db.scalars(select(PlanTier).order_by(PlanTier.rank)).all())


def catalog_version(features: list[FeatureDefinition], plans: list[PlanTierOut]) -> str:
    """Content hash of everything a client caches. Unchanged catalog, unchanged etag."""
    canonical = json.dumps(
        {
            "features": [feature.model_dump(mode="json") for feature in features],
            "plans": [plan.model_dump(mode="json") for plan in plans],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def _feature_definitions(db: Session) -> list[FeatureDefinition]:
    """Catalog rows that fit the wire contract; malformed admin rows are left out."""
    definitions = []
    for feature in list_features(db):
        try:
            definitions.append(FeatureDefinition.model_validate(feature))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed catalog row",
                extra={"feature_key": feature.key, "errors": exc.errors(include_url=False)},
            )
    return definitions


def build_snapshot(db: Session, max_age: int) -> CatalogSnapshot:
    features = _feature_definitions(db)
    hierarchy = load_hierarchy(db)
    plans = [
        PlanTierOut(name=name, rank=rank, flags=dict(hierarchy.flags.get(name, {})))
        for name, rank in hierarchy.ordered()
    ]
    return CatalogSnapshot(
        version=catalog_version(features, plans),
        max_age=max_age,
        plans=plans,
        features=features,
    )


def record_usage_event(
    db: Session,
    feature: Feature,
    user_id: int,
    idempotency_key: str,
    now: datetime,
) -> bool:
    """Store an analytics usage notification. Returns False for a duplicate key.

    This never touches the usage ledger: quota accounting happened when the
    access decision was made.
    """
    existing = db.scalar(select(UsageEvent.id).where(UsageEvent.idempotency_key == idempotency_key))
    if existing is not None:
        return False

    db.add(
        UsageEvent(
            user_id=user_id,
            feature_key=feature.key,
            idempotency_key=idempotency_key,
            received_at=now,
        )
    )
    db.execute(
        update(Feature)
        .where(Feature.id == feature.id)
        .values(usage_count=Feature.usage_count + 1, last_used_at=now)
        .execution_options(synchronize_session=False)
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True

