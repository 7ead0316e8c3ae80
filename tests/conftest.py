from __future__ import annotations

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from featuregate import db
from featuregate.main import app
from featuregate.models import Feature, PlanTier, User


@pytest.fixture()
def database(tmp_path):
    db.reset_engine(f"sqlite:///{tmp_path}/test.db")
    db.init_db()
    yield
    app.dependency_overrides.clear()
    db.engine.dispose()


@pytest.fixture()
def client(database):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def feature_factory(database):
    def create(key: str, **overrides) -> Feature:
        values = {
            "name": key.replace("_", " ").title(),
            "category": "communication",
            "is_paid": True,
            "is_active": True,
            "required_plan": "basic",
            "free_limit": 1,
            "free_limit_type": "per_week",
        }
        values.update(overrides)
        with db.open_session() as session:
            feature = Feature(key=key, **values)
            session.add(feature)
            session.commit()
            return feature

    return create


@pytest.fixture()
def user_factory(database):
    def create(
        email: str = "learner@example.com",
        plan: str = "free",
        plan_expiry: datetime | None = None,
    ) -> User:
        with db.open_session() as session:
            user = User(email=email, full_name="Test Learner", plan=plan, plan_expiry=plan_expiry)
            session.add(user)
            session.commit()
            return user

    return create


@pytest.fixture()
def plan_tier_factory(database):
    def create(name: str, rank: int, **flags: bool) -> PlanTier:
        with db.open_session() as session:
            tier = PlanTier(name=name, rank=rank, flags=flags)
            session.add(tier)
            session.commit()
            return tier

    return create


def set_plan(user_id: int, plan: str, plan_expiry: datetime | None = None) -> None:
    with db.open_session() as session:
        user = session.get(User, user_id)
        user.plan = plan
        user.plan_expiry = plan_expiry
        session.commit()


@pytest.fixture()
def plan_setter(database):
    return set_plan
