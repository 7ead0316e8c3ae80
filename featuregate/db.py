"""Database connection and session utilities."""

from __future__ import annotations

import os
from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

# Seconds a SQLite writer waits on a locked database before failing.
SQLITE_BUSY_TIMEOUT = 30


def _build_connect_args(database_url: str) -> dict[str, object]:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
    return {}


def _build_engine(database_url: str) -> Engine:
    return create_engine(
        database_url,
        future=True,
        connect_args=_build_connect_args(database_url),
    )


def _build_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
        class_=Session,
    )


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data/app.db")

engine = _build_engine(DATABASE_URL)
SessionLocal = _build_session_factory(engine)
Base = declarative_base()


def reset_engine(database_url: str) -> None:
    """Swap the active engine/session factory (used by tests)."""
    global engine, SessionLocal
    engine.dispose()
    engine = _build_engine(database_url)
    SessionLocal = _build_session_factory(engine)


def open_session() -> Session:
    """Open a session on whichever engine is active right now."""
    return SessionLocal()


def init_db() -> None:
    """Create schema if it does not exist."""
    from . import models  # noqa: F401

    if engine.url.get_backend_name() == "sqlite" and engine.url.database:
        directory = os.path.dirname(engine.url.database)
        if directory:
            os.makedirs(directory, exist_ok=True)
    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = open_session()
    try:
        yield db
    finally:
        db.close()
