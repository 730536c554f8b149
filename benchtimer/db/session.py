"""Engine and session factory construction."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import settings

Base = declarative_base()


def build_engine(url: str) -> Engine:
    """Create an engine suited to ``url``.

    The timer store runs ORM work in worker threads, so SQLite connections
    must be usable from any thread. An in-memory SQLite database only exists
    on its connection, so it gets a single shared one.
    """

    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


engine = build_engine(settings.DB_URL)
SessionLocal = build_session_factory(engine)


def get_db():
    """FastAPI dependency that yields a session and guarantees cleanup."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
