import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["API_KEY"] = ""

from benchtimer.core.errors import PersistenceError
from benchtimer.crud.operators import create_operator
from benchtimer.crud.tickets import create_ticket
from benchtimer.db.session import Base, build_engine, build_session_factory
from benchtimer.services.store import SqlTicketTimeStore

# Ensure models are registered so metadata tables are created
from benchtimer.models import operator as operator_model  # noqa: F401
from benchtimer.models import ticket as ticket_model  # noqa: F401
from benchtimer.models import time_entry as time_entry_model  # noqa: F401


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 15, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


class FlakyStore(SqlTicketTimeStore):
    """SQL store whose named operations can be switched to fail."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_on: set[str] = set()

    async def _run(self, op, fn):
        if op in self.fail_on:
            raise PersistenceError(f"{op} failed: database unavailable")
        return await super()._run(op, fn)


@pytest.fixture()
def session_factory():
    # In-memory SQLite on one shared connection, visible to threadpool workers.
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    factory = build_session_factory(engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(session_factory, clock):
    return FlakyStore(session_factory, clock=clock)


@pytest.fixture()
def shop(db_session):
    """Two tickets, one technician and one admin."""

    create_ticket(db_session, {"id": "T1", "ticket_number": "R-1001", "customer_name": "Ada Lovelace"})
    create_ticket(db_session, {"id": "T2", "ticket_number": "R-1002", "customer_name": "Alan Turing"})
    create_operator(db_session, {"id": "tech", "name": "Tech One", "role": "technician"})
    create_operator(db_session, {"id": "boss", "name": "Shop Admin", "role": "admin"})
    return db_session
