"""Persistence interface the timer core talks to, and its SQLAlchemy backend."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from ..core.errors import PersistenceError, TicketNotFound
from ..crud import operators as operators_crud
from ..crud import tickets as tickets_crud
from ..crud import time_entries as entries_crud
from ..schemas.timer import ActiveTimerOut, TimeEntryOut, TimerFlag
from .timecalc import elapsed_between, parse_iso, seconds_to_minutes, utcnow

logger = logging.getLogger("benchtimer.store")

T = TypeVar("T")


class TicketTimeStore(ABC):
    """Server-side storage of ticket timer flags and time entries.

    Every method may raise :class:`PersistenceError`; callers treat that as a
    transient failure and retry. An unknown ticket raises
    :class:`TicketNotFound` instead, which retrying cannot fix.
    """

    @abstractmethod
    async def get_timer_flag(self, ticket_id: str) -> TimerFlag: ...

    @abstractmethod
    async def set_timer_flag(
        self,
        ticket_id: str,
        running: bool,
        started_at: datetime | None,
        session_key: str | None = None,
    ) -> None: ...

    @abstractmethod
    async def release_timer_flag(self, ticket_id: str, session_key: str) -> bool:
        """Clear the flag if ``session_key`` owns it; report whether it did."""

    @abstractmethod
    async def create_time_entry(
        self,
        ticket_id: str,
        duration_minutes: int,
        notes: str,
        created_by: str,
        *,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        session_key: str | None = None,
    ) -> TimeEntryOut: ...

    @abstractmethod
    async def is_privileged(self, user_id: str) -> bool: ...

    @abstractmethod
    async def mark_in_progress(self, ticket_id: str) -> None: ...

    @abstractmethod
    async def list_active_timers(self) -> list[ActiveTimerOut]: ...


class SqlTicketTimeStore(TicketTimeStore):
    """:class:`TicketTimeStore` over the SQLAlchemy models.

    Blocking ORM work runs in Starlette's threadpool with a fresh session per
    call, so the event loop is never held by the database.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if session_factory is None:
            from ..db.session import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._clock = clock

    async def _run(self, op: str, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self._session_factory() as db:
                return fn(db)

        try:
            return await run_in_threadpool(work)
        except TicketNotFound:
            raise
        except SQLAlchemyError as exc:
            logger.warning("store.failed", extra={"extra_data": {"op": op, "error": str(exc)}})
            raise PersistenceError(f"{op} failed: database unavailable") from exc
        except ValueError as exc:
            logger.warning("store.rejected", extra={"extra_data": {"op": op, "error": str(exc)}})
            raise PersistenceError(f"{op} failed: {exc}") from exc

    async def get_timer_flag(self, ticket_id: str) -> TimerFlag:
        def read(db: Session) -> TimerFlag:
            ticket = tickets_crud.require_ticket(db, ticket_id)
            return TimerFlag(
                ticket_id=ticket.id,
                is_running=bool(ticket.timer_is_running),
                started_at=parse_iso(ticket.timer_started_at),
                session_key=ticket.timer_session_key,
                total_minutes=ticket.total_time_minutes or 0,
                ticket_number=ticket.ticket_number,
                customer_name=ticket.customer_name,
            )

        return await self._run("get_timer_flag", read)

    async def set_timer_flag(
        self,
        ticket_id: str,
        running: bool,
        started_at: datetime | None,
        session_key: str | None = None,
    ) -> None:
        await self._run(
            "set_timer_flag",
            lambda db: tickets_crud.set_timer_flag(db, ticket_id, running, started_at, session_key),
        )

    async def release_timer_flag(self, ticket_id: str, session_key: str) -> bool:
        return await self._run(
            "release_timer_flag",
            lambda db: tickets_crud.release_timer_flag(db, ticket_id, session_key),
        )

    async def create_time_entry(
        self,
        ticket_id: str,
        duration_minutes: int,
        notes: str,
        created_by: str,
        *,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        session_key: str | None = None,
    ) -> TimeEntryOut:
        def write(db: Session) -> TimeEntryOut:
            entry = entries_crud.create_time_entry(
                db,
                ticket_id,
                duration_minutes,
                notes,
                created_by,
                start_time=start_time,
                end_time=end_time,
                session_key=session_key,
            )
            return TimeEntryOut.model_validate(entry)

        return await self._run("create_time_entry", write)

    async def is_privileged(self, user_id: str) -> bool:
        return await self._run("is_privileged", lambda db: operators_crud.is_privileged(db, user_id))

    async def mark_in_progress(self, ticket_id: str) -> None:
        await self._run("mark_in_progress", lambda db: tickets_crud.mark_in_progress(db, ticket_id))

    async def list_active_timers(self) -> list[ActiveTimerOut]:
        now = self._clock()

        def read(db: Session) -> list[ActiveTimerOut]:
            rows = []
            for ticket in tickets_crud.list_running_tickets(db):
                started = parse_iso(ticket.timer_started_at)
                rows.append(
                    ActiveTimerOut(
                        ticket_id=ticket.id,
                        ticket_number=ticket.ticket_number,
                        customer_name=ticket.customer_name,
                        started_at=started,
                        elapsed_minutes=seconds_to_minutes(elapsed_between(started, now)),
                    )
                )
            return rows

        return await self._run("list_active_timers", read)
