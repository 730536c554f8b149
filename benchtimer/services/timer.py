"""Work-timer lifecycle for one operator.

A :class:`TimerLifecycleManager` owns the operator's single local timer
session, keeps it in durable local storage, and reconciles it with the
ticket's server-side timer flag through a :class:`TicketTimeStore`.

Every public operation returns a :class:`TimerResult`. Business failures,
persistence failures and detected conflicts are reported through
``result.error``; nothing is raised into the caller for them.

State diagram::

    Idle --start--> Running --pause--> Paused --resume/start--> Running
    Running|Paused --stop(notes)--> Idle      (one TimeEntry written)
    Running|Paused --clear_local--> Idle      (server flag untouched)

The server flag is only written by ``start``, ``stop``, the privileged
``clear_server_flag`` and, for a flag without a session key, ``recover_timer``.
Pausing is local.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import uuid4

from pydantic import ValidationError

from ..core.errors import PersistenceError, TicketNotFound
from ..schemas.timer import (
    ConflictInfo,
    ConflictKind,
    TimeEntryOut,
    TimerError,
    TimerErrorCode,
    TimerFlag,
    TimerResult,
    TimerSession,
    TimerState,
)
from .channel import TimerChannel
from .local_storage import ACTIVE_TIMER_KEY, LocalTimerStorage
from .store import TicketTimeStore
from .timecalc import elapsed_between, format_elapsed, seconds_to_minutes, to_iso, utcnow

logger = logging.getLogger("benchtimer.timer")

CHANGE_MESSAGE = "timer.changed"

StoreError = (PersistenceError, TicketNotFound)


def new_session_key() -> str:
    """Fresh id for one timing interval, shared by the flag and its entry."""
    return uuid4().hex


class TimerLifecycleManager:
    def __init__(
        self,
        operator_id: str,
        store: TicketTimeStore,
        storage: LocalTimerStorage,
        channel: TimerChannel | None = None,
        clock: Callable[[], datetime] = utcnow,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self.operator_id = operator_id
        self._store = store
        self._storage = storage
        self._channel = channel
        self._clock = clock
        # Shared by every manager of this operator so tabs serialize.
        self._lock = lock or asyncio.Lock()
        self._busy: TimerState | None = None
        self._session = self._load()
        self._unsubscribe = channel.subscribe(self._on_channel_message) if channel else None

    # ----- local state -----------------------------------------------------

    @property
    def session(self) -> TimerSession | None:
        return self._session

    @property
    def state(self) -> TimerState:
        if self._busy is not None:
            return self._busy
        if self._session is None:
            return TimerState.IDLE
        return self._session.state

    def elapsed_seconds(self) -> int:
        if self._session is None:
            return 0
        return self._session.elapsed_seconds(self._clock())

    def elapsed_display(self) -> str:
        return format_elapsed(self.elapsed_seconds())

    def _load(self) -> TimerSession | None:
        payload = self._storage.get(ACTIVE_TIMER_KEY)
        if payload is None:
            return None
        try:
            return TimerSession.from_storage(payload)
        except ValidationError:
            logger.warning(
                "timer.local_record_invalid",
                extra={"extra_data": {"operator": self.operator_id}},
            )
            self._storage.remove(ACTIVE_TIMER_KEY)
            return None

    def _reload(self) -> TimerSession | None:
        self._session = self._load()
        return self._session

    def _commit_local(self, session: TimerSession | None, action: str) -> None:
        if session is None:
            self._storage.remove(ACTIVE_TIMER_KEY)
        else:
            self._storage.set(ACTIVE_TIMER_KEY, session.to_storage())
        self._session = session
        if self._channel is not None and not self._channel.closed:
            self._channel.post(
                {
                    "type": CHANGE_MESSAGE,
                    "action": action,
                    "operator": self.operator_id,
                    "session": session.to_storage() if session else None,
                }
            )

    def _on_channel_message(self, message: dict[str, Any]) -> None:
        if message.get("type") != CHANGE_MESSAGE:
            return
        self._reload()
        logger.debug(
            "timer.synced",
            extra={"extra_data": {"operator": self.operator_id, "action": message.get("action")}},
        )

    def _log(self, event: str, **fields: Any) -> None:
        logger.info(event, extra={"extra_data": {"operator": self.operator_id, **fields}})

    # ----- result helpers --------------------------------------------------

    def _ok(
        self,
        session: TimerSession | None,
        *,
        flag: TimerFlag | None = None,
        entry: TimeEntryOut | None = None,
    ) -> TimerResult:
        return TimerResult(
            ok=True,
            state=session.state if session else TimerState.IDLE,
            session=session,
            flag=flag,
            entry=entry,
            elapsed_seconds=session.elapsed_seconds(self._clock()) if session else 0,
        )

    def _fail(
        self,
        code: TimerErrorCode,
        message: str,
        *,
        flag: TimerFlag | None = None,
        conflict: ConflictInfo | None = None,
    ) -> TimerResult:
        session = self._session
        state = TimerState.CONFLICTED if conflict is not None else self.state
        return TimerResult(
            ok=False,
            state=state,
            session=session,
            flag=flag,
            error=TimerError(code=code, message=message),
            conflict=conflict,
            elapsed_seconds=session.elapsed_seconds(self._clock()) if session else 0,
        )

    def _store_failure(self, op: str, exc: Exception) -> TimerResult:
        if isinstance(exc, TicketNotFound):
            return self._fail(TimerErrorCode.TICKET_NOT_FOUND, f"Could not {op} the timer: {exc}.")
        logger.warning(
            "timer.persistence_failure",
            extra={"extra_data": {"operator": self.operator_id, "op": op, "error": str(exc)}},
        )
        return self._fail(
            TimerErrorCode.PERSISTENCE_FAILURE,
            f"Could not {op} the timer, please try again. ({exc})",
        )

    def _conflicted(self, ticket_id: str, flag: TimerFlag) -> TimerResult:
        current = self._session
        if flag.is_running:
            if current is None:
                remediation = ["recover_timer", "clear_server_flag"]
            else:
                remediation = ["stop", "clear_local", "clear_server_flag"]
            conflict = ConflictInfo(
                kind=ConflictKind.SERVER_ONLY,
                ticket_id=ticket_id,
                authoritative="server",
                remediation=remediation,
            )
            message = f"A timer is running on ticket {ticket_id} but not on this device."
        else:
            # A live local segment is the only record of that time; a paused
            # one defers to the server.
            conflict = ConflictInfo(
                kind=ConflictKind.LOCAL_ONLY,
                ticket_id=ticket_id,
                authoritative="local" if current is not None and current.is_running else "server",
                remediation=["stop", "clear_local"],
            )
            message = f"The timer on ticket {ticket_id} is no longer active on the server."
        self._log("timer.conflicted", ticket_id=ticket_id, kind=conflict.kind.value)
        return self._fail(TimerErrorCode.CONFLICTED, message, flag=flag, conflict=conflict)

    # ----- operations ------------------------------------------------------

    async def start(
        self,
        ticket_id: str,
        ticket_number: Optional[str] = None,
        customer_name: Optional[str] = None,
        *,
        override: bool = False,
    ) -> TimerResult:
        """Start timing ``ticket_id``, or resume it when it is the paused session."""

        async with self._lock:
            current = self._reload()
            if current is not None and current.ticket_id != ticket_id:
                label = current.ticket_number or current.ticket_id
                return self._fail(
                    TimerErrorCode.ALREADY_RUNNING_ELSEWHERE,
                    f"You have an active timer running for ticket {label}. Please stop it first.",
                )
            if current is not None:
                if current.is_running:
                    return self._ok(current)
                return await self._resume_locked(current)

            try:
                flag = await self._store.get_timer_flag(ticket_id)
                if flag.is_running:
                    if not override:
                        return self._fail(
                            TimerErrorCode.SERVER_TIMER_ACTIVE,
                            f"Ticket {flag.ticket_number or ticket_id} already has an active timer running.",
                            flag=flag,
                        )
                    if not await self._store.is_privileged(self.operator_id):
                        return self._fail(
                            TimerErrorCode.UNAUTHORIZED,
                            "Only an admin can take over a running ticket timer.",
                            flag=flag,
                        )
                now = self._clock()
                session_key = new_session_key()
                await self._store.set_timer_flag(ticket_id, True, now, session_key)
            except StoreError as exc:
                return self._store_failure("start", exc)

            try:
                await self._store.mark_in_progress(ticket_id)
            except StoreError as exc:
                # The flag is already set; the status bump is cosmetic.
                logger.warning(
                    "timer.status_update_failed",
                    extra={"extra_data": {"ticket_id": ticket_id, "error": str(exc)}},
                )

            session = TimerSession(
                ticket_id=ticket_id,
                ticket_number=ticket_number or flag.ticket_number,
                customer_name=customer_name or flag.customer_name,
                started_at_wall_clock=now,
                accumulated_seconds=0,
                is_running=True,
                session_id=session_key,
            )
            self._commit_local(session, "start")
            self._log("timer.started", ticket_id=ticket_id, override=override)
            running_flag = flag.model_copy(
                update={"is_running": True, "started_at": now, "session_key": session_key}
            )
            return self._ok(session, flag=running_flag)

    async def resume(self) -> TimerResult:
        async with self._lock:
            current = self._reload()
            if current is None:
                return self._fail(TimerErrorCode.NO_ACTIVE_TIMER, "No paused timer to resume.")
            if current.is_running:
                return self._ok(current)
            return await self._resume_locked(current)

    async def _resume_locked(self, current: TimerSession) -> TimerResult:
        try:
            flag = await self._store.get_timer_flag(current.ticket_id)
        except StoreError as exc:
            return self._store_failure("resume", exc)
        if not flag.is_running:
            return self._conflicted(current.ticket_id, flag)
        session = current.resumed(self._clock())
        self._commit_local(session, "resume")
        self._log("timer.resumed", ticket_id=session.ticket_id, accumulated=session.accumulated_seconds)
        return self._ok(session, flag=flag)

    def pause(self) -> TimerResult:
        """Freeze the running session. Local only; the server flag stays set."""

        current = self._reload()
        if current is None:
            return self._fail(TimerErrorCode.NO_ACTIVE_TIMER, "No active timer to pause.")
        if not current.is_running:
            return self._fail(TimerErrorCode.NO_ACTIVE_TIMER, "The timer is already paused.")
        session = current.paused(self._clock())
        self._commit_local(session, "pause")
        self._log("timer.paused", ticket_id=session.ticket_id, accumulated=session.accumulated_seconds)
        return self._ok(session)

    async def stop(self, work_notes: str) -> TimerResult:
        """Commit the session as a time entry annotated with ``work_notes``.

        The entry is written first and the server flag released second; the
        local session is only dropped once both went through. On failure the
        session is left exactly as it was, and a retry reuses the session id
        so the entry is never written twice. A flag that was cleared and set
        again by another interval is not ours to release and stays as it is.
        """

        async with self._lock:
            current = self._reload()
            if current is None:
                return self._fail(TimerErrorCode.NO_ACTIVE_TIMER, "No active timer to stop.")
            notes = (work_notes or "").strip()
            if not notes:
                return self._fail(
                    TimerErrorCode.MISSING_WORK_NOTES,
                    "Please describe what work was completed during this time.",
                )

            now = self._clock()
            elapsed = current.elapsed_seconds(now)
            minutes = seconds_to_minutes(elapsed)
            self._busy = TimerState.STOPPING
            try:
                entry = await self._store.create_time_entry(
                    current.ticket_id,
                    minutes,
                    notes,
                    self.operator_id,
                    start_time=now - timedelta(seconds=elapsed),
                    end_time=now,
                    session_key=current.session_id,
                )
                released = await self._store.release_timer_flag(current.ticket_id, current.session_id)
            except StoreError as exc:
                self._busy = None
                return self._store_failure("stop", exc)
            finally:
                self._busy = None

            if not released:
                self._log("timer.flag_not_owned", ticket_id=current.ticket_id, session_id=current.session_id)
            self._commit_local(None, "stop")
            self._log(
                "timer.stopped",
                ticket_id=current.ticket_id,
                elapsed_seconds=elapsed,
                duration_minutes=entry.duration_minutes,
                entry_id=entry.id,
            )
            return self._ok(None, entry=entry)

    async def recover_timer(self, ticket_id: str) -> TimerResult:
        """Rebuild the local session from the ticket's server flag."""

        async with self._lock:
            current = self._reload()
            try:
                flag = await self._store.get_timer_flag(ticket_id)
            except StoreError as exc:
                return self._store_failure("recover", exc)
            if not flag.is_running or flag.started_at is None:
                return self._fail(
                    TimerErrorCode.NOTHING_TO_RECOVER,
                    f"No timer is running on ticket {flag.ticket_number or ticket_id}.",
                    flag=flag,
                )
            if current is not None and current.ticket_id != ticket_id:
                label = current.ticket_number or current.ticket_id
                return self._fail(
                    TimerErrorCode.ALREADY_RUNNING_ELSEWHERE,
                    f"You have an active timer running for ticket {label}. Please stop it first.",
                    flag=flag,
                )
            if current is not None:
                return self._ok(current, flag=flag)

            session_key = flag.session_key
            if session_key is None:
                # Flags written before session keys existed get one now.
                session_key = new_session_key()
                try:
                    await self._store.set_timer_flag(ticket_id, True, flag.started_at, session_key)
                except StoreError as exc:
                    return self._store_failure("recover", exc)
                flag = flag.model_copy(update={"session_key": session_key})

            session = TimerSession(
                ticket_id=ticket_id,
                ticket_number=flag.ticket_number,
                customer_name=flag.customer_name,
                started_at_wall_clock=flag.started_at,
                accumulated_seconds=0,
                is_running=True,
                session_id=session_key,
            )
            self._commit_local(session, "recover")
            self._log("timer.recovered", ticket_id=ticket_id, started_at=to_iso(flag.started_at))
            return self._ok(session, flag=flag)

    def clear_local(self) -> TimerResult:
        """Discard the local session without touching the server flag."""

        current = self._reload()
        self._commit_local(None, "clear_local")
        if current is not None:
            self._log("timer.local_cleared", ticket_id=current.ticket_id)
        return self._ok(None)

    async def clear_server_flag(self, ticket_id: str, reason: str | None = None) -> TimerResult:
        """Force-clear a ticket's server flag without billing any time.

        The discarded time is logged with the admin and ``reason``.
        """

        try:
            if not await self._store.is_privileged(self.operator_id):
                return self._fail(
                    TimerErrorCode.UNAUTHORIZED,
                    "Only an admin can clear a ticket timer without recording time.",
                )
            before = await self._store.get_timer_flag(ticket_id)
            await self._store.set_timer_flag(ticket_id, False, None)
            flag = await self._store.get_timer_flag(ticket_id)
        except StoreError as exc:
            return self._store_failure("clear", exc)
        started_at = before.started_at if before.is_running else None
        self._log(
            "timer.server_flag_cleared",
            ticket_id=ticket_id,
            reason=reason,
            was_running=before.is_running,
            timer_started_at=to_iso(started_at),
            discarded_seconds=elapsed_between(started_at, self._clock()),
        )
        current = self._reload()
        return self._ok(current, flag=flag)

    async def get_status(self, ticket_id: str | None = None) -> TimerResult:
        """Compare the local session with the server flag of ``ticket_id``.

        Defaults to the local session's ticket. Disagreement is reported as a
        ``CONFLICTED`` result and left for the operator to resolve.
        """

        current = self._reload()
        target = ticket_id or (current.ticket_id if current else None)
        if target is None:
            return self._ok(None)
        try:
            flag = await self._store.get_timer_flag(target)
        except StoreError as exc:
            return self._store_failure("read", exc)

        local_here = current is not None and current.ticket_id == target
        if flag.is_running != local_here:
            return self._conflicted(target, flag)
        return self._ok(current, flag=flag)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._channel is not None:
            self._channel.close()
