"""Pydantic shapes for the work timer: local session, server flag and results."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    CONFLICTED = "conflicted"


class TimerErrorCode(str, Enum):
    ALREADY_RUNNING_ELSEWHERE = "already_running_elsewhere"
    SERVER_TIMER_ACTIVE = "server_timer_active"
    MISSING_WORK_NOTES = "missing_work_notes"
    NO_ACTIVE_TIMER = "no_active_timer"
    NOTHING_TO_RECOVER = "nothing_to_recover"
    TICKET_NOT_FOUND = "ticket_not_found"
    UNAUTHORIZED = "unauthorized"
    PERSISTENCE_FAILURE = "persistence_failure"
    CONFLICTED = "conflicted"


TRANSIENT_ERRORS = frozenset({TimerErrorCode.PERSISTENCE_FAILURE})


class TimerError(BaseModel):
    code: TimerErrorCode
    message: str

    @computed_field
    @property
    def retryable(self) -> bool:
        return self.code in TRANSIENT_ERRORS


class TimerSession(BaseModel):
    """The operator-side record of an in-progress or paused timing interval.

    Stored under the ``active_timer`` key of local storage using camelCase
    field names. Instances are frozen: every transition builds a new one.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    ticket_id: str
    ticket_number: Optional[str] = None
    customer_name: Optional[str] = None
    started_at_wall_clock: datetime
    accumulated_seconds: int = Field(default=0, ge=0)
    is_running: bool = True
    session_id: str

    @field_validator("started_at_wall_clock")
    @classmethod
    def _normalize_started(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def state(self) -> TimerState:
        return TimerState.RUNNING if self.is_running else TimerState.PAUSED

    def segment_seconds(self, now: datetime) -> int:
        """Whole seconds in the current run segment (0 while paused)."""
        if not self.is_running:
            return 0
        delta = (_as_utc(now) - self.started_at_wall_clock).total_seconds()
        return max(int(delta), 0)

    def elapsed_seconds(self, now: datetime) -> int:
        return self.accumulated_seconds + self.segment_seconds(now)

    def paused(self, now: datetime) -> "TimerSession":
        return self.model_copy(
            update={"accumulated_seconds": self.elapsed_seconds(now), "is_running": False}
        )

    def resumed(self, now: datetime) -> "TimerSession":
        return self.model_copy(update={"started_at_wall_clock": _as_utc(now), "is_running": True})

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_storage(cls, payload: dict[str, Any]) -> "TimerSession":
        return cls.model_validate(payload)


class TimerFlag(BaseModel):
    """Server-side view of a ticket's timer."""

    ticket_id: str
    is_running: bool = False
    started_at: Optional[datetime] = None
    # Id of the timing session that owns the running flag.
    session_key: Optional[str] = None
    total_minutes: int = 0
    ticket_number: Optional[str] = None
    customer_name: Optional[str] = None

    @field_validator("started_at")
    @classmethod
    def _normalize_started(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value) if value is not None else None


class TimeEntryOut(BaseModel):
    id: int
    ticket_id: str
    user_id: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_minutes: int
    description: str
    session_key: Optional[str] = None
    created_at: str

    model_config = ConfigDict(from_attributes=True)


class ConflictKind(str, Enum):
    # Server flag set, no local session for the ticket.
    SERVER_ONLY = "server_only"
    # Local session for the ticket, server flag clear.
    LOCAL_ONLY = "local_only"


class ConflictInfo(BaseModel):
    kind: ConflictKind
    ticket_id: str
    authoritative: str
    remediation: list[str] = Field(default_factory=list)


class TimerResult(BaseModel):
    ok: bool
    state: TimerState
    session: Optional[TimerSession] = None
    flag: Optional[TimerFlag] = None
    entry: Optional[TimeEntryOut] = None
    error: Optional[TimerError] = None
    conflict: Optional[ConflictInfo] = None
    elapsed_seconds: int = 0


class ActiveTimerOut(BaseModel):
    ticket_id: str
    ticket_number: Optional[str] = None
    customer_name: Optional[str] = None
    started_at: Optional[datetime] = None
    elapsed_minutes: int = 0


class ClearAllOut(BaseModel):
    cleared: int
    errors: list[dict[str, str]] = Field(default_factory=list)


class StartTimerIn(BaseModel):
    ticket_number: Optional[str] = None
    customer_name: Optional[str] = None
    override: bool = False


class StopTimerIn(BaseModel):
    notes: str = ""
