"""CRUD helpers for committed time entries."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.time_entry import TimeEntry
from ..services.timecalc import to_iso, utcnow
from .tickets import require_ticket


def get_entry_by_session(db: Session, session_key: str) -> TimeEntry | None:
    stmt = select(TimeEntry).where(TimeEntry.session_key == session_key)
    return db.execute(stmt).scalars().first()


def list_ticket_entries(db: Session, ticket_id: str):
    stmt = (
        select(TimeEntry)
        .where(TimeEntry.ticket_id == ticket_id)
        .order_by(desc(TimeEntry.created_at), desc(TimeEntry.id))
    )
    return db.execute(stmt).scalars().all()


def list_user_entries(
    db: Session,
    user_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
):
    stmt = select(TimeEntry).where(TimeEntry.user_id == user_id)
    # ISO strings in UTC with a Z suffix sort chronologically; the range is
    # half-open so consecutive periods never share an entry.
    if start is not None:
        stmt = stmt.where(TimeEntry.created_at >= to_iso(start))
    if end is not None:
        stmt = stmt.where(TimeEntry.created_at < to_iso(end))
    return db.execute(stmt.order_by(TimeEntry.created_at)).scalars().all()


def total_minutes_for_ticket(db: Session, ticket_id: str) -> int:
    stmt = select(func.coalesce(func.sum(TimeEntry.duration_minutes), 0)).where(
        TimeEntry.ticket_id == ticket_id
    )
    return int(db.execute(stmt).scalar_one())


def create_time_entry(
    db: Session,
    ticket_id: str,
    duration_minutes: int,
    description: str,
    user_id: str,
    *,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    session_key: str | None = None,
) -> TimeEntry:
    """Append a time entry and refresh the ticket's accumulated minutes.

    When ``session_key`` is given and an entry for that session already
    exists, the existing entry is returned untouched, so a repeated stop of the
    same timing session never bills twice.
    """

    notes = (description or "").strip()
    if not notes:
        raise ValueError("description is required")
    if duration_minutes < 0:
        raise ValueError("duration_minutes cannot be negative")
    if not (user_id or "").strip():
        raise ValueError("user_id is required")

    if session_key:
        existing = get_entry_by_session(db, session_key)
        if existing is not None:
            return existing

    ticket = require_ticket(db, ticket_id)
    entry = TimeEntry(
        ticket_id=ticket.id,
        user_id=user_id,
        start_time=to_iso(start_time),
        end_time=to_iso(end_time),
        duration_minutes=int(duration_minutes),
        description=notes,
        session_key=session_key,
        created_at=to_iso(utcnow()),
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError:
        # Another writer committed the same session first.
        db.rollback()
        existing = get_entry_by_session(db, session_key) if session_key else None
        if existing is None:
            raise
        return existing
    # Entry and ticket total land in the same transaction.
    ticket.total_time_minutes = total_minutes_for_ticket(db, ticket.id)
    ticket.updated_at = entry.created_at
    db.commit()
    db.refresh(entry)
    return entry
