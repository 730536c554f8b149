"""CRUD helpers for repair tickets and their server-side timer flag."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.errors import TicketNotFound
from ..models.ticket import TICKET_STATUSES, RepairTicket
from ..services.timecalc import to_iso, utcnow


def _utcnow() -> str:
    return to_iso(utcnow())


def get_ticket(db: Session, ticket_id: str) -> RepairTicket | None:
    return db.get(RepairTicket, ticket_id)


def list_running_tickets(db: Session):
    stmt = (
        select(RepairTicket)
        .where(RepairTicket.timer_is_running == 1)
        .order_by(RepairTicket.timer_started_at)
    )
    return db.execute(stmt).scalars().all()


def create_ticket(db: Session, payload: dict) -> RepairTicket:
    ticket_id = (payload.get("id") or "").strip()
    if not ticket_id:
        raise ValueError("id is required")
    if get_ticket(db, ticket_id) is not None:
        raise ValueError(f"ticket {ticket_id} already exists")
    status = (payload.get("status") or "new").strip().lower()
    if status not in TICKET_STATUSES:
        raise ValueError(f"status must be one of {', '.join(TICKET_STATUSES)}")
    now = _utcnow()
    ticket = RepairTicket(
        id=ticket_id,
        ticket_number=(payload.get("ticket_number") or None),
        customer_name=(payload.get("customer_name") or None),
        status=status,
        timer_is_running=0,
        timer_started_at=None,
        total_time_minutes=0,
        created_at=now,
        updated_at=now,
    )
    db.add(ticket)
    db.commit()
    db.refresh(ticket)
    return ticket


def require_ticket(db: Session, ticket_id: str) -> RepairTicket:
    ticket = get_ticket(db, ticket_id)
    if ticket is None:
        raise TicketNotFound(f"ticket {ticket_id} not found")
    return ticket


def set_timer_flag(
    db: Session,
    ticket_id: str,
    running: bool,
    started_at: datetime | None,
    session_key: str | None = None,
) -> RepairTicket:
    ticket = require_ticket(db, ticket_id)
    ticket.timer_is_running = 1 if running else 0
    ticket.timer_started_at = to_iso(started_at) if running else None
    ticket.timer_session_key = session_key if running else None
    ticket.updated_at = _utcnow()
    db.commit()
    db.refresh(ticket)
    return ticket


def release_timer_flag(db: Session, ticket_id: str, session_key: str) -> bool:
    """Clear the flag only while ``session_key`` still owns it.

    A running flag with no recorded key predates session keys and is
    released by any session. Returns False, leaving the ticket untouched,
    when the flag is clear or belongs to another session.
    """

    ticket = require_ticket(db, ticket_id)
    if not ticket.timer_is_running:
        return False
    if ticket.timer_session_key is not None and ticket.timer_session_key != session_key:
        return False
    ticket.timer_is_running = 0
    ticket.timer_started_at = None
    ticket.timer_session_key = None
    ticket.updated_at = _utcnow()
    db.commit()
    return True


def mark_in_progress(db: Session, ticket_id: str) -> bool:
    """Move a ``new`` ticket to ``in_progress``; returns True when it changed."""

    ticket = require_ticket(db, ticket_id)
    if ticket.status != "new":
        return False
    ticket.status = "in_progress"
    ticket.updated_at = _utcnow()
    db.commit()
    return True
