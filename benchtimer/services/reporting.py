from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

from sqlalchemy.orm import Session

from ..crud.tickets import require_ticket
from ..crud.time_entries import list_ticket_entries, list_user_entries
from ..schemas.timer import TimeEntryOut

TWOPLACES = Decimal("0.01")
SIXTY = Decimal(60)


def _quantize_currency(value: Decimal) -> Decimal:
    return value.quantize(TWOPLACES, rounding=ROUND_HALF_UP) if value else Decimal("0.00")


def _quantize_hours(minutes: int) -> Decimal:
    if not minutes:
        return Decimal("0.00")
    return (Decimal(minutes) / SIXTY).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def labor_cost(minutes: int, hourly_rate: Decimal) -> Decimal:
    return _quantize_currency(Decimal(minutes) / SIXTY * Decimal(hourly_rate))


def ticket_time_summary(db: Session, ticket_id: str, hourly_rate: Decimal) -> Dict[str, Any]:
    """Committed entries of a ticket with their total and labor cost."""

    ticket = require_ticket(db, ticket_id)
    entries = list_ticket_entries(db, ticket.id)
    total_minutes = sum(entry.duration_minutes or 0 for entry in entries)
    return {
        "ticket_id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "entries": [TimeEntryOut.model_validate(entry) for entry in entries],
        "total_minutes": total_minutes,
        "total_hours": _quantize_hours(total_minutes),
        "labor_cost": labor_cost(total_minutes, hourly_rate),
        "timer_is_running": bool(ticket.timer_is_running),
    }


def operator_time_summary(
    db: Session,
    operator_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> Dict[str, Any]:
    entries = list_user_entries(db, operator_id, start=start, end=end)
    total_minutes = sum(entry.duration_minutes or 0 for entry in entries)
    return {
        "operator_id": operator_id,
        "entry_count": len(entries),
        "ticket_count": len({entry.ticket_id for entry in entries}),
        "total_minutes": total_minutes,
        "total_hours": _quantize_hours(total_minutes),
    }
