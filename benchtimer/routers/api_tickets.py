from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..core.config import settings
from ..crud.operators import count_operators, create_operator, is_privileged
from ..crud.tickets import create_ticket, get_ticket
from ..crud.time_entries import create_time_entry
from ..db.session import get_db
from ..deps.operator import require_operator
from ..schemas.ticket import (
    ManualEntryIn,
    OperatorCreate,
    OperatorOut,
    OperatorSummaryOut,
    TicketCreate,
    TicketOut,
    TicketTimeSummaryOut,
)
from ..schemas.timer import TimeEntryOut
from ..services.reporting import operator_time_summary, ticket_time_summary
from ..services.timecalc import parse_range_bound, utcnow

router = APIRouter(prefix="/api/v1", tags=["tickets"], dependencies=[Depends(require_operator)])


@router.post("/tickets", response_model=TicketOut, status_code=201)
def api_create_ticket(payload: TicketCreate, db: Session = Depends(get_db)):
    try:
        return create_ticket(db, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/tickets/{ticket_id}", response_model=TicketOut)
def api_get_ticket(ticket_id: str, db: Session = Depends(get_db)):
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        raise HTTPException(404, "Not found")
    return ticket


@router.get("/tickets/{ticket_id}/time-entries", response_model=TicketTimeSummaryOut)
def api_ticket_time_entries(ticket_id: str, db: Session = Depends(get_db)):
    if not get_ticket(db, ticket_id):
        raise HTTPException(404, "Not found")
    return ticket_time_summary(db, ticket_id, settings.HOURLY_RATE)


@router.post("/tickets/{ticket_id}/time-entries", response_model=TimeEntryOut, status_code=201)
def api_add_manual_entry(
    ticket_id: str,
    payload: ManualEntryIn,
    db: Session = Depends(get_db),
    operator_id: str = Depends(require_operator),
):
    if not get_ticket(db, ticket_id):
        raise HTTPException(404, "Not found")
    start = payload.date or utcnow()
    try:
        return create_time_entry(
            db,
            ticket_id,
            payload.duration_minutes,
            payload.notes,
            operator_id,
            start_time=start,
            end_time=start + timedelta(minutes=payload.duration_minutes),
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/operators", response_model=OperatorOut, status_code=201)
def api_create_operator(
    payload: OperatorCreate,
    db: Session = Depends(get_db),
    operator_id: str = Depends(require_operator),
):
    # The first operator bootstraps the shop; later ones need an admin.
    if count_operators(db) and not is_privileged(db, operator_id):
        raise HTTPException(status_code=403, detail="Admin access required")
    try:
        return create_operator(db, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/operators/{operator_id}/time-summary", response_model=OperatorSummaryOut)
def api_operator_summary(
    operator_id: str,
    start: str | None = Query(default=None, description="Timestamp or date, inclusive."),
    end: str | None = Query(default=None, description="Timestamp (exclusive) or date (inclusive)."),
    db: Session = Depends(get_db),
    caller_id: str = Depends(require_operator),
):
    # Operators see their own totals; admins see everyone's.
    if caller_id != operator_id and not is_privileged(db, caller_id):
        raise HTTPException(status_code=403, detail="Admin access required")
    try:
        lower = parse_range_bound(start, settings.TZ)
        upper = parse_range_bound(end, settings.TZ, end=True)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid date range: {exc}") from exc
    return operator_time_summary(db, operator_id, start=lower, end=upper)
