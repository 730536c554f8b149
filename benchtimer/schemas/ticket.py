from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.operator import OPERATOR_ROLES
from ..models.ticket import TICKET_STATUSES
from .timer import TimeEntryOut

STATUS_PATTERN = f"^({'|'.join(TICKET_STATUSES)})$"
ROLE_PATTERN = f"^({'|'.join(OPERATOR_ROLES)})$"


class TicketCreate(BaseModel):
    id: str = Field(min_length=1)
    ticket_number: Optional[str] = None
    customer_name: Optional[str] = None
    status: str = Field(default="new", pattern=STATUS_PATTERN)


class TicketOut(BaseModel):
    id: str
    ticket_number: Optional[str]
    customer_name: Optional[str]
    status: str
    timer_is_running: bool
    timer_started_at: Optional[str]
    total_time_minutes: int
    created_at: str
    updated_at: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class ManualEntryIn(BaseModel):
    duration_minutes: int = Field(ge=1)
    notes: str
    date: Optional[datetime] = None


class TicketTimeSummaryOut(BaseModel):
    ticket_id: str
    ticket_number: Optional[str]
    entries: list[TimeEntryOut]
    total_minutes: int
    total_hours: Decimal
    labor_cost: Decimal
    timer_is_running: bool


class OperatorCreate(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    role: str = Field(default="technician", pattern=ROLE_PATTERN)


class OperatorOut(BaseModel):
    id: str
    name: str
    role: str
    is_privileged: bool
    created_at: str

    model_config = ConfigDict(from_attributes=True)


class OperatorSummaryOut(BaseModel):
    operator_id: str
    entry_count: int
    ticket_count: int
    total_minutes: int
    total_hours: Decimal
