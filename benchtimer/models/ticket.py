from __future__ import annotations

from sqlalchemy import Column, Integer, Text
from sqlalchemy.orm import relationship

from ..db.session import Base

TICKET_STATUSES = ("new", "in_progress", "on_hold", "completed", "cancelled")


class RepairTicket(Base):
    __tablename__ = "repair_tickets"

    id = Column(Text, primary_key=True, index=True)
    ticket_number = Column(Text, nullable=True, index=True)
    customer_name = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="new")

    # Server-side timer flag, shared by every device working the ticket.
    timer_is_running = Column(Integer, nullable=False, default=0)
    timer_started_at = Column(Text, nullable=True)
    # Session that set the flag; a stop only clears the flag it owns.
    timer_session_key = Column(Text, nullable=True)
    total_time_minutes = Column(Integer, nullable=False, default=0)

    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=True)

    time_entries = relationship(
        "TimeEntry",
        back_populates="ticket",
        order_by="TimeEntry.id",
        cascade="all, delete-orphan",
    )
