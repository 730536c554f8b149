from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship

from ..db.session import Base


class TimeEntry(Base):
    __tablename__ = "time_entries"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Text, ForeignKey("repair_tickets.id"), nullable=False, index=True)
    user_id = Column(Text, nullable=False, index=True)
    start_time = Column(Text, nullable=True)
    end_time = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False)
    # Timer session that produced the entry; NULL for manual entries.
    session_key = Column(Text, nullable=True, unique=True)
    created_at = Column(Text, nullable=False)

    ticket = relationship("RepairTicket", back_populates="time_entries")
