from __future__ import annotations

from sqlalchemy import Column, Text

from ..db.session import Base

OPERATOR_ROLES = ("admin", "manager", "technician")
PRIVILEGED_ROLES = frozenset({"admin", "manager"})


class Operator(Base):
    __tablename__ = "operators"

    id = Column(Text, primary_key=True, index=True)
    name = Column(Text, nullable=False)
    role = Column(Text, nullable=False, default="technician")
    created_at = Column(Text, nullable=False)

    @property
    def is_privileged(self) -> bool:
        return (self.role or "").lower() in PRIVILEGED_ROLES
