from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models.operator import OPERATOR_ROLES, Operator
from ..services.timecalc import to_iso, utcnow


def get_operator(db: Session, operator_id: str) -> Operator | None:
    return db.get(Operator, operator_id)


def create_operator(db: Session, payload: dict) -> Operator:
    operator_id = (payload.get("id") or "").strip()
    if not operator_id:
        raise ValueError("id is required")
    name = (payload.get("name") or "").strip() or operator_id
    role = (payload.get("role") or "technician").strip().lower()
    if role not in OPERATOR_ROLES:
        raise ValueError(f"role must be one of {', '.join(OPERATOR_ROLES)}")
    if get_operator(db, operator_id) is not None:
        raise ValueError(f"operator {operator_id} already exists")
    operator = Operator(id=operator_id, name=name, role=role, created_at=to_iso(utcnow()))
    db.add(operator)
    db.commit()
    db.refresh(operator)
    return operator


def is_privileged(db: Session, operator_id: str) -> bool:
    operator = get_operator(db, operator_id)
    return bool(operator and operator.is_privileged)


def count_operators(db: Session) -> int:
    return int(db.execute(select(func.count(Operator.id))).scalar_one())
