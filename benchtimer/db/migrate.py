"""Small idempotent migrations for SQLite databases created by older builds."""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger("benchtimer.migrate")

# Additive only: columns are added when missing, nothing is dropped.
TICKET_COLUMNS: dict[str, str] = {
    "ticket_number": "TEXT",
    "customer_name": "TEXT",
    "timer_is_running": "INTEGER DEFAULT 0 NOT NULL",
    "timer_started_at": "TEXT",
    "timer_session_key": "TEXT",
    "total_time_minutes": "INTEGER DEFAULT 0 NOT NULL",
    "updated_at": "TEXT",
}

TIME_ENTRY_COLUMNS: dict[str, str] = {
    "start_time": "TEXT",
    "end_time": "TEXT",
    "session_key": "TEXT",
}


def _table_columns(engine: Engine, table: str) -> list[dict[str, object]]:
    """Fetch SQLite's description of a table so we know what columns exist."""

    with engine.connect() as conn:
        return conn.execute(text(f"PRAGMA table_info({table})")).mappings().all()


def _column_names(engine: Engine, table: str) -> set[str]:
    return {record["name"] for record in _table_columns(engine, table)}


def _add_column_sqlite(engine: Engine, table: str, col_def: str) -> None:
    with engine.begin() as conn:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col_def}"))


def _create_index_if_not_exists(engine: Engine, table: str, name: str, cols: Iterable[str], unique: bool = False) -> None:
    cols_sql = ", ".join(cols)
    unique_sql = "UNIQUE " if unique else ""
    with engine.begin() as conn:
        conn.execute(text(f"CREATE {unique_sql}INDEX IF NOT EXISTS {name} ON {table} ({cols_sql})"))


def _ensure_columns(engine: Engine, table: str, needed: dict[str, str]) -> list[str]:
    existing = _column_names(engine, table)
    if not existing:
        # Table absent: Base.metadata.create_all builds the fresh schema.
        return []
    added: list[str] = []
    for name, dtype in needed.items():
        if name not in existing:
            _add_column_sqlite(engine, table, f"{name} {dtype}")
            added.append(name)
    return added


def run_migrations(engine: Engine) -> None:
    """Bring the SQLite schema up-to-date with the expectations of the code."""

    if engine.dialect.name != "sqlite":
        return

    added = _ensure_columns(engine, "repair_tickets", TICKET_COLUMNS)
    added += _ensure_columns(engine, "time_entries", TIME_ENTRY_COLUMNS)
    if added:
        logger.info("schema.migrated", extra={"extra_data": {"added_columns": added}})

    if _column_names(engine, "time_entries"):
        _create_index_if_not_exists(
            engine, "time_entries", "ix_time_entries_session_key_unique", ["session_key"], unique=True
        )
        _create_index_if_not_exists(engine, "time_entries", "ix_time_entries_ticket_id", ["ticket_id"])

    if _column_names(engine, "repair_tickets"):
        # Older rows may carry a start time without the running bit.
        with engine.begin() as conn:
            conn.execute(
                text(
                    "UPDATE repair_tickets SET timer_is_running = 1 "
                    "WHERE timer_started_at IS NOT NULL AND timer_is_running = 0"
                )
            )
