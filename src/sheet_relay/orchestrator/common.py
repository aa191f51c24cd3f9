"""Timestamp and journal-engine helpers shared across the orchestrator."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime, *, timespec: str = "auto") -> str:
    """Render a timestamp the way it is written into sheet cells."""

    return value.astimezone(UTC).isoformat(timespec=timespec)


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp read back from a cell.

    Operators sometimes paste ``Z``-suffixed or naive values; both are read as
    UTC. Raises ``ValueError`` for anything else that is not ISO-8601.
    """

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def build_journal_engine(db_path: Path, *, busy_timeout_ms: int = 5000) -> Engine:
    """Engine for the run journal, shared by every unit thread of a batch.

    No connection pool: each journal write opens its own short-lived
    connection, and WAL keeps concurrent writers from failing on a locked file.
    """

    if db_path.parent != Path():
        db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _journal_pragmas(dbapi_connection, busy_timeout_ms),
    )
    return engine


def _journal_pragmas(dbapi_connection: sqlite3.Connection, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.close()
