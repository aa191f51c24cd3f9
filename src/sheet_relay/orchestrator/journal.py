"""SQLite run journal for per-attempt telemetry and unit outcomes."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, Session, SQLModel, col, select

from sheet_relay.orchestrator.common import build_journal_engine, utc_now
from sheet_relay.orchestrator.models import (
    EscalationDecision,
    Phase,
    UnitOutcome,
    WorkUnit,
)

logger = logging.getLogger(__name__)


class UnitAttemptRecord(SQLModel, table=True):
    __tablename__ = "unit_attempts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_unit_attempts_unit_time", "unit_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    unit_id: str = Field(index=True)
    target_cell: str
    capability_class: str = Field(index=True)
    attempt: int
    phase: str
    status: str = Field(index=True)
    category: str | None = Field(default=None, index=True)
    tier: str | None = None
    action: str | None = None
    delay_seconds: float | None = None
    error_text: str | None = Field(default=None, sa_column=Column(Text))
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UnitOutcomeRecord(SQLModel, table=True):
    __tablename__ = "unit_outcomes"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_unit_outcomes_finished", "finished_at"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    unit_id: str = Field(index=True)
    target_cell: str
    capability_class: str = Field(index=True)
    status: str = Field(index=True)
    failure_category: str | None = None
    attempts: int = 0
    elapsed_seconds: float = 0.0
    configuration_failures_json: str | None = Field(default=None, sa_column=Column(Text))
    error_text: str | None = Field(default=None, sa_column=Column(Text))
    finished_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


@dataclass(slots=True)
class AttemptView:
    run_id: str
    unit_id: str
    target_cell: str
    capability_class: str
    attempt: int
    phase: str
    status: str
    category: str | None
    tier: str | None
    action: str | None
    delay_seconds: float | None
    error_text: str | None
    details: dict[str, object]
    created_at: datetime


@dataclass(slots=True)
class OutcomeView:
    run_id: str
    unit_id: str
    target_cell: str
    capability_class: str
    status: str
    failure_category: str | None
    attempts: int
    elapsed_seconds: float
    configuration_failures: list[str]
    error_text: str | None
    finished_at: datetime


class RunJournal:
    """Append-only journal facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, run_id: str | None = None) -> None:
        self.db_path = db_path
        self.run_id = run_id or uuid4().hex
        self.engine = build_journal_engine(db_path)
        self._lock = threading.Lock()

    def init_schema(self) -> None:
        """Create journal tables when missing."""

        SQLModel.metadata.create_all(
            self.engine,
            tables=[UnitAttemptRecord.__table__, UnitOutcomeRecord.__table__],  # type: ignore[attr-defined]
        )
        logger.debug("Journal schema ready at %s", self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def record_attempt(
        self,
        unit: WorkUnit,
        *,
        attempt: int,
        phase: Phase,
        status: str,
        decision: EscalationDecision | None = None,
        error: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        row = UnitAttemptRecord(
            run_id=self.run_id,
            unit_id=unit.unit_id,
            target_cell=unit.target_cell,
            capability_class=unit.capability_class,
            attempt=attempt,
            phase=phase.value,
            status=status,
            category=decision.category.value if decision is not None else None,
            tier=decision.tier.value if decision is not None else None,
            action=decision.action.value if decision is not None else None,
            delay_seconds=decision.delay_seconds if decision is not None else None,
            error_text=error,
            details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
            if details
            else None,
            created_at=utc_now(),
        )
        self._add(row)

    def record_outcome(self, outcome: UnitOutcome) -> None:
        row = UnitOutcomeRecord(
            run_id=self.run_id,
            unit_id=outcome.unit_id,
            target_cell=outcome.target_cell,
            capability_class=outcome.capability_class,
            status=outcome.status.value,
            failure_category=(
                outcome.failure_category.value if outcome.failure_category is not None else None
            ),
            attempts=outcome.attempts,
            elapsed_seconds=outcome.elapsed_seconds,
            configuration_failures_json=(
                json.dumps(outcome.configuration_failures, ensure_ascii=False)
                if outcome.configuration_failures
                else None
            ),
            error_text=outcome.error,
            finished_at=utc_now(),
        )
        self._add(row)

    def list_attempts(self, unit_id: str) -> list[AttemptView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UnitAttemptRecord)
                .where(UnitAttemptRecord.unit_id == unit_id)
                .order_by(col(UnitAttemptRecord.created_at), col(UnitAttemptRecord.id)),
            ).all()
            return [_to_attempt_view(row) for row in rows]

    def list_recent_outcomes(self, limit: int = 20) -> list[OutcomeView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UnitOutcomeRecord)
                .order_by(col(UnitOutcomeRecord.finished_at).desc(), col(UnitOutcomeRecord.id).desc())
                .limit(max(1, limit)),
            ).all()
            return [_to_outcome_view(row) for row in rows]

    def _add(self, row: SQLModel) -> None:
        with self._lock, Session(self.engine) as session:
            session.add(row)
            session.commit()


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_attempt_view(row: UnitAttemptRecord) -> AttemptView:
    return AttemptView(
        run_id=row.run_id,
        unit_id=row.unit_id,
        target_cell=row.target_cell,
        capability_class=row.capability_class,
        attempt=row.attempt,
        phase=row.phase,
        status=row.status,
        category=row.category,
        tier=row.tier,
        action=row.action,
        delay_seconds=row.delay_seconds,
        error_text=row.error_text,
        details=json.loads(row.details_json) if row.details_json else {},
        created_at=_to_utc_aware_datetime(row.created_at),
    )


def _to_outcome_view(row: UnitOutcomeRecord) -> OutcomeView:
    return OutcomeView(
        run_id=row.run_id,
        unit_id=row.unit_id,
        target_cell=row.target_cell,
        capability_class=row.capability_class,
        status=row.status,
        failure_category=row.failure_category,
        attempts=row.attempts,
        elapsed_seconds=row.elapsed_seconds,
        configuration_failures=(
            json.loads(row.configuration_failures_json) if row.configuration_failures_json else []
        ),
        error_text=row.error_text,
        finished_at=_to_utc_aware_datetime(row.finished_at),
    )
