from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import allure

from sheet_relay.orchestrator.journal import RunJournal, _to_utc_aware_datetime
from sheet_relay.orchestrator.models import (
    EscalationDecision,
    EscalationTier,
    FailureCategory,
    Phase,
    RemediationAction,
    UnitOutcome,
    WorkUnit,
    WorkUnitStatus,
)

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Run Journal"),
]


def _unit() -> WorkUnit:
    return WorkUnit(
        unit_id="g2-G7",
        group_number=2,
        row=7,
        input_cells=("F7",),
        payload="p",
        target_cell="G7",
        capability_class="claude",
    )


def _outcome(unit_id: str, status: WorkUnitStatus, **kwargs) -> UnitOutcome:
    return UnitOutcome(
        unit_id=unit_id,
        target_cell=unit_id.split("-", 1)[1],
        capability_class="claude",
        status=status,
        text=kwargs.pop("text", None),
        failure_category=kwargs.pop("failure_category", None),
        error=kwargs.pop("error", None),
        attempts=kwargs.pop("attempts", 1),
        elapsed_seconds=kwargs.pop("elapsed_seconds", 1.5),
        **kwargs,
    )


def test_attempts_round_trip_decision_fields(tmp_path) -> None:
    journal = RunJournal(tmp_path / "journal.db", run_id="run-7")
    journal.init_schema()
    journal.init_schema()
    decision = EscalationDecision(
        category=FailureCategory.RATE_LIMIT,
        attempt=1,
        tier=EscalationTier.HARD,
        action=RemediationAction.PROVISION_SURFACE,
        delay_seconds=300.0,
        reason="immediate_escalation",
    )

    journal.record_attempt(
        _unit(),
        attempt=1,
        phase=Phase.SUBMIT,
        status="failed",
        decision=decision,
        error="429 Too Many Requests",
        details={"matched_rule": "rate_limit"},
    )
    journal.record_attempt(_unit(), attempt=2, phase=Phase.PERSIST, status="succeeded")

    attempts = journal.list_attempts("g2-G7")
    journal.close()

    assert [attempt.attempt for attempt in attempts] == [1, 2]
    failed, succeeded = attempts
    assert failed.run_id == "run-7"
    assert failed.phase == "submit"
    assert failed.category == "rate_limit"
    assert failed.tier == "hard"
    assert failed.action == "provision_surface"
    assert failed.delay_seconds == 300.0
    assert failed.error_text == "429 Too Many Requests"
    assert failed.details == {"matched_rule": "rate_limit"}
    assert failed.created_at.tzinfo is not None
    assert succeeded.category is None
    assert succeeded.details == {}
    assert journal.list_attempts("g9-Z1") == []


def test_recent_outcomes_newest_first(tmp_path) -> None:
    journal = RunJournal(tmp_path / "journal.db")
    journal.init_schema()
    journal.record_outcome(_outcome("g1-F7", WorkUnitStatus.SUCCEEDED, text="answer"))
    journal.record_outcome(
        _outcome(
            "g1-F8",
            WorkUnitStatus.ABANDONED,
            failure_category=FailureCategory.TIMEOUT,
            error="no completion within 300s",
            attempts=3,
            configuration_failures=["model=gpt-5: option not found"],
        ),
    )

    outcomes = journal.list_recent_outcomes(limit=5)
    latest_only = journal.list_recent_outcomes(limit=1)
    journal.close()

    assert [outcome.unit_id for outcome in outcomes] == ["g1-F8", "g1-F7"]
    abandoned = outcomes[0]
    assert abandoned.status == "abandoned"
    assert abandoned.failure_category == "timeout"
    assert abandoned.attempts == 3
    assert abandoned.configuration_failures == ["model=gpt-5: option not found"]
    assert outcomes[1].configuration_failures == []
    assert [outcome.unit_id for outcome in latest_only] == ["g1-F8"]


def test_journal_is_shared_across_instances(tmp_path) -> None:
    path = tmp_path / "journal.db"
    first = RunJournal(path)
    first.init_schema()
    first.record_outcome(_outcome("g1-F7", WorkUnitStatus.FAILED, error="driver bug"))
    first.close()

    second = RunJournal(path)
    second.init_schema()
    outcomes = second.list_recent_outcomes()
    second.close()

    assert second.run_id != first.run_id
    assert [(outcome.run_id, outcome.error_text) for outcome in outcomes] == [
        (first.run_id, "driver bug"),
    ]


def test_naive_datetimes_are_read_as_utc() -> None:
    naive = datetime(2026, 3, 1, 12, 0)
    shifted = datetime(2026, 3, 1, 21, 0, tzinfo=timezone(timedelta(hours=9)))

    assert _to_utc_aware_datetime(naive) == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    assert _to_utc_aware_datetime(shifted).tzinfo == UTC
    assert _to_utc_aware_datetime(shifted).hour == 12
