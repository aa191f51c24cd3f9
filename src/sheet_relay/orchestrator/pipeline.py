"""Phase pipeline executor: runs leased units through pooled contexts.

Each unit goes ``prepare -> configure -> submit -> await_completion ->
extract -> persist``. A failed phase is classified, the escalation
controller picks a remediation and the unit resumes either at the failed
phase (in-place retry) or from ``prepare`` on a fresh context.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from sheet_relay.config import LeaseSettings, WaitSettings
from sheet_relay.orchestrator.backend.base import CommandResult, InteractiveSurface, TabularStore
from sheet_relay.orchestrator.common import format_timestamp, utc_now
from sheet_relay.orchestrator.completion import GroupCompletionTracker
from sheet_relay.orchestrator.errors import ContextCreationFailed, StoreError
from sheet_relay.orchestrator.escalation import EscalationController
from sheet_relay.orchestrator.failure_classifier import classify_failure
from sheet_relay.orchestrator.features import normalize_feature
from sheet_relay.orchestrator.journal import RunJournal
from sheet_relay.orchestrator.leases import LeaseManager
from sheet_relay.orchestrator.models import (
    PHASE_ORDER,
    BatchResult,
    EscalationDecision,
    EscalationTier,
    ExecutionContext,
    FailureCategory,
    Phase,
    RemediationAction,
    StartRecord,
    UnitOutcome,
    WorkUnit,
    WorkUnitStatus,
)
from sheet_relay.orchestrator.slots import SlotManager

logger = logging.getLogger(__name__)


class PhaseFailed(Exception):
    """One phase of a unit run failed with a classified category."""

    def __init__(
        self,
        phase: Phase,
        category: FailureCategory,
        message: str,
        *,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.category = category
        self.message = message
        self.details = details or {}


@dataclass(slots=True)
class _UnitRun:
    unit: WorkUnit
    position: int
    context: ExecutionContext | None = None
    text: str | None = None
    failures: int = 0
    configuration_failures: list[str] = field(default_factory=list)


class PhasePipelineExecutor:
    """Runs batches of leased units with staggered starts, one thread per unit."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        slots: SlotManager,
        leases: LeaseManager,
        store: TabularStore,
        escalation: EscalationController,
        wait: WaitSettings | None = None,
        lease_settings: LeaseSettings | None = None,
        stagger_seconds: float = 3.0,
        tracker: GroupCompletionTracker | None = None,
        journal: RunJournal | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.slots = slots
        self.leases = leases
        self.store = store
        self.escalation = escalation
        self.wait = wait or WaitSettings()
        self.lease_settings = lease_settings or LeaseSettings()
        self.stagger_seconds = stagger_seconds
        self.tracker = tracker
        self.journal = journal
        self._sleep = sleep
        self._clock = clock
        self._now = now
        self._log_lock = threading.Lock()

    def run_batch(self, units: list[WorkUnit]) -> BatchResult:
        """Run up to pool-size units concurrently; returns once all are terminal.

        Unit ``i`` starts about ``i * stagger_seconds`` after the first one and
        runs at position ``i mod pool_size``.
        """

        if len(units) > self.slots.pool_size:
            raise ValueError(
                f"Batch of {len(units)} units exceeds pool size {self.slots.pool_size}",
            )
        outcomes: list[UnitOutcome | None] = [None] * len(units)
        starts: list[StartRecord] = []
        threads: list[threading.Thread] = []
        batch_started = self._clock()

        for index, unit in enumerate(units):
            if index > 0 and self.stagger_seconds > 0:
                self._sleep(self.stagger_seconds)
            position = self.slots.position_for(index)
            starts.append(
                StartRecord(
                    unit_id=unit.unit_id,
                    index=index,
                    position=position,
                    planned_offset_seconds=index * self.stagger_seconds,
                    started_at=self._clock() - batch_started,
                ),
            )
            thread = threading.Thread(
                target=self._run_into,
                args=(outcomes, index, unit, position),
                name=f"unit-{unit.unit_id}",
                daemon=True,
            )
            threads.append(thread)
            thread.start()
            logger.info(
                "Started %s (%s) at position %d",
                unit.unit_id,
                unit.capability_class,
                position,
            )

        for thread in threads:
            thread.join()

        result = BatchResult(
            outcomes=[outcome for outcome in outcomes if outcome is not None],
            starts=starts,
            elapsed_seconds=self._clock() - batch_started,
        )
        logger.info(
            "Batch done: %d succeeded, %d failed, %d abandoned in %.1fs",
            result.succeeded,
            result.failed,
            result.abandoned,
            result.elapsed_seconds,
        )
        return result

    def run_unit(self, unit: WorkUnit, position: int) -> UnitOutcome:
        """Drive one leased unit to a terminal state."""

        started = self._clock()
        run = _UnitRun(unit=unit, position=position)
        unit.status = WorkUnitStatus.RUNNING
        try:
            return self._drive(run, started=started)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unit %s crashed", unit.unit_id)
            return self._fail(run, error, started=started)

    def _drive(self, run: _UnitRun, *, started: float) -> UnitOutcome:
        unit = run.unit
        resume = Phase.PREPARE
        remediation: RemediationAction | None = None

        while True:
            try:
                if remediation is not None:
                    self._remediate(run, remediation)
                self._run_phases(run, resume)
            except PhaseFailed as failure:
                run.failures += 1
                unit.attempts = run.failures
                decision = self.escalation.record_failure(
                    capability_class=unit.capability_class,
                    category=failure.category,
                    attempt=run.failures,
                )
                self._journal_attempt(
                    unit,
                    attempt=run.failures,
                    phase=failure.phase,
                    status="failed",
                    decision=decision,
                    error=failure.message,
                    details=failure.details,
                )
                logger.warning(
                    "%s failed in %s (%s): %s",
                    unit.unit_id,
                    failure.phase.value,
                    failure.category.value,
                    failure.message,
                )
                if decision.action == RemediationAction.ABANDON:
                    return self._abandon(run, failure, started=started)
                if decision.delay_seconds > 0:
                    self._sleep(decision.delay_seconds)
                remediation = decision.action
                resume = (
                    failure.phase
                    if decision.action == RemediationAction.RETRY_IN_PLACE
                    and run.context is not None
                    else Phase.PREPARE
                )
                continue
            return self._succeed(run, started=started)

    def _run_into(
        self,
        outcomes: list[UnitOutcome | None],
        index: int,
        unit: WorkUnit,
        position: int,
    ) -> None:
        outcomes[index] = self.run_unit(unit, position)

    def _run_phases(self, run: _UnitRun, resume: Phase) -> None:
        handlers: dict[Phase, Callable[[_UnitRun], None]] = {
            Phase.PREPARE: self._prepare,
            Phase.CONFIGURE: self._configure,
            Phase.SUBMIT: self._submit,
            Phase.AWAIT_COMPLETION: self._await_completion,
            Phase.EXTRACT: self._extract,
            Phase.PERSIST: self._persist,
        }
        for phase in PHASE_ORDER[PHASE_ORDER.index(resume) :]:
            logger.debug("%s -> %s", run.unit.unit_id, phase.value)
            handlers[phase](run)

    def _remediate(self, run: _UnitRun, action: RemediationAction) -> None:
        unit = run.unit
        try:
            if action == RemediationAction.RECREATE_CONTEXT and run.context is not None:
                run.context = self.slots.recreate(run.context)
            elif action == RemediationAction.PROVISION_SURFACE:
                if run.context is not None:
                    run.context = self.slots.reprovision(run.context)
                else:
                    run.context = self.slots.reprovision_position(
                        unit.capability_class,
                        run.position,
                    )
        except ContextCreationFailed as error:
            run.context = None
            raise PhaseFailed(Phase.PREPARE, FailureCategory.CREATION_FAILED, str(error)) from error

    def _prepare(self, run: _UnitRun) -> None:
        unit = run.unit
        if run.context is None:
            try:
                run.context = self.slots.acquire(unit.capability_class, run.position)
            except ContextCreationFailed as error:
                raise PhaseFailed(
                    Phase.PREPARE,
                    FailureCategory.CREATION_FAILED,
                    str(error),
                ) from error
        if not self.slots.check_health(run.context):
            run.context = None
            raise PhaseFailed(Phase.PREPARE, FailureCategory.CONTEXT_LOST, "context lost before input")
        self._expect(run, Phase.PREPARE, self._surface(run).input_text(self._handle(run), unit.payload))

    def _configure(self, run: _UnitRun) -> None:
        unit = run.unit
        for category, name in unit.options.selections():
            result = CommandResult.failure("not attempted")
            for attempt in range(1, self.wait.configure_attempts + 1):
                result = self._surface(run).select_option(self._handle(run), category, name)
                if result.ok:
                    break
                self._ensure_context(run, Phase.CONFIGURE, result)
                # reported for the streak count only; option retries keep the short schedule
                decision = self.escalation.record_failure(
                    capability_class=unit.capability_class,
                    category=FailureCategory.CONFIGURATION_FAILED,
                    attempt=attempt,
                )
                self._journal_attempt(
                    unit,
                    attempt=attempt,
                    phase=Phase.CONFIGURE,
                    status="configuration_failed",
                    decision=decision,
                    error=result.error,
                    details={"option_category": category, "option_name": name},
                )
                delay = self.escalation.schedules[EscalationTier.NONE].delay_for(attempt)
                if attempt < self.wait.configure_attempts and delay > 0:
                    self._sleep(delay)
            if not result.ok:
                failure = f"{category}={name}: {result.error}"
                run.configuration_failures.append(failure)
                logger.warning("%s continues without %s", unit.unit_id, failure)

    def _submit(self, run: _UnitRun) -> None:
        self._expect(run, Phase.SUBMIT, self._surface(run).submit(self._handle(run)))

    def _await_completion(self, run: _UnitRun) -> None:
        """Poll the busy indicator until it stays off for the idle window."""

        max_wait = self.max_wait_seconds(run.unit)
        interval = self.wait.poll_interval_seconds
        idle_since: float | None = None
        waited = 0.0
        while True:
            result = self._expect(
                run,
                Phase.AWAIT_COMPLETION,
                self._surface(run).poll_busy(self._handle(run)),
            )
            if result.value:
                idle_since = None
            elif idle_since is None:
                idle_since = waited
            if idle_since is not None and waited - idle_since >= self.wait.idle_window_seconds:
                logger.debug("%s completed after %.1fs", run.unit.unit_id, waited)
                return
            if waited >= max_wait:
                raise PhaseFailed(
                    Phase.AWAIT_COMPLETION,
                    FailureCategory.TIMEOUT,
                    f"no completion within {max_wait}s",
                )
            self._sleep(interval)
            waited += interval

    def _extract(self, run: _UnitRun) -> None:
        errors: list[str] = []
        for strategy in self.wait.extraction_strategies:
            result = self._surface(run).extract_text(self._handle(run), strategy)
            text = str(result.value or "").strip() if result.ok else ""
            if text:
                run.text = text
                if strategy != self.wait.extraction_strategies[0]:
                    logger.info("%s extracted with %s strategy", run.unit.unit_id, strategy)
                return
            if not result.ok:
                self._ensure_context(run, Phase.EXTRACT, result)
            errors.append(f"{strategy}: {result.error or 'empty text'}")
        message = "; ".join(errors)
        classification = classify_failure(message)
        raise PhaseFailed(
            Phase.EXTRACT,
            classification.category,
            message,
            details=classification.to_event_details(capability_class=run.unit.capability_class),
        )

    def _persist(self, run: _UnitRun) -> None:
        unit = run.unit
        try:
            self.store.write(unit.target_cell, run.text or "")
            self.leases.forget(unit)
            if unit.log_cell:
                with self._log_lock:
                    self.store.write(unit.log_cell, self._log_entry(run))
        except StoreError as error:
            raise PhaseFailed(Phase.PERSIST, FailureCategory.NETWORK, str(error)) from error

    def max_wait_seconds(self, unit: WorkUnit) -> int:
        return self.wait.max_wait_by_feature.get(
            normalize_feature(unit.options.feature),
            self.wait.default_max_wait_seconds,
        )

    def _expect(self, run: _UnitRun, phase: Phase, result: CommandResult) -> CommandResult:
        if result.ok:
            return result
        self._ensure_context(run, phase, result)
        classification = classify_failure(result.error)
        raise PhaseFailed(
            phase,
            classification.category,
            result.error or "unknown error",
            details=classification.to_event_details(capability_class=run.unit.capability_class),
        )

    def _ensure_context(self, run: _UnitRun, phase: Phase, result: CommandResult) -> None:
        context = run.context
        if context is None or self.slots.check_health(context):
            return
        run.context = None
        raise PhaseFailed(
            phase,
            FailureCategory.CONTEXT_LOST,
            f"context lost: {result.error or 'surface gone'}",
        )

    def _surface(self, run: _UnitRun) -> InteractiveSurface:
        if run.context is None:
            raise PhaseFailed(Phase.PREPARE, FailureCategory.CONTEXT_LOST, "no context")
        return run.context.surface

    def _handle(self, run: _UnitRun) -> str:
        if run.context is None:
            raise PhaseFailed(Phase.PREPARE, FailureCategory.CONTEXT_LOST, "no context")
        return run.context.handle

    def _log_entry(self, run: _UnitRun) -> str:
        unit = run.unit
        options = ", ".join(f"{key}={value}" for key, value in unit.options.selections())
        line = (
            f"[{format_timestamp(self._now(), timespec='seconds')}] {unit.capability_class} "
            f"{unit.target_cell} attempts={unit.attempts + 1}"
        )
        if options:
            line += f" ({options})"
        if run.configuration_failures:
            line += f" config_failed: {'; '.join(run.configuration_failures)}"
        if unit.correlation_id is None or not unit.log_cell:
            return line
        lines = _sibling_log_lines(self.store.read(unit.log_cell))
        lines[unit.capability_class] = line
        return "\n".join(lines[key] for key in sorted(lines))

    def _succeed(self, run: _UnitRun, *, started: float) -> UnitOutcome:
        unit = run.unit
        unit.status = WorkUnitStatus.SUCCEEDED
        unit.result_text = run.text
        self.escalation.record_success(unit.capability_class)
        if run.context is not None:
            self.slots.release(run.context)
        outcome = UnitOutcome(
            unit_id=unit.unit_id,
            target_cell=unit.target_cell,
            capability_class=unit.capability_class,
            status=unit.status,
            text=run.text,
            failure_category=None,
            error=None,
            attempts=run.failures + 1,
            elapsed_seconds=self._clock() - started,
            configuration_failures=list(run.configuration_failures),
        )
        self._journal_attempt(unit, attempt=run.failures + 1, phase=Phase.PERSIST, status="succeeded")
        self._finish(unit, outcome)
        return outcome

    def _abandon(self, run: _UnitRun, failure: PhaseFailed, *, started: float) -> UnitOutcome:
        unit = run.unit
        unit.status = WorkUnitStatus.ABANDONED
        unit.failure_category = failure.category
        if run.context is not None:
            self.slots.mark_unhealthy(run.context)
            self.slots.release(run.context)
        try:
            if self.lease_settings.mark_abandoned:
                self.leases.mark_abandoned(unit, failure.category)
            else:
                self.leases.release(unit)
        except StoreError:
            logger.exception("Could not clear lease on %s", unit.target_cell)
        outcome = UnitOutcome(
            unit_id=unit.unit_id,
            target_cell=unit.target_cell,
            capability_class=unit.capability_class,
            status=unit.status,
            text=None,
            failure_category=failure.category,
            error=failure.message,
            attempts=run.failures,
            elapsed_seconds=self._clock() - started,
            configuration_failures=list(run.configuration_failures),
        )
        logger.error(
            "%s abandoned after %d attempts (%s)",
            unit.unit_id,
            run.failures,
            failure.category.value,
        )
        self._finish(unit, outcome)
        return outcome

    def _fail(self, run: _UnitRun, error: Exception, *, started: float) -> UnitOutcome:
        unit = run.unit
        if run.context is not None:
            self.slots.mark_unhealthy(run.context)
            self.slots.release(run.context)
        unit.status = WorkUnitStatus.FAILED
        unit.failure_category = FailureCategory.GENERAL
        try:
            self.leases.release(unit)
        except StoreError:
            logger.exception("Could not release lease on %s", unit.target_cell)
        outcome = UnitOutcome(
            unit_id=unit.unit_id,
            target_cell=unit.target_cell,
            capability_class=unit.capability_class,
            status=unit.status,
            text=None,
            failure_category=FailureCategory.GENERAL,
            error=str(error),
            attempts=max(1, run.failures),
            elapsed_seconds=self._clock() - started,
        )
        self._finish(unit, outcome)
        return outcome

    def _finish(self, unit: WorkUnit, outcome: UnitOutcome) -> None:
        if self.tracker is not None:
            self.tracker.mark_terminal(unit)
        if self.journal is not None:
            try:
                self.journal.record_outcome(outcome)
            except SQLAlchemyError:
                logger.exception("Could not journal outcome of %s", unit.unit_id)

    def _journal_attempt(
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
        if self.journal is None:
            return
        try:
            self.journal.record_attempt(
                unit,
                attempt=attempt,
                phase=phase,
                status=status,
                decision=decision,
                error=error,
                details=details,
            )
        except SQLAlchemyError:
            logger.exception("Could not journal attempt of %s", unit.unit_id)


def _sibling_log_lines(grid: list[list[str]]) -> dict[str, str]:
    """Lines already in a shared log cell, keyed by capability class.

    Each line reads ``[timestamp] class cell ...``; anything else is dropped.
    """

    content = grid[0][0] if grid and grid[0] else ""
    lines: dict[str, str] = {}
    for line in str(content).splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0].startswith("["):
            lines[parts[1]] = line
    return lines
