"""Top-level loop: snapshot -> units -> leases -> batch -> re-derive."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sheet_relay.orchestrator.backend.base import TabularStore
from sheet_relay.orchestrator.completion import GroupCompletionTracker
from sheet_relay.orchestrator.errors import LayoutError, StoreError
from sheet_relay.orchestrator.generator import TaskGenerator
from sheet_relay.orchestrator.leases import LeaseManager
from sheet_relay.orchestrator.models import BatchResult, WorkGroup, WorkUnit
from sheet_relay.orchestrator.pipeline import PhasePipelineExecutor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    passes: int = 0
    batches: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0
    lease_conflicts: int = 0
    store_errors: int = 0
    layout_errors: int = 0

    def add_batch(self, result: BatchResult) -> None:
        self.batches += 1
        self.succeeded += result.succeeded
        self.failed += result.failed
        self.abandoned += result.abandoned

    def merge(self, other: SchedulerRunSummary) -> None:
        self.passes += other.passes
        self.batches += other.batches
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.abandoned += other.abandoned
        self.lease_conflicts += other.lease_conflicts
        self.store_errors += other.store_errors
        self.layout_errors += other.layout_errors


class Scheduler:
    """Processes groups in sequence order, one leased batch at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TabularStore,
        generator: TaskGenerator,
        leases: LeaseManager,
        executor: PhasePipelineExecutor,
        tracker: GroupCompletionTracker,
        pool_size: int,
        snapshot_range: str = "A1:ZZ1000",
        dependency_wait_seconds: float = 30.0,
        poll_interval_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.generator = generator
        self.leases = leases
        self.executor = executor
        self.tracker = tracker
        self.pool_size = pool_size
        self.snapshot_range = snapshot_range
        self.dependency_wait_seconds = dependency_wait_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def run_pass(self) -> SchedulerRunSummary:
        """Walk every group once, re-reading the sheet before each batch."""

        summary = SchedulerRunSummary(passes=1)
        self.tracker.reset()
        try:
            snapshot = self._snapshot()
        except StoreError:
            logger.exception("Could not read sheet snapshot")
            summary.store_errors += 1
            return summary

        try:
            groups = self.generator.discover(snapshot)
            discovered = {group.group_number for group in groups}
            logger.info("Discovered %d groups", len(groups))
            for group in groups:
                if self._stop_requested:
                    break
                self._wait_for_dependencies(group, discovered)
                self._run_group(group, summary)
        except LayoutError:
            # operators edit the header rows mid-run; the next pass reads them again
            logger.exception("Sheet layout is invalid; ending pass")
            summary.layout_errors += 1
            return summary
        self.leases.finish_first_pass()
        return summary

    def run_loop(
        self,
        *,
        max_passes: int | None = None,
        max_idle_passes: int = 1,
    ) -> SchedulerRunSummary:
        """Repeat passes until the sheet is idle or ``max_passes`` is reached."""

        aggregate = SchedulerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_passes is not None and aggregate.passes >= max_passes:
                    return aggregate

                summary = self.run_pass()
                aggregate.merge(summary)

                if summary.batches == 0 and not summary.layout_errors:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_passes:
                        return aggregate
                else:
                    consecutive_idle = 0
                self._sleep_with_stop(self.poll_interval_seconds)

    def request_stop(self) -> None:
        self._stop_requested = True

    def _run_group(self, group: WorkGroup, summary: SchedulerRunSummary) -> None:
        try:
            self._drain_group(group, summary)
        finally:
            self.tracker.mark_empty(group.group_number)

    def _drain_group(self, group: WorkGroup, summary: SchedulerRunSummary) -> None:
        attempted: set[str] = set()
        while not self._stop_requested:
            try:
                snapshot = self._snapshot()
            except StoreError:
                logger.exception("Could not refresh snapshot for group %d", group.group_number)
                summary.store_errors += 1
                break
            index = _group_index(self.generator.discover(snapshot), group.group_number)
            if index is None:
                logger.info("Group %d disappeared from the sheet", group.group_number)
                break

            units = self.generator.generate_units_for_group(index, snapshot)
            candidates = [unit for unit in units if unit.unit_id not in attempted]
            eligible = self.leases.list_eligible(candidates, self.pool_size, snapshot=snapshot)
            if not eligible:
                break

            leased = self._lease_batch(eligible, attempted, summary)
            if leased is None:
                break
            if not leased:
                continue
            self.tracker.register(leased)
            summary.add_batch(self.executor.run_batch(leased))

    def _lease_batch(
        self,
        eligible: list[WorkUnit],
        attempted: set[str],
        summary: SchedulerRunSummary,
    ) -> list[WorkUnit] | None:
        """Lease what we can; ``None`` when the store failed mid-way."""

        leased: list[WorkUnit] = []
        try:
            for unit in eligible:
                attempted.add(unit.unit_id)
                if self.leases.try_acquire(unit):
                    leased.append(unit)
                else:
                    summary.lease_conflicts += 1
        except StoreError:
            logger.exception("Store failed while leasing; releasing %d leases", len(leased))
            summary.store_errors += 1
            self._release_best_effort(leased)
            return None
        return leased

    def _release_best_effort(self, units: list[WorkUnit]) -> None:
        for unit in units:
            try:
                self.leases.release(unit)
            except StoreError:
                logger.warning("Could not release lease on %s", unit.target_cell)

    def _wait_for_dependencies(self, group: WorkGroup, discovered: set[int]) -> None:
        for dependency in group.depends_on:
            if dependency not in discovered:
                continue
            if self.tracker.wait_drained(dependency, timeout=self.dependency_wait_seconds):
                continue
            logger.warning(
                "Group %d: dependency %d not drained after %.0fs",
                group.group_number,
                dependency,
                self.dependency_wait_seconds,
            )

    def _snapshot(self) -> list[list[str]]:
        return self.store.read(self.snapshot_range)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s; finishing the current batch", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _group_index(groups: list[WorkGroup], group_number: int) -> int | None:
    for index, group in enumerate(groups):
        if group.group_number == group_number:
            return index
    return None
