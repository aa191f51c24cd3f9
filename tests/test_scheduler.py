from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure

from sheet_relay.config import WaitSettings
from sheet_relay.orchestrator.backend import EchoSurface, InMemoryTabularStore
from sheet_relay.orchestrator.completion import GroupCompletionTracker
from sheet_relay.orchestrator.errors import StoreError
from sheet_relay.orchestrator.escalation import EscalationController
from sheet_relay.orchestrator.generator import TaskGenerator
from sheet_relay.orchestrator.leases import LeaseManager
from sheet_relay.orchestrator.pipeline import PhasePipelineExecutor
from sheet_relay.orchestrator.scheduler import Scheduler, SchedulerRunSummary
from sheet_relay.orchestrator.slots import SlotManager

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Scheduler"),
]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

TWO_GROUPS = [
    ["menu", "", "log", "prompt", "answer", "prompt", "answer"],
    ["ai", "", "", "ChatGPT", "", "Claude", ""],
    ["model", "", "", "", "", "", ""],
    ["feature", "", "", "", "", "", ""],
    ["column control", "", "", "", "", "", ""],
    ["depends", "", "", "", "", "1", ""],
]


def _scheduler(store: InMemoryTabularStore, clock, *, pool_size: int = 3) -> Scheduler:
    tracker = GroupCompletionTracker()
    leases = LeaseManager(store, owner="worker-a", now=lambda: NOW)
    generator = TaskGenerator(tracker=tracker, convention=leases.convention, now=lambda: NOW)
    slots = SlotManager(EchoSurface(busy_polls=0), pool_size=pool_size, now=lambda: NOW)
    executor = PhasePipelineExecutor(
        slots=slots,
        leases=leases,
        store=store,
        escalation=EscalationController(),
        wait=WaitSettings(poll_interval_seconds=1.0, idle_window_seconds=0.0),
        stagger_seconds=3.0,
        tracker=tracker,
        sleep=clock.sleep,
        clock=clock,
        now=lambda: NOW,
    )
    return Scheduler(
        store=store,
        generator=generator,
        leases=leases,
        executor=executor,
        tracker=tracker,
        pool_size=pool_size,
        dependency_wait_seconds=0.05,
        poll_interval_seconds=0.0,
    )


def _cell(store: InMemoryTabularStore, ref: str) -> str:
    grid = store.read(ref)
    return grid[0][0] if grid and grid[0] else ""


def test_pass_splits_group_into_pool_sized_batches(store_factory, manual_clock) -> None:
    store = store_factory({row: {"D": f"q{row}"} for row in range(7, 11)})

    summary = _scheduler(store, manual_clock).run_pass()

    assert summary.passes == 1
    assert summary.batches == 2
    assert summary.succeeded == 4
    assert [_cell(store, f"F{row}") for row in range(7, 11)] == [
        "[echo] q7",
        "[echo] q8",
        "[echo] q9",
        "[echo] q10",
    ]


def test_dependent_group_runs_after_its_dependency(store_factory, manual_clock) -> None:
    store = store_factory(
        {7: {"D": "q7", "F": "r7"}, 8: {"D": "q8", "F": "r8"}},
        header=TWO_GROUPS,
    )

    summary = _scheduler(store, manual_clock).run_pass()

    assert summary.batches == 2
    assert summary.succeeded == 4
    assert _cell(store, "E7") == "[echo] q7"
    assert _cell(store, "G8") == "[echo] r8"


def test_live_foreign_lease_holds_back_dependent_group(store_factory, manual_clock) -> None:
    foreign = f"IN PROGRESS worker-b\n{(NOW - timedelta(minutes=1)).isoformat()}"
    store = store_factory(
        {7: {"D": "q7", "F": "r7"}, 8: {"D": "q8", "E": foreign, "F": "r8"}},
        header=TWO_GROUPS,
    )

    summary = _scheduler(store, manual_clock).run_pass()

    assert summary.batches == 1
    assert summary.succeeded == 1
    assert _cell(store, "E7") == "[echo] q7"
    assert _cell(store, "E8") == foreign
    assert _cell(store, "G7") == ""


class _RivalStore(InMemoryTabularStore):
    def write(self, cell_ref: str, value: str) -> None:
        super().write(cell_ref, value)
        if value.startswith("IN PROGRESS worker-a"):
            super().write(cell_ref, f"IN PROGRESS worker-b\n{NOW.isoformat()}")


def test_lost_lease_races_are_counted(sheet_builder, manual_clock) -> None:
    store = _RivalStore(sheet_builder({7: {"D": "q7"}}))

    summary = _scheduler(store, manual_clock).run_pass()

    assert summary.lease_conflicts == 1
    assert summary.batches == 0
    assert _cell(store, "F7").startswith("IN PROGRESS worker-b")


class _BrokenStore(InMemoryTabularStore):
    def read(self, range_spec: str) -> list[list[str]]:
        raise StoreError("503 backend error")


def test_snapshot_failure_ends_pass(sheet_builder, manual_clock) -> None:
    store = _BrokenStore(sheet_builder({7: {"D": "q7"}}))

    summary = _scheduler(store, manual_clock).run_pass()

    assert summary.store_errors == 1
    assert summary.batches == 0


class _DependencyEditingStore(InMemoryTabularStore):
    """An operator points the only group at a missing group once its answer lands."""

    def write(self, cell_ref: str, value: str) -> None:
        super().write(cell_ref, value)
        if cell_ref == "F7" and value.startswith("[echo]"):
            super().write("D6", "2")


def test_invalid_layout_mid_run_ends_the_pass_and_is_retried(
    sheet_builder,
    manual_clock,
) -> None:
    store = _DependencyEditingStore(sheet_builder({7: {"D": "q7"}}))

    summary = _scheduler(store, manual_clock).run_loop(max_passes=3)

    assert summary.passes == 3
    assert summary.batches == 1
    assert summary.succeeded == 1
    assert summary.layout_errors == 3
    assert _cell(store, "F7") == "[echo] q7"


def test_layout_fixed_between_passes_resumes_work(sheet_builder, manual_clock) -> None:
    store = InMemoryTabularStore(sheet_builder({7: {"D": "q7"}}))
    store.write("D6", "9")
    scheduler = _scheduler(store, manual_clock)

    broken = scheduler.run_pass()
    store.write("D6", "")
    fixed = scheduler.run_pass()

    assert broken.layout_errors == 1
    assert broken.batches == 0
    assert fixed.layout_errors == 0
    assert fixed.succeeded == 1


def test_loop_stops_after_idle_pass(store_factory, manual_clock) -> None:
    store = store_factory({7: {"D": "q7"}})

    summary = _scheduler(store, manual_clock).run_loop(max_idle_passes=1)

    assert summary.passes == 2
    assert summary.batches == 1
    assert summary.succeeded == 1


def test_loop_honors_max_passes_and_stop_request(store_factory, manual_clock) -> None:
    store = store_factory({7: {"D": "q7"}})
    scheduler = _scheduler(store, manual_clock)

    assert scheduler.run_loop(max_passes=1, max_idle_passes=5).passes == 1

    scheduler.request_stop()
    assert scheduler.run_loop().passes == 0


def test_summary_merge() -> None:
    total = SchedulerRunSummary(passes=1, batches=2, succeeded=3)
    total.merge(
        SchedulerRunSummary(passes=1, failed=1, abandoned=2, store_errors=1, layout_errors=1),
    )

    assert total == SchedulerRunSummary(
        passes=2,
        batches=2,
        succeeded=3,
        failed=1,
        abandoned=2,
        store_errors=1,
        layout_errors=1,
    )
