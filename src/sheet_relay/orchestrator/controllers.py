"""Controllers for sheet-relay CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from sheet_relay.config import Settings
from sheet_relay.orchestrator.backend import (
    EchoProvisioner,
    EchoSurface,
    InMemoryTabularStore,
    SheetsTabularStore,
    TabularStore,
)
from sheet_relay.orchestrator.cells import index_to_column
from sheet_relay.orchestrator.common import utc_now
from sheet_relay.orchestrator.completion import GroupCompletionTracker
from sheet_relay.orchestrator.escalation import EscalationController
from sheet_relay.orchestrator.generator import TaskGenerator
from sheet_relay.orchestrator.journal import RunJournal
from sheet_relay.orchestrator.leases import LeaseConvention, LeaseManager
from sheet_relay.orchestrator.pipeline import PhasePipelineExecutor
from sheet_relay.orchestrator.scheduler import Scheduler, SchedulerRunSummary
from sheet_relay.orchestrator.slots import SlotManager


@dataclass(slots=True)
class RunCommand:
    """CLI input for processing the sheet."""

    db_path: Path | None
    csv_path: Path | None
    once: bool
    max_passes: int | None
    max_idle_passes: int = 1
    pool_size: int | None = None
    stagger_seconds: float | None = None
    surface: str | None = None


@dataclass(slots=True)
class PlanCommand:
    """CLI input for a dry-run listing of groups and units."""

    csv_path: Path | None
    limit: int = 50


@dataclass(slots=True)
class LeasesCommand:
    """CLI input for listing lease and abandoned markers."""

    csv_path: Path | None


@dataclass(slots=True)
class HistoryCommand:
    """CLI input for journal inspection."""

    db_path: Path | None
    limit: int
    unit_id: str | None = None


class SheetRelayCliController:
    """Command handlers; each returns the lines to print."""

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings(db_path=command.db_path, csv_path=command.csv_path)
        if command.pool_size is not None:
            settings.pool.pool_size = command.pool_size
        if command.stagger_seconds is not None:
            settings.pool.stagger_seconds = command.stagger_seconds
        if command.surface is not None:
            settings.surface.kind = command.surface
        settings.validate()

        with _store(settings) as store, _journal(settings) as journal:
            scheduler, slots = build_scheduler(settings, store=store, journal=journal)
            try:
                summary = (
                    scheduler.run_pass()
                    if command.once
                    else scheduler.run_loop(
                        max_passes=command.max_passes,
                        max_idle_passes=command.max_idle_passes,
                    )
                )
            finally:
                slots.close_all()

        return [_summary_line(summary), f"Run id: {journal.run_id}"]

    def plan(self, command: PlanCommand) -> list[str]:
        settings = _settings(db_path=None, csv_path=command.csv_path)
        settings.validate()
        with _store(settings, persist=False) as store:
            snapshot = store.read(settings.store.snapshot_range)

        tracker = GroupCompletionTracker()
        convention = LeaseConvention(settings.lease)
        generator = TaskGenerator(
            tracker=tracker,
            convention=convention,
            default_class=settings.surface.default_class,
        )
        groups = generator.discover(snapshot)
        lines = [f"Groups: {len(groups)}"]
        for index, group in enumerate(groups):
            depends = ",".join(str(number) for number in group.depends_on) or "-"
            lines.append(
                f"  group {group.group_number}: inputs={','.join(group.input_columns)} "
                f"outputs={','.join(f'{name}:{column}' for name, column in group.output_columns.items())} "
                f"depends={depends} model={group.model or '-'} feature={group.feature or '-'}",
            )
            units = generator.generate_units_for_group(index, snapshot, limit=command.limit)
            for unit in units:
                lines.append(
                    f"    {unit.unit_id} class={unit.capability_class} row={unit.row} "
                    f"inputs={','.join(unit.input_cells)}",
                )
            if not units:
                lines.append("    (no pending units)")
        return lines

    def leases(self, command: LeasesCommand) -> list[str]:
        settings = _settings(db_path=None, csv_path=command.csv_path)
        settings.validate()
        with _store(settings, persist=False) as store:
            snapshot = store.read(settings.store.snapshot_range)

        convention = LeaseConvention(settings.lease)
        features = _features_by_column(snapshot, settings)
        now = utc_now()
        lines: list[str] = []
        for row_index, values in enumerate(snapshot, start=1):
            for column_index, value in enumerate(values):
                column = index_to_column(column_index)
                cell = f"{column}{row_index}"
                if convention.is_abandoned(value):
                    lines.append(f"  {cell} abandoned {' '.join(value.strip().splitlines()[1:])}")
                    continue
                lease = convention.parse_marker(cell, value, feature=features.get(column, ""))
                if lease is None:
                    continue
                state = "live" if lease.is_live(now) else "expired"
                acquired = lease.acquired_at.isoformat() if lease.acquired_at else "unknown"
                lines.append(f"  {cell} {state} owner={lease.owner or '-'} acquired_at={acquired}")
        return [f"Markers: {len(lines)}", *lines]

    def history(self, command: HistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _journal(settings) as journal:
            if command.unit_id:
                attempts = journal.list_attempts(command.unit_id)
                lines = [f"Attempts for {command.unit_id}: {len(attempts)}"]
                for attempt in attempts:
                    lines.append(
                        f"  #{attempt.attempt} {attempt.phase} status={attempt.status} "
                        f"category={attempt.category or '-'} tier={attempt.tier or '-'} "
                        f"action={attempt.action or '-'} at={attempt.created_at.isoformat()}",
                    )
                return lines

            outcomes = journal.list_recent_outcomes(limit=command.limit)
        lines = [f"Outcomes: {len(outcomes)}"]
        for outcome in outcomes:
            lines.append(
                f"  {outcome.unit_id} {outcome.status} class={outcome.capability_class} "
                f"attempts={outcome.attempts} category={outcome.failure_category or '-'} "
                f"elapsed={outcome.elapsed_seconds:.1f}s at={outcome.finished_at.isoformat()}",
            )
        return lines


def build_scheduler(
    settings: Settings,
    *,
    store: TabularStore,
    journal: RunJournal | None = None,
) -> tuple[Scheduler, SlotManager]:
    """Wire the engine components for one run."""

    tracker = GroupCompletionTracker()
    leases = LeaseManager(store, owner=settings.pool.worker_id, settings=settings.lease)
    generator = TaskGenerator(
        tracker=tracker,
        convention=leases.convention,
        default_class=settings.surface.default_class,
    )
    surface, provisioner = _surface(settings)
    slots = SlotManager(
        surface,
        pool_size=settings.pool.pool_size,
        urls=settings.surface.urls,
        provisioner=provisioner,
    )
    executor = PhasePipelineExecutor(
        slots=slots,
        leases=leases,
        store=store,
        escalation=EscalationController(),
        wait=settings.wait,
        lease_settings=settings.lease,
        stagger_seconds=settings.pool.stagger_seconds,
        tracker=tracker,
        journal=journal,
    )
    scheduler = Scheduler(
        store=store,
        generator=generator,
        leases=leases,
        executor=executor,
        tracker=tracker,
        pool_size=settings.pool.pool_size,
        snapshot_range=settings.store.snapshot_range,
        dependency_wait_seconds=settings.wait.dependency_wait_seconds,
        poll_interval_seconds=settings.pool.pass_interval_seconds,
    )
    return scheduler, slots


def _settings(*, db_path: Path | None, csv_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if csv_path is not None:
        settings.store.backend = "csv"
        settings.store.csv_path = csv_path
    return settings


def _surface(settings: Settings) -> tuple[EchoSurface, EchoProvisioner]:
    if settings.surface.kind != "echo":
        raise ValueError(f"Unsupported surface: {settings.surface.kind!r}")
    return EchoSurface(name="echo"), EchoProvisioner()


def _features_by_column(snapshot: list[list[str]], settings: Settings) -> dict[str, str]:
    generator = TaskGenerator(default_class=settings.surface.default_class)
    features: dict[str, str] = {}
    for group in generator.discover(snapshot):
        for column in group.output_columns.values():
            features[column] = group.feature
    return features


def _summary_line(summary: SchedulerRunSummary) -> str:
    return (
        "Run summary: "
        f"passes={summary.passes} batches={summary.batches} "
        f"succeeded={summary.succeeded} failed={summary.failed} "
        f"abandoned={summary.abandoned} lease_conflicts={summary.lease_conflicts} "
        f"store_errors={summary.store_errors} layout_errors={summary.layout_errors}"
    )


@contextmanager
def _store(settings: Settings, *, persist: bool = True) -> Iterator[TabularStore]:
    if settings.store.backend == "sheets":
        with SheetsTabularStore(
            spreadsheet_id=settings.store.spreadsheet_id,
            access_token=settings.store.access_token,
            sheet_name=settings.store.sheet_name,
            timeout_seconds=settings.store.request_timeout_seconds,
            max_retries=settings.store.max_retries,
        ) as store:
            yield store
        return

    csv_path = settings.store.csv_path
    if csv_path is None:
        raise ValueError("CSV store requires a path.")
    store = InMemoryTabularStore.from_csv(csv_path)
    try:
        yield store
    finally:
        if persist:
            store.save_csv(csv_path)


@contextmanager
def _journal(settings: Settings) -> Iterator[RunJournal]:
    journal = RunJournal(settings.db_path)
    journal.init_schema()
    try:
        yield journal
    finally:
        journal.close()
