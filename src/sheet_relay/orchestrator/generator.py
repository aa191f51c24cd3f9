"""Derive work units from a fresh sheet snapshot.

Nothing is cached between calls: operators edit the sheet while a run is in
progress, so every call re-parses the snapshot it is given.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sheet_relay.orchestrator.cells import cell_ref, cell_value, column_to_index, grid_value
from sheet_relay.orchestrator.common import utc_now
from sheet_relay.orchestrator.completion import GroupCompletionTracker
from sheet_relay.orchestrator.errors import LayoutError
from sheet_relay.orchestrator.layout import (
    SheetLayout,
    last_input_row,
    parse_layout,
    row_directives,
    should_process,
)
from sheet_relay.orchestrator.leases import LeaseConvention
from sheet_relay.orchestrator.models import RowTask, WorkGroup, WorkUnit

logger = logging.getLogger(__name__)

PAYLOAD_SEPARATOR = "\n\n"


class TaskGenerator:
    """Turns snapshots into groups, row tasks and work units."""

    def __init__(
        self,
        *,
        tracker: GroupCompletionTracker | None = None,
        convention: LeaseConvention | None = None,
        default_class: str = "chatgpt",
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tracker = tracker
        self.convention = convention or LeaseConvention()
        self.default_class = default_class
        self._now = now

    def discover(self, snapshot: list[list[str]]) -> list[WorkGroup]:
        """Groups in processing order, after column directives."""

        return self._groups(self._layout(snapshot))

    def generate_units_for_group(
        self,
        group_index: int,
        snapshot: list[list[str]],
        limit: int | None = None,
    ) -> list[WorkUnit]:
        """Pending units of the ``group_index``-th discovered group.

        Yields nothing while any declared dependency is not drained. Cells
        holding an answer or an abandoned marker are skipped; cells holding a
        lease marker are kept and left to the lease manager.
        """

        layout = self._layout(snapshot)
        groups = self._groups(layout)
        if group_index < 0 or group_index >= len(groups):
            raise LayoutError(f"Group index {group_index} out of range ({len(groups)} groups).")
        group = groups[group_index]

        if not self.dependencies_drained(group, layout, snapshot):
            logger.info(
                "Group %d waits on dependencies %s",
                group.group_number,
                ",".join(str(number) for number in group.depends_on),
            )
            return []

        units: list[WorkUnit] = []
        for row_task in self.row_tasks(group, layout, snapshot):
            for unit in self.expand_multi_surface(group, row_task):
                value = cell_value(snapshot, unit.target_cell)
                if self.convention.is_completed(value) or self.convention.is_abandoned(value):
                    continue
                units.append(unit)
                if limit is not None and len(units) >= limit:
                    return units
        return units

    def row_tasks(
        self,
        group: WorkGroup,
        layout: SheetLayout,
        snapshot: list[list[str]],
    ) -> list[RowTask]:
        """Rows of the group holding input, after row directives."""

        start = layout.data_start_row
        end = last_input_row(snapshot, group, start_row=start)
        directives = row_directives(snapshot, start_row=start, end_row=end)
        tasks: list[RowTask] = []
        for row in range(start, end + 1):
            if not should_process(row, directives):
                continue
            cells: list[str] = []
            texts: list[str] = []
            for column in group.input_columns:
                text = grid_value(snapshot, row=row, column_index=column_to_index(column)).strip()
                # an upstream cell still being worked on or given up is not input
                if self.convention.is_marker(text) or self.convention.is_abandoned(text):
                    continue
                if text:
                    cells.append(cell_ref(column, row))
                    texts.append(text)
            if not texts:
                continue
            tasks.append(
                RowTask(
                    group_number=group.group_number,
                    row=row,
                    input_cells=tuple(cells),
                    payload=PAYLOAD_SEPARATOR.join(texts),
                ),
            )
        return tasks

    def expand_multi_surface(self, group: WorkGroup, row_task: RowTask) -> list[WorkUnit]:
        """One unit per capability class of the group, in column order.

        Siblings of a multi-surface row share a correlation id.
        """

        correlation_id = f"g{group.group_number}-r{row_task.row}" if group.multi_surface else None
        log_cell = cell_ref(group.log_column, row_task.row) if group.log_column else None
        units: list[WorkUnit] = []
        for capability_class, column in group.output_columns.items():
            target = cell_ref(column, row_task.row)
            units.append(
                WorkUnit(
                    unit_id=f"g{group.group_number}-{target}",
                    group_number=group.group_number,
                    row=row_task.row,
                    input_cells=row_task.input_cells,
                    payload=row_task.payload,
                    target_cell=target,
                    capability_class=capability_class,
                    options=group.options,
                    correlation_id=correlation_id,
                    log_cell=log_cell,
                ),
            )
        return units

    def dependencies_drained(
        self,
        group: WorkGroup,
        layout: SheetLayout,
        snapshot: list[list[str]],
    ) -> bool:
        """True when every dependency has no unit left to run or running."""

        for number in group.depends_on:
            dependency = layout.group(number)
            if not should_process(number, layout.column_directives):
                logger.debug("Dependency %d is excluded by column directives", number)
                continue
            if not self._drained(dependency, layout, snapshot):
                return False
        return True

    def _drained(self, group: WorkGroup, layout: SheetLayout, snapshot: list[list[str]]) -> bool:
        now = self._now()
        for row_task in self.row_tasks(group, layout, snapshot):
            for unit in self.expand_multi_surface(group, row_task):
                value = cell_value(snapshot, unit.target_cell)
                lease = self.convention.parse_marker(
                    unit.target_cell,
                    value,
                    feature=unit.options.feature,
                )
                if lease is not None and lease.is_live(now):
                    return False
                if self.convention.is_completed(value) or self.convention.is_abandoned(value):
                    continue
                if self.tracker is not None and self.tracker.is_terminal(unit.unit_id):
                    continue
                return False
        return True

    def _layout(self, snapshot: list[list[str]]) -> SheetLayout:
        return parse_layout(snapshot, default_class=self.default_class)

    def _groups(self, layout: SheetLayout) -> list[WorkGroup]:
        groups = [
            group
            for group in layout.groups
            if should_process(group.group_number, layout.column_directives)
        ]
        return sorted(groups, key=lambda group: group.sequence)
