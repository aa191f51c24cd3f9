from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from sheet_relay.orchestrator.completion import GroupCompletionTracker
from sheet_relay.orchestrator.errors import LayoutError
from sheet_relay.orchestrator.generator import TaskGenerator
from sheet_relay.orchestrator.models import UnitOptions, WorkUnit

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Task Generation"),
]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

TWO_GROUPS = [
    ["menu", "", "log", "prompt", "answer", "prompt", "answer"],
    ["ai", "", "", "ChatGPT", "", "Claude", ""],
    ["model", "", "", "gpt-5", "", "", ""],
    ["feature", "", "", "", "", "", ""],
    ["column control", "", "", "", "", "", ""],
    ["depends", "", "", "", "", "1", ""],
]

MULTI_SURFACE = [
    ["menu", "", "log", "prompt", "prompt 2", "ChatGPT Answer", "Claude Answer", "Gemini Answer"],
    ["ai", "", "", "3 types", "", "", "", ""],
]


def _generator(tracker: GroupCompletionTracker | None = None) -> TaskGenerator:
    return TaskGenerator(tracker=tracker, now=lambda: NOW)


def _marker(owner: str, at: datetime) -> str:
    return f"IN PROGRESS {owner}\n{at.isoformat()}"


def test_units_join_non_empty_inputs(sheet_builder) -> None:
    snapshot = sheet_builder(
        {
            7: {"D": "first", "E": "second"},
            8: {"E": "only second"},
            9: {"C": "log only"},
        },
    )

    units = _generator().generate_units_for_group(0, snapshot)

    assert [unit.unit_id for unit in units] == ["g1-F7", "g1-F8"]
    first, second = units
    assert first.payload == "first\n\nsecond"
    assert first.input_cells == ("D7", "E7")
    assert first.capability_class == "chatgpt"
    assert first.log_cell == "C7"
    assert first.correlation_id is None
    assert second.payload == "only second"
    assert second.input_cells == ("E8",)


def test_completed_and_abandoned_cells_are_skipped(sheet_builder) -> None:
    snapshot = sheet_builder(
        {
            7: {"D": "a", "F": "done already"},
            8: {"D": "b", "F": "ABANDONED\n2026-03-01T11:00:00+00:00\ntimeout"},
            9: {"D": "c", "F": _marker("worker-b", NOW)},
            10: {"D": "d"},
        },
    )

    units = _generator().generate_units_for_group(0, snapshot)

    assert [unit.target_cell for unit in units] == ["F9", "F10"]


def test_limit_caps_units(sheet_builder) -> None:
    snapshot = sheet_builder({row: {"D": f"q{row}"} for row in range(7, 12)})

    units = _generator().generate_units_for_group(0, snapshot, limit=2)

    assert [unit.row for unit in units] == [7, 8]


def test_row_directives_filter_rows(sheet_builder) -> None:
    snapshot = sheet_builder(
        {
            7: {"D": "a"},
            8: {"B": "only this", "D": "b"},
            9: {"D": "c"},
        },
    )

    units = _generator().generate_units_for_group(0, snapshot)

    assert [unit.row for unit in units] == [8]


def test_group_options_flow_into_units(sheet_builder) -> None:
    snapshot = sheet_builder({7: {"D": "q"}}, header=TWO_GROUPS)

    unit = _generator().generate_units_for_group(0, snapshot)[0]

    assert unit.options == UnitOptions(model="gpt-5", feature="")
    assert unit.target_cell == "E7"


def test_multi_surface_row_expands_to_siblings(sheet_builder) -> None:
    snapshot = sheet_builder({3: {"D": "compare", "E": "these"}}, header=MULTI_SURFACE)

    units = _generator().generate_units_for_group(0, snapshot)

    assert [(unit.capability_class, unit.target_cell) for unit in units] == [
        ("chatgpt", "F3"),
        ("claude", "G3"),
        ("gemini", "H3"),
    ]
    assert {unit.correlation_id for unit in units} == {"g1-r3"}
    assert {unit.payload for unit in units} == {"compare\n\nthese"}
    assert {unit.log_cell for unit in units} == {"C3"}


def test_multi_surface_siblings_are_skipped_independently(sheet_builder) -> None:
    snapshot = sheet_builder(
        {3: {"D": "compare", "G": "claude already answered"}},
        header=MULTI_SURFACE,
    )

    units = _generator().generate_units_for_group(0, snapshot)

    assert [unit.capability_class for unit in units] == ["chatgpt", "gemini"]


def test_group_index_out_of_range(sheet_builder) -> None:
    with pytest.raises(LayoutError, match="out of range"):
        _generator().generate_units_for_group(1, sheet_builder())


def test_dependent_group_waits_for_pending_dependency(sheet_builder) -> None:
    snapshot = sheet_builder({7: {"D": "q1", "F": "q2"}}, header=TWO_GROUPS)

    assert _generator().generate_units_for_group(1, snapshot) == []


def test_dependent_group_runs_once_dependency_answered(sheet_builder) -> None:
    snapshot = sheet_builder({7: {"D": "q1", "E": "a1", "F": "q2"}}, header=TWO_GROUPS)

    units = _generator().generate_units_for_group(1, snapshot)

    assert [unit.unit_id for unit in units] == ["g2-G7"]
    assert units[0].capability_class == "claude"
    assert units[0].log_cell is None


def test_abandoned_dependency_counts_as_drained(sheet_builder) -> None:
    snapshot = sheet_builder(
        {7: {"D": "q1", "E": "ABANDONED\n2026-03-01T11:00:00+00:00\ntimeout", "F": "q2"}},
        header=TWO_GROUPS,
    )

    assert len(_generator().generate_units_for_group(1, snapshot)) == 1


def test_tracker_terminal_dependency_counts_as_drained(sheet_builder) -> None:
    snapshot = sheet_builder({7: {"D": "q1", "F": "q2"}}, header=TWO_GROUPS)
    tracker = GroupCompletionTracker()
    failed = WorkUnit(
        unit_id="g1-E7",
        group_number=1,
        row=7,
        input_cells=("D7",),
        payload="q1",
        target_cell="E7",
        capability_class="chatgpt",
    )
    tracker.register([failed])
    tracker.mark_terminal(failed)

    assert len(_generator(tracker).generate_units_for_group(1, snapshot)) == 1


def test_live_lease_on_dependency_blocks(sheet_builder) -> None:
    snapshot = sheet_builder(
        {7: {"D": "q1", "E": _marker("worker-b", NOW - timedelta(minutes=1)), "F": "q2"}},
        header=TWO_GROUPS,
    )

    assert _generator().generate_units_for_group(1, snapshot) == []


def test_column_directive_excludes_groups(sheet_builder) -> None:
    header = [list(row) for row in TWO_GROUPS]
    header[4][5] = "only this"
    snapshot = sheet_builder({7: {"D": "q1", "F": "q2"}}, header=header)
    generator = _generator()

    groups = generator.discover(snapshot)
    units = generator.generate_units_for_group(0, snapshot)

    assert [group.group_number for group in groups] == [2]
    assert [unit.unit_id for unit in units] == ["g2-G7"]


def test_stop_after_column_directive(sheet_builder) -> None:
    header = [list(row) for row in TWO_GROUPS]
    header[4][3] = "stop after"

    groups = _generator().discover(sheet_builder(header=header))

    assert [group.group_number for group in groups] == [1]


def test_generator_rereads_every_snapshot(sheet_builder) -> None:
    generator = _generator()
    before = sheet_builder({7: {"D": "q1"}})
    after = sheet_builder({7: {"D": "q1", "F": "answered by hand"}, 8: {"D": "q2"}})

    assert [unit.row for unit in generator.generate_units_for_group(0, before)] == [7]
    assert [unit.row for unit in generator.generate_units_for_group(0, after)] == [8]


def test_report_group_reads_answers_and_skips_markers(sheet_builder) -> None:
    header = [
        ["menu", "", "log", "prompt", "answer", "レポート化"],
        ["ai", "", "", "ChatGPT", "", ""],
    ]
    snapshot = sheet_builder(
        {
            7: {"D": "q1", "E": "a1"},
            8: {"D": "q2", "E": "ABANDONED\n2026-03-01T11:00:00+00:00\ntimeout"},
        },
        header=header,
    )

    units = _generator().generate_units_for_group(1, snapshot)

    assert [unit.unit_id for unit in units] == ["g2-F7"]
    assert units[0].payload == "a1"
    assert units[0].input_cells == ("E7",)
    assert units[0].capability_class == "report"
