"""Sheet layout convention: special rows, group headers and directives.

Column A labels the special rows (menu, ai, model, feature, column control,
depends); data rows start after the last of them. In the menu row each
``prompt`` header opens a group, ``prompt 2``..``prompt 5`` extend its
inputs, a ``log`` header right before the first prompt names the group's log
column and the ``answer`` header(s) after the last prompt are the outputs.

A ``レポート化`` (report) or ``Genspark（...）`` header is a one-column group of
its own: it reads the column on its left, writes into its own column and
waits for the group that fills that left column.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from sheet_relay.orchestrator.cells import column_to_index, grid_value, index_to_column
from sheet_relay.orchestrator.errors import LayoutError
from sheet_relay.orchestrator.models import GroupKind, WorkGroup

logger = logging.getLogger(__name__)

MULTI_SURFACE_CLASSES: tuple[str, ...] = ("chatgpt", "claude", "gemini")
ROW_CONTROL_COLUMN_INDEX = 1


class RowKind(str, Enum):
    MENU = "menu"
    AI = "ai"
    MODEL = "model"
    FEATURE = "feature"
    COLUMN_CONTROL = "column_control"
    DEPENDS = "depends"


class Directive(str, Enum):
    """Operator processing-range directive for rows or columns."""

    START = "start"
    STOP_AFTER = "stop_after"
    ONLY = "only"


_ROW_LABELS: dict[str, RowKind] = {
    "menu": RowKind.MENU,
    "メニュー": RowKind.MENU,
    "ai": RowKind.AI,
    "model": RowKind.MODEL,
    "モデル": RowKind.MODEL,
    "feature": RowKind.FEATURE,
    "機能": RowKind.FEATURE,
    "column control": RowKind.COLUMN_CONTROL,
    "列制御": RowKind.COLUMN_CONTROL,
    "depends": RowKind.DEPENDS,
    "依存": RowKind.DEPENDS,
}

_ROW_DIRECTIVES: dict[str, Directive] = {
    "start here": Directive.START,
    "この行から処理": Directive.START,
    "stop after": Directive.STOP_AFTER,
    "この行の処理後に停止": Directive.STOP_AFTER,
    "only this": Directive.ONLY,
    "この行のみ処理": Directive.ONLY,
}

_COLUMN_DIRECTIVES: dict[str, Directive] = {
    "start here": Directive.START,
    "この列から処理": Directive.START,
    "stop after": Directive.STOP_AFTER,
    "この列の処理後に停止": Directive.STOP_AFTER,
    "only this": Directive.ONLY,
    "この列のみ処理": Directive.ONLY,
}

_MULTI_SURFACE_MARKERS = ("3 types", "3種類", "multi")
_PROMPT_RE = re.compile(r"^(?:prompt|プロンプト)\s*([2-5])?$")
_ANSWER_HEADERS = ("answer", "回答")
_LOG_HEADERS = ("log", "ログ")
_CLASS_ANSWER_RE = re.compile(r"^(chatgpt|claude|gemini)\s*(?:answer|回答)$")
_REPORT_HEADERS = ("レポート化", "report")
# first match wins, so the specific genspark variants come before the catch-all
_GENSPARK_HEADERS: tuple[tuple[str, GroupKind], ...] = (
    ("genspark（スライド）", GroupKind.GENSPARK_SLIDE),
    ("genspark (slides)", GroupKind.GENSPARK_SLIDE),
    ("genspark（ファクトチェック）", GroupKind.GENSPARK_FACTCHECK),
    ("genspark (fact check)", GroupKind.GENSPARK_FACTCHECK),
    ("genspark（", GroupKind.GENSPARK),
    ("genspark (", GroupKind.GENSPARK),
)


@dataclass(slots=True)
class SheetLayout:
    """Parsed structure of one snapshot."""

    rows: dict[RowKind, int]
    data_start_row: int
    groups: list[WorkGroup] = field(default_factory=list)
    column_directives: dict[int, set[Directive]] = field(default_factory=dict)

    def group(self, group_number: int) -> WorkGroup:
        for group in self.groups:
            if group.group_number == group_number:
                return group
        raise LayoutError(f"Unknown group: {group_number}")


def normalize_label(value: str) -> str:
    return " ".join(str(value).strip().lower().split())


def parse_layout(snapshot: list[list[str]], *, default_class: str = "chatgpt") -> SheetLayout:
    """Interpret the special rows and group headers of a snapshot."""

    rows = _find_special_rows(snapshot)
    if RowKind.MENU not in rows:
        raise LayoutError("Menu row not found in column A.")
    menu_row = rows[RowKind.MENU]
    data_start_row = max(rows.values()) + 1

    layout = SheetLayout(rows=rows, data_start_row=data_start_row)
    menu = snapshot[menu_row - 1] if menu_row - 1 < len(snapshot) else []
    column_index = 0
    while column_index < len(menu):
        header = normalize_label(menu[column_index])
        kind = special_group_kind(header)
        if kind is not None:
            layout.groups.append(
                _parse_special_group(
                    snapshot,
                    rows,
                    layout.groups,
                    kind=kind,
                    column_index=column_index,
                    group_number=len(layout.groups) + 1,
                ),
            )
            column_index += 1
            continue
        match = _PROMPT_RE.match(header)
        if match is None or match.group(1) is not None:
            column_index += 1
            continue
        group, column_index = _parse_group(
            snapshot,
            rows,
            menu,
            first_prompt_index=column_index,
            group_number=len(layout.groups) + 1,
            default_class=default_class,
        )
        layout.groups.append(group)

    _validate_dependencies(layout.groups)
    layout.column_directives = _collect_column_directives(snapshot, rows, menu, layout.groups)
    return layout


def special_group_kind(header: str) -> GroupKind | None:
    """Kind of a one-column post-processing header, or ``None`` for anything else."""

    label = normalize_label(header)
    if label in _REPORT_HEADERS:
        return GroupKind.REPORT
    for marker, kind in _GENSPARK_HEADERS:
        if marker in label:
            return kind
    return None


def row_directives(
    snapshot: list[list[str]],
    *,
    start_row: int,
    end_row: int,
) -> dict[int, set[Directive]]:
    """Collect row directives from the control column of data rows."""

    directives: dict[int, set[Directive]] = {}
    for row in range(start_row, end_row + 1):
        value = normalize_label(
            grid_value(snapshot, row=row, column_index=ROW_CONTROL_COLUMN_INDEX),
        )
        directive = _ROW_DIRECTIVES.get(value)
        if directive is not None:
            directives.setdefault(row, set()).add(directive)
    return directives


def should_process(index: int, directives: dict[int, set[Directive]]) -> bool:
    """Apply start/stop/only directives to a row number or group number.

    ``only`` anywhere restricts processing to the marked indexes; otherwise
    every start bound and every stop bound must hold.
    """

    if not directives:
        return True
    only = {key for key, kinds in directives.items() if Directive.ONLY in kinds}
    if only:
        return index in only
    for key, kinds in directives.items():
        if Directive.START in kinds and index < key:
            return False
        if Directive.STOP_AFTER in kinds and index > key:
            return False
    return True


def last_input_row(snapshot: list[list[str]], group: WorkGroup, *, start_row: int) -> int:
    """Last row at or after ``start_row`` holding any input of the group."""

    indexes = [column_to_index(column) for column in group.input_columns]
    last = start_row - 1
    for row in range(start_row, len(snapshot) + 1):
        if any(grid_value(snapshot, row=row, column_index=index).strip() for index in indexes):
            last = row
    return last


def _find_special_rows(snapshot: list[list[str]]) -> dict[RowKind, int]:
    rows: dict[RowKind, int] = {}
    for row_index, values in enumerate(snapshot):
        if not values:
            continue
        kind = _ROW_LABELS.get(normalize_label(values[0]))
        if kind is not None and kind not in rows:
            rows[kind] = row_index + 1
    return rows


def _parse_group(
    snapshot: list[list[str]],
    rows: dict[RowKind, int],
    menu: list[str],
    *,
    first_prompt_index: int,
    group_number: int,
    default_class: str,
) -> tuple[WorkGroup, int]:
    input_indexes = [first_prompt_index]
    cursor = first_prompt_index + 1
    while cursor < len(menu):
        match = _PROMPT_RE.match(normalize_label(menu[cursor]))
        if match is None or match.group(1) is None:
            break
        input_indexes.append(cursor)
        cursor += 1

    log_column: str | None = None
    if first_prompt_index > 0 and normalize_label(menu[first_prompt_index - 1]) in _LOG_HEADERS:
        log_column = index_to_column(first_prompt_index - 1)

    ai_value = _special_value(snapshot, rows, RowKind.AI, first_prompt_index)
    multi_surface = _is_multi_surface(ai_value)

    output_columns: dict[str, str] = {}
    if multi_surface:
        while cursor < len(menu):
            match = _CLASS_ANSWER_RE.match(normalize_label(menu[cursor]))
            if match is None:
                break
            output_columns[match.group(1)] = index_to_column(cursor)
            cursor += 1
        missing = [name for name in MULTI_SURFACE_CLASSES if name not in output_columns]
        if missing:
            raise LayoutError(
                f"Group {group_number} is multi-surface but lacks answer columns for: "
                f"{', '.join(missing)}",
            )
    else:
        if cursor >= len(menu) or normalize_label(menu[cursor]) not in _ANSWER_HEADERS:
            raise LayoutError(
                f"Group {group_number} has no answer column after "
                f"{index_to_column(input_indexes[-1])}.",
            )
        capability_class = normalize_label(ai_value) or default_class
        output_columns[capability_class] = index_to_column(cursor)
        cursor += 1

    depends_raw = _special_value(snapshot, rows, RowKind.DEPENDS, first_prompt_index)
    group = WorkGroup(
        group_number=group_number,
        sequence=group_number,
        input_columns=tuple(index_to_column(index) for index in input_indexes),
        output_columns=output_columns,
        multi_surface=multi_surface,
        depends_on=_parse_depends(depends_raw, group_number=group_number),
        log_column=log_column,
        model=_special_value(snapshot, rows, RowKind.MODEL, first_prompt_index).strip(),
        feature=_special_value(snapshot, rows, RowKind.FEATURE, first_prompt_index).strip(),
    )
    logger.debug(
        "Group %d: inputs=%s outputs=%s depends=%s",
        group.group_number,
        ",".join(group.input_columns),
        group.output_columns,
        group.depends_on,
    )
    return group, cursor


def _parse_special_group(
    snapshot: list[list[str]],
    rows: dict[RowKind, int],
    earlier: list[WorkGroup],
    *,
    kind: GroupKind,
    column_index: int,
    group_number: int,
) -> WorkGroup:
    source = index_to_column(column_index - 1)
    producers = [
        group.group_number for group in earlier if source in group.output_columns.values()
    ]
    depends_raw = _special_value(snapshot, rows, RowKind.DEPENDS, column_index)
    declared = _parse_depends(depends_raw, group_number=group_number)
    group = WorkGroup(
        group_number=group_number,
        sequence=group_number,
        input_columns=(source,),
        output_columns={kind.value: index_to_column(column_index)},
        depends_on=tuple(dict.fromkeys([*producers, *declared])),
        model=_special_value(snapshot, rows, RowKind.MODEL, column_index).strip(),
        feature=_special_value(snapshot, rows, RowKind.FEATURE, column_index).strip(),
        kind=kind,
    )
    logger.debug(
        "Group %d (%s): reads %s writes %s depends=%s",
        group.group_number,
        kind.value,
        source,
        group.output_columns[kind.value],
        group.depends_on,
    )
    return group


def _special_value(
    snapshot: list[list[str]],
    rows: dict[RowKind, int],
    kind: RowKind,
    column_index: int,
) -> str:
    row = rows.get(kind)
    if row is None:
        return ""
    return grid_value(snapshot, row=row, column_index=column_index)


def _is_multi_surface(ai_value: str) -> bool:
    normalized = normalize_label(ai_value)
    return any(normalized.startswith(marker) for marker in _MULTI_SURFACE_MARKERS)


def _parse_depends(raw: str, *, group_number: int) -> tuple[int, ...]:
    numbers: list[int] = []
    for part in re.split(r"[,、\s]+", raw.strip()):
        if not part:
            continue
        try:
            numbers.append(int(part))
        except ValueError as error:
            raise LayoutError(
                f"Group {group_number} has invalid dependency {part!r}.",
            ) from error
    return tuple(dict.fromkeys(numbers))


def _validate_dependencies(groups: list[WorkGroup]) -> None:
    known = {group.group_number for group in groups}
    for group in groups:
        for dependency in group.depends_on:
            if dependency not in known:
                raise LayoutError(
                    f"Group {group.group_number} depends on unknown group {dependency}.",
                )
            if dependency >= group.group_number:
                raise LayoutError(
                    f"Group {group.group_number} may only depend on earlier groups, "
                    f"got {dependency}.",
                )


def _collect_column_directives(
    snapshot: list[list[str]],
    rows: dict[RowKind, int],
    menu: list[str],
    groups: list[WorkGroup],
) -> dict[int, set[Directive]]:
    control_row = rows.get(RowKind.COLUMN_CONTROL)
    if control_row is None:
        return {}

    directives: dict[int, set[Directive]] = {}
    for group in groups:
        last = max(column_to_index(column) for column in group.output_columns.values())
        if group.kind == GroupKind.STANDARD:
            first = column_to_index(group.log_column or group.input_columns[0])
        else:
            first = last
        for column_index in range(first, last + 1):
            value = normalize_label(
                grid_value(snapshot, row=control_row, column_index=column_index),
            )
            directive = _COLUMN_DIRECTIVES.get(value)
            if directive is not None:
                directives.setdefault(group.group_number, set()).add(directive)
    return directives
