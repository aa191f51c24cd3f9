"""Thread-safe in-memory tabular store with CSV import/export."""

from __future__ import annotations

import csv
import threading
from pathlib import Path

from sheet_relay.orchestrator.cells import column_to_index, parse_cell_ref
from sheet_relay.orchestrator.errors import StoreError


class InMemoryTabularStore:
    """Grid of strings addressed in A1 notation.

    ``read`` mirrors the Sheets values API: the returned grid starts at the
    range's top-left cell and trailing empty cells/rows are trimmed.
    """

    def __init__(self, rows: list[list[str]] | None = None) -> None:
        self._rows: list[list[str]] = [list(row) for row in rows or []]
        self._lock = threading.Lock()
        self.writes: list[tuple[str, str]] = []

    @classmethod
    def from_csv(cls, path: Path) -> InMemoryTabularStore:
        with path.open("r", encoding="utf-8", newline="") as handle:
            return cls([list(row) for row in csv.reader(handle)])

    def save_csv(self, path: Path) -> None:
        with self._lock:
            rows = [list(row) for row in self._rows]
        with path.open("w", encoding="utf-8", newline="") as handle:
            csv.writer(handle).writerows(rows)

    def read(self, range_spec: str) -> list[list[str]]:
        start_col, start_row, end_col, end_row = _parse_range(range_spec)
        with self._lock:
            last_row = len(self._rows) if end_row is None else min(end_row, len(self._rows))
            grid: list[list[str]] = []
            for row_index in range(start_row - 1, last_row):
                source = self._rows[row_index]
                stop = len(source) if end_col is None else min(end_col + 1, len(source))
                grid.append([str(value) for value in source[start_col:stop]])
        return _trim(grid)

    def write(self, cell_ref: str, value: str) -> None:
        try:
            column, row = parse_cell_ref(cell_ref)
        except ValueError as error:
            raise StoreError(str(error), transient=False) from error
        column_index = column_to_index(column)
        with self._lock:
            while len(self._rows) < row:
                self._rows.append([])
            target = self._rows[row - 1]
            while len(target) <= column_index:
                target.append("")
            target[column_index] = value
            self.writes.append((cell_ref, value))

    def snapshot(self) -> list[list[str]]:
        """Copy of the whole grid, untrimmed."""

        with self._lock:
            return [list(row) for row in self._rows]


def _parse_range(range_spec: str) -> tuple[int, int, int | None, int | None]:
    bounds = range_spec.split("!", 1)[-1].strip()
    try:
        if ":" not in bounds:
            column, row = parse_cell_ref(bounds)
            index = column_to_index(column)
            return index, row, index, row
        start, end = bounds.split(":", 1)
        start_column, start_row = parse_cell_ref(start)
        end_column, end_row = _parse_open_ref(end)
    except ValueError as error:
        raise StoreError(f"Invalid range: {range_spec!r}", transient=False) from error
    return column_to_index(start_column), start_row, end_column, end_row


def _parse_open_ref(ref: str) -> tuple[int | None, int | None]:
    letters = "".join(char for char in ref if char.isalpha())
    digits = "".join(char for char in ref if char.isdigit())
    column = column_to_index(letters) if letters else None
    row = int(digits) if digits else None
    return column, row


def _trim(grid: list[list[str]]) -> list[list[str]]:
    trimmed: list[list[str]] = []
    for row in grid:
        end = len(row)
        while end > 0 and row[end - 1] == "":
            end -= 1
        trimmed.append(row[:end])
    while trimmed and not trimmed[-1]:
        trimmed.pop()
    return trimmed
