"""A1-notation helpers for cell and column references."""

from __future__ import annotations

import re

_CELL_RE = re.compile(r"^\s*([A-Za-z]+)\s*(\d+)\s*$")


def column_to_index(column: str) -> int:
    """Convert column letters to a zero-based index (``A`` -> 0, ``AA`` -> 26)."""

    letters = column.strip().upper()
    if not letters or not letters.isalpha():
        raise ValueError(f"Invalid column reference: {column!r}")
    index = 0
    for char in letters:
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def index_to_column(index: int) -> str:
    """Convert a zero-based index to column letters."""

    if index < 0:
        raise ValueError(f"Column index must be >= 0: {index}")
    letters = ""
    value = index + 1
    while value > 0:
        value, remainder = divmod(value - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def cell_ref(column: str, row: int) -> str:
    """Build an ``A1`` reference from column letters and a 1-based row."""

    if row < 1:
        raise ValueError(f"Row must be >= 1: {row}")
    return f"{column.strip().upper()}{row}"


def parse_cell_ref(ref: str) -> tuple[str, int]:
    """Split ``A1`` into column letters and 1-based row."""

    match = _CELL_RE.match(ref)
    if match is None:
        raise ValueError(f"Invalid cell reference: {ref!r}")
    return match.group(1).upper(), int(match.group(2))


def cell_value(grid: list[list[str]], ref: str) -> str:
    """Read one cell out of a zero-based grid snapshot, ``""`` when absent."""

    column, row = parse_cell_ref(ref)
    return grid_value(grid, row=row, column_index=column_to_index(column))


def grid_value(grid: list[list[str]], *, row: int, column_index: int) -> str:
    row_index = row - 1
    if row_index < 0 or row_index >= len(grid):
        return ""
    values = grid[row_index]
    if column_index < 0 or column_index >= len(values):
        return ""
    value = values[column_index]
    return "" if value is None else str(value)
