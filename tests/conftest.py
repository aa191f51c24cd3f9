"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from sheet_relay.orchestrator.backend import CommandResult, EchoSurface, InMemoryTabularStore
from sheet_relay.orchestrator.cells import column_to_index

HEADER_ROWS: list[list[str]] = [
    ["menu", "", "log", "prompt", "prompt 2", "answer"],
    ["ai", "", "", "ChatGPT", "", ""],
    ["model", "", "", "", "", ""],
    ["feature", "", "", "", "", ""],
    ["column control", "", "", "", "", ""],
    ["depends", "", "", "", "", ""],
]

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def build_rows(
    data: dict[int, dict[str, str]] | None = None,
    *,
    header: list[list[str]] | None = None,
) -> list[list[str]]:
    """Header rows plus ``{row_number: {column: value}}`` data cells."""

    rows = [list(row) for row in (header or HEADER_ROWS)]
    for row_number, cells in sorted((data or {}).items()):
        while len(rows) < row_number:
            rows.append([])
        target = rows[row_number - 1]
        for column, value in cells.items():
            index = column_to_index(column)
            while len(target) <= index:
                target.append("")
            target[index] = value
    return rows


class ManualClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class ScriptedSurface(EchoSurface):
    """Echo surface with queued per-command failures.

    ``script("submit", "network error")`` makes the next ``submit`` fail with
    that message; ``lose_on(command)`` drops the session when that command is
    next called.
    """

    def __init__(self, *, name: str = "echo", busy_polls: int = 0) -> None:
        super().__init__(name=name, busy_polls=busy_polls)
        self._script: dict[str, list[str]] = {}
        self._lose_on: set[str] = set()
        self._open_failures: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self._calls_lock = threading.Lock()

    def script(self, command: str, *errors: str) -> None:
        self._script.setdefault(command, []).extend(errors)

    def fail_open(self, *errors: str) -> None:
        self._open_failures.extend(errors)

    def lose_on(self, command: str) -> None:
        self._lose_on.add(command)

    def open(self, url: str, position: int) -> CommandResult:
        self._record("open", f"{url}@{position}")
        if self._open_failures:
            return CommandResult.failure(self._open_failures.pop(0))
        return super().open(url, position)

    def input_text(self, handle: str, text: str) -> CommandResult:
        return self._scripted("input_text", handle) or super().input_text(handle, text)

    def select_option(self, handle: str, category: str, name: str) -> CommandResult:
        return self._scripted("select_option", handle) or super().select_option(
            handle,
            category,
            name,
        )

    def submit(self, handle: str) -> CommandResult:
        return self._scripted("submit", handle) or super().submit(handle)

    def poll_busy(self, handle: str) -> CommandResult:
        return self._scripted("poll_busy", handle) or super().poll_busy(handle)

    def extract_text(self, handle: str, strategy: str = "primary") -> CommandResult:
        return self._scripted(f"extract_text:{strategy}", handle) or super().extract_text(
            handle,
            strategy,
        )

    def _scripted(self, command: str, handle: str) -> CommandResult | None:
        self._record(command, handle)
        if command in self._lose_on:
            self._lose_on.discard(command)
            self.close(handle)
            return CommandResult.failure(f"unknown handle: {handle}")
        queue = self._script.get(command)
        if queue:
            return CommandResult.failure(queue.pop(0))
        return None

    def _record(self, command: str, detail: str) -> None:
        with self._calls_lock:
            self.calls.append((command, detail))


@pytest.fixture()
def sheet_builder() -> Callable[..., list[list[str]]]:
    return build_rows


@pytest.fixture()
def store_factory() -> Callable[..., InMemoryTabularStore]:
    def _factory(
        data: dict[int, dict[str, str]] | None = None,
        *,
        header: list[list[str]] | None = None,
    ) -> InMemoryTabularStore:
        return InMemoryTabularStore(build_rows(data, header=header))

    return _factory


@pytest.fixture()
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def scripted_surface() -> ScriptedSurface:
    return ScriptedSurface()


@pytest.fixture()
def fixed_now() -> Callable[[], datetime]:
    return lambda: FIXED_NOW
