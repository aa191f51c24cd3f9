"""Event-based group completion tracking.

Units register under their group when generated; each terminal unit reports
in, and the last one sets the group's event and fires waiter callbacks, so
dependants block on the event instead of re-polling the sheet.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

from sheet_relay.orchestrator.models import WorkUnit

logger = logging.getLogger(__name__)

DrainedCallback = Callable[[int], None]


class GroupCompletionTracker:
    """Per-group outstanding unit sets with drain notification."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outstanding: dict[int, set[str]] = {}
        self._terminal: set[str] = set()
        self._events: dict[int, threading.Event] = {}
        self._callbacks: dict[int, list[DrainedCallback]] = {}

    def reset(self) -> None:
        """Forget all groups and units, typically at the start of a pass."""

        with self._lock:
            self._outstanding.clear()
            self._terminal.clear()
            self._events.clear()
            self._callbacks.clear()

    def register(self, units: Iterable[WorkUnit]) -> None:
        """Track units as outstanding until they report terminal."""

        touched: set[int] = set()
        with self._lock:
            for unit in units:
                if unit.unit_id in self._terminal:
                    continue
                self._outstanding.setdefault(unit.group_number, set()).add(unit.unit_id)
                event = self._event(unit.group_number)
                event.clear()
                touched.add(unit.group_number)
        for group_number in sorted(touched):
            logger.debug("Group %d has outstanding units", group_number)

    def mark_terminal(self, unit: WorkUnit) -> None:
        """Record a terminal unit; drains its group when it was the last one."""

        with self._lock:
            self._terminal.add(unit.unit_id)
            outstanding = self._outstanding.setdefault(unit.group_number, set())
            outstanding.discard(unit.unit_id)
            if outstanding:
                return
            callbacks = self._drain(unit.group_number)
        self._fire(unit.group_number, callbacks)

    def mark_empty(self, group_number: int) -> None:
        """Declare a group with nothing left to do as drained."""

        with self._lock:
            if self._outstanding.get(group_number):
                return
            callbacks = self._drain(group_number)
        self._fire(group_number, callbacks)

    def is_terminal(self, unit_id: str) -> bool:
        with self._lock:
            return unit_id in self._terminal

    def is_drained(self, group_number: int) -> bool:
        with self._lock:
            event = self._events.get(group_number)
            return event is not None and event.is_set()

    def wait_drained(self, group_number: int, timeout: float | None = None) -> bool:
        """Block until the group drains; False on timeout."""

        with self._lock:
            event = self._event(group_number)
        return event.wait(timeout)

    def on_drained(self, group_number: int, callback: DrainedCallback) -> None:
        """Run ``callback`` once the group drains (immediately if it already has)."""

        with self._lock:
            event = self._event(group_number)
            if not event.is_set():
                self._callbacks.setdefault(group_number, []).append(callback)
                return
        callback(group_number)

    def _event(self, group_number: int) -> threading.Event:
        event = self._events.get(group_number)
        if event is None:
            event = threading.Event()
            self._events[group_number] = event
        return event

    def _drain(self, group_number: int) -> list[DrainedCallback]:
        self._event(group_number).set()
        return self._callbacks.pop(group_number, [])

    def _fire(self, group_number: int, callbacks: list[DrainedCallback]) -> None:
        logger.info("Group %d drained", group_number)
        for callback in callbacks:
            try:
                callback(group_number)
            except Exception:  # noqa: BLE001
                logger.exception("Drain callback failed for group %d", group_number)
