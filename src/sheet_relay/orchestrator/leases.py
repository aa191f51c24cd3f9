"""Cell-resident lease markers.

A lease is plain text written into the unit's output cell::

    IN PROGRESS worker-a
    2026-01-01T10:00:00+00:00

The store offers no compare-and-swap, so acquisition is write-then-confirm.
Two workers racing on the same cell may both pass the confirmation; the
result is two equivalent answers where the last write wins.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from sheet_relay.config import LeaseSettings
from sheet_relay.orchestrator.backend.base import TabularStore
from sheet_relay.orchestrator.cells import cell_value
from sheet_relay.orchestrator.common import format_timestamp, parse_timestamp, utc_now
from sheet_relay.orchestrator.features import normalize_feature
from sheet_relay.orchestrator.models import (
    FailureCategory,
    Lease,
    WorkUnit,
    WorkUnitStatus,
)

logger = logging.getLogger(__name__)


class LeaseConvention:
    """Marker text format shared by the lease manager and the task generator."""

    def __init__(self, settings: LeaseSettings | None = None) -> None:
        self.settings = settings or LeaseSettings()

    @property
    def token(self) -> str:
        return self.settings.marker_token.strip()

    @property
    def abandoned_token(self) -> str:
        return self.settings.abandoned_token.strip()

    def format_marker(self, owner: str, at: datetime) -> str:
        return f"{self.token} {owner}\n{format_timestamp(at)}"

    def format_abandoned(self, category: FailureCategory, at: datetime) -> str:
        return f"{self.abandoned_token}\n{format_timestamp(at)}\n{category.value}"

    def is_marker(self, value: str) -> bool:
        first = _first_line(value)
        return first == self.token or first.startswith(f"{self.token} ")

    def is_abandoned(self, value: str) -> bool:
        return _first_line(value) == self.abandoned_token

    def is_completed(self, value: str) -> bool:
        """Non-empty content that is neither a lease nor an abandoned marker."""

        if not value.strip():
            return False
        return not self.is_marker(value) and not self.is_abandoned(value)

    def duration_for(self, feature: str) -> timedelta:
        minutes = self.settings.minutes_by_feature.get(
            normalize_feature(feature),
            self.settings.default_minutes,
        )
        return timedelta(minutes=minutes)

    def parse_marker(self, cell: str, value: str, *, feature: str = "") -> Lease | None:
        """Parse a lease marker; ``None`` when the text is not one.

        Markers without a parseable timestamp come back with
        ``acquired_at=None`` and are never live.
        """

        if not self.is_marker(value):
            return None
        lines = value.strip().splitlines()
        owner = lines[0].strip()[len(self.token) :].strip()
        acquired_at: datetime | None = None
        if len(lines) > 1:
            try:
                acquired_at = parse_timestamp(lines[1])
            except ValueError:
                acquired_at = None
        return Lease(
            cell=cell,
            owner=owner,
            acquired_at=acquired_at,
            duration=self.duration_for(feature),
        )


class LeaseManager:
    """Claims output cells for this worker and gives them back."""

    def __init__(
        self,
        store: TabularStore,
        *,
        owner: str,
        settings: LeaseSettings | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.owner = owner
        self.settings = settings or LeaseSettings()
        self.convention = LeaseConvention(self.settings)
        self._now = now
        self._held: dict[str, Lease] = {}
        self._lock = threading.Lock()
        self._first_pass = True

    def finish_first_pass(self) -> None:
        """Stop treating markers carrying our own name as crash leftovers."""

        self._first_pass = False

    @property
    def held_cells(self) -> list[str]:
        with self._lock:
            return sorted(self._held)

    def is_expired(self, marker: str, unit: WorkUnit) -> bool:
        """Whether ``marker`` is a lease that may be taken over."""

        lease = self.convention.parse_marker(
            unit.target_cell,
            marker,
            feature=unit.options.feature,
        )
        if lease is None:
            return False
        return not lease.is_live(self._now())

    def list_eligible(
        self,
        candidates: Iterable[WorkUnit],
        limit: int,
        *,
        snapshot: list[list[str]] | None = None,
    ) -> list[WorkUnit]:
        """Filter candidates to units whose cell could be leased now.

        Cell values come from ``snapshot`` when given, otherwise each cell is
        read from the store.
        """

        eligible: list[WorkUnit] = []
        if limit <= 0:
            return eligible
        for unit in candidates:
            with self._lock:
                if unit.target_cell in self._held:
                    continue
            value = (
                cell_value(snapshot, unit.target_cell)
                if snapshot is not None
                else self._read_cell(unit.target_cell)
            )
            if self._claimable(unit, value):
                eligible.append(unit)
                if len(eligible) >= limit:
                    break
        return eligible

    def try_acquire(self, unit: WorkUnit) -> bool:
        """Write our marker into the unit's cell and confirm it stuck."""

        with self._lock:
            if unit.target_cell in self._held:
                return False
        current = self._read_cell(unit.target_cell)
        if not self._claimable(unit, current):
            logger.debug("Cell %s is not claimable", unit.target_cell)
            return False

        acquired_at = self._now()
        marker = self.convention.format_marker(self.owner, acquired_at)
        self.store.write(unit.target_cell, marker)
        if self.settings.verify_after_write:
            confirmed = self._read_cell(unit.target_cell)
            if confirmed.strip() != marker.strip():
                logger.info(
                    "Lost lease race on %s (found %r)",
                    unit.target_cell,
                    _first_line(confirmed),
                )
                return False

        lease = Lease(
            cell=unit.target_cell,
            owner=self.owner,
            acquired_at=acquired_at,
            duration=self.convention.duration_for(unit.options.feature),
        )
        with self._lock:
            self._held[unit.target_cell] = lease
        unit.status = WorkUnitStatus.LEASED
        logger.debug(
            "Leased %s for %s until %s",
            unit.target_cell,
            self.owner,
            format_timestamp(acquired_at + lease.duration),
        )
        return True

    def release(self, unit: WorkUnit) -> None:
        """Clear our marker from the cell; no-op when we hold nothing there."""

        with self._lock:
            lease = self._held.pop(unit.target_cell, None)
        if lease is None:
            return
        current = self._read_cell(unit.target_cell)
        existing = self.convention.parse_marker(unit.target_cell, current)
        if existing is None or existing.owner != self.owner:
            logger.debug("Marker on %s no longer ours; leaving it", unit.target_cell)
            return
        self.store.write(unit.target_cell, "")
        logger.debug("Released %s", unit.target_cell)

    def forget(self, unit: WorkUnit) -> None:
        """Drop bookkeeping after the answer overwrote the marker."""

        with self._lock:
            self._held.pop(unit.target_cell, None)

    def mark_abandoned(self, unit: WorkUnit, category: FailureCategory) -> None:
        """Replace our marker with a visible abandoned marker."""

        with self._lock:
            self._held.pop(unit.target_cell, None)
        self.store.write(
            unit.target_cell,
            self.convention.format_abandoned(category, self._now()),
        )
        logger.warning("Marked %s abandoned (%s)", unit.target_cell, category.value)

    def _claimable(self, unit: WorkUnit, value: str) -> bool:
        if not value.strip():
            return True
        lease = self.convention.parse_marker(
            unit.target_cell,
            value,
            feature=unit.options.feature,
        )
        if lease is None:
            return False
        if not lease.is_live(self._now()):
            return True
        if (
            lease.owner == self.owner
            and self.settings.reclaim_own_markers
            and self._first_pass
        ):
            logger.info("Reclaiming own leftover marker on %s", unit.target_cell)
            return True
        return False

    def _read_cell(self, ref: str) -> str:
        grid = self.store.read(ref)
        if not grid or not grid[0]:
            return ""
        return grid[0][0]


def _first_line(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        return ""
    return stripped.splitlines()[0].strip()
