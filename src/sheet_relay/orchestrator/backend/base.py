"""Collaborator interfaces consumed by the orchestration engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Outcome of one surface command; errors are values, never exceptions."""

    ok: bool
    value: str | bool | None = None
    error: str | None = None

    @classmethod
    def success(cls, value: str | bool | None = None) -> CommandResult:
        return cls(ok=True, value=value, error=None)

    @classmethod
    def failure(cls, error: str) -> CommandResult:
        return cls(ok=False, value=None, error=error)


class TabularStore(Protocol):
    """Rectangular grid of cells addressed in A1 notation.

    Implementations raise :class:`~sheet_relay.orchestrator.errors.StoreError`
    on read/write failures.
    """

    def read(self, range_spec: str) -> list[list[str]]:
        """Return the grid covering ``range_spec`` (rows of cell strings)."""

    def write(self, cell_ref: str, value: str) -> None:
        """Overwrite one cell."""


class InteractiveSurface(Protocol):
    """Command protocol of one external conversational front end."""

    def open(self, url: str, position: int) -> CommandResult:
        """Open an isolated session; ``value`` carries the context handle."""

    def input_text(self, handle: str, text: str) -> CommandResult:
        """Type the payload into the session's input box."""

    def select_option(self, handle: str, category: str, name: str) -> CommandResult:
        """Select a named option (model, feature) in the session."""

    def submit(self, handle: str) -> CommandResult:
        """Send the typed input."""

    def poll_busy(self, handle: str) -> CommandResult:
        """``value`` is True while the surface shows its busy indicator."""

    def extract_text(self, handle: str, strategy: str = "primary") -> CommandResult:
        """Read the latest answer with the given extraction strategy."""

    def exists(self, handle: str) -> bool:
        """Whether the session is still alive."""

    def close(self, handle: str) -> CommandResult:
        """Close the session."""


class SurfaceProvisioner(Protocol):
    """Environment hook that hands out wholly new surface instances."""

    def provision(self, capability_class: str, position: int) -> InteractiveSurface:
        """Return a fresh surface for ``capability_class`` at ``position``."""
