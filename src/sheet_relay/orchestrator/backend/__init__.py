"""Tabular store and interactive surface implementations."""

from sheet_relay.orchestrator.backend.base import (
    CommandResult,
    InteractiveSurface,
    SurfaceProvisioner,
    TabularStore,
)
from sheet_relay.orchestrator.backend.echo_surface import EchoProvisioner, EchoSurface
from sheet_relay.orchestrator.backend.memory_store import InMemoryTabularStore
from sheet_relay.orchestrator.backend.sheets_store import SheetsTabularStore

__all__ = [
    "CommandResult",
    "EchoProvisioner",
    "EchoSurface",
    "InMemoryTabularStore",
    "InteractiveSurface",
    "SheetsTabularStore",
    "SurfaceProvisioner",
    "TabularStore",
]
