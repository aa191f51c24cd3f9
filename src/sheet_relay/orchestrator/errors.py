"""Exception hierarchy for the orchestration engine."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base error for orchestration failures."""


class StoreError(OrchestratorError):
    """Tabular store read or write failed; fatal to the current batch."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class ContextCreationFailed(OrchestratorError):
    """Execution context could not be provisioned at a position."""

    def __init__(self, message: str, *, position: int, capability_class: str) -> None:
        super().__init__(message)
        self.position = position
        self.capability_class = capability_class


class LayoutError(OrchestratorError):
    """Snapshot structure cannot be interpreted."""
