"""Local deterministic surface for demos and integration tests."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field

from sheet_relay.orchestrator.backend.base import CommandResult


@dataclass(slots=True)
class _Session:
    url: str
    position: int
    text: str = ""
    options: dict[str, str] = field(default_factory=dict)
    submitted: str | None = None
    busy_polls_left: int = 0


class EchoSurface:
    """Answers every submitted prompt with the prompt itself.

    The busy indicator stays on for ``busy_polls`` polls after each submit so
    that completion waiting is exercised.
    """

    _handles = itertools.count(1)

    def __init__(self, *, name: str = "echo", busy_polls: int = 1) -> None:
        self.name = name
        self.busy_polls = busy_polls
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    def open(self, url: str, position: int) -> CommandResult:
        handle = f"{self.name}-{position}-{next(self._handles)}"
        with self._lock:
            self._sessions[handle] = _Session(url=url, position=position)
        return CommandResult.success(handle)

    def input_text(self, handle: str, text: str) -> CommandResult:
        session = self._session(handle)
        if session is None:
            return CommandResult.failure(f"unknown handle: {handle}")
        session.text = text
        return CommandResult.success()

    def select_option(self, handle: str, category: str, name: str) -> CommandResult:
        session = self._session(handle)
        if session is None:
            return CommandResult.failure(f"unknown handle: {handle}")
        session.options[category] = name
        return CommandResult.success(name)

    def submit(self, handle: str) -> CommandResult:
        session = self._session(handle)
        if session is None:
            return CommandResult.failure(f"unknown handle: {handle}")
        if not session.text.strip():
            return CommandResult.failure("input element not found: empty prompt")
        session.submitted = session.text
        session.busy_polls_left = self.busy_polls
        return CommandResult.success()

    def poll_busy(self, handle: str) -> CommandResult:
        session = self._session(handle)
        if session is None:
            return CommandResult.failure(f"unknown handle: {handle}")
        if session.busy_polls_left > 0:
            session.busy_polls_left -= 1
            return CommandResult.success(True)
        return CommandResult.success(False)

    def extract_text(self, handle: str, strategy: str = "primary") -> CommandResult:
        session = self._session(handle)
        if session is None:
            return CommandResult.failure(f"unknown handle: {handle}")
        if session.submitted is None:
            return CommandResult.failure("no answer element found")
        options = ", ".join(f"{key}={value}" for key, value in sorted(session.options.items()))
        prefix = f"[{self.name}{'; ' + options if options else ''}]"
        return CommandResult.success(f"{prefix} {session.submitted}")

    def exists(self, handle: str) -> bool:
        with self._lock:
            return handle in self._sessions

    def close(self, handle: str) -> CommandResult:
        with self._lock:
            self._sessions.pop(handle, None)
        return CommandResult.success()

    def _session(self, handle: str) -> _Session | None:
        with self._lock:
            return self._sessions.get(handle)


class EchoProvisioner:
    """Hands out a fresh :class:`EchoSurface` per request."""

    def __init__(self, *, busy_polls: int = 1) -> None:
        self.busy_polls = busy_polls
        self.provisioned: list[tuple[str, int]] = []

    def provision(self, capability_class: str, position: int) -> EchoSurface:
        self.provisioned.append((capability_class, position))
        return EchoSurface(name=capability_class, busy_polls=self.busy_polls)
