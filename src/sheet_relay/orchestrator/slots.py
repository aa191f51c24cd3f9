"""Fixed pool of position-bound execution contexts."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from sheet_relay.orchestrator.backend.base import InteractiveSurface, SurfaceProvisioner
from sheet_relay.orchestrator.common import utc_now
from sheet_relay.orchestrator.errors import ContextCreationFailed, OrchestratorError
from sheet_relay.orchestrator.models import ContextHealth, ExecutionContext

logger = logging.getLogger(__name__)


class SlotManager:
    """Owns at most one live context per pool position.

    A context is reused when it is idle, healthy and bound to the requested
    capability class; otherwise whatever sits at the position is closed and a
    new context is opened.
    """

    def __init__(
        self,
        surface: InteractiveSurface,
        *,
        pool_size: int,
        urls: dict[str, str] | None = None,
        provisioner: SurfaceProvisioner | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        if pool_size <= 0:
            raise ValueError("pool_size must be positive")
        self.pool_size = pool_size
        self.urls = dict(urls or {})
        self.provisioner = provisioner
        self._default_surface = surface
        self._surfaces: dict[int, InteractiveSurface] = {}
        self._contexts: dict[int, ExecutionContext] = {}
        self._lock = threading.Lock()
        self._now = now

    def position_for(self, index: int) -> int:
        return index % self.pool_size

    def surface_at(self, position: int) -> InteractiveSurface:
        with self._lock:
            return self._surfaces.get(position, self._default_surface)

    def contexts(self) -> list[ExecutionContext]:
        with self._lock:
            return [self._contexts[position] for position in sorted(self._contexts)]

    def acquire(self, capability_class: str, position: int) -> ExecutionContext:
        """Return a busy context for ``capability_class`` at ``position``."""

        if position < 0 or position >= self.pool_size:
            raise ValueError(f"Position {position} outside pool of {self.pool_size}")

        with self._lock:
            current = self._contexts.get(position)
            if current is not None and current.busy:
                raise OrchestratorError(f"Position {position} already has a busy context")
            if (
                current is not None
                and current.health == ContextHealth.HEALTHY
                and current.capability_class == capability_class
                and current.surface.exists(current.handle)
            ):
                current.busy = True
                return current
            if current is not None:
                del self._contexts[position]
            surface = self._surfaces.get(position, self._default_surface)

        generation = 0
        if current is not None:
            generation = current.generation + 1
            self._close(current)
        return self._open(surface, capability_class, position, generation)

    def release(self, context: ExecutionContext) -> None:
        with self._lock:
            context.busy = False

    def mark_unhealthy(self, context: ExecutionContext) -> None:
        with self._lock:
            context.health = ContextHealth.UNHEALTHY
        logger.info("Context %s at position %d marked unhealthy", context.handle, context.position)

    def check_health(self, context: ExecutionContext) -> bool:
        """Probe the surface; a vanished context is evicted and marked lost."""

        if context.surface.exists(context.handle):
            return context.health == ContextHealth.HEALTHY
        with self._lock:
            context.health = ContextHealth.LOST
            context.busy = False
            if self._contexts.get(context.position) is context:
                del self._contexts[context.position]
        logger.warning("Context %s at position %d was lost", context.handle, context.position)
        return False

    def recreate(self, context: ExecutionContext) -> ExecutionContext:
        """Soft remediation: close and reopen on the same surface."""

        self._evict(context)
        with self._lock:
            surface = self._surfaces.get(context.position, self._default_surface)
        return self._open(
            surface,
            context.capability_class,
            context.position,
            context.generation + 1,
        )

    def reprovision(self, context: ExecutionContext) -> ExecutionContext:
        """Hard remediation: obtain a new surface instance for the position."""

        if self.provisioner is None:
            logger.warning(
                "No surface provisioner configured; recreating context at position %d instead",
                context.position,
            )
            return self.recreate(context)
        self._evict(context)
        return self.reprovision_position(
            context.capability_class,
            context.position,
            generation=context.generation + 1,
        )

    def reprovision_position(
        self,
        capability_class: str,
        position: int,
        *,
        generation: int = 0,
    ) -> ExecutionContext:
        """Swap the surface behind ``position`` and open a context on it."""

        with self._lock:
            stale = self._contexts.pop(position, None)
        if stale is not None:
            self._close(stale)
        if self.provisioner is None:
            with self._lock:
                surface = self._surfaces.get(position, self._default_surface)
            return self._open(surface, capability_class, position, generation)
        surface = self.provisioner.provision(capability_class, position)
        with self._lock:
            self._surfaces[position] = surface
        logger.info("Provisioned new %s surface for position %d", capability_class, position)
        return self._open(surface, capability_class, position, generation)

    def close_all(self) -> None:
        with self._lock:
            contexts = list(self._contexts.values())
            self._contexts.clear()
        for context in contexts:
            self._close(context)

    def _open(
        self,
        surface: InteractiveSurface,
        capability_class: str,
        position: int,
        generation: int,
    ) -> ExecutionContext:
        url = self.urls.get(capability_class, "")
        result = surface.open(url, position)
        if not result.ok or not result.value:
            raise ContextCreationFailed(
                f"Could not open {capability_class} context at position {position}: "
                f"{result.error or 'no handle returned'}",
                position=position,
                capability_class=capability_class,
            )
        context = ExecutionContext(
            position=position,
            handle=str(result.value),
            capability_class=capability_class,
            surface=surface,
            created_at=self._now(),
            busy=True,
            generation=generation,
        )
        with self._lock:
            stale = self._contexts.get(position)
            self._contexts[position] = context
        if stale is not None:
            logger.warning("Replacing context %s at position %d", stale.handle, position)
            self._close(stale)
        logger.debug("Opened %s context %s at position %d", capability_class, context.handle, position)
        return context

    def _evict(self, context: ExecutionContext) -> None:
        with self._lock:
            if self._contexts.get(context.position) is context:
                del self._contexts[context.position]
            context.busy = False
        self._close(context)

    def _close(self, context: ExecutionContext) -> None:
        result = context.surface.close(context.handle)
        if not result.ok:
            logger.warning("Closing context %s failed: %s", context.handle, result.error)
