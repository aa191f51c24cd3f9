"""Domain models for work discovery, leasing and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class WorkUnitStatus(str, Enum):
    """Lifecycle states of one work unit."""

    PENDING = "pending"
    LEASED = "leased"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = frozenset(
    {WorkUnitStatus.SUCCEEDED, WorkUnitStatus.FAILED, WorkUnitStatus.ABANDONED},
)


class FailureCategory(str, Enum):
    """Normalized failure categories used by the escalation policy."""

    AUTH_OR_SESSION = "auth_or_session"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    ELEMENT_NOT_FOUND = "element_not_found"
    INTERACTION_TIMING = "interaction_timing"
    GENERAL = "general"
    CREATION_FAILED = "creation_failed"
    CONTEXT_LOST = "context_lost"
    CONFIGURATION_FAILED = "configuration_failed"
    TIMEOUT = "timeout"


class EscalationTier(str, Enum):
    """Remediation severity, ordered from lightest to heaviest."""

    NONE = "none"
    SOFT = "soft"
    HARD = "hard"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {EscalationTier.NONE: 0, EscalationTier.SOFT: 1, EscalationTier.HARD: 2}


class RemediationAction(str, Enum):
    """What the pipeline does before resuming a failed unit."""

    RETRY_IN_PLACE = "retry_in_place"
    RECREATE_CONTEXT = "recreate_context"
    PROVISION_SURFACE = "provision_surface"
    ABANDON = "abandon"


class Phase(str, Enum):
    """Fixed linear phases of one unit run."""

    PREPARE = "prepare"
    CONFIGURE = "configure"
    SUBMIT = "submit"
    AWAIT_COMPLETION = "await_completion"
    EXTRACT = "extract"
    PERSIST = "persist"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.PREPARE,
    Phase.CONFIGURE,
    Phase.SUBMIT,
    Phase.AWAIT_COMPLETION,
    Phase.EXTRACT,
    Phase.PERSIST,
)


class ContextHealth(str, Enum):
    """Last known health of a pooled execution context."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    LOST = "lost"


class GroupKind(str, Enum):
    """Standard prompt groups and the single-column post-processing groups."""

    STANDARD = "standard"
    REPORT = "report"
    GENSPARK_SLIDE = "genspark_slide"
    GENSPARK_FACTCHECK = "genspark_factcheck"
    GENSPARK = "genspark"


@dataclass(slots=True, frozen=True)
class UnitOptions:
    """Named option selections applied during the configure phase."""

    model: str = ""
    feature: str = ""

    def selections(self) -> list[tuple[str, str]]:
        """Return non-empty (category, name) pairs in application order."""

        pairs: list[tuple[str, str]] = []
        if self.model.strip():
            pairs.append(("model", self.model.strip()))
        if self.feature.strip():
            pairs.append(("feature", self.feature.strip()))
        return pairs


@dataclass(slots=True)
class WorkGroup:
    """Ordered set of rows sharing column layout and capability class."""

    group_number: int
    sequence: int
    input_columns: tuple[str, ...]
    output_columns: dict[str, str]
    multi_surface: bool = False
    depends_on: tuple[int, ...] = ()
    log_column: str | None = None
    model: str = ""
    feature: str = ""
    kind: GroupKind = GroupKind.STANDARD

    @property
    def capability_classes(self) -> tuple[str, ...]:
        return tuple(self.output_columns)

    @property
    def options(self) -> UnitOptions:
        return UnitOptions(model=self.model, feature=self.feature)


@dataclass(slots=True)
class RowTask:
    """One data row of a group before capability-class expansion."""

    group_number: int
    row: int
    input_cells: tuple[str, ...]
    payload: str


@dataclass(slots=True)
class WorkUnit:
    """One schedulable piece of work mapped to one output cell."""

    unit_id: str
    group_number: int
    row: int
    input_cells: tuple[str, ...]
    payload: str
    target_cell: str
    capability_class: str
    options: UnitOptions = field(default_factory=UnitOptions)
    correlation_id: str | None = None
    log_cell: str | None = None
    status: WorkUnitStatus = WorkUnitStatus.PENDING
    result_text: str | None = None
    failure_category: FailureCategory | None = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True, frozen=True)
class Lease:
    """Parsed lease marker held in an output cell."""

    cell: str
    owner: str
    acquired_at: datetime | None
    duration: timedelta

    def is_live(self, now: datetime) -> bool:
        if self.acquired_at is None:
            return False
        return now - self.acquired_at < self.duration


@dataclass(slots=True)
class ExecutionContext:
    """One pooled, position-bound session against an interactive surface."""

    position: int
    handle: str
    capability_class: str
    surface: Any
    created_at: datetime
    health: ContextHealth = ContextHealth.HEALTHY
    busy: bool = False
    generation: int = 0


@dataclass(slots=True)
class EscalationState:
    """Per capability class failure streak bookkeeping."""

    capability_class: str
    consecutive_failures: int = 0
    last_category: FailureCategory | None = None
    tier: EscalationTier = EscalationTier.NONE
    attempts: int = 0


@dataclass(slots=True, frozen=True)
class EscalationDecision:
    """Remediation chosen for one failed attempt."""

    category: FailureCategory
    attempt: int
    tier: EscalationTier
    action: RemediationAction
    delay_seconds: float
    reason: str


@dataclass(slots=True)
class StartRecord:
    """When a unit's prepare phase was started within its batch."""

    unit_id: str
    index: int
    position: int
    planned_offset_seconds: float
    started_at: float


@dataclass(slots=True)
class UnitOutcome:
    """Terminal result of one unit within a batch."""

    unit_id: str
    target_cell: str
    capability_class: str
    status: WorkUnitStatus
    text: str | None
    failure_category: FailureCategory | None
    error: str | None
    attempts: int
    elapsed_seconds: float
    configuration_failures: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == WorkUnitStatus.SUCCEEDED


@dataclass(slots=True)
class BatchResult:
    """Ordered outcomes of one batch plus its stagger bookkeeping."""

    outcomes: list[UnitOutcome] = field(default_factory=list)
    starts: list[StartRecord] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == WorkUnitStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == WorkUnitStatus.FAILED)

    @property
    def abandoned(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == WorkUnitStatus.ABANDONED)
