"""Retry and escalation policy for failed unit attempts."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace

from sheet_relay.orchestrator.failure_classifier import classify_failure
from sheet_relay.orchestrator.models import (
    EscalationDecision,
    EscalationState,
    EscalationTier,
    FailureCategory,
    RemediationAction,
)

logger = logging.getLogger(__name__)

CONSECUTIVE_FAILURE_LIMIT = 5
IN_PLACE_ATTEMPT_LIMIT = 5


@dataclass(slots=True, frozen=True)
class CategoryPolicy:
    """Attempt budget and starting severity for one failure category."""

    max_attempts: int
    default_tier: EscalationTier
    immediate_hard: bool = False


@dataclass(slots=True, frozen=True)
class TierSchedule:
    """Ascending remediation delays for attempts from ``first_attempt`` on."""

    first_attempt: int
    delays: tuple[float, ...]

    def delay_for(self, attempt: int) -> float:
        index = min(max(attempt - self.first_attempt, 0), len(self.delays) - 1)
        return self.delays[index]


DEFAULT_POLICIES: dict[FailureCategory, CategoryPolicy] = {
    FailureCategory.AUTH_OR_SESSION: CategoryPolicy(5, EscalationTier.HARD, immediate_hard=True),
    FailureCategory.RATE_LIMIT: CategoryPolicy(10, EscalationTier.HARD, immediate_hard=True),
    FailureCategory.NETWORK: CategoryPolicy(8, EscalationTier.SOFT),
    FailureCategory.ELEMENT_NOT_FOUND: CategoryPolicy(5, EscalationTier.NONE),
    FailureCategory.INTERACTION_TIMING: CategoryPolicy(10, EscalationTier.NONE),
    FailureCategory.GENERAL: CategoryPolicy(8, EscalationTier.SOFT),
    FailureCategory.CREATION_FAILED: CategoryPolicy(3, EscalationTier.HARD, immediate_hard=True),
    FailureCategory.CONTEXT_LOST: CategoryPolicy(5, EscalationTier.SOFT),
    FailureCategory.CONFIGURATION_FAILED: CategoryPolicy(5, EscalationTier.NONE),
    FailureCategory.TIMEOUT: CategoryPolicy(3, EscalationTier.SOFT),
}

# seconds -> tens of seconds -> minutes -> tens of minutes -> hours
DEFAULT_SCHEDULES: dict[EscalationTier, TierSchedule] = {
    EscalationTier.NONE: TierSchedule(first_attempt=1, delays=(1, 2, 5, 10, 15)),
    EscalationTier.SOFT: TierSchedule(first_attempt=6, delays=(30, 60, 120)),
    EscalationTier.HARD: TierSchedule(first_attempt=9, delays=(300, 900, 1_800, 3_600, 7_200)),
}

_CONTEXT_BOUND_CATEGORIES = frozenset(
    {FailureCategory.CONTEXT_LOST, FailureCategory.TIMEOUT},
)


def tier_for_attempt(attempt: int) -> EscalationTier:
    """Severity implied by attempt count alone."""

    if attempt <= IN_PLACE_ATTEMPT_LIMIT:
        return EscalationTier.NONE
    if attempt <= DEFAULT_SCHEDULES[EscalationTier.HARD].first_attempt - 1:
        return EscalationTier.SOFT
    return EscalationTier.HARD


class EscalationController:
    """Tracks failure streaks per capability class and picks remediations."""

    def __init__(
        self,
        *,
        policies: dict[FailureCategory, CategoryPolicy] | None = None,
        schedules: dict[EscalationTier, TierSchedule] | None = None,
        consecutive_failure_limit: int = CONSECUTIVE_FAILURE_LIMIT,
    ) -> None:
        self.policies = {**DEFAULT_POLICIES, **(policies or {})}
        self.schedules = {**DEFAULT_SCHEDULES, **(schedules or {})}
        self.consecutive_failure_limit = consecutive_failure_limit
        self._states: dict[str, EscalationState] = {}
        self._lock = threading.Lock()

    def classify(self, message: str | None) -> FailureCategory:
        return classify_failure(message).category

    def state_for(self, capability_class: str) -> EscalationState:
        """Snapshot of the streak state for one capability class."""

        with self._lock:
            state = self._states.get(capability_class)
            if state is None:
                return EscalationState(capability_class=capability_class)
            return replace(state)

    def record_failure(
        self,
        *,
        capability_class: str,
        category: FailureCategory,
        attempt: int,
    ) -> EscalationDecision:
        """Register one failed attempt of a unit and decide what happens next.

        ``attempt`` is the 1-based count of failed attempts of the unit so far.
        """

        policy = self.policies[category]
        with self._lock:
            state = self._states.setdefault(
                capability_class,
                EscalationState(capability_class=capability_class),
            )
            if state.last_category == category:
                state.consecutive_failures += 1
            else:
                state.consecutive_failures = 1
                state.last_category = category
            state.attempts += 1
            consecutive = state.consecutive_failures

            tier, reason = self._select_tier(
                policy=policy,
                attempt=attempt,
                consecutive=consecutive,
            )
            state.tier = tier

        if attempt >= policy.max_attempts:
            decision = EscalationDecision(
                category=category,
                attempt=attempt,
                tier=tier,
                action=RemediationAction.ABANDON,
                delay_seconds=0.0,
                reason=f"max_attempts_exceeded ({policy.max_attempts})",
            )
        else:
            decision = EscalationDecision(
                category=category,
                attempt=attempt,
                tier=tier,
                action=self._select_action(category=category, tier=tier, attempt=attempt),
                delay_seconds=float(self.schedules[tier].delay_for(attempt)),
                reason=reason,
            )
        logger.info(
            "Escalation for %s: category=%s attempt=%d consecutive=%d tier=%s action=%s delay=%.1fs",
            capability_class,
            category.value,
            attempt,
            consecutive,
            decision.tier.value,
            decision.action.value,
            decision.delay_seconds,
        )
        return decision

    def record_success(self, capability_class: str) -> None:
        """Reset the failure streak of a capability class."""

        with self._lock:
            state = self._states.get(capability_class)
            if state is None:
                return
            state.consecutive_failures = 0
            state.last_category = None
            state.tier = EscalationTier.NONE
            state.attempts = 0

    def _select_tier(
        self,
        *,
        policy: CategoryPolicy,
        attempt: int,
        consecutive: int,
    ) -> tuple[EscalationTier, str]:
        if policy.immediate_hard:
            return EscalationTier.HARD, "immediate_escalation"
        if consecutive >= self.consecutive_failure_limit:
            return EscalationTier.HARD, "consecutive_failures"
        by_attempt = tier_for_attempt(attempt)
        if policy.default_tier.rank > by_attempt.rank:
            return policy.default_tier, "category_default"
        return by_attempt, "attempt_count"

    def _select_action(
        self,
        *,
        category: FailureCategory,
        tier: EscalationTier,
        attempt: int,
    ) -> RemediationAction:
        if tier == EscalationTier.HARD:
            return RemediationAction.PROVISION_SURFACE
        if category in _CONTEXT_BOUND_CATEGORIES:
            return RemediationAction.RECREATE_CONTEXT
        if attempt <= IN_PLACE_ATTEMPT_LIMIT:
            return RemediationAction.RETRY_IN_PLACE
        return RemediationAction.RECREATE_CONTEXT
