"""Deterministic failure classification for the escalation policy."""

from __future__ import annotations

from dataclasses import dataclass

from sheet_relay.orchestrator.models import FailureCategory

FAILURE_CLASSIFIER_VERSION = 1

_AUTH_OR_SESSION_PATTERNS: tuple[str, ...] = (
    "please log in",
    "login",
    "log in",
    "sign in",
    "authentication",
    "unauthorized",
    "session expired",
    "session",
    "ログイン",
    "セッション",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate limited",
    "too many requests",
    "usage limit",
    "429",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "fetch",
    "connection reset",
    "connection refused",
    "could not resolve host",
)
_ELEMENT_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "element not found",
    "not found",
    "selector",
    "queryselector",
    "要素が見つかりません",
)
_INTERACTION_TIMING_PATTERNS: tuple[str, ...] = (
    "timing",
    "not interactable",
    "still loading",
    "wait",
    "タイミング",
)

_RULES: tuple[tuple[FailureCategory, str, tuple[str, ...]], ...] = (
    (FailureCategory.AUTH_OR_SESSION, "auth_or_session", _AUTH_OR_SESSION_PATTERNS),
    (FailureCategory.RATE_LIMIT, "rate_limit", _RATE_LIMIT_PATTERNS),
    (FailureCategory.NETWORK, "network", _NETWORK_PATTERNS),
    (FailureCategory.ELEMENT_NOT_FOUND, "element_not_found", _ELEMENT_NOT_FOUND_PATTERNS),
    (FailureCategory.INTERACTION_TIMING, "interaction_timing", _INTERACTION_TIMING_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    category: FailureCategory
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self, *, capability_class: str) -> dict[str, object]:
        """Serialize classifier diagnostics for the run journal."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "capability_class": capability_class,
            "category": self.category.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(message: str | None) -> FailureClassification:
    """Classify a surface error message, first matching rule wins."""

    haystack = (message or "").lower()
    for category, rule, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                category=category,
                matched_rule=rule,
                matched_pattern=pattern,
            )
    return FailureClassification(
        category=FailureCategory.GENERAL,
        matched_rule="fallback_general",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
