"""Feature-name normalization and per-feature timing defaults."""

from __future__ import annotations

DEEP_RESEARCH = "deep research"
AGENT = "agent"
CANVAS = "canvas"
WEB_SEARCH = "web search"
NORMAL = "normal"

_ALIASES: dict[str, str] = {
    "deep research": DEEP_RESEARCH,
    "deepresearch": DEEP_RESEARCH,
    "deep_research": DEEP_RESEARCH,
    "ディープリサーチ": DEEP_RESEARCH,
    "agent": AGENT,
    "agent mode": AGENT,
    "agentmode": AGENT,
    "エージェント": AGENT,
    "エージェントモード": AGENT,
    "canvas": CANVAS,
    "キャンバス": CANVAS,
    "web search": WEB_SEARCH,
    "websearch": WEB_SEARCH,
    "web_search": WEB_SEARCH,
    "ウェブ検索": WEB_SEARCH,
    "normal": NORMAL,
    "standard": NORMAL,
    "通常": NORMAL,
    "標準": NORMAL,
    "": NORMAL,
}

LEASE_MINUTES_BY_FEATURE: dict[str, int] = {
    DEEP_RESEARCH: 40,
    AGENT: 40,
    CANVAS: 10,
    WEB_SEARCH: 8,
    NORMAL: 5,
}

MAX_WAIT_SECONDS_BY_FEATURE: dict[str, int] = {
    DEEP_RESEARCH: 2_400,
    AGENT: 2_400,
    CANVAS: 300,
    WEB_SEARCH: 300,
    NORMAL: 300,
}


def normalize_feature(name: str | None) -> str:
    """Map a free-form feature label to its canonical name.

    Unknown labels are returned lower-cased so they still key lookups, which
    then fall back to the normal defaults.
    """

    key = " ".join((name or "").strip().lower().split())
    return _ALIASES.get(key, key)
