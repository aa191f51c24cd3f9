"""Runtime configuration for the spreadsheet orchestrator."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path

from sheet_relay.orchestrator.features import (
    LEASE_MINUTES_BY_FEATURE,
    MAX_WAIT_SECONDS_BY_FEATURE,
    normalize_feature,
)

SUPPORTED_STORE_BACKENDS = ("csv", "sheets")
SUPPORTED_SURFACES = ("echo",)
DEFAULT_SURFACE_URLS: dict[str, str] = {
    "chatgpt": "https://chatgpt.com/",
    "claude": "https://claude.ai/new",
    "gemini": "https://gemini.google.com/app",
    "report": "https://docs.google.com/document/create",
    "genspark": "https://www.genspark.ai/",
    "genspark_slide": "https://www.genspark.ai/agents?type=slides_agent",
    "genspark_factcheck": "https://www.genspark.ai/agents?type=agentic_cross_check",
}


@dataclass(slots=True)
class PoolSettings:
    """Execution-context pool and batch pacing."""

    pool_size: int = 3
    stagger_seconds: float = 3.0
    worker_id: str = field(default_factory=platform.node)
    pass_interval_seconds: float = 30.0


@dataclass(slots=True)
class LeaseSettings:
    """Lease marker convention and durations."""

    marker_token: str = "IN PROGRESS"
    abandoned_token: str = "ABANDONED"
    default_minutes: int = 5
    minutes_by_feature: dict[str, int] = field(
        default_factory=lambda: dict(LEASE_MINUTES_BY_FEATURE),
    )
    reclaim_own_markers: bool = True
    mark_abandoned: bool = False
    verify_after_write: bool = True


@dataclass(slots=True)
class WaitSettings:
    """Completion polling and phase retry bounds."""

    poll_interval_seconds: float = 2.0
    idle_window_seconds: float = 10.0
    default_max_wait_seconds: int = 300
    max_wait_by_feature: dict[str, int] = field(
        default_factory=lambda: dict(MAX_WAIT_SECONDS_BY_FEATURE),
    )
    extraction_strategies: tuple[str, ...] = ("primary", "fallback")
    configure_attempts: int = 3
    dependency_wait_seconds: float = 30.0


@dataclass(slots=True)
class StoreSettings:
    """Where the task sheet lives."""

    backend: str = "csv"
    csv_path: Path | None = None
    spreadsheet_id: str = ""
    sheet_name: str | None = None
    access_token: str = ""
    snapshot_range: str = "A1:ZZ1000"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class SurfaceSettings:
    """Interactive surface selection and per-class entry URLs."""

    kind: str = "echo"
    urls: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SURFACE_URLS))
    default_class: str = "chatgpt"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".sheet_relay.db")
    log_level: str = "INFO"
    pool: PoolSettings = field(default_factory=PoolSettings)
    lease: LeaseSettings = field(default_factory=LeaseSettings)
    wait: WaitSettings = field(default_factory=WaitSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    surface: SurfaceSettings = field(default_factory=SurfaceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        csv_path = os.getenv("SHEET_RELAY_CSV_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("SHEET_RELAY_DB_PATH", ".sheet_relay.db")),
            log_level=os.getenv("SHEET_RELAY_LOG_LEVEL", "INFO").upper(),
            pool=PoolSettings(
                pool_size=int(os.getenv("SHEET_RELAY_POOL_SIZE", "3")),
                stagger_seconds=float(os.getenv("SHEET_RELAY_STAGGER_SECONDS", "3.0")),
                worker_id=os.getenv("SHEET_RELAY_WORKER_ID", "").strip() or platform.node(),
                pass_interval_seconds=float(
                    os.getenv("SHEET_RELAY_PASS_INTERVAL_SECONDS", "30.0"),
                ),
            ),
            lease=LeaseSettings(
                marker_token=os.getenv("SHEET_RELAY_LEASE_TOKEN", "IN PROGRESS"),
                abandoned_token=os.getenv("SHEET_RELAY_ABANDONED_TOKEN", "ABANDONED"),
                default_minutes=int(os.getenv("SHEET_RELAY_LEASE_DEFAULT_MINUTES", "5")),
                minutes_by_feature={
                    **LEASE_MINUTES_BY_FEATURE,
                    **_collect_feature_overrides("SHEET_RELAY_LEASE_MINUTES"),
                },
                reclaim_own_markers=_env_bool("SHEET_RELAY_RECLAIM_OWN_MARKERS", default=True),
                mark_abandoned=_env_bool("SHEET_RELAY_MARK_ABANDONED", default=False),
                verify_after_write=_env_bool("SHEET_RELAY_LEASE_VERIFY", default=True),
            ),
            wait=WaitSettings(
                poll_interval_seconds=float(os.getenv("SHEET_RELAY_POLL_INTERVAL_SECONDS", "2.0")),
                idle_window_seconds=float(os.getenv("SHEET_RELAY_IDLE_WINDOW_SECONDS", "10.0")),
                default_max_wait_seconds=int(os.getenv("SHEET_RELAY_MAX_WAIT_SECONDS", "300")),
                max_wait_by_feature={
                    **MAX_WAIT_SECONDS_BY_FEATURE,
                    **_collect_feature_overrides("SHEET_RELAY_MAX_WAIT"),
                },
                configure_attempts=int(os.getenv("SHEET_RELAY_CONFIGURE_ATTEMPTS", "3")),
                dependency_wait_seconds=float(
                    os.getenv("SHEET_RELAY_DEPENDENCY_WAIT_SECONDS", "30.0"),
                ),
            ),
            store=StoreSettings(
                backend=os.getenv("SHEET_RELAY_STORE", "csv").strip().lower(),
                csv_path=Path(csv_path) if csv_path else None,
                spreadsheet_id=os.getenv("SHEET_RELAY_SPREADSHEET_ID", "").strip(),
                sheet_name=os.getenv("SHEET_RELAY_SHEET_NAME", "").strip() or None,
                access_token=os.getenv("SHEET_RELAY_ACCESS_TOKEN", "").strip(),
                snapshot_range=os.getenv("SHEET_RELAY_SNAPSHOT_RANGE", "A1:ZZ1000"),
                request_timeout_seconds=float(
                    os.getenv("SHEET_RELAY_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("SHEET_RELAY_STORE_MAX_RETRIES", "3")),
            ),
            surface=SurfaceSettings(
                kind=os.getenv("SHEET_RELAY_SURFACE", "echo").strip().lower(),
                urls={**DEFAULT_SURFACE_URLS, **_collect_surface_urls()},
                default_class=os.getenv("SHEET_RELAY_DEFAULT_CLASS", "chatgpt").strip().lower(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.pool.pool_size <= 0:
            raise ValueError("SHEET_RELAY_POOL_SIZE must be a positive integer.")
        if self.pool.stagger_seconds < 0:
            raise ValueError("SHEET_RELAY_STAGGER_SECONDS must be >= 0.")
        if not self.pool.worker_id.strip():
            raise ValueError("SHEET_RELAY_WORKER_ID must not be empty.")
        if self.pool.pass_interval_seconds < 0:
            raise ValueError("SHEET_RELAY_PASS_INTERVAL_SECONDS must be >= 0.")
        if not self.lease.marker_token.strip():
            raise ValueError("SHEET_RELAY_LEASE_TOKEN must not be empty.")
        if self.lease.marker_token.strip() == self.lease.abandoned_token.strip():
            raise ValueError("Lease and abandoned marker tokens must differ.")
        if self.lease.default_minutes <= 0:
            raise ValueError("SHEET_RELAY_LEASE_DEFAULT_MINUTES must be > 0.")
        for feature, minutes in self.lease.minutes_by_feature.items():
            if minutes <= 0:
                raise ValueError(f"Lease minutes must be positive: {feature!r} -> {minutes}")
        if self.wait.poll_interval_seconds <= 0:
            raise ValueError("SHEET_RELAY_POLL_INTERVAL_SECONDS must be > 0.")
        if self.wait.idle_window_seconds < 0:
            raise ValueError("SHEET_RELAY_IDLE_WINDOW_SECONDS must be >= 0.")
        if self.wait.default_max_wait_seconds <= 0:
            raise ValueError("SHEET_RELAY_MAX_WAIT_SECONDS must be > 0.")
        if not self.wait.extraction_strategies:
            raise ValueError("At least one extraction strategy is required.")
        if self.wait.configure_attempts <= 0:
            raise ValueError("SHEET_RELAY_CONFIGURE_ATTEMPTS must be > 0.")
        if self.store.backend not in SUPPORTED_STORE_BACKENDS:
            raise ValueError(
                f"Unsupported store backend {self.store.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_STORE_BACKENDS)}.",
            )
        if self.store.backend == "csv" and self.store.csv_path is None:
            raise ValueError("CSV store requires SHEET_RELAY_CSV_PATH (or --csv).")
        if self.store.backend == "sheets" and (
            not self.store.spreadsheet_id or not self.store.access_token
        ):
            raise ValueError(
                "Sheets store requires SHEET_RELAY_SPREADSHEET_ID and SHEET_RELAY_ACCESS_TOKEN.",
            )
        if self.surface.kind not in SUPPORTED_SURFACES:
            raise ValueError(
                f"Unsupported surface {self.surface.kind!r}. "
                f"Expected one of: {', '.join(SUPPORTED_SURFACES)}.",
            )


def _collect_feature_overrides(prefix: str) -> dict[str, int]:
    """Parse ``<feature>|<value>`` pairs, comma separated."""

    raw = os.getenv(prefix, "").strip()
    if not raw:
        return {}

    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                f"Invalid {prefix} entry: {token!r}. Expected format '<feature>|<value>'.",
            )
        feature, value_raw = token.rsplit("|", 1)
        try:
            value = int(value_raw.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid {prefix} value for {feature.strip()!r}: {value_raw.strip()!r}",
            ) from error
        overrides[normalize_feature(feature)] = value
    return overrides


def _collect_surface_urls() -> dict[str, str]:
    urls: dict[str, str] = {}
    for capability_class in DEFAULT_SURFACE_URLS:
        value = os.getenv(f"SHEET_RELAY_{capability_class.upper()}_URL", "").strip()
        if value:
            urls[capability_class] = value
    return urls


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
