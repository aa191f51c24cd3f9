from __future__ import annotations

from pathlib import Path

import allure
import pytest

from sheet_relay.config import (
    DEFAULT_SURFACE_URLS,
    LeaseSettings,
    PoolSettings,
    Settings,
    StoreSettings,
    SurfaceSettings,
    WaitSettings,
)

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Configuration"),
]


def _csv_settings(**kwargs) -> Settings:
    kwargs.setdefault("pool", PoolSettings(worker_id="worker-a"))
    return Settings(store=StoreSettings(csv_path=Path("tasks.csv")), **kwargs)


def test_defaults_validate_with_csv_path() -> None:
    _csv_settings().validate()


def test_csv_store_requires_path() -> None:
    with pytest.raises(ValueError, match="SHEET_RELAY_CSV_PATH"):
        Settings(pool=PoolSettings(worker_id="worker-a")).validate()


def test_sheets_store_requires_id_and_token() -> None:
    settings = Settings(
        pool=PoolSettings(worker_id="worker-a"),
        store=StoreSettings(backend="sheets", spreadsheet_id="abc"),
    )

    with pytest.raises(ValueError, match="SHEET_RELAY_ACCESS_TOKEN"):
        settings.validate()


def test_unknown_store_backend_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unsupported store backend"):
        Settings(
            pool=PoolSettings(worker_id="worker-a"),
            store=StoreSettings(backend="excel"),
        ).validate()


def test_unknown_surface_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unsupported surface"):
        _csv_settings(surface=SurfaceSettings(kind="browser")).validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (_csv_settings(pool=PoolSettings(pool_size=0)), "SHEET_RELAY_POOL_SIZE"),
        (_csv_settings(pool=PoolSettings(stagger_seconds=-1)), "SHEET_RELAY_STAGGER_SECONDS"),
        (_csv_settings(pool=PoolSettings(worker_id=" ")), "SHEET_RELAY_WORKER_ID"),
        (
            _csv_settings(lease=LeaseSettings(abandoned_token="IN PROGRESS")),
            "tokens must differ",
        ),
        (
            _csv_settings(lease=LeaseSettings(minutes_by_feature={"canvas": 0})),
            "Lease minutes must be positive",
        ),
        (
            _csv_settings(wait=WaitSettings(poll_interval_seconds=0)),
            "SHEET_RELAY_POLL_INTERVAL_SECONDS",
        ),
        (
            _csv_settings(wait=WaitSettings(extraction_strategies=())),
            "extraction strategy",
        ),
        (
            _csv_settings(wait=WaitSettings(configure_attempts=0)),
            "SHEET_RELAY_CONFIGURE_ATTEMPTS",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEET_RELAY_POOL_SIZE", "2")
    monkeypatch.setenv("SHEET_RELAY_WORKER_ID", "desk-7")
    monkeypatch.setenv("SHEET_RELAY_CSV_PATH", "sheet.csv")
    monkeypatch.setenv("SHEET_RELAY_LEASE_MINUTES", "Deep Research|60, canvas|12")
    monkeypatch.setenv("SHEET_RELAY_MAX_WAIT", "agent|3600")
    monkeypatch.setenv("SHEET_RELAY_MARK_ABANDONED", "yes")
    monkeypatch.setenv("SHEET_RELAY_CLAUDE_URL", "https://claude.example/new")

    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.pool.pool_size == 2
    assert settings.pool.worker_id == "desk-7"
    assert settings.store.backend == "csv"
    assert settings.store.csv_path == Path("sheet.csv")
    assert settings.lease.minutes_by_feature["deep research"] == 60
    assert settings.lease.minutes_by_feature["canvas"] == 12
    assert settings.lease.minutes_by_feature["normal"] == 5
    assert settings.wait.max_wait_by_feature["agent"] == 3600
    assert settings.lease.mark_abandoned is True
    assert settings.surface.urls["claude"] == "https://claude.example/new"
    assert settings.surface.urls["chatgpt"] == DEFAULT_SURFACE_URLS["chatgpt"]
    settings.validate()


def test_from_env_rejects_bad_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEET_RELAY_LEASE_VERIFY", "maybe")

    with pytest.raises(ValueError, match="SHEET_RELAY_LEASE_VERIFY"):
        Settings.from_env()


def test_from_env_rejects_malformed_feature_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEET_RELAY_LEASE_MINUTES", "canvas=12")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_from_env_rejects_non_numeric_feature_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEET_RELAY_MAX_WAIT", "canvas|long")

    with pytest.raises(ValueError, match="Invalid SHEET_RELAY_MAX_WAIT value"):
        Settings.from_env()
