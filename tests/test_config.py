from __future__ import annotations

from pathlib import Path

import allure
import pytest

from swarm_dispatch.config import CoordinatorSettings, HealthSettings, QueueSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "SWARM_DISPATCH_DB_PATH",
        "SWARM_DISPATCH_FAILURE_THRESHOLD",
        "SWARM_DISPATCH_MAX_JOBS_PER_PROVIDER",
        "SWARM_DISPATCH_REBALANCE_ENABLED",
        "SWARM_DISPATCH_LOG_LEVEL",
        "SWARM_DISPATCH_WORKER_ID",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".swarm_dispatch.db")
    assert settings.log_level == "WARNING"
    assert settings.health.failure_threshold == 5
    assert settings.health.failure_window_seconds == 300
    assert settings.health.circuit_reset_timeout_seconds == 120
    assert settings.health.success_threshold == 2
    assert settings.coordinator.max_jobs_per_provider == 3
    assert settings.coordinator.provider_selection_timeout_seconds == 10.0
    assert settings.coordinator.rebalance_enabled is True
    assert settings.coordinator.worker_id == "swarm-dispatch-worker"
    assert settings.queue.max_jobs_per_project == 1
    assert settings.queue.requeue_delay_seconds == 30
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SWARM_DISPATCH_FAILURE_THRESHOLD", "2")
    monkeypatch.setenv("SWARM_DISPATCH_MAX_JOBS_PER_PROVIDER", "7")
    monkeypatch.setenv("SWARM_DISPATCH_REBALANCE_ENABLED", "off")
    monkeypatch.setenv("SWARM_DISPATCH_DEFAULT_PROFILE", " Quick_Task ")
    monkeypatch.setenv("SWARM_DISPATCH_LOG_LEVEL", "debug")
    monkeypatch.setenv("SWARM_DISPATCH_WORKER_ID", " worker-7 ")

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.health.failure_threshold == 2
    assert settings.coordinator.max_jobs_per_provider == 7
    assert settings.coordinator.rebalance_enabled is False
    assert settings.monitor.default_profile == "quick_task"
    assert settings.log_level == "DEBUG"
    assert settings.coordinator.worker_id == "worker-7"


def test_from_env_rejects_unknown_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SWARM_DISPATCH_REBALANCE_ENABLED", "maybe")

    with pytest.raises(ValueError, match="SWARM_DISPATCH_REBALANCE_ENABLED"):
        Settings.from_env()


def test_validate_rejects_non_positive_capacity() -> None:
    settings = Settings(coordinator=CoordinatorSettings(max_jobs_per_provider=0))

    with pytest.raises(ValueError, match="SWARM_DISPATCH_MAX_JOBS_PER_PROVIDER"):
        settings.validate()


def test_validate_rejects_non_positive_failure_window() -> None:
    settings = Settings(health=HealthSettings(failure_window_seconds=0))

    with pytest.raises(ValueError, match="SWARM_DISPATCH_FAILURE_WINDOW_SECONDS"):
        settings.validate()


def test_validate_rejects_negative_requeue_delay() -> None:
    settings = Settings(queue=QueueSettings(requeue_delay_seconds=-1))

    with pytest.raises(ValueError, match="SWARM_DISPATCH_REQUEUE_DELAY_SECONDS"):
        settings.validate()


def test_validate_rejects_unknown_log_level() -> None:
    with pytest.raises(ValueError, match="SWARM_DISPATCH_LOG_LEVEL"):
        Settings(log_level="LOUD").validate()
