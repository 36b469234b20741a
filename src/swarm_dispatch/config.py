"""Runtime configuration for job dispatch and provider coordination."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class HealthSettings:
    """Circuit breaker thresholds for provider health tracking."""

    failure_threshold: int = 5
    failure_window_seconds: int = 300
    circuit_reset_timeout_seconds: int = 120
    success_threshold: int = 2


@dataclass(slots=True)
class CoordinatorSettings:
    """Provider selection and batch assignment settings."""

    max_jobs_per_provider: int = 3
    provider_selection_timeout_seconds: float = 10.0
    batch_size: int = 5
    poll_interval_seconds: float = 2.0
    rebalance_enabled: bool = True
    worker_id: str = "swarm-dispatch-worker"


@dataclass(slots=True)
class QueueSettings:
    """Pending-job queue settings."""

    max_jobs_per_project: int = 1
    requeue_delay_seconds: int = 30


@dataclass(slots=True)
class MonitorSettings:
    """Completion monitor settings."""

    default_profile: str = "default"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".swarm_dispatch.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    health: HealthSettings = field(default_factory=HealthSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SWARM_DISPATCH_DB_PATH", ".swarm_dispatch.db")),
            sqlite_busy_timeout_ms=int(os.getenv("SWARM_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("SWARM_DISPATCH_LOG_LEVEL", "WARNING").strip().upper(),
            health=HealthSettings(
                failure_threshold=int(os.getenv("SWARM_DISPATCH_FAILURE_THRESHOLD", "5")),
                failure_window_seconds=int(
                    os.getenv("SWARM_DISPATCH_FAILURE_WINDOW_SECONDS", "300"),
                ),
                circuit_reset_timeout_seconds=int(
                    os.getenv("SWARM_DISPATCH_CIRCUIT_RESET_TIMEOUT_SECONDS", "120"),
                ),
                success_threshold=int(os.getenv("SWARM_DISPATCH_SUCCESS_THRESHOLD", "2")),
            ),
            coordinator=CoordinatorSettings(
                max_jobs_per_provider=int(
                    os.getenv("SWARM_DISPATCH_MAX_JOBS_PER_PROVIDER", "3"),
                ),
                provider_selection_timeout_seconds=float(
                    os.getenv("SWARM_DISPATCH_PROVIDER_SELECTION_TIMEOUT_SECONDS", "10.0"),
                ),
                batch_size=int(os.getenv("SWARM_DISPATCH_BATCH_SIZE", "5")),
                poll_interval_seconds=float(
                    os.getenv("SWARM_DISPATCH_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                rebalance_enabled=_env_bool("SWARM_DISPATCH_REBALANCE_ENABLED", default=True),
                worker_id=os.getenv("SWARM_DISPATCH_WORKER_ID", "swarm-dispatch-worker").strip(),
            ),
            queue=QueueSettings(
                max_jobs_per_project=int(os.getenv("SWARM_DISPATCH_MAX_JOBS_PER_PROJECT", "1")),
                requeue_delay_seconds=int(
                    os.getenv("SWARM_DISPATCH_REQUEUE_DELAY_SECONDS", "30"),
                ),
            ),
            monitor=MonitorSettings(
                default_profile=os.getenv("SWARM_DISPATCH_DEFAULT_PROFILE", "default")
                .strip()
                .lower(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any threshold or capacity is out of range."""

        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(
                f"Invalid SWARM_DISPATCH_LOG_LEVEL: {self.log_level!r}. "
                f"Use one of {SUPPORTED_LOG_LEVELS}.",
            )
        _require_positive("SWARM_DISPATCH_FAILURE_THRESHOLD", self.health.failure_threshold)
        _require_positive(
            "SWARM_DISPATCH_FAILURE_WINDOW_SECONDS",
            self.health.failure_window_seconds,
        )
        _require_positive(
            "SWARM_DISPATCH_CIRCUIT_RESET_TIMEOUT_SECONDS",
            self.health.circuit_reset_timeout_seconds,
        )
        _require_positive("SWARM_DISPATCH_SUCCESS_THRESHOLD", self.health.success_threshold)
        _require_positive(
            "SWARM_DISPATCH_MAX_JOBS_PER_PROVIDER",
            self.coordinator.max_jobs_per_provider,
        )
        _require_positive(
            "SWARM_DISPATCH_PROVIDER_SELECTION_TIMEOUT_SECONDS",
            self.coordinator.provider_selection_timeout_seconds,
        )
        _require_positive("SWARM_DISPATCH_BATCH_SIZE", self.coordinator.batch_size)
        _require_positive("SWARM_DISPATCH_MAX_JOBS_PER_PROJECT", self.queue.max_jobs_per_project)
        if self.coordinator.poll_interval_seconds < 0:
            raise ValueError("SWARM_DISPATCH_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.queue.requeue_delay_seconds < 0:
            raise ValueError("SWARM_DISPATCH_REQUEUE_DELAY_SECONDS must be >= 0.")


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {value!r}.")


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
