"""Domain models for job coordination across execution providers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states."""

    NEW = "new"
    PENDING = "pending"
    STARTED = "started"
    PROCESSING = "processing"
    PAUSED = "paused"
    STALLED = "stalled"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CircuitState(str, Enum):
    """Circuit breaker states for one provider."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class Job:
    """Unit of work dispatched to one provider.

    ``status`` is written only by ``state_machine.try_transition``.
    """

    job_id: str
    project_id: str
    goal_prompt: str
    created_at: datetime
    status: JobStatus = JobStatus.NEW
    provider_id: str | None = None
    priority: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_activity_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    retry_count: int = 0
    max_retries: int = 3
    cancellation_requested: bool = False
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_cost_usd: float | None = None
    output: str | None = None
    error_message: str | None = None
    current_activity: str | None = None
    worker_instance_id: str | None = None
    process_id: int | None = None
    depends_on_job_id: str | None = None
    completion_profile: str = "default"


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job."""

    project_id: str
    goal_prompt: str
    job_id: str | None = None
    provider_id: str | None = None
    priority: int = 0
    max_retries: int = 3
    depends_on_job_id: str | None = None
    completion_profile: str = "default"


@dataclass(slots=True)
class Provider:
    """Configured execution backend. Health and load live in the tracker."""

    provider_id: str
    name: str
    provider_type: str
    is_enabled: bool = True
    is_default: bool = False
    created_at: datetime | None = None


@dataclass(slots=True)
class ProviderHealth:
    """Point-in-time health snapshot computed by the tracker."""

    provider_id: str
    is_healthy: bool
    circuit_state: CircuitState
    current_load: int
    total_successes: int
    total_failures: int
    recent_failure_rate: float
    average_response_time: timedelta
    last_success: datetime | None
    last_failure: datetime | None
    last_error: str | None


@dataclass(slots=True)
class JobAssignment:
    """Provisional job-to-provider binding handed to the scheduler loop."""

    job: Job
    provider: Provider
    assigned_at: datetime


_PROFILE_LIMITS: dict[str, tuple[timedelta, timedelta]] = {
    "default": (timedelta(hours=1), timedelta(minutes=5)),
    "long_running": (timedelta(hours=4), timedelta(minutes=15)),
    "quick_task": (timedelta(minutes=10), timedelta(minutes=2)),
}
COMPLETION_PROFILES = tuple(_PROFILE_LIMITS)


@dataclass(slots=True)
class JobCompletionCriteria:
    """Stopping criteria for a running job.

    Patterns are compiled eagerly, so a malformed expression raises
    ``ValueError`` at construction instead of on the first evaluation.
    """

    max_execution_time: timedelta | None = None
    max_tokens: int | None = None
    max_cost_usd: float | None = None
    stall_timeout: timedelta | None = timedelta(minutes=5)
    success_pattern: str | None = None
    failure_pattern: str | None = None

    def __post_init__(self) -> None:
        for name in ("success_pattern", "failure_pattern"):
            compile_pattern(name, getattr(self, name))

    @classmethod
    def for_profile(cls, name: str) -> JobCompletionCriteria:
        """Build criteria for a named job class."""

        key = name.strip().lower()
        if key not in _PROFILE_LIMITS:
            raise ValueError(
                f"Unsupported completion profile: {name!r}. Use one of {COMPLETION_PROFILES}.",
            )
        max_execution_time, stall_timeout = _PROFILE_LIMITS[key]
        return cls(max_execution_time=max_execution_time, stall_timeout=stall_timeout)


def compile_pattern(name: str, pattern: str | None) -> re.Pattern[str] | None:
    """Compile an optional criteria pattern, naming the field on failure."""

    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as error:
        raise ValueError(f"Invalid {name} regular expression {pattern!r}: {error}") from error


@dataclass(slots=True)
class CompletionEvaluation:
    """Outcome of evaluating a job against its completion criteria."""

    job_id: str
    evaluated_at: datetime
    criteria: JobCompletionCriteria
    is_complete: bool = False
    should_fail: bool = False
    should_retry: bool = False
    completion_reason: str | None = None


@dataclass(slots=True)
class StateTransitionResult:
    """Outcome of one transition attempt."""

    success: bool
    previous_status: JobStatus
    new_status: JobStatus
    transition_time: datetime
    error_message: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class DispatchEvent:
    """Outward notification about a job or provider change."""

    event_type: str
    job_id: str | None = None
    provider_id: str | None = None
    status_from: JobStatus | None = None
    status_to: JobStatus | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DispatchEventView:
    """Stored dispatch event for audit trail."""

    event_id: int
    job_id: str | None
    provider_id: str | None
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueStatistics:
    """Aggregate queue counters for CLI reporting."""

    total_jobs: int = 0
    pending_jobs: int = 0
    running_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    stalled_jobs: int = 0
    average_wait_time: timedelta = timedelta(0)
    average_execution_time: timedelta = timedelta(0)
    jobs_by_priority: dict[int, int] = field(default_factory=dict)
    jobs_by_project: dict[str, int] = field(default_factory=dict)
