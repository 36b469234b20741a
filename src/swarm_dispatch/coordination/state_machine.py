"""Job lifecycle transitions and completion-criteria evaluation."""

from __future__ import annotations

from datetime import datetime

from swarm_dispatch.coordination.models import (
    CompletionEvaluation,
    Job,
    JobCompletionCriteria,
    JobStatus,
    StateTransitionResult,
    compile_pattern,
)
from swarm_dispatch.storage.common import utc_now

_VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.NEW: frozenset({JobStatus.PENDING, JobStatus.STARTED, JobStatus.CANCELLED}),
    JobStatus.PENDING: frozenset({JobStatus.STARTED, JobStatus.CANCELLED, JobStatus.NEW}),
    JobStatus.STARTED: frozenset(
        {
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
            JobStatus.STALLED,
            JobStatus.NEW,
        },
    ),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
            JobStatus.STALLED,
            JobStatus.STARTED,
            JobStatus.NEW,
        },
    ),
    JobStatus.STALLED: frozenset({JobStatus.NEW, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset({JobStatus.NEW}),
    JobStatus.FAILED: frozenset({JobStatus.NEW}),
    JobStatus.CANCELLED: frozenset({JobStatus.NEW}),
}

# Interactive pause: entered from a running state, left only by resuming.
_PAUSE_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.STARTED: frozenset({JobStatus.PAUSED}),
    JobStatus.PROCESSING: frozenset({JobStatus.PAUSED}),
    JobStatus.PAUSED: frozenset({JobStatus.PROCESSING}),
}

_TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
_ACTIVE_STATES = frozenset({JobStatus.STARTED, JobStatus.PROCESSING})
_WAITING_STATES = frozenset({JobStatus.NEW, JobStatus.PENDING})
_RETRYABLE_STATES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.STALLED})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return whether ``current -> target`` is a legal edge."""

    if current == target:
        return True
    return target in valid_transitions(current)


def valid_transitions(current: JobStatus) -> frozenset[JobStatus]:
    """Return every status reachable in one step from ``current``."""

    return _VALID_TRANSITIONS.get(current, frozenset()) | _PAUSE_TRANSITIONS.get(
        current,
        frozenset(),
    )


def is_terminal_state(status: JobStatus) -> bool:
    return status in _TERMINAL_STATES


def is_active_state(status: JobStatus) -> bool:
    return status in _ACTIVE_STATES


def is_waiting_state(status: JobStatus) -> bool:
    return status in _WAITING_STATES


def can_cancel(status: JobStatus) -> bool:
    return not is_terminal_state(status)


def can_retry(status: JobStatus) -> bool:
    return status in _RETRYABLE_STATES


def try_transition(
    job: Job,
    new_status: JobStatus,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> StateTransitionResult:
    """Validate and apply a status change together with its side effects.

    On an illegal edge the job is left untouched and the result carries
    ``success=False`` with a descriptive error message.
    """

    current = job.status
    now = now or utc_now()
    if not can_transition(current, new_status):
        return StateTransitionResult(
            success=False,
            previous_status=current,
            new_status=current,
            transition_time=now,
            error_message=(
                f"Invalid state transition from {current.value} to {new_status.value}"
            ),
            reason=reason,
        )

    job.status = new_status
    if new_status == JobStatus.STARTED:
        if job.started_at is None:
            job.started_at = now
        job.last_activity_at = now
        job.last_heartbeat_at = now
    elif new_status == JobStatus.PROCESSING:
        job.last_activity_at = now
        job.last_heartbeat_at = now
    elif new_status in _TERMINAL_STATES:
        job.completed_at = now
        job.current_activity = None
        job.worker_instance_id = None
        job.process_id = None
    elif new_status == JobStatus.STALLED:
        job.last_activity_at = now
    elif new_status == JobStatus.NEW:
        # Token/cost totals and output history stay with the caller.
        job.started_at = None
        job.completed_at = None
        job.current_activity = None
        job.worker_instance_id = None
        job.process_id = None
        job.last_heartbeat_at = None
        job.cancellation_requested = False

    return StateTransitionResult(
        success=True,
        previous_status=current,
        new_status=new_status,
        transition_time=now,
        reason=reason,
    )


def evaluate_completion(  # noqa: PLR0911
    job: Job,
    criteria: JobCompletionCriteria,
    *,
    now: datetime | None = None,
) -> CompletionEvaluation:
    """Check a job against its stopping criteria without mutating it.

    Checks run in a fixed priority order and the first match wins:
    terminal status, execution timeout, token budget, cost budget, stall,
    exhausted retries while stalled, success pattern, failure pattern.
    """

    now = now or utc_now()
    evaluation = CompletionEvaluation(job_id=job.job_id, evaluated_at=now, criteria=criteria)

    if is_terminal_state(job.status):
        return _complete(evaluation, f"Job reached terminal state: {job.status.value}")

    if criteria.max_execution_time is not None and job.started_at is not None:
        elapsed = now - job.started_at
        if elapsed > criteria.max_execution_time:
            return _complete(
                evaluation,
                f"Exceeded maximum execution time of {criteria.max_execution_time}",
                should_fail=True,
            )

    if criteria.max_tokens is not None and job.output_tokens is not None:
        if job.output_tokens >= criteria.max_tokens:
            return _complete(evaluation, f"Reached token limit of {criteria.max_tokens}")

    if criteria.max_cost_usd is not None and job.total_cost_usd is not None:
        if job.total_cost_usd >= criteria.max_cost_usd:
            return _complete(evaluation, f"Reached cost limit of ${criteria.max_cost_usd}")

    if criteria.stall_timeout is not None and job.last_activity_at is not None:
        idle = now - job.last_activity_at
        if idle > criteria.stall_timeout:
            return _complete(
                evaluation,
                f"Job stalled for {idle}",
                should_retry=job.retry_count < job.max_retries,
            )

    # max_retries == 0 means no retry limit for this check.
    if (
        job.max_retries > 0
        and job.retry_count >= job.max_retries
        and job.status == JobStatus.STALLED
    ):
        return _complete(
            evaluation,
            f"Exceeded maximum retry count of {job.max_retries}",
            should_fail=True,
        )

    success = compile_pattern("success_pattern", criteria.success_pattern)
    if success is not None and job.output and success.search(job.output):
        return _complete(evaluation, "Output matched success pattern")

    failure = compile_pattern("failure_pattern", criteria.failure_pattern)
    if failure is not None:
        haystack = f"{job.output or ''}\n{job.error_message or ''}"
        if failure.search(haystack):
            return _complete(evaluation, "Output matched failure pattern", should_fail=True)

    return evaluation


def _complete(
    evaluation: CompletionEvaluation,
    reason: str,
    *,
    should_fail: bool = False,
    should_retry: bool = False,
) -> CompletionEvaluation:
    evaluation.is_complete = True
    evaluation.should_fail = should_fail
    evaluation.should_retry = should_retry
    evaluation.completion_reason = reason
    return evaluation
