from __future__ import annotations

from datetime import UTC, datetime, timedelta
from itertools import product

import allure
import pytest

from swarm_dispatch.coordination.models import Job, JobStatus
from swarm_dispatch.coordination.state_machine import (
    can_cancel,
    can_retry,
    can_transition,
    is_active_state,
    is_terminal_state,
    is_waiting_state,
    try_transition,
    valid_transitions,
)

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("State Transitions"),
]

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

_LEGAL_EDGES = {
    (JobStatus.NEW, JobStatus.PENDING),
    (JobStatus.NEW, JobStatus.STARTED),
    (JobStatus.NEW, JobStatus.CANCELLED),
    (JobStatus.PENDING, JobStatus.STARTED),
    (JobStatus.PENDING, JobStatus.CANCELLED),
    (JobStatus.PENDING, JobStatus.NEW),
    (JobStatus.STARTED, JobStatus.PROCESSING),
    (JobStatus.STARTED, JobStatus.COMPLETED),
    (JobStatus.STARTED, JobStatus.FAILED),
    (JobStatus.STARTED, JobStatus.CANCELLED),
    (JobStatus.STARTED, JobStatus.STALLED),
    (JobStatus.STARTED, JobStatus.NEW),
    (JobStatus.STARTED, JobStatus.PAUSED),
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PROCESSING, JobStatus.CANCELLED),
    (JobStatus.PROCESSING, JobStatus.STALLED),
    (JobStatus.PROCESSING, JobStatus.STARTED),
    (JobStatus.PROCESSING, JobStatus.NEW),
    (JobStatus.PROCESSING, JobStatus.PAUSED),
    (JobStatus.PAUSED, JobStatus.PROCESSING),
    (JobStatus.STALLED, JobStatus.NEW),
    (JobStatus.STALLED, JobStatus.FAILED),
    (JobStatus.STALLED, JobStatus.CANCELLED),
    (JobStatus.COMPLETED, JobStatus.NEW),
    (JobStatus.FAILED, JobStatus.NEW),
    (JobStatus.CANCELLED, JobStatus.NEW),
}

_ILLEGAL_EDGES = [
    (current, target)
    for current, target in product(JobStatus, JobStatus)
    if current != target and (current, target) not in _LEGAL_EDGES
]


def _job(status: JobStatus = JobStatus.NEW, **overrides: object) -> Job:
    job = Job(
        job_id="job-1",
        project_id="project-1",
        goal_prompt="Refactor the parser.",
        created_at=NOW - timedelta(hours=1),
        status=status,
    )
    for name, value in overrides.items():
        setattr(job, name, value)
    return job


def test_transition_table_matches_documented_edges() -> None:
    reachable = {
        (current, target) for current in JobStatus for target in valid_transitions(current)
    }
    assert reachable == _LEGAL_EDGES


@pytest.mark.parametrize(("current", "target"), _ILLEGAL_EDGES)
def test_illegal_transition_fails_and_keeps_status(current: JobStatus, target: JobStatus) -> None:
    job = _job(current, worker_instance_id="worker-a")

    result = try_transition(job, target, now=NOW)

    assert result.success is False
    assert job.status == current
    assert job.worker_instance_id == "worker-a"
    assert result.error_message == (
        f"Invalid state transition from {current.value} to {target.value}"
    )


@pytest.mark.parametrize("status", list(JobStatus))
def test_same_status_transition_is_always_legal(status: JobStatus) -> None:
    assert can_transition(status, status)
    assert try_transition(_job(status), status, now=NOW).success


@pytest.mark.parametrize("target", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
def test_terminal_transition_clears_worker_binding(target: JobStatus) -> None:
    job = _job(
        JobStatus.PROCESSING,
        current_activity="editing files",
        worker_instance_id="worker-a",
        process_id=4242,
    )

    result = try_transition(job, target, reason="done", now=NOW)

    assert result.success
    assert result.previous_status == JobStatus.PROCESSING
    assert result.new_status == target
    assert result.reason == "done"
    assert job.completed_at == NOW
    assert job.current_activity is None
    assert job.worker_instance_id is None
    assert job.process_id is None


def test_start_sets_started_at_once() -> None:
    job = _job()
    try_transition(job, JobStatus.STARTED, now=NOW)
    assert job.started_at == NOW
    assert job.last_activity_at == NOW
    assert job.last_heartbeat_at == NOW

    later = NOW + timedelta(minutes=3)
    try_transition(job, JobStatus.PROCESSING, now=later)
    try_transition(job, JobStatus.STARTED, now=later)

    assert job.started_at == NOW
    assert job.last_heartbeat_at == later


def test_stall_refreshes_activity_timestamp() -> None:
    job = _job(JobStatus.PROCESSING, last_activity_at=NOW - timedelta(hours=1))

    try_transition(job, JobStatus.STALLED, now=NOW)

    assert job.last_activity_at == NOW


def test_reset_to_new_is_idempotent() -> None:
    job = _job(
        JobStatus.FAILED,
        started_at=NOW - timedelta(minutes=30),
        completed_at=NOW - timedelta(minutes=1),
        last_heartbeat_at=NOW - timedelta(minutes=2),
        cancellation_requested=True,
        output_tokens=900,
        total_cost_usd=0.4,
        output="partial answer",
    )

    assert try_transition(job, JobStatus.NEW, now=NOW).success
    first = (
        job.started_at,
        job.completed_at,
        job.current_activity,
        job.worker_instance_id,
        job.process_id,
        job.last_heartbeat_at,
        job.cancellation_requested,
    )
    assert try_transition(job, JobStatus.NEW, now=NOW + timedelta(seconds=5)).success
    second = (
        job.started_at,
        job.completed_at,
        job.current_activity,
        job.worker_instance_id,
        job.process_id,
        job.last_heartbeat_at,
        job.cancellation_requested,
    )

    assert first == second == (None, None, None, None, None, None, False)
    assert job.output_tokens == 900
    assert job.total_cost_usd == 0.4
    assert job.output == "partial answer"


def test_paused_job_only_resumes_to_processing() -> None:
    job = _job(JobStatus.PROCESSING)

    assert try_transition(job, JobStatus.PAUSED, now=NOW).success
    assert not try_transition(job, JobStatus.COMPLETED, now=NOW).success
    assert job.status == JobStatus.PAUSED
    assert try_transition(job, JobStatus.PROCESSING, now=NOW).success


def test_state_predicates() -> None:
    assert {status for status in JobStatus if is_terminal_state(status)} == {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }
    assert {status for status in JobStatus if is_active_state(status)} == {
        JobStatus.STARTED,
        JobStatus.PROCESSING,
    }
    assert {status for status in JobStatus if is_waiting_state(status)} == {
        JobStatus.NEW,
        JobStatus.PENDING,
    }
    assert {status for status in JobStatus if can_retry(status)} == {
        JobStatus.FAILED,
        JobStatus.CANCELLED,
        JobStatus.STALLED,
    }
    assert can_cancel(JobStatus.PAUSED)
    assert not can_cancel(JobStatus.COMPLETED)
