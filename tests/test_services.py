from __future__ import annotations

import allure
import pytest

from swarm_dispatch.coordination.events import RepositoryEventSink
from swarm_dispatch.coordination.models import JobStatus
from swarm_dispatch.coordination.services import EnqueueJob, JobService
from swarm_dispatch.coordination.state_machine import try_transition
from swarm_dispatch.storage.repository import DispatchRepository

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Operator Commands"),
]


def _service(repository: DispatchRepository) -> JobService:
    return JobService(repository=repository, event_sink=RepositoryEventSink(repository))


def _set_status(repository: DispatchRepository, job_id: str, *statuses: JobStatus) -> None:
    job = repository.get_job(job_id)
    assert job is not None
    for status in statuses:
        assert try_transition(job, status).success
    repository.save_job(job)


def test_enqueue_normalizes_profile(repository: DispatchRepository) -> None:
    job = _service(repository).enqueue_job(
        EnqueueJob(project_id="alpha", goal_prompt="Write docs", completion_profile=" Quick_Task "),
    )

    assert job.status == JobStatus.NEW
    assert job.completion_profile == "quick_task"


def test_enqueue_rejects_unknown_references(repository: DispatchRepository) -> None:
    service = _service(repository)

    with pytest.raises(ValueError, match="Unknown provider"):
        service.enqueue_job(EnqueueJob(project_id="a", goal_prompt="x", provider_id="nope"))
    with pytest.raises(ValueError, match="Unknown dependency job"):
        service.enqueue_job(EnqueueJob(project_id="a", goal_prompt="x", depends_on_job_id="nope"))
    with pytest.raises(ValueError, match="Unsupported completion profile"):
        service.enqueue_job(EnqueueJob(project_id="a", goal_prompt="x", completion_profile="slow"))

    assert repository.list_jobs() == []


def test_enqueue_with_unfinished_dependency_waits_in_pending(
    repository: DispatchRepository,
) -> None:
    service = _service(repository)
    parent = service.enqueue_job(EnqueueJob(project_id="alpha", goal_prompt="Schema"))

    child = service.enqueue_job(
        EnqueueJob(project_id="alpha", goal_prompt="Backfill", depends_on_job_id=parent.job_id),
    )

    assert child.status == JobStatus.PENDING
    stored = repository.get_job(child.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    events = repository.list_events(job_id=child.job_id)
    assert [event.event_type for event in events] == ["job_created", "job_status_changed"]
    assert events[1].details == {"reason": "waiting for dependency"}


def test_enqueue_with_completed_dependency_is_ready(repository: DispatchRepository) -> None:
    service = _service(repository)
    parent = service.enqueue_job(EnqueueJob(project_id="alpha", goal_prompt="Schema"))
    _set_status(repository, parent.job_id, JobStatus.STARTED, JobStatus.COMPLETED)

    child = service.enqueue_job(
        EnqueueJob(project_id="alpha", goal_prompt="Backfill", depends_on_job_id=parent.job_id),
    )

    assert child.status == JobStatus.NEW


def test_cancel_waiting_job_transitions_immediately(repository: DispatchRepository) -> None:
    service = _service(repository)
    job = service.enqueue_job(EnqueueJob(project_id="alpha", goal_prompt="Lint"))

    cancelled = service.cancel_job(job.job_id)

    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.completed_at is not None


def test_cancel_running_job_only_sets_flag(repository: DispatchRepository) -> None:
    service = _service(repository)
    job = service.enqueue_job(EnqueueJob(project_id="alpha", goal_prompt="Lint"))
    _set_status(repository, job.job_id, JobStatus.STARTED, JobStatus.PROCESSING)

    flagged = service.cancel_job(job.job_id)

    assert flagged.status == JobStatus.PROCESSING
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.cancellation_requested
    event_types = [event.event_type for event in repository.list_events(job_id=job.job_id)]
    assert event_types[-1] == "job_cancellation_requested"


def test_cancel_finished_or_missing_job_raises(repository: DispatchRepository) -> None:
    service = _service(repository)
    job = service.enqueue_job(EnqueueJob(project_id="alpha", goal_prompt="Lint"))
    _set_status(repository, job.job_id, JobStatus.STARTED, JobStatus.COMPLETED)

    with pytest.raises(RuntimeError, match="already completed"):
        service.cancel_job(job.job_id)
    with pytest.raises(RuntimeError, match="Job not found: ghost"):
        service.cancel_job("ghost")


def test_retry_failed_job_keeps_retry_count(repository: DispatchRepository) -> None:
    service = _service(repository)
    job = service.enqueue_job(EnqueueJob(project_id="alpha", goal_prompt="Lint"))
    stored = repository.get_job(job.job_id)
    assert stored is not None
    try_transition(stored, JobStatus.STARTED)
    try_transition(stored, JobStatus.FAILED)
    stored.retry_count = 2
    stored.error_message = "exit code 1"
    repository.save_job(stored)

    retried = service.retry_job(job.job_id)

    assert retried.status == JobStatus.NEW
    assert retried.retry_count == 2
    assert retried.error_message is None
    assert retried.completed_at is None


def test_retry_rejects_running_job(repository: DispatchRepository) -> None:
    service = _service(repository)
    job = service.enqueue_job(EnqueueJob(project_id="alpha", goal_prompt="Lint"))
    _set_status(repository, job.job_id, JobStatus.STARTED)

    with pytest.raises(RuntimeError, match="cannot be retried from status started"):
        service.retry_job(job.job_id)


def test_evaluate_job_reports_without_mutating(repository: DispatchRepository) -> None:
    service = _service(repository)
    job = service.enqueue_job(EnqueueJob(project_id="alpha", goal_prompt="Lint"))
    _set_status(repository, job.job_id, JobStatus.CANCELLED)

    evaluation = service.evaluate_job(job.job_id)

    assert evaluation.is_complete
    assert evaluation.completion_reason == "Job reached terminal state: cancelled"
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.CANCELLED
