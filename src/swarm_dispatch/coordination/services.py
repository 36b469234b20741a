"""Operator-facing use cases for the job queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from swarm_dispatch.coordination.events import DispatchEventSink, publish_safely
from swarm_dispatch.coordination.models import (
    CompletionEvaluation,
    DispatchEvent,
    Job,
    JobCompletionCriteria,
    JobCreate,
    JobStatus,
)
from swarm_dispatch.coordination.state_machine import (
    can_cancel,
    can_retry,
    evaluate_completion,
    is_waiting_state,
    try_transition,
)
from swarm_dispatch.storage.repository import DispatchRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EnqueueJob:
    """High-level command to enqueue a job."""

    project_id: str
    goal_prompt: str
    priority: int = 0
    max_retries: int = 3
    provider_id: str | None = None
    depends_on_job_id: str | None = None
    completion_profile: str = "default"


class JobService:
    """Validates operator requests and routes every status change through the state machine."""

    def __init__(
        self,
        *,
        repository: DispatchRepository,
        event_sink: DispatchEventSink | None = None,
    ) -> None:
        self.repository = repository
        self.event_sink = event_sink

    def enqueue_job(self, command: EnqueueJob) -> Job:
        """Create a job; it waits in ``pending`` while its dependency is unfinished."""

        JobCompletionCriteria.for_profile(command.completion_profile)
        provider_id = command.provider_id
        if provider_id is not None and self.repository.get_provider(provider_id) is None:
            raise ValueError(f"Unknown provider: {provider_id}")
        dependency = None
        if command.depends_on_job_id is not None:
            dependency = self.repository.get_job(command.depends_on_job_id)
            if dependency is None:
                raise ValueError(f"Unknown dependency job: {command.depends_on_job_id}")

        job = self.repository.add_job(
            JobCreate(
                project_id=command.project_id,
                goal_prompt=command.goal_prompt,
                provider_id=command.provider_id,
                priority=command.priority,
                max_retries=command.max_retries,
                depends_on_job_id=command.depends_on_job_id,
                completion_profile=command.completion_profile.strip().lower(),
            ),
        )
        if dependency is not None and dependency.status != JobStatus.COMPLETED:
            self._transition(job, JobStatus.PENDING, reason="waiting for dependency")
        return job

    def cancel_job(self, job_id: str) -> Job:
        """Cancel a waiting job, or flag a running one for cooperative cancellation."""

        job = self._require_job(job_id)
        if not can_cancel(job.status):
            raise RuntimeError(f"Job {job_id} is already {job.status.value}; nothing to cancel.")

        if is_waiting_state(job.status) or job.status == JobStatus.STALLED:
            self._transition(job, JobStatus.CANCELLED, reason="cancelled by operator")
            return job

        job.cancellation_requested = True
        self.repository.save_job(job)
        logger.info("Cancellation requested for %s job %s", job.status.value, job_id)
        publish_safely(
            self.event_sink,
            DispatchEvent(
                event_type="job_cancellation_requested",
                job_id=job.job_id,
                provider_id=job.provider_id,
                status_to=job.status,
            ),
        )
        return job

    def retry_job(self, job_id: str) -> Job:
        job = self._require_job(job_id)
        if not can_retry(job.status):
            raise RuntimeError(
                f"Job {job_id} cannot be retried from status {job.status.value}; "
                "only failed, cancelled or stalled jobs can be retried.",
            )
        job.error_message = None
        self._transition(job, JobStatus.NEW, reason="retried by operator")
        return job

    def evaluate_job(self, job_id: str) -> CompletionEvaluation:
        """Evaluate a job against its completion profile without changing it."""

        job = self._require_job(job_id)
        return evaluate_completion(job, JobCompletionCriteria.for_profile(job.completion_profile))

    def _require_job(self, job_id: str) -> Job:
        job = self.repository.get_job(job_id)
        if job is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return job

    def _transition(self, job: Job, new_status: JobStatus, *, reason: str) -> None:
        previous = job.status
        result = try_transition(job, new_status, reason)
        if not result.success:
            raise RuntimeError(result.error_message or f"Cannot move job {job.job_id}")
        self.repository.save_job(job)
        event = DispatchEvent(
            event_type="job_status_changed",
            job_id=job.job_id,
            provider_id=job.provider_id,
            status_from=previous,
            status_to=new_status,
            details={"reason": reason},
        )
        publish_safely(self.event_sink, event)
