"""Periodic evaluation of running jobs against their completion criteria."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from swarm_dispatch.coordination.events import DispatchEventSink, publish_safely
from swarm_dispatch.coordination.health import ProviderHealthTracker
from swarm_dispatch.coordination.models import (
    CompletionEvaluation,
    DispatchEvent,
    Job,
    JobCompletionCriteria,
    JobStatus,
)
from swarm_dispatch.coordination.state_machine import (
    evaluate_completion,
    is_terminal_state,
    try_transition,
)
from swarm_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)


class MonitorStore(Protocol):
    def get_job(self, job_id: str) -> Job | None: ...

    def list_jobs_by_status(self, statuses: Iterable[JobStatus]) -> list[Job]: ...

    def save_job(self, job: Job) -> None: ...


@dataclass(slots=True)
class MonitorRunSummary:
    """Counters for one monitor pass."""

    checked: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    released: int = 0
    errors: int = 0


class CompletionMonitor:
    """Applies completion outcomes to running jobs and provider health."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: MonitorStore,
        health_tracker: ProviderHealthTracker,
        default_profile: str = "default",
        event_sink: DispatchEventSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.health_tracker = health_tracker
        self.default_profile = default_profile
        self.event_sink = event_sink
        self._clock = clock

    def criteria_for(self, job: Job) -> JobCompletionCriteria:
        return JobCompletionCriteria.for_profile(job.completion_profile or self.default_profile)

    def check_running_jobs(self) -> MonitorRunSummary:
        """Evaluate every started or processing job once.

        An error on one job is logged and counted; the pass continues.
        """

        summary = MonitorRunSummary()
        for job in self.store.list_jobs_by_status([JobStatus.STARTED, JobStatus.PROCESSING]):
            summary.checked += 1
            try:
                evaluation = evaluate_completion(job, self.criteria_for(job), now=self._clock())
                if not evaluation.is_complete:
                    continue
                logger.info(
                    "Job %s met completion criteria: %s",
                    job.job_id,
                    evaluation.completion_reason,
                )
                self._handle_completion(job, evaluation, summary)
            except Exception:  # noqa: BLE001
                summary.errors += 1
                logger.exception("Error evaluating completion criteria for job %s", job.job_id)
        return summary

    def check_dependent_jobs(self) -> MonitorRunSummary:
        """Release or cancel pending jobs whose dependency has settled."""

        summary = MonitorRunSummary()
        for job in self.store.list_jobs_by_status([JobStatus.PENDING]):
            if job.depends_on_job_id is None:
                continue
            summary.checked += 1
            dependency = self.store.get_job(job.depends_on_job_id)
            if dependency is None:
                logger.warning(
                    "Job %s dependency %s not found, moving to ready",
                    job.job_id,
                    job.depends_on_job_id,
                )
                job.depends_on_job_id = None
                self._apply(job, JobStatus.NEW, reason="dependency missing")
                summary.released += 1
            elif dependency.status == JobStatus.COMPLETED:
                logger.info(
                    "Job %s dependency %s completed, moving to ready",
                    job.job_id,
                    dependency.job_id,
                )
                self._apply(job, JobStatus.NEW, reason="dependency completed")
                summary.released += 1
            elif dependency.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                job.error_message = f"Dependency job {dependency.job_id} {dependency.status.value}"
                logger.warning(
                    "Job %s cancelled due to dependency %s %s",
                    job.job_id,
                    dependency.job_id,
                    dependency.status.value,
                )
                self._apply(job, JobStatus.CANCELLED, reason=job.error_message)
                summary.failed += 1
        return summary

    def _handle_completion(
        self,
        job: Job,
        evaluation: CompletionEvaluation,
        summary: MonitorRunSummary,
    ) -> None:
        error_message: str | None = None
        if evaluation.should_fail:
            new_status = JobStatus.FAILED
            error_message = evaluation.completion_reason
        elif evaluation.should_retry:
            new_status = JobStatus.NEW
        else:
            new_status = JobStatus.COMPLETED

        now = self._clock()
        started_at = job.started_at
        previous = job.status
        result = try_transition(job, new_status, evaluation.completion_reason, now=now)
        if not result.success:
            logger.warning(
                "Failed to transition job %s to %s: %s",
                job.job_id,
                new_status.value,
                result.error_message,
            )
            return

        if new_status == JobStatus.NEW:
            job.retry_count += 1
            error_message = (
                f"Job will retry ({job.retry_count}/{job.max_retries}): "
                f"{evaluation.completion_reason}"
            )
            logger.info("Job %s marked for retry: %s", job.job_id, evaluation.completion_reason)
            summary.retried += 1
        elif new_status == JobStatus.FAILED:
            summary.failed += 1
        else:
            summary.completed += 1
        if error_message is not None:
            job.error_message = error_message

        if job.provider_id is not None:
            if new_status == JobStatus.COMPLETED:
                elapsed = now - started_at if started_at is not None else None
                self.health_tracker.record_success(job.provider_id, elapsed)
            elif new_status == JobStatus.FAILED:
                self.health_tracker.record_failure(job.provider_id, error_message)
            self.health_tracker.decrement_provider_load(job.provider_id)

        self.store.save_job(job)
        self._notify(job, previous=previous, error_message=error_message)

    def _apply(self, job: Job, new_status: JobStatus, *, reason: str) -> None:
        previous = job.status
        result = try_transition(job, new_status, reason, now=self._clock())
        if not result.success:
            logger.warning(
                "Failed to transition job %s to %s: %s",
                job.job_id,
                new_status.value,
                result.error_message,
            )
            return
        self.store.save_job(job)
        self._notify(job, previous=previous, error_message=job.error_message)

    def _notify(self, job: Job, *, previous: JobStatus, error_message: str | None) -> None:
        publish_safely(
            self.event_sink,
            DispatchEvent(
                event_type="job_status_changed",
                job_id=job.job_id,
                provider_id=job.provider_id,
                status_from=previous,
                status_to=job.status,
            ),
        )
        if is_terminal_state(job.status):
            publish_safely(
                self.event_sink,
                DispatchEvent(
                    event_type="job_completed",
                    job_id=job.job_id,
                    provider_id=job.provider_id,
                    status_to=job.status,
                    details={
                        "success": job.status == JobStatus.COMPLETED,
                        "error": error_message,
                    },
                ),
            )
