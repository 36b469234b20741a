"""Scheduler loop that turns coordinator assignments into executed jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from swarm_dispatch.config import Settings
from swarm_dispatch.coordination.coordinator import DispatchCancelledError, JobCoordinator
from swarm_dispatch.coordination.events import DispatchEventSink, publish_safely
from swarm_dispatch.coordination.health import ProviderHealthTracker
from swarm_dispatch.coordination.models import (
    DispatchEvent,
    Job,
    JobAssignment,
    JobStatus,
    Provider,
)
from swarm_dispatch.coordination.monitor import CompletionMonitor
from swarm_dispatch.coordination.queue import JobQueueManager
from swarm_dispatch.coordination.state_machine import is_waiting_state, try_transition
from swarm_dispatch.storage.common import utc_now
from swarm_dispatch.storage.repository import DispatchRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionReport:
    """What a provider reported after running one job."""

    success: bool
    output: str | None = None
    error: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_cost_usd: float | None = None


class JobExecutor(Protocol):
    """Runs a job's prompt on a provider."""

    def run(self, job: Job, provider: Provider) -> ExecutionReport:
        """Execute the job and report usage and output."""


@dataclass(slots=True)
class DispatchRunSummary:
    """Aggregate dispatch counters for CLI reporting."""

    assigned: int = 0
    started: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    rebalanced: int = 0
    idle_polls: int = 0


class DispatchLoop:
    """Pulls assignments from the coordinator and runs them one by one."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: DispatchRepository,
        coordinator: JobCoordinator,
        queue: JobQueueManager,
        executor: JobExecutor,
        worker_id: str,
        monitor: CompletionMonitor | None = None,
        event_sink: DispatchEventSink | None = None,
        poll_interval_seconds: float = 2.0,
        rebalance_enabled: bool = True,
    ) -> None:
        self.repository = repository
        self.coordinator = coordinator
        self.queue = queue
        self.executor = executor
        self.worker_id = worker_id
        self.monitor = monitor
        self.event_sink = event_sink
        self.poll_interval_seconds = poll_interval_seconds
        self.rebalance_enabled = rebalance_enabled
        self._stop_requested = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: DispatchRepository,
        executor: JobExecutor,
        worker_id: str,
        event_sink: DispatchEventSink | None = None,
    ) -> DispatchLoop:
        """Wire tracker, queue, coordinator and monitor from one settings tree."""

        health_tracker = ProviderHealthTracker.from_settings(settings.health)
        queue = JobQueueManager.from_settings(repository, settings.queue)
        coordinator = JobCoordinator.from_settings(
            settings.coordinator,
            store=repository,
            queue=queue,
            health_tracker=health_tracker,
            event_sink=event_sink,
        )
        monitor = CompletionMonitor(
            store=repository,
            health_tracker=health_tracker,
            default_profile=settings.monitor.default_profile,
            event_sink=event_sink,
        )
        return cls(
            repository=repository,
            coordinator=coordinator,
            queue=queue,
            executor=executor,
            worker_id=worker_id,
            monitor=monitor,
            event_sink=event_sink,
            poll_interval_seconds=settings.coordinator.poll_interval_seconds,
            rebalance_enabled=settings.coordinator.rebalance_enabled,
        )

    def request_stop(self) -> None:
        self._stop_requested = True

    def run_once(self, max_jobs: int) -> DispatchRunSummary:
        """Run one scheduling pass over at most ``max_jobs`` jobs."""

        summary = DispatchRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        if self.monitor is not None:
            self.monitor.check_dependent_jobs()
            self.monitor.check_running_jobs()

        try:
            if self.rebalance_enabled:
                summary.rebalanced = self.coordinator.rebalance_jobs(
                    cancel_requested=lambda: self._stop_requested,
                )
            assignments = self.coordinator.get_next_job_assignments(
                max_jobs,
                cancel_requested=self._selection_deadline(),
            )
        except DispatchCancelledError as error:
            logger.warning("Dispatch pass abandoned: %s", error)
            summary.idle_polls = 1
            return summary

        if not assignments:
            summary.idle_polls = 1
            return summary

        summary.assigned = len(assignments)
        for assignment in assignments:
            if self._stop_requested:
                self._abandon(assignment)
                summary.skipped += 1
                continue
            self._run_assignment(assignment, summary)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int,
        max_passes: int | None = None,
        max_idle_polls: int = 1,
    ) -> DispatchRunSummary:
        """Repeat ``run_once`` until the queue stays idle or a stop is requested."""

        aggregate = DispatchRunSummary()
        consecutive_idle = 0
        passes = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_passes is not None and passes >= max_passes:
                    return aggregate

                summary = self.run_once(max_jobs)
                passes += 1
                aggregate.assigned += summary.assigned
                aggregate.started += summary.started
                aggregate.succeeded += summary.succeeded
                aggregate.failed += summary.failed
                aggregate.cancelled += summary.cancelled
                aggregate.skipped += summary.skipped
                aggregate.rebalanced += summary.rebalanced
                aggregate.idle_polls += summary.idle_polls

                if summary.assigned == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _run_assignment(self, assignment: JobAssignment, summary: DispatchRunSummary) -> None:
        provider = assignment.provider
        # The batch snapshot may be stale by now; start from the stored row.
        job = self.repository.get_job(assignment.job.job_id)
        if job is None:
            logger.warning("Job %s vanished before it could start", assignment.job.job_id)
            self._abandon(assignment)
            summary.skipped += 1
            return
        if not is_waiting_state(job.status) or job.cancellation_requested:
            logger.info(
                "Job %s no longer runnable (status=%s cancellation_requested=%s)",
                job.job_id,
                job.status.value,
                job.cancellation_requested,
            )
            self._abandon(assignment)
            summary.skipped += 1
            return
        if not self.repository.assign_provider(job_id=job.job_id, provider_id=provider.provider_id):
            logger.warning("Job %s vanished before it could start", job.job_id)
            self._abandon(assignment)
            summary.skipped += 1
            return

        job.provider_id = provider.provider_id
        job.worker_instance_id = self.worker_id
        started = try_transition(job, JobStatus.STARTED, f"assigned to {provider.name}")
        if not started.success:
            logger.warning("Job %s not started: %s", job.job_id, started.error_message)
            self._abandon(assignment)
            summary.skipped += 1
            return
        self.repository.save_job(job)
        self.queue.mark_job_claimed(job.job_id)
        self._notify(job, previous=started.previous_status)
        summary.started += 1

        started_at = utc_now()
        try:
            report = self.executor.run(job, provider)
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor failed for job %s on provider %s", job.job_id, provider.name)
            report = ExecutionReport(success=False, error=f"{type(error).__name__}: {error}")
        elapsed = utc_now() - started_at

        _apply_report(job, report)
        current = self.repository.get_job(job.job_id)
        cancelled = current is not None and current.cancellation_requested
        if cancelled:
            job.cancellation_requested = True
            target = JobStatus.CANCELLED
        elif report.success:
            target = JobStatus.COMPLETED
        else:
            target = JobStatus.FAILED

        finished = try_transition(job, target, report.error)
        if not finished.success:
            logger.warning("Job %s not finished: %s", job.job_id, finished.error_message)
        self.repository.save_job(job)
        self._notify(job, previous=finished.previous_status)

        if cancelled:
            self.coordinator.health_tracker.decrement_provider_load(provider.provider_id)
            summary.cancelled += 1
            return
        self.coordinator.release_job_from_provider(
            job.job_id,
            provider.provider_id,
            report.success,
            response_time=elapsed,
            error=report.error,
        )
        if report.success:
            summary.succeeded += 1
        else:
            summary.failed += 1

    def _abandon(self, assignment: JobAssignment) -> None:
        self.coordinator.health_tracker.decrement_provider_load(assignment.provider.provider_id)
        self.queue.mark_job_not_claimed(assignment.job.job_id)

    def _notify(self, job: Job, *, previous: JobStatus) -> None:
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

    def _selection_deadline(self) -> Callable[[], bool]:
        deadline = time.monotonic() + self.coordinator.provider_selection_timeout.total_seconds()
        return lambda: self._stop_requested or time.monotonic() > deadline

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received signal %s; finishing current job", signum)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _apply_report(job: Job, report: ExecutionReport) -> None:
    if report.output is not None:
        job.output = report.output
    if report.error is not None:
        job.error_message = report.error
    if report.input_tokens is not None:
        job.input_tokens = report.input_tokens
    if report.output_tokens is not None:
        job.output_tokens = report.output_tokens
    if report.total_cost_usd is not None:
        job.total_cost_usd = report.total_cost_usd
    job.last_activity_at = utc_now()
