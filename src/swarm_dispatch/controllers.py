"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from swarm_dispatch.config import Settings
from swarm_dispatch.coordination.coordinator import JobCoordinator
from swarm_dispatch.coordination.dispatcher import DispatchLoop
from swarm_dispatch.coordination.echo_executor import EchoExecutor
from swarm_dispatch.coordination.events import LoggingEventSink, RepositoryEventSink
from swarm_dispatch.coordination.health import ProviderHealthTracker
from swarm_dispatch.coordination.models import Job, JobStatus
from swarm_dispatch.coordination.queue import JobQueueManager
from swarm_dispatch.coordination.services import EnqueueJob, JobService
from swarm_dispatch.storage.repository import DispatchRepository


@dataclass(slots=True)
class ProviderAddCommand:
    """CLI input for provider registration."""

    db_path: Path | None
    name: str
    provider_type: str
    is_default: bool
    disabled: bool


@dataclass(slots=True)
class ProviderToggleCommand:
    """CLI input for enable/disable operations."""

    db_path: Path | None
    provider_id: str
    enabled: bool


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    project_id: str
    goal_prompt: str
    priority: int
    max_retries: int
    provider_id: str | None
    depends_on_job_id: str | None
    completion_profile: str


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for inspect/cancel/retry/evaluate operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class DispatchPlanCommand:
    """CLI input for a dry-run assignment batch."""

    db_path: Path | None
    max_jobs: int | None


@dataclass(slots=True)
class DispatchRunCommand:
    """CLI input for the dispatch loop."""

    db_path: Path | None
    max_jobs: int | None
    max_passes: int | None
    max_idle_polls: int = 1


class DispatchCliController:
    """Coordinates provider, job and dispatch CLI operations."""

    def add_provider(self, command: ProviderAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            provider = repository.add_provider(
                name=command.name,
                provider_type=command.provider_type,
                is_enabled=not command.disabled,
                is_default=command.is_default,
            )
        return [
            f"Provider added: provider_id={provider.provider_id} name={provider.name} "
            f"type={provider.provider_type} enabled={provider.is_enabled}",
        ]

    def list_providers(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings) as repository:
            providers = repository.list_providers()

        lines = [f"Providers: {len(providers)}"]
        for provider in providers:
            lines.append(
                f"  {provider.provider_id} name={provider.name} type={provider.provider_type} "
                f"enabled={provider.is_enabled} default={provider.is_default}",
            )
        return lines

    def toggle_provider(self, command: ProviderToggleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            provider = repository.set_provider_enabled(
                provider_id=command.provider_id,
                enabled=command.enabled,
            )
        state = "enabled" if provider.is_enabled else "disabled"
        return [f"Provider {state}: {provider.provider_id} ({provider.name})"]

    def enqueue_job(self, command: JobEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = JobService(
                repository=repository,
                event_sink=RepositoryEventSink(repository),
            )
            job = service.enqueue_job(
                EnqueueJob(
                    project_id=command.project_id,
                    goal_prompt=command.goal_prompt,
                    priority=command.priority,
                    max_retries=command.max_retries,
                    provider_id=command.provider_id,
                    depends_on_job_id=command.depends_on_job_id,
                    completion_profile=command.completion_profile,
                ),
            )
        return [
            f"Job enqueued: job_id={job.job_id} project={job.project_id} "
            f"status={job.status.value} priority={job.priority}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} project={job.project_id} status={job.status.value} "
                f"priority={job.priority} retry={job.retry_count}/{job.max_retries} "
                f"provider={job.provider_id or '-'}",
            )
        return lines

    def inspect_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(command.job_id)
            events = repository.list_events(job_id=command.job_id)
        if job is None:
            return [f"Job not found: {command.job_id}"]

        lines = _job_lines(job)
        lines.append(f"Events: {len(events)}")
        for event in events:
            transition = ""
            if event.status_to is not None:
                previous = event.status_from.value if event.status_from is not None else "-"
                transition = f" {previous}->{event.status_to.value}"
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type}{transition} "
                f"provider={event.provider_id or '-'}",
            )
        return lines

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = JobService(
                repository=repository,
                event_sink=RepositoryEventSink(repository),
            ).cancel_job(command.job_id)
        if job.status == JobStatus.CANCELLED:
            return [f"Job cancelled: {job.job_id}"]
        return [f"Cancellation requested: {job.job_id} (status={job.status.value})"]

    def retry_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = JobService(
                repository=repository,
                event_sink=RepositoryEventSink(repository),
            ).retry_job(command.job_id)
        return [f"Job re-queued: {job.job_id} retry={job.retry_count}/{job.max_retries}"]

    def evaluate_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            evaluation = JobService(repository=repository).evaluate_job(command.job_id)
        return [
            f"Job: {evaluation.job_id}",
            f"Complete: {evaluation.is_complete}",
            f"Should fail: {evaluation.should_fail}",
            f"Should retry: {evaluation.should_retry}",
            f"Reason: {evaluation.completion_reason or '-'}",
        ]

    def queue_stats(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings) as repository:
            stats = JobQueueManager.from_settings(repository, settings.queue).statistics()

        lines = [
            f"Total jobs: {stats.total_jobs}",
            f"Pending: {stats.pending_jobs} running={stats.running_jobs} "
            f"stalled={stats.stalled_jobs}",
            f"Completed: {stats.completed_jobs} failed={stats.failed_jobs} "
            f"cancelled={stats.cancelled_jobs}",
            f"Average wait: {stats.average_wait_time}",
            f"Average execution: {stats.average_execution_time}",
        ]
        for priority, count in sorted(stats.jobs_by_priority.items(), reverse=True):
            lines.append(f"  priority={priority} pending={count}")
        for project_id, count in sorted(stats.jobs_by_project.items()):
            lines.append(f"  project={project_id} pending={count}")
        return lines

    def plan_dispatch(self, command: DispatchPlanCommand) -> list[str]:
        """Show which provider each pending job would go to, without starting anything.

        Health and load come from a fresh tracker, so every provider reads as
        healthy and idle here; the plan is not a view of live capacity.
        """

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        max_jobs = command.max_jobs or settings.coordinator.batch_size
        with _repository(settings) as repository:
            queue = JobQueueManager.from_settings(repository, settings.queue)
            coordinator = JobCoordinator.from_settings(
                settings.coordinator,
                store=repository,
                queue=queue,
                health_tracker=ProviderHealthTracker.from_settings(settings.health),
                # A plan is a dry run: events go to the log, not the audit table.
                event_sink=LoggingEventSink(),
            )
            deadline = time.monotonic() + settings.coordinator.provider_selection_timeout_seconds
            assignments = coordinator.get_next_job_assignments(
                max_jobs,
                cancel_requested=lambda: time.monotonic() > deadline,
            )

        lines = [f"Planned assignments: {len(assignments)}"]
        for assignment in assignments:
            lines.append(
                f"  {assignment.job.job_id} project={assignment.job.project_id} "
                f"priority={assignment.job.priority} -> {assignment.provider.name} "
                f"({assignment.provider.provider_id})",
            )
        return lines

    def run_dispatch(self, command: DispatchRunCommand) -> list[str]:
        """Run the dispatch loop with the local echo executor."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        max_jobs = command.max_jobs or settings.coordinator.batch_size
        with _repository(settings) as repository:
            loop = DispatchLoop.from_settings(
                settings,
                repository=repository,
                executor=EchoExecutor(),
                worker_id=settings.coordinator.worker_id,
                event_sink=RepositoryEventSink(repository),
            )
            summary = loop.run_loop(
                max_jobs=max_jobs,
                max_passes=command.max_passes,
                max_idle_polls=command.max_idle_polls,
            )

        return [
            "Dispatch summary: "
            f"assigned={summary.assigned} started={summary.started} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"cancelled={summary.cancelled} skipped={summary.skipped} "
            f"rebalanced={summary.rebalanced} idle_polls={summary.idle_polls}",
        ]


def _job_lines(job: Job) -> list[str]:
    return [
        f"Job: {job.job_id}",
        f"Project: {job.project_id}",
        f"Status: {job.status.value}",
        f"Priority: {job.priority}",
        f"Provider: {job.provider_id or '-'}",
        f"Retry: {job.retry_count}/{job.max_retries}",
        f"Profile: {job.completion_profile}",
        f"Depends on: {job.depends_on_job_id or '-'}",
        f"Tokens: in={job.input_tokens or 0} out={job.output_tokens or 0}",
        f"Cost: {job.total_cost_usd if job.total_cost_usd is not None else '-'}",
        f"Error: {job.error_message or '-'}",
        f"Goal: {job.goal_prompt}",
    ]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[DispatchRepository]:
    repository = DispatchRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
