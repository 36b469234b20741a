"""Priority queue view over pending jobs with fair per-project distribution."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Protocol

from swarm_dispatch.config import QueueSettings
from swarm_dispatch.coordination.models import Job, JobStatus, QueueStatistics
from swarm_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_STATISTICS_SAMPLE_SIZE = 100


class QueueStore(Protocol):
    """Subset of the repository the queue reads from."""

    def projects_with_active_jobs(self) -> set[str]: ...

    def list_runnable_jobs(self, *, excluded_projects: set[str]) -> list[Job]: ...

    def get_job(self, job_id: str) -> Job | None: ...

    def list_jobs_by_status(self, statuses: Iterable[JobStatus]) -> list[Job]: ...


class JobQueueManager:
    """Hands out pending jobs ordered by priority, then age.

    Jobs returned by ``get_pending_jobs`` are remembered for ``requeue_delay``
    so that a job handed to one caller is not handed to another before it is
    started. Callers release the marker with ``mark_job_claimed`` or
    ``mark_job_not_claimed``.
    """

    def __init__(
        self,
        repository: QueueStore,
        *,
        max_jobs_per_project: int = 1,
        requeue_delay: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.max_jobs_per_project = max_jobs_per_project
        self.requeue_delay = requeue_delay
        self._clock = clock
        self._lock = threading.Lock()
        self._recently_dequeued: dict[str, datetime] = {}

    @classmethod
    def from_settings(
        cls,
        repository: QueueStore,
        settings: QueueSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> JobQueueManager:
        return cls(
            repository,
            max_jobs_per_project=settings.max_jobs_per_project,
            requeue_delay=timedelta(seconds=settings.requeue_delay_seconds),
            clock=clock,
        )

    def get_pending_jobs(self, limit: int) -> list[Job]:
        """Return up to ``limit`` runnable jobs.

        Projects that already have a started, processing or paused job are
        skipped, as are jobs waiting on an unfinished dependency.
        """

        if limit <= 0:
            return []
        with self._lock:
            now = self._clock()
            self._forget_expired(now=now)

            busy_projects = self.repository.projects_with_active_jobs()
            pending = self.repository.list_runnable_jobs(excluded_projects=busy_projects)
            eligible = [job for job in pending if job.job_id not in self._recently_dequeued]
            eligible = self._filter_by_dependencies(eligible)
            result = self._apply_fair_distribution(eligible, limit)

            for job in result:
                self._recently_dequeued[job.job_id] = now

            logger.debug(
                "Returning %d pending jobs (total pending: %d, busy projects: %d)",
                len(result),
                len(pending),
                len(busy_projects),
            )
            return result

    def mark_job_claimed(self, job_id: str) -> None:
        with self._lock:
            self._recently_dequeued.pop(job_id, None)

    def mark_job_not_claimed(self, job_id: str) -> None:
        """Make a job immediately eligible again."""

        with self._lock:
            self._recently_dequeued.pop(job_id, None)

    def pending_count(self) -> int:
        return len(self.repository.list_runnable_jobs(excluded_projects=set()))

    def statistics(self) -> QueueStatistics:
        jobs = self.repository.list_jobs_by_status(list(JobStatus))
        by_status = Counter(job.status for job in jobs)
        waiting = [job for job in jobs if job.status == JobStatus.NEW]
        stats = QueueStatistics(
            total_jobs=len(jobs),
            pending_jobs=by_status[JobStatus.NEW],
            running_jobs=by_status[JobStatus.STARTED] + by_status[JobStatus.PROCESSING],
            completed_jobs=by_status[JobStatus.COMPLETED],
            failed_jobs=by_status[JobStatus.FAILED],
            cancelled_jobs=by_status[JobStatus.CANCELLED],
            stalled_jobs=by_status[JobStatus.STALLED],
            jobs_by_priority=dict(Counter(job.priority for job in waiting)),
            jobs_by_project=dict(Counter(job.project_id for job in waiting)),
        )

        finished = sorted(
            (
                job
                for job in jobs
                if job.status == JobStatus.COMPLETED
                and job.started_at is not None
                and job.completed_at is not None
            ),
            key=lambda job: job.completed_at,  # type: ignore[arg-type,return-value]
            reverse=True,
        )[:_STATISTICS_SAMPLE_SIZE]
        if finished:
            stats.average_wait_time = sum(
                (job.started_at - job.created_at for job in finished),  # type: ignore[operator]
                timedelta(0),
            ) / len(finished)
            stats.average_execution_time = sum(
                (job.completed_at - job.started_at for job in finished),  # type: ignore[operator]
                timedelta(0),
            ) / len(finished)
        return stats

    def _forget_expired(self, *, now: datetime) -> None:
        cutoff = now - self.requeue_delay
        expired = [job_id for job_id, at in self._recently_dequeued.items() if at < cutoff]
        for job_id in expired:
            del self._recently_dequeued[job_id]

    def _filter_by_dependencies(self, jobs: list[Job]) -> list[Job]:
        result: list[Job] = []
        for job in jobs:
            if job.depends_on_job_id is None:
                result.append(job)
                continue
            dependency = self.repository.get_job(job.depends_on_job_id)
            if dependency is not None and dependency.status == JobStatus.COMPLETED:
                result.append(job)
            else:
                logger.debug(
                    "Job %s waiting for dependency %s",
                    job.job_id,
                    job.depends_on_job_id,
                )
        return result

    def _apply_fair_distribution(self, jobs: list[Job], limit: int) -> list[Job]:
        selected: list[Job] = []
        per_project: Counter[str] = Counter()
        for job in jobs:
            if len(selected) >= limit:
                break
            if per_project[job.project_id] < self.max_jobs_per_project:
                selected.append(job)
                per_project[job.project_id] += 1

        # Spare slots go to the skipped jobs in queue order.
        if len(selected) < limit:
            chosen = {job.job_id for job in selected}
            for job in jobs:
                if len(selected) >= limit:
                    break
                if job.job_id not in chosen:
                    selected.append(job)
        return selected
