"""Provider selection, load-aware assignment and rebalancing of jobs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from swarm_dispatch.config import CoordinatorSettings
from swarm_dispatch.coordination.events import DispatchEventSink, publish_safely
from swarm_dispatch.coordination.health import ProviderHealthTracker
from swarm_dispatch.coordination.models import (
    CircuitState,
    DispatchEvent,
    Job,
    JobAssignment,
    Provider,
    ProviderHealth,
)
from swarm_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_LOAD_PENALTY = 40.0
_FAILURE_PENALTY = 30.0
_LATENCY_PENALTY = 20.0
_LATENCY_CAP = timedelta(seconds=10)
_RECOVERY_BONUS = 10.0
_RECOVERY_HORIZON_HOURS = 24.0


class DispatchCancelledError(RuntimeError):
    """Raised when a caller cancels a coordinator operation before it commits."""


class CoordinatorStore(Protocol):
    """Job/provider lookups and binding writes used by the coordinator."""

    def get_job(self, job_id: str) -> Job | None: ...

    def get_provider(self, provider_id: str) -> Provider | None: ...

    def list_enabled_providers(self) -> list[Provider]: ...

    def assign_provider(self, *, job_id: str, provider_id: str) -> bool: ...

    def list_unstarted_assigned_jobs(self) -> list[Job]: ...


class PendingJobSource(Protocol):
    """Ordered source of runnable jobs."""

    def get_pending_jobs(self, limit: int) -> list[Job]: ...

    def mark_job_not_claimed(self, job_id: str) -> None: ...


def calculate_provider_score(
    health: ProviderHealth,
    *,
    max_jobs_per_provider: int,
    now: datetime,
) -> float:
    """Score a provider from 0 to 100; higher is better.

    Load costs up to 40 points, recent failure rate up to 30 and average
    response time (capped at 10s) up to 20. Up to 10 points are earned back
    as the last failure recedes, reaching the full bonus after 24 hours.
    """

    score = 100.0
    score -= health.current_load / max_jobs_per_provider * _LOAD_PENALTY
    score -= health.recent_failure_rate * _FAILURE_PENALTY
    score -= min(health.average_response_time / _LATENCY_CAP, 1.0) * _LATENCY_PENALTY

    last_failure = health.last_failure or now - timedelta(hours=_RECOVERY_HORIZON_HOURS)
    hours_since_failure = (now - last_failure).total_seconds() / 3600
    recovery = min(hours_since_failure, _RECOVERY_HORIZON_HOURS) / _RECOVERY_HORIZON_HOURS
    score += recovery * _RECOVERY_BONUS
    return max(0.0, score)


class JobCoordinator:
    """Routes pending jobs to the healthiest provider with spare capacity.

    A single lock serializes every select-then-reserve decision, because
    capacity checks read load counters that the same decision then writes.
    Health bookkeeping itself is locked per provider inside the tracker.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: CoordinatorStore,
        queue: PendingJobSource,
        health_tracker: ProviderHealthTracker,
        max_jobs_per_provider: int = 3,
        provider_selection_timeout: timedelta = timedelta(seconds=10),
        event_sink: DispatchEventSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.health_tracker = health_tracker
        self.max_jobs_per_provider = max_jobs_per_provider
        # Advisory: enforced by the calling loop through ``cancel_requested``.
        self.provider_selection_timeout = provider_selection_timeout
        self.event_sink = event_sink
        self._clock = clock
        self._lock = threading.Lock()

    @classmethod
    def from_settings(  # noqa: PLR0913
        cls,
        settings: CoordinatorSettings,
        *,
        store: CoordinatorStore,
        queue: PendingJobSource,
        health_tracker: ProviderHealthTracker,
        event_sink: DispatchEventSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> JobCoordinator:
        return cls(
            store=store,
            queue=queue,
            health_tracker=health_tracker,
            max_jobs_per_provider=settings.max_jobs_per_provider,
            provider_selection_timeout=timedelta(
                seconds=settings.provider_selection_timeout_seconds,
            ),
            event_sink=event_sink,
            clock=clock,
        )

    def select_provider_for_job(
        self,
        job: Job,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> Provider | None:
        """Pick a provider for ``job`` without reserving capacity on it."""

        with self._lock:
            return self._select_provider_locked(job, cancel_requested=cancel_requested)

    def assign_job_to_provider(
        self,
        job_id: str,
        provider_id: str,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> bool:
        """Validate, persist the binding, then reserve one unit of load.

        Returns False on any validation failure. Load is incremented only
        after the binding has been saved.
        """

        with self._lock:
            return self._assign_locked(
                job_id,
                provider_id,
                reserve_load=True,
                cancel_requested=cancel_requested,
            )

    def release_job_from_provider(
        self,
        job_id: str,
        provider_id: str,
        success: bool,
        *,
        response_time: timedelta | None = None,
        error: str | None = None,
    ) -> None:
        """Give back the provider's load slot and record the outcome."""

        self.health_tracker.decrement_provider_load(provider_id)
        if success:
            self.health_tracker.record_success(provider_id, response_time)
        else:
            self.health_tracker.record_failure(provider_id, error, response_time)
        logger.debug(
            "Released job %s from provider %s (success: %s)",
            job_id,
            provider_id,
            success,
        )
        publish_safely(
            self.event_sink,
            DispatchEvent(
                event_type="job_released",
                job_id=job_id,
                provider_id=provider_id,
                details={"success": success},
            ),
        )

    def get_next_job_assignments(
        self,
        max_jobs: int,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> list[JobAssignment]:
        """Select providers for up to ``max_jobs`` pending jobs.

        Candidates are over-fetched two to one. Each successful selection
        reserves load on its provider immediately, so later candidates in the
        same batch see the reduced capacity. Reservations are handed back if
        the batch is cancelled.
        """

        if max_jobs <= 0:
            return []
        _raise_if_cancelled(cancel_requested, "job assignment batch")
        candidates = self.queue.get_pending_jobs(max_jobs * 2)
        assignments: list[JobAssignment] = []
        try:
            for job in candidates:
                if len(assignments) >= max_jobs:
                    break
                with self._lock:
                    provider = self._select_provider_locked(job, cancel_requested=cancel_requested)
                    if provider is None:
                        continue
                    self.health_tracker.increment_provider_load(provider.provider_id)
                assignments.append(
                    JobAssignment(job=job, provider=provider, assigned_at=self._clock()),
                )
        except DispatchCancelledError:
            for assignment in assignments:
                self.health_tracker.decrement_provider_load(assignment.provider.provider_id)
            for job in candidates:
                self.queue.mark_job_not_claimed(job.job_id)
            logger.info("Assignment batch cancelled; released %d reservations", len(assignments))
            raise

        assigned = {assignment.job.job_id for assignment in assignments}
        for job in candidates:
            if job.job_id not in assigned:
                self.queue.mark_job_not_claimed(job.job_id)

        for assignment in assignments:
            publish_safely(
                self.event_sink,
                DispatchEvent(
                    event_type="job_assigned",
                    job_id=assignment.job.job_id,
                    provider_id=assignment.provider.provider_id,
                    status_to=assignment.job.status,
                ),
            )
        logger.debug(
            "Prepared %d assignments from %d candidates",
            len(assignments),
            len(candidates),
        )
        return assignments

    def rebalance_jobs(self, *, cancel_requested: Callable[[], bool] | None = None) -> int:
        """Move not-yet-started jobs away from unhealthy providers.

        The new binding does not reserve load, since nothing runs until the
        job is picked up by an assignment batch. Returns the number of jobs
        moved.
        """

        logger.debug("Checking for job rebalancing opportunities")
        moved = 0
        for job in self.store.list_unstarted_assigned_jobs():
            _raise_if_cancelled(cancel_requested, "rebalance")
            previous_provider_id = job.provider_id
            if previous_provider_id is None:
                continue
            if self._health(previous_provider_id).is_healthy:
                continue

            logger.info(
                "Rebalancing job %s from unhealthy provider %s",
                job.job_id,
                previous_provider_id,
            )
            with self._lock:
                provider = self._select_provider_locked(job, cancel_requested=cancel_requested)
                if provider is None or provider.provider_id == previous_provider_id:
                    continue
                if not self._assign_locked(
                    job.job_id,
                    provider.provider_id,
                    reserve_load=False,
                    cancel_requested=cancel_requested,
                ):
                    continue
            moved += 1
            publish_safely(
                self.event_sink,
                DispatchEvent(
                    event_type="job_rebalanced",
                    job_id=job.job_id,
                    provider_id=provider.provider_id,
                    details={"previous_provider_id": previous_provider_id},
                ),
            )
        return moved

    def _select_provider_locked(
        self,
        job: Job,
        *,
        cancel_requested: Callable[[], bool] | None,
    ) -> Provider | None:
        _raise_if_cancelled(cancel_requested, "provider selection")

        if job.provider_id is not None:
            assigned = self.store.get_provider(job.provider_id)
            if assigned is not None and assigned.is_enabled:
                health = self._health(assigned.provider_id)
                if self._has_capacity(health):
                    logger.debug(
                        "Using assigned provider %s for job %s",
                        assigned.provider_id,
                        job.job_id,
                    )
                    return assigned
                logger.warning(
                    "Assigned provider %s is unhealthy or overloaded for job %s",
                    assigned.provider_id,
                    job.job_id,
                )

        providers = self.store.list_enabled_providers()
        if not providers:
            logger.warning("No enabled providers available for job %s", job.job_id)
            return None

        now = self._clock()
        best: Provider | None = None
        best_score = -1.0
        for provider in providers:
            health = self._health(provider.provider_id)
            if not self._has_capacity(health):
                continue
            score = calculate_provider_score(
                health,
                max_jobs_per_provider=self.max_jobs_per_provider,
                now=now,
            )
            if score > best_score:
                best, best_score = provider, score

        if best is None:
            logger.warning("No healthy providers with available capacity for job %s", job.job_id)
            return None

        logger.info(
            "Selected provider %s (score: %.2f) for job %s",
            best.name,
            best_score,
            job.job_id,
        )
        return best

    def _assign_locked(
        self,
        job_id: str,
        provider_id: str,
        *,
        reserve_load: bool,
        cancel_requested: Callable[[], bool] | None,
    ) -> bool:
        _raise_if_cancelled(cancel_requested, "job assignment")

        if self.store.get_job(job_id) is None:
            logger.error("Job %s not found for assignment", job_id)
            return False

        provider = self.store.get_provider(provider_id)
        if provider is None or not provider.is_enabled:
            logger.error("Provider %s not found or disabled for job assignment", provider_id)
            return False

        health = self._health(provider_id)
        if not health.is_healthy:
            logger.warning("Cannot assign job %s to unhealthy provider %s", job_id, provider_id)
            return False
        if health.current_load >= self.max_jobs_per_provider:
            logger.warning(
                "Cannot assign job %s to overloaded provider %s (load: %d/%d)",
                job_id,
                provider_id,
                health.current_load,
                self.max_jobs_per_provider,
            )
            return False

        _raise_if_cancelled(cancel_requested, "job assignment")
        if not self.store.assign_provider(job_id=job_id, provider_id=provider_id):
            logger.error("Job %s disappeared before assignment was saved", job_id)
            return False
        if reserve_load:
            self.health_tracker.increment_provider_load(provider_id)

        logger.info("Assigned job %s to provider %s", job_id, provider.name)
        publish_safely(
            self.event_sink,
            DispatchEvent(event_type="job_assigned", job_id=job_id, provider_id=provider_id),
        )
        return True

    def _has_capacity(self, health: ProviderHealth) -> bool:
        return health.is_healthy and health.current_load < self.max_jobs_per_provider

    def _health(self, provider_id: str) -> ProviderHealth:
        try:
            return self.health_tracker.get_provider_health(provider_id)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Health lookup failed for provider %s; treating as unhealthy",
                provider_id,
            )
            return ProviderHealth(
                provider_id=provider_id,
                is_healthy=False,
                circuit_state=CircuitState.OPEN,
                current_load=0,
                total_successes=0,
                total_failures=0,
                recent_failure_rate=0.0,
                average_response_time=timedelta(0),
                last_success=None,
                last_failure=None,
                last_error=None,
            )


def _raise_if_cancelled(cancel_requested: Callable[[], bool] | None, operation: str) -> None:
    if cancel_requested is not None and cancel_requested():
        raise DispatchCancelledError(f"Cancelled during {operation}")
