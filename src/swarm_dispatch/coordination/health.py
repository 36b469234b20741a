"""Per-provider health tracking with a three-state circuit breaker.

Each provider gets its own record guarded by its own lock, so updates for
different providers never contend. Open circuits are promoted to half-open
lazily, on the next health read, once the reset timeout has elapsed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from swarm_dispatch.config import HealthSettings
from swarm_dispatch.coordination.models import CircuitState, ProviderHealth
from swarm_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _ResponseSample:
    timestamp: datetime
    duration: timedelta


@dataclass(slots=True)
class _ProviderHealthState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    current_load: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    recent_successes: list[datetime] = field(default_factory=list)
    recent_failures: list[datetime] = field(default_factory=list)
    response_times: list[_ResponseSample] = field(default_factory=list)
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None
    circuit_state: CircuitState = CircuitState.CLOSED
    circuit_opened_at: datetime | None = None


class ProviderHealthTracker:
    """Sliding-window success/failure bookkeeping and circuit breaker per provider."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        failure_threshold: int = 5,
        failure_window: timedelta = timedelta(minutes=5),
        circuit_reset_timeout: timedelta = timedelta(minutes=2),
        success_threshold: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.circuit_reset_timeout = circuit_reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._states: dict[str, _ProviderHealthState] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: HealthSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> ProviderHealthTracker:
        return cls(
            failure_threshold=settings.failure_threshold,
            failure_window=timedelta(seconds=settings.failure_window_seconds),
            circuit_reset_timeout=timedelta(seconds=settings.circuit_reset_timeout_seconds),
            success_threshold=settings.success_threshold,
            clock=clock,
        )

    def get_provider_health(self, provider_id: str) -> ProviderHealth:
        """Prune the window, promote an expired open circuit, and return a snapshot."""

        state = self._state(provider_id)
        with state.lock:
            now = self._clock()
            cutoff = now - self.failure_window
            state.recent_failures = [at for at in state.recent_failures if at >= cutoff]
            state.recent_successes = [at for at in state.recent_successes if at >= cutoff]
            state.response_times = [
                sample for sample in state.response_times if sample.timestamp >= cutoff
            ]
            circuit_state = self._evaluate_circuit_state(provider_id, state, now=now)
            return ProviderHealth(
                provider_id=provider_id,
                is_healthy=circuit_state != CircuitState.OPEN,
                circuit_state=circuit_state,
                current_load=state.current_load,
                total_successes=state.total_successes,
                total_failures=state.total_failures,
                recent_failure_rate=_failure_rate(state),
                average_response_time=_average_response_time(state),
                last_success=state.last_success,
                last_failure=state.last_failure,
                last_error=state.last_error,
            )

    def get_all_provider_health(self) -> dict[str, ProviderHealth]:
        with self._registry_lock:
            provider_ids = list(self._states)
        return {provider_id: self.get_provider_health(provider_id) for provider_id in provider_ids}

    def record_success(self, provider_id: str, response_time: timedelta | None = None) -> None:
        state = self._state(provider_id)
        with state.lock:
            now = self._clock()
            state.total_successes += 1
            state.recent_successes.append(now)
            state.last_success = now
            state.consecutive_successes += 1
            state.consecutive_failures = 0
            if response_time is not None:
                state.response_times.append(_ResponseSample(timestamp=now, duration=response_time))

            if (
                state.circuit_state == CircuitState.HALF_OPEN
                and state.consecutive_successes >= self.success_threshold
            ):
                state.circuit_state = CircuitState.CLOSED
                state.circuit_opened_at = None
                logger.info(
                    "Circuit breaker closed for provider %s after %d consecutive successes",
                    provider_id,
                    state.consecutive_successes,
                )

    def record_failure(
        self,
        provider_id: str,
        error: str | None = None,
        response_time: timedelta | None = None,
    ) -> None:
        state = self._state(provider_id)
        with state.lock:
            now = self._clock()
            state.total_failures += 1
            state.recent_failures.append(now)
            state.last_failure = now
            state.last_error = error
            state.consecutive_failures += 1
            state.consecutive_successes = 0
            if response_time is not None:
                state.response_times.append(_ResponseSample(timestamp=now, duration=response_time))

            if state.circuit_state == CircuitState.CLOSED:
                cutoff = now - self.failure_window
                failures_in_window = sum(1 for at in state.recent_failures if at >= cutoff)
                if failures_in_window >= self.failure_threshold:
                    state.circuit_state = CircuitState.OPEN
                    state.circuit_opened_at = now
                    logger.warning(
                        "Circuit breaker opened for provider %s after %d failures: %s",
                        provider_id,
                        failures_in_window,
                        error,
                    )
            elif state.circuit_state == CircuitState.HALF_OPEN:
                state.circuit_state = CircuitState.OPEN
                state.circuit_opened_at = now
                logger.warning(
                    "Circuit breaker re-opened for provider %s after trial failure: %s",
                    provider_id,
                    error,
                )

    def increment_provider_load(self, provider_id: str) -> None:
        state = self._state(provider_id)
        with state.lock:
            state.current_load += 1

    def decrement_provider_load(self, provider_id: str) -> None:
        """Decrease load, clamped at zero; unknown providers are ignored."""

        with self._registry_lock:
            state = self._states.get(provider_id)
        if state is None:
            return
        with state.lock:
            state.current_load = max(0, state.current_load - 1)

    def reset_provider(self, provider_id: str) -> None:
        """Forget all runtime health and load for a provider."""

        with self._registry_lock:
            self._states.pop(provider_id, None)
        logger.info("Reset health tracking for provider %s", provider_id)

    def force_circuit_state(self, provider_id: str, circuit_state: CircuitState) -> None:
        """Operator override of the breaker state."""

        state = self._state(provider_id)
        with state.lock:
            state.circuit_state = circuit_state
            if circuit_state == CircuitState.OPEN:
                state.circuit_opened_at = self._clock()
            elif circuit_state == CircuitState.HALF_OPEN:
                state.consecutive_successes = 0
        logger.info("Forced circuit state to %s for provider %s", circuit_state.value, provider_id)

    def _state(self, provider_id: str) -> _ProviderHealthState:
        with self._registry_lock:
            state = self._states.get(provider_id)
            if state is None:
                state = _ProviderHealthState()
                self._states[provider_id] = state
            return state

    def _evaluate_circuit_state(
        self,
        provider_id: str,
        state: _ProviderHealthState,
        *,
        now: datetime,
    ) -> CircuitState:
        if (
            state.circuit_state == CircuitState.OPEN
            and state.circuit_opened_at is not None
            and now - state.circuit_opened_at >= self.circuit_reset_timeout
        ):
            state.circuit_state = CircuitState.HALF_OPEN
            state.consecutive_successes = 0
            logger.info(
                "Circuit breaker half-open for provider %s after reset timeout",
                provider_id,
            )
        return state.circuit_state


def _failure_rate(state: _ProviderHealthState) -> float:
    total = len(state.recent_failures) + len(state.recent_successes)
    if total == 0:
        return 0.0
    return len(state.recent_failures) / total


def _average_response_time(state: _ProviderHealthState) -> timedelta:
    if not state.response_times:
        return timedelta(0)
    total = sum((sample.duration for sample in state.response_times), timedelta(0))
    return total / len(state.response_times)
