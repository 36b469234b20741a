"""Outward notifications about job and provider changes."""

from __future__ import annotations

import logging
from typing import Protocol

from swarm_dispatch.coordination.models import DispatchEvent

logger = logging.getLogger(__name__)


class DispatchEventSink(Protocol):
    """Receiver of fire-and-forget dispatch notifications."""

    def publish(self, event: DispatchEvent) -> None:
        """Deliver one event."""


class LoggingEventSink:
    """Writes every event to the module logger at INFO."""

    def publish(self, event: DispatchEvent) -> None:
        logger.info(
            "%s job=%s provider=%s %s->%s %s",
            event.event_type,
            event.job_id,
            event.provider_id,
            event.status_from.value if event.status_from is not None else "-",
            event.status_to.value if event.status_to is not None else "-",
            event.details,
        )


class RepositoryEventSink:
    """Persists events into the ``job_events`` audit table."""

    def __init__(self, repository: _EventStore) -> None:
        self.repository = repository

    def publish(self, event: DispatchEvent) -> None:
        self.repository.add_event(event)


class _EventStore(Protocol):
    def add_event(self, event: DispatchEvent) -> None: ...


def publish_safely(sink: DispatchEventSink | None, event: DispatchEvent) -> None:
    """Publish without letting a delivery failure reach the caller."""

    if sink is None:
        return
    try:
        sink.publish(event)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to publish %s event for job %s", event.event_type, event.job_id)
