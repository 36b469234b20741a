from __future__ import annotations

import logging

import allure
import pytest

from swarm_dispatch.coordination.events import (
    LoggingEventSink,
    RepositoryEventSink,
    publish_safely,
)
from swarm_dispatch.coordination.models import DispatchEvent, JobStatus
from swarm_dispatch.storage.repository import DispatchRepository

pytestmark = [
    allure.epic("Job Coordination"),
    allure.feature("Notifications"),
]


def test_logging_sink_writes_transition(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="swarm_dispatch.coordination.events")

    LoggingEventSink().publish(
        DispatchEvent(
            event_type="job_status_changed",
            job_id="job-1",
            provider_id="p1",
            status_from=JobStatus.STARTED,
            status_to=JobStatus.COMPLETED,
        ),
    )

    assert "job_status_changed job=job-1 provider=p1 started->completed" in caplog.text


def test_repository_sink_persists_event(repository: DispatchRepository) -> None:
    publish_safely(
        RepositoryEventSink(repository),
        DispatchEvent(event_type="job_released", job_id="job-2", details={"success": True}),
    )

    events = repository.list_events(job_id="job-2")

    assert [(event.event_type, event.details) for event in events] == [
        ("job_released", {"success": True}),
    ]


def test_publish_safely_swallows_sink_errors(caplog: pytest.LogCaptureFixture) -> None:
    class _BrokenSink:
        def publish(self, event: DispatchEvent) -> None:
            raise OSError("socket closed")

    publish_safely(_BrokenSink(), DispatchEvent(event_type="job_assigned", job_id="job-3"))
    publish_safely(None, DispatchEvent(event_type="job_assigned", job_id="job-3"))

    assert "Failed to publish job_assigned event for job job-3" in caplog.text
