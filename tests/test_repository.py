from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from swarm_dispatch.coordination.models import DispatchEvent, JobCreate, JobStatus
from swarm_dispatch.coordination.state_machine import try_transition
from swarm_dispatch.storage.repository import DispatchRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Jobs, Providers & Audit Events"),
]


def test_add_job_creates_project_and_audit_event(repository: DispatchRepository) -> None:
    job = repository.add_job(
        JobCreate(project_id="alpha", goal_prompt="Split module", priority=4, job_id="job-1"),
    )

    assert job.job_id == "job-1"
    assert job.status == JobStatus.NEW
    assert job.created_at.tzinfo is not None

    events = repository.list_events(job_id="job-1")
    assert len(events) == 1
    assert events[0].event_type == "job_created"
    assert events[0].status_from is None
    assert events[0].status_to == JobStatus.NEW
    assert events[0].details == {"priority": 4, "project_id": "alpha"}

    second = repository.add_job(JobCreate(project_id="alpha", goal_prompt="Add tests"))
    assert second.project_id == "alpha"
    with repository.engine.connect() as connection:
        projects = connection.execute(text("SELECT project_id, name FROM projects")).all()
    assert [tuple(project) for project in projects] == [("alpha", "alpha")]


def test_save_job_round_trips_timestamps_as_utc(repository: DispatchRepository) -> None:
    job = repository.add_job(JobCreate(project_id="alpha", goal_prompt="Split module"))
    started = datetime(2026, 3, 2, 10, 15, 30, tzinfo=UTC)
    try_transition(job, JobStatus.STARTED, now=started)
    job.input_tokens = 120
    job.output = "diff --git"
    repository.save_job(job)

    stored = repository.get_job(job.job_id)

    assert stored is not None
    assert stored.status == JobStatus.STARTED
    assert stored.started_at == started
    assert stored.started_at.tzinfo is not None
    assert stored.last_heartbeat_at == started
    assert stored.input_tokens == 120
    assert stored.output == "diff --git"


def test_save_job_for_unknown_job_raises(repository: DispatchRepository) -> None:
    job = repository.add_job(JobCreate(project_id="alpha", goal_prompt="Split module"))
    job.job_id = "ghost"

    with pytest.raises(RuntimeError, match="Job not found: ghost"):
        repository.save_job(job)


def test_enabled_providers_list_default_first(repository: DispatchRepository) -> None:
    repository.add_provider(name="bravo", provider_type="codex")
    repository.add_provider(name="zulu", provider_type="claude", is_default=True)
    repository.add_provider(name="alpha", provider_type="gemini")
    off = repository.add_provider(name="charlie", provider_type="claude", is_enabled=False)

    names = [provider.name for provider in repository.list_enabled_providers()]

    assert names == ["zulu", "alpha", "bravo"]
    assert [provider.name for provider in repository.list_providers()] == [
        "alpha",
        "bravo",
        "charlie",
        "zulu",
    ]
    assert repository.set_provider_enabled(provider_id=off.provider_id, enabled=True).is_enabled


def test_set_provider_enabled_for_unknown_provider_raises(
    repository: DispatchRepository,
) -> None:
    with pytest.raises(RuntimeError, match="Provider not found: nope"):
        repository.set_provider_enabled(provider_id="nope", enabled=False)


def test_assign_provider_reports_missing_job(repository: DispatchRepository) -> None:
    provider = repository.add_provider(name="p", provider_type="claude")

    assert repository.assign_provider(job_id="missing", provider_id=provider.provider_id) is False


def test_active_projects_and_unstarted_assignments(repository: DispatchRepository) -> None:
    provider = repository.add_provider(name="p", provider_type="claude")
    running = repository.add_job(JobCreate(project_id="alpha", goal_prompt="Run"))
    paused = repository.add_job(JobCreate(project_id="beta", goal_prompt="Pause"))
    bound_low = repository.add_job(
        JobCreate(project_id="gamma", goal_prompt="Low", provider_id=provider.provider_id),
    )
    bound_high = repository.add_job(
        JobCreate(
            project_id="delta",
            goal_prompt="High",
            provider_id=provider.provider_id,
            priority=7,
        ),
    )
    repository.add_job(JobCreate(project_id="epsilon", goal_prompt="Unbound"))
    try_transition(running, JobStatus.STARTED)
    try_transition(paused, JobStatus.STARTED)
    try_transition(paused, JobStatus.PAUSED)
    repository.save_job(running)
    repository.save_job(paused)

    assert repository.projects_with_active_jobs() == {"alpha", "beta"}
    assert [job.job_id for job in repository.list_unstarted_assigned_jobs()] == [
        bound_high.job_id,
        bound_low.job_id,
    ]


def test_list_jobs_filters_by_status(repository: DispatchRepository) -> None:
    first = repository.add_job(JobCreate(project_id="alpha", goal_prompt="One"))
    repository.add_job(JobCreate(project_id="alpha", goal_prompt="Two"))
    try_transition(first, JobStatus.CANCELLED)
    repository.save_job(first)

    cancelled = repository.list_jobs(status=JobStatus.CANCELLED)

    assert [job.job_id for job in cancelled] == [first.job_id]
    assert len(repository.list_jobs(limit=1)) == 1


def test_add_event_persists_details(repository: DispatchRepository) -> None:
    repository.add_event(
        DispatchEvent(
            event_type="job_rebalanced",
            job_id="job-9",
            details={"previous_provider_id": "p-old"},
        ),
    )

    events = repository.list_events(job_id="job-9")

    assert [(event.event_type, event.details) for event in events] == [
        ("job_rebalanced", {"previous_provider_id": "p-old"}),
    ]


def test_foreign_keys_are_enabled_and_enforced(tmp_path: Path) -> None:
    repo = DispatchRepository(tmp_path / "foreign-keys.db")
    repo.init_schema()

    with repo.engine.connect() as connection:
        assert connection.execute(text("PRAGMA foreign_keys")).scalar() == 1
        assert connection.execute(text("PRAGMA journal_mode")).scalar() == "wal"

    with pytest.raises(IntegrityError):
        repo.add_job(
            JobCreate(project_id="alpha", goal_prompt="Orphan", provider_id="missing-provider"),
        )
    repo.close()


def test_jobs_attach_to_registered_project(repository: DispatchRepository) -> None:
    project_id = repository.add_project(name="Payments API", project_id="payments")

    job = repository.add_job(JobCreate(project_id=project_id, goal_prompt="Bump deps"))

    assert job.project_id == "payments"
    with repository.engine.connect() as connection:
        names = connection.execute(text("SELECT name FROM projects")).scalars().all()
    assert names == ["Payments API"]
