"""Persistent store for jobs, providers and dispatch events."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlmodel import Session, SQLModel, col, select

from swarm_dispatch.coordination.models import (
    DispatchEvent,
    DispatchEventView,
    Job,
    JobCreate,
    JobStatus,
    Provider,
)
from swarm_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from swarm_dispatch.storage.tables import JobEventRow, JobRow, ProjectRow, ProviderRow

_RUNNING_STATUSES = (JobStatus.STARTED, JobStatus.PROCESSING, JobStatus.PAUSED)


class DispatchRepository:
    """Job/provider persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables that do not exist yet."""

        SQLModel.metadata.create_all(self.engine)

    def add_provider(
        self,
        *,
        name: str,
        provider_type: str,
        is_enabled: bool = True,
        is_default: bool = False,
        provider_id: str | None = None,
    ) -> Provider:
        """Register an execution provider."""

        with Session(self.engine) as session:
            row = ProviderRow(
                provider_id=provider_id or str(uuid4()),
                name=name,
                provider_type=provider_type,
                is_enabled=is_enabled,
                is_default=is_default,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_provider(row)

    def get_provider(self, provider_id: str) -> Provider | None:
        with Session(self.engine) as session:
            row = session.get(ProviderRow, provider_id)
            return _to_provider(row) if row is not None else None

    def list_providers(self) -> list[Provider]:
        with Session(self.engine) as session:
            rows = session.exec(select(ProviderRow).order_by(col(ProviderRow.name).asc())).all()
        return [_to_provider(row) for row in rows]

    def list_enabled_providers(self) -> list[Provider]:
        """Enabled providers, default provider first, then by name."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ProviderRow)
                .where(col(ProviderRow.is_enabled).is_(True))
                .order_by(col(ProviderRow.is_default).desc(), col(ProviderRow.name).asc()),
            ).all()
        return [_to_provider(row) for row in rows]

    def set_provider_enabled(self, *, provider_id: str, enabled: bool) -> Provider:
        with Session(self.engine) as session:
            row = session.get(ProviderRow, provider_id)
            if row is None:
                raise RuntimeError(f"Provider not found: {provider_id}")
            row.is_enabled = enabled
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_provider(row)

    def add_project(self, *, name: str, project_id: str | None = None) -> str:
        with Session(self.engine) as session:
            row = ProjectRow(
                project_id=project_id or str(uuid4()),
                name=name,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            return row.project_id

    def add_job(self, payload: JobCreate) -> Job:
        """Create a job in status ``new``; unknown projects are created on the fly."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            if session.get(ProjectRow, payload.project_id) is None:
                session.add(
                    ProjectRow(
                        project_id=payload.project_id,
                        name=payload.project_id,
                        created_at=now,
                    ),
                )
                # The project row must exist before the job INSERT.
                session.flush()
            row = JobRow(
                job_id=job_id,
                project_id=payload.project_id,
                provider_id=payload.provider_id,
                goal_prompt=payload.goal_prompt,
                status=JobStatus.NEW.value,
                priority=payload.priority,
                created_at=to_db_datetime(now),
                max_retries=payload.max_retries,
                depends_on_job_id=payload.depends_on_job_id,
                completion_profile=payload.completion_profile,
            )
            session.add(row)
            self._add_event_row(
                session=session,
                event=DispatchEvent(
                    event_type="job_created",
                    job_id=job_id,
                    provider_id=payload.provider_id,
                    status_to=JobStatus.NEW,
                    details={"priority": payload.priority, "project_id": payload.project_id},
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_job(row)

    def get_job(self, job_id: str) -> Job | None:
        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            return _to_job(row) if row is not None else None

    def save_job(self, job: Job) -> None:
        """Persist every mutable field of a job.

        The status written here is whatever the state machine left on the
        job; this method never decides a status on its own.
        """

        with Session(self.engine) as session:
            row = session.get(JobRow, job.job_id)
            if row is None:
                raise RuntimeError(f"Job not found: {job.job_id}")
            row.status = job.status.value
            row.provider_id = job.provider_id
            row.priority = job.priority
            row.started_at = _optional_db_datetime(job.started_at)
            row.completed_at = _optional_db_datetime(job.completed_at)
            row.last_activity_at = _optional_db_datetime(job.last_activity_at)
            row.last_heartbeat_at = _optional_db_datetime(job.last_heartbeat_at)
            row.retry_count = job.retry_count
            row.max_retries = job.max_retries
            row.cancellation_requested = job.cancellation_requested
            row.input_tokens = job.input_tokens
            row.output_tokens = job.output_tokens
            row.total_cost_usd = job.total_cost_usd
            row.output = job.output
            row.error_message = job.error_message
            row.current_activity = job.current_activity
            row.worker_instance_id = job.worker_instance_id
            row.process_id = job.process_id
            row.depends_on_job_id = job.depends_on_job_id
            row.completion_profile = job.completion_profile
            session.add(row)
            session.commit()

    def assign_provider(self, *, job_id: str, provider_id: str) -> bool:
        """Bind a job to a provider. Returns False when the job is gone."""

        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            if row is None:
                return False
            row.provider_id = provider_id
            session.add(row)
            session.commit()
            return True

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[Job]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(JobRow).order_by(col(JobRow.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(JobRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job(row) for row in rows]

    def list_jobs_by_status(self, statuses: Iterable[JobStatus]) -> list[Job]:
        values = [status.value for status in statuses]
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(col(JobRow.status).in_(values))
                .order_by(col(JobRow.created_at).asc()),
            ).all()
        return [_to_job(row) for row in rows]

    def list_unstarted_assigned_jobs(self) -> list[Job]:
        """Jobs in new/pending status that already carry a provider binding."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(
                    col(JobRow.status).in_([JobStatus.NEW.value, JobStatus.PENDING.value]),
                    col(JobRow.provider_id).is_not(None),
                )
                .order_by(col(JobRow.priority).desc(), col(JobRow.created_at).asc()),
            ).all()
        return [_to_job(row) for row in rows]

    def projects_with_active_jobs(self) -> set[str]:
        """Projects that have a started, processing or paused job."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow.project_id)
                .where(col(JobRow.status).in_([status.value for status in _RUNNING_STATUSES]))
                .distinct(),
            ).all()
        return set(rows)

    def list_runnable_jobs(self, *, excluded_projects: set[str]) -> list[Job]:
        """New jobs without a cancellation request, highest priority then oldest first."""

        with Session(self.engine) as session:
            statement = (
                select(JobRow)
                .where(
                    JobRow.status == JobStatus.NEW.value,
                    col(JobRow.cancellation_requested).is_(False),
                )
                .order_by(col(JobRow.priority).desc(), col(JobRow.created_at).asc())
            )
            if excluded_projects:
                statement = statement.where(col(JobRow.project_id).not_in(excluded_projects))
            rows = session.exec(statement).all()
        return [_to_job(row) for row in rows]

    def add_event(self, event: DispatchEvent) -> None:
        with Session(self.engine) as session:
            self._add_event_row(session=session, event=event)
            session.commit()

    def list_events(self, *, job_id: str) -> list[DispatchEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()

        events: list[DispatchEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                DispatchEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    provider_id=row.provider_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def _add_event_row(self, *, session: Session, event: DispatchEvent) -> None:
        session.add(
            JobEventRow(
                job_id=event.job_id,
                provider_id=event.provider_id,
                event_type=event.event_type,
                status_from=event.status_from.value if event.status_from is not None else None,
                status_to=event.status_to.value if event.status_to is not None else None,
                details_json=(
                    json.dumps(event.details, ensure_ascii=False, sort_keys=True, default=str)
                    if event.details
                    else None
                ),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_aware_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_provider(row: ProviderRow) -> Provider:
    return Provider(
        provider_id=row.provider_id,
        name=row.name,
        provider_type=row.provider_type,
        is_enabled=row.is_enabled,
        is_default=row.is_default,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job(row: JobRow) -> Job:
    return Job(
        job_id=row.job_id,
        project_id=row.project_id,
        goal_prompt=row.goal_prompt,
        created_at=to_utc_aware_datetime(row.created_at),
        status=JobStatus(row.status),
        provider_id=row.provider_id,
        priority=row.priority,
        started_at=_optional_aware_datetime(row.started_at),
        completed_at=_optional_aware_datetime(row.completed_at),
        last_activity_at=_optional_aware_datetime(row.last_activity_at),
        last_heartbeat_at=_optional_aware_datetime(row.last_heartbeat_at),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        cancellation_requested=row.cancellation_requested,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        total_cost_usd=row.total_cost_usd,
        output=row.output,
        error_message=row.error_message,
        current_activity=row.current_activity,
        worker_instance_id=row.worker_instance_id,
        process_id=row.process_id,
        depends_on_job_id=row.depends_on_job_id,
        completion_profile=row.completion_profile,
    )
