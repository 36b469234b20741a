"""SQLModel ORM tables for dispatch storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProviderRow(SQLModel, table=True):
    __tablename__ = "providers"  # type: ignore[bad-override]

    provider_id: str = Field(primary_key=True)
    name: str = Field(index=True, unique=True)
    provider_type: str
    is_enabled: bool = Field(default=True, index=True)
    is_default: bool = False
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("ix_jobs_status_priority_created", "status", "priority", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    provider_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("providers.provider_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    goal_prompt: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_activity_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    retry_count: int = 0
    max_retries: int = 3
    cancellation_requested: bool = False
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_cost_usd: float | None = None
    output: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    current_activity: str | None = None
    worker_instance_id: str | None = None
    process_id: int | None = None
    depends_on_job_id: str | None = Field(default=None, index=True)
    completion_profile: str = "default"


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str | None = Field(default=None, index=True)
    provider_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
