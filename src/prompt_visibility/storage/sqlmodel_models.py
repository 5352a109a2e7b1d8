"""SQLModel ORM tables for batch visibility storage."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"  # type: ignore[bad-override]

    org_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    subscription_tier: str = Field(default="free", index=True)
    brand_names_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    competitor_names_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Prompt(SQLModel, table=True):
    __tablename__ = "prompts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_prompts_org_active", "org_id", "active"),)

    prompt_id: str = Field(primary_key=True)
    org_id: str = Field(
        sa_column=Column(
            ForeignKey("organizations.org_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    text: str = Field(sa_column=Column(Text, nullable=False))
    active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LlmProvider(SQLModel, table=True):
    __tablename__ = "llm_providers"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    enabled: bool = Field(default=True)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BatchJob(SQLModel, table=True):
    __tablename__ = "batch_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_batch_jobs_org_live",
            "org_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index("idx_batch_jobs_status_heartbeat", "status", "last_heartbeat_at"),
        Index("idx_batch_jobs_org_business_date", "org_id", "business_date"),
    )

    job_id: str = Field(primary_key=True)
    org_id: str = Field(
        sa_column=Column(
            ForeignKey("organizations.org_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    total_tasks: int = Field(default=0)
    completed_tasks: int = Field(default=0)
    failed_tasks: int = Field(default=0)
    business_date: date = Field(sa_column=Column(Date, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    runner_id: str | None = None
    cancellation_requested: bool = Field(default=False)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BatchTask(SQLModel, table=True):
    __tablename__ = "batch_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "job_id",
            "prompt_id",
            "provider",
            name="uq_batch_tasks_job_prompt_provider",
        ),
        Index("idx_batch_tasks_job_status", "job_id", "status"),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("batch_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    prompt_id: str = Field(foreign_key="prompts.prompt_id", index=True)
    provider: str = Field(index=True)
    position: int = Field(default=0)
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    claimed_by: str | None = None
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_class: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BatchJobEvent(SQLModel, table=True):
    __tablename__ = "batch_job_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("batch_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PromptProviderResponse(SQLModel, table=True):
    __tablename__ = "prompt_provider_responses"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "job_id",
            "prompt_id",
            "provider",
            name="uq_prompt_provider_responses_job_prompt_provider",
        ),
        Index("idx_prompt_provider_responses_org_run_at", "org_id", "run_at"),
    )

    response_id: str = Field(primary_key=True)
    job_id: str = Field(foreign_key="batch_jobs.job_id", index=True)
    task_id: str = Field(foreign_key="batch_tasks.task_id", index=True)
    org_id: str = Field(index=True)
    prompt_id: str = Field(index=True)
    provider: str = Field(index=True)
    model: str | None = None
    status: str = Field(index=True)
    score: float = 0.0
    org_brand_present: bool = False
    org_brand_prominence: int | None = None
    brands_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    competitors_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    competitors_count: int = 0
    raw_response: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    token_in: int = 0
    token_out: int = 0
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SchedulerRun(SQLModel, table=True):
    __tablename__ = "scheduler_runs"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    run_key: str = Field(index=True)
    trigger_source: str
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
