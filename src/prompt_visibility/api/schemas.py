"""Request and response schemas for the batch HTTP API."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field


class Envelope(BaseModel):
    """Consistent JSON envelope: every response says whether it worked and what happened."""

    success: bool
    action: str


class ErrorResponse(Envelope):
    success: bool = False
    action: str = "error"
    error: str


class CreateJobRequest(BaseModel):
    org_id: str | None = None
    replace: bool = False
    trigger_source: str = "api"
    correlation_id: str | None = None


class JobProgressResponse(Envelope):
    job_id: str
    org_id: str | None = None
    status: str
    completed: int
    failed: int
    total: int
    remaining: int
    processed_this_run: int = 0
    failed_this_run: int = 0
    elapsed_ms: int = 0
    correlation_id: str | None = None
    providers: list[str] = Field(default_factory=list)
    cancellation_requested: bool = False


class JobEventRead(BaseModel):
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = Field(default_factory=dict)


class JobRead(BaseModel):
    job_id: str
    org_id: str
    status: str
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    remaining_tasks: int
    business_date: date
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    last_heartbeat_at: datetime | None
    runner_id: str | None
    cancellation_requested: bool
    error_summary: str | None
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobDetailsResponse(Envelope):
    job: JobRead
    task_counts: dict[str, int]
    events: list[JobEventRead]


class ReconcileJobRead(BaseModel):
    job_id: str
    org_id: str
    action: str
    status: str
    message: str | None = None


class ReconcileResponse(Envelope):
    processed: int
    finalized: int
    resumed: int
    errors: int
    results: list[ReconcileJobRead]


class DiagnosticsResponse(Envelope):
    jobs_by_status: dict[str, int]
    tasks_by_status: dict[str, int]
    stale_job_ids: list[str]
    recent_failures: list[dict[str, Any]]
    configured_providers: list[str]


class HealthResponse(BaseModel):
    status: str
    version: str
