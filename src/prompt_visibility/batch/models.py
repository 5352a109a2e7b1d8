"""Domain models for batch jobs, tasks and provider responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class BatchJobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES

    @property
    def is_live(self) -> bool:
        return self in LIVE_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {BatchJobStatus.COMPLETED, BatchJobStatus.FAILED, BatchJobStatus.CANCELLED},
)
LIVE_JOB_STATUSES = frozenset({BatchJobStatus.PENDING, BatchJobStatus.PROCESSING})


class BatchTaskStatus(str, Enum):
    """Per (prompt, provider) task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {BatchTaskStatus.COMPLETED, BatchTaskStatus.FAILED, BatchTaskStatus.CANCELLED},
)


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    BAD_REQUEST = "bad_request"
    EMPTY_RESPONSE = "empty_response"
    PROVIDER_NOT_CONFIGURED = "provider_not_configured"
    CIRCUIT_OPEN = "circuit_open"
    PERSISTENCE_ERROR = "persistence_error"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {FailureClass.TIMEOUT, FailureClass.BACKEND_TRANSIENT, FailureClass.EMPTY_RESPONSE},
)


class ExecutionAction(str, Enum):
    """Outcome reported by executor, fan-out and reconciler entry points."""

    CREATED = "created"
    EXISTING = "existing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RESUMED = "resumed"
    FINALIZED = "finalized"
    PREPARED_FOR_RESUME = "prepared_for_resume"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(slots=True)
class OrganizationView:
    """Organization with the brand configuration used by response analysis."""

    org_id: str
    name: str
    subscription_tier: str
    brand_names: list[str]
    competitor_names: list[str]
    created_at: datetime


@dataclass(slots=True)
class PromptView:
    prompt_id: str
    org_id: str
    text: str
    active: bool
    created_at: datetime


@dataclass(slots=True)
class BatchJobCreate:
    """Input payload for persisting one fan-out run."""

    org_id: str
    prompt_ids: list[str]
    providers: list[str]
    business_date: date
    job_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BatchJobView:
    """Readable job view for executor, reconciler and API."""

    job_id: str
    org_id: str
    status: BatchJobStatus
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    business_date: date
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    last_heartbeat_at: datetime | None
    runner_id: str | None
    cancellation_requested: bool
    metadata: dict[str, Any]
    error_summary: str | None
    updated_at: datetime

    @property
    def processed_tasks(self) -> int:
        return self.completed_tasks + self.failed_tasks

    @property
    def remaining_tasks(self) -> int:
        return max(0, self.total_tasks - self.processed_tasks)


@dataclass(slots=True)
class BatchTaskView:
    task_id: str
    job_id: str
    prompt_id: str
    provider: str
    position: int
    status: BatchTaskStatus
    attempts: int
    claimed_by: str | None
    claimed_at: datetime | None
    finished_at: datetime | None
    failure_class: FailureClass | None
    error_message: str | None


@dataclass(slots=True)
class BatchJobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: BatchJobStatus | None
    status_to: BatchJobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BatchJobDetails:
    """Job details with task status counts and event stream."""

    job: BatchJobView
    task_counts: dict[str, int]
    events: list[BatchJobEventView]


@dataclass(slots=True)
class ResponseRecordWrite:
    """Outcome of one provider call for one prompt, success or error."""

    status: str
    model: str | None = None
    score: float = 0.0
    org_brand_present: bool = False
    org_brand_prominence: int | None = None
    brands: list[str] = field(default_factory=list)
    competitors: list[str] = field(default_factory=list)
    raw_response: str | None = None
    error_message: str | None = None
    token_in: int = 0
    token_out: int = 0


@dataclass(slots=True)
class ResponseRecordView:
    response_id: str
    job_id: str
    task_id: str
    org_id: str
    prompt_id: str
    provider: str
    model: str | None
    status: str
    score: float
    org_brand_present: bool
    org_brand_prominence: int | None
    brands: list[str]
    competitors: list[str]
    competitors_count: int
    raw_response: str | None
    error_message: str | None
    token_in: int
    token_out: int
    run_at: datetime


@dataclass(slots=True)
class SchedulerRunView:
    run_id: str
    run_key: str
    trigger_source: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    result: dict[str, Any]
    error_message: str | None


@dataclass(slots=True)
class DiagnosticsSnapshot:
    """Queue health summary for operators."""

    jobs_by_status: dict[str, int]
    tasks_by_status: dict[str, int]
    stale_job_ids: list[str]
    recent_failures: list[dict[str, Any]]
