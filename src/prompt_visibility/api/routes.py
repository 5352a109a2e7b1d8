"""Batch job routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Request

from prompt_visibility import __version__
from prompt_visibility.api.auth import Caller, require_admin, require_caller, require_org_access
from prompt_visibility.api.schemas import (
    CreateJobRequest,
    DiagnosticsResponse,
    HealthResponse,
    JobDetailsResponse,
    JobEventRead,
    JobProgressResponse,
    JobRead,
    ReconcileJobRead,
    ReconcileResponse,
)
from prompt_visibility.batch.errors import JobNotFoundError, ValidationError
from prompt_visibility.batch.executor import ExecutionResult
from prompt_visibility.batch.fanout import CreateBatchJob
from prompt_visibility.batch.models import BatchJobView
from prompt_visibility.batch.runtime import BatchRuntime

router = APIRouter(prefix="/batch")
health_router = APIRouter()


def get_runtime(request: Request) -> BatchRuntime:
    return request.app.state.runtime


def _load_job(runtime: BatchRuntime, caller: Caller, job_id: str) -> BatchJobView:
    job = runtime.repository.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    require_org_access(caller, job.org_id)
    return job


@router.post("/jobs", response_model=JobProgressResponse)
def create_job(
    payload: CreateJobRequest,
    caller: Caller = Depends(require_caller),
    runtime: BatchRuntime = Depends(get_runtime),
) -> JobProgressResponse:
    """Fan out an org's active prompts into a new job, or return the live one."""

    org_id = payload.org_id or caller.org_id
    if not org_id:
        raise ValidationError("org_id is required.")
    require_org_access(caller, org_id)
    result = runtime.fanout.create_job(
        CreateBatchJob(
            org_id=org_id,
            replace=payload.replace,
            trigger_source=payload.trigger_source,
            correlation_id=payload.correlation_id,
        ),
    )
    job = result.job
    return JobProgressResponse(
        success=True,
        action=result.action.value,
        job_id=job.job_id,
        org_id=job.org_id,
        status=job.status.value,
        completed=job.completed_tasks,
        failed=job.failed_tasks,
        total=job.total_tasks,
        remaining=job.remaining_tasks,
        correlation_id=job.metadata.get("correlation_id"),
        providers=result.providers,
        cancellation_requested=job.cancellation_requested,
    )


@router.post("/jobs/{job_id}/run", response_model=JobProgressResponse)
def run_job(
    job_id: str = Path(..., min_length=1),
    caller: Caller = Depends(require_caller),
    runtime: BatchRuntime = Depends(get_runtime),
) -> JobProgressResponse:
    """Run one time-boxed executor invocation; call again while action is in_progress."""

    job = _load_job(runtime, caller, job_id)
    result = runtime.executor.run(job.job_id)
    return _progress_response(result, org_id=job.org_id)


@router.post("/jobs/{job_id}/cancel", response_model=JobProgressResponse)
def cancel_job(
    job_id: str = Path(..., min_length=1),
    caller: Caller = Depends(require_caller),
    runtime: BatchRuntime = Depends(get_runtime),
) -> JobProgressResponse:
    _load_job(runtime, caller, job_id)
    job = runtime.repository.request_cancellation(job_id)
    return JobProgressResponse(
        success=True,
        action="cancelled" if job.status.is_terminal else "cancellation_requested",
        job_id=job.job_id,
        org_id=job.org_id,
        status=job.status.value,
        completed=job.completed_tasks,
        failed=job.failed_tasks,
        total=job.total_tasks,
        remaining=job.remaining_tasks,
        cancellation_requested=job.cancellation_requested,
    )


@router.get("/jobs/{job_id}", response_model=JobDetailsResponse)
def get_job(
    job_id: str = Path(..., min_length=1),
    caller: Caller = Depends(require_caller),
    runtime: BatchRuntime = Depends(get_runtime),
) -> JobDetailsResponse:
    _load_job(runtime, caller, job_id)
    details = runtime.repository.get_job_details(job_id)
    if details is None:  # pragma: no cover - jobs are never deleted
        raise JobNotFoundError(job_id)
    job = details.job
    return JobDetailsResponse(
        success=True,
        action="status",
        job=JobRead(
            job_id=job.job_id,
            org_id=job.org_id,
            status=job.status.value,
            total_tasks=job.total_tasks,
            completed_tasks=job.completed_tasks,
            failed_tasks=job.failed_tasks,
            remaining_tasks=job.remaining_tasks,
            business_date=job.business_date,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            last_heartbeat_at=job.last_heartbeat_at,
            runner_id=job.runner_id,
            cancellation_requested=job.cancellation_requested,
            error_summary=job.error_summary,
            metadata=job.metadata,
        ),
        task_counts=details.task_counts,
        events=[
            JobEventRead(
                event_type=event.event_type,
                status_from=event.status_from.value if event.status_from else None,
                status_to=event.status_to.value if event.status_to else None,
                created_at=event.created_at,
                details=event.details,
            )
            for event in details.events
        ],
    )


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile(
    caller: Caller = Depends(require_caller),
    runtime: BatchRuntime = Depends(get_runtime),
) -> ReconcileResponse:
    """Finalize or resume every job whose heartbeat went stale."""

    require_admin(caller)
    summary = runtime.reconciler.sweep()
    return ReconcileResponse(
        success=summary.errors == 0,
        action="reconciled",
        processed=summary.processed,
        finalized=summary.finalized,
        resumed=summary.resumed,
        errors=summary.errors,
        results=[
            ReconcileJobRead(
                job_id=result.job_id,
                org_id=result.org_id,
                action=result.action.value,
                status=result.status,
                message=result.message,
            )
            for result in summary.results
        ],
    )


@router.get("/diagnostics", response_model=DiagnosticsResponse)
def diagnostics(
    caller: Caller = Depends(require_caller),
    runtime: BatchRuntime = Depends(get_runtime),
) -> DiagnosticsResponse:
    require_admin(caller)
    snapshot = runtime.repository.diagnostics(stale_before=runtime.reconciler.stale_before())
    return DiagnosticsResponse(
        success=True,
        action="diagnostics",
        jobs_by_status=snapshot.jobs_by_status,
        tasks_by_status=snapshot.tasks_by_status,
        stale_job_ids=snapshot.stale_job_ids,
        recent_failures=snapshot.recent_failures,
        configured_providers=sorted(runtime.clients),
    )


@health_router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__)


def _progress_response(result: ExecutionResult, *, org_id: str) -> JobProgressResponse:
    return JobProgressResponse(
        success=True,
        action=result.action.value,
        job_id=result.job_id,
        org_id=org_id,
        status=result.status.value,
        completed=result.completed,
        failed=result.failed,
        total=result.total,
        remaining=result.remaining,
        processed_this_run=result.processed_this_run,
        failed_this_run=result.failed_this_run,
        elapsed_ms=result.elapsed_ms,
        correlation_id=result.correlation_id,
    )
