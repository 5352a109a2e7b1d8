"""Heartbeat reconciler: finalizes or resumes jobs whose runner went quiet."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from prompt_visibility.batch.errors import BatchError
from prompt_visibility.batch.executor import ExecutionResult, MicroBatchExecutor
from prompt_visibility.batch.models import BatchJobView, BatchTaskStatus, ExecutionAction
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.storage.common import utc_now

logger = logging.getLogger(__name__)

RECONCILER_RUNNER = "reconciler"


@dataclass(slots=True)
class ReconcileJobResult:
    job_id: str
    org_id: str
    action: ExecutionAction
    status: str
    message: str | None = None
    execution: ExecutionResult | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "org_id": self.org_id,
            "action": self.action.value,
            "status": self.status,
            "message": self.message,
            "execution": self.execution.to_dict() if self.execution is not None else None,
        }


@dataclass(slots=True)
class ReconcileSummary:
    processed: int = 0
    finalized: int = 0
    resumed: int = 0
    errors: int = 0
    results: list[ReconcileJobResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "finalized": self.finalized,
            "resumed": self.resumed,
            "errors": self.errors,
            "results": [result.to_dict() for result in self.results],
        }


class Reconciler:
    """Sweeps stale live jobs; one bad job never aborts the sweep."""

    def __init__(
        self,
        *,
        repository: BatchRepository,
        executor: MicroBatchExecutor,
        stale_after_seconds: int = 300,
        batch_limit: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.stale_after_seconds = stale_after_seconds
        self.batch_limit = batch_limit
        self._clock = clock

    def stale_before(self) -> datetime:
        return self._clock() - timedelta(seconds=self.stale_after_seconds)

    def sweep(self) -> ReconcileSummary:
        stale_before = self.stale_before()
        jobs = self.repository.list_stale_jobs(stale_before=stale_before, limit=self.batch_limit)
        summary = ReconcileSummary()
        if jobs:
            logger.info("Reconciler found %d stale job(s)", len(jobs))

        for job in jobs:
            summary.processed += 1
            try:
                result = self._reconcile_job(job, stale_before=stale_before)
            except (BatchError, SQLAlchemyError, RuntimeError) as error:
                logger.exception("Reconciler failed on job %s", job.job_id)
                result = ReconcileJobResult(
                    job_id=job.job_id,
                    org_id=job.org_id,
                    action=ExecutionAction.ERROR,
                    status=job.status.value,
                    message=str(error),
                )
            if result.action == ExecutionAction.FINALIZED:
                summary.finalized += 1
            elif result.action == ExecutionAction.RESUMED:
                summary.resumed += 1
            elif result.action == ExecutionAction.ERROR:
                summary.errors += 1
            summary.results.append(result)
        return summary

    def _reconcile_job(self, job: BatchJobView, *, stale_before: datetime) -> ReconcileJobResult:
        counts = self.repository.count_tasks_by_status(job.job_id)
        open_tasks = counts[BatchTaskStatus.PENDING.value] + counts[BatchTaskStatus.PROCESSING.value]

        if open_tasks == 0:
            finalized = self.repository.finalize_job(
                job.job_id,
                details={"runner_id": RECONCILER_RUNNER},
            )
            if finalized is None:
                current = self.repository.get_job(job.job_id) or job
                return ReconcileJobResult(
                    job_id=job.job_id,
                    org_id=job.org_id,
                    action=ExecutionAction.SKIPPED,
                    status=current.status.value,
                    message="Job was finalized concurrently.",
                )
            logger.info(
                "Reconciler finalized job %s as %s (%d/%d)",
                job.job_id,
                finalized.status.value,
                finalized.completed_tasks,
                finalized.total_tasks,
            )
            return ReconcileJobResult(
                job_id=job.job_id,
                org_id=job.org_id,
                action=ExecutionAction.FINALIZED,
                status=finalized.status.value,
            )

        released = self.repository.release_stale_claims(job.job_id, stale_before=stale_before)
        self.repository.add_job_event(
            job.job_id,
            event_type="reconciler_resume",
            details={"released_claims": released, "open_tasks": open_tasks},
        )
        try:
            execution = self.executor.run(job.job_id, resumed_by=RECONCILER_RUNNER)
        except (BatchError, SQLAlchemyError, RuntimeError) as error:
            logger.warning("Resume of job %s failed, left for the next sweep: %s", job.job_id, error)
            return ReconcileJobResult(
                job_id=job.job_id,
                org_id=job.org_id,
                action=ExecutionAction.PREPARED_FOR_RESUME,
                status=job.status.value,
                message=str(error),
            )

        logger.info(
            "Reconciler resumed job %s: %s (%d remaining)",
            job.job_id,
            execution.action.value,
            execution.remaining,
        )
        return ReconcileJobResult(
            job_id=job.job_id,
            org_id=job.org_id,
            action=ExecutionAction.RESUMED,
            status=execution.status.value,
            execution=execution,
        )
