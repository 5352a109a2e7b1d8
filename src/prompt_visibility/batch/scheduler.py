"""Daily trigger: one fan-out + drive per org inside the morning window."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from prompt_visibility.batch.driver import DriverLoop
from prompt_visibility.batch.errors import BatchError
from prompt_visibility.batch.fanout import CreateBatchJob, FanoutService, business_date_for
from prompt_visibility.batch.models import ExecutionAction
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.config import SchedulerSettings
from prompt_visibility.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OrgRunResult:
    org_id: str
    success: bool
    action: str
    job_id: str | None = None
    drive_status: str | None = None
    error: str | None = None


@dataclass(slots=True)
class DailyRunSummary:
    status: str
    run_key: str
    run_id: str | None = None
    message: str | None = None
    orgs: list[OrgRunResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for org in self.orgs if org.success)

    @property
    def failed(self) -> int:
        return sum(1 for org in self.orgs if not org.success)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "run_key": self.run_key,
            "run_id": self.run_id,
            "message": self.message,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "orgs": [
                {
                    "org_id": org.org_id,
                    "success": org.success,
                    "action": org.action,
                    "job_id": org.job_id,
                    "drive_status": org.drive_status,
                    "error": org.error,
                }
                for org in self.orgs
            ],
        }


class DailyScheduler:
    """Runs the daily batch for every org with active prompts."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: BatchRepository,
        fanout: FanoutService,
        driver: DriverLoop,
        settings: SchedulerSettings,
        business_timezone: str = "America/New_York",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.fanout = fanout
        self.driver = driver
        self.settings = settings
        self.business_timezone = business_timezone
        self._clock = clock

    def in_window(self, moment: datetime) -> bool:
        local = moment.astimezone(ZoneInfo(self.business_timezone))
        return self.settings.window_start_hour <= local.hour < self.settings.window_end_hour

    def run(self, *, force: bool = False, trigger_source: str = "cron") -> DailyRunSummary:
        now = self._clock()
        run_key = business_date_for(now, self.business_timezone).isoformat()

        if not force and not self.in_window(now):
            logger.info("Daily run %s skipped: outside execution window", run_key)
            return DailyRunSummary(
                status="skipped",
                run_key=run_key,
                message=(
                    f"Outside execution window {self.settings.window_start_hour:02d}:00-"
                    f"{self.settings.window_end_hour:02d}:00 {self.business_timezone}"
                ),
            )
        if not force:
            previous = self.repository.find_completed_scheduler_run(run_key)
            if previous is not None:
                logger.info("Daily run %s already completed (run %s)", run_key, previous.run_id)
                return DailyRunSummary(
                    status="skipped",
                    run_key=run_key,
                    run_id=previous.run_id,
                    message="Already completed for this business day",
                )

        run = self.repository.start_scheduler_run(run_key=run_key, trigger_source=trigger_source)
        summary = DailyRunSummary(status="running", run_key=run_key, run_id=run.run_id)
        for org_id in self.repository.list_orgs_with_active_prompts():
            summary.orgs.append(self._run_org(org_id, trigger_source=trigger_source))

        summary.status = "completed" if summary.failed == 0 else "failed_partial"
        self.repository.finish_scheduler_run(
            run.run_id,
            status=summary.status,
            result=summary.to_dict(),
            error_message=(
                None
                if summary.failed == 0
                else f"{summary.failed} of {len(summary.orgs)} org(s) failed"
            ),
        )
        logger.info(
            "Daily run %s %s: %d succeeded, %d failed",
            run_key,
            summary.status,
            summary.succeeded,
            summary.failed,
        )
        return summary

    def _run_org(self, org_id: str, *, trigger_source: str) -> OrgRunResult:
        try:
            created = self.fanout.create_job(
                CreateBatchJob(org_id=org_id, replace=False, trigger_source=trigger_source),
            )
        except (BatchError, SQLAlchemyError) as error:
            logger.warning("Daily run: fan-out for org %s failed: %s", org_id, error)
            return OrgRunResult(
                org_id=org_id,
                success=False,
                action=getattr(error, "action", ExecutionAction.ERROR.value),
                error=str(error),
            )

        job = created.job
        if job.status.is_terminal:
            return OrgRunResult(
                org_id=org_id,
                success=True,
                action=created.action.value,
                job_id=job.job_id,
                drive_status=job.status.value,
            )

        outcome = self.driver.drive(job.job_id)
        return OrgRunResult(
            org_id=org_id,
            success=outcome.succeeded,
            action=created.action.value,
            job_id=job.job_id,
            drive_status=outcome.status.value,
            error=outcome.error,
        )
