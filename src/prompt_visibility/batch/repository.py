"""Durable job store for batch fan-out, execution and reconciliation."""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from prompt_visibility.batch.errors import (
    JobNotFoundError,
    LiveJobExistsError,
    ValidationError,
)
from prompt_visibility.batch.models import (
    LIVE_JOB_STATUSES,
    BatchJobCreate,
    BatchJobDetails,
    BatchJobEventView,
    BatchJobStatus,
    BatchJobView,
    BatchTaskStatus,
    BatchTaskView,
    DiagnosticsSnapshot,
    FailureClass,
    OrganizationView,
    PromptView,
    ResponseRecordView,
    ResponseRecordWrite,
    SchedulerRunView,
)
from prompt_visibility.batch.state_machine import JobEvent, finalize_event, next_status
from prompt_visibility.storage.alembic_runner import upgrade_head
from prompt_visibility.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from prompt_visibility.storage.sqlmodel_models import (
    BatchJob,
    BatchJobEvent,
    BatchTask,
    LlmProvider,
    Organization,
    Prompt,
    PromptProviderResponse,
    SchedulerRun,
)

_LIVE_VALUES = tuple(status.value for status in LIVE_JOB_STATUSES)
_OPEN_TASK_VALUES = (BatchTaskStatus.PENDING.value, BatchTaskStatus.PROCESSING.value)


class BatchRepository:
    """Job store facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # -- catalog -----------------------------------------------------------

    def upsert_organization(  # noqa: PLR0913
        self,
        *,
        org_id: str,
        name: str,
        subscription_tier: str = "free",
        brand_names: list[str] | None = None,
        competitor_names: list[str] | None = None,
    ) -> OrganizationView:
        """Create or update one organization with its brand configuration."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Organization).where(Organization.org_id == org_id),
            ).one_or_none()
            if row is None:
                row = Organization(org_id=org_id, name=name, created_at=to_db_datetime(utc_now()))
            row.name = name
            row.subscription_tier = subscription_tier
            row.brand_names_json = _dump_list(brand_names or [name])
            row.competitor_names_json = _dump_list(competitor_names or [])
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_org_view(row)

    def get_organization(self, org_id: str) -> OrganizationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Organization).where(Organization.org_id == org_id),
            ).one_or_none()
            return _to_org_view(row) if row is not None else None

    def add_prompt(
        self,
        *,
        org_id: str,
        text: str,
        prompt_id: str | None = None,
        active: bool = True,
    ) -> PromptView:
        if not text.strip():
            raise ValidationError("Prompt text must be non-empty.")
        with Session(self.engine) as session:
            org = session.exec(
                select(Organization).where(Organization.org_id == org_id),
            ).one_or_none()
            if org is None:
                raise ValidationError(f"Organization not found: {org_id}")
            row = Prompt(
                prompt_id=prompt_id or str(uuid4()),
                org_id=org_id,
                text=text.strip(),
                active=active,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_prompt_view(row)

    def set_prompt_active(self, *, prompt_id: str, active: bool) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Prompt).where(col(Prompt.prompt_id) == prompt_id).values(active=active),
            )
            session.commit()
            return result.rowcount == 1

    def set_provider_enabled(self, *, name: str, enabled: bool) -> None:
        with Session(self.engine) as session:
            row = session.exec(select(LlmProvider).where(LlmProvider.name == name)).one_or_none()
            if row is None:
                row = LlmProvider(name=name, updated_at=to_db_datetime(utc_now()))
            row.enabled = enabled
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def list_active_prompts(self, org_id: str) -> list[PromptView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Prompt)
                .where(Prompt.org_id == org_id, col(Prompt.active).is_(True))
                .order_by(col(Prompt.created_at).asc(), col(Prompt.prompt_id).asc()),
            ).all()
        return [_to_prompt_view(row) for row in rows]

    def get_prompts(self, prompt_ids: list[str]) -> dict[str, PromptView]:
        """Prompts by id regardless of their active flag."""

        if not prompt_ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(Prompt).where(col(Prompt.prompt_id).in_(prompt_ids)),
            ).all()
        return {row.prompt_id: _to_prompt_view(row) for row in rows}

    def list_enabled_providers(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(LlmProvider)
                .where(col(LlmProvider.enabled).is_(True))
                .order_by(col(LlmProvider.name).asc()),
            ).all()
        return [row.name for row in rows]

    def list_orgs_with_active_prompts(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Prompt.org_id)
                .where(col(Prompt.active).is_(True))
                .distinct()
                .order_by(col(Prompt.org_id).asc()),
            ).all()
        return list(rows)

    # -- jobs --------------------------------------------------------------

    def create_job(self, payload: BatchJobCreate) -> BatchJobView:
        """Insert one pending job and its (prompt x provider) tasks atomically."""

        if not payload.prompt_ids or not payload.providers:
            raise ValidationError("A job needs at least one prompt and one provider.")

        now = to_db_datetime(utc_now())
        job_id = payload.job_id or str(uuid4())
        total = len(payload.prompt_ids) * len(payload.providers)
        with Session(self.engine) as session:
            row = BatchJob(
                job_id=job_id,
                org_id=payload.org_id,
                status=BatchJobStatus.PENDING.value,
                total_tasks=total,
                completed_tasks=0,
                failed_tasks=0,
                business_date=payload.business_date,
                created_at=now,
                metadata_json=json.dumps(payload.metadata, ensure_ascii=False, sort_keys=True),
                updated_at=now,
            )
            session.add(row)
            position = 0
            for prompt_id in payload.prompt_ids:
                for provider in payload.providers:
                    session.add(
                        BatchTask(
                            task_id=str(uuid4()),
                            job_id=job_id,
                            prompt_id=prompt_id,
                            provider=provider,
                            position=position,
                            status=BatchTaskStatus.PENDING.value,
                            attempts=0,
                            created_at=now,
                            updated_at=now,
                        ),
                    )
                    position += 1
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=BatchJobStatus.PENDING,
                details={
                    "total_tasks": total,
                    "prompts": len(payload.prompt_ids),
                    "providers": list(payload.providers),
                },
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                if self.find_active_jobs(payload.org_id):
                    raise LiveJobExistsError(payload.org_id) from error
                raise
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> BatchJobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(BatchJob).where(BatchJob.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> BatchJobDetails | None:
        """Return job with task status counts and event stream."""

        job = self.get_job(job_id)
        if job is None:
            return None
        with Session(self.engine) as session:
            event_rows = session.exec(
                select(BatchJobEvent)
                .where(BatchJobEvent.job_id == job_id)
                .order_by(col(BatchJobEvent.id).asc()),
            ).all()

        events: list[BatchJobEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                BatchJobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=(
                        BatchJobStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=BatchJobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return BatchJobDetails(
            job=job,
            task_counts=self.count_tasks_by_status(job_id),
            events=events,
        )

    def update_progress(self, job_id: str, *, completed_delta: int, failed_delta: int) -> bool:
        """Atomically add to job counters; refuses to exceed total_tasks."""

        if completed_delta < 0 or failed_delta < 0:
            raise ValueError("Progress deltas must be non-negative.")
        with Session(self.engine) as session:
            ok = self._increment_counters(
                session=session,
                job_id=job_id,
                completed_delta=completed_delta,
                failed_delta=failed_delta,
            )
            if not ok:
                session.rollback()
                return False
            session.commit()
            return True

    def touch_job(self, job_id: str, *, runner_id: str | None = None) -> None:
        """Update heartbeat for a live job."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"last_heartbeat_at": now, "updated_at": now}
        if runner_id is not None:
            values["runner_id"] = runner_id
        with Session(self.engine) as session:
            session.exec(
                sa_update(BatchJob)
                .where(col(BatchJob.job_id) == job_id, col(BatchJob.status).in_(_LIVE_VALUES))
                .values(**values),
            )
            session.commit()

    def transition_job(  # noqa: PLR0913
        self,
        job_id: str,
        event: JobEvent,
        *,
        runner_id: str | None = None,
        error_summary: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Apply ``event`` with a compare-and-swap on the current status.

        Returns False when the job is already terminal or its status changed
        concurrently. Invalid events on a live job raise ``InvalidTransitionError``.
        """

        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            current = BatchJobStatus(row.status)
            if current.is_terminal:
                return False
            target = next_status(current, event)
            if not self._apply_transition(
                session=session,
                job_id=job_id,
                current=current,
                target=target,
                runner_id=runner_id,
                error_summary=error_summary,
                details=details or {},
            ):
                session.rollback()
                return False
            session.commit()
            return True

    def finalize_job(self, job_id: str, *, details: dict[str, object] | None = None) -> BatchJobView | None:
        """Move a live job whose tasks are all terminal to its terminal status.

        Returns the finalized view, or None when the job is already terminal,
        still has open tasks, or another caller finalized it first.
        """

        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            current = BatchJobStatus(row.status)
            if current.is_terminal:
                return None
            open_tasks = session.exec(
                select(func.count())
                .select_from(BatchTask)
                .where(
                    col(BatchTask.job_id) == job_id,
                    col(BatchTask.status).in_(_OPEN_TASK_VALUES),
                ),
            ).one()
            if open_tasks:
                return None

            event = finalize_event(cancellation_requested=row.cancellation_requested)
            source = current
            if current == BatchJobStatus.PENDING and event == JobEvent.COMPLETE:
                source = next_status(current, JobEvent.START)
            target = next_status(source, event)
            error_summary = None
            if target == BatchJobStatus.COMPLETED and row.failed_tasks:
                error_summary = _failure_summary(
                    failed_tasks=row.failed_tasks,
                    total_tasks=row.total_tasks,
                )
            if not self._apply_transition(
                session=session,
                job_id=job_id,
                current=current,
                target=target,
                runner_id=None,
                error_summary=error_summary,
                details={"event": event.value, **(details or {})},
            ):
                session.rollback()
                return None
            session.commit()
        return self.get_job(job_id)

    def request_cancellation(self, job_id: str) -> BatchJobView:
        """Flag a live job for cancellation; a pending job is cancelled at once."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            current = BatchJobStatus(row.status)
            if current.is_terminal:
                return _to_job_view(row)
            session.exec(
                sa_update(BatchJob)
                .where(col(BatchJob.job_id) == job_id)
                .values(cancellation_requested=True, updated_at=now),
            )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="cancellation_requested",
                status_from=current,
                status_to=current,
                details={},
            )
            if current == BatchJobStatus.PENDING:
                self._apply_transition(
                    session=session,
                    job_id=job_id,
                    current=current,
                    target=next_status(current, JobEvent.CANCEL),
                    runner_id=None,
                    error_summary=None,
                    details={"reason": "cancelled_before_start"},
                )
            session.commit()
        job = self.get_job(job_id)
        if job is None:  # pragma: no cover - jobs are never deleted
            raise JobNotFoundError(job_id)
        return job

    def cancel_active_jobs(self, org_id: str, *, reason: str = "replaced") -> int:
        """Cancel every pending/processing job of ``org_id`` immediately."""

        cancelled = 0
        for job in self.find_active_jobs(org_id):
            with Session(self.engine) as session:
                session.exec(
                    sa_update(BatchJob)
                    .where(col(BatchJob.job_id) == job.job_id)
                    .values(cancellation_requested=True),
                )
                if self._apply_transition(
                    session=session,
                    job_id=job.job_id,
                    current=job.status,
                    target=next_status(job.status, JobEvent.CANCEL),
                    runner_id=None,
                    error_summary=None,
                    details={"reason": reason},
                ):
                    session.commit()
                    cancelled += 1
                else:
                    session.rollback()
        return cancelled

    def merge_job_metadata(self, job_id: str, updates: dict[str, Any]) -> None:
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            metadata = _load_dict(row.metadata_json)
            metadata.update(updates)
            row.metadata_json = json.dumps(metadata, ensure_ascii=False, sort_keys=True)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def add_job_event(
        self,
        job_id: str,
        *,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def list_stale_jobs(self, *, stale_before: datetime, limit: int = 50) -> list[BatchJobView]:
        """Live jobs whose heartbeat (or creation when never started) predates ``stale_before``."""

        last_seen = func.coalesce(col(BatchJob.last_heartbeat_at), col(BatchJob.created_at))
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchJob)
                .where(
                    col(BatchJob.status).in_(_LIVE_VALUES),
                    last_seen < to_db_datetime(stale_before),
                )
                .order_by(last_seen.asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def find_active_jobs(self, org_id: str) -> list[BatchJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchJob)
                .where(BatchJob.org_id == org_id, col(BatchJob.status).in_(_LIVE_VALUES))
                .order_by(col(BatchJob.created_at).desc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def find_daily_job(self, org_id: str, business_date: date) -> BatchJobView | None:
        """Latest job of the business day that was not cancelled or failed."""

        with Session(self.engine) as session:
            row = session.exec(
                select(BatchJob)
                .where(
                    BatchJob.org_id == org_id,
                    BatchJob.business_date == business_date,
                    col(BatchJob.status).not_in(
                        (BatchJobStatus.CANCELLED.value, BatchJobStatus.FAILED.value),
                    ),
                )
                .order_by(col(BatchJob.created_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        org_id: str | None = None,
        status: BatchJobStatus | None = None,
        limit: int = 50,
    ) -> list[BatchJobView]:
        """List recent jobs, optionally filtered by org and status."""

        with Session(self.engine) as session:
            statement = select(BatchJob).order_by(col(BatchJob.created_at).desc()).limit(limit)
            if org_id is not None:
                statement = statement.where(BatchJob.org_id == org_id)
            if status is not None:
                statement = statement.where(BatchJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    # -- tasks -------------------------------------------------------------

    def claim_pending_tasks(self, job_id: str, *, limit: int, runner_id: str) -> list[BatchTaskView]:
        """Claim up to ``limit`` pending tasks in position order.

        Each claim is a conditional pending->processing UPDATE; rows taken by a
        concurrent claimer are skipped.
        """

        now = to_db_datetime(utc_now())
        claimed_ids: list[str] = []
        with Session(self.engine) as session:
            candidates = session.exec(
                select(BatchTask)
                .where(
                    BatchTask.job_id == job_id,
                    BatchTask.status == BatchTaskStatus.PENDING.value,
                )
                .order_by(col(BatchTask.position).asc())
                .limit(limit),
            ).all()
            for candidate in candidates:
                result = session.exec(
                    sa_update(BatchTask)
                    .where(
                        col(BatchTask.task_id) == candidate.task_id,
                        col(BatchTask.status) == BatchTaskStatus.PENDING.value,
                    )
                    .values(
                        status=BatchTaskStatus.PROCESSING.value,
                        attempts=col(BatchTask.attempts) + 1,
                        claimed_by=runner_id,
                        claimed_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                claimed_ids.append(candidate.task_id)
            session.commit()
            if not claimed_ids:
                return []
            rows = session.exec(
                select(BatchTask)
                .where(col(BatchTask.task_id).in_(claimed_ids))
                .order_by(col(BatchTask.position).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def record_task_success(self, task_id: str, *, response: ResponseRecordWrite) -> bool:
        """Complete a processing task, store its response and bump the job counter."""

        return self._record_task_outcome(
            task_id=task_id,
            status=BatchTaskStatus.COMPLETED,
            response=response,
            failure_class=None,
            error_message=None,
        )

    def record_task_failure(
        self,
        task_id: str,
        *,
        failure_class: FailureClass,
        error_message: str,
        model: str | None = None,
    ) -> bool:
        """Fail a processing task, store an error response and bump the failed counter."""

        return self._record_task_outcome(
            task_id=task_id,
            status=BatchTaskStatus.FAILED,
            response=ResponseRecordWrite(status="error", model=model, error_message=error_message),
            failure_class=failure_class,
            error_message=error_message,
        )

    def fail_pending_tasks_for_prompt(
        self,
        job_id: str,
        prompt_id: str,
        *,
        failure_class: FailureClass,
        reason: str,
    ) -> int:
        """Fail every pending task of one prompt without an outbound call."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchTask).where(
                    BatchTask.job_id == job_id,
                    BatchTask.prompt_id == prompt_id,
                    BatchTask.status == BatchTaskStatus.PENDING.value,
                ),
            ).all()
            if not rows:
                return 0
            org_id = self._get_job_row(session=session, job_id=job_id).org_id
            failed = 0
            for row in rows:
                result = session.exec(
                    sa_update(BatchTask)
                    .where(
                        col(BatchTask.task_id) == row.task_id,
                        col(BatchTask.status) == BatchTaskStatus.PENDING.value,
                    )
                    .values(
                        status=BatchTaskStatus.FAILED.value,
                        failure_class=failure_class.value,
                        error_message=reason,
                        finished_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                session.add(
                    _response_row(
                        task=row,
                        org_id=org_id,
                        response=ResponseRecordWrite(status="error", error_message=reason),
                    ),
                )
                failed += 1
            if failed and not self._increment_counters(
                session=session,
                job_id=job_id,
                completed_delta=0,
                failed_delta=failed,
            ):
                session.rollback()
                raise RuntimeError(f"Job counters would exceed total_tasks (job_id={job_id}).")
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="circuit_opened",
                status_from=None,
                status_to=None,
                details={"prompt_id": prompt_id, "failed_tasks": failed, "reason": reason},
            )
            session.commit()
            return failed

    def cancel_pending_tasks(self, job_id: str) -> int:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchTask)
                .where(
                    col(BatchTask.job_id) == job_id,
                    col(BatchTask.status) == BatchTaskStatus.PENDING.value,
                )
                .values(
                    status=BatchTaskStatus.CANCELLED.value,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
            return result.rowcount

    def release_stale_claims(self, job_id: str, *, stale_before: datetime) -> int:
        """Return processing tasks with an expired claim to pending."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchTask)
                .where(
                    col(BatchTask.job_id) == job_id,
                    col(BatchTask.status) == BatchTaskStatus.PROCESSING.value,
                    col(BatchTask.claimed_at) < to_db_datetime(stale_before),
                )
                .values(
                    status=BatchTaskStatus.PENDING.value,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                ),
            )
            released = result.rowcount
            if released:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="stale_claims_released",
                    status_from=None,
                    status_to=None,
                    details={"released": released},
                )
            session.commit()
            return released

    def release_claims(self, task_ids: list[str]) -> int:
        """Hand claimed but unstarted tasks back to the queue."""

        if not task_ids:
            return 0
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchTask)
                .where(
                    col(BatchTask.task_id).in_(task_ids),
                    col(BatchTask.status) == BatchTaskStatus.PROCESSING.value,
                )
                .values(
                    status=BatchTaskStatus.PENDING.value,
                    attempts=func.max(col(BatchTask.attempts) - 1, 0),
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                ),
            )
            session.commit()
            return result.rowcount

    def count_tasks_by_status(self, job_id: str) -> dict[str, int]:
        counts = {status.value: 0 for status in BatchTaskStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchTask.status, func.count())
                .where(BatchTask.job_id == job_id)
                .group_by(BatchTask.status),
            ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def prompt_failure_streaks(self, job_id: str) -> dict[str, int]:
        """Trailing consecutive failed tasks per prompt, in finish order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchTask)
                .where(
                    BatchTask.job_id == job_id,
                    col(BatchTask.status).in_(
                        (BatchTaskStatus.COMPLETED.value, BatchTaskStatus.FAILED.value),
                    ),
                )
                .order_by(col(BatchTask.finished_at).asc(), col(BatchTask.position).asc()),
            ).all()
        streaks: dict[str, int] = defaultdict(int)
        for row in rows:
            if row.status == BatchTaskStatus.FAILED.value:
                streaks[row.prompt_id] += 1
            else:
                streaks[row.prompt_id] = 0
        return dict(streaks)

    def list_tasks(self, job_id: str) -> list[BatchTaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchTask)
                .where(BatchTask.job_id == job_id)
                .order_by(col(BatchTask.position).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_responses(self, job_id: str) -> list[ResponseRecordView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PromptProviderResponse)
                .where(PromptProviderResponse.job_id == job_id)
                .order_by(
                    col(PromptProviderResponse.run_at).asc(),
                    col(PromptProviderResponse.response_id).asc(),
                ),
            ).all()
        return [_to_response_view(row) for row in rows]

    # -- scheduler run log -------------------------------------------------

    def start_scheduler_run(self, *, run_key: str, trigger_source: str) -> SchedulerRunView:
        with Session(self.engine) as session:
            row = SchedulerRun(
                run_id=str(uuid4()),
                run_key=run_key,
                trigger_source=trigger_source,
                status="running",
                started_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_scheduler_run_view(row)

    def finish_scheduler_run(
        self,
        run_id: str,
        *,
        status: str,
        result: dict[str, Any],
        error_message: str | None = None,
    ) -> SchedulerRunView:
        with Session(self.engine) as session:
            row = session.exec(
                select(SchedulerRun).where(SchedulerRun.run_id == run_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Scheduler run not found: {run_id}")
            row.status = status
            row.completed_at = to_db_datetime(utc_now())
            row.result_json = json.dumps(result, ensure_ascii=False, sort_keys=True, default=str)
            row.error_message = error_message
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_scheduler_run_view(row)

    def find_completed_scheduler_run(self, run_key: str) -> SchedulerRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SchedulerRun)
                .where(SchedulerRun.run_key == run_key, SchedulerRun.status == "completed")
                .order_by(col(SchedulerRun.started_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_scheduler_run_view(row) if row is not None else None

    def diagnostics(self, *, stale_before: datetime, failure_limit: int = 20) -> DiagnosticsSnapshot:
        """Queue health summary: status histograms, stale jobs, recent task failures."""

        with Session(self.engine) as session:
            job_rows = session.exec(
                select(BatchJob.status, func.count()).group_by(BatchJob.status),
            ).all()
            task_rows = session.exec(
                select(BatchTask.status, func.count()).group_by(BatchTask.status),
            ).all()
            failures = session.exec(
                select(BatchTask)
                .where(BatchTask.status == BatchTaskStatus.FAILED.value)
                .order_by(col(BatchTask.finished_at).desc())
                .limit(failure_limit),
            ).all()
            recent_failures = [
                {
                    "task_id": row.task_id,
                    "job_id": row.job_id,
                    "prompt_id": row.prompt_id,
                    "provider": row.provider,
                    "failure_class": row.failure_class,
                    "error_message": row.error_message,
                }
                for row in failures
            ]
        return DiagnosticsSnapshot(
            jobs_by_status={status: int(count) for status, count in job_rows},
            tasks_by_status={status: int(count) for status, count in task_rows},
            stale_job_ids=[
                job.job_id for job in self.list_stale_jobs(stale_before=stale_before, limit=100)
            ],
            recent_failures=recent_failures,
        )

    # -- internals ---------------------------------------------------------

    def _record_task_outcome(
        self,
        *,
        task_id: str,
        status: BatchTaskStatus,
        response: ResponseRecordWrite,
        failure_class: FailureClass | None,
        error_message: str | None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchTask)
                .where(
                    col(BatchTask.task_id) == task_id,
                    col(BatchTask.status) == BatchTaskStatus.PROCESSING.value,
                )
                .values(
                    status=status.value,
                    failure_class=failure_class.value if failure_class is not None else None,
                    error_message=error_message,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            task = session.exec(select(BatchTask).where(BatchTask.task_id == task_id)).one()
            job = self._get_job_row(session=session, job_id=task.job_id)
            session.add(_response_row(task=task, org_id=job.org_id, response=response))
            completed = 1 if status == BatchTaskStatus.COMPLETED else 0
            if not self._increment_counters(
                session=session,
                job_id=task.job_id,
                completed_delta=completed,
                failed_delta=1 - completed,
            ):
                session.rollback()
                raise RuntimeError(
                    f"Job counters would exceed total_tasks (job_id={task.job_id}).",
                )
            session.commit()
            return True

    def _increment_counters(
        self,
        *,
        session: Session,
        job_id: str,
        completed_delta: int,
        failed_delta: int,
    ) -> bool:
        now = to_db_datetime(utc_now())
        delta = completed_delta + failed_delta
        result = session.exec(
            sa_update(BatchJob)
            .where(
                col(BatchJob.job_id) == job_id,
                col(BatchJob.completed_tasks) + col(BatchJob.failed_tasks) + delta
                <= col(BatchJob.total_tasks),
            )
            .values(
                completed_tasks=col(BatchJob.completed_tasks) + completed_delta,
                failed_tasks=col(BatchJob.failed_tasks) + failed_delta,
                last_heartbeat_at=now,
                updated_at=now,
            ),
        )
        return result.rowcount == 1

    def _apply_transition(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        current: BatchJobStatus,
        target: BatchJobStatus,
        runner_id: str | None,
        error_summary: str | None,
        details: dict[str, object],
    ) -> bool:
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": target.value,
            "last_heartbeat_at": now,
            "updated_at": now,
        }
        if target == BatchJobStatus.PROCESSING:
            values["started_at"] = func.coalesce(col(BatchJob.started_at), now)
        if runner_id is not None:
            values["runner_id"] = runner_id
        if target.is_terminal:
            values["completed_at"] = now
        if error_summary is not None:
            values["error_summary"] = error_summary

        result = session.exec(
            sa_update(BatchJob)
            .where(col(BatchJob.job_id) == job_id, col(BatchJob.status) == current.value)
            .values(**values),
        )
        if result.rowcount != 1:
            return False

        if target == BatchJobStatus.CANCELLED:
            session.exec(
                sa_update(BatchTask)
                .where(
                    col(BatchTask.job_id) == job_id,
                    col(BatchTask.status).in_(_OPEN_TASK_VALUES),
                )
                .values(
                    status=BatchTaskStatus.CANCELLED.value,
                    finished_at=now,
                    updated_at=now,
                ),
            )
        self._add_event(
            session=session,
            job_id=job_id,
            event_type=target.value if target.is_terminal else "started",
            status_from=current,
            status_to=target,
            details=details,
        )
        return True

    def _get_job_row(self, *, session: Session, job_id: str) -> BatchJob:
        row = session.exec(select(BatchJob).where(BatchJob.job_id == job_id)).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: BatchJobStatus | None,
        status_to: BatchJobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            BatchJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _failure_summary(*, failed_tasks: int, total_tasks: int) -> str:
    if failed_tasks >= total_tasks:
        return f"All {failed_tasks} task(s) failed."
    return f"{failed_tasks} of {total_tasks} task(s) failed."


def _dump_list(values: Iterable[str]) -> str:
    return json.dumps([value for value in values if value], ensure_ascii=False)


def _load_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _load_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _response_row(
    *,
    task: BatchTask,
    org_id: str,
    response: ResponseRecordWrite,
) -> PromptProviderResponse:
    return PromptProviderResponse(
        response_id=str(uuid4()),
        job_id=task.job_id,
        task_id=task.task_id,
        org_id=org_id,
        prompt_id=task.prompt_id,
        provider=task.provider,
        model=response.model,
        status=response.status,
        score=response.score,
        org_brand_present=response.org_brand_present,
        org_brand_prominence=response.org_brand_prominence,
        brands_json=_dump_list(response.brands),
        competitors_json=_dump_list(response.competitors),
        competitors_count=len(response.competitors),
        raw_response=response.raw_response,
        error_message=response.error_message,
        token_in=response.token_in,
        token_out=response.token_out,
        run_at=to_db_datetime(utc_now()),
    )


def _to_org_view(row: Organization) -> OrganizationView:
    return OrganizationView(
        org_id=row.org_id,
        name=row.name,
        subscription_tier=row.subscription_tier,
        brand_names=_load_list(row.brand_names_json),
        competitor_names=_load_list(row.competitor_names_json),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_prompt_view(row: Prompt) -> PromptView:
    return PromptView(
        prompt_id=row.prompt_id,
        org_id=row.org_id,
        text=row.text,
        active=row.active,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job_view(row: BatchJob) -> BatchJobView:
    return BatchJobView(
        job_id=row.job_id,
        org_id=row.org_id,
        status=BatchJobStatus(row.status),
        total_tasks=row.total_tasks,
        completed_tasks=row.completed_tasks,
        failed_tasks=row.failed_tasks,
        business_date=row.business_date,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        last_heartbeat_at=_aware(row.last_heartbeat_at),
        runner_id=row.runner_id,
        cancellation_requested=row.cancellation_requested,
        metadata=_load_dict(row.metadata_json),
        error_summary=row.error_summary,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: BatchTask) -> BatchTaskView:
    return BatchTaskView(
        task_id=row.task_id,
        job_id=row.job_id,
        prompt_id=row.prompt_id,
        provider=row.provider,
        position=row.position,
        status=BatchTaskStatus(row.status),
        attempts=row.attempts,
        claimed_by=row.claimed_by,
        claimed_at=_aware(row.claimed_at),
        finished_at=_aware(row.finished_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_message=row.error_message,
    )


def _to_response_view(row: PromptProviderResponse) -> ResponseRecordView:
    return ResponseRecordView(
        response_id=row.response_id,
        job_id=row.job_id,
        task_id=row.task_id,
        org_id=row.org_id,
        prompt_id=row.prompt_id,
        provider=row.provider,
        model=row.model,
        status=row.status,
        score=row.score,
        org_brand_present=row.org_brand_present,
        org_brand_prominence=row.org_brand_prominence,
        brands=_load_list(row.brands_json),
        competitors=_load_list(row.competitors_json),
        competitors_count=row.competitors_count,
        raw_response=row.raw_response,
        error_message=row.error_message,
        token_in=row.token_in,
        token_out=row.token_out,
        run_at=to_utc_aware_datetime(row.run_at),
    )


def _to_scheduler_run_view(row: SchedulerRun) -> SchedulerRunView:
    return SchedulerRunView(
        run_id=row.run_id,
        run_key=row.run_key,
        trigger_source=row.trigger_source,
        status=row.status,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=_aware(row.completed_at),
        result=_load_dict(row.result_json),
        error_message=row.error_message,
    )
