"""Time-boxed micro-batch executor for one batch job."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from prompt_visibility.batch.analysis import analyze_response
from prompt_visibility.batch.errors import (
    JobNotFoundError,
    ProviderCallError,
    RetryBudgetExhaustedError,
)
from prompt_visibility.batch.models import (
    BatchJobStatus,
    BatchJobView,
    BatchTaskStatus,
    BatchTaskView,
    ExecutionAction,
    FailureClass,
    OrganizationView,
    ResponseRecordWrite,
)
from prompt_visibility.batch.providers.base import (
    ProviderClient,
    ProviderResponse,
    RetryPolicy,
    call_with_retries,
)
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.batch.state_machine import JobEvent
from prompt_visibility.config import BatchSettings
from prompt_visibility.storage.common import utc_now

logger = logging.getLogger(__name__)

_TERMINAL_ACTIONS = {
    BatchJobStatus.COMPLETED: ExecutionAction.COMPLETED,
    BatchJobStatus.FAILED: ExecutionAction.FAILED,
    BatchJobStatus.CANCELLED: ExecutionAction.CANCELLED,
}
RAW_RESPONSE_MAX_CHARS = 20_000


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one executor invocation, reported to API, CLI and driver."""

    action: ExecutionAction
    job_id: str
    status: BatchJobStatus
    completed: int
    failed: int
    total: int
    remaining: int
    processed_this_run: int = 0
    failed_this_run: int = 0
    elapsed_ms: int = 0
    correlation_id: str | None = None

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["action"] = self.action.value
        payload["status"] = self.status.value
        return payload


@dataclass(slots=True)
class _TaskOutcome:
    task: BatchTaskView
    response: ProviderResponse | None = None
    failure_class: FailureClass | None = None
    error_message: str | None = None
    deferred: bool = False


@dataclass(slots=True)
class _InvocationStats:
    processed: int = 0
    failed: int = 0
    slices: int = 0
    deferred: int = 0
    circuit_opened: list[str] = field(default_factory=list)


class MicroBatchExecutor:
    """Drains a job's pending tasks in slices until done or out of budget."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: BatchRepository,
        clients: Mapping[str, ProviderClient],
        settings: BatchSettings,
        retry_sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.clients = clients
        self.settings = settings
        self.retry_policy = RetryPolicy(
            max_attempts=settings.provider_max_attempts,
            base_seconds=settings.retry_base_seconds,
            max_seconds=settings.retry_max_seconds,
        )
        self._retry_sleep = retry_sleep
        self._clock = clock
        self._rng = rng or random.Random()  # noqa: S311

    def run(self, job_id: str, *, resumed_by: str | None = None) -> ExecutionResult:
        """Process as many tasks as the time budget allows."""

        started = self._clock()
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.status.is_terminal:
            logger.info("Job %s already %s; nothing to do", job_id, job.status.value)
            return self._result(job, action=_TERMINAL_ACTIONS[job.status], started=started)

        if job.cancellation_requested:
            return self._cancel(job, started=started)

        runner_id = self.settings.runner_id
        if job.status == BatchJobStatus.PENDING:
            self.repository.transition_job(
                job_id,
                JobEvent.START,
                runner_id=runner_id,
                details={"runner_id": runner_id},
            )
        else:
            self.repository.touch_job(job_id, runner_id=runner_id)
        if resumed_by is not None:
            self.repository.merge_job_metadata(
                job_id,
                {
                    "resume_count": int(job.metadata.get("resume_count", 0)) + 1,
                    "last_resumed_by": resumed_by,
                },
            )

        released = self.repository.release_stale_claims(
            job_id,
            stale_before=utc_now() - timedelta(seconds=self.settings.stale_after_seconds),
        )
        if released:
            logger.warning("Job %s: released %d stale task claim(s)", job_id, released)

        org = self.repository.get_organization(job.org_id)
        stats = _InvocationStats()
        deadline = started + self.settings.time_budget_seconds
        while self._clock() < deadline:
            current = self.repository.get_job(job_id)
            if current is None:  # pragma: no cover - jobs are never deleted
                raise JobNotFoundError(job_id)
            if current.status.is_terminal:
                logger.info("Job %s became %s during execution", job_id, current.status.value)
                return self._result(
                    current,
                    action=_TERMINAL_ACTIONS[current.status],
                    started=started,
                    stats=stats,
                )
            if current.cancellation_requested:
                return self._cancel(current, started=started, stats=stats)

            tasks = self.repository.claim_pending_tasks(
                job_id,
                limit=self.settings.micro_batch_size,
                runner_id=runner_id,
            )
            if not tasks:
                break
            stats.slices += 1
            self._run_slice(job=current, org=org, tasks=tasks, deadline=deadline, stats=stats)
            self.repository.touch_job(job_id, runner_id=runner_id)
            if stats.deferred:
                break

        return self._conclude(job_id, started=started, stats=stats)

    def _run_slice(
        self,
        *,
        job: BatchJobView,
        org: OrganizationView | None,
        tasks: list[BatchTaskView],
        deadline: float,
        stats: _InvocationStats,
    ) -> None:
        groups: dict[str, list[BatchTaskView]] = {}
        for task in tasks:
            groups.setdefault(task.prompt_id, []).append(task)
        prompts = self.repository.get_prompts(list(groups))
        streaks = self.repository.prompt_failure_streaks(job.job_id)

        with ThreadPoolExecutor(max_workers=self.settings.max_concurrency) as pool:
            futures = {
                pool.submit(
                    self._run_prompt_group,
                    prompt_text=prompts[prompt_id].text if prompt_id in prompts else None,
                    tasks=group,
                    initial_streak=streaks.get(prompt_id, 0),
                    deadline=deadline,
                ): prompt_id
                for prompt_id, group in groups.items()
            }
            for future in as_completed(futures):
                prompt_id = futures[future]
                outcomes, streak = future.result()
                self._persist_group(job=job, org=org, outcomes=outcomes, stats=stats)
                if streak >= self.settings.circuit_breaker_threshold:
                    self._open_circuit(job_id=job.job_id, prompt_id=prompt_id, stats=stats)

    def _run_prompt_group(
        self,
        *,
        prompt_text: str | None,
        tasks: list[BatchTaskView],
        initial_streak: int,
        deadline: float,
    ) -> tuple[list[_TaskOutcome], int]:
        """Run one prompt's tasks sequentially; the failure streak gates each call."""

        outcomes: list[_TaskOutcome] = []
        streak = initial_streak
        threshold = self.settings.circuit_breaker_threshold
        out_of_budget = False
        for task in tasks:
            if streak >= threshold:
                outcomes.append(
                    _TaskOutcome(
                        task=task,
                        failure_class=FailureClass.CIRCUIT_OPEN,
                        error_message=(
                            f"Circuit open: {streak} consecutive failures for prompt {task.prompt_id}"
                        ),
                    ),
                )
                continue
            if out_of_budget or self._clock() >= deadline:
                outcomes.append(_TaskOutcome(task=task, deferred=True))
                continue
            outcome = self._call_provider(task=task, prompt_text=prompt_text, deadline=deadline)
            outcomes.append(outcome)
            if outcome.deferred:
                out_of_budget = True
                continue
            streak = 0 if outcome.response is not None else streak + 1
        return outcomes, streak

    def _call_provider(
        self,
        *,
        task: BatchTaskView,
        prompt_text: str | None,
        deadline: float,
    ) -> _TaskOutcome:
        if prompt_text is None:
            return _TaskOutcome(
                task=task,
                failure_class=FailureClass.BAD_REQUEST,
                error_message=f"Prompt not found: {task.prompt_id}",
            )
        client = self.clients.get(task.provider)
        if client is None:
            return _TaskOutcome(
                task=task,
                failure_class=FailureClass.PROVIDER_NOT_CONFIGURED,
                error_message=f"Provider {task.provider} is not configured",
            )
        try:
            response, _ = call_with_retries(
                client,
                prompt_text,
                policy=self.retry_policy,
                sleep=self._retry_sleep,
                rng=self._rng,
                deadline=deadline,
                clock=self._clock,
                attempt_timeout=self.settings.request_timeout_seconds,
            )
        except RetryBudgetExhaustedError as error:
            logger.info("Task %s deferred: %s", task.task_id, error)
            return _TaskOutcome(task=task, deferred=True)
        except ProviderCallError as error:
            return _TaskOutcome(
                task=task,
                failure_class=error.failure_class,
                error_message=f"Failed after {error.attempts} attempt(s): {error}",
            )
        return _TaskOutcome(task=task, response=response)

    def _persist_group(
        self,
        *,
        job: BatchJobView,
        org: OrganizationView | None,
        outcomes: list[_TaskOutcome],
        stats: _InvocationStats,
    ) -> None:
        deferred = [outcome.task.task_id for outcome in outcomes if outcome.deferred]
        if deferred:
            stats.deferred += self.repository.release_claims(deferred)

        for outcome in outcomes:
            if outcome.deferred:
                continue
            task_id = outcome.task.task_id
            if outcome.response is not None:
                try:
                    recorded = self.repository.record_task_success(
                        task_id,
                        response=_response_write(outcome.response, org=org),
                    )
                except SQLAlchemyError as error:
                    logger.exception(
                        "Job %s: failed to persist response for task %s",
                        job.job_id,
                        task_id,
                    )
                    recorded = self.repository.record_task_failure(
                        task_id,
                        failure_class=FailureClass.PERSISTENCE_ERROR,
                        error_message=f"Failed to persist response: {error}",
                        model=outcome.response.model,
                    )
                    if recorded:
                        stats.failed += 1
                        stats.processed += 1
                    continue
            else:
                recorded = self.repository.record_task_failure(
                    task_id,
                    failure_class=outcome.failure_class or FailureClass.BACKEND_NON_RETRYABLE,
                    error_message=outcome.error_message or "unknown error",
                )
                if recorded:
                    stats.failed += 1
                    logger.info(
                        "Job %s: task %s (%s/%s) failed: %s",
                        job.job_id,
                        task_id,
                        outcome.task.prompt_id,
                        outcome.task.provider,
                        outcome.error_message,
                    )
            if recorded:
                stats.processed += 1
            else:
                logger.warning(
                    "Job %s: task %s no longer processing; outcome dropped",
                    job.job_id,
                    task_id,
                )

    def _open_circuit(self, *, job_id: str, prompt_id: str, stats: _InvocationStats) -> None:
        failed = self.repository.fail_pending_tasks_for_prompt(
            job_id,
            prompt_id,
            failure_class=FailureClass.CIRCUIT_OPEN,
            reason=(
                f"Circuit open: {self.settings.circuit_breaker_threshold} consecutive failures "
                f"for prompt {prompt_id}"
            ),
        )
        stats.failed += failed
        stats.processed += failed
        if prompt_id not in stats.circuit_opened:
            stats.circuit_opened.append(prompt_id)
        logger.warning(
            "Job %s: circuit opened for prompt %s, %d pending task(s) failed",
            job_id,
            prompt_id,
            failed,
        )

    def _cancel(
        self,
        job: BatchJobView,
        *,
        started: float,
        stats: _InvocationStats | None = None,
    ) -> ExecutionResult:
        cancelled_tasks = self.repository.cancel_pending_tasks(job.job_id)
        self.repository.transition_job(
            job.job_id,
            JobEvent.CANCEL,
            details={"cancelled_tasks": cancelled_tasks, "runner_id": self.settings.runner_id},
        )
        refreshed = self.repository.get_job(job.job_id) or job
        logger.info("Job %s cancelled (%d pending task(s) dropped)", job.job_id, cancelled_tasks)
        return self._result(
            refreshed,
            action=_TERMINAL_ACTIONS.get(refreshed.status, ExecutionAction.CANCELLED),
            started=started,
            stats=stats,
        )

    def _conclude(self, job_id: str, *, started: float, stats: _InvocationStats) -> ExecutionResult:
        counts = self.repository.count_tasks_by_status(job_id)
        open_tasks = counts[BatchTaskStatus.PENDING.value] + counts[BatchTaskStatus.PROCESSING.value]
        if open_tasks == 0:
            finalized = self.repository.finalize_job(
                job_id,
                details={"runner_id": self.settings.runner_id},
            )
            job = finalized or self.repository.get_job(job_id)
            if job is None:  # pragma: no cover - jobs are never deleted
                raise JobNotFoundError(job_id)
            if job.status.is_terminal:
                logger.info(
                    "Job %s finalized as %s (%d completed, %d failed of %d)",
                    job_id,
                    job.status.value,
                    job.completed_tasks,
                    job.failed_tasks,
                    job.total_tasks,
                )
                return self._result(
                    job,
                    action=_TERMINAL_ACTIONS[job.status],
                    started=started,
                    stats=stats,
                )

        job = self.repository.get_job(job_id)
        if job is None:  # pragma: no cover - jobs are never deleted
            raise JobNotFoundError(job_id)
        result = self._result(job, action=ExecutionAction.IN_PROGRESS, started=started, stats=stats)
        self.repository.merge_job_metadata(
            job_id,
            {
                "last_invocation": {
                    "runner_id": self.settings.runner_id,
                    "processed": stats.processed,
                    "failed": stats.failed,
                    "slices": stats.slices,
                    "deferred": stats.deferred,
                    "elapsed_ms": result.elapsed_ms,
                    "remaining": result.remaining,
                    "circuit_opened": stats.circuit_opened,
                },
            },
        )
        logger.info(
            "Job %s in progress: %d/%d processed, %d remaining after %d ms",
            job_id,
            job.processed_tasks,
            job.total_tasks,
            job.remaining_tasks,
            result.elapsed_ms,
        )
        return result

    def _result(
        self,
        job: BatchJobView,
        *,
        action: ExecutionAction,
        started: float,
        stats: _InvocationStats | None = None,
    ) -> ExecutionResult:
        stats = stats or _InvocationStats()
        correlation_id = job.metadata.get("correlation_id")
        return ExecutionResult(
            action=action,
            job_id=job.job_id,
            status=job.status,
            completed=job.completed_tasks,
            failed=job.failed_tasks,
            total=job.total_tasks,
            remaining=job.remaining_tasks,
            processed_this_run=stats.processed,
            failed_this_run=stats.failed,
            elapsed_ms=int(max(0.0, self._clock() - started) * 1000),
            correlation_id=str(correlation_id) if correlation_id is not None else None,
        )


def _response_write(response: ProviderResponse, *, org: OrganizationView | None) -> ResponseRecordWrite:
    analysis = analyze_response(
        response.text,
        brand_names=org.brand_names if org is not None else [],
        competitor_names=org.competitor_names if org is not None else [],
    )
    return ResponseRecordWrite(
        status="success",
        model=response.model,
        score=analysis.score,
        org_brand_present=analysis.org_brand_present,
        org_brand_prominence=analysis.org_brand_prominence,
        brands=analysis.brands,
        competitors=analysis.competitors,
        raw_response=response.text[:RAW_RESPONSE_MAX_CHARS],
        token_in=response.token_in,
        token_out=response.token_out,
    )
