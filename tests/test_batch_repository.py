from __future__ import annotations

from datetime import date, timedelta

import allure
import pytest
from fakes import seed_org

from prompt_visibility.batch.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    LiveJobExistsError,
    ValidationError,
)
from prompt_visibility.batch.models import (
    BatchJobCreate,
    BatchJobStatus,
    BatchTaskStatus,
    FailureClass,
    ResponseRecordWrite,
)
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.batch.state_machine import JobEvent
from prompt_visibility.storage.common import utc_now

pytestmark = [
    allure.epic("Batch Execution"),
    allure.feature("Job Store"),
]


def _create_job(
    repository: BatchRepository,
    *,
    prompt_ids: list[str],
    providers: list[str] | None = None,
    org_id: str = "org-1",
):
    return repository.create_job(
        BatchJobCreate(
            org_id=org_id,
            prompt_ids=prompt_ids,
            providers=providers or ["openai", "perplexity"],
            business_date=date(2026, 10, 16),
            metadata={"correlation_id": "corr-1"},
        ),
    )


def _success(text: str = "Acme wins") -> ResponseRecordWrite:
    return ResponseRecordWrite(status="success", model="m", score=9.0, raw_response=text)


def test_create_job_builds_task_matrix(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=3)

    job = _create_job(repository, prompt_ids=prompt_ids)

    assert job.status == BatchJobStatus.PENDING
    assert job.total_tasks == 6
    assert job.remaining_tasks == 6
    assert job.metadata == {"correlation_id": "corr-1"}
    tasks = repository.list_tasks(job.job_id)
    assert [task.position for task in tasks] == list(range(6))
    assert {(task.prompt_id, task.provider) for task in tasks} == {
        (prompt_id, provider)
        for prompt_id in prompt_ids
        for provider in ("openai", "perplexity")
    }
    details = repository.get_job_details(job.job_id)
    assert details is not None
    assert details.task_counts[BatchTaskStatus.PENDING.value] == 6
    assert [event.event_type for event in details.events] == ["created"]


def test_create_job_rejects_empty_matrix(repository: BatchRepository) -> None:
    seed_org(repository, prompts=1)

    with pytest.raises(ValidationError):
        _create_job(repository, prompt_ids=[], providers=["openai"])


def test_only_one_live_job_per_org(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    _create_job(repository, prompt_ids=prompt_ids)

    with pytest.raises(LiveJobExistsError):
        _create_job(repository, prompt_ids=prompt_ids)


def test_claims_are_exclusive_and_ordered(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=3)
    job = _create_job(repository, prompt_ids=prompt_ids)

    first = repository.claim_pending_tasks(job.job_id, limit=4, runner_id="a")
    second = repository.claim_pending_tasks(job.job_id, limit=4, runner_id="b")

    assert [task.position for task in first] == [0, 1, 2, 3]
    assert [task.position for task in second] == [4, 5]
    assert all(task.status == BatchTaskStatus.PROCESSING for task in first + second)
    assert all(task.attempts == 1 for task in first)
    assert repository.claim_pending_tasks(job.job_id, limit=4, runner_id="c") == []


def test_recording_outcome_twice_is_refused(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)
    task = repository.claim_pending_tasks(job.job_id, limit=1, runner_id="a")[0]

    assert repository.record_task_success(task.task_id, response=_success())
    assert not repository.record_task_failure(
        task.task_id,
        failure_class=FailureClass.TIMEOUT,
        error_message="late duplicate",
    )

    refreshed = repository.get_job(job.job_id)
    assert refreshed is not None
    assert (refreshed.completed_tasks, refreshed.failed_tasks) == (1, 0)
    responses = repository.list_responses(job.job_id)
    assert len(responses) == 1
    assert responses[0].status == "success"
    assert responses[0].org_id == "org-1"


def test_progress_counters_never_exceed_total(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)

    assert repository.update_progress(job.job_id, completed_delta=1, failed_delta=1)
    assert not repository.update_progress(job.job_id, completed_delta=1, failed_delta=0)
    with pytest.raises(ValueError, match="non-negative"):
        repository.update_progress(job.job_id, completed_delta=-1, failed_delta=0)

    refreshed = repository.get_job(job.job_id)
    assert refreshed is not None
    assert refreshed.processed_tasks == refreshed.total_tasks == 2


def test_transition_is_compare_and_swap(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)

    assert repository.transition_job(job.job_id, JobEvent.START, runner_id="a")
    with pytest.raises(InvalidTransitionError):
        repository.transition_job(job.job_id, JobEvent.START)
    assert repository.transition_job(job.job_id, JobEvent.FAIL, error_summary="boom")
    assert not repository.transition_job(job.job_id, JobEvent.COMPLETE)

    refreshed = repository.get_job(job.job_id)
    assert refreshed is not None
    assert refreshed.status == BatchJobStatus.FAILED
    assert refreshed.started_at is not None
    assert refreshed.completed_at is not None
    assert refreshed.error_summary == "boom"


def test_finalize_requires_all_tasks_terminal(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)
    repository.transition_job(job.job_id, JobEvent.START)
    tasks = repository.claim_pending_tasks(job.job_id, limit=2, runner_id="a")

    repository.record_task_success(tasks[0].task_id, response=_success())
    assert repository.finalize_job(job.job_id) is None

    repository.record_task_failure(
        tasks[1].task_id,
        failure_class=FailureClass.BAD_REQUEST,
        error_message="nope",
    )
    finalized = repository.finalize_job(job.job_id)
    assert finalized is not None
    assert finalized.status == BatchJobStatus.COMPLETED
    assert finalized.error_summary == "1 of 2 task(s) failed."
    assert repository.finalize_job(job.job_id) is None


def test_finalize_all_failed_still_completes_job(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids, providers=["openai"])
    repository.transition_job(job.job_id, JobEvent.START)
    task = repository.claim_pending_tasks(job.job_id, limit=1, runner_id="a")[0]
    repository.record_task_failure(
        task.task_id,
        failure_class=FailureClass.ACCESS_OR_AUTH,
        error_message="401",
    )

    finalized = repository.finalize_job(job.job_id)

    assert finalized is not None
    assert finalized.status == BatchJobStatus.COMPLETED
    assert (finalized.completed_tasks, finalized.failed_tasks) == (0, 1)
    assert finalized.error_summary == "All 1 task(s) failed."


def test_cancel_pending_job_is_immediate(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=2)
    job = _create_job(repository, prompt_ids=prompt_ids)

    cancelled = repository.request_cancellation(job.job_id)

    assert cancelled.status == BatchJobStatus.CANCELLED
    assert cancelled.cancellation_requested
    counts = repository.count_tasks_by_status(job.job_id)
    assert counts[BatchTaskStatus.CANCELLED.value] == 4
    assert counts[BatchTaskStatus.PENDING.value] == 0


def test_cancel_processing_job_sets_flag_only(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)
    repository.transition_job(job.job_id, JobEvent.START)

    flagged = repository.request_cancellation(job.job_id)

    assert flagged.status == BatchJobStatus.PROCESSING
    assert flagged.cancellation_requested


def test_cancel_unknown_job_raises(repository: BatchRepository) -> None:
    with pytest.raises(JobNotFoundError):
        repository.request_cancellation("missing")


def test_cancel_active_jobs_frees_live_slot(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    old = _create_job(repository, prompt_ids=prompt_ids)

    assert repository.cancel_active_jobs("org-1", reason="replaced") == 1
    new = _create_job(repository, prompt_ids=prompt_ids)

    assert repository.get_job(old.job_id).status == BatchJobStatus.CANCELLED
    assert new.status == BatchJobStatus.PENDING


def test_release_claims_restores_attempts(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)
    tasks = repository.claim_pending_tasks(job.job_id, limit=2, runner_id="a")

    assert repository.release_claims([task.task_id for task in tasks]) == 2

    reclaimed = repository.claim_pending_tasks(job.job_id, limit=2, runner_id="b")
    assert [task.attempts for task in reclaimed] == [1, 1]
    assert all(task.claimed_by == "b" for task in reclaimed)


def test_release_stale_claims(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)
    repository.claim_pending_tasks(job.job_id, limit=2, runner_id="a")

    assert repository.release_stale_claims(job.job_id, stale_before=utc_now() - timedelta(minutes=5)) == 0
    released = repository.release_stale_claims(
        job.job_id,
        stale_before=utc_now() + timedelta(seconds=1),
    )

    assert released == 2
    assert repository.count_tasks_by_status(job.job_id)[BatchTaskStatus.PENDING.value] == 2


def test_fail_pending_tasks_for_prompt(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=2)
    job = _create_job(repository, prompt_ids=prompt_ids)

    failed = repository.fail_pending_tasks_for_prompt(
        job.job_id,
        prompt_ids[0],
        failure_class=FailureClass.CIRCUIT_OPEN,
        reason="circuit open",
    )

    assert failed == 2
    refreshed = repository.get_job(job.job_id)
    assert refreshed is not None
    assert refreshed.failed_tasks == 2
    failed_tasks = [
        task for task in repository.list_tasks(job.job_id) if task.status == BatchTaskStatus.FAILED
    ]
    assert {task.prompt_id for task in failed_tasks} == {prompt_ids[0]}
    assert all(task.failure_class == FailureClass.CIRCUIT_OPEN for task in failed_tasks)


def test_prompt_failure_streaks_reset_on_success(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(
        repository,
        prompt_ids=prompt_ids,
        providers=["openai", "perplexity", "gemini"],
    )
    tasks = repository.claim_pending_tasks(job.job_id, limit=3, runner_id="a")

    repository.record_task_failure(
        tasks[0].task_id,
        failure_class=FailureClass.TIMEOUT,
        error_message="t",
    )
    assert repository.prompt_failure_streaks(job.job_id) == {prompt_ids[0]: 1}
    repository.record_task_success(tasks[1].task_id, response=_success())
    assert repository.prompt_failure_streaks(job.job_id) == {prompt_ids[0]: 0}


def test_stale_jobs_use_heartbeat_or_creation(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)

    assert repository.list_stale_jobs(stale_before=utc_now() - timedelta(minutes=5)) == []
    stale = repository.list_stale_jobs(stale_before=utc_now() + timedelta(minutes=5))
    assert [item.job_id for item in stale] == [job.job_id]

    repository.request_cancellation(job.job_id)
    assert repository.list_stale_jobs(stale_before=utc_now() + timedelta(minutes=5)) == []


def test_daily_job_lookup_skips_cancelled(repository: BatchRepository) -> None:
    prompt_ids = seed_org(repository, prompts=1)
    job = _create_job(repository, prompt_ids=prompt_ids)

    assert repository.find_daily_job("org-1", date(2026, 10, 16)).job_id == job.job_id
    repository.request_cancellation(job.job_id)
    assert repository.find_daily_job("org-1", date(2026, 10, 16)) is None


def test_scheduler_run_log(repository: BatchRepository) -> None:
    run = repository.start_scheduler_run(run_key="2026-10-16", trigger_source="cron")
    assert repository.find_completed_scheduler_run("2026-10-16") is None

    finished = repository.finish_scheduler_run(run.run_id, status="completed", result={"orgs": 1})

    assert finished.status == "completed"
    assert finished.result == {"orgs": 1}
    assert repository.find_completed_scheduler_run("2026-10-16").run_id == run.run_id


def test_catalog_validation(repository: BatchRepository) -> None:
    with pytest.raises(ValidationError):
        repository.add_prompt(org_id="ghost", text="hello")
    seed_org(repository, prompts=0)
    with pytest.raises(ValidationError):
        repository.add_prompt(org_id="org-1", text="   ")

    assert repository.list_enabled_providers() == [
        "gemini",
        "google_ai_overview",
        "openai",
        "perplexity",
    ]
    repository.set_provider_enabled(name="gemini", enabled=False)
    assert "gemini" not in repository.list_enabled_providers()
