from __future__ import annotations

import allure
from fakes import ALL_PROVIDERS, seed_org

from prompt_visibility.batch.driver import DriverLoop, DriveStatus
from prompt_visibility.batch.errors import JobNotFoundError
from prompt_visibility.batch.executor import ExecutionResult, MicroBatchExecutor
from prompt_visibility.batch.fanout import CreateBatchJob, FanoutService
from prompt_visibility.batch.models import BatchJobStatus, ExecutionAction
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.config import DriverSettings

pytestmark = [
    allure.epic("Batch Execution"),
    allure.feature("Driver Loop"),
]


def _in_progress(processed: int, total: int = 10) -> ExecutionResult:
    return ExecutionResult(
        action=ExecutionAction.IN_PROGRESS,
        job_id="job-1",
        status=BatchJobStatus.PROCESSING,
        completed=processed,
        failed=0,
        total=total,
        remaining=total - processed,
    )


def _settings(**overrides) -> DriverSettings:
    values = {
        "interval_seconds": 1.0,
        "max_iterations": 100,
        "max_wall_seconds": 1_000.0,
        "stall_iterations": 5,
    }
    values.update(overrides)
    return DriverSettings(**values)


def test_drives_until_completed(repository: BatchRepository, fake_clients, batch_settings) -> None:
    seed_org(repository, prompts=3)
    job_id = (
        FanoutService(repository=repository, configured_providers=ALL_PROVIDERS)
        .create_job(CreateBatchJob(org_id="org-1"))
        .job.job_id
    )
    executor = MicroBatchExecutor(
        repository=repository,
        clients=fake_clients,
        settings=batch_settings,
        retry_sleep=lambda _: None,
    )
    sleeps: list[float] = []

    outcome = DriverLoop(step=executor.run, settings=_settings(), sleep=sleeps.append).drive(job_id)

    assert outcome.status == DriveStatus.COMPLETED
    assert outcome.succeeded
    assert outcome.iterations == 1
    assert sleeps == []
    assert outcome.last_result is not None
    assert outcome.last_result.completed == 6


def test_sleeps_between_in_progress_steps() -> None:
    results = iter(
        [
            _in_progress(3),
            _in_progress(6),
            ExecutionResult(
                action=ExecutionAction.COMPLETED,
                job_id="job-1",
                status=BatchJobStatus.COMPLETED,
                completed=10,
                failed=0,
                total=10,
                remaining=0,
            ),
        ],
    )
    sleeps: list[float] = []

    outcome = DriverLoop(
        step=lambda _: next(results),
        settings=_settings(interval_seconds=2.0),
        sleep=sleeps.append,
    ).drive("job-1")

    assert outcome.status == DriveStatus.COMPLETED
    assert outcome.iterations == 3
    assert sleeps == [2.0, 2.0]


def test_stalls_after_consecutive_zero_progress() -> None:
    outcome = DriverLoop(
        step=lambda _: _in_progress(4),
        settings=_settings(stall_iterations=5),
        sleep=lambda _: None,
    ).drive("job-1")

    assert outcome.status == DriveStatus.STALLED
    assert outcome.iterations == 6
    assert not outcome.succeeded


def test_stops_at_max_iterations() -> None:
    progress = iter(range(1, 100))

    outcome = DriverLoop(
        step=lambda _: _in_progress(next(progress), total=1_000),
        settings=_settings(max_iterations=4),
        sleep=lambda _: None,
    ).drive("job-1")

    assert outcome.status == DriveStatus.MAX_ITERATIONS
    assert outcome.iterations == 4


def test_step_error_ends_drive() -> None:
    def step(job_id: str) -> ExecutionResult:
        raise JobNotFoundError(job_id)

    outcome = DriverLoop(step=step, settings=_settings(), sleep=lambda _: None).drive("ghost")

    assert outcome.status == DriveStatus.ERROR
    assert outcome.error == "Job not found: ghost"
    assert outcome.to_dict()["status"] == "error"


def test_request_stop_ends_after_current_step() -> None:
    loop: DriverLoop

    def step(_: str) -> ExecutionResult:
        loop.request_stop()
        return _in_progress(1)

    loop = DriverLoop(step=step, settings=_settings(), sleep=lambda _: None)
    outcome = loop.drive("job-1")

    assert outcome.status == DriveStatus.STOPPED
    assert outcome.iterations == 1
