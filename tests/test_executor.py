from __future__ import annotations

from dataclasses import replace

import allure
import httpx
import pytest
from fakes import ALL_PROVIDERS, FakeProviderClient, ManualClock, non_retryable, seed_org, transient
from sqlalchemy.exc import OperationalError

from prompt_visibility.batch.errors import JobNotFoundError, ProviderCallError
from prompt_visibility.batch.executor import MicroBatchExecutor
from prompt_visibility.batch.fanout import CreateBatchJob, FanoutService
from prompt_visibility.batch.models import (
    BatchJobStatus,
    BatchTaskStatus,
    ExecutionAction,
    FailureClass,
)
from prompt_visibility.batch.providers import ChatCompletionsClient
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.config import BatchSettings

pytestmark = [
    allure.epic("Batch Execution"),
    allure.feature("Micro-batch Executor"),
]


def _create(repository: BatchRepository, *, tier: str = "starter", prompts: int = 2) -> str:
    seed_org(repository, tier=tier, prompts=prompts)
    fanout = FanoutService(repository=repository, configured_providers=ALL_PROVIDERS)
    return fanout.create_job(CreateBatchJob(org_id="org-1")).job.job_id


def _executor(
    repository: BatchRepository,
    clients: dict[str, FakeProviderClient],
    settings: BatchSettings,
    clock: ManualClock | None = None,
) -> MicroBatchExecutor:
    kwargs = {"clock": clock} if clock is not None else {}
    return MicroBatchExecutor(
        repository=repository,
        clients=clients,
        settings=settings,
        retry_sleep=lambda _: None,
        **kwargs,
    )


def test_runs_all_tasks_and_completes(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, prompts=3)

    result = _executor(repository, fake_clients, batch_settings).run(job_id)

    assert result.action == ExecutionAction.COMPLETED
    assert result.status == BatchJobStatus.COMPLETED
    assert (result.completed, result.failed, result.total, result.remaining) == (6, 0, 6, 0)
    assert result.processed_this_run == 6
    assert len(fake_clients["openai"].calls) == 3
    assert len(fake_clients["perplexity"].calls) == 3
    assert fake_clients["gemini"].calls == []

    responses = repository.list_responses(job_id)
    assert len(responses) == 6
    assert all(response.status == "success" for response in responses)
    assert all(response.org_brand_present for response in responses)
    assert all(response.score == 9.0 for response in responses)
    assert {response.token_in for response in responses} == {7}
    job = repository.get_job(job_id)
    assert job is not None
    assert job.runner_id == "runner-test"
    assert job.completed_at is not None


def test_terminal_job_is_a_no_op(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, prompts=1)
    executor = _executor(repository, fake_clients, batch_settings)
    executor.run(job_id)
    calls_before = len(fake_clients["openai"].calls)

    again = executor.run(job_id)

    assert again.action == ExecutionAction.COMPLETED
    assert again.processed_this_run == 0
    assert len(fake_clients["openai"].calls) == calls_before


def test_unknown_job_raises(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    with pytest.raises(JobNotFoundError):
        _executor(repository, fake_clients, batch_settings).run("missing")


def test_partial_failures_still_complete(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, prompts=2)
    fake_clients["perplexity"].default = non_retryable("HTTP 400")

    result = _executor(repository, fake_clients, batch_settings).run(job_id)

    assert result.action == ExecutionAction.COMPLETED
    assert (result.completed, result.failed) == (2, 2)
    failed = [
        task for task in repository.list_tasks(job_id) if task.status == BatchTaskStatus.FAILED
    ]
    assert {task.provider for task in failed} == {"perplexity"}
    assert all(task.failure_class == FailureClass.BACKEND_NON_RETRYABLE for task in failed)
    errors = [response for response in repository.list_responses(job_id) if response.status == "error"]
    assert len(errors) == 2
    assert all("HTTP 400" in (response.error_message or "") for response in errors)


def test_all_failures_still_complete_the_job(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, tier="starter", prompts=5)
    for client in fake_clients.values():
        client.default = non_retryable()
    settings = replace(batch_settings, circuit_breaker_threshold=5)
    executor = _executor(repository, fake_clients, settings)

    result = executor.run(job_id)

    assert result.action == ExecutionAction.COMPLETED
    assert result.status == BatchJobStatus.COMPLETED
    assert (result.completed, result.failed, result.total, result.remaining) == (0, 10, 10, 0)
    job = repository.get_job(job_id)
    assert job is not None
    assert job.error_summary == "All 10 task(s) failed."
    assert len(repository.list_responses(job_id)) == 10

    again = executor.run(job_id)

    assert again.action == ExecutionAction.COMPLETED
    assert (again.completed, again.failed, again.processed_this_run) == (0, 10, 0)


def test_transient_errors_are_retried_within_a_task(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, tier="free", prompts=1)
    fake_clients["openai"].script = [transient(), transient()]

    result = _executor(repository, fake_clients, batch_settings).run(job_id)

    assert result.action == ExecutionAction.COMPLETED
    assert result.completed == 1
    assert len(fake_clients["openai"].calls) == 3


def test_cancellation_request_stops_processing(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, prompts=3)
    settings = replace(batch_settings, micro_batch_size=2, max_concurrency=1)
    executor = _executor(repository, fake_clients, settings)

    def cancel_after_first_call(_: str) -> None:
        if len(fake_clients["openai"].calls) == 1:
            repository.request_cancellation(job_id)

    fake_clients["openai"].on_call = cancel_after_first_call

    result = executor.run(job_id)

    assert result.action == ExecutionAction.CANCELLED
    assert result.status == BatchJobStatus.CANCELLED
    counts = repository.count_tasks_by_status(job_id)
    assert counts["pending"] == 0
    assert counts["processing"] == 0
    assert counts["cancelled"] >= 4
    total_calls = len(fake_clients["openai"].calls) + len(fake_clients["perplexity"].calls)
    assert total_calls <= 2


def test_time_budget_defers_and_resume_finishes_without_duplicates(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, tier="growth", prompts=1)
    clock = ManualClock()
    for client in fake_clients.values():
        client.on_call = lambda _: clock.advance(100)
    settings = replace(batch_settings, time_budget_seconds=150, micro_batch_size=4)
    executor = _executor(repository, fake_clients, settings, clock=clock)

    first = executor.run(job_id)

    assert first.action == ExecutionAction.IN_PROGRESS
    assert first.status == BatchJobStatus.PROCESSING
    assert (first.completed, first.remaining, first.processed_this_run) == (2, 2, 2)
    counts = repository.count_tasks_by_status(job_id)
    assert (counts["completed"], counts["pending"], counts["processing"]) == (2, 2, 0)
    job = repository.get_job(job_id)
    assert job is not None
    assert job.metadata["last_invocation"]["processed"] == 2

    second = executor.run(job_id)

    assert second.action == ExecutionAction.COMPLETED
    assert (second.completed, second.total) == (4, 4)
    calls = {name: len(client.calls) for name, client in fake_clients.items()}
    assert calls == dict.fromkeys(ALL_PROVIDERS, 1)
    assert all(task.attempts == 1 for task in repository.list_tasks(job_id))
    assert len(repository.list_responses(job_id)) == 4


def test_circuit_breaker_stops_calls_for_failing_prompt(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, tier="growth", prompts=1)
    for client in fake_clients.values():
        client.default = non_retryable("provider down")

    result = _executor(repository, fake_clients, batch_settings).run(job_id)

    total_calls = sum(len(client.calls) for client in fake_clients.values())
    assert total_calls == 3
    assert result.action == ExecutionAction.COMPLETED
    assert (result.failed, result.total) == (4, 4)
    circuit = [
        task
        for task in repository.list_tasks(job_id)
        if task.failure_class == FailureClass.CIRCUIT_OPEN
    ]
    assert len(circuit) == 1


def test_circuit_breaker_spans_slices(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, tier="growth", prompts=1)
    for client in fake_clients.values():
        client.default = non_retryable("provider down")
    settings = replace(batch_settings, micro_batch_size=3)

    result = _executor(repository, fake_clients, settings).run(job_id)

    assert sum(len(client.calls) for client in fake_clients.values()) == 3
    assert result.action == ExecutionAction.COMPLETED
    details = repository.get_job_details(job_id)
    assert details is not None
    assert "circuit_opened" in [event.event_type for event in details.events]


def test_persistence_error_is_recorded_as_failure(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job_id = _create(repository, tier="free", prompts=1)

    def broken_success(*_args, **_kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(repository, "record_task_success", broken_success)

    result = _executor(repository, fake_clients, batch_settings).run(job_id)

    assert result.action == ExecutionAction.COMPLETED
    assert (result.completed, result.failed, result.total) == (0, 1, 1)
    task = repository.list_tasks(job_id)[0]
    assert task.failure_class == FailureClass.PERSISTENCE_ERROR


def test_resume_bumps_resume_count(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, tier="free", prompts=1)

    _executor(repository, fake_clients, batch_settings).run(job_id, resumed_by="reconciler")

    job = repository.get_job(job_id)
    assert job is not None
    assert job.metadata["resume_count"] == 1
    assert job.metadata["last_resumed_by"] == "reconciler"


def test_retries_never_run_past_the_time_budget(
    repository: BatchRepository,
    fake_clients: dict[str, FakeProviderClient],
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, tier="starter", prompts=1)
    clock = ManualClock()
    for client in fake_clients.values():
        client.default = ProviderCallError(
            "upstream request timed out",
            failure_class=FailureClass.TIMEOUT,
        )
        client.on_call = lambda _: clock.advance(60)
    settings = replace(batch_settings, time_budget_seconds=240, request_timeout_seconds=60)
    executor = _executor(repository, fake_clients, settings, clock=clock)

    first = executor.run(job_id)

    assert first.action == ExecutionAction.IN_PROGRESS
    assert first.elapsed_ms <= 240_000
    assert (first.failed, first.remaining) == (1, 1)
    assert sorted(len(client.calls) for client in fake_clients.values() if client.calls) == [1, 3]
    assert all(
        timeout is not None and timeout <= 60
        for client in fake_clients.values()
        for timeout in client.timeouts
    )
    deferred = [task for task in repository.list_tasks(job_id) if task.status == BatchTaskStatus.PENDING]
    assert len(deferred) == 1
    assert deferred[0].attempts == 0
    job = repository.get_job(job_id)
    assert job is not None
    assert job.metadata["last_invocation"]["deferred"] == 1

    for client in fake_clients.values():
        client.default = "Acme is the best choice for widgets."
        client.on_call = None
    second = executor.run(job_id)

    assert second.action == ExecutionAction.COMPLETED
    assert (second.completed, second.failed, second.total) == (1, 1, 2)


def test_malformed_provider_payload_fails_only_its_task(
    repository: BatchRepository,
    batch_settings: BatchSettings,
) -> None:
    job_id = _create(repository, tier="free", prompts=2)

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": ["oops"]})

    client = ChatCompletionsClient(
        name="openai",
        api_key="sk-test",
        base_url="https://api.example.com/v1",
        model="gpt-test",
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )

    with client:
        result = _executor(repository, {"openai": client}, batch_settings).run(job_id)

    assert result.action == ExecutionAction.COMPLETED
    assert (result.completed, result.failed, result.total) == (0, 2, 2)
    counts = repository.count_tasks_by_status(job_id)
    assert (counts["processing"], counts["failed"]) == (0, 2)
    errors = repository.list_responses(job_id)
    assert len(errors) == 2
    assert all(response.status == "error" for response in errors)
    assert all("unexpected payload" in (response.error_message or "") for response in errors)
    assert all(
        task.failure_class == FailureClass.BACKEND_NON_RETRYABLE
        for task in repository.list_tasks(job_id)
    )
