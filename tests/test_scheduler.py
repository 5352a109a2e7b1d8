from __future__ import annotations

from datetime import UTC, datetime

import allure
from fakes import FakeProviderClient, seed_org

from prompt_visibility.batch.driver import DriverLoop
from prompt_visibility.batch.executor import MicroBatchExecutor
from prompt_visibility.batch.fanout import FanoutService
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.batch.scheduler import DailyScheduler
from prompt_visibility.config import BatchSettings, DriverSettings, SchedulerSettings

pytestmark = [
    allure.epic("Batch Fan-out"),
    allure.feature("Daily Trigger"),
]

# 04:00 and 08:00 in New York (EDT, UTC-4).
_IN_WINDOW = datetime(2026, 10, 16, 8, 0, tzinfo=UTC)
_OUT_OF_WINDOW = datetime(2026, 10, 16, 12, 0, tzinfo=UTC)


def _scheduler(
    repository: BatchRepository,
    batch_settings: BatchSettings,
    *,
    now: datetime,
    configured: tuple[str, ...] = ("openai", "perplexity"),
) -> tuple[DailyScheduler, dict[str, FakeProviderClient]]:
    clients = {name: FakeProviderClient(name=name) for name in configured}
    executor = MicroBatchExecutor(
        repository=repository,
        clients=clients,
        settings=batch_settings,
        retry_sleep=lambda _: None,
    )
    scheduler = DailyScheduler(
        repository=repository,
        fanout=FanoutService(
            repository=repository,
            configured_providers=configured,
            clock=lambda: now,
        ),
        driver=DriverLoop(
            step=executor.run,
            settings=DriverSettings(interval_seconds=0.0),
            sleep=lambda _: None,
        ),
        settings=SchedulerSettings(window_start_hour=3, window_end_hour=6),
        business_timezone="America/New_York",
        clock=lambda: now,
    )
    return scheduler, clients


def test_outside_window_is_skipped(repository: BatchRepository, batch_settings) -> None:
    seed_org(repository, prompts=1)
    scheduler, clients = _scheduler(repository, batch_settings, now=_OUT_OF_WINDOW)

    summary = scheduler.run()

    assert summary.status == "skipped"
    assert "Outside execution window" in (summary.message or "")
    assert repository.list_jobs() == []
    assert clients["openai"].calls == []


def test_in_window_runs_every_org_to_completion(
    repository: BatchRepository,
    batch_settings,
) -> None:
    seed_org(repository, org_id="org-a", tier="starter", prompts=2)
    seed_org(repository, org_id="org-b", tier="free", prompts=1)
    scheduler, clients = _scheduler(repository, batch_settings, now=_IN_WINDOW)

    summary = scheduler.run()

    assert summary.status == "completed"
    assert summary.run_key == "2026-10-16"
    assert [org.org_id for org in summary.orgs] == ["org-a", "org-b"]
    assert all(org.success and org.drive_status == "completed" for org in summary.orgs)
    assert len(clients["openai"].calls) == 3
    assert len(clients["perplexity"].calls) == 2
    assert repository.find_completed_scheduler_run("2026-10-16") is not None


def test_second_run_same_day_is_skipped(repository: BatchRepository, batch_settings) -> None:
    seed_org(repository, prompts=1)
    scheduler, clients = _scheduler(repository, batch_settings, now=_IN_WINDOW)
    first = scheduler.run()

    second = scheduler.run()

    assert second.status == "skipped"
    assert second.run_id == first.run_id
    assert len(clients["openai"].calls) == 1


def test_force_ignores_window_and_reuses_daily_job(
    repository: BatchRepository,
    batch_settings,
) -> None:
    seed_org(repository, prompts=1)
    scheduler, clients = _scheduler(repository, batch_settings, now=_OUT_OF_WINDOW)
    first = scheduler.run(force=True)

    second = scheduler.run(force=True)

    assert first.status == second.status == "completed"
    assert second.orgs[0].action == "existing"
    assert second.orgs[0].job_id == first.orgs[0].job_id
    assert len(clients["openai"].calls) == 1


def test_org_failure_does_not_abort_run(repository: BatchRepository, batch_settings) -> None:
    seed_org(repository, org_id="org-a", tier="free", prompts=1)
    seed_org(repository, org_id="org-b", tier="starter", prompts=1)
    scheduler, _ = _scheduler(
        repository,
        batch_settings,
        now=_IN_WINDOW,
        configured=("perplexity",),
    )

    summary = scheduler.run()

    assert summary.status == "failed_partial"
    by_org = {org.org_id: org for org in summary.orgs}
    assert not by_org["org-a"].success
    assert by_org["org-a"].action == "configuration_missing"
    assert by_org["org-b"].success
    assert repository.find_completed_scheduler_run("2026-10-16") is None
