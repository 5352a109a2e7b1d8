"""Wiring of batch services from settings, shared by CLI and HTTP surfaces."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

from prompt_visibility.batch.driver import DriverLoop
from prompt_visibility.batch.executor import MicroBatchExecutor
from prompt_visibility.batch.fanout import FanoutService
from prompt_visibility.batch.providers import ProviderClient, build_provider_clients
from prompt_visibility.batch.reconciler import Reconciler
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.batch.scheduler import DailyScheduler
from prompt_visibility.config import Settings

ClientsFactory = Callable[[Settings], Mapping[str, ProviderClient]]


@dataclass(slots=True)
class BatchRuntime:
    settings: Settings
    repository: BatchRepository
    clients: Mapping[str, ProviderClient]
    fanout: FanoutService
    executor: MicroBatchExecutor
    reconciler: Reconciler

    def driver(self) -> DriverLoop:
        return DriverLoop(step=self.executor.run, settings=self.settings.driver)

    def scheduler(self) -> DailyScheduler:
        return DailyScheduler(
            repository=self.repository,
            fanout=self.fanout,
            driver=self.driver(),
            settings=self.settings.scheduler,
            business_timezone=self.settings.batch.business_timezone,
        )

    def close(self) -> None:
        """Close provider HTTP clients, then the repository engine."""

        for client in self.clients.values():
            close = getattr(client, "close", None)
            if callable(close):
                close()
        self.repository.close()


def build_runtime(
    settings: Settings,
    repository: BatchRepository,
    *,
    clients_factory: ClientsFactory = build_provider_clients,
) -> BatchRuntime:
    clients = clients_factory(settings)
    executor = MicroBatchExecutor(
        repository=repository,
        clients=clients,
        settings=settings.batch,
    )
    return BatchRuntime(
        settings=settings,
        repository=repository,
        clients=clients,
        fanout=FanoutService(
            repository=repository,
            configured_providers=tuple(clients),
            business_timezone=settings.batch.business_timezone,
        ),
        executor=executor,
        reconciler=Reconciler(
            repository=repository,
            executor=executor,
            stale_after_seconds=settings.batch.stale_after_seconds,
            batch_limit=settings.batch.reconcile_batch_limit,
        ),
    )


@contextmanager
def open_repository(settings: Settings) -> Iterator[BatchRepository]:
    repository = BatchRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    clients_factory: ClientsFactory = build_provider_clients,
) -> Iterator[BatchRuntime]:
    """Repository plus service graph; clients and engine are closed on exit."""

    with open_repository(settings) as repository:
        runtime = build_runtime(settings, repository, clients_factory=clients_factory)
        try:
            yield runtime
        finally:
            runtime.close()
