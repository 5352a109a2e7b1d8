"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import ALL_PROVIDERS, FakeProviderClient

from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.config import BatchSettings


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[BatchRepository]:
    repo = BatchRepository(tmp_path / "batch.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def fake_clients() -> dict[str, FakeProviderClient]:
    return {name: FakeProviderClient(name=name) for name in ALL_PROVIDERS}


@pytest.fixture()
def batch_settings() -> BatchSettings:
    return BatchSettings(
        micro_batch_size=12,
        time_budget_seconds=240.0,
        max_concurrency=3,
        circuit_breaker_threshold=3,
        retry_base_seconds=0.0,
        retry_max_seconds=0.0,
        runner_id="runner-test",
    )
