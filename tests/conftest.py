from __future__ import annotations

from functools import partial
from pathlib import Path
from typing import List

import pytest
import pytest_asyncio

from app.core.config import Settings
from app.services.client_pool import ClientPool
from app.services.events import EventBroadcaster
from app.services.job_store import JobStore
from app.services.worker import GenerationWorker
from bulkgen.backoff import BackoffController
from bulkgen.factory import build_client


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage_root=tmp_path / "data",
        mock_delay=0,
        worker_enabled=False,
        save_debounce=0.05,
        safety_flush_interval=30,
    )


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest_asyncio.fixture
async def store(tmp_path: Path):
    job_store = JobStore(tmp_path / "jobs.json", save_debounce=0.05, safety_flush_interval=None)
    yield job_store
    await job_store.stop()


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def pool() -> ClientPool:
    return ClientPool(partial(build_client, mock_delay=0))


@pytest.fixture
def worker(store: JobStore, pool: ClientPool, broadcaster: EventBroadcaster, tmp_path: Path, fake_sleep: FakeSleep):
    return GenerationWorker(
        store,
        pool,
        broadcaster,
        tmp_path / "output",
        backoff=BackoffController(4.0, 60.0, 5),
        sleep=fake_sleep,
        rng=lambda: 1.0,
    )
