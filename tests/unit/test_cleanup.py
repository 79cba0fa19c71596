import asyncio
from unittest.mock import AsyncMock

import pytest

from turnstile.core.cleanup import CleanupJob
from turnstile.core.models import LimitOptions, StrategyType
from turnstile.core.service import AdmissionService

from conftest import FakeClock


@pytest.fixture
def mock_service():
    service = AsyncMock()
    service.cleanup.return_value = 3
    return service


@pytest.mark.asyncio
async def test_run_now_returns_removed_count(mock_service):
    job = CleanupJob(mock_service)

    assert await job.run_now() == 3
    mock_service.cleanup.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_now_swallows_errors(mock_service):
    mock_service.cleanup.side_effect = RuntimeError("boom")
    job = CleanupJob(mock_service)

    assert await job.run_now() == 0


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(mock_service):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_cleanup():
        started.set()
        await release.wait()
        return 2

    mock_service.cleanup.side_effect = slow_cleanup
    job = CleanupJob(mock_service)

    first = asyncio.create_task(job.run_now())
    await started.wait()

    assert await job.run_now() == 0

    release.set()
    assert await first == 2
    assert mock_service.cleanup.await_count == 1


@pytest.mark.asyncio
async def test_loop_runs_periodically_and_stops(mock_service):
    job = CleanupJob(mock_service, interval_ms=10, initial_delay_ms=0)

    job.start()
    assert job.is_running()

    await asyncio.sleep(0.1)
    await job.stop()

    assert not job.is_running()
    assert mock_service.cleanup.await_count >= 2


@pytest.mark.asyncio
async def test_loop_survives_failing_runs(mock_service):
    mock_service.cleanup.side_effect = RuntimeError("boom")
    job = CleanupJob(mock_service, interval_ms=10, initial_delay_ms=0)

    job.start()
    await asyncio.sleep(0.1)

    assert job.is_running()
    assert mock_service.cleanup.await_count >= 2
    await job.stop()


@pytest.mark.asyncio
async def test_stop_before_initial_delay_never_runs(mock_service):
    job = CleanupJob(mock_service, interval_ms=10, initial_delay_ms=60_000)

    job.start()
    await job.stop()

    mock_service.cleanup.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_twice_keeps_one_task(mock_service):
    job = CleanupJob(mock_service, initial_delay_ms=60_000)

    job.start()
    task = job._task
    job.start()

    assert job._task is task
    await job.stop()


@pytest.mark.asyncio
async def test_removes_expired_records_through_the_service(service: AdmissionService, store, clock: FakeClock):
    options = LimitOptions(strategy=StrategyType.FIXED_WINDOW, window_ms=1000)
    await service.increment_limit("user:1", options)
    await service.increment_limit("user:2", options)

    clock.advance(5000)

    assert await CleanupJob(service).run_now() == 2
    assert store.keys() == []


@pytest.mark.asyncio
async def test_set_interval_restarts_a_running_loop(mock_service):
    job = CleanupJob(mock_service, interval_ms=60_000, initial_delay_ms=0)
    job.start()
    await asyncio.sleep(0.05)
    first_task = job._task

    await job.set_interval(10)
    await asyncio.sleep(0.1)

    assert job.interval_ms == 10
    assert job._task is not first_task
    assert job.is_running()
    # the slow interval alone would have allowed a single run
    assert mock_service.cleanup.await_count >= 3
    await job.stop()


@pytest.mark.asyncio
async def test_set_interval_leaves_a_stopped_job_stopped(mock_service):
    job = CleanupJob(mock_service)

    await job.set_interval(1000)

    assert job.interval_ms == 1000
    assert not job.is_running()
