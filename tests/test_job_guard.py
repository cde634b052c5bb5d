"""Tests for the job guard state machine."""

import asyncio
from datetime import datetime, timedelta

import pytest

from nft_tracker.worker.job_guard import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    STATE_IDLE,
    JobGuard,
)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current


@pytest.mark.asyncio
async def test_completed_run_records_timestamps_and_result():
    clock = FakeClock(datetime(2025, 1, 1))
    guard = JobGuard("listings", clock=clock)

    async def job():
        return {"added": 3}

    outcome = await guard.run(job)

    assert outcome.state == OUTCOME_COMPLETED
    assert outcome.result == {"added": 3}
    assert outcome.started_at == datetime(2025, 1, 1, 0, 0, 0)
    assert outcome.finished_at == datetime(2025, 1, 1, 0, 0, 1)
    assert guard.state == STATE_IDLE
    assert guard.runs == 1
    assert guard.last_result == {"added": 3}
    assert guard.last_finished_at == outcome.finished_at


@pytest.mark.asyncio
async def test_failed_run_returns_to_idle():
    guard = JobGuard("ownership")

    async def job():
        raise RuntimeError("feed down")

    outcome = await guard.run(job)

    assert outcome.state == OUTCOME_FAILED
    assert isinstance(outcome.error, RuntimeError)
    assert guard.state == STATE_IDLE
    assert guard.last_outcome == OUTCOME_FAILED

    async def ok():
        return 1

    assert (await guard.run(ok)).state == OUTCOME_COMPLETED


@pytest.mark.asyncio
async def test_overlapping_trigger_is_skipped():
    guard = JobGuard("listings")
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_job():
        started.set()
        await release.wait()
        return "done"

    first = asyncio.create_task(guard.run(slow_job))
    await started.wait()
    assert guard.is_running

    second = await guard.run(slow_job)
    assert second.state == OUTCOME_SKIPPED
    assert guard.skips == 1

    release.set()
    outcome = await first
    assert outcome.state == OUTCOME_COMPLETED
    assert guard.runs == 1
    assert guard.state == STATE_IDLE


@pytest.mark.asyncio
async def test_cancelled_run_does_not_stay_running():
    guard = JobGuard("listings")
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(guard.run(hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert guard.state == STATE_IDLE
