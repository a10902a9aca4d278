"""Tests for the interval scheduler and its overlap policies."""

import asyncio

import pytest

from services.trader.scheduler import IntervalScheduler


class _BlockingJob:
    def __init__(self):
        self.release = asyncio.Event()
        self.started = 0
        self.finished = 0

    async def __call__(self):
        self.started += 1
        await self.release.wait()
        self.finished += 1
        return self.finished


@pytest.mark.asyncio()
async def test_skip_policy_drops_overlapping_tick():
    job = _BlockingJob()
    sched = IntervalScheduler(60, job, overlap_policy="skip")

    first = asyncio.create_task(sched.tick())
    await asyncio.sleep(0)
    assert sched.running
    assert await sched.tick() is None
    assert sched.skipped == 1

    job.release.set()
    assert await first == 1
    assert job.started == 1
    assert sched.runs == 1


@pytest.mark.asyncio()
async def test_serialize_policy_queues_tick():
    job = _BlockingJob()
    sched = IntervalScheduler(60, job, overlap_policy="serialize")

    first = asyncio.create_task(sched.tick())
    second = asyncio.create_task(sched.tick())
    await asyncio.sleep(0)
    assert job.started == 1

    job.release.set()
    results = await asyncio.gather(first, second)
    assert sorted(results) == [1, 2]
    assert sched.skipped == 0
    assert sched.runs == 2


@pytest.mark.asyncio()
async def test_failing_job_is_logged_not_raised(caplog):
    async def boom():
        raise RuntimeError("kaput")

    sched = IntervalScheduler(60, boom)
    assert await sched.tick() is None
    assert "kaput" in sched.last_error
    assert "tick failed" in caplog.text


@pytest.mark.asyncio()
async def test_stop_waits_for_in_flight_tick():
    started = asyncio.Event()
    done = []

    async def slow():
        started.set()
        await asyncio.sleep(0.05)
        done.append(True)

    sched = IntervalScheduler(0.01, slow)
    runner = asyncio.create_task(sched.run_forever())
    await asyncio.wait_for(started.wait(), timeout=2)
    sched.stop()
    await asyncio.wait_for(runner, timeout=2)
    assert done == [True]


@pytest.mark.asyncio()
async def test_stop_before_first_tick():
    calls = []

    async def job():
        calls.append(1)

    sched = IntervalScheduler(3600, job)
    runner = asyncio.create_task(sched.run_forever())
    await asyncio.sleep(0)
    sched.stop()
    await asyncio.wait_for(runner, timeout=2)
    assert calls == []


def test_invalid_settings():
    async def job():
        return None

    with pytest.raises(ValueError):
        IntervalScheduler(0, job)
    with pytest.raises(ValueError):
        IntervalScheduler(60, job, overlap_policy="parallel")
