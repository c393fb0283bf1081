"""Tests for the fire-and-forget background queue."""

import asyncio

import pytest
from structlog.testing import capture_logs

from capability_factory.services.background import BackgroundTaskQueue

pytestmark = pytest.mark.unit


async def test_nothing_runs_until_drained():
    queue = BackgroundTaskQueue()
    ran = []

    async def job():
        ran.append("job")

    queue.submit("job", job)
    assert ran == []
    assert queue.pending == 1

    await queue.drain()

    assert ran == ["job"]
    assert queue.pending == 0
    assert queue.completed == 1


async def test_failures_are_recorded_not_raised():
    queue = BackgroundTaskQueue()

    async def boom():
        raise RuntimeError("regeneration failed")

    async def ok():
        return None

    queue.submit("boom", boom)
    queue.submit("ok", ok)

    with capture_logs() as logs:
        await queue.drain()

    assert [f.name for f in queue.failures] == ["boom"]
    assert queue.failures[0].error == "RuntimeError: regeneration failed"
    assert queue.completed == 1
    assert any(entry["event"] == "background.task.failed" for entry in logs)


async def test_failure_log_is_bounded():
    queue = BackgroundTaskQueue(max_failures=3)

    async def boom():
        raise ValueError("x")

    for i in range(5):
        queue.submit(f"boom-{i}", boom)
    await queue.drain()

    assert [f.name for f in queue.failures] == ["boom-2", "boom-3", "boom-4"]


async def test_worker_runs_submitted_tasks():
    queue = BackgroundTaskQueue()
    done = asyncio.Event()

    async def job():
        done.set()

    queue.start()
    assert queue.running
    queue.submit("job", job)
    await asyncio.wait_for(done.wait(), timeout=1)
    await queue.stop()

    assert not queue.running
    assert queue.completed == 1
