"""Tests for BackgroundTaskQueue retries, dead letters and capacity."""

from __future__ import annotations

import asyncio

import pytest

from companion_memory.config import TaskQueueConfig
from companion_memory.exceptions import TaskQueueFullError
from companion_memory.task_queue import BackgroundTaskQueue


@pytest.fixture
async def queue():
    q = BackgroundTaskQueue(
        TaskQueueConfig(worker_count=2, max_size=5, max_attempts=3, retry_delay_seconds=0.0)
    )
    await q.start()
    yield q
    await q.stop(timeout=1.0)


@pytest.mark.asyncio
async def test_runs_submitted_work(queue):
    done = []

    async def work():
        done.append(True)

    queue.submit("work", work)
    await queue.join()

    assert done == [True]
    assert queue.completed == 1


@pytest.mark.asyncio
async def test_retries_until_success(queue):
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("transient")

    task = queue.submit("flaky", flaky)
    await queue.join()

    assert task.attempts == 3
    assert len(task.errors) == 2
    assert queue.completed == 1
    assert queue.dead_letters == []


@pytest.mark.asyncio
async def test_dead_letters_after_max_attempts(queue):
    async def broken():
        raise ValueError("always fails")

    task = queue.submit("broken", broken)
    await queue.join()

    assert task.attempts == 3
    assert queue.dead_letters == [task]
    assert all("ValueError" in e for e in task.errors)


@pytest.mark.asyncio
async def test_per_task_attempt_limit(queue):
    async def broken():
        raise ValueError("no retry")

    task = queue.submit("once", broken, max_attempts=1)
    await queue.join()

    assert task.attempts == 1
    assert queue.dead_letters == [task]


@pytest.mark.asyncio
async def test_full_queue_rejects():
    q = BackgroundTaskQueue(TaskQueueConfig(max_size=1))
    q.submit("first", asyncio.sleep, max_attempts=1)

    with pytest.raises(TaskQueueFullError):
        q.submit("second", asyncio.sleep)
    assert q.pending == 1


@pytest.mark.asyncio
async def test_stop_cancels_workers():
    q = BackgroundTaskQueue(TaskQueueConfig(worker_count=1))
    await q.start()
    assert q.running

    await q.stop()

    assert not q.running
