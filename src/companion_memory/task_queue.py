"""Bounded background task queue with retries and a dead-letter list.

Summarization jobs and hybrid extractions are submitted here so the chat
request that triggered them does not wait. Each task is a zero-argument
coroutine factory, called again on every attempt.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from loguru import logger

from .config import TaskQueueConfig
from .exceptions import TaskQueueFullError


@dataclass
class BackgroundTask:
    """A unit of background work and its attempt history."""

    name: str
    factory: Callable[[], Awaitable[Any]]
    max_attempts: int
    attempts: int = 0
    errors: list[str] = field(default_factory=list)
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BackgroundTaskQueue:
    """asyncio queue drained by a fixed pool of worker tasks.

    A task that raises is retried after ``retry_delay_seconds`` until it has
    run ``max_attempts`` times; then it is moved to ``dead_letters``.
    """

    def __init__(self, config: TaskQueueConfig | None = None):
        self.config = config or TaskQueueConfig()
        self._queue: asyncio.Queue[BackgroundTask] = asyncio.Queue(
            maxsize=self.config.max_size
        )
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._dead_letters: list[BackgroundTask] = []
        self._completed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def dead_letters(self) -> list[BackgroundTask]:
        return list(self._dead_letters)

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._running:
            logger.warning("BackgroundTaskQueue is already running")
            return

        self._running = True
        for i in range(self.config.worker_count):
            worker = asyncio.create_task(
                self._worker(worker_id=i), name=f"memory_task_worker_{i}"
            )
            self._workers.append(worker)

        logger.info(
            f"BackgroundTaskQueue started ({self.config.worker_count} workers)"
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Wait up to ``timeout`` seconds for queued work, then cancel workers."""
        if not self._running:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"BackgroundTaskQueue stopping with {self.pending} tasks unfinished"
            )

        self._running = False
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("BackgroundTaskQueue stopped")

    def submit(
        self,
        name: str,
        factory: Callable[[], Awaitable[Any]],
        max_attempts: int | None = None,
    ) -> BackgroundTask:
        """Queue a task without waiting for it.

        Args:
            name: Label used in logs
            factory: Zero-argument coroutine function run on each attempt
            max_attempts: Attempts before dead-lettering (config default if None)

        Returns:
            The queued task

        Raises:
            TaskQueueFullError: If the queue is at capacity
        """
        task = BackgroundTask(
            name=name,
            factory=factory,
            max_attempts=max_attempts or self.config.max_attempts,
        )
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            raise TaskQueueFullError(name, self.config.max_size) from None
        logger.debug(f"Background task queued: {name}")
        return task

    async def join(self) -> None:
        """Wait until every queued task has finished or been dead-lettered."""
        await self._queue.join()

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Memory task worker {worker_id} started")
        while True:
            task = await self._queue.get()
            try:
                await self._run(task)
            finally:
                self._queue.task_done()

    async def _run(self, task: BackgroundTask) -> None:
        while task.attempts < task.max_attempts:
            task.attempts += 1
            try:
                await task.factory()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                task.errors.append(f"{type(e).__name__}: {e}")
                if task.attempts < task.max_attempts:
                    logger.warning(
                        f"Background task {task.name} failed "
                        f"(attempt {task.attempts}/{task.max_attempts}): {e}"
                    )
                    await asyncio.sleep(self.config.retry_delay_seconds)
                    continue
                self._dead_letters.append(task)
                logger.error(
                    f"Background task {task.name} dead-lettered after "
                    f"{task.attempts} attempts: {e}"
                )
                return
            else:
                self._completed += 1
                return
