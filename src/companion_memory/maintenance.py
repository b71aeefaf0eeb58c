"""Periodic maintenance sweep over all memory configs."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable

from loguru import logger

from .config import MaintenanceConfig
from .embedding import EmbeddingIndex
from .eviction import EvictionManager
from .models import MaintenanceReport
from .summarization import SummarizationPipeline


class MaintenanceScheduler:
    """Runs archival, expiry and cleanup steps, once or on an interval.

    Each step is isolated: a failing step is logged, recorded in the report's
    ``errors`` and counted as zero, and the remaining steps still run.
    """

    def __init__(
        self,
        eviction: EvictionManager,
        summarization: SummarizationPipeline,
        embedding_index: EmbeddingIndex,
        config: MaintenanceConfig | None = None,
    ):
        self._eviction = eviction
        self._summarization = summarization
        self._embeddings = embedding_index
        self._config = config or MaintenanceConfig()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> MaintenanceReport:
        """Run every maintenance step at reference time ``now``."""
        now = now or datetime.now(timezone.utc)
        report = MaintenanceReport()

        steps: list[tuple[str, Callable[[datetime], Awaitable[int]]]] = [
            ("inactive_archived", self._eviction.cleanup_inactive_accounts),
            ("memories_marked_expired", self._eviction.apply_importance_tiered_expiry),
            ("expired_deleted", self._eviction.delete_expired_memories),
            ("jobs_cleaned", self._summarization.cleanup_old_jobs),
            ("stale_jobs_failed", self._summarization.recover_stale_jobs),
            ("archives_purged", self._eviction.purge_expired_archives),
            ("cache_entries_purged", self._embeddings.purge_expired_cache),
        ]
        for field, step in steps:
            try:
                setattr(report, field, await step(now))
            except Exception as e:
                logger.error(f"Maintenance step {field} failed: {e}")
                report.errors.append(f"{field}: {e}")

        logger.info(
            f"Memory maintenance done: {report.model_dump(exclude={'errors'})}, "
            f"{len(report.errors)} errors"
        )
        return report

    async def _loop(self) -> None:
        interval = self._config.interval_hours * 3600
        if not self._config.run_on_start:
            await asyncio.sleep(interval)
        while True:
            await self.run_once()
            await asyncio.sleep(interval)

    def start(self) -> None:
        """Start the periodic sweep in the background."""
        if self.running:
            logger.warning("MaintenanceScheduler is already running")
            return
        self._task = asyncio.create_task(self._loop(), name="memory_maintenance")
        logger.info(
            f"MaintenanceScheduler started (every {self._config.interval_hours}h)"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("MaintenanceScheduler stopped")
