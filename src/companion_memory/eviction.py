"""Capacity eviction, inactivity archival and importance-tiered expiry.

Every removal writes an archive snapshot first, then drops the vector and the
row and decrements the config's live-memory counter, all inside one store
transaction.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from loguru import logger

from .config import EvictionConfig
from .embedding import EmbeddingIndex
from .exceptions import MemoryCapacityError
from .models import (
    ALL_KINDS,
    ArchiveReason,
    ArchiveRecord,
    MemoryConfigRecord,
    MemoryKind,
    MemoryRecord,
    memory_from_row,
    to_iso,
)
from .storage.sqlite_store import SQLiteStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EvictionManager:
    """Keeps each memory config within its capacity and prunes stale memories."""

    def __init__(
        self,
        store: SQLiteStore,
        embedding_index: EmbeddingIndex,
        config: EvictionConfig | None = None,
    ):
        self._store = store
        self._embeddings = embedding_index
        self._config = config or EvictionConfig()

    async def archive_and_remove(
        self,
        memory: MemoryRecord,
        user_id: str,
        character_id: str,
        reason: ArchiveReason,
        can_restore: bool,
        restore_expiry: datetime | None = None,
        now: datetime | None = None,
    ) -> ArchiveRecord:
        """Snapshot a memory into the archive and remove it.

        Args:
            memory: Memory to remove
            user_id: Owner user
            character_id: Owner character
            reason: Why the memory is archived
            can_restore: Whether the archive may be restored
            restore_expiry: End of the restore window (None for no limit)
            now: Archive timestamp

        Returns:
            The written archive record
        """
        now = now or _utcnow()
        kind = MemoryKind(memory.kind)
        archive = ArchiveRecord(
            user_id=user_id,
            character_id=character_id,
            original_memory_id=memory.id,
            memory_type=kind,
            memory_data=memory.model_dump(mode="json"),
            archived_reason=reason,
            can_restore=can_restore,
            restore_expiry=restore_expiry,
            archived_at=now,
        )
        async with self._store.transaction():
            await self._store.insert_archive(archive.to_row())
            await self._embeddings.delete_embedding(memory.id)
            if await self._store.delete_memory(kind, memory.id):
                await self._store.adjust_total_memories(memory.config_id, -1)
        return archive

    async def archive_oldest(
        self, config: MemoryConfigRecord, now: datetime | None = None
    ) -> ArchiveRecord:
        """Evict the least valuable memory of a config.

        Picks the lowest-importance episodic memory, oldest access first on
        ties. Configs without episodic memories fall back to the
        lowest-importance semantic or emotional memory.

        Raises:
            MemoryCapacityError: If the config holds no memory at all
        """
        now = now or _utcnow()
        async with self._store.transaction():
            row = await self._store.find_eviction_candidate(
                MemoryKind.EPISODIC, config.id
            )
            kind = MemoryKind.EPISODIC
            if row is None:
                candidates = []
                for fallback in (MemoryKind.SEMANTIC, MemoryKind.EMOTIONAL):
                    found = await self._store.find_eviction_candidate(
                        fallback, config.id
                    )
                    if found is not None:
                        candidates.append((fallback, found))
                if not candidates:
                    raise MemoryCapacityError(config.id, config.max_memories)
                kind, row = min(
                    candidates,
                    key=lambda c: (c[1]["importance"], c[1]["last_accessed"]),
                )

            memory = memory_from_row(kind, row)
            archive = await self.archive_and_remove(
                memory,
                config.user_id,
                config.character_id,
                ArchiveReason.CAPACITY_LIMIT,
                can_restore=True,
                restore_expiry=now + timedelta(days=self._config.capacity_restore_days),
                now=now,
            )

        logger.info(
            f"Evicted {kind.value} memory {memory.id} "
            f"(importance {memory.importance:.2f}) from config {config.id}"
        )
        return archive

    async def make_room(
        self, config_id: str, now: datetime | None = None
    ) -> int:
        """Evict until the config has a free slot. Caller holds the transaction.

        Returns:
            Number of memories evicted
        """
        evicted = 0
        while True:
            row = await self._store.get_config_by_id(config_id)
            config = MemoryConfigRecord.from_row(row)
            if config.total_memories < config.max_memories:
                return evicted
            await self.archive_oldest(config, now=now)
            evicted += 1

    async def cleanup_inactive_accounts(self, now: datetime | None = None) -> int:
        """Archive every memory of configs idle longer than the inactivity window.

        Returns:
            Number of memories archived
        """
        now = now or _utcnow()
        cutoff = now - timedelta(days=self._config.inactive_after_days)
        rows = await self._store.list_inactive_configs(to_iso(cutoff))

        archived = 0
        for config_row in rows:
            config = MemoryConfigRecord.from_row(config_row)
            count = 0
            async with self._store.transaction():
                for kind in ALL_KINDS:
                    for row in await self._store.list_memories(kind, config.id):
                        await self.archive_and_remove(
                            memory_from_row(kind, row),
                            config.user_id,
                            config.character_id,
                            ArchiveReason.INACTIVE_ACCOUNT,
                            can_restore=True,
                            restore_expiry=None,
                            now=now,
                        )
                        count += 1
                await self._embeddings.delete_embeddings_for_config(config.id)
                await self._store.set_total_memories(config.id, 0)
            if count:
                logger.info(
                    f"Archived {count} memories of inactive config {config.id} "
                    f"(last access {config.last_access_at.isoformat()})"
                )
            archived += count
        return archived

    async def apply_importance_tiered_expiry(self, now: datetime | None = None) -> int:
        """Soft-expire episodic memories not accessed within their tier's window.

        Memories at or above the highest tier bound never expire.

        Returns:
            Number of memories marked expired
        """
        now = now or _utcnow()
        marked = 0
        lower = 0.0
        async with self._store.transaction():
            for tier in self._config.expiry_tiers:
                cutoff = now - timedelta(days=tier.inactive_days)
                marked += await self._store.mark_episodic_expired(
                    lower, tier.max_importance, to_iso(cutoff), to_iso(now)
                )
                lower = tier.max_importance
        if marked:
            logger.info(f"Marked {marked} episodic memories as expired")
        return marked

    async def delete_expired_memories(self, now: datetime | None = None) -> int:
        """Hard-delete memories whose expiry (plus grace) has passed.

        Returns:
            Number of memories deleted
        """
        now = now or _utcnow()
        cutoff = now - timedelta(days=self._config.expired_grace_days)
        rows = await self._store.list_expired_episodic(to_iso(cutoff))
        for row in rows:
            await self.archive_and_remove(
                memory_from_row(MemoryKind.EPISODIC, row),
                row["owner_user_id"],
                row["owner_character_id"],
                ArchiveReason.EXPIRED,
                can_restore=False,
                now=now,
            )
        if rows:
            logger.info(f"Deleted {len(rows)} expired memories")
        return len(rows)

    async def purge_expired_archives(self, now: datetime | None = None) -> int:
        """Drop archive records whose restore window has lapsed."""
        now = now or _utcnow()
        count = await self._store.purge_expired_archives(to_iso(now))
        if count:
            logger.info(f"Purged {count} archives past their restore window")
        return count
