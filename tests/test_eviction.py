"""Tests for EvictionManager: inactivity archival, tiered expiry and fallbacks."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from companion_memory.exceptions import MemoryCapacityError
from companion_memory.models import ArchiveReason, MemoryKind

USER = "user-1"
CHAR = "char-1"


def _days_from_now(days: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


class TestInactiveAccounts:
    @pytest.mark.asyncio
    async def test_archives_after_91_days(self, memory_store, eviction, embedding_index, store):
        await memory_store.create_episodic(USER, CHAR, {"summary": "We played chess"})
        await memory_store.create_semantic(USER, CHAR, {"key": "game", "value": "chess"})
        await memory_store.create_emotional(USER, CHAR, {"emotion": "happy", "trigger": "won"})
        await memory_store.create_semantic("user-2", CHAR, {"key": "game", "value": "go"})

        archived = await eviction.cleanup_inactive_accounts(now=_days_from_now(91))

        assert archived == 4
        config = await memory_store.get_config(USER, CHAR)
        assert config.total_memories == 0
        for kind in MemoryKind:
            assert await store.count_memories(kind, config.id) == 0
        assert await embedding_index.search_similar_memories("chess", config.id, min_similarity=0.0) == []

        archives = await memory_store.list_archives(USER, CHAR)
        assert len(archives) == 3
        assert all(a.archived_reason == ArchiveReason.INACTIVE_ACCOUNT for a in archives)
        assert all(a.can_restore and a.restore_expiry is None for a in archives)

    @pytest.mark.asyncio
    async def test_recent_access_is_kept(self, memory_store, eviction):
        await memory_store.create_episodic(USER, CHAR, {"summary": "We played chess"})

        assert await eviction.cleanup_inactive_accounts(now=_days_from_now(89)) == 0
        config = await memory_store.get_config(USER, CHAR)
        assert config.total_memories == 1


class TestTieredExpiry:
    @pytest.mark.asyncio
    async def test_low_importance_expires_first(self, memory_store, eviction):
        trivial = await memory_store.create_episodic(
            USER, CHAR, {"summary": "Talked about the weather", "importance": 0.1}
        )
        medium = await memory_store.create_episodic(
            USER, CHAR, {"summary": "Planned a trip", "importance": 0.5}
        )
        vital = await memory_store.create_episodic(
            USER, CHAR, {"summary": "Shared a big secret", "importance": 0.9}
        )
        now = _days_from_now(31)

        marked = await eviction.apply_importance_tiered_expiry(now=now)

        assert marked == 1
        assert await memory_store.get_live_memory(MemoryKind.EPISODIC, trivial.id, now) is None
        assert await memory_store.get_live_memory(MemoryKind.EPISODIC, medium.id, now)
        assert await memory_store.get_live_memory(MemoryKind.EPISODIC, vital.id, now)

    @pytest.mark.asyncio
    async def test_high_importance_never_expires(self, memory_store, eviction):
        vital = await memory_store.create_episodic(
            USER, CHAR, {"summary": "Shared a big secret", "importance": 0.9}
        )
        now = _days_from_now(3650)

        await eviction.apply_importance_tiered_expiry(now=now)

        assert await memory_store.get_live_memory(MemoryKind.EPISODIC, vital.id, now)

    @pytest.mark.asyncio
    async def test_expired_memories_are_deleted(self, memory_store, eviction):
        trivial = await memory_store.create_episodic(
            USER, CHAR, {"summary": "Talked about the weather", "importance": 0.1}
        )
        now = _days_from_now(31)
        await eviction.apply_importance_tiered_expiry(now=now)

        deleted = await eviction.delete_expired_memories(now=now)

        assert deleted == 1
        config = await memory_store.get_config(USER, CHAR)
        assert config.total_memories == 0
        archives = await memory_store.list_archives(USER, CHAR)
        assert archives[0].original_memory_id == trivial.id
        assert archives[0].archived_reason == ArchiveReason.EXPIRED
        assert archives[0].can_restore is False

    @pytest.mark.asyncio
    async def test_edit_clears_expiry(self, memory_store, eviction):
        trivial = await memory_store.create_episodic(
            USER, CHAR, {"summary": "Talked about the weather", "importance": 0.1}
        )
        now = _days_from_now(31)
        await eviction.apply_importance_tiered_expiry(now=now)

        await memory_store.update(
            trivial.id, MemoryKind.EPISODIC, USER, {"summary": "Talked about the rain"}
        )

        assert await memory_store.get_live_memory(MemoryKind.EPISODIC, trivial.id, now)


class TestArchiveOldest:
    @pytest.mark.asyncio
    async def test_falls_back_to_other_kinds(self, memory_store, eviction):
        await memory_store.create_semantic(
            USER, CHAR, {"key": "a", "value": "important", "importance": 0.9}
        )
        weak = await memory_store.create_emotional(
            USER, CHAR, {"trigger": "a small joke", "importance": 0.2}
        )
        config = await memory_store.get_config(USER, CHAR)

        archive = await eviction.archive_oldest(config)

        assert archive.original_memory_id == weak.id
        assert archive.memory_type == MemoryKind.EMOTIONAL

    @pytest.mark.asyncio
    async def test_empty_config_raises(self, memory_store, eviction):
        config = await memory_store.get_or_create_config(USER, CHAR)

        with pytest.raises(MemoryCapacityError):
            await eviction.archive_oldest(config)

    @pytest.mark.asyncio
    async def test_purge_expired_archives(self, memory_store, eviction):
        memory = await memory_store.create_episodic(USER, CHAR, {"summary": "Hello"})
        await memory_store.delete(memory.id, MemoryKind.EPISODIC, USER)

        assert await eviction.purge_expired_archives(now=_days_from_now(29)) == 0
        assert await eviction.purge_expired_archives(now=_days_from_now(31)) == 1
        assert await memory_store.list_archives(USER, CHAR) == []
