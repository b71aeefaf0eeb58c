"""Tests for SQLiteStore schema, transactions, configs and the chat log."""

from __future__ import annotations

import asyncio

import pytest

from companion_memory.models import ChatMessage, MemoryConfigRecord


async def _table_names(store) -> set[str]:
    async with store._db.execute(
        "SELECT name FROM sqlite_master WHERE type='table'"
    ) as cursor:
        rows = await cursor.fetchall()
    return {r[0] for r in rows}


@pytest.mark.asyncio
async def test_all_tables_exist(store):
    names = await _table_names(store)
    for table in (
        "memory_configs",
        "episodic_memories",
        "semantic_memories",
        "emotional_memories",
        "memory_embeddings",
        "embedding_cache",
        "chat_messages",
        "chat_counters",
        "summarization_jobs",
        "archived_memories",
        "summary_archives",
    ):
        assert table in names


@pytest.mark.asyncio
async def test_initialize_is_idempotent(tmp_path):
    from companion_memory.storage.sqlite_store import SQLiteStore

    db_path = str(tmp_path / "nested" / "memory.db")
    first = SQLiteStore(db_path=db_path)
    await first.initialize()
    await first.close()

    second = SQLiteStore(db_path=db_path)
    await second.initialize()
    assert "memory_configs" in await _table_names(second)
    await second.close()


@pytest.mark.asyncio
async def test_upsert_config_keeps_first_row(store):
    first = MemoryConfigRecord(user_id="u1", character_id="c1", max_memories=30)
    row = await store.upsert_config(first.to_row())
    assert row["id"] == first.id

    second = MemoryConfigRecord(user_id="u1", character_id="c1", max_memories=99)
    row = await store.upsert_config(second.to_row())
    assert row["id"] == first.id
    assert row["max_memories"] == 30
    assert row["last_access_at"] == second.to_row()["last_access_at"]


@pytest.mark.asyncio
async def test_adjust_total_memories_never_negative(store):
    config = MemoryConfigRecord(user_id="u1", character_id="c1")
    await store.upsert_config(config.to_row())

    await store.adjust_total_memories(config.id, -5)
    row = await store.get_config_by_id(config.id)
    assert row["total_memories"] == 0


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(store):
    config = MemoryConfigRecord(user_id="u1", character_id="c1")

    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.upsert_config(config.to_row())
            raise RuntimeError("boom")

    assert await store.get_config("u1", "c1") is None


@pytest.mark.asyncio
async def test_reads_wait_for_open_transaction(store):
    config = MemoryConfigRecord(user_id="u1", character_id="c1")
    written = asyncio.Event()
    release = asyncio.Event()

    async def writer():
        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.upsert_config(config.to_row())
                written.set()
                await release.wait()
                raise RuntimeError("abort")

    task = asyncio.create_task(writer())
    await written.wait()
    read = asyncio.create_task(store.get_config("u1", "c1"))
    await asyncio.sleep(0.05)
    assert not read.done()

    release.set()
    await task
    assert await read is None


@pytest.mark.asyncio
async def test_nested_transaction_joins_outer(store):
    config = MemoryConfigRecord(user_id="u1", character_id="c1")

    async with store.transaction():
        async with store.transaction():
            await store.upsert_config(config.to_row())
        await store.adjust_total_memories(config.id, 2)

    row = await store.get_config_by_id(config.id)
    assert row["total_memories"] == 2


@pytest.mark.asyncio
async def test_update_rejects_unknown_columns(store):
    config = MemoryConfigRecord(user_id="u1", character_id="c1")
    await store.upsert_config(config.to_row())

    with pytest.raises(ValueError):
        await store.update_config(config.id, {"user_id": "someone-else"})


@pytest.mark.asyncio
async def test_chat_counter_increments(store):
    assert await store.get_chat_counter("chat-1") == 0
    assert await store.increment_chat_counter("chat-1", "2026-01-01T00:00:00+00:00") == 1
    assert await store.increment_chat_counter("chat-1", "2026-01-01T00:00:01+00:00") == 2

    await store.delete_chat_counter("chat-1")
    assert await store.get_chat_counter("chat-1") == 0


@pytest.mark.asyncio
async def test_unsummarized_messages_in_insertion_order(store):
    ids = []
    for i in range(3):
        msg = ChatMessage(
            chat_id="chat-1",
            user_id="u1",
            character_id="c1",
            role="user",
            content=f"message {i}",
            tokens=10 + i,
        )
        ids.append(await store.insert_chat_message(msg.to_row()))

    rows = await store.list_unsummarized_messages("chat-1")
    assert [r["id"] for r in rows] == ids
    assert await store.sum_unsummarized_tokens("chat-1") == 33

    await store.mark_messages_summarized(ids[:2], "job-1", '["m1"]', "2026-01-01T00:00:00+00:00")
    rows = await store.list_unsummarized_messages("chat-1")
    assert [r["id"] for r in rows] == ids[2:]
    assert await store.sum_unsummarized_tokens("chat-1") == 12
