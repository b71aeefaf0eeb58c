"""End-to-end tests for MemoryService and the chat-turn integration hooks.

Tests cover:
- Component lifecycle (initialize / close)
- before_message_process prompt augmentation and fallback
- after_message_process logging, hybrid extraction and summarization trigger
- Facade CRUD, search, archives and maintenance
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from companion_memory.config import MemoryConfig
from companion_memory.memory_service import MemoryService
from companion_memory.models import IncomingMessage, JobStatus, MemoryKind

USER = "user-1"
CHAR = "char-1"
CHAT = "chat-1"
BASE_PROMPT = "You are Mika, a cheerful companion."

SUMMARY_JSON = json.dumps(
    {
        "episodicMemory": {"summary": "Alex told Mika about their ramen habit.", "importance": 0.6},
        "semanticMemories": [
            {"category": "HABIT", "key": "lunch", "value": "ramen every Friday"},
        ],
        "emotionalMemories": [],
    }
)

EXTRACTION_JSON = json.dumps(
    {
        "hasInfo": True,
        "category": "PREFERENCE",
        "key": "favorite food",
        "value": "spicy ramen",
        "confidence": 0.9,
    }
)


def _make_llm() -> AsyncMock:
    """Completion mock answering summarization and extraction prompts."""

    async def _complete(system_prompt, user_prompt, **kwargs):
        if "conversation analyst" in system_prompt:
            return SUMMARY_JSON
        return EXTRACTION_JSON

    mock = AsyncMock()
    mock.complete.side_effect = _complete
    return mock


@pytest.fixture
def config(tmp_path):
    return MemoryConfig(
        storage={"sqlite_db_path": str(tmp_path / "memory.db")},
        llm={"api_key": "test-key"},
        embedding={"api_key": "test-key"},
        summarization={
            "default_model": "test-model",
            "model_context_limits": {"test-model": 10000},
            "context_check_interval": 2,
        },
        task_queue={"retry_delay_seconds": 0.0},
        maintenance={"enabled": False},
    )


@pytest.fixture
async def service(config, embedding_provider):
    svc = MemoryService(config, embedding_provider=embedding_provider, llm=_make_llm())
    await svc.initialize()
    yield svc
    await svc.close()


def _message(content: str, role: str = "user", tokens: int = 100) -> IncomingMessage:
    return IncomingMessage(
        chat_id=CHAT,
        user_id=USER,
        character_id=CHAR,
        role=role,
        content=content,
        tokens=tokens,
        model="test-model",
    )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_components_require_initialize(self, config, embedding_provider):
        svc = MemoryService(config, embedding_provider=embedding_provider, llm=_make_llm())

        with pytest.raises(RuntimeError):
            _ = svc.memory_store

    @pytest.mark.asyncio
    async def test_initialize_starts_queue(self, service):
        assert service.task_queue.running
        assert not service.maintenance.running

    @pytest.mark.asyncio
    async def test_close_is_safe_twice(self, service):
        await service.close()
        await service.close()
        assert not service.task_queue.running


class TestTurnHooks:
    @pytest.mark.asyncio
    async def test_prompt_unchanged_without_memories(self, service):
        prompt = await service.before_message_process(USER, CHAR, "Mika", "hi", BASE_PROMPT)

        assert prompt.system_prompt == BASE_PROMPT
        assert prompt.rag_context.memories == []
        assert await service.get_config(USER, CHAR)

    @pytest.mark.asyncio
    async def test_prompt_includes_memories(self, service):
        await service.create_memory(
            USER, CHAR, MemoryKind.SEMANTIC, {"key": "favorite food", "value": "spicy ramen"}
        )

        prompt = await service.before_message_process(
            USER, CHAR, "Mika", "favorite food spicy ramen", BASE_PROMPT
        )

        assert prompt.system_prompt.startswith(BASE_PROMPT)
        assert "<Mika's memories>" in prompt.system_prompt
        assert "- favorite food: spicy ramen" in prompt.system_prompt

    @pytest.mark.asyncio
    async def test_small_talk_is_only_logged(self, service):
        result = await service.after_message_process(_message("lol"), "Mika")

        assert result.message_saved is True
        assert result.important_info_extracted is False
        assert result.context_checked is False

    @pytest.mark.asyncio
    async def test_personal_fact_is_extracted(self, service):
        result = await service.after_message_process(
            _message("I really love spicy ramen"), "Mika"
        )
        await service.task_queue.join()

        assert result.important_info_extracted is True
        page = await service.list_memories(USER, CHAR, MemoryKind.SEMANTIC)
        assert [m.key for m in page.memories] == ["favorite food"]
        assert page.memories[0].importance == 0.8

    @pytest.mark.asyncio
    async def test_context_pressure_triggers_summarization(self, service):
        results = []
        for i in range(4):
            role = "user" if i % 2 == 0 else "assistant"
            results.append(
                await service.after_message_process(
                    _message(f"turn {i}", role=role, tokens=2000), "Mika", "cheerful"
                )
            )
        await service.task_queue.join()

        assert [r.context_checked for r in results] == [False, True, False, True]
        assert [r.summarization_triggered for r in results] == [False, False, False, True]

        episodic = await service.list_memories(USER, CHAR, MemoryKind.EPISODIC)
        assert episodic.total == 1
        archives = await service.list_summary_archives(USER, CHAR)
        assert len(archives) == 1
        job = await service.get_job(archives[0].job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.message_count == 2

    @pytest.mark.asyncio
    async def test_below_threshold_does_not_summarize(self, service):
        for i in range(4):
            result = await service.after_message_process(_message(f"turn {i}", tokens=100))

        assert result.context_checked is True
        assert result.summarization_triggered is False

    @pytest.mark.asyncio
    async def test_clear_chat_counter_restarts_interval(self, service):
        await service.after_message_process(_message("turn 0"))
        await service.clear_chat_counter(CHAT)

        first = await service.after_message_process(_message("turn 1"))
        second = await service.after_message_process(_message("turn 2"))

        assert first.context_checked is False
        assert second.context_checked is True

    @pytest.mark.asyncio
    async def test_failed_save_is_reported(self, service):
        message = _message("hello")
        await service.after_message_process(message)

        duplicate = await service.after_message_process(message)

        assert duplicate.message_saved is False


class TestFacade:
    @pytest.mark.asyncio
    async def test_crud_roundtrip(self, service):
        memory = await service.create_memory(
            USER, CHAR, "episodic", {"summary": "We went to the beach"}
        )
        updated = await service.update_memory(
            memory.id, "episodic", USER, {"summary": "We went to the lake"}
        )
        assert updated.original_summary == "We went to the beach"

        archive = await service.delete_memory(memory.id, "episodic", USER)
        assert (await service.list_memories(USER, CHAR, "episodic")).total == 0

        restored = await service.restore_archive(archive.id, USER)
        fetched = await service.get_memory(restored.id, "episodic", USER)
        assert fetched.summary == "We went to the lake"

    @pytest.mark.asyncio
    async def test_search(self, service):
        await service.create_memory(
            USER, CHAR, "semantic", {"key": "pet", "value": "a cat named Mochi"}
        )

        results = await service.search_memories(USER, CHAR, "pet a cat named Mochi")

        assert results[0].memory.value == "a cat named Mochi"
        assert results[0].score >= 0.99

    @pytest.mark.asyncio
    async def test_capacity_and_manual_summarization(self, service):
        config = await service.increase_capacity(USER, CHAR, 5)
        assert config.max_memories == 35

        for i in range(4):
            await service.after_message_process(_message(f"turn {i}"))
        job_id = await service.trigger_summarization(USER, CHAR, CHAT, "Mika")
        await service.task_queue.join()

        job = await service.get_job(job_id)
        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_maintenance(self, service):
        await service.create_memory(
            USER, CHAR, "episodic", {"summary": "Chatted briefly", "importance": 0.1}
        )

        report = await service.run_maintenance(
            now=datetime.now(timezone.utc) + timedelta(days=91)
        )

        assert report.inactive_archived == 1
        assert report.errors == []
        assert (await service.list_memories(USER, CHAR, "episodic")).total == 0
