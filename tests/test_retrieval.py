"""Tests for RetrievalEngine search, backfill, rendering and prompt building."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from companion_memory.models import (
    EmotionalMemory,
    EmotionType,
    MemoryKind,
    MemorySearchResult,
    RetrievalOptions,
)
from companion_memory.retrieval import MEMORY_INSTRUCTION, RetrievalEngine

USER = "user-1"
CHAR = "char-1"


class TestSearch:
    @pytest.mark.asyncio
    async def test_no_config_returns_nothing(self, retrieval):
        assert await retrieval.search_relevant_memories(USER, CHAR, "hello") == []

    @pytest.mark.asyncio
    async def test_similar_memory_is_found_and_reinforced(self, retrieval, memory_store):
        memory = await memory_store.create_semantic(
            USER, CHAR, {"key": "favorite food", "value": "spicy ramen noodles"}
        )

        results = await retrieval.search_relevant_memories(
            USER,
            CHAR,
            "favorite food spicy ramen noodles",
            RetrievalOptions(include_recent=False),
        )

        assert len(results) == 1
        assert results[0].memory.id == memory.id
        assert results[0].score >= 0.99
        assert results[0].distance == pytest.approx(1.0 - results[0].score)
        assert results[0].rank_score == pytest.approx(
            0.6 * results[0].score + 0.4 * memory.importance
        )
        stored = await memory_store.get(memory.id, MemoryKind.SEMANTIC, USER)
        assert stored.access_count == 1

    @pytest.mark.asyncio
    async def test_backfill_uses_neutral_score(self, retrieval, memory_store):
        memory = await memory_store.create_episodic(
            USER, CHAR, {"summary": "We talked about the weather"}
        )

        results = await retrieval.search_relevant_memories(
            USER, CHAR, "quantum chromodynamics"
        )

        assert [r.memory.id for r in results] == [memory.id]
        assert results[0].score == 0.5
        stored = await memory_store.get(memory.id, MemoryKind.EPISODIC, USER)
        assert stored.access_count == 0

    @pytest.mark.asyncio
    async def test_without_backfill_nothing_matches(self, retrieval, memory_store):
        await memory_store.create_episodic(
            USER, CHAR, {"summary": "We talked about the weather"}
        )

        results = await retrieval.search_relevant_memories(
            USER, CHAR, "quantum chromodynamics", RetrievalOptions(include_recent=False)
        )

        assert results == []

    @pytest.mark.asyncio
    async def test_limit_and_ranking(self, retrieval, memory_store):
        for i in range(6):
            await memory_store.create_semantic(
                USER, CHAR, {"key": f"fact {i}", "value": "filler", "importance": i / 10}
            )

        results = await retrieval.search_relevant_memories(
            USER,
            CHAR,
            "unrelated query words",
            RetrievalOptions(limit=3, memory_types=[MemoryKind.SEMANTIC]),
        )

        assert len(results) == 3
        ranks = [r.rank_score for r in results]
        assert ranks == sorted(ranks, reverse=True)

    @pytest.mark.asyncio
    async def test_backfill_never_displaces_similarity_hits(self, retrieval, memory_store):
        hits = [
            await memory_store.create_episodic(
                USER, CHAR, {"summary": f"cats cats cats {word}", "importance": 0.1}
            )
            for word in ("nap", "play", "purr", "eat")
        ]
        await memory_store.create_episodic(
            USER, CHAR, {"summary": "Went hiking yesterday", "importance": 0.95}
        )
        await memory_store.create_semantic(
            USER, CHAR, {"key": "job", "value": "teacher", "importance": 0.95}
        )
        await memory_store.create_emotional(
            USER, CHAR, {"emotion": "happy", "trigger": "moving day", "importance": 0.95}
        )

        results = await retrieval.search_relevant_memories(
            USER, CHAR, "cats cats cats", RetrievalOptions(limit=5)
        )

        ids = {r.memory.id for r in results}
        assert len(results) == 5
        assert {m.id for m in hits} <= ids
        assert sum(1 for r in results if r.score == 0.5) == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_backfill(
        self, memory_store, embedding_index, token_counter
    ):
        memory = await memory_store.create_episodic(USER, CHAR, {"summary": "Hello"})
        embedding_index.search_similar_memories = AsyncMock(
            side_effect=RuntimeError("provider down")
        )
        engine = RetrievalEngine(memory_store, embedding_index, token_counter=token_counter)

        results = await engine.search_relevant_memories(USER, CHAR, "hello")

        assert [r.memory.id for r in results] == [memory.id]


class TestRagContext:
    @pytest.mark.asyncio
    async def test_empty_context_without_memories(self, retrieval):
        context = await retrieval.generate_rag_context(USER, CHAR, "hi", "Mika")

        assert context.memories == []
        assert context.formatted_context == ""
        assert context.total_tokens == 0

    @pytest.mark.asyncio
    async def test_never_raises(self, memory_store, embedding_index):
        memory_store.get_config = AsyncMock(side_effect=RuntimeError("db locked"))
        engine = RetrievalEngine(memory_store, embedding_index)

        context = await engine.generate_rag_context(USER, CHAR, "hi", "Mika")
        prompt = await engine.build_system_prompt_with_memory(
            "You are Mika.", USER, CHAR, "Mika", "hi"
        )

        assert context.formatted_context == ""
        assert prompt.system_prompt == "You are Mika."

    @pytest.mark.asyncio
    async def test_sections_are_rendered(self, retrieval, memory_store):
        await memory_store.create_episodic(USER, CHAR, {"summary": "We watched a movie"})
        await memory_store.create_semantic(USER, CHAR, {"key": "pet", "value": "a cat"})
        await memory_store.create_emotional(
            USER, CHAR, {"emotion": "happy", "trigger": "the movie ending"}
        )

        context = await retrieval.generate_rag_context(USER, CHAR, "anything", "Mika")

        text = context.formatted_context
        assert text.startswith("<Mika's memories>")
        assert text.endswith("</Mika's memories>")
        assert "[Things we talked about before]\n- We watched a movie" in text
        assert "[Things I know about you]\n- pet: a cat" in text
        assert "- felt happy about the movie ending" in text
        assert context.total_tokens > 0

    @pytest.mark.asyncio
    async def test_trimmed_to_token_budget(self, retrieval, memory_store, token_counter):
        await memory_store.create_semantic(
            USER, CHAR, {"key": "pet", "value": "a cat", "importance": 0.9}
        )
        await memory_store.create_semantic(
            USER,
            CHAR,
            {
                "key": "job",
                "value": "works as a marine biologist in a large aquarium",
                "importance": 0.1,
            },
        )
        full = await retrieval.search_relevant_memories(USER, CHAR, "anything")
        one = retrieval.format_memories(full[:1], "Mika")
        budget = token_counter.count(one)

        context = await retrieval.generate_rag_context(
            USER, CHAR, "anything", "Mika", RetrievalOptions(max_tokens=budget)
        )

        assert len(context.memories) == 1
        assert context.memories[0].memory.key == "pet"
        assert context.total_tokens <= budget


class TestFormatting:
    def test_emotion_adjectives(self):
        memory = EmotionalMemory(
            config_id="cfg", emotion=EmotionType.FEARFUL, trigger="the thunderstorm"
        )

        assert RetrievalEngine.format_memory(memory) == "- felt afraid about the thunderstorm"

    def test_no_results_render_nothing(self, retrieval):
        assert retrieval.format_memories([], "Mika") == ""

    @pytest.mark.asyncio
    async def test_system_prompt_appends_block(self, retrieval, memory_store):
        await memory_store.create_semantic(USER, CHAR, {"key": "pet", "value": "a cat"})

        prompt = await retrieval.build_system_prompt_with_memory(
            "You are Mika.", USER, CHAR, "Mika", "do you remember my pet"
        )

        assert prompt.system_prompt.startswith("You are Mika.\n\n---\n")
        assert MEMORY_INSTRUCTION in prompt.system_prompt
        assert prompt.system_prompt.endswith("</Mika's memories>\n---")
        assert isinstance(prompt.rag_context.memories[0], MemorySearchResult)
