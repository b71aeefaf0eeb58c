"""Tests for summarization output parsing and the hybrid fact extractor."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from companion_memory.config import LLMConfig
from companion_memory.exceptions import ExtractionParseError, LLMProviderError
from companion_memory.extraction import (
    HYBRID_IMPORTANCE,
    HybridExtractor,
    has_important_pattern,
    parse_summarization_output,
)
from companion_memory.llm import parse_json_response
from companion_memory.models import EmotionType, MemoryKind, SemanticCategory

USER = "user-1"
CHAR = "char-1"


def make_llm(response: str | dict = "{}") -> AsyncMock:
    """Create a mock completion provider returning *response* as text."""
    if isinstance(response, dict):
        response = json.dumps(response)
    mock = AsyncMock()
    mock.complete.return_value = response
    return mock


# ---------------------------------------------------------------------------
# Pattern pre-filter
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "text",
    [
        "My birthday is on May 3rd",
        "I really love spicy ramen",
        "Please remember this: I'm allergic to peanuts",
        "I got a new job at the bakery",
        "내 생일은 5월 3일이야",
        "내가 좋아하는 음식은 떡볶이야",
        "이거 꼭 기억해",
    ],
)
def test_important_patterns_match(text):
    assert has_important_pattern(text)


@pytest.mark.parametrize(
    "text",
    ["How's the weather today?", "lol", "안녕하세요", "What are you doing?"],
)
def test_small_talk_does_not_match(text):
    assert not has_important_pattern(text)


# ---------------------------------------------------------------------------
# JSON parsing
# ---------------------------------------------------------------------------


class TestParseJson:
    def test_strips_code_fences(self):
        assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}

    @pytest.mark.parametrize("raw", ["", "   ", "not json at all", '{"a": '])
    def test_invalid_raises(self, raw):
        with pytest.raises(ExtractionParseError):
            parse_json_response(raw)


class TestParseSummarizationOutput:
    def test_normalizes_values(self):
        raw = json.dumps(
            {
                "episodicMemory": {"summary": "  We baked cookies.  ", "importance": 1.7},
                "semanticMemories": [
                    {"category": "preference", "key": "snack", "value": "cookies"},
                    {"category": "???", "key": "city", "value": "Seoul", "confidence": -2},
                    {"category": "HABIT", "key": "", "value": "missing key"},
                    "not an object",
                ],
                "emotionalMemories": [
                    {"emotion": "Joyful", "intensity": "0.4", "trigger": "warm cookies"},
                    {"emotion": "happy"},
                ],
            }
        )

        result = parse_summarization_output(raw)

        assert result.episodic.summary == "We baked cookies."
        assert result.episodic.importance == 1.0
        assert [s.key for s in result.semantic] == ["snack", "city"]
        assert result.semantic[0].category == SemanticCategory.PREFERENCE
        assert result.semantic[1].category == SemanticCategory.OTHER
        assert result.semantic[1].confidence == 0.0
        assert len(result.emotional) == 1
        assert result.emotional[0].emotion == EmotionType.NEUTRAL
        assert result.emotional[0].intensity == 0.4

    def test_missing_sections_are_empty(self):
        result = parse_summarization_output("{}")

        assert result.episodic is None
        assert result.semantic == []
        assert result.emotional == []

    def test_non_object_raises(self):
        with pytest.raises(ExtractionParseError):
            parse_summarization_output('["a", "b"]')


# ---------------------------------------------------------------------------
# Hybrid extractor
# ---------------------------------------------------------------------------


class TestHybridExtractor:
    @pytest.mark.asyncio
    async def test_no_pattern_skips_llm(self, memory_store):
        llm = make_llm({"hasInfo": True, "key": "x", "value": "y"})
        extractor = HybridExtractor(llm, memory_store)

        info = await extractor.extract_important_info("lol", "Mika")

        assert info.has_info is False
        llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_uses_extraction_model(self, memory_store):
        llm = make_llm(
            {
                "hasInfo": True,
                "category": "PERSONAL_INFO",
                "key": "birthday",
                "value": "May 3rd",
                "confidence": 0.95,
            }
        )
        extractor = HybridExtractor(llm, memory_store, LLMConfig(api_key="k"))

        info = await extractor.extract_important_info("My birthday is May 3rd", "Mika")

        assert info.has_info is True
        assert info.category == SemanticCategory.PERSONAL_INFO
        assert info.key == "birthday"
        kwargs = llm.complete.call_args.kwargs
        assert kwargs["model"] == "gpt-3.5-turbo"
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 200
        assert "Mika" in llm.complete.call_args.args[0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        ["definitely not json", '{"hasInfo": false}', '{"hasInfo": true, "key": ""}'],
    )
    async def test_nothing_found(self, memory_store, response):
        extractor = HybridExtractor(make_llm(response), memory_store)

        info = await extractor.extract_important_info("I love rainy days", "Mika")

        assert info.has_info is False

    @pytest.mark.asyncio
    async def test_provider_errors_propagate(self, memory_store):
        llm = make_llm()
        llm.complete.side_effect = LLMProviderError("timeout")
        extractor = HybridExtractor(llm, memory_store)

        with pytest.raises(LLMProviderError):
            await extractor.extract_important_info("My name is Alex", "Mika")

    @pytest.mark.asyncio
    async def test_extract_and_store(self, memory_store):
        llm = make_llm(
            {"hasInfo": True, "category": "PREFERENCE", "key": "food", "value": "ramen"}
        )
        extractor = HybridExtractor(llm, memory_store)

        memory = await extractor.extract_and_store(
            USER, CHAR, "msg-1", "I really love ramen", "Mika"
        )

        assert memory.importance == HYBRID_IMPORTANCE
        assert memory.source_message_id == "msg-1"
        stored = await memory_store.get(memory.id, MemoryKind.SEMANTIC, USER)
        assert stored.value == "ramen"
        assert stored.category == SemanticCategory.PREFERENCE

    @pytest.mark.asyncio
    async def test_extract_and_store_nothing(self, memory_store):
        extractor = HybridExtractor(make_llm({"hasInfo": False}), memory_store)

        assert await extractor.extract_and_store(USER, CHAR, "m", "I want pizza", "Mika") is None
        assert await memory_store.get_config(USER, CHAR) is None
