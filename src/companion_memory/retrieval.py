"""RAG retrieval: similarity search, recency backfill and narrative rendering.

Retrieval sits on the chat request path, so ``generate_rag_context`` and
``build_system_prompt_with_memory`` never raise: any failure degrades to an
empty memory block and the unchanged base prompt.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from loguru import logger

from .config import RetrievalConfig
from .embedding import EmbeddingIndex
from .memory_store import MemoryStore
from .models import (
    ALL_KINDS,
    AugmentedPrompt,
    EmotionType,
    EmotionalMemory,
    EpisodicMemory,
    MemoryRecord,
    MemorySearchResult,
    RAGContext,
    RetrievalOptions,
    SemanticMemory,
)
from .token_counter import TokenCounter

EMOTION_ADJECTIVES: dict[EmotionType, str] = {
    EmotionType.HAPPY: "happy",
    EmotionType.SAD: "sad",
    EmotionType.ANGRY: "angry",
    EmotionType.FEARFUL: "afraid",
    EmotionType.SURPRISED: "surprised",
    EmotionType.DISGUSTED: "upset",
    EmotionType.NEUTRAL: "calm",
    EmotionType.EXCITED: "excited",
    EmotionType.ANXIOUS: "anxious",
    EmotionType.LOVING: "loving",
}

MEMORY_INSTRUCTION = (
    "Below are memories you share with this user. Let them shape the "
    "conversation naturally, but never mention or quote the memories directly."
)


class RetrievalEngine:
    """Finds the memories relevant to a user message and renders them."""

    def __init__(
        self,
        memory_store: MemoryStore,
        embedding_index: EmbeddingIndex,
        config: RetrievalConfig | None = None,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize retrieval engine.

        Args:
            memory_store: Memory store for loading and reinforcing memories
            embedding_index: Similarity search over memory vectors
            config: Retrieval configuration
            token_counter: Counter used for the context token budget
        """
        self._memories = memory_store
        self._embeddings = embedding_index
        self._config = config or RetrievalConfig()
        self._tokens = token_counter or TokenCounter()

    def default_options(self) -> RetrievalOptions:
        return RetrievalOptions(
            limit=self._config.limit,
            min_similarity=self._config.min_similarity,
            include_recent=self._config.include_recent,
            max_tokens=self._config.max_context_tokens,
        )

    def _result(self, memory: MemoryRecord, score: float) -> MemorySearchResult:
        rank = (
            self._config.similarity_weight * score
            + self._config.importance_weight * memory.importance
        )
        return MemorySearchResult(
            memory=memory, score=score, distance=1.0 - score, rank_score=rank
        )

    async def search_relevant_memories(
        self,
        user_id: str,
        character_id: str,
        query: str,
        options: RetrievalOptions | None = None,
        now: datetime | None = None,
    ) -> list[MemorySearchResult]:
        """Rank the pair's memories against a query.

        Similarity hits are loaded and reinforced; when there are fewer than
        ``limit`` of them, recent or important memories fill the gap with a
        neutral score.

        Args:
            user_id: User identifier
            character_id: Character identifier
            query: The user's message
            options: Retrieval options (config defaults if None)
            now: Reference time for expiry checks and reinforcement

        Returns:
            Up to ``limit`` results ordered by rank score
        """
        options = options or self.default_options()
        now = now or datetime.now(timezone.utc)
        config = await self._memories.get_config(user_id, character_id)
        if config is None:
            return []

        types = list(options.memory_types) or list(ALL_KINDS)
        results: list[MemorySearchResult] = []
        seen: set[str] = set()

        hits = []
        if query.strip():
            try:
                hits = await self._embeddings.search_similar_memories(
                    query,
                    config.id,
                    types,
                    limit=options.limit * self._config.candidate_multiplier,
                    min_similarity=options.min_similarity,
                )
            except Exception as e:
                logger.warning(f"Similarity search failed, using backfill only: {e}")

        for hit in hits:
            if hit.memory_id in seen:
                continue
            memory = await self._memories.get_live_memory(
                hit.memory_type, hit.memory_id, now
            )
            if memory is None:
                continue
            memory = await self._memories.touch(memory, now)
            seen.add(memory.id)
            results.append(self._result(memory, hit.similarity))

        if len(results) < options.limit and options.include_recent:
            remaining = options.limit - len(results)
            per_kind = math.ceil(remaining / len(types))
            for kind in types:
                if len(results) >= options.limit:
                    break
                added = 0
                candidates = await self._memories.recent_memories(
                    config.id, kind, per_kind + len(seen), now
                )
                for memory in candidates:
                    # Backfill only fills open slots
                    if added >= per_kind or len(results) >= options.limit:
                        break
                    if memory.id in seen:
                        continue
                    seen.add(memory.id)
                    results.append(self._result(memory, self._config.fallback_score))
                    added += 1

        results.sort(key=lambda r: r.rank_score, reverse=True)
        logger.debug(
            f"Retrieved {len(results[: options.limit])} memories "
            f"({len(hits)} similarity hits) for config {config.id}"
        )
        return results[: options.limit]

    async def generate_rag_context(
        self,
        user_id: str,
        character_id: str,
        query: str,
        character_name: str,
        options: RetrievalOptions | None = None,
    ) -> RAGContext:
        """Retrieve memories and render them as the character's narrative.

        Lowest-ranked memories are dropped until the block fits
        ``options.max_tokens``. Never raises.
        """
        options = options or self.default_options()
        try:
            results = await self.search_relevant_memories(
                user_id, character_id, query, options
            )
            while results:
                formatted = self.format_memories(results, character_name)
                tokens = self._tokens.count(formatted)
                if tokens <= options.max_tokens:
                    return RAGContext(
                        memories=results,
                        formatted_context=formatted,
                        total_tokens=tokens,
                    )
                results = results[:-1]
        except Exception as e:
            logger.warning(f"RAG context generation failed: {e}")
        return RAGContext()

    @staticmethod
    def format_memory(memory: MemoryRecord) -> str:
        """One narrative line for a memory."""
        if isinstance(memory, EpisodicMemory):
            return f"- {memory.summary}"
        if isinstance(memory, SemanticMemory):
            return f"- {memory.key}: {memory.value}"
        if isinstance(memory, EmotionalMemory):
            adjective = EMOTION_ADJECTIVES.get(memory.emotion, memory.emotion.value)
            return f"- felt {adjective} about {memory.trigger}"
        raise TypeError(f"Unknown memory type: {type(memory).__name__}")

    def format_memories(
        self, results: list[MemorySearchResult], character_name: str
    ) -> str:
        """Render results as sections inside a ``<{name}'s memories>`` block."""
        episodic, semantic, emotional = [], [], []
        for result in results:
            memory = result.memory
            line = self.format_memory(memory)
            if isinstance(memory, EpisodicMemory):
                episodic.append(line)
            elif isinstance(memory, SemanticMemory):
                semantic.append(line)
            else:
                emotional.append(line)

        sections = []
        if episodic:
            sections.append("[Things we talked about before]\n" + "\n".join(episodic))
        if semantic:
            sections.append("[Things I know about you]\n" + "\n".join(semantic))
        if emotional:
            sections.append(
                "[Emotionally significant moments between us]\n" + "\n".join(emotional)
            )
        if not sections:
            return ""

        body = "\n\n".join(sections)
        return f"<{character_name}'s memories>\n{body}\n</{character_name}'s memories>"

    async def build_system_prompt_with_memory(
        self,
        base_prompt: str,
        user_id: str,
        character_id: str,
        character_name: str,
        user_message: str,
        options: RetrievalOptions | None = None,
    ) -> AugmentedPrompt:
        """Append the memory block to a system prompt. Never raises."""
        rag_context = await self.generate_rag_context(
            user_id, character_id, user_message, character_name, options
        )
        if not rag_context.formatted_context:
            return AugmentedPrompt(system_prompt=base_prompt, rag_context=rag_context)

        system_prompt = (
            f"{base_prompt}\n\n---\n{MEMORY_INSTRUCTION}\n\n"
            f"{rag_context.formatted_context}\n---"
        )
        return AugmentedPrompt(system_prompt=system_prompt, rag_context=rag_context)
