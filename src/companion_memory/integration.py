"""Chat-turn hooks connecting the memory subsystem to a conversation loop.

``before_message_process`` augments the system prompt with memories before
the chat completion; ``after_message_process`` logs the turn and triggers
extraction and summarization afterwards. Neither hook raises: memory
problems must never break a chat turn.
"""

from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger

from .config import MemoryConfig
from .exceptions import SummarizationInProgressError
from .extraction import HybridExtractor
from .memory_store import MemoryStore
from .models import (
    AugmentedPrompt,
    ChatMessage,
    IncomingMessage,
    IntegrationResult,
    RetrievalOptions,
    to_iso,
)
from .retrieval import RetrievalEngine
from .storage.sqlite_store import SQLiteStore
from .summarization import SummarizationPipeline
from .task_queue import BackgroundTaskQueue
from .token_counter import TokenCounter


class MemoryIntegration:
    """Per-turn entry points used by the chat pipeline."""

    def __init__(
        self,
        store: SQLiteStore,
        memory_store: MemoryStore,
        retrieval: RetrievalEngine,
        summarization: SummarizationPipeline,
        extractor: HybridExtractor,
        task_queue: BackgroundTaskQueue,
        config: MemoryConfig | None = None,
        token_counter: TokenCounter | None = None,
    ):
        self._store = store
        self._memories = memory_store
        self._retrieval = retrieval
        self._summarization = summarization
        self._extractor = extractor
        self._queue = task_queue
        self._config = config or MemoryConfig()
        self._tokens = token_counter or TokenCounter()

    async def before_message_process(
        self,
        user_id: str,
        character_id: str,
        character_name: str,
        user_message: str,
        base_prompt: str,
    ) -> AugmentedPrompt:
        """Build the memory-augmented system prompt for the coming completion.

        Returns:
            The augmented prompt, or the base prompt if anything fails
        """
        try:
            await self._memories.get_or_create_config(user_id, character_id)
        except Exception as e:
            logger.warning(f"Failed to refresh memory config access time: {e}")

        retrieval = self._config.retrieval
        options = RetrievalOptions(
            limit=retrieval.limit,
            min_similarity=retrieval.min_similarity,
            include_recent=retrieval.include_recent,
            max_tokens=retrieval.max_context_tokens,
        )
        try:
            return await self._retrieval.build_system_prompt_with_memory(
                base_prompt,
                user_id,
                character_id,
                character_name,
                user_message,
                options,
            )
        except Exception as e:
            logger.warning(f"Memory augmentation failed, using base prompt: {e}")
            return AugmentedPrompt(system_prompt=base_prompt)

    async def after_message_process(
        self,
        message: IncomingMessage,
        character_name: str = "",
        character_personality: str | None = None,
    ) -> IntegrationResult:
        """Persist a finished turn and run the follow-up memory work.

        User messages that look like they carry a personal fact are queued
        for hybrid extraction. Every ``context_check_interval`` messages the
        chat's context usage is checked and, if needed, summarization starts.
        """
        result = IntegrationResult()
        now = datetime.now(timezone.utc)

        try:
            tokens = (
                message.tokens
                if message.tokens is not None
                else self._tokens.count(message.content)
            )
            record = ChatMessage(
                id=message.id,
                chat_id=message.chat_id,
                user_id=message.user_id,
                character_id=message.character_id,
                role=message.role,
                content=message.content,
                tokens=tokens,
                metadata=message.metadata,
                created_at=now,
            )
            async with self._store.transaction():
                await self._store.insert_chat_message(record.to_row())
                count = await self._store.increment_chat_counter(
                    message.chat_id, to_iso(now)
                )
            result.message_saved = True
        except Exception as e:
            logger.warning(f"Failed to save chat message {message.id}: {e}")
            return result

        if message.role == "user" and self._extractor.should_extract(message.content):
            try:
                self._queue.submit(
                    f"extraction:{message.id}",
                    lambda: self._extractor.extract_and_store(
                        message.user_id,
                        message.character_id,
                        message.id,
                        message.content,
                        character_name,
                    ),
                )
                result.important_info_extracted = True
            except Exception as e:
                logger.warning(f"Failed to queue extraction for {message.id}: {e}")

        if count % self._config.summarization.context_check_interval == 0:
            try:
                usage = await self._summarization.check_context_usage(
                    message.user_id,
                    message.character_id,
                    message.chat_id,
                    model=message.model,
                )
                result.context_checked = True
                if usage.should_summarize:
                    await self._summarization.create_summarization_job(
                        message.user_id,
                        message.character_id,
                        message.chat_id,
                        character_name,
                        character_personality,
                    )
                    result.summarization_triggered = True
            except SummarizationInProgressError as e:
                logger.debug(f"Summarization skipped: {e}")
            except Exception as e:
                logger.warning(f"Context check failed for chat {message.chat_id}: {e}")

        return result

    async def clear_chat_counter(self, chat_id: str) -> None:
        """Forget a chat's message counter (e.g. when the chat is deleted)."""
        await self._store.delete_chat_counter(chat_id)
        logger.debug(f"Chat counter cleared: {chat_id}")
