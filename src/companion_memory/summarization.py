"""Context-pressure summarization of the raw chat log into long-term memories.

When the unsummarized part of a chat fills too much of the model's context
window, the oldest half of it becomes a summarization job. The job runs on
the background queue: the LLM turns the batch into episodic, semantic and
emotional memories, which are written together with the summarized flags,
the summary archive and the job's completion in one transaction.
"""

from __future__ import annotations

import json
import math
from datetime import datetime, timedelta, timezone

from loguru import logger

from .config import LLMConfig, SummarizationConfig
from .exceptions import (
    InsufficientMessagesError,
    JobStateError,
    SummarizationError,
    SummarizationInProgressError,
    TaskQueueFullError,
)
from .extraction import (
    DEFAULT_PERSONALITY,
    SUMMARIZATION_SYSTEM_PROMPT,
    SUMMARIZATION_USER_PROMPT,
    format_transcript,
    parse_summarization_output,
)
from .llm import CompletionProvider
from .memory_store import MemoryStore
from .models import (
    ContextUsage,
    EmotionalMemoryCreate,
    EpisodicMemoryCreate,
    JobStatus,
    MemoryRecord,
    MessageRange,
    SemanticMemoryCreate,
    SummarizationJob,
    SummarizationResult,
    SummaryArchive,
    from_iso,
    to_iso,
)
from .storage.sqlite_store import SQLiteStore
from .task_queue import BackgroundTaskQueue
from .token_counter import TokenCounter


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SummarizationPipeline:
    """Creates and processes summarization jobs for chats."""

    def __init__(
        self,
        store: SQLiteStore,
        memory_store: MemoryStore,
        llm: CompletionProvider,
        task_queue: BackgroundTaskQueue,
        config: SummarizationConfig | None = None,
        llm_config: LLMConfig | None = None,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize the pipeline.

        Args:
            store: SQLite store holding messages and jobs
            memory_store: Memory store used to write extracted memories
            llm: Completion provider for the summarization prompt
            task_queue: Queue that runs jobs in the background
            config: Summarization configuration
            llm_config: Model and sampling settings
            token_counter: Counter for token usage estimates
        """
        self._store = store
        self._memories = memory_store
        self._llm = llm
        self._queue = task_queue
        self._config = config or SummarizationConfig()
        self._llm_config = llm_config or LLMConfig()
        self._tokens = token_counter or TokenCounter()

    async def check_context_usage(
        self,
        user_id: str,
        character_id: str,
        chat_id: str,
        model: str | None = None,
    ) -> ContextUsage:
        """Measure how much of the model's context the unsummarized chat fills.

        Records the ratio and check time on the pair's memory config.
        """
        current = await self._store.sum_unsummarized_tokens(chat_id)
        limit = self._config.context_limit(model)
        usage = current / limit
        should = usage >= self._config.context_threshold

        config = await self._memories.get_config(user_id, character_id)
        if config is not None:
            await self._store.update_config(
                config.id,
                {
                    "context_usage_percent": usage,
                    "last_context_check": to_iso(_utcnow()),
                },
            )

        logger.debug(
            f"Context usage for chat {chat_id}: {current}/{limit} "
            f"({usage:.1%}), summarize={should}"
        )
        return ContextUsage(
            should_summarize=should,
            current_tokens=current,
            max_tokens=limit,
            usage_percent=usage,
        )

    async def create_summarization_job(
        self,
        user_id: str,
        character_id: str,
        chat_id: str,
        character_name: str = "",
        character_personality: str | None = None,
    ) -> str:
        """Queue summarization of the oldest unsummarized messages.

        The caller does not wait for the job.

        Returns:
            Job ID

        Raises:
            InsufficientMessagesError: If fewer than ``min_messages`` are waiting
            SummarizationInProgressError: If the chat already has an active job
            TaskQueueFullError: If the job could not be queued (job is FAILED)
        """
        async with self._store.transaction():
            rows = await self._store.list_unsummarized_messages(chat_id)
            if len(rows) < self._config.min_messages:
                raise InsufficientMessagesError(
                    chat_id, len(rows), self._config.min_messages
                )
            active = await self._store.find_active_job(chat_id)
            if active:
                raise SummarizationInProgressError(chat_id, active["id"])

            batch = rows[: math.ceil(len(rows) * self._config.summarize_ratio)]
            job = SummarizationJob(
                user_id=user_id,
                character_id=character_id,
                chat_id=chat_id,
                character_name=character_name,
                character_personality=character_personality,
                start_message_id=batch[0]["id"],
                end_message_id=batch[-1]["id"],
                message_count=len(batch),
            )
            await self._store.insert_job(job.to_row())

        logger.info(
            f"Summarization job {job.id} created for chat {chat_id} "
            f"({job.message_count} of {len(rows)} messages)"
        )

        try:
            self._queue.submit(
                f"summarization:{job.id}",
                lambda: self.process_summarization_job(job.id),
                max_attempts=1,
            )
        except TaskQueueFullError as e:
            await self._fail_job(job.id, JobStatus.PENDING, e)
            raise
        return job.id

    async def process_summarization_job(self, job_id: str) -> SummarizationResult:
        """Run a PENDING job to completion.

        Raises:
            JobStateError: If the job is missing or not PENDING
            ExtractionParseError: If the model output cannot be parsed
        """
        started = _utcnow()
        moved = await self._store.transition_job(
            job_id,
            JobStatus.PENDING.value,
            JobStatus.PROCESSING.value,
            {"started_at": to_iso(started)},
        )
        if not moved:
            current = await self._store.get_job(job_id)
            raise JobStateError(
                job_id, JobStatus.PENDING.value, current["status"] if current else None
            )

        job = SummarizationJob.from_row(await self._store.get_job(job_id))
        logger.info(f"Summarization job {job_id} processing")

        try:
            result, memories = await self._summarize(job)
        except Exception as e:
            await self._fail_job(job_id, JobStatus.PROCESSING, e)
            raise

        await self._memories.index_memories(memories)

        logger.info(
            f"Summarization job {job_id} completed: {len(result.memory_ids)} memories "
            f"from {job.message_count} messages"
        )
        return result

    async def _summarize(
        self, job: SummarizationJob
    ) -> tuple[SummarizationResult, list[MemoryRecord]]:
        messages = await self._store.get_messages_between(
            job.chat_id, job.start_message_id, job.end_message_id
        )
        if not messages:
            raise SummarizationError(f"No unsummarized messages found for job {job.id}")

        system_prompt = SUMMARIZATION_SYSTEM_PROMPT.format(
            character_name=job.character_name or "the character",
            character_personality=job.character_personality or DEFAULT_PERSONALITY,
        )
        user_prompt = SUMMARIZATION_USER_PROMPT.format(
            transcript=format_transcript(messages)
        )
        raw = await self._llm.complete(
            system_prompt,
            user_prompt,
            json_mode=True,
            model=self._llm_config.model,
            temperature=self._llm_config.temperature,
            max_tokens=self._llm_config.max_tokens,
        )
        extraction = parse_summarization_output(raw)
        tokens_used = (
            self._tokens.count(system_prompt)
            + self._tokens.count(user_prompt)
            + self._tokens.count(raw)
        )

        now = _utcnow()
        message_ids = [m["id"] for m in messages]
        message_range = MessageRange(
            start_id=messages[0]["id"],
            end_id=messages[-1]["id"],
            start_time=from_iso(messages[0]["created_at"]),
            end_time=from_iso(messages[-1]["created_at"]),
        )

        memories: list[MemoryRecord] = []
        async with self._store.transaction():
            config = await self._memories.get_or_create_config(
                job.user_id, job.character_id, now=now
            )
            if extraction.episodic:
                memories.append(
                    await self._memories.insert_episodic(
                        config.id,
                        EpisodicMemoryCreate(
                            summary=extraction.episodic.summary,
                            importance=extraction.episodic.importance,
                            original_message_ids=message_ids,
                            message_range=message_range,
                        ),
                        now,
                    )
                )
            for fact in extraction.semantic:
                memories.append(
                    await self._memories.insert_semantic(
                        config.id,
                        SemanticMemoryCreate(
                            category=fact.category,
                            key=fact.key,
                            value=fact.value,
                            confidence=fact.confidence,
                            importance=fact.importance,
                        ),
                        now,
                    )
                )
            for moment in extraction.emotional:
                memories.append(
                    await self._memories.insert_emotional(
                        config.id,
                        EmotionalMemoryCreate(
                            emotion=moment.emotion,
                            intensity=moment.intensity,
                            trigger=moment.trigger,
                            importance=moment.importance,
                        ),
                        now,
                    )
                )

            memory_ids = list(dict.fromkeys(m.id for m in memories))
            await self._store.mark_messages_summarized(
                message_ids, job.id, json.dumps(memory_ids), to_iso(now)
            )

            archive = SummaryArchive(
                user_id=job.user_id,
                character_id=job.character_id,
                chat_id=job.chat_id,
                job_id=job.id,
                original_messages=[
                    {
                        "id": m["id"],
                        "role": m["role"],
                        "content": m["content"],
                        "created_at": m["created_at"],
                    }
                    for m in messages
                ],
                summary={
                    "episodic": extraction.episodic.summary if extraction.episodic else None,
                    "semantic": [f"{s.key}: {s.value}" for s in extraction.semantic],
                    "emotional": [e.trigger for e in extraction.emotional],
                },
                message_range=message_range,
                memory_ids=memory_ids,
                created_at=now,
            )
            await self._store.insert_summary_archive(archive.to_row())

            result = SummarizationResult(
                job_id=job.id,
                extraction=extraction,
                memory_ids=memory_ids,
                tokens_used=tokens_used,
            )
            completed = await self._store.transition_job(
                job.id,
                JobStatus.PROCESSING.value,
                JobStatus.COMPLETED.value,
                {
                    "completed_at": to_iso(now),
                    "result": json.dumps(result.model_dump(mode="json")),
                },
            )
            if not completed:
                current = await self._store.get_job(job.id)
                raise JobStateError(
                    job.id,
                    JobStatus.PROCESSING.value,
                    current["status"] if current else None,
                )

        return result, memories

    async def _fail_job(
        self, job_id: str, from_status: JobStatus, error: Exception
    ) -> None:
        message = f"{type(error).__name__}: {error}"
        logger.error(f"Summarization job {job_id} failed: {message}")
        try:
            await self._store.transition_job(
                job_id,
                from_status.value,
                JobStatus.FAILED.value,
                {"error": message, "completed_at": to_iso(_utcnow())},
            )
        except Exception as e:
            logger.error(f"Could not mark job {job_id} as failed: {e}")

    async def get_job(self, job_id: str) -> SummarizationJob | None:
        row = await self._store.get_job(job_id)
        return SummarizationJob.from_row(row) if row else None

    async def recover_stale_jobs(self, now: datetime | None = None) -> int:
        """Fail PROCESSING jobs that have been running longer than allowed."""
        now = now or _utcnow()
        cutoff = now - timedelta(minutes=self._config.stale_job_minutes)
        count = await self._store.fail_stale_jobs(
            to_iso(cutoff),
            to_iso(now),
            f"Job exceeded {self._config.stale_job_minutes} minutes in PROCESSING",
        )
        if count:
            logger.warning(f"Marked {count} stale summarization jobs as failed")
        return count

    async def cleanup_old_jobs(self, now: datetime | None = None) -> int:
        """Delete finished jobs older than the retention window."""
        now = now or _utcnow()
        cutoff = now - timedelta(days=self._config.job_retention_days)
        count = await self._store.delete_old_jobs(to_iso(cutoff))
        if count:
            logger.info(f"Deleted {count} old summarization jobs")
        return count
