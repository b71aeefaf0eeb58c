"""Memory Service - facade over the companion memory subsystem.

Wires storage, providers, the memory store, retrieval, summarization,
hybrid extraction, the background queue and maintenance into one object that
a chat backend holds for its lifetime.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from loguru import logger

from .config import MemoryConfig
from .embedding import EmbeddingIndex, EmbeddingProvider, create_embedding_provider
from .eviction import EvictionManager
from .extraction import HybridExtractor
from .integration import MemoryIntegration
from .llm import CompletionProvider, OpenAICompletionProvider
from .maintenance import MaintenanceScheduler
from .memory_store import MemoryStore
from .models import (
    ArchiveRecord,
    AugmentedPrompt,
    ContextUsage,
    IncomingMessage,
    IntegrationResult,
    MaintenanceReport,
    MemoryConfigRecord,
    MemoryKind,
    MemoryPage,
    MemoryRecord,
    MemorySearchResult,
    RetrievalOptions,
    SummarizationJob,
    SummaryArchive,
)
from .retrieval import RetrievalEngine
from .storage.sqlite_store import SQLiteStore
from .storage.vector_index import SQLiteVectorIndex
from .summarization import SummarizationPipeline
from .task_queue import BackgroundTaskQueue
from .token_counter import TokenCounter


class MemoryServiceInterface(Protocol):
    """Protocol for the memory API a chat backend depends on."""

    async def before_message_process(
        self,
        user_id: str,
        character_id: str,
        character_name: str,
        user_message: str,
        base_prompt: str,
    ) -> AugmentedPrompt:
        """Build the memory-augmented system prompt for a turn."""
        ...

    async def after_message_process(
        self,
        message: IncomingMessage,
        character_name: str = "",
        character_personality: str | None = None,
    ) -> IntegrationResult:
        """Persist a finished turn and schedule memory work."""
        ...

    async def search_memories(
        self,
        user_id: str,
        character_id: str,
        query: str,
        options: RetrievalOptions | None = None,
    ) -> list[MemorySearchResult]:
        """Search a pair's memories by free-text query."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


class MemoryService:
    """Main memory service facade.

    Provides:
    - Memory-augmented system prompts and post-turn processing
    - Memory CRUD with per-(user, character) capacity
    - Similarity search over memories
    - Context-pressure summarization jobs
    - Archive listing and restore
    - Periodic maintenance

    Components are created on ``initialize()``; providers can be injected
    for tests or alternative backends.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        llm: CompletionProvider | None = None,
    ):
        """Initialize memory service.

        Args:
            config: Memory configuration (uses defaults if not provided)
            embedding_provider: Embedding provider (built from config if None)
            llm: Completion provider (OpenAI from config if None)
        """
        self.config = config or MemoryConfig()
        self._embedding_provider = embedding_provider
        self._llm = llm
        self._store: SQLiteStore | None = None
        self._store_initialized = False
        self._token_counter: TokenCounter | None = None
        self._embedding_index: EmbeddingIndex | None = None
        self._eviction: EvictionManager | None = None
        self._memory_store: MemoryStore | None = None
        self._retrieval: RetrievalEngine | None = None
        self._task_queue: BackgroundTaskQueue | None = None
        self._summarization: SummarizationPipeline | None = None
        self._extractor: HybridExtractor | None = None
        self._integration: MemoryIntegration | None = None
        self._maintenance: MaintenanceScheduler | None = None

        logger.debug(
            f"MemoryService full config: "
            f"{self.config.model_dump(exclude={'llm', 'embedding'})}"
        )
        logger.info(
            f"MemoryService created: "
            f"sqlite_db_path={self.config.storage.sqlite_db_path!r}, "
            f"embedding_provider={self.config.embedding.provider!r}"
        )

    async def _ensure_store(self) -> SQLiteStore:
        """Lazy initialization of SQLite store."""
        if self._store is None:
            self._store = SQLiteStore(db_path=self.config.storage.sqlite_db_path)
        if not self._store_initialized:
            await self._store.initialize()
            self._store_initialized = True
        return self._store

    async def _ensure_components(self) -> None:
        """Lazy initialization of every component on top of the store."""
        if self._integration is not None:
            return

        store = await self._ensure_store()
        cfg = self.config
        self._token_counter = TokenCounter(model=cfg.llm.model)

        if self._embedding_provider is None:
            self._embedding_provider = create_embedding_provider(cfg.embedding)
        if self._llm is None:
            self._llm = OpenAICompletionProvider(cfg.llm)

        self._embedding_index = EmbeddingIndex(
            self._embedding_provider,
            SQLiteVectorIndex(store),
            store,
            cache_ttl_days=cfg.embedding.cache_ttl_days,
        )
        self._eviction = EvictionManager(store, self._embedding_index, cfg.eviction)
        self._memory_store = MemoryStore(
            store, self._embedding_index, self._eviction, cfg.capacity, cfg.eviction
        )
        self._retrieval = RetrievalEngine(
            self._memory_store, self._embedding_index, cfg.retrieval, self._token_counter
        )
        self._task_queue = BackgroundTaskQueue(cfg.task_queue)
        self._summarization = SummarizationPipeline(
            store,
            self._memory_store,
            self._llm,
            self._task_queue,
            cfg.summarization,
            cfg.llm,
            self._token_counter,
        )
        self._extractor = HybridExtractor(self._llm, self._memory_store, cfg.llm)
        self._integration = MemoryIntegration(
            store,
            self._memory_store,
            self._retrieval,
            self._summarization,
            self._extractor,
            self._task_queue,
            cfg,
            self._token_counter,
        )
        self._maintenance = MaintenanceScheduler(
            self._eviction, self._summarization, self._embedding_index, cfg.maintenance
        )
        logger.debug("MemoryService components initialized")

    async def initialize(self, start_maintenance: bool | None = None) -> None:
        """Open the store, build components and start background workers.

        Args:
            start_maintenance: Start the periodic sweep (config default if None)
        """
        await self._ensure_components()
        if not self._task_queue.running:
            await self._task_queue.start()
        if start_maintenance is None:
            start_maintenance = self.config.maintenance.enabled
        if start_maintenance:
            self._maintenance.start()
        logger.info("MemoryService initialized")

    async def close(self) -> None:
        """Stop background work and close the store."""
        if self._maintenance is not None:
            await self._maintenance.stop()
        if self._task_queue is not None:
            await self._task_queue.stop()
        if self._store and self._store_initialized:
            await self._store.close()
            self._store_initialized = False
            logger.info("MemoryService: SQLiteStore closed")

    def _require(self, component):
        if component is None:
            raise RuntimeError("MemoryService not initialized. Call initialize() first.")
        return component

    @property
    def memory_store(self) -> MemoryStore:
        return self._require(self._memory_store)

    @property
    def retrieval(self) -> RetrievalEngine:
        return self._require(self._retrieval)

    @property
    def summarization(self) -> SummarizationPipeline:
        return self._require(self._summarization)

    @property
    def integration(self) -> MemoryIntegration:
        return self._require(self._integration)

    @property
    def task_queue(self) -> BackgroundTaskQueue:
        return self._require(self._task_queue)

    @property
    def maintenance(self) -> MaintenanceScheduler:
        return self._require(self._maintenance)

    # ------------------------------------------------------------------
    # Chat turn hooks
    # ------------------------------------------------------------------

    async def before_message_process(
        self,
        user_id: str,
        character_id: str,
        character_name: str,
        user_message: str,
        base_prompt: str,
    ) -> AugmentedPrompt:
        return await self.integration.before_message_process(
            user_id, character_id, character_name, user_message, base_prompt
        )

    async def after_message_process(
        self,
        message: IncomingMessage,
        character_name: str = "",
        character_personality: str | None = None,
    ) -> IntegrationResult:
        return await self.integration.after_message_process(
            message, character_name, character_personality
        )

    async def clear_chat_counter(self, chat_id: str) -> None:
        await self.integration.clear_chat_counter(chat_id)

    # ------------------------------------------------------------------
    # Configs and memories
    # ------------------------------------------------------------------

    async def get_config(self, user_id: str, character_id: str) -> MemoryConfigRecord:
        return await self.memory_store.get_or_create_config(user_id, character_id)

    async def increase_capacity(
        self, user_id: str, character_id: str, additional_slots: int
    ) -> MemoryConfigRecord:
        return await self.memory_store.increase_capacity(
            user_id, character_id, additional_slots
        )

    async def list_memories(
        self,
        user_id: str,
        character_id: str,
        kind: MemoryKind | str,
        page: int = 1,
        limit: int = 20,
        sort_by: str | None = None,
        sort_order: str = "desc",
        category: str | None = None,
    ) -> MemoryPage:
        """List one kind of memory for a pair, paginated."""
        kind = MemoryKind(kind)
        store = self.memory_store
        if kind == MemoryKind.EPISODIC:
            return await store.list_episodic(
                user_id, character_id, page, limit, sort_by or "created_at", sort_order
            )
        if kind == MemoryKind.SEMANTIC:
            return await store.list_semantic(
                user_id,
                character_id,
                page,
                limit,
                sort_by or "importance",
                sort_order,
                category=category,
            )
        return await store.list_emotional(
            user_id, character_id, page, limit, sort_by or "created_at", sort_order
        )

    async def get_memory(
        self, memory_id: str, kind: MemoryKind | str, user_id: str
    ) -> MemoryRecord:
        return await self.memory_store.get(memory_id, kind, user_id)

    async def create_memory(
        self,
        user_id: str,
        character_id: str,
        kind: MemoryKind | str,
        data: dict,
    ) -> MemoryRecord:
        """Create a memory of the given kind from a plain payload."""
        kind = MemoryKind(kind)
        store = self.memory_store
        if kind == MemoryKind.EPISODIC:
            return await store.create_episodic(user_id, character_id, data)
        if kind == MemoryKind.SEMANTIC:
            return await store.create_semantic(user_id, character_id, data)
        return await store.create_emotional(user_id, character_id, data)

    async def update_memory(
        self, memory_id: str, kind: MemoryKind | str, user_id: str, patch: dict
    ) -> MemoryRecord:
        return await self.memory_store.update(memory_id, kind, user_id, patch)

    async def delete_memory(
        self, memory_id: str, kind: MemoryKind | str, user_id: str
    ) -> ArchiveRecord:
        return await self.memory_store.delete(memory_id, kind, user_id)

    async def search_memories(
        self,
        user_id: str,
        character_id: str,
        query: str,
        options: RetrievalOptions | None = None,
    ) -> list[MemorySearchResult]:
        """Search a pair's memories by free-text query.

        Returns an empty list on failure.
        """
        try:
            results = await self.retrieval.search_relevant_memories(
                user_id, character_id, query, options
            )
        except Exception as e:
            logger.warning(f"search_memories failed: {e}")
            return []
        logger.info(f"search_memories: {len(results)} results for '{query[:50]}'")
        return results

    # ------------------------------------------------------------------
    # Summarization
    # ------------------------------------------------------------------

    async def check_context_usage(
        self,
        user_id: str,
        character_id: str,
        chat_id: str,
        model: str | None = None,
    ) -> ContextUsage:
        return await self.summarization.check_context_usage(
            user_id, character_id, chat_id, model
        )

    async def trigger_summarization(
        self,
        user_id: str,
        character_id: str,
        chat_id: str,
        character_name: str = "",
        character_personality: str | None = None,
    ) -> str:
        """Start a summarization job manually, regardless of context usage."""
        return await self.summarization.create_summarization_job(
            user_id, character_id, chat_id, character_name, character_personality
        )

    async def get_job(self, job_id: str) -> SummarizationJob | None:
        return await self.summarization.get_job(job_id)

    # ------------------------------------------------------------------
    # Archives and maintenance
    # ------------------------------------------------------------------

    async def list_archives(
        self, user_id: str, character_id: str
    ) -> list[ArchiveRecord]:
        return await self.memory_store.list_archives(user_id, character_id)

    async def list_summary_archives(
        self, user_id: str, character_id: str
    ) -> list[SummaryArchive]:
        return await self.memory_store.list_summary_archives(user_id, character_id)

    async def restore_archive(self, archive_id: str, user_id: str) -> MemoryRecord:
        return await self.memory_store.restore_archived(archive_id, user_id)

    async def run_maintenance(self, now: datetime | None = None) -> MaintenanceReport:
        return await self.maintenance.run_once(now)
