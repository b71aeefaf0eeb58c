"""Bounded long-term memory store for one (user, character) pair.

Creates run check-evict-insert-increment inside a single store transaction
so the live-memory counter never exceeds the config's capacity. Vectors are
written after the transaction commits; a failed embedding leaves the memory
in place without a vector.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from .config import CapacityConfig, EvictionConfig
from .embedding import EmbeddingIndex
from .eviction import EvictionManager
from .exceptions import (
    MemoryAccessDeniedError,
    MemoryNotFoundError,
    MemoryValidationError,
)
from .models import (
    CREATE_MODELS,
    UPDATE_MODELS,
    ArchiveReason,
    ArchiveRecord,
    EmotionalMemory,
    EmotionalMemoryCreate,
    EpisodicMemory,
    EpisodicMemoryCreate,
    MemoryConfigRecord,
    MemoryKind,
    MemoryPage,
    MemoryRecord,
    SemanticCategory,
    SemanticMemory,
    SemanticMemoryCreate,
    SummaryArchive,
    memory_from_row,
    to_column,
    to_iso,
)
from .storage.sqlite_store import SQLiteStore

_MAX_PAGE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate(model: type[BaseModel], data: Any) -> Any:
    """Coerce a payload into ``model``, mapping pydantic errors to ours."""
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or model.__name__
        raise MemoryValidationError(field, error["msg"]) from e


class MemoryStore:
    """CRUD over episodic, semantic and emotional memories with capacity rules."""

    def __init__(
        self,
        store: SQLiteStore,
        embedding_index: EmbeddingIndex,
        eviction: EvictionManager,
        capacity: CapacityConfig | None = None,
        eviction_config: EvictionConfig | None = None,
    ):
        self._store = store
        self._embeddings = embedding_index
        self._eviction = eviction
        self._capacity = capacity or CapacityConfig()
        self._eviction_config = eviction_config or EvictionConfig()

    # ------------------------------------------------------------------
    # Configs
    # ------------------------------------------------------------------

    async def get_or_create_config(
        self, user_id: str, character_id: str, now: datetime | None = None
    ) -> MemoryConfigRecord:
        """Return the pair's config, creating it if needed.

        Refreshes ``last_access_at`` either way.
        """
        now = now or _utcnow()
        fresh = MemoryConfigRecord(
            user_id=user_id,
            character_id=character_id,
            max_memories=self._capacity.default_max_memories,
            last_access_at=now,
            created_at=now,
        )
        row = await self._store.upsert_config(fresh.to_row())
        config = MemoryConfigRecord.from_row(row)
        if config.id == fresh.id:
            logger.info(
                f"Memory config created for user {user_id}, character {character_id}"
            )
        return config

    async def get_config(
        self, user_id: str, character_id: str
    ) -> MemoryConfigRecord | None:
        row = await self._store.get_config(user_id, character_id)
        return MemoryConfigRecord.from_row(row) if row else None

    async def increase_capacity(
        self, user_id: str, character_id: str, additional_slots: int
    ) -> MemoryConfigRecord:
        """Raise ``max_memories`` by ``additional_slots``.

        Raises:
            MemoryValidationError: If ``additional_slots`` is below 1
        """
        if additional_slots < 1:
            raise MemoryValidationError("additional_slots", "must be at least 1")

        async with self._store.transaction():
            config = await self.get_or_create_config(user_id, character_id)
            await self._store.increase_max_memories(config.id, additional_slots)
            row = await self._store.get_config_by_id(config.id)
        updated = MemoryConfigRecord.from_row(row)
        logger.info(
            f"Capacity of config {config.id} raised to {updated.max_memories}"
        )
        return updated

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_episodic(
        self,
        user_id: str,
        character_id: str,
        data: EpisodicMemoryCreate | dict,
    ) -> EpisodicMemory:
        """Create an episodic memory, evicting first if the config is full."""
        payload = _validate(EpisodicMemoryCreate, data)
        async with self._store.transaction():
            config = await self.get_or_create_config(user_id, character_id)
            memory = await self.insert_episodic(config.id, payload)
        await self.index_memory(memory)
        return memory

    async def create_semantic(
        self,
        user_id: str,
        character_id: str,
        data: SemanticMemoryCreate | dict,
    ) -> SemanticMemory:
        """Create or update (by key) a semantic memory."""
        payload = _validate(SemanticMemoryCreate, data)
        async with self._store.transaction():
            config = await self.get_or_create_config(user_id, character_id)
            memory = await self.insert_semantic(config.id, payload)
        await self.index_memory(memory)
        return memory

    async def create_emotional(
        self,
        user_id: str,
        character_id: str,
        data: EmotionalMemoryCreate | dict,
    ) -> EmotionalMemory:
        """Create an emotional memory, evicting first if the config is full."""
        payload = _validate(EmotionalMemoryCreate, data)
        async with self._store.transaction():
            config = await self.get_or_create_config(user_id, character_id)
            memory = await self.insert_emotional(config.id, payload)
        await self.index_memory(memory)
        return memory

    async def _insert(
        self, kind: MemoryKind, memory: MemoryRecord, now: datetime
    ) -> None:
        async with self._store.transaction():
            await self._eviction.make_room(memory.config_id, now=now)
            await self._store.insert_memory(kind, memory.to_row())
            await self._store.adjust_total_memories(memory.config_id, 1)
        logger.info(
            f"{kind.value.capitalize()} memory created: {memory.id} "
            f"(config {memory.config_id})"
        )

    async def insert_episodic(
        self,
        config_id: str,
        data: EpisodicMemoryCreate,
        now: datetime | None = None,
    ) -> EpisodicMemory:
        """Insert inside the caller's transaction; no embedding is written."""
        now = now or _utcnow()
        memory = EpisodicMemory(
            config_id=config_id,
            last_accessed=now,
            created_at=now,
            **data.model_dump(),
        )
        await self._insert(MemoryKind.EPISODIC, memory, now)
        return memory

    async def insert_semantic(
        self,
        config_id: str,
        data: SemanticMemoryCreate,
        now: datetime | None = None,
    ) -> SemanticMemory:
        """Upsert by key inside the caller's transaction.

        An existing key is updated in place without eviction or counter change.
        """
        now = now or _utcnow()
        async with self._store.transaction():
            existing = await self._store.find_semantic_by_key(config_id, data.key)
            if existing:
                memory = SemanticMemory.from_row(existing)
                fields = {
                    "value": data.value,
                    "context": data.context if data.context is not None else memory.context,
                    "confidence": data.confidence,
                    "importance": data.importance,
                }
                await self._store.update_memory(MemoryKind.SEMANTIC, memory.id, fields)
                logger.info(f"Semantic memory updated by key '{data.key}': {memory.id}")
                return memory.model_copy(update=fields)

            memory = SemanticMemory(
                config_id=config_id,
                last_accessed=now,
                created_at=now,
                **data.model_dump(),
            )
            await self._insert(MemoryKind.SEMANTIC, memory, now)
        return memory

    async def insert_emotional(
        self,
        config_id: str,
        data: EmotionalMemoryCreate,
        now: datetime | None = None,
    ) -> EmotionalMemory:
        """Insert inside the caller's transaction; no embedding is written."""
        now = now or _utcnow()
        memory = EmotionalMemory(
            config_id=config_id,
            last_accessed=now,
            created_at=now,
            **data.model_dump(),
        )
        await self._insert(MemoryKind.EMOTIONAL, memory, now)
        return memory

    async def _insert_payload(
        self, kind: MemoryKind, config_id: str, payload: BaseModel, now: datetime
    ) -> MemoryRecord:
        if kind == MemoryKind.EPISODIC:
            return await self.insert_episodic(config_id, payload, now)
        if kind == MemoryKind.SEMANTIC:
            return await self.insert_semantic(config_id, payload, now)
        return await self.insert_emotional(config_id, payload, now)

    async def index_memory(self, memory: MemoryRecord) -> str | None:
        """Write the memory's vector and record its reference. Best-effort.

        Returns:
            The embedding reference, or None if embedding failed
        """
        kind = MemoryKind(memory.kind)
        try:
            ref = await self._embeddings.save_memory_embedding(
                memory.id, kind, memory.config_id, memory.embedding_text()
            )
            if not await self._store.update_memory(kind, memory.id, {"embedding_ref": ref}):
                # Row removed while embedding; drop the orphan vector.
                await self._embeddings.delete_embedding(memory.id)
                return None
            return ref
        except Exception as e:
            logger.warning(f"Failed to embed {kind.value} memory {memory.id}: {e}")
            return None

    async def index_memories(self, memories: list[MemoryRecord]) -> dict[str, str]:
        """Batch version of ``index_memory``. Best-effort.

        Returns:
            Embedding reference per memory id that was indexed
        """
        if not memories:
            return {}
        try:
            refs = await self._embeddings.save_memory_embeddings(
                [
                    (m.id, MemoryKind(m.kind), m.config_id, m.embedding_text())
                    for m in memories
                ]
            )
        except Exception as e:
            logger.warning(f"Failed to embed {len(memories)} memories: {e}")
            return {}

        indexed: dict[str, str] = {}
        for memory in memories:
            ref = refs.get(memory.id)
            if ref is None:
                continue
            kind = MemoryKind(memory.kind)
            if await self._store.update_memory(kind, memory.id, {"embedding_ref": ref}):
                indexed[memory.id] = ref
            else:
                await self._embeddings.delete_embedding(memory.id)
        return indexed

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def _get_owned(
        self, memory_id: str, kind: MemoryKind, user_id: str
    ) -> tuple[MemoryRecord, str]:
        row = await self._store.get_memory_with_owner(kind, memory_id)
        if row is None:
            raise MemoryNotFoundError(memory_id, kind.value)
        if row["owner_user_id"] != user_id:
            raise MemoryAccessDeniedError(memory_id, user_id)
        return memory_from_row(kind, row), row["owner_character_id"]

    async def get(
        self, memory_id: str, kind: MemoryKind | str, user_id: str
    ) -> MemoryRecord:
        """Fetch a memory owned by ``user_id``.

        Raises:
            MemoryNotFoundError: If the memory does not exist
            MemoryAccessDeniedError: If another user owns it
        """
        memory, _ = await self._get_owned(memory_id, MemoryKind(kind), user_id)
        return memory

    async def get_live_memory(
        self, kind: MemoryKind, memory_id: str, now: datetime | None = None
    ) -> MemoryRecord | None:
        """Fetch a memory unless it is gone or soft-expired."""
        row = await self._store.get_memory(kind, memory_id)
        if row is None:
            return None
        memory = memory_from_row(kind, row)
        if isinstance(memory, EpisodicMemory) and memory.expires_at is not None:
            if memory.expires_at <= (now or _utcnow()):
                return None
        return memory

    async def _list(
        self,
        kind: MemoryKind,
        user_id: str,
        character_id: str,
        page: int,
        limit: int,
        sort_by: str,
        sort_order: str,
        category: SemanticCategory | str | None = None,
    ) -> MemoryPage:
        if page < 1:
            raise MemoryValidationError("page", "must be at least 1")
        if not 1 <= limit <= _MAX_PAGE_SIZE:
            raise MemoryValidationError("limit", f"must be between 1 and {_MAX_PAGE_SIZE}")
        if sort_by not in ("importance", "created_at", "last_accessed"):
            raise MemoryValidationError("sort_by", f"unsupported value {sort_by!r}")
        if sort_order not in ("asc", "desc"):
            raise MemoryValidationError("sort_order", "must be 'asc' or 'desc'")
        category_value = None
        if category is not None:
            try:
                category_value = SemanticCategory(category).value
            except ValueError:
                raise MemoryValidationError(
                    "category", f"unknown category {category!r}"
                ) from None

        config = await self.get_config(user_id, character_id)
        if config is None:
            return MemoryPage(memories=[], total=0, page=page, limit=limit)

        rows = await self._store.list_memories(
            kind,
            config.id,
            sort_by=sort_by,
            descending=sort_order == "desc",
            limit=limit,
            offset=(page - 1) * limit,
            category=category_value,
        )
        total = await self._store.count_memories(kind, config.id, category=category_value)
        return MemoryPage(
            memories=[memory_from_row(kind, row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )

    async def list_episodic(
        self,
        user_id: str,
        character_id: str,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> MemoryPage:
        return await self._list(
            MemoryKind.EPISODIC, user_id, character_id, page, limit, sort_by, sort_order
        )

    async def list_semantic(
        self,
        user_id: str,
        character_id: str,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "importance",
        sort_order: str = "desc",
        category: SemanticCategory | str | None = None,
    ) -> MemoryPage:
        return await self._list(
            MemoryKind.SEMANTIC,
            user_id,
            character_id,
            page,
            limit,
            sort_by,
            sort_order,
            category=category,
        )

    async def list_emotional(
        self,
        user_id: str,
        character_id: str,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> MemoryPage:
        return await self._list(
            MemoryKind.EMOTIONAL, user_id, character_id, page, limit, sort_by, sort_order
        )

    async def recent_memories(
        self,
        config_id: str,
        kind: MemoryKind,
        limit: int,
        now: datetime | None = None,
    ) -> list[MemoryRecord]:
        """Backfill candidates: episodic by recent access, others by importance."""
        sort_by = "last_accessed" if kind == MemoryKind.EPISODIC else "importance"
        rows = await self._store.list_memories(
            kind,
            config_id,
            sort_by=sort_by,
            descending=True,
            limit=limit,
            live_at=to_iso(now or _utcnow()),
        )
        return [memory_from_row(kind, row) for row in rows]

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    async def update(
        self,
        memory_id: str,
        kind: MemoryKind | str,
        user_id: str,
        patch: BaseModel | dict,
    ) -> MemoryRecord:
        """Apply a user edit to a memory.

        The first summary edit of an episodic memory keeps the pre-edit text
        in ``original_summary``. Edits clear any pending expiry. Changed text
        is re-embedded.

        Raises:
            MemoryValidationError: If the patch is invalid for the kind
            MemoryNotFoundError: If the memory does not exist
            MemoryAccessDeniedError: If another user owns it
        """
        kind = MemoryKind(kind)
        changes = _validate(UPDATE_MODELS[kind], patch).model_dump(exclude_none=True)
        now = _utcnow()

        async with self._store.transaction():
            memory, _ = await self._get_owned(memory_id, kind, user_id)
            if not changes:
                return memory

            fields: dict[str, Any] = dict(changes)
            if isinstance(memory, EpisodicMemory):
                if (
                    "summary" in changes
                    and changes["summary"] != memory.summary
                    and memory.original_summary is None
                ):
                    fields["original_summary"] = memory.summary
                fields["expires_at"] = None
            if not isinstance(memory, EmotionalMemory):
                fields["is_edited"] = True
                fields["edited_at"] = now

            await self._store.update_memory(
                kind, memory.id, {k: to_column(v) for k, v in fields.items()}
            )

        updated = memory.model_copy(update=fields)
        logger.info(f"{kind.value.capitalize()} memory edited: {memory.id}")
        if updated.embedding_text() != memory.embedding_text():
            ref = await self.index_memory(updated)
            if ref:
                updated = updated.model_copy(update={"embedding_ref": ref})
        return updated

    async def delete(
        self, memory_id: str, kind: MemoryKind | str, user_id: str
    ) -> ArchiveRecord:
        """Archive (restorable) and remove a user's memory.

        Raises:
            MemoryNotFoundError: If the memory does not exist
            MemoryAccessDeniedError: If another user owns it
        """
        kind = MemoryKind(kind)
        now = _utcnow()
        async with self._store.transaction():
            memory, character_id = await self._get_owned(memory_id, kind, user_id)
            archive = await self._eviction.archive_and_remove(
                memory,
                user_id,
                character_id,
                ArchiveReason.USER_DELETED,
                can_restore=True,
                restore_expiry=now
                + timedelta(days=self._eviction_config.user_delete_restore_days),
                now=now,
            )
        logger.info(f"{kind.value.capitalize()} memory deleted by user: {memory_id}")

        try:
            await self._store.mark_summary_archives_deleted(memory_id, to_iso(now))
        except Exception as e:
            logger.warning(f"Failed to flag summary archives for {memory_id}: {e}")
        return archive

    async def touch(
        self, memory: MemoryRecord, now: datetime | None = None
    ) -> MemoryRecord:
        """Reinforce a retrieved memory: one more access, at ``now``."""
        now = now or _utcnow()
        await self._store.touch_memory(MemoryKind(memory.kind), memory.id, to_iso(now))
        return memory.model_copy(
            update={"access_count": memory.access_count + 1, "last_accessed": now}
        )

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    async def restore_archived(
        self, archive_id: str, user_id: str, now: datetime | None = None
    ) -> MemoryRecord:
        """Re-create an archived memory through the normal create path.

        Raises:
            MemoryNotFoundError: If the archive does not exist
            MemoryAccessDeniedError: If another user owns it
            MemoryValidationError: If the archive is not restorable anymore
        """
        now = now or _utcnow()
        row = await self._store.get_archive(archive_id)
        if row is None:
            raise MemoryNotFoundError(archive_id, "archived")
        archive = ArchiveRecord.from_row(row)
        if archive.user_id != user_id:
            raise MemoryAccessDeniedError(archive_id, user_id)
        if not archive.can_restore:
            raise MemoryValidationError("archive_id", "archive is not restorable")
        if archive.restore_expiry is not None and archive.restore_expiry <= now:
            raise MemoryValidationError("archive_id", "restore window has expired")

        model = CREATE_MODELS[archive.memory_type]
        payload = _validate(
            model,
            {k: v for k, v in archive.memory_data.items() if k in model.model_fields},
        )

        async with self._store.transaction():
            config = await self.get_or_create_config(
                archive.user_id, archive.character_id, now=now
            )
            memory = await self._insert_payload(
                archive.memory_type, config.id, payload, now
            )
            await self._store.update_archive(
                archive.id, {"can_restore": 0, "restored_at": to_iso(now)}
            )

        logger.info(f"Archive {archive.id} restored as memory {memory.id}")
        await self.index_memory(memory)
        return memory

    async def list_archives(
        self, user_id: str, character_id: str
    ) -> list[ArchiveRecord]:
        rows = await self._store.list_archives(user_id, character_id)
        return [ArchiveRecord.from_row(row) for row in rows]

    async def list_summary_archives(
        self, user_id: str, character_id: str, include_deleted: bool = False
    ) -> list[SummaryArchive]:
        rows = await self._store.list_summary_archives(
            user_id, character_id, include_deleted=include_deleted
        )
        return [SummaryArchive.from_row(row) for row in rows]
