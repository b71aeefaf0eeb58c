"""Companion memory data models."""

from __future__ import annotations

import json
from abc import abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a UTC ISO-8601 string with microseconds.

    Naive datetimes are taken to be UTC. A fixed format keeps lexical and
    chronological order identical in SQL comparisons.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json"), ensure_ascii=False)
    if isinstance(value, (list, dict)):
        return json.dumps(_jsonable(value), ensure_ascii=False)
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


class RowModel(BaseModel):
    """Model persisted as one SQLite row.

    Fields named in ``json_fields`` are stored as JSON text. Datetimes are
    stored through ``to_iso``.
    """

    json_fields: ClassVar[tuple[str, ...]] = ()
    row_exclude: ClassVar[frozenset[str]] = frozenset()

    def to_row(self) -> dict[str, Any]:
        return {
            name: to_column(getattr(self, name))
            for name in type(self).model_fields
            if name not in self.row_exclude
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]):
        data = dict(row)
        for name in cls.json_fields:
            raw = data.get(name)
            if isinstance(raw, (str, bytes)):
                data[name] = json.loads(raw)
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MemoryKind(str, Enum):
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    EMOTIONAL = "emotional"


ALL_KINDS: tuple[MemoryKind, ...] = (
    MemoryKind.EPISODIC,
    MemoryKind.SEMANTIC,
    MemoryKind.EMOTIONAL,
)


class SemanticCategory(str, Enum):
    PERSONAL_INFO = "PERSONAL_INFO"
    PREFERENCE = "PREFERENCE"
    RELATIONSHIP = "RELATIONSHIP"
    EVENT = "EVENT"
    OPINION = "OPINION"
    HABIT = "HABIT"
    GOAL = "GOAL"
    OTHER = "OTHER"

    @classmethod
    def coerce(cls, value: Any) -> "SemanticCategory":
        """Map free-form LLM output onto a category, defaulting to OTHER."""
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.OTHER


class EmotionType(str, Enum):
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    FEARFUL = "fearful"
    SURPRISED = "surprised"
    DISGUSTED = "disgusted"
    NEUTRAL = "neutral"
    EXCITED = "excited"
    ANXIOUS = "anxious"
    LOVING = "loving"

    @classmethod
    def coerce(cls, value: Any) -> "EmotionType":
        """Map free-form LLM output onto an emotion, defaulting to neutral."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NEUTRAL


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class ArchiveReason(str, Enum):
    CAPACITY_LIMIT = "capacity_limit"
    INACTIVE_ACCOUNT = "inactive_account"
    USER_DELETED = "user_deleted"
    EXPIRED = "expired"


def clamp_unit(value: Any, default: float = 0.5) -> float:
    """Coerce to float and clamp to [0, 1]."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))


# ---------------------------------------------------------------------------
# Memory configuration
# ---------------------------------------------------------------------------


class MemoryConfigRecord(RowModel):
    """Per-(user, character) memory configuration and live-memory counter."""

    id: str = Field(default_factory=_uuid)
    user_id: str
    character_id: str
    max_memories: int = 30
    total_memories: int = 0
    context_usage_percent: float = 0.0
    last_context_check: datetime | None = None
    last_access_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------


class MessageRange(BaseModel):
    """First and last raw message covered by an episodic memory."""

    start_id: str
    end_id: str
    start_time: datetime
    end_time: datetime


class _MemoryBase(RowModel):
    """Fields shared by every memory kind. Only the concrete kinds are built."""

    row_exclude: ClassVar[frozenset[str]] = frozenset({"kind"})

    id: str = Field(default_factory=_uuid)
    config_id: str
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    access_count: int = 0
    last_accessed: datetime = Field(default_factory=_utcnow)
    embedding_ref: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @abstractmethod
    def embedding_text(self) -> str:
        """Text the memory is embedded and searched by."""


class EpisodicMemory(_MemoryBase):
    """Summary of a past conversation segment."""

    json_fields: ClassVar[tuple[str, ...]] = ("original_message_ids", "message_range")

    kind: Literal["episodic"] = "episodic"
    summary: str
    context: str | None = None
    original_message_ids: list[str] = Field(default_factory=list)
    message_range: MessageRange | None = None
    is_edited: bool = False
    edited_at: datetime | None = None
    original_summary: str | None = None
    expires_at: datetime | None = None

    def embedding_text(self) -> str:
        return self.summary


class SemanticMemory(_MemoryBase):
    """A fact about the user, unique per config by ``key``."""

    kind: Literal["semantic"] = "semantic"
    category: SemanticCategory = SemanticCategory.OTHER
    key: str
    value: str
    context: str | None = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    importance: float = Field(default=0.7, ge=0.0, le=1.0)
    source_message_id: str | None = None
    is_edited: bool = False
    edited_at: datetime | None = None

    def embedding_text(self) -> str:
        return f"{self.key}: {self.value}"


class EmotionalMemory(_MemoryBase):
    """An emotionally significant moment and what triggered it."""

    kind: Literal["emotional"] = "emotional"
    emotion: EmotionType = EmotionType.NEUTRAL
    intensity: float = Field(default=0.5, ge=0.0, le=1.0)
    trigger: str
    context: str | None = None
    source_message_id: str | None = None
    importance: float = Field(default=0.6, ge=0.0, le=1.0)

    def embedding_text(self) -> str:
        return f"{self.emotion.value}: {self.trigger}"


MemoryRecord = Annotated[
    Union[EpisodicMemory, SemanticMemory, EmotionalMemory],
    Field(discriminator="kind"),
]

MEMORY_MODELS: dict[MemoryKind, type[_MemoryBase]] = {
    MemoryKind.EPISODIC: EpisodicMemory,
    MemoryKind.SEMANTIC: SemanticMemory,
    MemoryKind.EMOTIONAL: EmotionalMemory,
}


def memory_from_row(kind: MemoryKind, row: dict[str, Any]) -> MemoryRecord:
    return MEMORY_MODELS[MemoryKind(kind)].from_row(row)


# ---------------------------------------------------------------------------
# Create / update payloads
# ---------------------------------------------------------------------------


class EpisodicMemoryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=1)
    context: str | None = None
    original_message_ids: list[str] = Field(default_factory=list)
    message_range: MessageRange | None = None
    importance: float = Field(default=0.5, ge=0.0, le=1.0)


class SemanticMemoryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: SemanticCategory = SemanticCategory.OTHER
    key: str = Field(min_length=1)
    value: str = Field(min_length=1)
    context: str | None = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    importance: float = Field(default=0.7, ge=0.0, le=1.0)
    source_message_id: str | None = None


class EmotionalMemoryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    emotion: EmotionType = EmotionType.NEUTRAL
    intensity: float = Field(default=0.5, ge=0.0, le=1.0)
    trigger: str = Field(min_length=1)
    context: str | None = None
    source_message_id: str | None = None
    importance: float = Field(default=0.6, ge=0.0, le=1.0)


class EpisodicMemoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str | None = Field(default=None, min_length=1)
    importance: float | None = Field(default=None, ge=0.0, le=1.0)


class SemanticMemoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: str | None = Field(default=None, min_length=1)
    context: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    importance: float | None = Field(default=None, ge=0.0, le=1.0)


class EmotionalMemoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    intensity: float | None = Field(default=None, ge=0.0, le=1.0)
    trigger: str | None = Field(default=None, min_length=1)
    importance: float | None = Field(default=None, ge=0.0, le=1.0)


CREATE_MODELS: dict[MemoryKind, type[BaseModel]] = {
    MemoryKind.EPISODIC: EpisodicMemoryCreate,
    MemoryKind.SEMANTIC: SemanticMemoryCreate,
    MemoryKind.EMOTIONAL: EmotionalMemoryCreate,
}

UPDATE_MODELS: dict[MemoryKind, type[BaseModel]] = {
    MemoryKind.EPISODIC: EpisodicMemoryUpdate,
    MemoryKind.SEMANTIC: SemanticMemoryUpdate,
    MemoryKind.EMOTIONAL: EmotionalMemoryUpdate,
}


class MemoryPage(BaseModel):
    memories: list[MemoryRecord]
    total: int
    page: int
    limit: int


# ---------------------------------------------------------------------------
# Embedding and retrieval
# ---------------------------------------------------------------------------


class EmbeddingResult(BaseModel):
    embedding: list[float]
    tokens_used: int = 0


class SimilarityHit(BaseModel):
    memory_id: str
    memory_type: MemoryKind
    similarity: float


class MemorySearchResult(BaseModel):
    """A retrieved memory with its similarity (or backfill) score."""

    memory: MemoryRecord
    score: float
    distance: float
    rank_score: float


class RetrievalOptions(BaseModel):
    memory_types: list[MemoryKind] = Field(default_factory=lambda: list(ALL_KINDS))
    limit: int = Field(default=5, ge=1)
    min_similarity: float = 0.65
    include_recent: bool = True
    max_tokens: int = 2000


class RAGContext(BaseModel):
    memories: list[MemorySearchResult] = Field(default_factory=list)
    formatted_context: str = ""
    total_tokens: int = 0


class AugmentedPrompt(BaseModel):
    system_prompt: str
    rag_context: RAGContext = Field(default_factory=RAGContext)


# ---------------------------------------------------------------------------
# Chat log and summarization
# ---------------------------------------------------------------------------


class ChatMessage(RowModel):
    """Raw chat turn as stored in the message log."""

    json_fields: ClassVar[tuple[str, ...]] = ("metadata", "memory_ids")

    id: str = Field(default_factory=_uuid)
    chat_id: str
    user_id: str
    character_id: str
    role: str  # "user", "assistant", "system"
    content: str
    tokens: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    is_summarized: bool = False
    summarized_at: datetime | None = None
    summarization_job_id: str | None = None
    memory_ids: list[str] = Field(default_factory=list)


class IncomingMessage(BaseModel):
    """A turn handed to the integration layer after the chat completion."""

    id: str = Field(default_factory=_uuid)
    chat_id: str
    user_id: str
    character_id: str
    role: str
    content: str
    tokens: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    model: str | None = None


class IntegrationResult(BaseModel):
    message_saved: bool = False
    context_checked: bool = False
    summarization_triggered: bool = False
    important_info_extracted: bool = False


class ContextUsage(BaseModel):
    should_summarize: bool
    current_tokens: int
    max_tokens: int
    usage_percent: float


class EpisodicExtraction(BaseModel):
    summary: str
    importance: float = 0.5


class SemanticExtraction(BaseModel):
    category: SemanticCategory = SemanticCategory.OTHER
    key: str
    value: str
    confidence: float = 0.8
    importance: float = 0.7


class EmotionalExtraction(BaseModel):
    emotion: EmotionType = EmotionType.NEUTRAL
    intensity: float = 0.5
    trigger: str
    importance: float = 0.6


class ExtractionResult(BaseModel):
    """Normalized LLM summarization output."""

    episodic: EpisodicExtraction | None = None
    semantic: list[SemanticExtraction] = Field(default_factory=list)
    emotional: list[EmotionalExtraction] = Field(default_factory=list)


class SummarizationResult(BaseModel):
    job_id: str
    extraction: ExtractionResult
    memory_ids: list[str] = Field(default_factory=list)
    tokens_used: int = 0


class SummarizationJob(RowModel):
    json_fields: ClassVar[tuple[str, ...]] = ("result",)

    id: str = Field(default_factory=_uuid)
    user_id: str
    character_id: str
    chat_id: str
    character_name: str = ""
    character_personality: str | None = None
    status: JobStatus = JobStatus.PENDING
    start_message_id: str
    end_message_id: str
    message_count: int
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ImportantInfo(BaseModel):
    has_info: bool = False
    category: SemanticCategory | None = None
    key: str | None = None
    value: str | None = None
    confidence: float = 0.0


# ---------------------------------------------------------------------------
# Archives and maintenance
# ---------------------------------------------------------------------------


class ArchiveRecord(RowModel):
    """Immutable snapshot of a removed memory."""

    json_fields: ClassVar[tuple[str, ...]] = ("memory_data",)

    id: str = Field(default_factory=_uuid)
    user_id: str
    character_id: str
    original_memory_id: str
    memory_type: MemoryKind
    memory_data: dict[str, Any]
    archived_reason: ArchiveReason
    can_restore: bool = True
    restore_expiry: datetime | None = None
    restored_at: datetime | None = None
    archived_at: datetime = Field(default_factory=_utcnow)


class SummaryArchive(RowModel):
    """Raw messages of a summarized batch and what they became."""

    json_fields: ClassVar[tuple[str, ...]] = (
        "original_messages",
        "summary",
        "message_range",
        "memory_ids",
    )

    id: str = Field(default_factory=_uuid)
    user_id: str
    character_id: str
    chat_id: str
    job_id: str
    original_messages: list[dict[str, Any]]
    summary: dict[str, Any]
    message_range: MessageRange
    memory_ids: list[str] = Field(default_factory=list)
    is_deleted: bool = False
    deleted_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class MaintenanceReport(BaseModel):
    inactive_archived: int = 0
    memories_marked_expired: int = 0
    expired_deleted: int = 0
    jobs_cleaned: int = 0
    stale_jobs_failed: int = 0
    archives_purged: int = 0
    cache_entries_purged: int = 0
    errors: list[str] = Field(default_factory=list)
