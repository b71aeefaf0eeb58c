"""
Companion Memory - long-term memory for conversational AI characters

Bounded per-(user, character) memory of episodic summaries, semantic facts
and emotional moments, with embedding retrieval for prompt augmentation,
context-pressure summarization of the chat log and hybrid real-time fact
extraction.
"""

from .models import (
    AugmentedPrompt,
    EmotionalMemory,
    EpisodicMemory,
    IncomingMessage,
    MemoryKind,
    MemoryRecord,
    MemorySearchResult,
    RAGContext,
    SemanticMemory,
)
from .config import MemoryConfig, load_config
from .embedding import EmbeddingIndex
from .eviction import EvictionManager
from .exceptions import (
    MemoryAccessDeniedError,
    MemoryCapacityError,
    MemoryNotFoundError,
    MemorySystemError,
    MemoryValidationError,
    SummarizationError,
)
from .extraction import HybridExtractor
from .integration import MemoryIntegration
from .logging_utils import setup_logging
from .maintenance import MaintenanceScheduler
from .memory_service import MemoryService, MemoryServiceInterface
from .memory_store import MemoryStore
from .retrieval import RetrievalEngine
from .summarization import SummarizationPipeline
from .task_queue import BackgroundTaskQueue
from .token_counter import TokenCounter

__all__ = [
    "AugmentedPrompt",
    "EmotionalMemory",
    "EpisodicMemory",
    "IncomingMessage",
    "MemoryKind",
    "MemoryRecord",
    "MemorySearchResult",
    "RAGContext",
    "SemanticMemory",
    "MemoryConfig",
    "load_config",
    "EmbeddingIndex",
    "EvictionManager",
    "MemoryAccessDeniedError",
    "MemoryCapacityError",
    "MemoryNotFoundError",
    "MemorySystemError",
    "MemoryValidationError",
    "SummarizationError",
    "HybridExtractor",
    "MemoryIntegration",
    "MaintenanceScheduler",
    "setup_logging",
    "MemoryService",
    "MemoryServiceInterface",
    "MemoryStore",
    "RetrievalEngine",
    "SummarizationPipeline",
    "BackgroundTaskQueue",
    "TokenCounter",
]
