"""
Companion memory test fixtures.

Shared fixtures wire the real SQLite store (in a temp directory) to a
deterministic bag-of-words embedding provider and AsyncMock completion
providers, so no model download or network call is needed.
"""

from __future__ import annotations

import hashlib
import re
from unittest.mock import AsyncMock

import numpy as np
import pytest

from companion_memory.config import (
    CapacityConfig,
    EvictionConfig,
    LLMConfig,
    RetrievalConfig,
    SummarizationConfig,
    TaskQueueConfig,
)
from companion_memory.embedding import EmbeddingIndex
from companion_memory.eviction import EvictionManager
from companion_memory.memory_store import MemoryStore
from companion_memory.models import EmbeddingResult
from companion_memory.retrieval import RetrievalEngine
from companion_memory.storage.sqlite_store import SQLiteStore
from companion_memory.storage.vector_index import SQLiteVectorIndex
from companion_memory.summarization import SummarizationPipeline
from companion_memory.task_queue import BackgroundTaskQueue
from companion_memory.token_counter import TokenCounter

_WORD = re.compile(r"\w+")


class FakeEmbeddingProvider:
    """Hashes each word into a bucket; identical texts embed identically."""

    def __init__(self, dimension: int = 256, model: str = "fake-bow"):
        self.model = model
        self.dimension = dimension
        self.calls: list[str] = []
        self.batches: list[list[str]] = []

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls.append(text)
        vector = np.zeros(self.dimension, dtype=np.float32)
        for word in _WORD.findall(text.lower()):
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "little") % self.dimension] += 1.0
        norm = np.linalg.norm(vector)
        if norm:
            vector /= norm
        return EmbeddingResult(embedding=vector.tolist(), tokens_used=len(text.split()))

    async def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        self.batches.append(list(texts))
        return [await self.embed(text) for text in texts]


@pytest.fixture
async def store(tmp_path):
    s = SQLiteStore(db_path=str(tmp_path / "memory.db"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def make_embedding_provider():
    """Factory for providers with a custom dimension or model name."""
    return FakeEmbeddingProvider


@pytest.fixture
def embedding_index(store, embedding_provider):
    return EmbeddingIndex(embedding_provider, SQLiteVectorIndex(store), store)


@pytest.fixture
def eviction(store, embedding_index):
    return EvictionManager(store, embedding_index, EvictionConfig())


@pytest.fixture
def capacity():
    """Default capacity; override in a test module for small limits."""
    return CapacityConfig()


@pytest.fixture
def memory_store(store, embedding_index, eviction, capacity):
    return MemoryStore(store, embedding_index, eviction, capacity, EvictionConfig())


@pytest.fixture
def token_counter():
    return TokenCounter(model="gpt-4o")


@pytest.fixture
def retrieval(memory_store, embedding_index, token_counter):
    return RetrievalEngine(
        memory_store, embedding_index, RetrievalConfig(), token_counter
    )


@pytest.fixture
async def task_queue():
    queue = BackgroundTaskQueue(
        TaskQueueConfig(worker_count=1, max_size=10, retry_delay_seconds=0.0)
    )
    await queue.start()
    yield queue
    await queue.stop(timeout=1.0)


@pytest.fixture
def llm():
    """Completion provider mock; tests set ``complete.return_value``."""
    mock = AsyncMock()
    mock.complete.return_value = "{}"
    return mock


@pytest.fixture
def summarization_config():
    return SummarizationConfig(
        default_model="test-model",
        model_context_limits={"test-model": 10000},
    )


@pytest.fixture
def pipeline(store, memory_store, llm, task_queue, summarization_config, token_counter):
    return SummarizationPipeline(
        store,
        memory_store,
        llm,
        task_queue,
        summarization_config,
        LLMConfig(api_key="test-key"),
        token_counter,
    )
