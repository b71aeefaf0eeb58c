"""Embedding providers and the memory embedding index.

Providers turn text into vectors: ``LocalEmbeddingProvider`` runs a
sentence-transformers model in-process, ``OpenAIEmbeddingProvider`` calls the
OpenAI embeddings API. ``EmbeddingIndex`` keeps one vector per memory in a
``VectorIndex``, skips re-embedding unchanged text and caches provider
results by content hash.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable, Protocol, runtime_checkable

from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from .config import EmbeddingConfig
from .exceptions import EmbeddingError
from .models import ALL_KINDS, EmbeddingResult, MemoryKind, SimilarityHit, to_iso
from .storage.sqlite_store import SQLiteStore
from .storage.vector_index import VectorIndex, deserialize_vector, serialize_vector
from .token_counter import TokenCounter

if TYPE_CHECKING:
    import numpy as np


def text_hash(text: str) -> str:
    """sha256 hex digest of the UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into a vector. Deterministic per ``(model, text)``."""

    model: str

    async def embed(self, text: str) -> EmbeddingResult: ...

    async def embed_many(self, texts: list[str]) -> list[EmbeddingResult]: ...


class LocalEmbeddingProvider:
    """Embedding provider using sentence-transformers.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Encoding runs in a worker thread so the event loop is not blocked
    - Token usage estimated with ``TokenCounter``
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        """Initialize local embedding provider.

        Args:
            config: Embedding configuration
        """
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension
        self._token_counter = TokenCounter()
        self.model = self._config.model

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def _encode(self, texts: list[str]) -> list[list[float]]:
        self._ensure_model()
        vectors: np.ndarray = self._model.encode(
            texts, show_progress_bar=False, normalize_embeddings=True
        )
        return vectors.tolist()

    async def embed(self, text: str) -> EmbeddingResult:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        """Encode several texts in one model call."""
        if not texts:
            return []
        try:
            vectors = await asyncio.to_thread(self._encode, texts)
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {e}") from e
        return [
            EmbeddingResult(embedding=vector, tokens_used=self._token_counter.count(text))
            for text, vector in zip(texts, vectors)
        ]


class OpenAIEmbeddingProvider:
    """Embedding provider backed by the OpenAI embeddings endpoint."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self._config = config or EmbeddingConfig(provider="api")
        self.model = self._config.api_model
        self._client = client or AsyncOpenAI(
            api_key=self._config.api_key, base_url=self._config.base_url
        )
        self._tokens = TokenCounter()
        logger.debug(f"OpenAI embedding client ready (model: {self.model})")

    async def embed(self, text: str) -> EmbeddingResult:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        """Embed several texts in one request.

        The API reports usage for the whole batch, so a single text gets the
        exact count and batched texts get per-text estimates.
        """
        if not texts:
            return []
        try:
            response = await self._client.embeddings.create(
                model=self.model, input=texts
            )
        except OpenAIError as e:
            raise EmbeddingError(f"OpenAI embedding request failed: {e}") from e

        if len(response.data) != len(texts):
            raise EmbeddingError(
                f"OpenAI returned {len(response.data)} embeddings for {len(texts)} texts"
            )
        usage = getattr(response, "usage", None)
        items = sorted(response.data, key=lambda d: d.index)
        if len(texts) == 1:
            return [
                EmbeddingResult(
                    embedding=list(items[0].embedding),
                    tokens_used=usage.total_tokens if usage else 0,
                )
            ]
        return [
            EmbeddingResult(
                embedding=list(item.embedding), tokens_used=self._tokens.count(text)
            )
            for text, item in zip(texts, items)
        ]


def create_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Build the provider selected by ``config.provider``."""
    if config.provider == "api":
        return OpenAIEmbeddingProvider(config)
    return LocalEmbeddingProvider(config)


class EmbeddingIndex:
    """One embedding per memory, searchable per memory config."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        vector_index: VectorIndex,
        store: SQLiteStore,
        cache_ttl_days: int = 30,
    ):
        """Initialize the embedding index.

        Args:
            provider: Embedding provider
            vector_index: Vector storage and search
            store: SQLite store holding the embedding cache
            cache_ttl_days: Lifetime of cached provider results
        """
        self._provider = provider
        self._vectors = vector_index
        self._store = store
        self._cache_ttl = timedelta(days=cache_ttl_days)

    @property
    def model(self) -> str:
        return self._provider.model

    async def create_embedding(self, text: str) -> EmbeddingResult:
        """Embed text with the configured provider.

        Raises:
            EmbeddingError: If the provider fails
        """
        try:
            return await self._provider.embed(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding provider failed: {e}") from e

    async def create_embeddings(self, texts: list[str]) -> list[EmbeddingResult]:
        """Embed several texts with one provider call.

        Raises:
            EmbeddingError: If the provider fails
        """
        try:
            return await self._provider.embed_many(texts)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding provider failed: {e}") from e

    async def _cached_vector(self, digest: str) -> list[float] | None:
        now = datetime.now(timezone.utc)
        cached = await self._store.get_cached_embedding(digest, self.model, to_iso(now))
        if cached:
            logger.debug(f"Embedding cache hit: {digest[:12]}")
            return deserialize_vector(cached["embedding"]).tolist()
        return None

    async def _cache_result(self, digest: str, result: EmbeddingResult) -> None:
        now = datetime.now(timezone.utc)
        await self._store.put_cached_embedding(
            {
                "text_hash": digest,
                "model": self.model,
                "embedding": serialize_vector(result.embedding),
                "tokens_used": result.tokens_used,
                "created_at": to_iso(now),
                "expires_at": to_iso(now + self._cache_ttl),
            }
        )

    async def _embed_cached(self, text: str, digest: str) -> list[float]:
        vector = await self._cached_vector(digest)
        if vector is not None:
            return vector
        result = await self.create_embedding(text)
        await self._cache_result(digest, result)
        return result.embedding

    async def save_memory_embedding(
        self,
        memory_id: str,
        memory_type: MemoryKind,
        config_id: str,
        text: str,
    ) -> str:
        """Store the vector for a memory's current text.

        Args:
            memory_id: Memory identifier
            memory_type: Memory kind
            config_id: Owning config, the search scope
            text: Text to embed

        Returns:
            Embedding reference (the content hash)
        """
        digest = text_hash(text)
        stored = await self._vectors.get_hash(memory_id, memory_type)
        if stored == (digest, self.model):
            logger.debug(f"Embedding unchanged for memory {memory_id}")
            return digest

        vector = await self._embed_cached(text, digest)
        await self._vectors.upsert(
            memory_id, memory_type, config_id, vector, digest, self.model
        )
        return digest

    async def save_memory_embeddings(
        self, items: list[tuple[str, MemoryKind, str, str]]
    ) -> dict[str, str]:
        """Store vectors for several memories, embedding cache misses in one batch.

        Args:
            items: ``(memory_id, memory_type, config_id, text)`` tuples

        Returns:
            Embedding reference per memory id
        """
        refs: dict[str, str] = {}
        vectors: dict[str, list[float]] = {}
        pending: list[tuple[str, MemoryKind, str, str]] = []
        for memory_id, memory_type, config_id, text in items:
            digest = text_hash(text)
            stored = await self._vectors.get_hash(memory_id, memory_type)
            if stored == (digest, self.model):
                refs[memory_id] = digest
                continue
            if digest not in vectors:
                cached = await self._cached_vector(digest)
                if cached is not None:
                    vectors[digest] = cached
            pending.append((memory_id, memory_type, config_id, text))

        misses: dict[str, str] = {}
        for _, _, _, text in pending:
            digest = text_hash(text)
            if digest not in vectors:
                misses.setdefault(digest, text)
        if misses:
            results = await self.create_embeddings(list(misses.values()))
            for digest, result in zip(misses, results):
                await self._cache_result(digest, result)
                vectors[digest] = result.embedding
            logger.debug(f"Embedded {len(misses)} texts in one batch")

        for memory_id, memory_type, config_id, text in pending:
            digest = text_hash(text)
            await self._vectors.upsert(
                memory_id, memory_type, config_id, vectors[digest], digest, self.model
            )
            refs[memory_id] = digest
        return refs

    async def search_similar_memories(
        self,
        query_text: str,
        config_id: str,
        memory_types: Iterable[MemoryKind] = ALL_KINDS,
        limit: int = 5,
        min_similarity: float = 0.7,
    ) -> list[SimilarityHit]:
        """Find memories of one config similar to the query.

        Args:
            query_text: Free-text query
            config_id: Only vectors of this config are considered
            memory_types: Kinds to search
            limit: Maximum hits
            min_similarity: Cosine similarity floor

        Returns:
            Hits ordered by similarity, highest first
        """
        result = await self.create_embedding(query_text)
        return await self._vectors.query(
            result.embedding, config_id, list(memory_types), limit, min_similarity
        )

    async def delete_embedding(self, memory_id: str) -> None:
        await self._vectors.delete(memory_id)

    async def delete_embeddings_for_config(self, config_id: str) -> None:
        await self._vectors.delete_for_config(config_id)

    async def purge_expired_cache(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        count = await self._store.purge_embedding_cache(to_iso(now))
        if count:
            logger.info(f"Purged {count} expired embedding cache entries")
        return count
