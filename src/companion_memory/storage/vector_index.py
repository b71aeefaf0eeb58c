"""Vector index abstraction and its SQLite-backed implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable

import numpy as np
from loguru import logger

from ..models import MemoryKind, SimilarityHit, to_iso
from .sqlite_store import SQLiteStore


def serialize_vector(vector: list[float] | np.ndarray) -> bytes:
    """Pack a vector as little-endian float32 bytes for BLOB storage."""
    return np.asarray(vector, dtype="<f4").tobytes()


def deserialize_vector(blob: bytes) -> np.ndarray:
    """Unpack a little-endian float32 BLOB."""
    return np.frombuffer(blob, dtype="<f4")


class VectorIndex(ABC):
    """Nearest-neighbour store for memory vectors, scoped by config."""

    @abstractmethod
    async def upsert(
        self,
        memory_id: str,
        memory_type: MemoryKind,
        config_id: str,
        vector: list[float],
        text_hash: str,
        model: str,
    ) -> None: ...

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        config_id: str,
        memory_types: Iterable[MemoryKind],
        k: int,
        min_similarity: float,
    ) -> list[SimilarityHit]: ...

    @abstractmethod
    async def get_hash(
        self, memory_id: str, memory_type: MemoryKind
    ) -> tuple[str, str] | None:
        """Return the stored (text_hash, model) of a memory's vector, if any."""

    @abstractmethod
    async def delete(self, memory_id: str) -> None: ...

    @abstractmethod
    async def delete_for_config(self, config_id: str) -> None: ...


class SQLiteVectorIndex(VectorIndex):
    """Vectors stored as BLOBs next to the memories, searched in-process.

    Search loads every vector of one config and scores them with numpy.
    Capacity per config is small (tens of memories), so a brute-force scan
    is enough.
    """

    def __init__(self, store: SQLiteStore):
        self._store = store

    async def upsert(
        self,
        memory_id: str,
        memory_type: MemoryKind,
        config_id: str,
        vector: list[float],
        text_hash: str,
        model: str,
    ) -> None:
        await self._store.upsert_embedding(
            {
                "memory_id": memory_id,
                "memory_type": MemoryKind(memory_type).value,
                "config_id": config_id,
                "embedding": serialize_vector(vector),
                "text_hash": text_hash,
                "model": model,
                "created_at": to_iso(datetime.now(timezone.utc)),
            }
        )

    async def query(
        self,
        vector: list[float],
        config_id: str,
        memory_types: Iterable[MemoryKind],
        k: int,
        min_similarity: float,
    ) -> list[SimilarityHit]:
        rows = await self._store.get_embeddings(config_id, memory_types)
        if not rows or k <= 0:
            return []

        query = np.asarray(vector, dtype=np.float32)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        dim = query.shape[0]
        usable = []
        for row in rows:
            stored = deserialize_vector(row["embedding"])
            if stored.shape[0] != dim:
                logger.warning(
                    f"Skipping vector of memory {row['memory_id']}: "
                    f"dimension {stored.shape[0]} != {dim}"
                )
                continue
            usable.append((row, stored))
        if not usable:
            return []

        matrix = np.vstack([stored for _, stored in usable])
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        similarities = (matrix @ query) / (norms * query_norm)

        hits = [
            SimilarityHit(
                memory_id=row["memory_id"],
                memory_type=MemoryKind(row["memory_type"]),
                similarity=float(score),
            )
            for (row, _), score in zip(usable, similarities)
            if score >= min_similarity
        ]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:k]

    async def get_hash(
        self, memory_id: str, memory_type: MemoryKind
    ) -> tuple[str, str] | None:
        return await self._store.get_embedding_hash(memory_id, MemoryKind(memory_type))

    async def delete(self, memory_id: str) -> None:
        await self._store.delete_embedding(memory_id)

    async def delete_for_config(self, config_id: str) -> None:
        count = await self._store.delete_embeddings_for_config(config_id)
        logger.debug(f"Deleted {count} vectors for config {config_id}")
