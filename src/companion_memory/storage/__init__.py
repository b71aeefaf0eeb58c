"""Storage backends for companion memory.

SQLite holds the relational data and, through ``SQLiteVectorIndex``, the
memory vectors.
"""

from __future__ import annotations

from .sqlite_store import SQLiteStore
from .vector_index import SQLiteVectorIndex, VectorIndex

__all__ = ["SQLiteStore", "SQLiteVectorIndex", "VectorIndex"]
