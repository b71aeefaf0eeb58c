"""SQLite storage backend for companion memory.

All relational state lives in one SQLite database accessed through aiosqlite:
memory configs, the three memory tables, stored vectors and the embedding
cache, the raw chat log with its durable per-chat counters, summarization
jobs and the archive tables.

Writes go through ``transaction()``, which serializes writers with an
``asyncio.Lock`` and ``BEGIN IMMEDIATE`` so a capacity check and the insert
that follows it cannot interleave with another writer.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import aiosqlite
from loguru import logger

from ..exceptions import StorageError
from ..models import MemoryKind

MEMORY_TABLES: dict[MemoryKind, str] = {
    MemoryKind.EPISODIC: "episodic_memories",
    MemoryKind.SEMANTIC: "semantic_memories",
    MemoryKind.EMOTIONAL: "emotional_memories",
}

# Columns a caller may change after insert.
_UPDATABLE_MEMORY_COLUMNS: dict[MemoryKind, frozenset[str]] = {
    MemoryKind.EPISODIC: frozenset(
        {
            "summary",
            "importance",
            "embedding_ref",
            "is_edited",
            "edited_at",
            "original_summary",
            "expires_at",
        }
    ),
    MemoryKind.SEMANTIC: frozenset(
        {
            "category",
            "value",
            "context",
            "confidence",
            "importance",
            "source_message_id",
            "embedding_ref",
            "is_edited",
            "edited_at",
        }
    ),
    MemoryKind.EMOTIONAL: frozenset(
        {"intensity", "trigger", "importance", "embedding_ref"}
    ),
}

_UPDATABLE_CONFIG_COLUMNS = frozenset(
    {"max_memories", "context_usage_percent", "last_context_check", "last_access_at"}
)

_UPDATABLE_ARCHIVE_COLUMNS = frozenset({"can_restore", "restored_at"})

_SORT_COLUMNS = frozenset({"importance", "created_at", "last_accessed"})


class SQLiteStore:
    """SQLite storage backend for companion memory.

    Provides async CRUD operations for memory configs, memories, vectors,
    chat messages, summarization jobs and archives.

    Uses WAL mode for concurrent reads and one serialized writer.
    """

    def __init__(self, db_path: str = "./memory/companion_memory.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()
        self._tx_owner: asyncio.Task | None = None
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist.

        Creates directory for database file if needed.
        Enables WAL mode for concurrent reads.
        """
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured database directory exists: {db_dir}")

        try:
            # Autocommit mode: transactions are opened explicitly.
            self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            await self._db.execute("PRAGMA busy_timeout=5000")
            await self._create_tables()
            await self._create_indexes()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to initialize database: {e}", path=self.db_path
            ) from e

        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        """Create all companion memory tables."""

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_configs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                max_memories INTEGER NOT NULL DEFAULT 30,
                total_memories INTEGER NOT NULL DEFAULT 0,
                context_usage_percent REAL NOT NULL DEFAULT 0.0,
                last_context_check TEXT,
                last_access_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, character_id)
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS episodic_memories (
                id TEXT PRIMARY KEY,
                config_id TEXT NOT NULL,
                summary TEXT NOT NULL,
                context TEXT,
                original_message_ids TEXT NOT NULL DEFAULT '[]',
                message_range TEXT,
                importance REAL NOT NULL DEFAULT 0.5,
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed TEXT NOT NULL,
                embedding_ref TEXT,
                is_edited INTEGER NOT NULL DEFAULT 0,
                edited_at TEXT,
                original_summary TEXT,
                expires_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (config_id) REFERENCES memory_configs(id)
                    ON DELETE CASCADE
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS semantic_memories (
                id TEXT PRIMARY KEY,
                config_id TEXT NOT NULL,
                category TEXT NOT NULL,
                "key" TEXT NOT NULL,
                value TEXT NOT NULL,
                context TEXT,
                confidence REAL NOT NULL DEFAULT 0.8,
                importance REAL NOT NULL DEFAULT 0.7,
                source_message_id TEXT,
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed TEXT NOT NULL,
                embedding_ref TEXT,
                is_edited INTEGER NOT NULL DEFAULT 0,
                edited_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (config_id, key),
                FOREIGN KEY (config_id) REFERENCES memory_configs(id)
                    ON DELETE CASCADE
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS emotional_memories (
                id TEXT PRIMARY KEY,
                config_id TEXT NOT NULL,
                emotion TEXT NOT NULL,
                intensity REAL NOT NULL DEFAULT 0.5,
                "trigger" TEXT NOT NULL,
                context TEXT,
                source_message_id TEXT,
                importance REAL NOT NULL DEFAULT 0.6,
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed TEXT NOT NULL,
                embedding_ref TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (config_id) REFERENCES memory_configs(id)
                    ON DELETE CASCADE
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_embeddings (
                memory_id TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                config_id TEXT NOT NULL,
                embedding BLOB NOT NULL,
                text_hash TEXT NOT NULL,
                model TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (memory_id, memory_type)
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS embedding_cache (
                text_hash TEXT NOT NULL,
                model TEXT NOT NULL,
                embedding BLOB NOT NULL,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                PRIMARY KEY (text_hash, model)
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                chat_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                tokens INTEGER NOT NULL DEFAULT 0,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                is_summarized INTEGER NOT NULL DEFAULT 0,
                summarized_at TEXT,
                summarization_job_id TEXT,
                memory_ids TEXT NOT NULL DEFAULT '[]'
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS chat_counters (
                chat_id TEXT PRIMARY KEY,
                message_count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS summarization_jobs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                chat_id TEXT NOT NULL,
                character_name TEXT NOT NULL DEFAULT '',
                character_personality TEXT,
                status TEXT NOT NULL,
                start_message_id TEXT NOT NULL,
                end_message_id TEXT NOT NULL,
                message_count INTEGER NOT NULL,
                result TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS archived_memories (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                original_memory_id TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                memory_data TEXT NOT NULL,
                archived_reason TEXT NOT NULL,
                can_restore INTEGER NOT NULL DEFAULT 1,
                restore_expiry TEXT,
                restored_at TEXT,
                archived_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS summary_archives (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                chat_id TEXT NOT NULL,
                job_id TEXT NOT NULL,
                original_messages TEXT NOT NULL,
                summary TEXT NOT NULL,
                message_range TEXT NOT NULL,
                memory_ids TEXT NOT NULL DEFAULT '[]',
                is_deleted INTEGER NOT NULL DEFAULT 0,
                deleted_at TEXT,
                created_at TEXT NOT NULL
            )
        """)

        logger.debug("All companion memory tables created")

    async def _create_indexes(self) -> None:
        """Create indexes for common lookups."""
        statements = [
            "CREATE INDEX IF NOT EXISTS idx_configs_last_access "
            "ON memory_configs(last_access_at)",
            "CREATE INDEX IF NOT EXISTS idx_episodic_config_importance "
            "ON episodic_memories(config_id, importance, last_accessed)",
            "CREATE INDEX IF NOT EXISTS idx_episodic_expires "
            "ON episodic_memories(expires_at)",
            "CREATE INDEX IF NOT EXISTS idx_semantic_config_importance "
            "ON semantic_memories(config_id, importance)",
            "CREATE INDEX IF NOT EXISTS idx_emotional_config_importance "
            "ON emotional_memories(config_id, importance)",
            "CREATE INDEX IF NOT EXISTS idx_embeddings_config "
            "ON memory_embeddings(config_id, memory_type)",
            "CREATE INDEX IF NOT EXISTS idx_embedding_cache_expires "
            "ON embedding_cache(expires_at)",
            "CREATE INDEX IF NOT EXISTS idx_messages_chat "
            "ON chat_messages(chat_id, is_summarized, seq)",
            "CREATE INDEX IF NOT EXISTS idx_jobs_chat_status "
            "ON summarization_jobs(chat_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_archives_owner "
            "ON archived_memories(user_id, character_id)",
            "CREATE INDEX IF NOT EXISTS idx_summary_archives_owner "
            "ON summary_archives(user_id, character_id)",
        ]
        for statement in statements:
            await self._db.execute(statement)
        logger.debug("All companion memory indexes created")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialized write transaction.

        Re-entrant for the task that holds it: nested blocks join the outer
        transaction, and only the outermost block commits or rolls back.
        """
        db = self._require_db()
        task = asyncio.current_task()
        if self._tx_owner is not None and self._tx_owner is task:
            yield db
            return

        async with self._tx_lock:
            self._tx_owner = task
            try:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield db
                except BaseException:
                    if db.in_transaction:
                        await db.rollback()
                    raise
                else:
                    await db.commit()
            finally:
                self._tx_owner = None

    async def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run one write statement in a transaction and return its rowcount."""
        async with self.transaction() as db:
            cursor = await db.execute(sql, tuple(params))
            return cursor.rowcount

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[dict]:
        """Run a query and return rows as dicts.

        The connection is shared, so a read from a task that does not own the
        open transaction waits for it to finish and only sees committed rows.
        """
        db = self._require_db()
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            return await self._read(db, sql, params)
        async with self._tx_lock:
            return await self._read(db, sql, params)

    @staticmethod
    async def _read(
        db: aiosqlite.Connection, sql: str, params: Iterable[Any]
    ) -> list[dict]:
        async with db.execute(sql, tuple(params)) as cursor:
            columns = [c[0] for c in cursor.description]
            rows = await cursor.fetchall()
        return [dict(zip(columns, row)) for row in rows]

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> dict | None:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    async def _insert(self, table: str, row: dict[str, Any]) -> None:
        columns = ", ".join(f'"{name}"' for name in row)
        placeholders = ", ".join("?" for _ in row)
        await self._execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            row.values(),
        )

    @staticmethod
    def _assignments(fields: dict[str, Any], allowed: frozenset[str]) -> str:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Columns not updatable: {sorted(unknown)}")
        return ", ".join(f'"{name}" = ?' for name in fields)

    # ------------------------------------------------------------------
    # Memory configs
    # ------------------------------------------------------------------

    async def get_config(self, user_id: str, character_id: str) -> dict | None:
        """Get memory config by owner pair.

        Args:
            user_id: User identifier
            character_id: Character identifier

        Returns:
            Config dictionary or None if not found
        """
        return await self._fetchone(
            "SELECT * FROM memory_configs WHERE user_id = ? AND character_id = ?",
            (user_id, character_id),
        )

    async def get_config_by_id(self, config_id: str) -> dict | None:
        return await self._fetchone(
            "SELECT * FROM memory_configs WHERE id = ?", (config_id,)
        )

    async def upsert_config(self, config: dict) -> dict:
        """Insert a config, or refresh ``last_access_at`` if the pair exists.

        Args:
            config: Config row for a fresh insert

        Returns:
            The stored config row
        """
        async with self.transaction():
            await self._execute(
                """
                INSERT INTO memory_configs (
                    id, user_id, character_id, max_memories, total_memories,
                    context_usage_percent, last_context_check,
                    last_access_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, character_id) DO UPDATE SET
                    last_access_at = excluded.last_access_at
                """,
                (
                    config["id"],
                    config["user_id"],
                    config["character_id"],
                    config["max_memories"],
                    config["total_memories"],
                    config["context_usage_percent"],
                    config["last_context_check"],
                    config["last_access_at"],
                    config["created_at"],
                ),
            )
            row = await self.get_config(config["user_id"], config["character_id"])
        return row

    async def update_config(self, config_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        assignments = self._assignments(fields, _UPDATABLE_CONFIG_COLUMNS)
        await self._execute(
            f"UPDATE memory_configs SET {assignments} WHERE id = ?",
            [*fields.values(), config_id],
        )

    async def adjust_total_memories(self, config_id: str, delta: int) -> None:
        """Increment or decrement the live-memory counter of a config."""
        await self._execute(
            """
            UPDATE memory_configs
            SET total_memories = MAX(0, total_memories + ?)
            WHERE id = ?
            """,
            (delta, config_id),
        )

    async def set_total_memories(self, config_id: str, total: int) -> None:
        await self._execute(
            "UPDATE memory_configs SET total_memories = ? WHERE id = ?",
            (total, config_id),
        )

    async def increase_max_memories(self, config_id: str, slots: int) -> None:
        await self._execute(
            "UPDATE memory_configs SET max_memories = max_memories + ? WHERE id = ?",
            (slots, config_id),
        )

    async def list_inactive_configs(self, cutoff: str) -> list[dict]:
        """Configs whose ``last_access_at`` is older than ``cutoff``."""
        return await self._fetchall(
            "SELECT * FROM memory_configs WHERE last_access_at < ?", (cutoff,)
        )

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def insert_memory(self, kind: MemoryKind, row: dict[str, Any]) -> str:
        """Insert a memory row.

        Args:
            kind: Memory kind selecting the table
            row: Column values

        Returns:
            Memory ID
        """
        await self._insert(MEMORY_TABLES[kind], row)
        logger.debug(f"{kind.value} memory inserted: {row['id']}")
        return row["id"]

    async def get_memory(self, kind: MemoryKind, memory_id: str) -> dict | None:
        return await self._fetchone(
            f"SELECT * FROM {MEMORY_TABLES[kind]} WHERE id = ?", (memory_id,)
        )

    async def get_memory_with_owner(
        self, kind: MemoryKind, memory_id: str
    ) -> dict | None:
        """Memory row joined with its config's ``user_id`` and ``character_id``."""
        return await self._fetchone(
            f"""
            SELECT m.*, c.user_id AS owner_user_id,
                   c.character_id AS owner_character_id
            FROM {MEMORY_TABLES[kind]} m
            JOIN memory_configs c ON c.id = m.config_id
            WHERE m.id = ?
            """,
            (memory_id,),
        )

    async def update_memory(
        self, kind: MemoryKind, memory_id: str, fields: dict[str, Any]
    ) -> bool:
        """Update whitelisted columns of a memory row.

        Returns:
            True if a row was updated
        """
        if not fields:
            return False
        assignments = self._assignments(fields, _UPDATABLE_MEMORY_COLUMNS[kind])
        count = await self._execute(
            f"UPDATE {MEMORY_TABLES[kind]} SET {assignments} WHERE id = ?",
            [*fields.values(), memory_id],
        )
        return count > 0

    async def delete_memory(self, kind: MemoryKind, memory_id: str) -> bool:
        count = await self._execute(
            f"DELETE FROM {MEMORY_TABLES[kind]} WHERE id = ?", (memory_id,)
        )
        if count:
            logger.debug(f"{kind.value} memory deleted: {memory_id}")
        return count > 0

    async def touch_memory(self, kind: MemoryKind, memory_id: str, now: str) -> None:
        """Update last_accessed and increment access_count for a memory.

        Args:
            kind: Memory kind
            memory_id: Memory identifier
            now: ISO timestamp of the access
        """
        await self._execute(
            f"""
            UPDATE {MEMORY_TABLES[kind]}
            SET last_accessed = ?, access_count = access_count + 1
            WHERE id = ?
            """,
            (now, memory_id),
        )

    async def list_memories(
        self,
        kind: MemoryKind,
        config_id: str,
        sort_by: str = "created_at",
        descending: bool = True,
        limit: int | None = None,
        offset: int = 0,
        category: str | None = None,
        live_at: str | None = None,
    ) -> list[dict]:
        """List memories of one kind for a config.

        Args:
            kind: Memory kind
            config_id: Owning config
            sort_by: One of importance, created_at, last_accessed
            descending: Sort direction
            limit: Maximum rows (None for all)
            offset: Rows to skip
            category: Semantic category filter
            live_at: If set, exclude episodic rows already expired at this time

        Returns:
            List of memory row dictionaries
        """
        if sort_by not in _SORT_COLUMNS:
            raise ValueError(f"Unsupported sort column: {sort_by}")
        direction = "DESC" if descending else "ASC"
        where, params = self._memory_filter(kind, config_id, category, live_at)
        sql = (
            f"SELECT * FROM {MEMORY_TABLES[kind]} WHERE {where} "
            f"ORDER BY {sort_by} {direction}, id {direction}"
        )
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        return await self._fetchall(sql, params)

    async def count_memories(
        self,
        kind: MemoryKind,
        config_id: str,
        category: str | None = None,
    ) -> int:
        where, params = self._memory_filter(kind, config_id, category, None)
        row = await self._fetchone(
            f"SELECT COUNT(*) AS n FROM {MEMORY_TABLES[kind]} WHERE {where}", params
        )
        return row["n"]

    @staticmethod
    def _memory_filter(
        kind: MemoryKind,
        config_id: str,
        category: str | None,
        live_at: str | None,
    ) -> tuple[str, list[Any]]:
        clauses = ["config_id = ?"]
        params: list[Any] = [config_id]
        if category is not None and kind == MemoryKind.SEMANTIC:
            clauses.append("category = ?")
            params.append(category)
        if live_at is not None and kind == MemoryKind.EPISODIC:
            clauses.append("(expires_at IS NULL OR expires_at > ?)")
            params.append(live_at)
        return " AND ".join(clauses), params

    async def find_semantic_by_key(self, config_id: str, key: str) -> dict | None:
        return await self._fetchone(
            "SELECT * FROM semantic_memories WHERE config_id = ? AND key = ?",
            (config_id, key),
        )

    async def find_eviction_candidate(
        self, kind: MemoryKind, config_id: str
    ) -> dict | None:
        """Lowest-importance memory of a kind, oldest access first on ties."""
        return await self._fetchone(
            f"""
            SELECT * FROM {MEMORY_TABLES[kind]}
            WHERE config_id = ?
            ORDER BY importance ASC, last_accessed ASC
            LIMIT 1
            """,
            (config_id,),
        )

    async def mark_episodic_expired(
        self,
        min_importance: float,
        max_importance: float,
        inactive_before: str,
        now: str,
    ) -> int:
        """Soft-expire inactive episodic memories in an importance band.

        Args:
            min_importance: Inclusive lower importance bound
            max_importance: Exclusive upper importance bound
            inactive_before: Rows last accessed before this time qualify
            now: Value written to ``expires_at``

        Returns:
            Number of rows marked
        """
        return await self._execute(
            """
            UPDATE episodic_memories
            SET expires_at = ?
            WHERE expires_at IS NULL
              AND importance >= ? AND importance < ?
              AND last_accessed < ?
            """,
            (now, min_importance, max_importance, inactive_before),
        )

    async def list_expired_episodic(self, cutoff: str) -> list[dict]:
        """Episodic rows with ``expires_at <= cutoff``, with owner columns."""
        return await self._fetchall(
            """
            SELECT m.*, c.user_id AS owner_user_id,
                   c.character_id AS owner_character_id
            FROM episodic_memories m
            JOIN memory_configs c ON c.id = m.config_id
            WHERE m.expires_at IS NOT NULL AND m.expires_at <= ?
            """,
            (cutoff,),
        )

    # ------------------------------------------------------------------
    # Vectors and embedding cache
    # ------------------------------------------------------------------

    async def upsert_embedding(self, record: dict) -> None:
        await self._execute(
            """
            INSERT INTO memory_embeddings (
                memory_id, memory_type, config_id, embedding,
                text_hash, model, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(memory_id, memory_type) DO UPDATE SET
                config_id = excluded.config_id,
                embedding = excluded.embedding,
                text_hash = excluded.text_hash,
                model = excluded.model,
                created_at = excluded.created_at
            """,
            (
                record["memory_id"],
                record["memory_type"],
                record["config_id"],
                record["embedding"],
                record["text_hash"],
                record["model"],
                record["created_at"],
            ),
        )
        logger.debug(f"Embedding stored for memory: {record['memory_id']}")

    async def get_embedding_hash(
        self, memory_id: str, memory_type: MemoryKind
    ) -> tuple[str, str] | None:
        """Return the (text_hash, model) the memory was last embedded with."""
        row = await self._fetchone(
            """
            SELECT text_hash, model FROM memory_embeddings
            WHERE memory_id = ? AND memory_type = ?
            """,
            (memory_id, memory_type.value),
        )
        return (row["text_hash"], row["model"]) if row else None

    async def get_embeddings(
        self, config_id: str, memory_types: Iterable[MemoryKind]
    ) -> list[dict]:
        """Get stored vectors of a config, for vector search.

        Returns:
            List of dicts with memory_id, memory_type, embedding (bytes)
        """
        types = [t.value for t in memory_types]
        if not types:
            return []
        placeholders = ", ".join("?" for _ in types)
        return await self._fetchall(
            f"""
            SELECT memory_id, memory_type, embedding
            FROM memory_embeddings
            WHERE config_id = ? AND memory_type IN ({placeholders})
            """,
            [config_id, *types],
        )

    async def delete_embedding(self, memory_id: str) -> int:
        return await self._execute(
            "DELETE FROM memory_embeddings WHERE memory_id = ?", (memory_id,)
        )

    async def delete_embeddings_for_config(self, config_id: str) -> int:
        return await self._execute(
            "DELETE FROM memory_embeddings WHERE config_id = ?", (config_id,)
        )

    async def get_cached_embedding(
        self, text_hash: str, model: str, now: str
    ) -> dict | None:
        return await self._fetchone(
            """
            SELECT embedding, tokens_used FROM embedding_cache
            WHERE text_hash = ? AND model = ? AND expires_at > ?
            """,
            (text_hash, model, now),
        )

    async def put_cached_embedding(self, entry: dict) -> None:
        await self._execute(
            """
            INSERT INTO embedding_cache (
                text_hash, model, embedding, tokens_used, created_at, expires_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(text_hash, model) DO UPDATE SET
                embedding = excluded.embedding,
                tokens_used = excluded.tokens_used,
                created_at = excluded.created_at,
                expires_at = excluded.expires_at
            """,
            (
                entry["text_hash"],
                entry["model"],
                entry["embedding"],
                entry["tokens_used"],
                entry["created_at"],
                entry["expires_at"],
            ),
        )

    async def purge_embedding_cache(self, now: str) -> int:
        return await self._execute(
            "DELETE FROM embedding_cache WHERE expires_at <= ?", (now,)
        )

    # ------------------------------------------------------------------
    # Chat log and counters
    # ------------------------------------------------------------------

    async def insert_chat_message(self, row: dict[str, Any]) -> str:
        await self._insert("chat_messages", row)
        logger.debug(f"Chat message inserted: {row['id']} (chat {row['chat_id']})")
        return row["id"]

    async def increment_chat_counter(self, chat_id: str, now: str) -> int:
        """Bump the durable per-chat message counter.

        Returns:
            The counter value after the increment
        """
        async with self.transaction():
            await self._execute(
                """
                INSERT INTO chat_counters (chat_id, message_count, updated_at)
                VALUES (?, 1, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    message_count = message_count + 1,
                    updated_at = excluded.updated_at
                """,
                (chat_id, now),
            )
            row = await self._fetchone(
                "SELECT message_count FROM chat_counters WHERE chat_id = ?",
                (chat_id,),
            )
        return row["message_count"]

    async def get_chat_counter(self, chat_id: str) -> int:
        row = await self._fetchone(
            "SELECT message_count FROM chat_counters WHERE chat_id = ?", (chat_id,)
        )
        return row["message_count"] if row else 0

    async def delete_chat_counter(self, chat_id: str) -> None:
        await self._execute("DELETE FROM chat_counters WHERE chat_id = ?", (chat_id,))

    async def list_unsummarized_messages(self, chat_id: str) -> list[dict]:
        """Unsummarized messages of a chat, oldest first."""
        return await self._fetchall(
            """
            SELECT * FROM chat_messages
            WHERE chat_id = ? AND is_summarized = 0
            ORDER BY seq ASC
            """,
            (chat_id,),
        )

    async def sum_unsummarized_tokens(self, chat_id: str) -> int:
        row = await self._fetchone(
            """
            SELECT COALESCE(SUM(tokens), 0) AS total FROM chat_messages
            WHERE chat_id = ? AND is_summarized = 0
            """,
            (chat_id,),
        )
        return int(row["total"])

    async def get_messages_between(
        self, chat_id: str, start_message_id: str, end_message_id: str
    ) -> list[dict]:
        """Unsummarized messages of a chat from start to end message, inclusive."""
        return await self._fetchall(
            """
            SELECT * FROM chat_messages
            WHERE chat_id = ? AND is_summarized = 0
              AND seq BETWEEN
                (SELECT seq FROM chat_messages WHERE id = ?)
                AND (SELECT seq FROM chat_messages WHERE id = ?)
            ORDER BY seq ASC
            """,
            (chat_id, start_message_id, end_message_id),
        )

    async def mark_messages_summarized(
        self,
        message_ids: list[str],
        job_id: str,
        memory_ids: str,
        now: str,
    ) -> int:
        if not message_ids:
            return 0
        placeholders = ", ".join("?" for _ in message_ids)
        return await self._execute(
            f"""
            UPDATE chat_messages
            SET is_summarized = 1, summarized_at = ?,
                summarization_job_id = ?, memory_ids = ?
            WHERE id IN ({placeholders})
            """,
            [now, job_id, memory_ids, *message_ids],
        )

    # ------------------------------------------------------------------
    # Summarization jobs
    # ------------------------------------------------------------------

    async def insert_job(self, row: dict[str, Any]) -> str:
        await self._insert("summarization_jobs", row)
        logger.debug(f"Summarization job inserted: {row['id']}")
        return row["id"]

    async def get_job(self, job_id: str) -> dict | None:
        return await self._fetchone(
            "SELECT * FROM summarization_jobs WHERE id = ?", (job_id,)
        )

    async def find_active_job(self, chat_id: str) -> dict | None:
        return await self._fetchone(
            """
            SELECT * FROM summarization_jobs
            WHERE chat_id = ? AND status IN ('PENDING', 'PROCESSING')
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (chat_id,),
        )

    async def transition_job(
        self,
        job_id: str,
        from_status: str,
        to_status: str,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Conditionally move a job between states.

        Args:
            job_id: Job identifier
            from_status: Required current status
            to_status: New status
            fields: Extra columns (started_at, completed_at, result, error)

        Returns:
            True if the job was in ``from_status`` and has been moved
        """
        fields = dict(fields or {})
        allowed = {"started_at", "completed_at", "result", "error"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Columns not updatable: {sorted(unknown)}")
        assignments = ", ".join(["status = ?", *(f"{k} = ?" for k in fields)])
        count = await self._execute(
            f"UPDATE summarization_jobs SET {assignments} WHERE id = ? AND status = ?",
            [to_status, *fields.values(), job_id, from_status],
        )
        return count > 0

    async def fail_stale_jobs(self, started_before: str, now: str, error: str) -> int:
        return await self._execute(
            """
            UPDATE summarization_jobs
            SET status = 'FAILED', error = ?, completed_at = ?
            WHERE status = 'PROCESSING' AND started_at < ?
            """,
            (error, now, started_before),
        )

    async def delete_old_jobs(self, completed_before: str) -> int:
        return await self._execute(
            """
            DELETE FROM summarization_jobs
            WHERE status IN ('COMPLETED', 'FAILED') AND completed_at < ?
            """,
            (completed_before,),
        )

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    async def insert_archive(self, row: dict[str, Any]) -> str:
        await self._insert("archived_memories", row)
        logger.debug(
            f"Memory archived: {row['original_memory_id']} "
            f"({row['archived_reason']})"
        )
        return row["id"]

    async def get_archive(self, archive_id: str) -> dict | None:
        return await self._fetchone(
            "SELECT * FROM archived_memories WHERE id = ?", (archive_id,)
        )

    async def list_archives(self, user_id: str, character_id: str) -> list[dict]:
        return await self._fetchall(
            """
            SELECT * FROM archived_memories
            WHERE user_id = ? AND character_id = ?
            ORDER BY archived_at DESC
            """,
            (user_id, character_id),
        )

    async def update_archive(self, archive_id: str, fields: dict[str, Any]) -> None:
        assignments = self._assignments(fields, _UPDATABLE_ARCHIVE_COLUMNS)
        await self._execute(
            f"UPDATE archived_memories SET {assignments} WHERE id = ?",
            [*fields.values(), archive_id],
        )

    async def purge_expired_archives(self, now: str) -> int:
        return await self._execute(
            """
            DELETE FROM archived_memories
            WHERE restore_expiry IS NOT NULL AND restore_expiry <= ?
            """,
            (now,),
        )

    async def insert_summary_archive(self, row: dict[str, Any]) -> str:
        await self._insert("summary_archives", row)
        return row["id"]

    async def list_summary_archives(
        self, user_id: str, character_id: str, include_deleted: bool = False
    ) -> list[dict]:
        sql = """
            SELECT * FROM summary_archives
            WHERE user_id = ? AND character_id = ?
        """
        if not include_deleted:
            sql += " AND is_deleted = 0"
        sql += " ORDER BY created_at DESC"
        return await self._fetchall(sql, (user_id, character_id))

    async def mark_summary_archives_deleted(self, memory_id: str, now: str) -> int:
        """Flag summary archives that produced ``memory_id`` as deleted."""
        return await self._execute(
            """
            UPDATE summary_archives
            SET is_deleted = 1, deleted_at = ?
            WHERE is_deleted = 0
              AND EXISTS (
                SELECT 1 FROM json_each(summary_archives.memory_ids)
                WHERE json_each.value = ?
              )
            """,
            (now, memory_id),
        )
