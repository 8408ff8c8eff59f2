"""SQLite database management for the Haven journal store.

Handles async connection lifecycle (aiosqlite), table creation, and the
store metadata table that carries the record schema-version tag.
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

# Version of the table layout below (not of the record payloads)
DDL_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- One row per journal record; only id + timestamp are plaintext
CREATE TABLE IF NOT EXISTS records (
    id             TEXT PRIMARY KEY,
    timestamp      TEXT NOT NULL,
    schema_version INTEGER NOT NULL,
    nonce          BLOB NOT NULL,
    tag            BLOB NOT NULL,
    ciphertext     BLOB NOT NULL,
    updated_at     TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Key/value store metadata (record schema version, DDL version)
CREATE TABLE IF NOT EXISTS store_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- PHI-free audit trail (appends, corrections, deletes, exports, migrations)
CREATE TABLE IF NOT EXISTS audit_log (
    id            TEXT PRIMARY KEY,
    timestamp     TEXT NOT NULL DEFAULT (datetime('now')),
    action        TEXT NOT NULL,
    tool_name     TEXT,
    input_hash    TEXT,
    record_id     TEXT,
    record_count  INTEGER,
    data_exported INTEGER DEFAULT 0,
    duration_ms   REAL,
    status        TEXT NOT NULL DEFAULT 'success',
    error_type    TEXT,
    metadata_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_records_ts_id   ON records(timestamp, id);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class HealthDatabase:
    """Async SQLite database manager for the journal store.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    Usage::

        db = HealthDatabase(":memory:")
        await db.initialize()
        conn = db.connection
        # ... use connection ...
        await db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def connection(self) -> aiosqlite.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    @property
    def path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Open the connection and ensure the schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return  # Already initialized

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(db_file))
            await self._conn.execute("PRAGMA journal_mode=WAL")
        else:
            self._conn = await aiosqlite.connect(":memory:")

        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA synchronous=FULL")

        await self._ensure_schema()
        logger.info("Journal database initialized: %s", self._db_path)

    async def _ensure_schema(self) -> None:
        """Create tables if they don't exist and record the DDL version."""
        conn = self.connection
        await conn.executescript(_SCHEMA_V1)

        current = await self.get_meta("ddl_version")
        if current is None or int(current) < DDL_VERSION:
            await self.set_meta("ddl_version", str(DDL_VERSION))
            logger.info("Store tables at DDL version %d", DDL_VERSION)

    async def get_meta(self, key: str) -> str | None:
        """Return a store metadata value, or None if unset."""
        async with self.connection.execute(
            "SELECT value FROM store_meta WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row is not None else None

    async def set_meta(self, key: str, value: str) -> None:
        """Insert or replace a store metadata value (committed immediately)."""
        conn = self.connection
        await conn.execute(
            """INSERT INTO store_meta (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
            (key, value),
        )
        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("Journal database closed")

    async def __aenter__(self) -> HealthDatabase:
        await self.initialize()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()
