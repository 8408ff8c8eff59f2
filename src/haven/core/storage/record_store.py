"""Versioned record store: encrypted, atomic per-record persistence.

The store seals every payload through the :class:`EncryptionGateway` before
it touches SQLite and opens it again on the way out. Callers only ever hand
in and receive plaintext bytes; the ciphertext never leaves this module
except inside a :class:`StoredRecord` envelope.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from haven.core.storage.database import HealthDatabase
from haven.core.storage.encryption import AuthenticationFailure, EncryptionGateway
from haven.core.storage.models import RecordIndex, StoredRecord, format_timestamp, utc_now

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when record store operations fail."""


class NotFound(StorageError):
    """Raised when a record id does not exist."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record not found: {record_id}")


class QuotaExceeded(StorageError):
    """Raised when a write would exceed the storage quota.

    Carries enough context for the caller to offer "export then free space".
    """

    def __init__(self, *, required_bytes: int, used_bytes: int, quota_bytes: int | None) -> None:
        self.required_bytes = required_bytes
        self.used_bytes = used_bytes
        self.quota_bytes = quota_bytes
        limit = f"{quota_bytes} bytes" if quota_bytes is not None else "device limit"
        super().__init__(
            f"Storage quota exceeded: need {required_bytes} bytes, "
            f"{used_bytes} in use, limit {limit}"
        )


class CorruptRecord(StorageError):
    """Raised when a stored record fails authentication on read."""

    def __init__(self, record_id: str, reason: str = "authentication failed") -> None:
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Corrupt record {record_id}: {reason}")


def _associated_data(record_id: str, schema_version: int) -> bytes:
    return f"{record_id}:{schema_version}".encode("utf-8")


def _is_disk_full(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None and code == getattr(sqlite3, "SQLITE_FULL", 13):
        return True
    return "full" in str(exc).lower()


class VersionedRecordStore:
    """Encrypted key/value record store with a monotonic schema-version tag.

    Usage::

        db = HealthDatabase(":memory:")
        await db.initialize()
        store = VersionedRecordStore(db, EncryptionGateway(key))

        await store.put("rec-1", 3, b'{"severity": 4}', timestamp=now)
        payload = await store.get("rec-1")
        async for record in store.scan(since="2026-01-01T00:00:00+00:00"):
            ...
    """

    def __init__(
        self,
        database: HealthDatabase,
        gateway: EncryptionGateway,
        *,
        quota_bytes: int | None = None,
    ) -> None:
        self._db = database
        self._gateway = gateway
        self._quota_bytes = quota_bytes

    # ------------------------------------------------------------------
    # Schema-version tag
    # ------------------------------------------------------------------

    async def schema_version(self) -> int:
        """Return the store-level schema version (0 for a fresh store)."""
        value = await self._db.get_meta("schema_version")
        return int(value) if value is not None else 0

    async def set_schema_version(self, version: int) -> None:
        """Advance the store-level schema version.

        Raises:
            StorageError: If ``version`` is lower than the current tag.
        """
        current = await self.schema_version()
        if version < current:
            raise StorageError(
                f"Schema version is monotonic: cannot move from {current} to {version}"
            )
        if version != current:
            await self._db.set_meta("schema_version", str(version))
            logger.info("Store schema version %d -> %d", current, version)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def put(
        self,
        record_id: str,
        schema_version: int,
        plaintext: bytes,
        *,
        timestamp: datetime | str | None = None,
    ) -> StoredRecord:
        """Encrypt and persist a record, replacing any prior value atomically.

        Args:
            record_id: Stable record identifier.
            schema_version: Schema version of ``plaintext``.
            plaintext: Serialized payload bytes.
            timestamp: Ordering timestamp; defaults to now.

        Returns:
            The envelope as stored.

        Raises:
            QuotaExceeded: If the write would exceed the quota or the disk is full.
            StorageError: On any other database failure (prior value retained).
        """
        if not record_id:
            raise StorageError("Record id must not be empty")
        ts = format_timestamp(timestamp if timestamp is not None else utc_now())
        sealed = self._gateway.encrypt(
            plaintext, associated_data=_associated_data(record_id, schema_version)
        )
        record = StoredRecord(
            id=record_id,
            schema_version=schema_version,
            timestamp=ts,
            nonce=sealed.nonce,
            tag=sealed.tag,
            ciphertext=sealed.ciphertext,
        )
        await self._write(record)
        return record

    async def _write(self, record: StoredRecord) -> None:
        conn = self._db.connection

        if self._quota_bytes is not None:
            used = await self._usage_excluding(record.id)
            if used + record.size > self._quota_bytes:
                raise QuotaExceeded(
                    required_bytes=record.size,
                    used_bytes=used,
                    quota_bytes=self._quota_bytes,
                )

        try:
            await conn.execute(
                """INSERT INTO records (id, timestamp, schema_version, nonce, tag, ciphertext, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       timestamp = excluded.timestamp,
                       schema_version = excluded.schema_version,
                       nonce = excluded.nonce,
                       tag = excluded.tag,
                       ciphertext = excluded.ciphertext,
                       updated_at = excluded.updated_at""",
                (
                    record.id,
                    record.timestamp,
                    record.schema_version,
                    record.nonce,
                    record.tag,
                    record.ciphertext,
                    format_timestamp(utc_now()),
                ),
            )
            await conn.commit()
        except sqlite3.Error as exc:
            await conn.rollback()
            if _is_disk_full(exc):
                used = await self.usage_bytes()
                raise QuotaExceeded(
                    required_bytes=record.size, used_bytes=used, quota_bytes=self._quota_bytes
                ) from exc
            raise StorageError(f"Write failed for record {record.id}: {exc}") from exc

        logger.debug("Stored record %s (schema v%d)", record.id, record.schema_version)

    async def delete(self, record_id: str) -> None:
        """Delete a record.

        Raises:
            NotFound: If the record does not exist.
        """
        conn = self._db.connection
        try:
            cursor = await conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
            deleted = cursor.rowcount
            await conn.commit()
        except sqlite3.Error as exc:
            await conn.rollback()
            raise StorageError(f"Delete failed for record {record_id}: {exc}") from exc
        if deleted == 0:
            raise NotFound(record_id)
        logger.info("Deleted record %s", record_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_record(self, record_id: str) -> StoredRecord:
        """Fetch the encrypted envelope for a record.

        Raises:
            NotFound: If the record does not exist.
        """
        async with self._db.connection.execute(
            "SELECT id, timestamp, schema_version, nonce, tag, ciphertext FROM records WHERE id = ?",
            (record_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFound(record_id)
        return _row_to_record(row)

    async def get(self, record_id: str) -> bytes:
        """Fetch and decrypt a record's payload.

        Raises:
            NotFound: If the record does not exist.
            CorruptRecord: If the record fails authentication.
        """
        return self.open(await self.get_record(record_id))

    def open(self, record: StoredRecord) -> bytes:
        """Decrypt an envelope produced by this store.

        Raises:
            CorruptRecord: If authentication fails (tampering, truncation,
                wrong key, or an envelope moved to another id/version).
        """
        try:
            return self._gateway.decrypt(
                record.ciphertext,
                record.nonce,
                record.tag,
                associated_data=_associated_data(record.id, record.schema_version),
            )
        except AuthenticationFailure as exc:
            logger.warning("Record %s failed authentication", record.id)
            raise CorruptRecord(record.id, str(exc)) from exc

    async def scan(
        self,
        *,
        since: datetime | str | None = None,
        until: datetime | str | None = None,
        predicate: Callable[[RecordIndex], bool] | None = None,
        descending: bool = False,
        page_size: int = 200,
    ) -> AsyncIterator[StoredRecord]:
        """Lazily iterate stored envelopes ordered by (timestamp, id).

        Each call starts a fresh pass (restartable). Pages are fetched on
        demand with keyset pagination, so records written mid-scan after the
        current position are picked up and nothing is read twice.

        Args:
            since: Inclusive lower timestamp bound.
            until: Inclusive upper timestamp bound.
            predicate: Filter on the plaintext index.
            descending: Newest first instead of oldest first.
            page_size: Rows fetched per round trip.
        """
        if page_size < 1:
            raise ValueError("page_size must be positive")

        base_conditions: list[str] = []
        base_params: list[Any] = []
        if since is not None:
            base_conditions.append("timestamp >= ?")
            base_params.append(format_timestamp(since))
        if until is not None:
            base_conditions.append("timestamp <= ?")
            base_params.append(format_timestamp(until))

        cmp = "<" if descending else ">"
        order = "DESC" if descending else "ASC"
        last_key: tuple[str, str] | None = None

        while True:
            conditions = list(base_conditions)
            params = list(base_params)
            if last_key is not None:
                conditions.append(f"(timestamp {cmp} ? OR (timestamp = ? AND id {cmp} ?))")
                params.extend([last_key[0], last_key[0], last_key[1]])
            where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
            query = (
                "SELECT id, timestamp, schema_version, nonce, tag, ciphertext FROM records"
                f"{where} ORDER BY timestamp {order}, id {order} LIMIT ?"
            )
            params.append(page_size)

            async with self._db.connection.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            if not rows:
                return

            for row in rows:
                record = _row_to_record(row)
                if predicate is None or predicate(record.index):
                    yield record
            last = rows[-1]
            last_key = (last["timestamp"], last["id"])
            if len(rows) < page_size:
                return

    async def count(self) -> int:
        """Return the number of stored records."""
        async with self._db.connection.execute("SELECT COUNT(*) FROM records") as cursor:
            row = await cursor.fetchone()
        return row[0]

    async def usage_bytes(self) -> int:
        """Return the total encrypted bytes held by the store."""
        return await self._usage_excluding(None)

    async def _usage_excluding(self, record_id: str | None) -> int:
        query = "SELECT COALESCE(SUM(length(nonce) + length(tag) + length(ciphertext)), 0) FROM records"
        params: tuple[Any, ...] = ()
        if record_id is not None:
            query += " WHERE id != ?"
            params = (record_id,)
        async with self._db.connection.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Encrypted snapshots (pre-migration backups)
    # ------------------------------------------------------------------

    async def export_envelopes(self) -> dict[str, Any]:
        """Snapshot every record as still-encrypted envelopes.

        The result is JSON-serialisable and can be fed back to
        :meth:`restore_envelopes` to undo a migration.
        """
        records = [record.to_envelope() async for record in self.scan()]
        return {
            "schema_version": await self.schema_version(),
            "exported_at": format_timestamp(utc_now()),
            "records": records,
        }

    async def restore_envelopes(self, snapshot: dict[str, Any]) -> int:
        """Write envelopes from :meth:`export_envelopes` back verbatim.

        The store's schema-version tag is not lowered; records keep their own
        per-record version, so lazy migration upgrades them again on read.

        Returns:
            Number of records restored.
        """
        restored = 0
        for envelope in snapshot.get("records", []):
            await self._write(StoredRecord.from_envelope(envelope))
            restored += 1
        logger.info("Restored %d records from encrypted snapshot", restored)
        return restored

    async def ids(self) -> list[str]:
        """Return all record ids in (timestamp, id) order."""
        return [record.id async for record in self.scan()]


def _row_to_record(row: Any) -> StoredRecord:
    return StoredRecord(
        id=row["id"],
        schema_version=int(row["schema_version"]),
        timestamp=row["timestamp"],
        nonce=bytes(row["nonce"]),
        tag=bytes(row["tag"]),
        ciphertext=bytes(row["ciphertext"]),
    )
