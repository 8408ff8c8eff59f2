"""Entry repository: typed journal entries on top of the encrypted record store.

The repository is the only reader and writer of the
:class:`VersionedRecordStore`. It validates drafts, serializes entries at the
current schema version, upgrades older records on read (writing the upgraded
copy back when it can) and is the single exit point for decrypted data via
:meth:`EntryRepository.export_snapshot`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from haven.core.audit.logger import (
    ACTION_APPEND,
    ACTION_DELETE,
    ACTION_SUPERSEDE,
    AuditLogger,
)
from haven.core.privacy.policy import DateRange, project_entry, resolve_fields
from haven.core.storage.migrations import MigrationFailed, MigrationManager, MigrationReport
from haven.core.storage.models import (
    SEVERITY_MAX,
    DraftEntry,
    Entry,
    StoredRecord,
    ValidationError,
    decode_payload,
    encode_payload,
    utc_now,
    validate_draft,
)
from haven.core.storage.record_store import CorruptRecord, StorageError, VersionedRecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadIssue:
    """A record skipped during a listing pass."""

    record_id: str
    kind: str      # 'corrupt' | 'migration_failed'
    detail: str


class EntryRepository:
    """Append-only journal of health entries.

    Entries are never edited in place: :meth:`supersede` writes a correction
    that points at the original, and listings hide the original by default.

    Usage::

        repo = EntryRepository(store, scale_max=10)
        entry = await repo.append(DraftEntry(severity=4, tags=["location:knee"]))
        async for e in repo.list_since(since):
            ...
        print(repo.last_read_issues)   # records skipped by that pass
    """

    def __init__(
        self,
        store: VersionedRecordStore,
        migrations: MigrationManager | None = None,
        *,
        scale_max: float = SEVERITY_MAX,
        audit_logger: AuditLogger | None = None,
        write_back: bool = True,
    ) -> None:
        self._store = store
        self._migrations = migrations or MigrationManager(scale_max=scale_max)
        self._scale_max = scale_max
        self._audit = audit_logger
        self._write_back = write_back
        self.last_read_issues: list[ReadIssue] = []

    @property
    def scale_max(self) -> float:
        return self._scale_max

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, draft: DraftEntry) -> Entry:
        """Validate and persist a new entry.

        Raises:
            ValidationError: With one issue per malformed field.
            QuotaExceeded: If the store is full; nothing is written.
        """
        validated = validate_draft(draft, scale_max=self._scale_max)
        entry = Entry(
            id=str(uuid.uuid4()),
            timestamp=validated.timestamp or utc_now(),
            severity=validated.severity,
            tags=validated.tags,
            notes=validated.notes,
            interventions=validated.interventions,
            context=validated.context,
        )
        await self._persist(entry)
        logger.info("Appended entry %s", entry.id)
        if self._audit is not None:
            await self._audit.log_entry_write(ACTION_APPEND, entry.id)
        return entry

    async def supersede(self, original_id: str, correction: DraftEntry) -> Entry:
        """Record a correction for an existing entry.

        The correction inherits the original's timestamp unless the draft
        carries its own. Only the newest version of an entry may be corrected.

        Raises:
            NotFound: If ``original_id`` does not exist.
            ValidationError: If the draft is malformed or the original
                already has a correction.
        """
        original = await self.get(original_id)
        validated = validate_draft(correction, scale_max=self._scale_max)

        async for existing in self._iter_entries(record_issues=False):
            if existing.supersedes == original_id:
                raise ValidationError(
                    f"supersedes: entry {original_id} already corrected by {existing.id}"
                )

        entry = Entry(
            id=str(uuid.uuid4()),
            timestamp=validated.timestamp or original.timestamp,
            severity=validated.severity,
            tags=validated.tags,
            notes=validated.notes,
            interventions=validated.interventions,
            context=validated.context,
            supersedes=original_id,
        )
        await self._persist(entry)
        logger.info("Entry %s superseded by %s", original_id, entry.id)
        if self._audit is not None:
            await self._audit.log_entry_write(
                ACTION_SUPERSEDE, entry.id, metadata={"supersedes": original_id}
            )
        return entry

    async def delete(self, entry_id: str) -> list[str]:
        """Delete an entry together with every correction of it.

        Returns:
            The ids removed, corrections first.

        Raises:
            NotFound: If ``entry_id`` does not exist.
        """
        await self._store.get_record(entry_id)

        corrections: dict[str, list[str]] = {}
        async for entry in self._iter_entries(record_issues=False):
            if entry.supersedes:
                corrections.setdefault(entry.supersedes, []).append(entry.id)

        chain: list[str] = []
        frontier = [entry_id]
        while frontier:
            current = frontier.pop()
            for child in corrections.get(current, []):
                if child not in chain:
                    chain.append(child)
                    frontier.append(child)

        removed = list(reversed(chain)) + [entry_id]
        for record_id in removed:
            await self._store.delete(record_id)

        logger.info("Deleted entry %s (%d records)", entry_id, len(removed))
        if self._audit is not None:
            await self._audit.log_entry_write(
                ACTION_DELETE, entry_id, metadata={"records_deleted": len(removed)}
            )
        return removed

    async def _persist(self, entry: Entry) -> StoredRecord:
        return await self._store.put(
            entry.id,
            self._migrations.current_version,
            encode_payload(entry.to_payload()),
            timestamp=entry.timestamp,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, entry_id: str) -> Entry:
        """Load a single entry, upgrading it if it predates the current schema.

        Raises:
            NotFound: If the entry does not exist.
            CorruptRecord: If the record fails authentication.
            MigrationFailed: If the record cannot be upgraded.
        """
        record = await self._store.get_record(entry_id)
        return await self._load(record)

    async def list_since(
        self,
        since: datetime | str | None = None,
        *,
        until: datetime | str | None = None,
        include_superseded: bool = False,
    ) -> AsyncIterator[Entry]:
        """Yield entries in timestamp order.

        Records that are corrupt or cannot be migrated are skipped and listed
        in :attr:`last_read_issues`; they never abort the pass.
        """
        issues: list[ReadIssue] = []
        self.last_read_issues = issues

        hidden: set[str] = set()
        if not include_superseded:
            async for entry in self._iter_entries(record_issues=False):
                if entry.supersedes:
                    hidden.add(entry.supersedes)

        async for entry in self._iter_entries(since=since, until=until, issues=issues):
            if entry.id not in hidden:
                yield entry

        if issues:
            logger.warning("Listing skipped %d unreadable records", len(issues))

    async def list(
        self,
        since: datetime | str | None = None,
        *,
        until: datetime | str | None = None,
        include_superseded: bool = False,
    ) -> list[Entry]:
        """Materialised :meth:`list_since`; a stable snapshot for analytics."""
        return [
            entry
            async for entry in self.list_since(
                since, until=until, include_superseded=include_superseded
            )
        ]

    async def count(self) -> int:
        """Number of stored records, corrections and superseded originals included."""
        return await self._store.count()

    async def _iter_entries(
        self,
        *,
        since: datetime | str | None = None,
        until: datetime | str | None = None,
        issues: list[ReadIssue] | None = None,
        record_issues: bool = True,
    ) -> AsyncIterator[Entry]:
        async for record in self._store.scan(since=since, until=until):
            try:
                yield await self._load(record)
            except CorruptRecord as exc:
                if record_issues and issues is not None:
                    issues.append(ReadIssue(record.id, "corrupt", exc.reason))
            except MigrationFailed as exc:
                if record_issues and issues is not None:
                    issues.append(ReadIssue(record.id, "migration_failed", exc.reason))

    async def _load(self, record: StoredRecord) -> Entry:
        plaintext = self._store.open(record)
        try:
            payload = decode_payload(plaintext)
        except ValueError as exc:
            raise CorruptRecord(record.id, "payload is not a JSON object") from exc

        upgraded, version = self._migrations.upgrade(
            payload, record.schema_version, record_id=record.id
        )
        try:
            entry = Entry.from_payload(upgraded)
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            raise MigrationFailed(
                record.id, record.schema_version, f"upgraded payload unusable: {exc}"
            ) from exc

        if version != record.schema_version and self._write_back:
            try:
                await self._store.put(
                    record.id, version, encode_payload(upgraded), timestamp=record.timestamp
                )
                logger.debug("Wrote back record %s at v%d", record.id, version)
            except StorageError as exc:
                logger.warning("Write-back of record %s failed: %s", record.id, exc)
        return entry

    # ------------------------------------------------------------------
    # Export and maintenance
    # ------------------------------------------------------------------

    async def export_snapshot(
        self,
        date_range: DateRange | tuple[Any, Any] | None = None,
        field_selection: Iterable[str] | None = None,
        *,
        coarsen: bool = False,
    ) -> list[dict[str, Any]]:
        """Export decrypted entries, reduced to the selected fields.

        The only path by which decrypted data leaves the core. Every call is
        recorded in the audit trail.

        Args:
            date_range: ``DateRange`` or ``(start, end)``; either side may be None.
            field_selection: Field names to include (default: timestamp,
                severity, tags).
            coarsen: Round severities to whole numbers.

        Raises:
            ValidationError: On an unknown field or an inverted range.
        """
        if date_range is None:
            rng = DateRange()
        elif isinstance(date_range, DateRange):
            rng = date_range
        else:
            rng = DateRange.parse(*date_range)
        fields = resolve_fields(field_selection)

        exported = [
            project_entry(entry, fields, coarsen=coarsen)
            async for entry in self.list_since(rng.start, until=rng.end)
        ]

        logger.info("Exported %d entries (%d fields)", len(exported), len(fields))
        if self._audit is not None:
            await self._audit.log_export(
                record_count=len(exported),
                fields=list(fields),
                request={
                    "start": rng.start.isoformat() if rng.start else None,
                    "end": rng.end.isoformat() if rng.end else None,
                    "fields": list(fields),
                    "coarsen": coarsen,
                },
            )
        return exported

    async def migrate_all(self, *, snapshot_path: str | Path | None = None) -> MigrationReport:
        """Eagerly upgrade every outdated record (see :meth:`MigrationManager.migrate_store`)."""
        report = await self._migrations.migrate_store(self._store, snapshot_path=snapshot_path)
        if self._audit is not None:
            await self._audit.log_migration(
                from_version=report.from_version,
                to_version=report.to_version,
                migrated=len(report.migrated),
                failed=len(report.failed) + len(report.corrupt),
            )
        return report
