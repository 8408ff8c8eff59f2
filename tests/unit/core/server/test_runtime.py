"""Tests for JournalRuntime: lazy storage opening and startup migration."""

from __future__ import annotations

import asyncio
import json

from haven.core.config.settings import Settings
from haven.core.server.runtime import JournalRuntime
from haven.core.storage.database import HealthDatabase
from haven.core.storage.encryption import EncryptionGateway
from haven.core.storage.migrations import CURRENT_SCHEMA_VERSION
from haven.core.storage.models import encode_payload
from haven.core.storage.record_store import VersionedRecordStore


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestStorageDisabled:
    def test_no_key(self):
        runtime = JournalRuntime(Settings(haven_encryption_key=""))

        async def _go():
            return await runtime.repository(), await runtime.insights()

        repo, insights = _run(_go())
        assert repo is None and insights is None
        assert not runtime.storage_configured
        assert "HAVEN_ENCRYPTION_KEY" in runtime.disabled_reason

    def test_invalid_key(self):
        runtime = JournalRuntime(Settings(haven_encryption_key="too-short"))
        assert _run(runtime.repository()) is None
        assert runtime.disabled_reason.startswith("Invalid encryption key")


    def test_unopenable_database_reported_and_retried(self, encryption_key, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        runtime = JournalRuntime(Settings(
            haven_encryption_key=encryption_key,
            haven_db_path=str(blocker / "journal.db"),
            haven_backup_dir=str(tmp_path / "backups"),
        ))

        async def _go():
            failed = await runtime.repository()
            reason = runtime.disabled_reason
            blocker.unlink()
            recovered = await runtime.repository()
            await runtime.close()
            return failed, reason, recovered

        failed, reason, recovered = _run(_go())
        assert failed is None
        assert reason.startswith("Journal storage failed to open")
        assert recovered is not None
        assert runtime.disabled_reason is None


class TestOpen:
    def test_open_once(self, encryption_key):
        runtime = JournalRuntime(Settings(haven_encryption_key=encryption_key))

        async def _go():
            first = await runtime.repository()
            second = await runtime.repository()
            audit = await runtime.audit_logger()
            await runtime.close()
            return first, second, audit

        first, second, audit = _run(_go())
        assert first is second
        assert audit is not None

    def test_startup_migration_writes_snapshot(self, encryption_key, tmp_path):
        db_path = str(tmp_path / "journal.db")
        backup_dir = tmp_path / "backups"
        legacy = {
            "id": "old-1",
            "timestamp": "2025-11-04T08:30:00+00:00",
            "baselineData": {"pain": 5, "locations": ["neck"]},
        }

        async def _seed():
            async with HealthDatabase(db_path) as db:
                store = VersionedRecordStore(db, EncryptionGateway(encryption_key))
                await store.put("old-1", 0, encode_payload(legacy), timestamp=legacy["timestamp"])

        async def _open():
            runtime = JournalRuntime(Settings(
                haven_encryption_key=encryption_key,
                haven_db_path=db_path,
                haven_backup_dir=str(backup_dir),
            ))
            repo = await runtime.repository()
            entries = await repo.list()
            audit = await runtime.audit_logger()
            events = await audit.get_events()
            await runtime.close()
            return entries, events

        _run(_seed())
        entries, events = _run(_open())

        assert [e.severity for e in entries] == [5.0]
        assert [e["action"] for e in events] == ["store_migration"]
        snapshots = list(backup_dir.glob("pre-migration-*.json"))
        assert len(snapshots) == 1
        saved = json.loads(snapshots[0].read_text())
        assert saved["records"][0]["schemaVersion"] == 0

        async def _check_tag():
            async with HealthDatabase(db_path) as db:
                return await db.get_meta("schema_version")

        assert _run(_check_tag()) == str(CURRENT_SCHEMA_VERSION)
