"""Lazily opened journal runtime shared by the tool modules.

The storage stack is async (aiosqlite), while the server factory is not, so
the database is opened on the first tool call inside the running event loop.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from haven.core.audit.logger import AuditLogger
from haven.core.config.settings import Settings
from haven.core.storage.database import HealthDatabase
from haven.core.storage.encryption import EncryptionError, EncryptionGateway
from haven.core.storage.migrations import MigrationManager
from haven.core.storage.models import utc_now
from haven.core.storage.record_store import StorageError, VersionedRecordStore
from haven.core.storage.repository import EntryRepository
from haven.domains.health.domain_logic.insights_service import InsightsService

logger = logging.getLogger(__name__)


class JournalRuntime:
    """Owns the database, repository, audit logger and insights facade.

    Usage::

        runtime = JournalRuntime(get_settings())
        repo = await runtime.repository()     # None when storage is disabled
        ...
        await runtime.close()
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._settings = settings
        self._clock = clock
        self._lock = asyncio.Lock()
        self._opened = False
        self._db: HealthDatabase | None = None
        self._repo: EntryRepository | None = None
        self._audit: AuditLogger | None = None
        self._insights: InsightsService | None = None
        self.disabled_reason: str | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def storage_configured(self) -> bool:
        return bool(self._settings.haven_encryption_key)

    async def open(self) -> bool:
        """Open storage once. Returns False when storage is unavailable."""
        async with self._lock:
            if self._opened:
                return self._repo is not None
            self._opened = True

            settings = self._settings
            if not settings.haven_encryption_key:
                self.disabled_reason = (
                    "No HAVEN_ENCRYPTION_KEY configured; journal storage is disabled."
                )
                logger.info(self.disabled_reason)
                return False

            try:
                gateway = EncryptionGateway(settings.haven_encryption_key)
            except EncryptionError as exc:
                self.disabled_reason = f"Invalid encryption key: {exc}"
                logger.error("Failed to initialize storage: %s", exc)
                return False

            db = HealthDatabase(settings.haven_db_path)
            store = VersionedRecordStore(db, gateway, quota_bytes=settings.haven_quota_bytes)
            audit = AuditLogger(db)
            repo = EntryRepository(
                store,
                MigrationManager(scale_max=settings.haven_scale_max),
                scale_max=settings.haven_scale_max,
                audit_logger=audit,
            )
            try:
                await db.initialize()
                if settings.haven_migrate_on_start:
                    await self._migrate_on_start(repo)
            except (OSError, sqlite3.Error, StorageError) as exc:
                await db.close()
                # not latched: the next call retries
                self._opened = False
                self.disabled_reason = f"Journal storage failed to open: {exc}"
                logger.error("Failed to open journal storage: %s", exc)
                return False

            self.disabled_reason = None
            self._db = db
            self._repo = repo
            self._audit = audit
            self._insights = InsightsService(
                repo,
                config=settings.insight_config(),
                features=settings.feature_config(),
                clock=self._clock,
            )
            logger.info("Journal storage opened: %s", settings.haven_db_path)
            return True

    async def _migrate_on_start(self, repo: EntryRepository) -> None:
        settings = self._settings
        snapshot_path = None
        if settings.haven_db_path != ":memory:":
            stamp = self._clock().strftime("%Y%m%dT%H%M%SZ")
            snapshot_path = Path(settings.haven_backup_dir).expanduser() / f"pre-migration-{stamp}.json"
        report = await repo.migrate_all(snapshot_path=snapshot_path)
        if report.migrated or not report.ok:
            logger.info(
                "Startup migration: %d upgraded, %d failed, %d corrupt",
                len(report.migrated), len(report.failed), len(report.corrupt),
            )

    async def repository(self) -> EntryRepository | None:
        await self.open()
        return self._repo

    async def audit_logger(self) -> AuditLogger | None:
        await self.open()
        return self._audit

    async def insights(self) -> InsightsService | None:
        await self.open()
        return self._insights

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
        self._db = None
        self._repo = None
        self._audit = None
        self._insights = None
        self._opened = False
