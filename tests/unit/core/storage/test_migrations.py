"""Tests for record schema migrations and the MigrationManager."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from haven.core.storage.database import HealthDatabase
from haven.core.storage.encryption import EncryptionGateway
from haven.core.storage.migrations import (
    CURRENT_SCHEMA_VERSION,
    MigrationFailed,
    MigrationManager,
    migrate_v0_to_v1,
    migrate_v1_to_v2,
    migrate_v2_to_v3,
)
from haven.core.storage.models import Entry, decode_payload, encode_payload
from haven.core.storage.record_store import VersionedRecordStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _v0_record(**overrides):
    record = {
        "id": "legacy-1",
        "timestamp": "2025-11-04T08:30:00+00:00",
        "baselineData": {
            "pain": 6,
            "locations": ["lower back", "Lower Back", "hip"],
            "symptoms": ["stiffness"],
        },
        "triggers": ["long drive"],
        "notes": "worse after the drive",
        "medications": {
            "current": [{"name": "ibuprofen", "dosage": "400mg"}],
            "changes": "",
        },
        "qualityOfLife": {"sleepQuality": 3, "moodImpact": 8, "socialImpact": "skipped dinner"},
        "stress": 7,
        "weather": {"pressure": 1003},
    }
    record.update(overrides)
    return record


class TestSteps:
    def test_v0_to_v1_flattens(self):
        v1 = migrate_v0_to_v1(_v0_record())
        assert v1["severity"] == 6
        assert v1["locations"] == ["lower back", "Lower Back", "hip"]
        assert v1["symptoms"] == ["stiffness"]
        assert v1["triggers"] == ["long drive"]
        assert v1["notes"] == "worse after the drive"
        assert "baselineData" not in v1
        assert v1["legacy"]["weather"] == {"pressure": 1003}
        assert v1["legacy"]["stress"] == 7

    def test_v0_intensity_wins_over_pain(self):
        v1 = migrate_v0_to_v1(_v0_record(intensity=8))
        assert v1["severity"] == 8
        # the disagreeing pain value is kept, not dropped
        assert v1["legacy"]["baselineData"] == {"pain": 6}

    def test_v0_without_severity_raises(self):
        record = _v0_record()
        record["baselineData"] = {"locations": ["knee"]}
        with pytest.raises(ValueError, match="severity"):
            migrate_v0_to_v1(record)

    def test_v0_notes_absent_stays_absent(self):
        record = _v0_record()
        del record["notes"]
        assert "notes" not in migrate_v0_to_v1(record)

    def test_v1_to_v2_types_and_dedupes_tags(self):
        v2 = migrate_v1_to_v2(migrate_v0_to_v1(_v0_record()))
        assert v2["tags"] == [
            {"kind": "location", "value": "lower back"},
            {"kind": "location", "value": "hip"},
            {"kind": "symptom", "value": "stiffness"},
            {"kind": "trigger", "value": "long drive"},
        ]
        assert v2["interventions"] == [{"name": "ibuprofen", "kind": "medication", "dose": "400mg"}]
        assert "medications" not in v2["legacy"]
        assert "locations" not in v2

    def test_v2_to_v3_lifts_context(self):
        v3 = migrate_v2_to_v3(migrate_v1_to_v2(migrate_v0_to_v1(_v0_record())))
        assert v3["context"] == {
            "sleep": "low",
            "stress": "high",
            "mood": "high",
            "activity_level": None,
        }
        assert v3["supersedes"] is None
        assert v3["legacy"]["qualityOfLife"] == {"socialImpact": "skipped dinner"}
        assert "stress" not in v3["legacy"]

    def test_v2_to_v3_explicit_null_notes(self):
        v3 = migrate_v2_to_v3({"id": "x", "timestamp": "2026-01-01T00:00:00+00:00",
                               "severity": 2, "tags": [], "interventions": [], "legacy": {}})
        assert v3["notes"] is None

    def test_steps_do_not_mutate_input(self):
        record = _v0_record()
        snapshot = json.dumps(record, sort_keys=True)
        migrate_v0_to_v1(record)
        assert json.dumps(record, sort_keys=True) == snapshot


class TestManager:
    def test_full_upgrade_yields_valid_entry(self):
        manager = MigrationManager()
        payload, version = manager.upgrade(_v0_record(), 0, record_id="legacy-1")
        assert version == CURRENT_SCHEMA_VERSION
        entry = Entry.from_payload(payload)
        assert entry.severity == 6.0
        assert {t.key for t in entry.tags} >= {"location:lower back", "trigger:long drive"}
        assert entry.interventions[0].dose == "400mg"
        assert entry.legacy["weather"] == {"pressure": 1003}

    def test_current_version_is_identity(self):
        manager = MigrationManager()
        payload = {"id": "x", "severity": 1}
        result, version = manager.upgrade(payload, CURRENT_SCHEMA_VERSION)
        assert result == payload
        assert version == CURRENT_SCHEMA_VERSION

    def test_upgrade_is_deterministic(self):
        manager = MigrationManager()
        a, _ = manager.upgrade(_v0_record(), 0)
        b, _ = manager.upgrade(_v0_record(), 0)
        assert a == b

    def test_single_step(self):
        manager = MigrationManager()
        result = manager.migrate(_v0_record(), 0)
        assert "severity" in result and "tags" not in result

    def test_failing_step_raises_migration_failed(self):
        manager = MigrationManager()
        record = _v0_record(baselineData={})
        with pytest.raises(MigrationFailed) as info:
            manager.upgrade(record, 0, record_id="legacy-1")
        assert info.value.record_id == "legacy-1"
        assert info.value.from_version == 0

    def test_out_of_range_severity_rejected(self):
        record = _v0_record(baselineData={"pain": 15})
        with pytest.raises(MigrationFailed, match="outside"):
            MigrationManager().upgrade(record, 0, record_id="legacy-1")

    def test_scale_max_is_configurable(self):
        record = _v0_record(baselineData={"pain": 15})
        payload, _ = MigrationManager(scale_max=20).upgrade(record, 0)
        assert payload["severity"] == 15

    def test_future_version_rejected(self):
        with pytest.raises(MigrationFailed, match="unsupported"):
            MigrationManager().upgrade({}, CURRENT_SCHEMA_VERSION + 1)

    def test_missing_step_rejected_at_construction(self):
        with pytest.raises(ValueError, match="No migration step"):
            MigrationManager({0: migrate_v0_to_v1}, current_version=2)

    def test_needs_upgrade(self):
        manager = MigrationManager()
        assert manager.needs_upgrade(0)
        assert not manager.needs_upgrade(CURRENT_SCHEMA_VERSION)


class TestMigrateStore:
    def test_eager_migration_with_snapshot(self, tmp_path):
        snapshot_path = tmp_path / "backups" / "pre.json"

        async def _go():
            db = HealthDatabase(":memory:")
            await db.initialize()
            try:
                store = VersionedRecordStore(db, EncryptionGateway(EncryptionGateway.generate_key()))
                await store.put("legacy-1", 0, encode_payload(_v0_record()), timestamp=T0)
                await store.put(
                    "broken", 0, encode_payload(_v0_record(id="broken", baselineData={})), timestamp=T0
                )
                report = await MigrationManager().migrate_store(store, snapshot_path=snapshot_path)
                migrated = await store.get_record("legacy-1")
                broken = await store.get_record("broken")
                payload = decode_payload(await store.get("legacy-1"))
                return report, migrated.schema_version, broken.schema_version, payload, await store.schema_version()
            finally:
                await db.close()

        report, migrated_version, broken_version, payload, store_version = _run(_go())
        assert report.migrated == ["legacy-1"]
        assert report.failed == ["broken"]
        assert not report.ok
        assert migrated_version == CURRENT_SCHEMA_VERSION
        assert broken_version == 0  # left untouched
        assert payload["severity"] == 6
        assert store_version == 0  # not advanced while a record is stuck
        saved = json.loads(snapshot_path.read_text())
        assert len(saved["records"]) == 2

    def test_nothing_to_do_advances_tag_without_snapshot(self, tmp_path):
        snapshot_path = tmp_path / "pre.json"

        async def _go():
            db = HealthDatabase(":memory:")
            await db.initialize()
            try:
                store = VersionedRecordStore(db, EncryptionGateway(EncryptionGateway.generate_key()))
                report = await MigrationManager().migrate_store(store, snapshot_path=snapshot_path)
                return report, await store.schema_version()
            finally:
                await db.close()

        report, version = _run(_go())
        assert report.ok
        assert version == CURRENT_SCHEMA_VERSION
        assert not snapshot_path.exists()
