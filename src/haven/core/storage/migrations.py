"""Record schema migrations.

Record payloads carry a schema version (0..CURRENT_SCHEMA_VERSION). Each
single-step migration is a pure function from a version-N payload dict to a
version-N+1 payload dict. Steps never drop user-entered data: anything that
has no home in the newer layout is moved into the ``legacy`` bag.

Field mappings
--------------

v0 (legacy nested layout)::

    {"id", "timestamp", "baselineData": {"pain", "locations", "symptoms"},
     "notes"?, "triggers"?, "intensity"?, "medications"?, "qualityOfLife"?,
     "stress"?, "activityLevel"?, ...anything else}

v0 -> v1 (flatten)::

    severity   <- intensity if numeric, else baselineData.pain
    locations  <- baselineData.locations   (missing -> [])
    symptoms   <- baselineData.symptoms    (missing -> [])
    triggers   <- triggers                 (missing -> [])
    notes      <- notes                    (only if present; missing stays missing)
    legacy     <- every other key, plus leftover baselineData keys

v1 -> v2 (typed tags, interventions)::

    tags          <- [{kind: location|symptom|trigger, value}] (deduplicated)
    interventions <- legacy.medications.current -> [{name, kind: medication, dose}]
    legacy.medications keeps any remaining non-empty keys

v2 -> v3 (explicit optional fields)::

    notes    <- notes, or null when it was never recorded
    context  <- {sleep:  bucket(legacy.qualityOfLife.sleepQuality | legacy.sleep),
                 stress: bucket(legacy.stress),
                 mood:   bucket(legacy.qualityOfLife.moodImpact | legacy.mood),
                 activity_level: legacy.activityLevel}   (absent -> null)
    supersedes <- supersedes, or null
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from haven.core.storage.models import (
    SEVERITY_MAX,
    SEVERITY_MIN,
    Bucket,
    decode_payload,
    encode_payload,
    format_timestamp,
    utc_now,
)

if TYPE_CHECKING:
    from haven.core.storage.record_store import VersionedRecordStore

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 3

MigrationStep = Callable[[dict[str, Any]], dict[str, Any]]


class MigrationFailed(Exception):
    """Raised when a record cannot be upgraded. The stored original is untouched."""

    def __init__(self, record_id: str, from_version: int, reason: str) -> None:
        self.record_id = record_id
        self.from_version = from_version
        self.reason = reason
        super().__init__(
            f"Migration of record {record_id or '<unknown>'} from v{from_version} failed: {reason}"
        )


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def migrate_v0_to_v1(payload: dict[str, Any]) -> dict[str, Any]:
    """Flatten the legacy ``baselineData`` layout."""
    source = copy.deepcopy(payload)
    baseline = source.pop("baselineData", None) or {}
    if not isinstance(baseline, dict):
        raise ValueError("baselineData is not an object")

    intensity = source.pop("intensity", None)
    pain = baseline.pop("pain", None)
    if _is_number(intensity):
        severity = intensity
        if pain is not None and pain != intensity:
            baseline["pain"] = pain
    elif _is_number(pain):
        severity = pain
        if intensity is not None:
            source["intensity"] = intensity
    else:
        raise ValueError("no numeric severity (baselineData.pain or intensity)")

    result: dict[str, Any] = {
        "id": source.pop("id"),
        "timestamp": source.pop("timestamp"),
        "severity": severity,
        "locations": _as_list(baseline.pop("locations", None)),
        "symptoms": _as_list(baseline.pop("symptoms", None)),
        "triggers": _as_list(source.pop("triggers", None)),
    }
    if "notes" in source:
        result["notes"] = source.pop("notes")

    legacy = source.pop("legacy", None) or {}
    legacy.update(source)
    if baseline:
        legacy["baselineData"] = baseline
    result["legacy"] = legacy
    return result


def migrate_v1_to_v2(payload: dict[str, Any]) -> dict[str, Any]:
    """Replace the flat string lists with typed tags; lift medications."""
    source = copy.deepcopy(payload)
    tags: list[dict[str, str]] = []
    seen: set[str] = set()
    for kind, key in (("location", "locations"), ("symptom", "symptoms"), ("trigger", "triggers")):
        for value in _as_list(source.pop(key, None)):
            text = str(value).strip()
            dedupe_key = f"{kind}:{text.lower()}"
            if text and dedupe_key not in seen:
                seen.add(dedupe_key)
                tags.append({"kind": kind, "value": text})

    legacy = source.get("legacy") or {}
    interventions: list[dict[str, Any]] = []
    medications = legacy.pop("medications", None)
    if isinstance(medications, dict):
        for med in _as_list(medications.pop("current", None)):
            if isinstance(med, dict):
                name = str(med.get("name", "")).strip()
                dose = med.get("dosage") or med.get("dose") or None
            else:
                name, dose = str(med).strip(), None
            if name:
                interventions.append({"name": name, "kind": "medication", "dose": dose})
        leftovers = {k: v for k, v in medications.items() if v not in ("", [], None)}
        if leftovers:
            legacy["medications"] = leftovers
    elif isinstance(medications, list):
        for med in medications:
            if str(med).strip():
                interventions.append({"name": str(med).strip(), "kind": "medication", "dose": None})
    elif medications is not None:
        legacy["medications"] = medications

    source["tags"] = tags
    source["interventions"] = interventions
    source["legacy"] = legacy
    return source


def _pop_score(container: dict[str, Any], key: str) -> Any:
    value = container.pop(key, None)
    return value if _is_number(value) else None


def migrate_v2_to_v3(payload: dict[str, Any]) -> dict[str, Any]:
    """Make optional fields explicit and lift context signals out of legacy."""
    source = copy.deepcopy(payload)
    legacy = source.get("legacy") or {}

    quality = legacy.get("qualityOfLife")
    quality = quality if isinstance(quality, dict) else {}
    sleep = _pop_score(quality, "sleepQuality")
    mood = _pop_score(quality, "moodImpact")
    if sleep is None:
        sleep = _pop_score(legacy, "sleep")
    if mood is None:
        mood = _pop_score(legacy, "mood")
    stress = _pop_score(legacy, "stress")
    activity = _pop_score(legacy, "activityLevel")

    if "qualityOfLife" in legacy:
        leftovers = {k: v for k, v in quality.items() if v not in ("", [], None)}
        if leftovers:
            legacy["qualityOfLife"] = leftovers
        else:
            del legacy["qualityOfLife"]

    source["notes"] = source.get("notes")
    source["context"] = {
        "sleep": Bucket.from_score(sleep).value if sleep is not None else None,
        "stress": Bucket.from_score(stress).value if stress is not None else None,
        "mood": Bucket.from_score(mood).value if mood is not None else None,
        "activity_level": float(activity) if activity is not None else None,
    }
    source["supersedes"] = source.get("supersedes")
    source["legacy"] = legacy
    return source


DEFAULT_STEPS: dict[int, MigrationStep] = {
    0: migrate_v0_to_v1,
    1: migrate_v1_to_v2,
    2: migrate_v2_to_v3,
}


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

@dataclass
class MigrationReport:
    """Outcome of an eager store migration."""

    from_version: int
    to_version: int
    migrated: list[str] = field(default_factory=list)
    already_current: int = 0
    failed: list[str] = field(default_factory=list)
    corrupt: list[str] = field(default_factory=list)
    snapshot_path: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failed and not self.corrupt


class MigrationManager:
    """Upgrades record payloads from any supported version to the current one.

    Usage::

        manager = MigrationManager()
        payload, version = manager.upgrade(old_payload, 0, record_id="abc")
        report = await manager.migrate_store(store, snapshot_path="backup.json")
    """

    def __init__(
        self,
        steps: Mapping[int, MigrationStep] | None = None,
        *,
        current_version: int = CURRENT_SCHEMA_VERSION,
        scale_max: float = SEVERITY_MAX,
    ) -> None:
        self._steps = dict(DEFAULT_STEPS if steps is None else steps)
        self._current = current_version
        self._scale_max = scale_max
        missing = [v for v in range(current_version) if v not in self._steps]
        if missing:
            raise ValueError(f"No migration step registered for versions {missing}")

    @property
    def current_version(self) -> int:
        return self._current

    def needs_upgrade(self, version: int) -> bool:
        return version < self._current

    def migrate(self, payload: Mapping[str, Any], from_version: int, *, record_id: str = "") -> dict[str, Any]:
        """Apply exactly one step: ``from_version`` -> ``from_version + 1``.

        Raises:
            MigrationFailed: If the version is unsupported or the step errors.
        """
        if not 0 <= from_version < self._current:
            raise MigrationFailed(
                record_id, from_version, f"no step from v{from_version} (current is v{self._current})"
            )
        step = self._steps[from_version]
        try:
            result = step(copy.deepcopy(dict(payload)))
        except Exception as exc:
            raise MigrationFailed(
                record_id, from_version, f"{step.__name__}: {type(exc).__name__}: {exc}"
            ) from exc
        if not isinstance(result, dict):
            raise MigrationFailed(record_id, from_version, f"{step.__name__} returned {type(result).__name__}")
        return result

    def upgrade(
        self,
        payload: Mapping[str, Any],
        from_version: int,
        *,
        record_id: str = "",
    ) -> tuple[dict[str, Any], int]:
        """Compose steps until the payload is at the current version.

        A payload already at the current version is returned unchanged. An
        upgraded payload whose severity falls outside ``[0, scale_max]`` is
        rejected rather than clamped.

        Raises:
            MigrationFailed: On unknown/future versions, any step error or an
                out-of-range severity.
        """
        if from_version > self._current or from_version < 0:
            raise MigrationFailed(
                record_id, from_version, f"unsupported schema version (current is v{self._current})"
            )
        result = dict(payload)
        version = from_version
        while version < self._current:
            result = self.migrate(result, version, record_id=record_id)
            version += 1
        if version != from_version:
            severity = result.get("severity")
            if _is_number(severity) and not SEVERITY_MIN <= severity <= self._scale_max:
                raise MigrationFailed(
                    record_id,
                    from_version,
                    f"severity {severity} outside [{SEVERITY_MIN:g}, {self._scale_max:g}]",
                )
        return result, version

    async def migrate_store(
        self,
        store: VersionedRecordStore,
        *,
        snapshot_path: str | Path | None = None,
    ) -> MigrationReport:
        """Eagerly upgrade every outdated record in a store.

        An encrypted pre-migration snapshot is taken first (and written to
        ``snapshot_path`` when given) so the upgrade can be reversed with
        :meth:`VersionedRecordStore.restore_envelopes`. Records that fail to
        decrypt or migrate are left untouched and listed in the report.
        """
        from haven.core.storage.record_store import CorruptRecord

        store_version = await store.schema_version()
        report = MigrationReport(from_version=store_version, to_version=self._current)

        outdated = [r async for r in store.scan(predicate=lambda idx: idx.schema_version < self._current)]
        if outdated:
            snapshot = await store.export_envelopes()
            if snapshot_path is not None:
                path = Path(snapshot_path).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(json.dumps(snapshot), encoding="utf-8")
                report.snapshot_path = str(path)
                logger.info("Pre-migration snapshot written: %d records", len(snapshot["records"]))

        report.already_current = await store.count() - len(outdated)

        for record in outdated:
            try:
                payload = decode_payload(store.open(record))
            except CorruptRecord:
                report.corrupt.append(record.id)
                continue
            except ValueError as exc:
                logger.warning("Record %s payload undecodable: %s", record.id, exc)
                report.failed.append(record.id)
                continue

            try:
                upgraded, version = self.upgrade(payload, record.schema_version, record_id=record.id)
            except MigrationFailed as exc:
                logger.warning("%s", exc)
                report.failed.append(record.id)
                continue

            await store.put(record.id, version, encode_payload(upgraded), timestamp=record.timestamp)
            report.migrated.append(record.id)

        if report.ok:
            await store.set_schema_version(self._current)

        logger.info(
            "Store migration v%d -> v%d at %s: %d migrated, %d current, %d failed, %d corrupt",
            report.from_version,
            report.to_version,
            format_timestamp(utc_now()),
            len(report.migrated),
            report.already_current,
            len(report.failed),
            len(report.corrupt),
        )
        return report
