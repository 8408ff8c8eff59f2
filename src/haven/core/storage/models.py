"""Data models for the journal persistence layer.

``Entry`` is the domain unit a collaborator sees. ``StoredRecord`` is the
encrypted envelope owned by the record store; only its id and timestamp are
plaintext.
"""

from __future__ import annotations

import base64
import json
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

SEVERITY_MIN = 0.0
SEVERITY_MAX = 10.0

MAX_TAGS = 50
MAX_TAG_LENGTH = 64
MAX_NOTES_LENGTH = 10_000


class ValidationError(Exception):
    """Raised when a draft entry is malformed. Never persisted.

    Attributes:
        issues: One human-readable message per offending field.
    """

    def __init__(self, issues: list[str] | str) -> None:
        self.issues = [issues] if isinstance(issues, str) else list(issues)
        super().__init__("; ".join(self.issues))


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def parse_timestamp(value: datetime | str) -> datetime:
    """Parse an ISO-8601 value into an aware UTC datetime.

    Naive values are taken to be UTC already.

    Raises:
        ValidationError: If the value cannot be parsed.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"timestamp: invalid ISO-8601 value {value!r}") from exc
    else:
        raise ValidationError("timestamp: must be an ISO-8601 string or datetime")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 form; lexical order equals time order."""
    return parse_timestamp(dt).isoformat(timespec="microseconds")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tags, interventions, context
# ---------------------------------------------------------------------------

class TagKind(str, Enum):
    """Known tag vocabularies; anything else is carried as ``OTHER``."""

    LOCATION = "location"
    SYMPTOM = "symptom"
    TRIGGER = "trigger"
    ACTIVITY = "activity"
    OTHER = "other"


@dataclass(frozen=True)
class Tag:
    """A categorical label on an entry (e.g. ``location:lower back``)."""

    kind: TagKind
    value: str

    @classmethod
    def of(cls, kind: str | TagKind, value: str) -> Tag:
        """Build a tag, folding unknown kinds into ``OTHER`` without losing them."""
        value = (value or "").strip()
        if isinstance(kind, TagKind):
            return cls(kind, value)
        kind_text = (kind or "").strip().lower()
        try:
            return cls(TagKind(kind_text), value)
        except ValueError:
            return cls(TagKind.OTHER, f"{kind_text}:{value}" if kind_text else value)

    @classmethod
    def parse(cls, raw: Tag | Mapping[str, Any] | str) -> Tag:
        """Accept a Tag, a ``{"kind", "value"}`` mapping, or ``"kind:value"`` text.

        Bare text without a kind becomes a symptom tag.
        """
        if isinstance(raw, Tag):
            return raw
        if isinstance(raw, Mapping):
            return cls.of(str(raw.get("kind", "")), str(raw.get("value", "")))
        if isinstance(raw, str):
            if ":" in raw:
                kind, _, value = raw.partition(":")
                return cls.of(kind, value)
            return cls.of(TagKind.SYMPTOM, raw)
        raise ValidationError(f"tags: unsupported tag value {raw!r}")

    @property
    def key(self) -> str:
        """Case-insensitive identity used for duplicate detection and analytics."""
        return f"{self.kind.value}:{self.value.lower()}"

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "value": self.value}


class Bucket(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_score(cls, score: float) -> Bucket:
        """Map a 0-10 score onto a bucket (<4 low, <7 medium, else high)."""
        if score < 4:
            return cls.LOW
        if score < 7:
            return cls.MEDIUM
        return cls.HIGH

    @classmethod
    def coerce(cls, value: Any) -> Bucket | None:
        if value is None or isinstance(value, Bucket):
            return value
        if isinstance(value, bool):
            raise ValidationError(f"context: invalid bucket {value!r}")
        if isinstance(value, (int, float)):
            return cls.from_score(float(value))
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"context: invalid bucket {value!r}") from exc


class InterventionKind(str, Enum):
    MEDICATION = "medication"
    THERAPY = "therapy"
    REST = "rest"
    ACTIVITY = "activity"
    OTHER = "other"


@dataclass(frozen=True)
class Intervention:
    """Something the user did about their symptoms (medication, rest, ...)."""

    name: str
    kind: InterventionKind = InterventionKind.MEDICATION
    dose: str | None = None

    @classmethod
    def parse(cls, raw: Intervention | Mapping[str, Any] | str) -> Intervention:
        if isinstance(raw, Intervention):
            return raw
        if isinstance(raw, Mapping):
            kind_text = str(raw.get("kind") or InterventionKind.MEDICATION.value).lower()
            try:
                kind = InterventionKind(kind_text)
            except ValueError:
                kind = InterventionKind.OTHER
            dose = raw.get("dose", raw.get("dosage"))
            return cls(str(raw.get("name", "")).strip(), kind, str(dose) if dose else None)
        if isinstance(raw, str):
            kind_text, sep, name = raw.partition(":")
            if sep and kind_text.strip().lower() in InterventionKind._value2member_map_:
                return cls(name.strip(), InterventionKind(kind_text.strip().lower()))
            return cls(raw.strip())
        raise ValidationError(f"interventions: unsupported value {raw!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "kind": self.kind.value, "dose": self.dose}


@dataclass(frozen=True)
class ContextSignals:
    """Optional context captured with an entry. ``None`` means not recorded."""

    sleep: Bucket | None = None
    stress: Bucket | None = None
    mood: Bucket | None = None
    activity_level: float | None = None

    @classmethod
    def parse(cls, raw: ContextSignals | Mapping[str, Any] | None) -> ContextSignals:
        if raw is None:
            return cls()
        if isinstance(raw, ContextSignals):
            return raw
        activity = raw.get("activity_level")
        if activity is not None and (isinstance(activity, bool) or not isinstance(activity, (int, float))):
            raise ValidationError(f"context: activity_level must be numeric, got {activity!r}")
        return cls(
            sleep=Bucket.coerce(raw.get("sleep")),
            stress=Bucket.coerce(raw.get("stress")),
            mood=Bucket.coerce(raw.get("mood")),
            activity_level=float(activity) if activity is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sleep": self.sleep.value if self.sleep else None,
            "stress": self.stress.value if self.stress else None,
            "mood": self.mood.value if self.mood else None,
            "activity_level": self.activity_level,
        }


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

@dataclass
class DraftEntry:
    """A user submission, before an id and timestamp are assigned."""

    severity: float
    tags: Iterable[Tag | Mapping[str, Any] | str] = ()
    notes: str | None = None
    interventions: Iterable[Intervention | Mapping[str, Any] | str] = ()
    context: ContextSignals | Mapping[str, Any] | None = None
    timestamp: datetime | str | None = None  # back-dating; defaults to now


@dataclass(frozen=True)
class Entry:
    """One health observation. Never mutated in place once stored."""

    id: str
    timestamp: datetime
    severity: float
    tags: tuple[Tag, ...]
    notes: str | None = None
    interventions: tuple[Intervention, ...] = ()
    context: ContextSignals = field(default_factory=ContextSignals)
    supersedes: str | None = None
    legacy: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def has_intervention(self) -> bool:
        return bool(self.interventions)

    @property
    def tag_keys(self) -> frozenset[str]:
        return frozenset(t.key for t in self.tags)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the current-schema payload dict."""
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "severity": self.severity,
            "tags": [t.to_dict() for t in self.tags],
            "notes": self.notes,
            "interventions": [i.to_dict() for i in self.interventions],
            "context": self.context.to_dict(),
            "supersedes": self.supersedes,
            "legacy": dict(self.legacy),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Entry:
        """Build an entry from a current-schema payload dict."""
        return cls(
            id=str(payload["id"]),
            timestamp=parse_timestamp(payload["timestamp"]),
            severity=float(payload["severity"]),
            tags=tuple(Tag.parse(t) for t in payload.get("tags", [])),
            notes=payload.get("notes"),
            interventions=tuple(Intervention.parse(i) for i in payload.get("interventions", [])),
            context=ContextSignals.parse(payload.get("context")),
            supersedes=payload.get("supersedes"),
            legacy=dict(payload.get("legacy") or {}),
        )


@dataclass(frozen=True)
class ValidatedDraft:
    severity: float
    tags: tuple[Tag, ...]
    notes: str | None
    interventions: tuple[Intervention, ...]
    context: ContextSignals
    timestamp: datetime | None


def validate_draft(draft: DraftEntry, *, scale_max: float = SEVERITY_MAX) -> ValidatedDraft:
    """Check a draft against entry invariants, collecting every issue.

    Raises:
        ValidationError: Listing all malformed fields at once.
    """
    issues: list[str] = []

    severity = draft.severity
    if isinstance(severity, bool) or not isinstance(severity, (int, float)):
        issues.append(f"severity: must be a number, got {severity!r}")
        severity = 0.0
    elif not math.isfinite(severity):
        issues.append("severity: must be finite")
    elif not SEVERITY_MIN <= severity <= scale_max:
        issues.append(f"severity: {severity} outside [{SEVERITY_MIN:g}, {scale_max:g}]")

    tags: list[Tag] = []
    raw_tags = draft.tags
    if isinstance(raw_tags, (str, bytes)) or raw_tags is None:
        issues.append("tags: must be a collection of tags")
        raw_tags = ()
    seen: set[str] = set()
    for raw in raw_tags:
        try:
            tag = Tag.parse(raw)
        except ValidationError as exc:
            issues.extend(exc.issues)
            continue
        if not tag.value:
            issues.append("tags: tag values must not be empty")
        elif len(tag.value) > MAX_TAG_LENGTH:
            issues.append(f"tags: {tag.value[:16]!r}... exceeds {MAX_TAG_LENGTH} characters")
        elif tag.key in seen:
            issues.append(f"tags: duplicate tag {tag.key!r}")
        else:
            seen.add(tag.key)
            tags.append(tag)
    if not tags and not any("tags:" in i for i in issues):
        issues.append("tags: at least one tag is required")
    if len(tags) > MAX_TAGS:
        issues.append(f"tags: at most {MAX_TAGS} tags allowed")

    notes = draft.notes
    if notes is not None:
        if not isinstance(notes, str):
            issues.append("notes: must be text")
            notes = None
        elif len(notes) > MAX_NOTES_LENGTH:
            issues.append(f"notes: exceeds {MAX_NOTES_LENGTH} characters")

    interventions: list[Intervention] = []
    for raw in draft.interventions or ():
        try:
            item = Intervention.parse(raw)
        except ValidationError as exc:
            issues.extend(exc.issues)
            continue
        if not item.name:
            issues.append("interventions: name must not be empty")
        else:
            interventions.append(item)

    try:
        context = ContextSignals.parse(draft.context)
    except ValidationError as exc:
        issues.extend(exc.issues)
        context = ContextSignals()

    timestamp = None
    if draft.timestamp is not None:
        try:
            timestamp = parse_timestamp(draft.timestamp)
        except ValidationError as exc:
            issues.extend(exc.issues)

    if issues:
        raise ValidationError(issues)

    return ValidatedDraft(
        severity=float(severity),
        tags=tuple(tags),
        notes=notes,
        interventions=tuple(interventions),
        context=context,
        timestamp=timestamp,
    )


# ---------------------------------------------------------------------------
# Payload codec
# ---------------------------------------------------------------------------

def encode_payload(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


def decode_payload(data: bytes) -> dict[str, Any]:
    payload = json.loads(data.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("record payload is not a JSON object")
    return payload


# ---------------------------------------------------------------------------
# Persisted envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecordIndex:
    """The plaintext part of a stored record, visible to scan predicates."""

    id: str
    timestamp: str  # ISO 8601, UTC
    schema_version: int


@dataclass(frozen=True)
class StoredRecord:
    """An encrypted record exactly as persisted."""

    id: str
    schema_version: int
    timestamp: str  # ISO 8601, UTC
    nonce: bytes
    tag: bytes
    ciphertext: bytes

    @property
    def index(self) -> RecordIndex:
        return RecordIndex(self.id, self.timestamp, self.schema_version)

    @property
    def size(self) -> int:
        return len(self.nonce) + len(self.tag) + len(self.ciphertext)

    def to_envelope(self) -> dict[str, Any]:
        """JSON-safe storage envelope (binary fields base64-encoded)."""
        return {
            "id": self.id,
            "schemaVersion": self.schema_version,
            "timestamp": self.timestamp,
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "tag": base64.b64encode(self.tag).decode("ascii"),
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
        }

    @classmethod
    def from_envelope(cls, envelope: Mapping[str, Any]) -> StoredRecord:
        return cls(
            id=str(envelope["id"]),
            schema_version=int(envelope["schemaVersion"]),
            timestamp=str(envelope["timestamp"]),
            nonce=base64.b64decode(envelope["nonce"]),
            tag=base64.b64decode(envelope["tag"]),
            ciphertext=base64.b64decode(envelope["ciphertext"]),
        )
