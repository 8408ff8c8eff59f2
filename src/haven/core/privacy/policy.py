"""Privacy policy for controlling what leaves the journal store.

Decrypted entries only leave the core through an explicit, user-initiated
export. The export carries exactly the fields the user selected:

- no selection means the minimal set (timestamp, severity, tags)
- free-text notes and the legacy bag are included only when named
- severities can optionally be coarsened to whole numbers
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from haven.core.storage.models import Entry, ValidationError, format_timestamp, parse_timestamp

EXPORTABLE_FIELDS: tuple[str, ...] = (
    "id",
    "timestamp",
    "severity",
    "tags",
    "notes",
    "interventions",
    "context",
    "supersedes",
    "legacy",
)

DEFAULT_EXPORT_FIELDS: tuple[str, ...] = ("timestamp", "severity", "tags")


@dataclass(frozen=True)
class DateRange:
    """Inclusive timestamp range; either side may be open."""

    start: datetime | None = None
    end: datetime | None = None

    @classmethod
    def parse(cls, start: datetime | str | None = None, end: datetime | str | None = None) -> DateRange:
        rng = cls(
            parse_timestamp(start) if start else None,
            parse_timestamp(end) if end else None,
        )
        if rng.start and rng.end and rng.start > rng.end:
            raise ValidationError("date_range: start is after end")
        return rng

    def contains(self, when: datetime) -> bool:
        if self.start is not None and when < self.start:
            return False
        if self.end is not None and when > self.end:
            return False
        return True


def resolve_fields(selection: Iterable[str] | None) -> tuple[str, ...]:
    """Validate a field selection, preserving the canonical field order.

    Raises:
        ValidationError: If a field is unknown.
    """
    if selection is None:
        return DEFAULT_EXPORT_FIELDS
    requested = {s.strip().lower() for s in selection if s and s.strip()}
    if not requested:
        return DEFAULT_EXPORT_FIELDS
    unknown = sorted(requested - set(EXPORTABLE_FIELDS))
    if unknown:
        raise ValidationError(
            [f"field_selection: unknown field {name!r}" for name in unknown]
        )
    return tuple(f for f in EXPORTABLE_FIELDS if f in requested)


def _round_floats(obj: Any, ndigits: int = 0) -> Any:
    if isinstance(obj, float):
        return round(obj, ndigits)
    if isinstance(obj, dict):
        return {k: _round_floats(v, ndigits=ndigits) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_round_floats(v, ndigits=ndigits) for v in obj]
    return obj


def project_entry(entry: Entry, fields: Iterable[str], *, coarsen: bool = False) -> dict[str, Any]:
    """Build the export dict for one entry containing only ``fields``."""
    payload = entry.to_payload()
    payload["timestamp"] = format_timestamp(entry.timestamp)
    selected = {name: payload[name] for name in fields}
    if coarsen and "severity" in selected:
        selected["severity"] = _round_floats(selected["severity"])
    return selected
