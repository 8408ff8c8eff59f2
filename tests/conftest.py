"""Shared test fixtures for Haven journal tests."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from haven.core.storage.models import Entry, Intervention, Tag  # noqa: E402


# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HAVEN_DB_PATH", ":memory:")
    monkeypatch.setenv("HAVEN_ENCRYPTION_KEY", "")
    monkeypatch.setenv("HAVEN_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.delenv("HAVEN_QUOTA_BYTES", raising=False)
    monkeypatch.chdir(tmp_path)  # keep any developer .env out of the tests


# ---------------------------------------------------------------------------
# Entry builders for the analytics engines
# ---------------------------------------------------------------------------

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)  # a Monday


def make_entry(
    severity: float,
    *,
    day: float = 0,
    hour: int | None = None,
    tags: tuple[str, ...] = ("symptom:ache",),
    interventions: tuple[str, ...] = (),
    entry_id: str | None = None,
    base: datetime = BASE_TIME,
) -> Entry:
    """Build an Entry ``day`` days after ``base`` (optionally at a fixed hour)."""
    timestamp = base + timedelta(days=day)
    if hour is not None:
        timestamp = timestamp.replace(hour=hour)
    return Entry(
        id=entry_id or f"e{int(day * 24):05d}",
        timestamp=timestamp,
        severity=float(severity),
        tags=tuple(Tag.parse(t) for t in tags),
        interventions=tuple(Intervention.parse(i) for i in interventions),
    )


def daily_entries(severities, **kwargs) -> list[Entry]:
    """One entry per day with the given severities."""
    return [make_entry(s, day=i, **kwargs) for i, s in enumerate(severities)]


@pytest.fixture
def encryption_key() -> str:
    from haven.core.storage.encryption import EncryptionGateway

    return EncryptionGateway.generate_key()
