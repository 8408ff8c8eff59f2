"""Integration tests for the Haven journal MCP server."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastmcp import Client

from haven.core.config.settings import Settings
from haven.core.server.app import create_app
from haven.core.server.runtime import JournalRuntime


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _payload(result) -> dict:
    """Parse the JSON text a tool returned."""
    content = getattr(result, "content", result)
    return json.loads(content[0].text)


ALL_EXPECTED_TOOLS = [
    "health_check",
    "append_entry",
    "list_entries",
    "supersede_entry",
    "delete_entry",
    "export_snapshot",
    "crisis_signal",
    "trend_analysis",
    "severity_prediction",
    "multivariate_analysis",
    "audit_summary",
]


@pytest.fixture
def runtime(encryption_key) -> JournalRuntime:
    return JournalRuntime(Settings(haven_encryption_key=encryption_key, haven_db_path=":memory:"))


@pytest.fixture
def client(runtime):
    mcp = create_app(settings_override=runtime.settings, runtime_override=runtime)
    return Client(mcp)


def _session(client, runtime, body):
    """Run ``body(client)`` inside one client session, then close storage."""
    async def _go():
        try:
            async with client:
                return await body(client)
        finally:
            await runtime.close()
    return _run(_go())


def test_server_lists_all_tools(client, runtime):
    async def body(c):
        return [t.name for t in await c.list_tools()]

    names = _session(client, runtime, body)
    for expected in ALL_EXPECTED_TOOLS:
        assert expected in names, f"Missing tool: {expected}"


def test_health_check_reports_storage(client, runtime):
    async def body(c):
        result = await c.call_tool("health_check", {})
        return str(result)

    text = _session(client, runtime, body)
    assert "ok" in text
    assert "storage_enabled" in text


def test_append_list_and_export(client, runtime):
    async def body(c):
        saved = _payload(await c.call_tool("append_entry", {
            "severity": 6,
            "tags": ["location:knee", "trigger:stairs"],
            "notes": "private",
            "stress": "high",
        }))
        listed = _payload(await c.call_tool("list_entries", {"days": 7}))
        cancelled = _payload(await c.call_tool("export_snapshot", {}))
        exported = _payload(await c.call_tool("export_snapshot", {"confirm": True}))
        audit = _payload(await c.call_tool("audit_summary", {}))
        return saved, listed, cancelled, exported, audit

    saved, listed, cancelled, exported, audit = _session(client, runtime, body)
    assert saved["status"] == "saved"
    assert listed["count"] == 1
    assert listed["entries"][0]["id"] == saved["entry_id"]
    assert listed["entries"][0]["context"]["stress"] == "high"
    assert "legacy" not in listed["entries"][0]
    assert cancelled["status"] == "cancelled"
    assert exported["status"] == "exported"
    assert exported["entries"] == [{
        "timestamp": listed["entries"][0]["timestamp"],
        "severity": 6.0,
        "tags": [{"kind": "location", "value": "knee"}, {"kind": "trigger", "value": "stairs"}],
    }]
    assert audit["exports"] == 1
    assert "private" not in json.dumps(audit)


def test_invalid_entry_reports_issues(client, runtime):
    async def body(c):
        return _payload(await c.call_tool("append_entry", {"severity": 42, "tags": []}))

    result = _session(client, runtime, body)
    assert result["status"] == "invalid"
    assert len(result["issues"]) == 2


def test_supersede_and_delete(client, runtime):
    async def body(c):
        saved = _payload(await c.call_tool("append_entry", {"severity": 8, "tags": ["neck"]}))
        fixed = _payload(await c.call_tool("supersede_entry", {
            "entry_id": saved["entry_id"], "severity": 5, "tags": ["neck"],
        }))
        visible = _payload(await c.call_tool("list_entries", {"days": 0}))
        refused = _payload(await c.call_tool("delete_entry", {"entry_id": saved["entry_id"]}))
        deleted = _payload(await c.call_tool("delete_entry", {
            "entry_id": saved["entry_id"], "confirm": "DELETE",
        }))
        remaining = _payload(await c.call_tool("list_entries", {"days": 0}))
        return saved, fixed, visible, refused, deleted, remaining

    saved, fixed, visible, refused, deleted, remaining = _session(client, runtime, body)
    assert fixed["status"] == "superseded"
    assert fixed["supersedes"] == saved["entry_id"]
    assert [e["severity"] for e in visible["entries"]] == [5.0]
    assert refused["status"] == "cancelled"
    assert deleted["records_deleted"] == 2
    assert remaining["count"] == 0


def test_insight_tools(client, runtime):
    async def body(c):
        for severity in (3, 4, 3):
            await c.call_tool("append_entry", {"severity": severity, "tags": ["ache"]})
        crisis = _payload(await c.call_tool("crisis_signal", {}))
        trend = _payload(await c.call_tool("trend_analysis", {}))
        prediction = _payload(await c.call_tool("severity_prediction", {}))
        multivariate = _payload(await c.call_tool("multivariate_analysis", {}))
        return crisis, trend, prediction, multivariate

    crisis, trend, prediction, multivariate = _session(client, runtime, body)
    assert crisis["status"] == "ok"
    assert crisis["signal"]["type"] == "CrisisSignal"
    assert trend["insufficient_data"] is False
    assert prediction["prediction"] is None
    assert "7 entries" in prediction["message"]
    assert multivariate["analysis"]["correlations"]["type"] == "InsufficientData"


def test_trend_analysis_lookback(client, runtime):
    async def body(c):
        for day, severity in enumerate((8, 7, 6, 5, 6, 7)):
            await c.call_tool("append_entry", {
                "severity": severity,
                "tags": ["ache"],
                "timestamp": f"2026-03-0{day + 1}T09:00:00+00:00",
            })
        full = _payload(await c.call_tool("trend_analysis", {}))
        recent = _payload(await c.call_tool("trend_analysis", {"days": 2}))
        invalid = _payload(await c.call_tool("trend_analysis", {"days": 0}))
        return full, recent, invalid

    full, recent, invalid = _session(client, runtime, body)
    assert full["trend"]["sample_size"] == 6
    assert recent["trend"]["sample_size"] == 3
    assert recent["trend"]["label"] == "worsening"
    assert invalid["status"] == "invalid"


def test_disabled_feature(encryption_key):
    runtime = JournalRuntime(Settings(
        haven_encryption_key=encryption_key,
        haven_db_path=":memory:",
        haven_enable_multivariate=False,
    ))
    client = Client(create_app(settings_override=runtime.settings, runtime_override=runtime))

    async def body(c):
        return _payload(await c.call_tool("multivariate_analysis", {}))

    result = _session(client, runtime, body)
    assert result["status"] == "feature_disabled"
    assert result["feature"] == "multivariate"


def test_storage_disabled_without_key():
    runtime = JournalRuntime(Settings(haven_encryption_key=""))
    client = Client(create_app(settings_override=runtime.settings, runtime_override=runtime))

    async def body(c):
        return _payload(await c.call_tool("list_entries", {}))

    result = _session(client, runtime, body)
    assert result["status"] == "storage_disabled"
