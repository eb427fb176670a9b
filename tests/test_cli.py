from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from kestrel_mcp.storage import ChromaUnavailableError, MemoryRecordStore


def _load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "kestrel_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def _populated_store() -> MemoryRecordStore:
    store = MemoryRecordStore(clock=lambda: datetime(2025, 1, 1, tzinfo=timezone.utc))
    store.set_record("p1", {"status": "pending", "data": {"sessionId": "p1", "task": "Queued"}})
    store.set_record(
        "w1",
        {
            "status": "confirmed",
            "data": {
                "sessionId": "w1",
                "state": "waiting",
                "branchName": "kestrel/w1",
                "worktreePath": "/tmp/wt/w1",
                "totalTurns": 3,
                "totalCostUsd": 0.5,
            },
        },
    )
    store.set_record(
        "c1",
        {"status": "confirmed", "data": {"sessionId": "c1", "state": "completed", "totalTurns": 7, "totalCostUsd": 1.25}},
    )
    return store


def test_records_lists_modes(monkeypatch, capsys):
    diag = _load_diag("kestrel_diag_records_module")
    monkeypatch.setattr(diag, "load_records", lambda _settings: _populated_store())

    diag.cmd_records(argparse.Namespace(status="confirmed", json=False))

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines == [
        "w1 [confirmed/waiting] waiting -> kestrel/w1",
        "c1 [confirmed/completed] completed -> None",
    ]


def test_zombies_lists_active_claims(monkeypatch, capsys):
    diag = _load_diag("kestrel_diag_zombies_module")
    monkeypatch.setattr(diag, "load_records", lambda _settings: _populated_store())

    diag.cmd_zombies(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload == [
        {
            "record_id": "w1",
            "session_id": "w1",
            "state": "waiting",
            "worktree_path": "/tmp/wt/w1",
            "updated_at": "2025-01-01T00:00:00+00:00",
        }
    ]


def test_metrics_totals_usage(monkeypatch, capsys):
    diag = _load_diag("kestrel_diag_metrics_module")
    monkeypatch.setattr(diag, "load_records", lambda _settings: _populated_store())

    diag.cmd_metrics(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["records_total"] == 3
    assert payload["status_counts"] == {"pending": 1, "confirmed": 2}
    assert payload["active_claims"] == 1
    assert payload["total_turns"] == 10
    assert payload["total_cost_usd"] == pytest.approx(1.75)


def test_events_limit(monkeypatch, capsys):
    class StubJournal:
        def fetch_session_events(self, session_id, limit=None):
            base_time = datetime(2025, 1, 1, tzinfo=timezone.utc)
            return [
                argparse.Namespace(
                    id=f"{session_id}:{idx}",
                    event_type="turn_result",
                    metadata={"sequence": idx + 1},
                    timestamp=base_time.replace(minute=idx),
                    document=f"turn {idx}",
                )
                for idx in range(4)
            ]

    diag = _load_diag("kestrel_diag_events_module")
    monkeypatch.setattr(diag, "load_journal", lambda _settings: StubJournal())

    diag.cmd_events(argparse.Namespace(session_id="s1", limit=2))

    payload = json.loads(capsys.readouterr().out)
    assert [entry["sequence"] for entry in payload] == [3, 4]
    assert payload[-1]["document"] == "turn 3"


def test_unavailable_chroma_exits(monkeypatch, capsys):
    diag = _load_diag("kestrel_diag_unavailable_module")

    def broken(_settings):
        raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(diag, "load_records", broken)

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["zombies"])

    assert excinfo.value.code == 1
    assert "Chroma unavailable" in capsys.readouterr().out


def test_main_without_command_prints_help(capsys):
    diag = _load_diag("kestrel_diag_help_module")

    diag.main([])

    assert "Kestrel MCP diagnostics" in capsys.readouterr().out
