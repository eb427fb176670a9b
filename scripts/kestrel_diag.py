"""Kestrel MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from kestrel_mcp.config import KestrelSettings
from kestrel_mcp.storage import (
    ACTIVE_STATES,
    ChromaRecordStore,
    ChromaStore,
    ChromaUnavailableError,
    derive_mode,
    persistent_client_factory,
)


def load_records(settings: KestrelSettings) -> ChromaRecordStore:
    return ChromaRecordStore(
        settings.chroma_persist_path,
        client_factory=persistent_client_factory(settings.chroma_persist_path),
    )


def load_journal(settings: KestrelSettings) -> ChromaStore:
    return ChromaStore(
        settings.chroma_persist_path,
        client_factory=persistent_client_factory(settings.chroma_persist_path),
    )


def _unavailable(exc: ChromaUnavailableError) -> None:
    print(f"Chroma unavailable: {exc}")
    raise SystemExit(1)


def cmd_records(args: argparse.Namespace) -> None:
    settings = KestrelSettings()
    try:
        records = load_records(settings).list_records(status=args.status)
    except ChromaUnavailableError as exc:
        _unavailable(exc)
        return
    if args.json:
        print(json.dumps([record.to_dict() for record in records], indent=2))
        return
    for record in records:
        mode = derive_mode(record.status, record.data)
        print(f"{record.id} [{record.status}/{record.state or '-'}] {mode} -> {record.data.get('branchName')}")


def cmd_zombies(args: argparse.Namespace) -> None:
    """List records that claim a live session; a stopped server can hold no live sessions."""

    settings = KestrelSettings()
    try:
        records = load_records(settings).list_records(status="confirmed", states=ACTIVE_STATES)
    except ChromaUnavailableError as exc:
        _unavailable(exc)
        return
    payload = [
        {
            "record_id": record.id,
            "session_id": record.data.get("sessionId"),
            "state": record.state,
            "worktree_path": record.data.get("worktreePath"),
            "updated_at": record.updated_at.isoformat() if record.updated_at else None,
        }
        for record in records
    ]
    print(json.dumps(payload, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = KestrelSettings()
    try:
        events = load_journal(settings).fetch_session_events(args.session_id)
    except ChromaUnavailableError as exc:
        _unavailable(exc)
        return
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]
    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "sequence": event.metadata.get("sequence"),
            "timestamp": event.timestamp.isoformat(),
            "document": event.document[:200],
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = KestrelSettings()
    try:
        records = load_records(settings).list_records()
    except ChromaUnavailableError as exc:
        _unavailable(exc)
        return

    status_counts: dict[str, int] = {}
    state_counts: dict[str, int] = {}
    total_cost = 0.0
    total_turns = 0
    for record in records:
        status_counts[record.status] = status_counts.get(record.status, 0) + 1
        state = record.state or "none"
        state_counts[state] = state_counts.get(state, 0) + 1
        total_turns += int(record.data.get("totalTurns") or 0)
        total_cost += float(record.data.get("totalCostUsd") or 0.0)

    metrics = {
        "records_total": len(records),
        "status_counts": status_counts,
        "state_counts": state_counts,
        "active_claims": sum(state_counts.get(state, 0) for state in ACTIVE_STATES),
        "total_turns": total_turns,
        "total_cost_usd": round(total_cost, 4),
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Kestrel MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_records = sub.add_parser("records", help="List lifecycle records")
    p_records.add_argument("--status", help="Only records with this outer status")
    p_records.add_argument("--json", action="store_true", help="Output JSON")
    p_records.set_defaults(func=cmd_records)

    p_zombies = sub.add_parser("zombies", help="List records claiming a running or waiting session")
    p_zombies.set_defaults(func=cmd_zombies)

    p_events = sub.add_parser("events", help="Show the event journal of one session")
    p_events.add_argument("session_id")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    p_metrics = sub.add_parser("metrics", help="Show record counts and cumulative usage")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
