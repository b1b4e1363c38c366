"""Agentz MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from agentz_mcp.config import AgentzSettings
from agentz_mcp.storage import (
    ChromaStore,
    ChromaUnavailableError,
    OutputStream,
    SessionCreated,
    SessionRegistry,
    SessionUpdated,
)


def load_store(settings: AgentzSettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def _session_rows(store: ChromaStore) -> list[dict]:
    rows: dict[str, dict] = {}
    for event in SessionRegistry(store).replay():
        if isinstance(event, SessionCreated):
            rows[event.session_id] = {
                "session_id": event.session_id,
                "agent_type": event.agent_type.value,
                "status": "unfinished",
                "started_at": event.timestamp.isoformat(),
                "completed_at": None,
                "working_dir": event.working_dir,
                "worktree_branch": event.worktree_branch,
                "task_path": event.task_path,
            }
            continue
        row = rows.get(event.session_id)
        if row is None or isinstance(event, SessionUpdated):
            continue
        row["status"] = event.event.removeprefix("session_")
        row["completed_at"] = event.timestamp.isoformat()
    return list(rows.values())


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = AgentzSettings()
    store = load_store(settings)
    rows = _session_rows(store)
    if args.status:
        rows = [row for row in rows if row["status"] == args.status]
    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        for row in rows:
            print(f"{row['session_id']} [{row['status']}] {row['agent_type']} -> {row['working_dir']}")


def cmd_output(args: argparse.Namespace) -> None:
    settings = AgentzSettings()
    store = load_store(settings)
    chunks = OutputStream(store).tail(args.session_id, args.from_offset)
    if args.json:
        print(json.dumps([chunk.model_dump(mode="json") for chunk in chunks], indent=2))
        return
    for offset, chunk in enumerate(chunks, start=args.from_offset):
        content = chunk.content if len(chunk.content) <= 200 else chunk.content[:200] + "..."
        print(f"{offset:>5} {chunk.type:<12} {content}")


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = AgentzSettings()
    store = load_store(settings)
    records = store.list_worktrees(session_id=args.session_id)
    payload = [
        {**record.__dict__, "created_at": record.created_at.isoformat()}
        for record in records
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = AgentzSettings()
    store = load_store(settings)
    rows = _session_rows(store)
    worktrees = store.list_worktrees()
    corrupted = store.search_events(filters={"event_type": "error"})

    status_counts: dict[str, int] = {}
    agent_counts: dict[str, int] = {}
    for row in rows:
        status_counts[row["status"]] = status_counts.get(row["status"], 0) + 1
        agent_counts[row["agent_type"]] = agent_counts.get(row["agent_type"], 0) + 1

    worktree_status: dict[str, str] = {}
    for record in worktrees:
        worktree_status[record.session_id] = record.status

    metrics = {
        "sessions_total": len(rows),
        "status_counts": status_counts,
        "agent_counts": agent_counts,
        "worktrees_total": len(worktree_status),
        "worktrees_active": sum(1 for status in worktree_status.values() if status == "active"),
        "error_chunks": len(corrupted),
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agentz MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List sessions replayed from the registry")
    p_sessions.add_argument("--status", help="Only show sessions with this status")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_output = sub.add_parser("output", help="Print a session's output chunks")
    p_output.add_argument("session_id")
    p_output.add_argument("--from-offset", type=int, default=0)
    p_output.add_argument("--json", action="store_true", help="Output JSON")
    p_output.set_defaults(func=cmd_output)

    p_worktrees = sub.add_parser("worktrees", help="List worktree records")
    p_worktrees.add_argument("--session-id")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_metrics = sub.add_parser("metrics", help="Show session/worktree counts")
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
