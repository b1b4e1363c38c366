"""FastMCP server bootstrap for Agentz."""

import asyncio
import json
import logging
import shutil
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agents import ADAPTERS, ExecutableNotFoundError, resolve_executable
from .config import AgentzSettings, get_settings
from .orchestrator import Orchestrator, create_orchestrator
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Agentz server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def engine_availability(settings: AgentzSettings) -> dict[str, dict[str, Any]]:
    """Report where each engine CLI resolves, or why it does not."""

    engines: dict[str, dict[str, Any]] = {}
    for agent_type, adapter in ADAPTERS.items():
        try:
            path = resolve_executable(adapter.executable_name, settings.executable_for(agent_type.value))
            engines[agent_type.value] = {"available": True, "path": str(path), "error": None}
        except ExecutableNotFoundError as exc:
            engines[agent_type.value] = {"available": False, "path": None, "error": str(exc)}
    return engines


def build_status_payload(
    orchestrator: Orchestrator,
    settings: AgentzSettings,
    *,
    engines: dict[str, dict[str, Any]] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Summarize runtime state for the status resource."""

    sessions = orchestrator.list_sessions()
    status_counts: dict[str, int] = {}
    for session in sessions:
        status_counts[session.status.value] = status_counts.get(session.status.value, 0) + 1

    active = [session for session in sessions if not session.is_terminal]
    worktrees = orchestrator.worktrees.active() if orchestrator.worktrees is not None else []
    chroma = orchestrator.chroma

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": settings.log_level,
        "engines": engines if engines is not None else engine_availability(settings),
        "git_available": shutil.which("git") is not None,
        "storage": {
            "chroma": {
                "available": chroma is not None,
                "path": str(settings.chroma_persist_path),
                "collection": chroma.collection_name if chroma is not None else None,
            },
        },
        "sessions": {
            "count": len(sessions),
            "status_counts": status_counts,
            "running_processes": orchestrator.supervisor.active_count,
            "max_concurrent": settings.max_concurrent_sessions,
            "active": [
                {
                    "session_id": session.id,
                    "agent_type": session.agent_type.value,
                    "status": session.status.value,
                    "output": orchestrator.output.summary(session.id),
                }
                for session in active[:10]
            ],
        },
        "worktrees": [
            {"session_id": info.session_id, "path": str(info.path), "branch": info.branch}
            for info in worktrees
        ],
        "request_id": request_id,
    }


def create_server(
    settings: Optional[AgentzSettings] = None,
    orchestrator: Orchestrator | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server, rebuilding session state from storage."""

    settings = settings or get_settings()
    orchestrator = orchestrator or create_orchestrator(settings)
    sessions = _run_sync(orchestrator.start())
    engines = engine_availability(settings)

    server = FastMCP(
        name="Agentz MCP",
        version=__version__,
        instructions=(
            "Agentz supervises claude, codex and opencode coding agents. Spawn a "
            "session, tail its output by offset, and inspect the files it changed."
        ),
    )

    handles = register_tools(server, orchestrator=orchestrator, settings=settings)

    @server.resource(
        "resource://agentz/status",
        name="agentz_status",
        title="Agentz MCP Status",
        description="Provides the current runtime status for the Agentz MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        payload = build_status_payload(
            orchestrator,
            settings,
            engines=engines,
            request_id=getattr(context, "request_id", None),
        )
        return json.dumps(payload)

    logger.info(
        "Restored sessions",
        extra={"session_count": len(sessions), "active": sum(1 for s in sessions if not s.is_terminal)},
    )

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "engines", engines)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Agentz MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    orchestrator: Orchestrator = getattr(server, "orchestrator")
    logger.info(
        "Launching Agentz MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "chroma_available": orchestrator.chroma is not None,
            "engines": sorted(name for name, info in getattr(server, "engines", {}).items() if info["available"]),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
