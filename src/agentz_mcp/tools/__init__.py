"""Tool registration for Agentz MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..config import AgentzSettings
from ..models import AgentType, Session, SessionStatus, SpawnRequest
from ..orchestrator import Orchestrator
from ..sessions import PendingMessage, SessionFilter, SessionNotFoundError, filter_pending

logger = logging.getLogger(__name__)

_SUMMARY_EXCLUDE = {"messages", "metadata"}


@dataclass(slots=True)
class ToolHandles:
    spawn_agent: Any
    get_session: Any
    list_sessions: Any
    cancel_session: Any
    tail_output: Any
    changed_files: Any
    replay_registry: Any


def _session_payload(session: Session, *, full: bool = False) -> dict[str, Any]:
    if full:
        return session.model_dump(mode="json")
    return session.model_dump(mode="json", exclude=_SUMMARY_EXCLUDE)


def register_tools(
    server: FastMCP,
    *,
    orchestrator: Orchestrator,
    settings: AgentzSettings,
) -> ToolHandles:
    """Register Agentz's MCP tools on the server."""

    def _get(session_id: str) -> Session:
        try:
            return orchestrator.get_session(session_id)
        except SessionNotFoundError as exc:
            raise ValueError(str(exc)) from exc

    async def _spawn_agent(
        prompt: str,
        working_dir: str | None = None,
        session_id: str | None = None,
        agent_type: str | None = None,
        model: str | None = None,
        task_path: str | None = None,
        isolate: bool | None = None,
        retain_worktree: bool = False,
        client_message_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Spawn an agent session, or send a follow-up prompt to an existing one."""

        request = SpawnRequest(
            prompt=prompt,
            working_dir=working_dir,
            session_id=session_id,
            agent_type=AgentType(agent_type) if agent_type else None,
            model=model,
            task_path=task_path,
            isolate=isolate,
            retain_worktree=retain_worktree,
            client_message_id=client_message_id,
        )
        session = await orchestrator.spawn(request)

        _emit_log(
            context,
            "info",
            "Spawned agent",
            extra={
                "session_id": session.id,
                "agent_type": session.agent_type.value,
                "status": session.status.value,
            },
        )
        return _session_payload(session)

    def _get_session(
        session_id: str,
        include_messages: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return a session with metadata, folded live while it is still running."""

        session = _get(session_id)
        payload = _session_payload(session, full=include_messages)
        payload["metadata"] = orchestrator.store.live_metadata(session_id).model_dump(mode="json")
        payload["output"] = orchestrator.output.summary(session_id)
        _emit_log(context, "debug", "Fetched session", extra={"session_id": session_id})
        return payload

    def _list_sessions(
        statuses: list[str] | None = None,
        agent_type: str | None = None,
        task_path: str | None = None,
        active_only: bool = False,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List sessions, newest first."""

        session_filter = SessionFilter(
            statuses=frozenset(SessionStatus(status) for status in statuses) if statuses else None,
            agent_type=AgentType(agent_type) if agent_type else None,
            task_path=task_path,
            active_only=active_only,
        )
        sessions = orchestrator.list_sessions(session_filter)
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return [_session_payload(session) for session in sessions]

    async def _cancel_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel a session; cancelling a finished session is a no-op."""

        _get(session_id)
        session = await orchestrator.cancel(session_id)
        _emit_log(
            context,
            "info",
            "Cancelled session",
            extra={"session_id": session_id, "status": session.status.value},
        )
        return _session_payload(session)

    async def _tail_output(
        session_id: str,
        from_offset: int = 0,
        wait_seconds: float = 0.0,
        pending: list[dict[str, Any]] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return chunks from ``from_offset`` on, optionally waiting for new output.

        ``pending`` lists client-side optimistic messages (``id``, ``content``);
        the response names those the stream has not echoed yet.
        """

        if from_offset < 0:
            raise ValueError("from_offset must be zero or greater")
        _get(session_id)

        wait = min(max(wait_seconds, 0.0), settings.tail_max_wait_seconds)
        if wait > 0:
            chunks = await orchestrator.wait_output(session_id, from_offset, wait)
        else:
            chunks = orchestrator.tail_output(session_id, from_offset)

        session = orchestrator.get_session(session_id)
        response: dict[str, Any] = {
            "session_id": session_id,
            "status": session.status.value,
            "from_offset": from_offset,
            "next_offset": from_offset + len(chunks),
            "chunks": [chunk.model_dump(mode="json") for chunk in chunks],
        }
        if pending:
            messages = [PendingMessage.model_validate(item) for item in pending]
            undelivered = filter_pending(messages, orchestrator.tail_output(session_id))
            response["pending"] = [message.id for message in undelivered]

        _emit_log(
            context,
            "debug",
            "Tailed session output",
            extra={"session_id": session_id, "from_offset": from_offset, "count": len(chunks)},
        )
        return response

    def _changed_files(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """List files the session created, edited or deleted."""

        _get(session_id)
        files = orchestrator.get_changed_files(session_id)
        _emit_log(context, "debug", "Listed changed files", extra={"session_id": session_id, "count": len(files)})
        return {
            "session_id": session_id,
            "files": [item.model_dump(mode="json") for item in files],
        }

    def _replay_registry(
        session_id: str | None = None,
        limit: int | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return registry events in the order they were recorded."""

        events = orchestrator.replay_registry()
        if session_id:
            events = [event for event in events if event.session_id == session_id]
        if limit is not None and limit >= 0:
            events = events[-limit:] if limit else []
        _emit_log(context, "debug", "Replayed registry", extra={"count": len(events)})
        return [event.model_dump(mode="json") for event in events]

    tool_spawn = server.tool(
        name="spawn_agent",
        description=(
            "Start a claude, codex or opencode agent session in a working directory, "
            "optionally isolated in its own git worktree. Passing an existing "
            "session_id delivers a follow-up prompt instead."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Agents run with their permission prompts bypassed",
            }
        },
    )(_spawn_agent)

    tool_get = server.tool(
        name="get_session",
        description="Return a session's status, metadata and output summary.",
    )(_get_session)

    tool_list = server.tool(
        name="list_sessions",
        description="List sessions filtered by status, agent type, task path or activity.",
    )(_list_sessions)

    tool_cancel = server.tool(
        name="cancel_session",
        description="Cancel a running session and stop its agent process.",
    )(_cancel_session)

    tool_tail = server.tool(
        name="tail_output",
        description=(
            "Read a session's output chunks from an offset. Set wait_seconds to "
            "long-poll for new output."
        ),
    )(_tail_output)

    tool_changed = server.tool(
        name="changed_files",
        description="List the files a session created, edited or deleted.",
    )(_changed_files)

    tool_replay = server.tool(
        name="replay_registry",
        description="Return the ordered session lifecycle events from the registry.",
    )(_replay_registry)

    return ToolHandles(
        spawn_agent=tool_spawn,
        get_session=tool_get,
        list_sessions=tool_list,
        cancel_session=tool_cancel,
        tail_output=tool_tail,
        changed_files=tool_changed,
        replay_registry=tool_replay,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when available, else the module logger."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
