from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentz_mcp.models import AgentType, Session, SessionStatus, TextChunk, UserMessageChunk
from agentz_mcp.orchestrator import create_orchestrator
from agentz_mcp.storage import ChromaStore
from agentz_mcp.tools import register_tools

ENGINE = r"""cat >/dev/null
printf '%s\n' '{"type":"assistant","message":{"content":[{"type":"text","text":"Writing"},{"type":"tool_use","id":"t1","name":"Write","input":{"file_path":"notes.md","content":"one\ntwo"}}]}}'
printf '%s\n' '{"type":"result","session_id":"cli-2","usage":{"input_tokens":1,"output_tokens":1}}'
"""


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict]] = []

    def info(self, message, extra=None):
        self.records.append(("info", message, extra or {}))

    def debug(self, message, extra=None):
        self.records.append(("debug", message, extra or {}))


class StubContext:
    def __init__(self) -> None:
        self.logger = StubLogger()


def _setup(settings, chroma_store: ChromaStore):
    server = StubServer()
    orchestrator = create_orchestrator(settings, chroma=chroma_store)
    handles = register_tools(server, orchestrator=orchestrator, settings=settings)  # type: ignore[arg-type]
    return server, orchestrator, handles


def test_registers_every_tool(settings, chroma_store: ChromaStore) -> None:
    server, _, _ = _setup(settings, chroma_store)

    assert sorted(server._tools) == [
        "cancel_session",
        "changed_files",
        "get_session",
        "list_sessions",
        "replay_registry",
        "spawn_agent",
        "tail_output",
    ]


def test_spawn_then_inspect_session(settings, write_engine, chroma_store: ChromaStore) -> None:
    settings.claude_path = str(write_engine("claude", ENGINE))
    _, orchestrator, handles = _setup(settings, chroma_store)
    context = StubContext()

    async def scenario():
        spawned = await handles.spawn_agent.fn(
            prompt="Write notes",
            agent_type="claude",
            client_message_id="m1",
            context=context,
        )
        await orchestrator.wait(spawned["id"], timeout=10)
        return spawned

    spawned = asyncio.run(scenario())
    session_id = spawned["id"]

    assert spawned["status"] == "pending"
    assert "messages" not in spawned
    assert context.logger.records[0][1] == "Spawned agent"
    assert context.logger.records[0][2]["session_id"] == session_id

    details = handles.get_session.fn(session_id, include_messages=True)
    assert details["status"] == "completed"
    assert details["metadata"]["edited_files"][0]["path"] == "notes.md"
    assert details["metadata"]["edited_files"][0]["operation"] == "create"
    assert details["output"]["length"] == 3
    assert [message["role"] for message in details["messages"]] == ["user", "assistant"]

    files = handles.changed_files.fn(session_id)
    assert files["session_id"] == session_id
    assert [item["path"] for item in files["files"]] == ["notes.md"]

    events = handles.replay_registry.fn(session_id=session_id)
    assert events[0]["event"] == "session_created"
    assert events[-1]["event"] == "session_completed"
    assert handles.replay_registry.fn(limit=1) == events[-1:]
    assert handles.replay_registry.fn(limit=0) == []

    cancelled = asyncio.run(handles.cancel_session.fn(session_id))
    assert cancelled["status"] == "completed"


def test_tail_output_offsets_and_pending(settings, chroma_store: ChromaStore, tmp_path: Path) -> None:
    _, orchestrator, handles = _setup(settings, chroma_store)
    orchestrator.store.create(
        Session(id="s1", prompt="p", agent_type=AgentType.CLAUDE, working_dir=str(tmp_path))
    )
    orchestrator.output.append("s1", UserMessageChunk(content="p", metadata={"clientMessageId": "m1"}))
    orchestrator.output.append("s1", TextChunk(content="hello"))

    first = asyncio.run(handles.tail_output.fn("s1"))
    second = asyncio.run(
        handles.tail_output.fn(
            "s1",
            from_offset=first["next_offset"],
            pending=[{"id": "m1", "content": "p"}, {"id": "m2", "content": "later"}],
        )
    )

    assert [chunk["type"] for chunk in first["chunks"]] == ["user_message", "text"]
    assert first["next_offset"] == 2
    assert first["status"] == "pending"
    assert second["chunks"] == []
    assert second["next_offset"] == 2
    assert second["pending"] == ["m2"]


def test_tail_output_wait_is_clamped(settings, chroma_store: ChromaStore, tmp_path: Path) -> None:
    settings.tail_max_wait_seconds = 0.1
    _, orchestrator, handles = _setup(settings, chroma_store)
    orchestrator.store.create(
        Session(id="s1", prompt="p", agent_type=AgentType.CLAUDE, working_dir=str(tmp_path))
    )

    async def scenario():
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await handles.tail_output.fn("s1", wait_seconds=60)
        return result, loop.time() - started

    result, elapsed = asyncio.run(scenario())

    assert result["chunks"] == []
    assert elapsed < 5


def test_list_sessions_filters(settings, chroma_store: ChromaStore, tmp_path: Path) -> None:
    _, orchestrator, handles = _setup(settings, chroma_store)
    orchestrator.store.create(
        Session(id="a", prompt="p", agent_type=AgentType.CLAUDE, working_dir=str(tmp_path), task_path="t.md")
    )
    orchestrator.store.create(
        Session(id="b", prompt="p", agent_type=AgentType.CODEX, working_dir=str(tmp_path))
    )
    orchestrator.store.transition("b", SessionStatus.FAILED, error="boom")

    assert {item["id"] for item in handles.list_sessions.fn()} == {"a", "b"}
    assert [item["id"] for item in handles.list_sessions.fn(statuses=["failed"])] == ["b"]
    assert [item["id"] for item in handles.list_sessions.fn(agent_type="claude")] == ["a"]
    assert [item["id"] for item in handles.list_sessions.fn(task_path="t.md")] == ["a"]
    assert [item["id"] for item in handles.list_sessions.fn(active_only=True)] == ["a"]


def test_unknown_sessions_raise_value_error(settings, chroma_store: ChromaStore) -> None:
    _, _, handles = _setup(settings, chroma_store)

    with pytest.raises(ValueError, match="not found"):
        handles.get_session.fn("missing")
    with pytest.raises(ValueError):
        handles.changed_files.fn("missing")
    with pytest.raises(ValueError):
        asyncio.run(handles.cancel_session.fn("missing"))
    with pytest.raises(ValueError):
        asyncio.run(handles.tail_output.fn("missing"))


def test_invalid_arguments_are_rejected(settings, chroma_store: ChromaStore, tmp_path: Path) -> None:
    _, orchestrator, handles = _setup(settings, chroma_store)
    orchestrator.store.create(
        Session(id="s1", prompt="p", agent_type=AgentType.CLAUDE, working_dir=str(tmp_path))
    )

    with pytest.raises(ValueError):
        asyncio.run(handles.tail_output.fn("s1", from_offset=-1))
    with pytest.raises(ValueError):
        asyncio.run(handles.spawn_agent.fn(prompt="   "))
    with pytest.raises(ValueError):
        asyncio.run(handles.spawn_agent.fn(prompt="hi", agent_type="cobol"))
