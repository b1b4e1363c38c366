from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from agentz_mcp.models import (
    AgentType,
    Session,
    SessionStatus,
    TextChunk,
    TokenUsage,
    UserMessageChunk,
    make_tool_use,
)
from agentz_mcp.sessions import (
    InvalidTransitionError,
    SessionFilter,
    SessionNotFoundError,
    SessionStore,
    SessionTerminalError,
    conversation_from_chunks,
)
from agentz_mcp.storage import (
    ChromaStore,
    OutputStream,
    SessionCompleted,
    SessionCreated,
    SessionRegistry,
    SessionUpdated,
)


def _session(session_id: str = "abc", **overrides) -> Session:
    values = {
        "id": session_id,
        "prompt": "Create README.md",
        "agent_type": AgentType.CLAUDE,
        "working_dir": "/tmp/repo",
    }
    values.update(overrides)
    return Session(**values)


def _store(chroma: ChromaStore | None = None) -> SessionStore:
    return SessionStore(SessionRegistry(chroma), OutputStream(chroma))


def test_create_and_get_returns_copies() -> None:
    store = _store()
    store.create(_session())

    fetched = store.get("abc")
    fetched.prompt = "mutated"

    assert store.get("abc").prompt == "Create README.md"
    assert store.get("abc").status is SessionStatus.PENDING


def test_unknown_session_raises_not_found() -> None:
    with pytest.raises(SessionNotFoundError) as excinfo:
        _store().get("missing")

    assert "missing" in str(excinfo.value)


def test_duplicate_create_is_rejected() -> None:
    store = _store()
    store.create(_session())

    with pytest.raises(ValueError):
        store.create(_session())


def test_list_filters_and_orders_newest_first() -> None:
    store = _store()
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    store.create(_session("old", started_at=base, task_path="tasks/a.md"))
    store.create(_session("new", started_at=base + timedelta(minutes=1), agent_type=AgentType.CODEX))
    store.transition("old", SessionStatus.FAILED, error="boom")

    assert [session.id for session in store.list()] == ["new", "old"]
    assert [session.id for session in store.list(SessionFilter(active_only=True))] == ["new"]
    assert [session.id for session in store.list(SessionFilter(agent_type=AgentType.CODEX))] == ["new"]
    assert [session.id for session in store.list(SessionFilter(task_path="tasks/a.md"))] == ["old"]
    assert [
        session.id for session in store.list(SessionFilter(statuses=frozenset({SessionStatus.FAILED})))
    ] == ["old"]


def test_update_rules() -> None:
    store = _store()
    store.create(_session())

    store.update("abc", working_dir="/tmp/other")
    store.update("abc", pid=42)

    with pytest.raises(ValueError):
        store.update("abc", working_dir="/tmp/elsewhere")
    with pytest.raises(ValueError):
        store.update("abc", status=SessionStatus.COMPLETED)

    store.transition("abc", SessionStatus.CANCELLED)
    with pytest.raises(SessionTerminalError):
        store.update("abc", model="x")


def test_transitions_follow_the_table() -> None:
    store = _store()
    store.create(_session())

    with pytest.raises(InvalidTransitionError):
        store.transition("abc", SessionStatus.COMPLETED)

    store.transition("abc", SessionStatus.WORKING)
    same = store.transition("abc", SessionStatus.WORKING)
    assert same.status is SessionStatus.WORKING


def test_terminal_transition_folds_metadata_and_records_event() -> None:
    registry = SessionRegistry()
    output = OutputStream()
    store = SessionStore(registry, output)
    store.create(_session())
    output.append("abc", UserMessageChunk(content="Create README.md"))
    output.append("abc", TextChunk(content="Done"))
    output.append("abc", make_tool_use("Write", {"file_path": "README.md", "content": "# Hi\n"}))
    store.transition("abc", SessionStatus.WORKING)

    final = store.transition("abc", SessionStatus.COMPLETED, exit_code=0, tokens_used=TokenUsage(input=5, output=5))

    assert final.completed_at is not None
    assert final.metadata is not None
    assert [item.path for item in final.metadata.edited_files] == ["README.md"]
    assert [message.role for message in final.messages] == ["user", "assistant"]
    events = registry.replay()
    assert isinstance(events[-1], SessionCompleted)
    assert events[-1].tokens_used.total == 10
    assert events[-1].metadata == final.metadata

    with pytest.raises(SessionTerminalError):
        store.transition("abc", SessionStatus.CANCELLED)


def test_durable_updates_are_recorded_once() -> None:
    registry = SessionRegistry()
    store = SessionStore(registry, OutputStream())
    store.create(_session())

    store.update("abc", cli_session_id="cli-1")
    store.update("abc", cli_session_id="cli-1")
    store.update("abc", tokens_used=TokenUsage(input=1))

    updates = [event for event in registry.replay() if isinstance(event, SessionUpdated)]
    assert len(updates) == 1
    assert updates[0].cli_session_id == "cli-1"


def test_finalize_metadata_refolds_late_output() -> None:
    registry = SessionRegistry()
    output = OutputStream()
    store = SessionStore(registry, output)
    store.create(_session())
    output.append("abc", UserMessageChunk(content="go"))
    store.transition("abc", SessionStatus.CANCELLED)

    output.append("abc", make_tool_use("Edit", {"file_path": "a.py", "old_string": "a", "new_string": "b"}))
    finalized = store.finalize_metadata("abc")

    assert [item.path for item in finalized.metadata.edited_files] == ["a.py"]
    assert finalized.status is SessionStatus.CANCELLED
    assert isinstance(registry.replay()[-1], SessionUpdated)

    unchanged = len(registry.replay())
    store.finalize_metadata("abc")
    assert len(registry.replay()) == unchanged


def test_changed_files_match_between_live_and_final() -> None:
    output = OutputStream()
    store = SessionStore(SessionRegistry(), output)
    store.create(_session())
    output.append("abc", make_tool_use("Write", {"file_path": "README.md", "content": "x"}))
    store.transition("abc", SessionStatus.WORKING)

    live = store.get_changed_files("abc")
    store.transition("abc", SessionStatus.COMPLETED)
    final = store.get_changed_files("abc")

    assert live == final
    assert store.live_metadata("abc") == store.get("abc").metadata


def test_rebuild_restores_sessions(chroma_store: ChromaStore, stub_client) -> None:
    store = _store(chroma_store)
    store.create(_session("done"))
    store.create(_session("running"))
    store.create(_session("silent"))
    store.output.append("done", UserMessageChunk(content="go"))
    store.output.append("done", TextChunk(content="ok"))
    store.transition("done", SessionStatus.WORKING)
    store.transition("done", SessionStatus.COMPLETED, exit_code=0)
    store.output.append("running", UserMessageChunk(content="go"))
    store.output.append("running", TextChunk(content="working on it"))
    store.transition("running", SessionStatus.WORKING)
    store.update("running", cli_session_id="cli-7")
    store.output.append("silent", UserMessageChunk(content="go"))

    reopened = ChromaStore(chroma_store.path, client_factory=lambda: stub_client)
    rebuilt = _store(reopened)
    rebuilt.rebuild()

    done = rebuilt.get("done")
    assert done.status is SessionStatus.COMPLETED
    assert done.metadata == store.get("done").metadata
    running = rebuilt.get("running")
    assert running.status is SessionStatus.IDLE
    assert running.cli_session_id == "cli-7"
    assert [message.content for message in running.messages] == ["go", "working on it"]
    silent = rebuilt.get("silent")
    assert silent.status is SessionStatus.FAILED
    assert silent.error == "Interrupted before the agent produced output"


def test_rebuild_skips_events_for_unknown_sessions() -> None:
    registry = SessionRegistry()
    registry.record(SessionUpdated(session_id="ghost", cli_session_id="x"))
    registry.record(
        SessionCreated(session_id="real", agent_type=AgentType.CODEX, prompt="p", working_dir="/tmp")
    )
    output = OutputStream()
    output.append("real", TextChunk(content="hi"))
    store = SessionStore(registry, output)

    sessions = store.rebuild()

    assert [session.id for session in sessions] == ["real"]


def test_rebuild_restores_waiting_sessions_as_idle() -> None:
    registry = SessionRegistry()
    output = OutputStream()
    store = SessionStore(registry, output)
    store.create(_session("asking"))
    output.append("asking", UserMessageChunk(content="go"))
    output.append("asking", TextChunk(content="Apply changes? (y/n)"))
    store.transition("asking", SessionStatus.WORKING)
    store.transition("asking", SessionStatus.WAITING_APPROVAL)

    with pytest.raises(InvalidTransitionError):
        store.transition("asking", SessionStatus.IDLE)

    restarted = SessionStore(registry, output)
    restarted.rebuild()

    assert restarted.get("asking").status is SessionStatus.IDLE
    assert restarted.transition("asking", SessionStatus.WORKING).status is SessionStatus.WORKING


def test_conversation_merges_consecutive_text() -> None:
    messages = conversation_from_chunks(
        [
            UserMessageChunk(content="hi"),
            TextChunk(content="one"),
            TextChunk(content="two"),
            TextChunk(content="   "),
            UserMessageChunk(content="again"),
        ]
    )

    assert [(message.role, message.content) for message in messages] == [
        ("user", "hi"),
        ("assistant", "one\ntwo"),
        ("user", "again"),
    ]
