from __future__ import annotations

from agentz_mcp.models import AgentType, TokenUsage
from agentz_mcp.storage import (
    REGISTRY_STREAM,
    ChromaStore,
    SessionCancelled,
    SessionCreated,
    SessionRegistry,
    SessionUpdated,
)


def _created(session_id: str) -> SessionCreated:
    return SessionCreated(
        session_id=session_id,
        agent_type=AgentType.CLAUDE,
        prompt="Create README.md",
        working_dir="/tmp/repo",
    )


def test_in_memory_registry_replays_in_order() -> None:
    registry = SessionRegistry()
    registry.record(_created("a"))
    registry.record(SessionUpdated(session_id="a", cli_session_id="cli-1"))
    registry.record(SessionCancelled(session_id="a"))

    events = registry.replay()

    assert [event.event for event in events] == ["session_created", "session_updated", "session_cancelled"]


def test_persistent_registry_round_trips_events(chroma_store: ChromaStore) -> None:
    registry = SessionRegistry(chroma_store)
    registry.record(_created("a"))
    registry.record(SessionCancelled(session_id="a", tokens_used=TokenUsage(input=3, output=4)))

    events = SessionRegistry(chroma_store).replay()

    assert isinstance(events[0], SessionCreated)
    assert events[0].agent_type is AgentType.CLAUDE
    assert isinstance(events[1], SessionCancelled)
    assert events[1].tokens_used.total == 7


def test_malformed_entries_are_skipped(chroma_store: ChromaStore, caplog) -> None:
    registry = SessionRegistry(chroma_store)
    registry.record(_created("a"))
    chroma_store.record_event(stream=REGISTRY_STREAM, event_type="session_created", body={"event": "bogus"})
    registry.record(_created("b"))

    with caplog.at_level("WARNING"):
        events = registry.replay()

    assert [event.session_id for event in events] == ["a", "b"]
    assert "Skipping malformed registry entry" in caplog.text
