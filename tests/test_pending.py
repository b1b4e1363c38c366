from __future__ import annotations

from agentz_mcp.models import TextChunk, UserMessageChunk
from agentz_mcp.sessions import PendingMessage, extract_delivered_ids, filter_pending, merge_for_display


def _echo(message_id: str, content: str = "hello") -> UserMessageChunk:
    return UserMessageChunk(content=content, metadata={"clientMessageId": message_id})


def test_delivered_ids_come_from_user_messages_only() -> None:
    chunks = [_echo("m1"), TextChunk(content="reply", metadata={"clientMessageId": "m9"}), UserMessageChunk(content="x")]

    assert extract_delivered_ids(chunks) == {"m1"}


def test_filter_pending_drops_echoed_messages() -> None:
    pending = [PendingMessage(id="m1", content="hello"), PendingMessage(id="m2", content="again")]

    remaining = filter_pending(pending, [_echo("m1")])

    assert [message.id for message in remaining] == ["m2"]


def test_merge_appends_optimistic_chunks() -> None:
    chunks = [_echo("m1"), TextChunk(content="reply")]
    pending = [PendingMessage(id="m2", content="follow up")]

    merged = merge_for_display(chunks, pending)

    assert len(merged) == 3
    assert merged[-1].type == "user_message"
    assert merged[-1].metadata == {"clientMessageId": "m2", "optimistic": True}


def test_merge_never_duplicates_once_echoed() -> None:
    pending = [PendingMessage(id="m1", content="hello")]
    before = merge_for_display([], pending)

    after = merge_for_display([_echo("m1")], pending)

    assert len(before) == 1
    assert len(after) == 1
    assert after[0].metadata.get("optimistic") is None


def test_merge_is_idempotent() -> None:
    chunks = [_echo("m1")]
    pending = [PendingMessage(id="m2", content="later")]

    once = merge_for_display(chunks, pending)
    twice = merge_for_display(once, pending)

    assert [chunk.metadata.get("clientMessageId") for chunk in twice] == ["m1", "m2"]
