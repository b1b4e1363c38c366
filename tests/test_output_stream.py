from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from agentz_mcp.models import ErrorChunk, TextChunk, UserMessageChunk, make_chunk
from agentz_mcp.storage import ChromaStore, OutputStream, output_stream_name


def _at(seconds: int) -> datetime:
    return datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def test_append_returns_increasing_offsets() -> None:
    stream = OutputStream()

    offsets = [stream.append("s1", TextChunk(content=str(index))) for index in range(3)]

    assert offsets == [0, 1, 2]
    assert stream.next_offset("s1") == 3
    assert stream.next_offset("other") == 0


def test_tail_from_offset() -> None:
    stream = OutputStream()
    for index in range(4):
        stream.append("s1", TextChunk(content=str(index)))

    assert [chunk.content for chunk in stream.tail("s1", 2)] == ["2", "3"]
    assert stream.tail("s1", 10) == []
    assert stream.tail("missing") == []


def test_timestamps_never_regress() -> None:
    stream = OutputStream()
    stream.append("s1", TextChunk(content="late", timestamp=_at(10)))
    stream.append("s1", TextChunk(content="early", timestamp=_at(5)))

    chunks = stream.tail("s1")
    assert chunks[1].timestamp == _at(10)


def test_persisted_chunks_survive_restart(chroma_store: ChromaStore, stub_client) -> None:
    first = OutputStream(chroma_store)
    first.append("s1", UserMessageChunk(content="hi", metadata={"clientMessageId": "m1"}))
    first.append("s1", make_chunk("tool_use", {"name": "Write", "input": {"file_path": "a.py"}}))

    reopened = OutputStream(ChromaStore(chroma_store.path, client_factory=lambda: stub_client))
    chunks = reopened.tail("s1")

    assert [chunk.type for chunk in chunks] == ["user_message", "tool_use"]
    assert chunks[0].metadata["clientMessageId"] == "m1"
    assert reopened.append("s1", TextChunk(content="next")) == 2


def test_unreadable_persisted_chunk_becomes_error(chroma_store: ChromaStore) -> None:
    chroma_store.record_event(stream=output_stream_name("s1"), event_type="text", body="not json")

    chunks = OutputStream(chroma_store).tail("s1")

    assert len(chunks) == 1
    assert isinstance(chunks[0], ErrorChunk)
    assert chunks[0].metadata["corrupted"] is True


def test_wait_returns_immediately_when_output_exists() -> None:
    stream = OutputStream()
    stream.append("s1", TextChunk(content="ready"))

    chunks = asyncio.run(stream.wait("s1", 0, timeout=5))

    assert [chunk.content for chunk in chunks] == ["ready"]


def test_wait_wakes_on_append() -> None:
    stream = OutputStream()

    async def scenario():
        waiter = asyncio.create_task(stream.wait("s1", 0, timeout=5))
        await asyncio.sleep(0.01)
        stream.append("s1", TextChunk(content="hello"))
        return await waiter

    chunks = asyncio.run(scenario())

    assert [chunk.content for chunk in chunks] == ["hello"]


def test_wait_times_out_with_empty_result() -> None:
    stream = OutputStream()

    chunks = asyncio.run(stream.wait("s1", 0, timeout=0.05))

    assert chunks == []


def test_summary_counts_chunk_types() -> None:
    stream = OutputStream()
    stream.append("s1", UserMessageChunk(content="go"))
    stream.append("s1", TextChunk(content="a"))
    stream.append("s1", TextChunk(content="b"))

    summary = stream.summary("s1")

    assert summary["length"] == 3
    assert summary["by_type"] == {"user_message": 1, "text": 2}
