"""Append-only, offset-addressed output log per session."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from pydantic import ValidationError

from ..models import ErrorChunk, OutputChunk, chunk_adapter
from .chroma import ChromaStore

logger = logging.getLogger(__name__)


def output_stream_name(session_id: str) -> str:
    return f"output::{session_id}"


class OutputStream:
    """Ordered chunk log with tail-from-offset reads and bounded long-polling.

    Offsets start at zero and are never reused. A single writer (the session's
    supervisor task) appends; any number of readers may tail concurrently.
    """

    def __init__(self, store: ChromaStore | None = None) -> None:
        self._store = store
        self._chunks: dict[str, list[OutputChunk]] = {}
        self._waiters: dict[str, list[asyncio.Future[None]]] = {}
        self._lock = threading.RLock()

    def _load(self, session_id: str) -> list[OutputChunk]:
        chunks = self._chunks.get(session_id)
        if chunks is not None:
            return chunks

        chunks = []
        if self._store is not None:
            for event in self._store.fetch_stream(output_stream_name(session_id)):
                try:
                    chunk = chunk_adapter.validate_json(event.document)
                except ValidationError as exc:
                    logger.warning(
                        "Replacing unreadable persisted chunk",
                        extra={"session_id": session_id, "sequence": event.sequence, "error": str(exc)},
                    )
                    chunk = ErrorChunk(
                        content="Unreadable output chunk",
                        timestamp=event.timestamp,
                        metadata={"corrupted": True},
                    )
                chunks.append(chunk)
        self._chunks[session_id] = chunks
        return chunks

    def append(self, session_id: str, chunk: OutputChunk) -> int:
        """Append ``chunk`` and return its offset."""

        with self._lock:
            chunks = self._load(session_id)
            if chunks and chunk.timestamp < chunks[-1].timestamp:
                chunk = chunk.model_copy(update={"timestamp": chunks[-1].timestamp})
            offset = len(chunks)
            if self._store is not None:
                self._store.record_event(
                    stream=output_stream_name(session_id),
                    event_type=chunk.type,
                    body=chunk.model_dump_json(),
                    metadata={"session_id": session_id},
                    sequence=offset,
                    timestamp=chunk.timestamp,
                )
            chunks.append(chunk)
            waiters = self._waiters.pop(session_id, [])

        for waiter in waiters:
            waiter.get_loop().call_soon_threadsafe(_resolve, waiter)
        return offset

    def tail(self, session_id: str, from_offset: int = 0) -> list[OutputChunk]:
        """Return every chunk at or after ``from_offset``, in order."""

        with self._lock:
            chunks = self._load(session_id)
            return list(chunks[max(from_offset, 0):])

    def next_offset(self, session_id: str) -> int:
        with self._lock:
            return len(self._load(session_id))

    async def wait(
        self,
        session_id: str,
        from_offset: int = 0,
        timeout: float | None = None,
    ) -> list[OutputChunk]:
        """Long-poll for chunks past ``from_offset``.

        Returns immediately when such chunks exist, otherwise suspends until the
        next append or until ``timeout`` elapses, whichever comes first.
        """

        loop = asyncio.get_running_loop()
        with self._lock:
            available = self.tail(session_id, from_offset)
            if available:
                return available
            waiter: asyncio.Future[None] = loop.create_future()
            self._waiters.setdefault(session_id, []).append(waiter)

        try:
            await asyncio.wait({waiter}, timeout=timeout)
        finally:
            with self._lock:
                pending = self._waiters.get(session_id)
                if pending and waiter in pending:
                    pending.remove(waiter)
            if not waiter.done():
                waiter.cancel()
        return self.tail(session_id, from_offset)

    def summary(self, session_id: str) -> dict[str, Any]:
        chunks = self.tail(session_id)
        counts: dict[str, int] = {}
        for chunk in chunks:
            counts[chunk.type] = counts.get(chunk.type, 0) + 1
        return {"session_id": session_id, "length": len(chunks), "by_type": counts}


def _resolve(waiter: asyncio.Future[None]) -> None:
    if not waiter.done():
        waiter.set_result(None)


__all__ = ["OutputStream", "output_stream_name"]
