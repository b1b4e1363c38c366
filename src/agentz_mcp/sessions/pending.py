"""Reconcile optimistic client messages with the authoritative output stream."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from pydantic import BaseModel, Field

from ..models import CLIENT_MESSAGE_ID_KEY, OutputChunk, UserMessageChunk, utcnow


class PendingMessage(BaseModel):
    """A user message shown before the server has echoed it back."""

    id: str
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


def extract_delivered_ids(chunks: Iterable[OutputChunk]) -> set[str]:
    """Return every client message id already present in the stream."""

    delivered: set[str] = set()
    for chunk in chunks:
        if chunk.type != "user_message":
            continue
        value = chunk.metadata.get(CLIENT_MESSAGE_ID_KEY)
        if value:
            delivered.add(str(value))
    return delivered


def filter_pending(
    pending: Sequence[PendingMessage],
    chunks: Iterable[OutputChunk],
) -> list[PendingMessage]:
    delivered = extract_delivered_ids(chunks)
    return [message for message in pending if message.id not in delivered]


def merge_for_display(
    chunks: Sequence[OutputChunk],
    pending: Sequence[PendingMessage],
) -> list[OutputChunk]:
    """Append still-undelivered messages as optimistic ``user_message`` chunks.

    A message whose id already appears in ``chunks`` is never shown twice, so
    merging repeatedly with the same inputs yields the same list.
    """

    remaining = filter_pending(pending, chunks)
    merged: list[OutputChunk] = list(chunks)
    for message in remaining:
        merged.append(
            UserMessageChunk(
                content=message.content,
                timestamp=message.timestamp,
                metadata={CLIENT_MESSAGE_ID_KEY: message.id, "optimistic": True},
            )
        )
    return merged


__all__ = ["PendingMessage", "extract_delivered_ids", "filter_pending", "merge_for_display"]
