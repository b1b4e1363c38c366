"""Append-only log of session lifecycle events."""

from __future__ import annotations

import logging
import threading

from pydantic import ValidationError

from .chroma import ChromaStore
from .models import RegistryEvent, registry_event_adapter

logger = logging.getLogger(__name__)

REGISTRY_STREAM = "registry"


class SessionRegistry:
    """Durable record of lifecycle events, sufficient to rebuild every session."""

    def __init__(self, store: ChromaStore | None = None) -> None:
        self._store = store
        self._memory: list[RegistryEvent] = []
        self._lock = threading.Lock()

    def record(self, event: RegistryEvent) -> None:
        with self._lock:
            if self._store is None:
                self._memory.append(event)
                return
            self._store.record_event(
                stream=REGISTRY_STREAM,
                event_type=event.event,
                body=event.model_dump_json(),
                metadata={"session_id": event.session_id},
                timestamp=event.timestamp,
            )

    def replay(self) -> list[RegistryEvent]:
        """Return all events in append order, skipping entries that fail validation."""

        if self._store is None:
            with self._lock:
                return list(self._memory)

        events: list[RegistryEvent] = []
        for stored in self._store.fetch_stream(REGISTRY_STREAM):
            try:
                events.append(registry_event_adapter.validate_json(stored.document))
            except ValidationError as exc:
                logger.warning(
                    "Skipping malformed registry entry",
                    extra={"event_id": stored.id, "sequence": stored.sequence, "error": str(exc)},
                )
        return events


__all__ = ["REGISTRY_STREAM", "SessionRegistry"]
