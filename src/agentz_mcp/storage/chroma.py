"""Chroma-based persistence layer."""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import WorktreeRecord

_SCALAR_TYPES = (str, int, float, bool)


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Agentz."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Agentz."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    stream: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    @property
    def sequence(self) -> int:
        return int(self.metadata.get("sequence", 0))

    def body(self) -> Any:
        """Decode the JSON document, returning the raw string when it is not JSON."""

        try:
            return json.loads(self.document)
        except ValueError:
            return self.document


def _scalar_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be non-null scalars.
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, _SCALAR_TYPES):
            cleaned[key] = value
        elif isinstance(value, datetime):
            cleaned[key] = value.isoformat()
        else:
            cleaned[key] = json.dumps(value, default=str)
    return cleaned


def _build_where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    if not filters:
        return None
    clauses = [{key: value} for key, value in filters.items()]
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaStore:
    """Manage persistence of ordered event streams via ChromaDB.

    Every event belongs to a *stream* (``output::<session>``, ``registry``,
    ``worktree::<session>``) and carries a per-stream ``sequence`` number.
    Counters are seeded from the collection the first time a stream is written
    in this process, so a restarted server continues numbering where the
    previous one stopped.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "agentz_events",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install agentz-mcp with its dependencies"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = metadata or {}
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    stream=metadata.get("stream", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document or "",
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.metadata.get("sequence", 0), event.timestamp))
        return events

    def _next_sequence(self, stream: str, explicit: int | None) -> int:
        with self._lock:
            if stream not in self._counters:
                existing = self.fetch_stream(stream)
                self._counters[stream] = max((event.sequence for event in existing), default=-1)
            if explicit is None:
                explicit = self._counters[stream] + 1
            self._counters[stream] = max(self._counters[stream], explicit)
            return explicit

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        stream: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
        sequence: int | None = None,
        timestamp: datetime | None = None,
    ) -> ChromaEvent:
        """Append one event to ``stream``.

        When ``sequence`` is omitted the next number after the highest stored one
        is used. Sequences start at zero.
        """

        collection = self._ensure_collection()
        counter = self._next_sequence(stream, sequence)
        event_id = f"{stream}:{counter}:{uuid.uuid4().hex[:8]}"
        timestamp = timestamp or self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {}
        if metadata:
            record_metadata.update(metadata)
        record_metadata.update(
            {
                "stream": stream,
                "event_type": event_type,
                "timestamp": timestamp.isoformat(),
                "sequence": counter,
            }
        )
        record_metadata = _scalar_metadata(record_metadata)

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            stream=stream,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_stream(
        self,
        stream: str,
        *,
        after_sequence: int | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        """Return a stream's events ordered by sequence."""

        collection = self._ensure_collection()
        result = collection.get(where={"stream": stream})
        events = self._convert_result(result)
        if after_sequence is not None:
            events = [event for event in events if event.sequence > after_sequence]
        return events[:limit] if limit else events

    def record_worktree(
        self,
        *,
        session_id: str,
        path: str,
        branch: str | None,
        repo_root: str,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> WorktreeRecord:
        timestamp = self._clock()
        payload = {
            "session_id": session_id,
            "path": path,
            "branch": branch,
            "repo_root": repo_root,
            "status": status,
            "timestamp": timestamp.isoformat(),
        }
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            stream=f"worktree::{session_id}",
            event_type="worktree_update",
            body=payload,
            metadata={"session_id": session_id, "path": path, "status": status},
            timestamp=timestamp,
        )

        return WorktreeRecord(
            session_id=session_id,
            path=path,
            branch=branch,
            repo_root=repo_root,
            created_at=event.timestamp,
            status=status,
            metadata=metadata or {},
        )

    def list_worktrees(self, session_id: str | None = None) -> list[WorktreeRecord]:
        """Return worktree records, oldest first."""

        filters: dict[str, Any] = {"event_type": "worktree_update"}
        if session_id:
            filters["session_id"] = session_id
        events = self.search_events(filters=filters)
        events.sort(key=lambda event: event.timestamp)
        worktrees: list[WorktreeRecord] = []
        reserved = {"session_id", "path", "branch", "repo_root", "status", "timestamp"}
        for event in events:
            doc = json.loads(event.document)
            worktrees.append(
                WorktreeRecord(
                    session_id=doc["session_id"],
                    path=doc["path"],
                    branch=doc.get("branch"),
                    repo_root=doc.get("repo_root", ""),
                    created_at=event.timestamp,
                    status=doc.get("status", "unknown"),
                    metadata={k: v for k, v in doc.items() if k not in reserved},
                )
            )
        return worktrees

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=_build_where(filters))
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            filtered: list[ChromaEvent] = []
            for event in events:
                haystacks = [event.document.lower()]
                haystacks.extend(str(value).lower() for value in event.metadata.values())
                if any(needle in hay for hay in haystacks):
                    filtered.append(event)
            events = filtered
        return events[:limit] if limit else events


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
