"""Queryable current-state view of every session."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from ..metadata import MetadataAggregator
from ..models import (
    AgentType,
    ConversationMessage,
    EditedFileInfo,
    OutputChunk,
    Session,
    SessionMetadata,
    SessionStatus,
    TokenUsage,
)
from ..storage import (
    OutputStream,
    SessionCancelled,
    SessionCompleted,
    SessionCreated,
    SessionFailed,
    SessionRegistry,
    SessionUpdated,
)
from .status import ensure_transition

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "pid",
        "working_dir",
        "worktree_path",
        "worktree_branch",
        "tokens_used",
        "error",
        "exit_code",
        "cli_session_id",
        "model",
        "messages",
    }
)


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session '{self.session_id}' not found"


class SessionTerminalError(RuntimeError):
    """Raised when mutating a session that already reached a terminal status."""

    def __init__(self, session: Session) -> None:
        super().__init__(f"Session '{session.id}' is already {session.status.value}")
        self.session = session


@dataclass(slots=True)
class SessionFilter:
    statuses: frozenset[SessionStatus] | None = None
    agent_type: AgentType | None = None
    task_path: str | None = None
    active_only: bool = False

    def matches(self, session: Session) -> bool:
        if self.statuses and session.status not in self.statuses:
            return False
        if self.agent_type and session.agent_type != self.agent_type:
            return False
        if self.task_path and session.task_path != self.task_path:
            return False
        if self.active_only and session.is_terminal:
            return False
        return True


def conversation_from_chunks(chunks: Iterable[OutputChunk]) -> list[ConversationMessage]:
    """Collapse a chunk log into alternating user/assistant messages."""

    messages: list[ConversationMessage] = []
    for chunk in chunks:
        if chunk.type == "user_message":
            messages.append(
                ConversationMessage(role="user", content=chunk.content, timestamp=chunk.timestamp)
            )
        elif chunk.type == "text" and chunk.content.strip():
            if messages and messages[-1].role == "assistant":
                messages[-1].content += "\n" + chunk.content
            else:
                messages.append(
                    ConversationMessage(
                        role="assistant", content=chunk.content, timestamp=chunk.timestamp
                    )
                )
    return messages


class SessionStore:
    """Current session state, reconstructible from the registry and output logs.

    State changes are serialized per session so that a process-exit
    transition and an external cancel cannot interleave.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        output: OutputStream,
        aggregator: MetadataAggregator | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._output = output
        self._aggregator = aggregator or MetadataAggregator()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._index_lock = threading.Lock()

    @property
    def output(self) -> OutputStream:
        return self._output

    @property
    def aggregator(self) -> MetadataAggregator:
        return self._aggregator

    def _lock_for(self, session_id: str) -> threading.RLock:
        with self._index_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
            return lock

    def _require(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None

    def _fold(self, session: Session, status: SessionStatus, ended_at: datetime | None) -> SessionMetadata:
        return self._aggregator.fold(
            self._output.tail(session.id),
            agent_type=session.agent_type,
            token_usage=session.tokens_used,
            ended_at=ended_at,
            final_status=status,
        )

    def create(self, session: Session) -> Session:
        """Register a new session and record its ``session_created`` event."""

        with self._lock_for(session.id):
            if session.id in self._sessions:
                raise ValueError(f"Session '{session.id}' already exists")
            self._registry.record(
                SessionCreated(
                    session_id=session.id,
                    timestamp=session.started_at,
                    agent_type=session.agent_type,
                    prompt=session.prompt,
                    working_dir=session.working_dir,
                    model=session.model,
                    task_path=session.task_path,
                    worktree_path=session.worktree_path,
                    worktree_branch=session.worktree_branch,
                    retain_worktree=session.retain_worktree,
                )
            )
            self._sessions[session.id] = session.model_copy(deep=True)
        logger.info(
            "Session created",
            extra={"session_id": session.id, "agent_type": session.agent_type.value},
        )
        return session.model_copy(deep=True)

    def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session:
        with self._lock_for(session_id):
            return self._require(session_id).model_copy(deep=True)

    def list(self, session_filter: SessionFilter | None = None) -> list[Session]:
        with self._index_lock:
            sessions = list(self._sessions.values())
        if session_filter is not None:
            sessions = [session for session in sessions if session_filter.matches(session)]
        sessions.sort(key=lambda session: session.started_at, reverse=True)
        return [session.model_copy(deep=True) for session in sessions]

    def update(self, session_id: str, **fields: Any) -> Session:
        """Apply a partial update to a non-terminal session."""

        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        with self._lock_for(session_id):
            session = self._require(session_id)
            if session.is_terminal:
                raise SessionTerminalError(session)
            if (
                "working_dir" in fields
                and session.pid is not None
                and fields["working_dir"] != session.working_dir
            ):
                raise ValueError("working_dir cannot change once the process has started")

            updated = session.model_copy(update=fields)
            self._sessions[session_id] = updated

            durable = {
                key: fields[key]
                for key in ("pid", "cli_session_id")
                if key in fields and fields[key] != getattr(session, key)
            }
            if durable:
                self._registry.record(
                    SessionUpdated(session_id=session_id, timestamp=self._clock(), **durable)
                )
            return updated.model_copy(deep=True)

    def transition(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        error: str | None = None,
        exit_code: int | None = None,
        tokens_used: TokenUsage | None = None,
    ) -> Session:
        """Move a session to ``status``.

        Terminal statuses stamp ``completed_at``, fold the output log into
        metadata and record the terminal registry event. Moving to the current
        status is a no-op.
        """

        status = SessionStatus(status)
        with self._lock_for(session_id):
            session = self._require(session_id)
            if session.is_terminal:
                raise SessionTerminalError(session)
            if session.status == status:
                return session.model_copy(deep=True)
            ensure_transition(session.status, status)

            updates: dict[str, Any] = {"status": status}
            if error is not None:
                updates["error"] = error
            if exit_code is not None:
                updates["exit_code"] = exit_code
            if tokens_used is not None:
                updates["tokens_used"] = tokens_used

            if status.is_terminal:
                completed_at = self._clock()
                staged = session.model_copy(update=updates)
                metadata = self._fold(staged, status, completed_at)
                updates.update(
                    completed_at=completed_at,
                    metadata=metadata,
                    messages=conversation_from_chunks(self._output.tail(session_id)),
                )
                self._registry.record(self._terminal_event(staged, metadata, completed_at))

            updated = session.model_copy(update=updates)
            self._sessions[session_id] = updated

        logger.info(
            "Session status changed",
            extra={
                "session_id": session_id,
                "from_status": session.status.value,
                "to_status": status.value,
            },
        )
        return updated.model_copy(deep=True)

    @staticmethod
    def _terminal_event(session: Session, metadata: SessionMetadata, timestamp: datetime):
        if session.status == SessionStatus.COMPLETED:
            return SessionCompleted(
                session_id=session.id,
                timestamp=timestamp,
                metadata=metadata,
                exit_code=session.exit_code,
                tokens_used=session.tokens_used,
            )
        if session.status == SessionStatus.FAILED:
            return SessionFailed(
                session_id=session.id,
                timestamp=timestamp,
                metadata=metadata,
                error=session.error,
                exit_code=session.exit_code,
                tokens_used=session.tokens_used,
            )
        return SessionCancelled(
            session_id=session.id,
            timestamp=timestamp,
            metadata=metadata,
            tokens_used=session.tokens_used,
        )

    def finalize_metadata(self, session_id: str, *, tokens_used: TokenUsage | None = None) -> Session:
        """Re-fold a terminal session's metadata after late output arrived."""

        with self._lock_for(session_id):
            session = self._require(session_id)
            if not session.is_terminal:
                return session.model_copy(deep=True)
            if tokens_used is not None:
                session = session.model_copy(update={"tokens_used": tokens_used})
            metadata = self._fold(session, session.status, session.completed_at)
            if metadata == session.metadata:
                self._sessions[session_id] = session
                return session.model_copy(deep=True)
            updated = session.model_copy(
                update={
                    "metadata": metadata,
                    "messages": conversation_from_chunks(self._output.tail(session_id)),
                }
            )
            self._sessions[session_id] = updated
            self._registry.record(
                SessionUpdated(session_id=session_id, timestamp=self._clock(), metadata=metadata)
            )
        return updated.model_copy(deep=True)

    def live_metadata(self, session_id: str) -> SessionMetadata:
        """Return metadata for any session, folding on demand when not yet finalized."""

        session = self.get(session_id)
        if session.is_terminal and session.metadata is not None:
            return session.metadata
        return self._fold(session, session.status, None)

    def get_changed_files(self, session_id: str) -> list[EditedFileInfo]:
        """Return edited files, from finalized metadata when the session is terminal."""

        session = self.get(session_id)
        if session.is_terminal and session.metadata is not None:
            return list(session.metadata.edited_files)
        return self._aggregator.edited_files(self._output.tail(session_id))

    def rebuild(self) -> list[Session]:
        """Reconstruct every session from the registry and output logs.

        Intended for startup, before any process is supervised. Sessions that
        never reached a terminal status come back ``idle`` (resumable), or
        ``failed`` when they had produced no output beyond their prompt.

        Restoring to ``idle`` bypasses the transition table: a session that was
        ``waiting_approval`` or ``waiting_input`` lost the process that asked,
        so it is set straight to ``idle`` without a ``working`` step. This edge
        exists only here.
        """

        sessions: dict[str, Session] = {}
        for event in self._registry.replay():
            if isinstance(event, SessionCreated):
                sessions[event.session_id] = Session(
                    id=event.session_id,
                    prompt=event.prompt,
                    agent_type=event.agent_type,
                    model=event.model,
                    started_at=event.timestamp,
                    working_dir=event.working_dir,
                    worktree_path=event.worktree_path,
                    worktree_branch=event.worktree_branch,
                    task_path=event.task_path,
                    retain_worktree=event.retain_worktree,
                )
                continue

            session = sessions.get(event.session_id)
            if session is None:
                logger.warning(
                    "Registry event for unknown session",
                    extra={"session_id": event.session_id, "event": event.event},
                )
                continue

            if isinstance(event, SessionUpdated):
                updates: dict[str, Any] = {}
                if event.cli_session_id:
                    updates["cli_session_id"] = event.cli_session_id
                if event.metadata is not None:
                    updates["metadata"] = event.metadata
                sessions[event.session_id] = session.model_copy(update=updates)
            elif isinstance(event, SessionCompleted):
                sessions[event.session_id] = session.model_copy(
                    update={
                        "status": SessionStatus.COMPLETED,
                        "completed_at": event.timestamp,
                        "metadata": event.metadata,
                        "exit_code": event.exit_code,
                        "tokens_used": event.tokens_used,
                    }
                )
            elif isinstance(event, SessionFailed):
                sessions[event.session_id] = session.model_copy(
                    update={
                        "status": SessionStatus.FAILED,
                        "completed_at": event.timestamp,
                        "metadata": event.metadata,
                        "exit_code": event.exit_code,
                        "error": event.error,
                        "tokens_used": event.tokens_used,
                    }
                )
            elif isinstance(event, SessionCancelled):
                sessions[event.session_id] = session.model_copy(
                    update={
                        "status": SessionStatus.CANCELLED,
                        "completed_at": event.timestamp,
                        "metadata": event.metadata,
                        "tokens_used": event.tokens_used,
                    }
                )

        interrupted: list[str] = []
        for session_id, session in sessions.items():
            chunks = self._output.tail(session_id)
            updates = {"messages": conversation_from_chunks(chunks)}
            if session.is_terminal:
                if session.metadata is None:
                    updates["metadata"] = self._fold(session, session.status, session.completed_at)
            elif any(chunk.type != "user_message" for chunk in chunks):
                updates["status"] = SessionStatus.IDLE
            else:
                interrupted.append(session_id)
            sessions[session_id] = session.model_copy(update=updates)

        with self._index_lock:
            self._sessions = sessions

        for session_id in interrupted:
            self.transition(
                session_id,
                SessionStatus.FAILED,
                error="Interrupted before the agent produced output",
            )

        logger.info(
            "Rebuilt session store",
            extra={"session_count": len(sessions), "interrupted": len(interrupted)},
        )
        return self.list()


__all__ = [
    "SessionFilter",
    "SessionNotFoundError",
    "SessionStore",
    "SessionTerminalError",
    "UPDATABLE_FIELDS",
    "conversation_from_chunks",
]
