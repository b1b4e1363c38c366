"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from ..models import AgentType, SessionMetadata, TokenUsage, utcnow


@dataclass(slots=True)
class WorktreeRecord:
    session_id: str
    path: str
    branch: str | None
    repo_root: str
    created_at: datetime
    status: str
    metadata: dict[str, Any]


class _RegistryEventBase(BaseModel):
    session_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class SessionCreated(_RegistryEventBase):
    event: Literal["session_created"] = "session_created"
    agent_type: AgentType
    prompt: str
    working_dir: str
    model: str | None = None
    task_path: str | None = None
    worktree_path: str | None = None
    worktree_branch: str | None = None
    retain_worktree: bool = False


class SessionUpdated(_RegistryEventBase):
    """Durable facts recorded after creation.

    Carries the engine's resume handle while a session runs, and re-folded
    metadata when a terminal session's output is finalized late.
    """

    event: Literal["session_updated"] = "session_updated"
    pid: int | None = None
    cli_session_id: str | None = None
    metadata: SessionMetadata | None = None


class SessionCompleted(_RegistryEventBase):
    event: Literal["session_completed"] = "session_completed"
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    exit_code: int | None = 0
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)


class SessionFailed(_RegistryEventBase):
    event: Literal["session_failed"] = "session_failed"
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    error: str | None = None
    exit_code: int | None = None
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)


class SessionCancelled(_RegistryEventBase):
    event: Literal["session_cancelled"] = "session_cancelled"
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)


RegistryEvent = Annotated[
    Union[SessionCreated, SessionUpdated, SessionCompleted, SessionFailed, SessionCancelled],
    Field(discriminator="event"),
]

registry_event_adapter: TypeAdapter[RegistryEvent] = TypeAdapter(RegistryEvent)


__all__ = [
    "RegistryEvent",
    "SessionCancelled",
    "SessionCompleted",
    "SessionCreated",
    "SessionFailed",
    "SessionUpdated",
    "WorktreeRecord",
    "registry_event_adapter",
]
