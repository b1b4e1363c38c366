"""Shared data models for sessions, output chunks and derived metadata."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

CLIENT_MESSAGE_ID_KEY = "clientMessageId"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentType(str, Enum):
    """Closed set of agent engines that can be supervised."""

    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"


class SessionStatus(str, Enum):
    """Lifecycle states of a session."""

    PENDING = "pending"
    WORKING = "working"
    WAITING_APPROVAL = "waiting_approval"
    WAITING_INPUT = "waiting_input"
    IDLE = "idle"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


# ---------------------------------------------------------------------------
# Output chunks
# ---------------------------------------------------------------------------


class _ChunkBase(BaseModel):
    content: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Side-channel extension fields such as clientMessageId or corrupted.",
    )

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, value: Any) -> dict[str, Any]:
        return dict(value) if value else {}

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TextChunk(_ChunkBase):
    type: Literal["text"] = "text"


class ThinkingChunk(_ChunkBase):
    type: Literal["thinking"] = "thinking"


class ToolUseChunk(_ChunkBase):
    """A tool invocation; content is the JSON encoding of ``{"name", "input"}``."""

    type: Literal["tool_use"] = "tool_use"

    def payload(self) -> dict[str, Any]:
        """Return the decoded payload, or an empty mapping when it is malformed."""

        try:
            decoded = json.loads(self.content)
        except (TypeError, ValueError):
            return {}
        return decoded if isinstance(decoded, dict) else {}

    @property
    def tool_name(self) -> str | None:
        name = self.payload().get("name") or self.metadata.get("tool")
        return str(name) if name else None

    @property
    def tool_input(self) -> dict[str, Any]:
        value = self.payload().get("input")
        return value if isinstance(value, dict) else {}


class ToolResultChunk(_ChunkBase):
    type: Literal["tool_result"] = "tool_result"


class ErrorChunk(_ChunkBase):
    type: Literal["error"] = "error"


class SystemChunk(_ChunkBase):
    type: Literal["system"] = "system"


class UserMessageChunk(_ChunkBase):
    type: Literal["user_message"] = "user_message"

    @property
    def client_message_id(self) -> str | None:
        value = self.metadata.get(CLIENT_MESSAGE_ID_KEY)
        return str(value) if value else None


OutputChunk = Annotated[
    Union[
        TextChunk,
        ThinkingChunk,
        ToolUseChunk,
        ToolResultChunk,
        ErrorChunk,
        SystemChunk,
        UserMessageChunk,
    ],
    Field(discriminator="type"),
]

chunk_adapter: TypeAdapter[OutputChunk] = TypeAdapter(OutputChunk)


def make_chunk(
    chunk_type: str,
    content: Any = "",
    *,
    timestamp: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> OutputChunk:
    """Build a chunk of the given type, validating through the tagged union."""

    payload: dict[str, Any] = {
        "type": chunk_type,
        "content": content,
        "metadata": metadata or {},
    }
    if timestamp is not None:
        payload["timestamp"] = timestamp
    return chunk_adapter.validate_python(payload)


def make_tool_use(
    name: str,
    tool_input: dict[str, Any] | None = None,
    *,
    timestamp: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> ToolUseChunk:
    return ToolUseChunk(
        content=json.dumps({"name": name, "input": tool_input or {}}),
        timestamp=timestamp or utcnow(),
        metadata={"tool": name, **(metadata or {})},
    )


# ---------------------------------------------------------------------------
# Derived metadata
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


class ContextWindow(BaseModel):
    estimated_tokens: int = 0
    model_limit: int = 0
    utilization_percent: float = 0.0


class EditedFileInfo(BaseModel):
    """A file mutation detected from a tool invocation."""

    path: str
    operation: Literal["create", "edit", "delete"]
    timestamp: datetime
    tool_used: str
    size_bytes: int | None = None
    lines_changed: int | None = None


class ToolStats(BaseModel):
    total_calls: int = 0
    by_tool: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(
        default_factory=lambda: {"read": 0, "write": 0, "execute": 0, "other": 0}
    )


class OutputMetrics(BaseModel):
    chunk_counts: dict[str, int] = Field(default_factory=dict)
    total_characters: int = 0
    estimated_output_tokens: int = 0
    tool_result_characters: int = 0
    estimated_tool_result_tokens: int = 0


class Turn(BaseModel):
    """One user prompt plus the agent activity that answered it."""

    index: int
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: int | None = None
    status: Literal["in_progress", "completed", "failed", "cancelled"] = "in_progress"
    tool_calls: int = 0
    tool_calls_by_type: dict[str, int] = Field(
        default_factory=lambda: {"read": 0, "write": 0, "execute": 0, "other": 0}
    )
    edited_files_count: int = 0
    unique_edited_files_count: int = 0
    text_characters: int = 0
    tool_result_characters: int = 0


class SessionMetadata(BaseModel):
    """Aggregates derived from a session's output chunks."""

    context_window: ContextWindow = Field(default_factory=ContextWindow)
    edited_files: list[EditedFileInfo] = Field(default_factory=list)
    tool_stats: ToolStats = Field(default_factory=ToolStats)
    output_metrics: OutputMetrics = Field(default_factory=OutputMetrics)
    turns: list[Turn] = Field(default_factory=list)
    duration_ms: int | None = None
    user_message_count: int = 0
    assistant_message_count: int = 0
    message_count: int = 0


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    """One supervised run of an agent engine."""

    id: str
    prompt: str
    agent_type: AgentType
    model: str | None = None
    status: SessionStatus = SessionStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    pid: int | None = None
    working_dir: str
    worktree_path: str | None = None
    worktree_branch: str | None = None
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    exit_code: int | None = None
    error: str | None = None
    messages: list[ConversationMessage] = Field(default_factory=list)
    task_path: str | None = None
    cli_session_id: str | None = None
    retain_worktree: bool = False
    metadata: SessionMetadata | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class SpawnRequest(BaseModel):
    """Parameters accepted by spawn; the transport resolves directory and session id."""

    prompt: str
    working_dir: str | None = None
    session_id: str | None = None
    agent_type: AgentType | None = None
    model: str | None = None
    task_path: str | None = None
    isolate: bool | None = None
    retain_worktree: bool = False
    client_message_id: str | None = None

    @field_validator("prompt")
    @classmethod
    def _require_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be empty")
        return value


__all__ = [
    "AgentType",
    "CLIENT_MESSAGE_ID_KEY",
    "ContextWindow",
    "ConversationMessage",
    "EditedFileInfo",
    "ErrorChunk",
    "OutputChunk",
    "OutputMetrics",
    "Session",
    "SessionMetadata",
    "SessionStatus",
    "SpawnRequest",
    "SystemChunk",
    "TERMINAL_STATUSES",
    "TextChunk",
    "ThinkingChunk",
    "TokenUsage",
    "ToolResultChunk",
    "ToolStats",
    "ToolUseChunk",
    "Turn",
    "UserMessageChunk",
    "chunk_adapter",
    "make_chunk",
    "make_tool_use",
    "utcnow",
]
