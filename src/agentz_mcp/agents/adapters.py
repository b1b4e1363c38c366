"""Engine adapters: build each engine's invocation and parse its output protocol."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Mapping

from ..models import (
    AgentType,
    ErrorChunk,
    OutputChunk,
    SystemChunk,
    TextChunk,
    ThinkingChunk,
    TokenUsage,
    ToolResultChunk,
    make_tool_use,
)
from .utils import (
    coerce_string,
    content_blocks,
    interactive_prompt_kind,
    looks_like_error,
    parse_maybe_json,
)

MAX_PROMPT_BYTES_IN_ARGS = 100_000


class StreamCorruption(ValueError):
    """Raised for an output fragment that claims a structure it does not have."""


class Signal(str, Enum):
    """Status hints carried by an output frame."""

    APPROVAL = "waiting_approval"
    INPUT = "waiting_input"
    IDLE = "idle"


@dataclass(slots=True)
class Frame:
    """Everything extracted from a single line of engine output."""

    chunks: list[OutputChunk] = field(default_factory=list)
    signals: list[Signal] = field(default_factory=list)
    cli_session_id: str | None = None
    error: str | None = None
    token_usage: TokenUsage | None = None

    def signal(self, value: Signal) -> None:
        if value not in self.signals:
            self.signals.append(value)


@dataclass(slots=True)
class Invocation:
    """How to launch one engine run."""

    args: list[str]
    stdin_prompt: str | None = None
    close_stdin: bool = True
    env: dict[str, str] = field(default_factory=dict)


class EngineAdapter(ABC):
    """Per-run translator between one engine CLI and the chunk model.

    A fresh adapter is created for every process launch, so parsers may keep
    small amounts of per-run state.
    """

    agent_type: ClassVar[AgentType]
    executable_name: ClassVar[str]
    native_resume: ClassVar[bool] = True

    @abstractmethod
    def build_invocation(
        self,
        prompt: str,
        *,
        model: str | None = None,
        resume_id: str | None = None,
    ) -> Invocation:
        ...

    @abstractmethod
    def parse_frame(self, payload: dict[str, Any]) -> Frame:
        ...

    def format_followup(self, prompt: str) -> bytes:
        """Encode a follow-up prompt for a process that keeps stdin open."""

        return (prompt if prompt.endswith("\n") else prompt + "\n").encode("utf-8")

    def parse_line(self, line: str) -> Frame:
        """Parse one stdout line.

        Lines that look like JSON objects must decode as such; anything else is
        plain text and may carry an interactive prompt.
        """

        stripped = line.strip()
        if not stripped:
            return Frame()
        if stripped.startswith("{"):
            try:
                payload = json.loads(stripped)
            except ValueError as exc:
                raise StreamCorruption(f"Malformed JSON frame: {exc}") from exc
            if not isinstance(payload, dict):
                raise StreamCorruption("JSON frame is not an object")
            return self.parse_frame(payload)

        frame = Frame(chunks=[TextChunk(content=line.rstrip("\r\n"))])
        kind = interactive_prompt_kind(stripped)
        if kind == "approval":
            frame.signal(Signal.APPROVAL)
        elif kind == "input":
            frame.signal(Signal.INPUT)
        return frame

    def parse_stderr(self, line: str) -> Frame:
        stripped = line.rstrip("\r\n")
        if not stripped.strip():
            return Frame()
        if looks_like_error(stripped):
            return Frame(chunks=[ErrorChunk(content=stripped, metadata={"stream": "stderr"})])
        return Frame(chunks=[SystemChunk(content=stripped, metadata={"stream": "stderr"})])

    @staticmethod
    def _tool_use(name: str, tool_input: Any, **metadata: Any) -> OutputChunk:
        value = parse_maybe_json(tool_input)
        if not isinstance(value, dict):
            value = {} if value is None else {"value": value}
        return make_tool_use(name, value, metadata=metadata or None)


def _usage(raw: Any) -> TokenUsage | None:
    if not isinstance(raw, Mapping):
        return None
    input_tokens = raw.get("input_tokens", raw.get("input", 0))
    output_tokens = raw.get("output_tokens", raw.get("output", 0))
    try:
        return TokenUsage(input=int(input_tokens or 0), output=int(output_tokens or 0))
    except (TypeError, ValueError):
        return None


class ClaudeAdapter(EngineAdapter):
    """Claude Code CLI in ``stream-json`` print mode."""

    agent_type = AgentType.CLAUDE
    executable_name = "claude"

    def build_invocation(self, prompt, *, model=None, resume_id=None) -> Invocation:
        args = [
            "-p",
            "--verbose",
            "--output-format",
            "stream-json",
            "--dangerously-skip-permissions",
        ]
        if model:
            args.extend(["--model", model])
        if resume_id:
            args.extend(["--resume", resume_id])
        return Invocation(args=args, stdin_prompt=prompt)

    def parse_frame(self, payload: dict[str, Any]) -> Frame:
        frame = Frame()
        kind = payload.get("type")
        session_id = coerce_string(payload.get("session_id"))

        if kind == "stream_event":
            event = payload.get("event") or {}
            delta = event.get("delta") or {} if isinstance(event, dict) else {}
            if isinstance(delta, dict):
                if delta.get("type") == "text_delta" and delta.get("text"):
                    frame.chunks.append(TextChunk(content=str(delta["text"])))
                elif delta.get("type") == "thinking_delta" and delta.get("thinking"):
                    frame.chunks.append(ThinkingChunk(content=str(delta["thinking"])))
        elif kind == "system":
            if payload.get("subtype") == "init":
                frame.cli_session_id = session_id
        elif kind in {"assistant", "user"}:
            self._message_blocks(payload, frame)
            if kind == "assistant" and isinstance(payload.get("error"), str):
                text = next((c.content for c in frame.chunks if c.type == "text"), None)
                frame.error = text or payload["error"]
        elif kind == "result":
            frame.cli_session_id = session_id
            frame.token_usage = _usage(payload.get("usage"))
            if payload.get("is_error") is True:
                message = str(payload.get("result") or payload.get("message") or payload.get("error") or "Unknown error")
                frame.error = message
                frame.chunks.append(ErrorChunk(content=message))
            frame.signal(Signal.IDLE)
        elif kind == "tool_use":
            name = coerce_string(payload.get("name")) or "unknown"
            frame.chunks.append(self._tool_use(name, payload.get("input")))
            if name == "AskUserQuestion":
                frame.signal(Signal.INPUT)
        elif kind == "tool_result":
            frame.chunks.append(
                ToolResultChunk(content=coerce_string(payload.get("content") or payload.get("output")) or "")
            )
        elif kind == "error":
            message = str(payload.get("message") or payload.get("error") or "Unknown error")
            frame.error = message
            frame.chunks.append(ErrorChunk(content=message))
        return frame

    def _message_blocks(self, payload: dict[str, Any], frame: Frame) -> None:
        message = payload.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), list):
            return
        for block in message["content"]:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                frame.chunks.append(TextChunk(content=str(block["text"])))
            elif block_type == "thinking" and block.get("thinking"):
                frame.chunks.append(ThinkingChunk(content=str(block["thinking"])))
            elif block_type == "tool_use":
                name = coerce_string(block.get("name")) or "unknown"
                frame.chunks.append(self._tool_use(name, block.get("input"), tool_use_id=block.get("id")))
                if name == "AskUserQuestion":
                    frame.signal(Signal.INPUT)
            elif block_type == "tool_result":
                text, _ = content_blocks(block.get("content"))
                frame.chunks.append(
                    ToolResultChunk(
                        content="\n".join(text),
                        metadata={"tool_use_id": block.get("tool_use_id"), "is_error": bool(block.get("is_error"))},
                    )
                )


class CodexAdapter(EngineAdapter):
    """OpenAI Codex CLI in ``exec --json`` mode."""

    agent_type = AgentType.CODEX
    executable_name = "codex"

    _FILE_CHANGE_TOOLS = {"add": "create_file", "update": "edit_file", "delete": "delete_file"}

    def __init__(self) -> None:
        self._announced: set[str] = set()

    def build_invocation(self, prompt, *, model=None, resume_id=None) -> Invocation:
        use_stdin = len(prompt.encode("utf-8")) > MAX_PROMPT_BYTES_IN_ARGS
        if resume_id:
            args = ["resume", resume_id, "--json", "--dangerously-bypass-approvals-and-sandbox"]
        else:
            args = ["exec", "--json", "--dangerously-bypass-approvals-and-sandbox"]
        if model:
            args.extend(["--model", model])
        if not use_stdin:
            args.append(prompt)
        return Invocation(args=args, stdin_prompt=prompt if use_stdin else None)

    def parse_frame(self, payload: dict[str, Any]) -> Frame:
        frame = Frame()
        kind = coerce_string(payload.get("type")) or ""
        lowered = kind.lower()
        status = payload.get("status")

        if "approval" in lowered or "permission" in lowered or status in {"waiting_approval", "approval_required"}:
            frame.signal(Signal.APPROVAL)
        if status in {"waiting_input", "input_required"}:
            frame.signal(Signal.INPUT)

        frame.cli_session_id = coerce_string(
            payload.get("thread_id") or payload.get("session_id") or payload.get("conversation_id")
        )
        if kind == "thread.started":
            return frame

        error = payload.get("error")
        message = None
        if "error" in lowered or kind == "turn.failed":
            message = coerce_string(payload.get("message")) or coerce_string(error)
        if message is None and isinstance(error, dict):
            message = coerce_string(error.get("message") or error.get("error"))
        if message:
            frame.error = message
            frame.chunks.append(ErrorChunk(content=message))
            return frame

        if kind == "turn.completed":
            frame.token_usage = _usage(payload.get("usage"))
            frame.signal(Signal.IDLE)
            return frame

        item = payload.get("item")
        if isinstance(item, dict):
            self._item(kind, item, frame)
        return frame

    def _item(self, kind: str, item: dict[str, Any], frame: Frame) -> None:
        item_type = (coerce_string(item.get("type")) or "").lower()
        item_id = coerce_string(item.get("id")) or ""
        completed = kind == "item.completed"

        if item_type == "command_execution":
            if item_id not in self._announced:
                self._announced.add(item_id)
                frame.chunks.append(self._tool_use("exec_command", {"command": item.get("command")}))
            if completed:
                frame.chunks.append(
                    ToolResultChunk(
                        content=coerce_string(item.get("aggregated_output")) or "",
                        metadata={"exit_code": item.get("exit_code")},
                    )
                )
        elif item_type == "file_change":
            if not completed:
                return
            for change in item.get("changes") or []:
                if not isinstance(change, dict) or not change.get("path"):
                    continue
                tool = self._FILE_CHANGE_TOOLS.get(str(change.get("kind")).lower(), "edit_file")
                frame.chunks.append(self._tool_use(tool, {"path": change["path"]}, source="file_change"))
        elif item_type in {"mcp_tool_call", "tool_call", "function_call"}:
            name = coerce_string(item.get("tool") or item.get("name")) or "unknown"
            server = coerce_string(item.get("server"))
            if item_id not in self._announced:
                self._announced.add(item_id)
                frame.chunks.append(
                    self._tool_use(
                        f"{server}.{name}" if server else name,
                        item.get("arguments") or item.get("input"),
                    )
                )
            if completed:
                result = item.get("result") or item.get("output")
                if result is not None:
                    frame.chunks.append(
                        ToolResultChunk(content=coerce_string(result) or json.dumps(result, default=str))
                    )
        elif completed:
            text, thinking = content_blocks(item.get("content"))
            if not text and not thinking:
                value = coerce_string(item.get("text") or item.get("message"))
                if value and ("reasoning" in item_type or "thinking" in item_type):
                    thinking.append(value)
                elif value:
                    text.append(value)
            frame.chunks.extend(TextChunk(content=value) for value in text)
            frame.chunks.extend(ThinkingChunk(content=value) for value in thinking)


class OpencodeAdapter(EngineAdapter):
    """opencode CLI in ``run --format json`` mode."""

    agent_type = AgentType.OPENCODE
    executable_name = "opencode"

    def build_invocation(self, prompt, *, model=None, resume_id=None) -> Invocation:
        use_stdin = len(prompt.encode("utf-8")) > MAX_PROMPT_BYTES_IN_ARGS
        args = ["run", "--format", "json"]
        if model:
            args.extend(["--model", model])
        if resume_id:
            args.extend(["--session", resume_id])
        if not use_stdin:
            args.append(prompt)
        return Invocation(args=args, stdin_prompt=prompt if use_stdin else None)

    def parse_frame(self, payload: dict[str, Any]) -> Frame:
        frame = Frame(cli_session_id=coerce_string(payload.get("sessionID")))
        kind = payload.get("type")
        part = payload.get("part") if isinstance(payload.get("part"), dict) else {}

        if kind in {"message", "text", "output", "response"}:
            value = coerce_string(
                part.get("text") or payload.get("content") or payload.get("text") or payload.get("message")
            )
            if value:
                frame.chunks.append(TextChunk(content=value))
        elif kind in {"reasoning", "thinking"}:
            value = coerce_string(part.get("text") or payload.get("text"))
            if value:
                frame.chunks.append(ThinkingChunk(content=value))
        elif kind in {"tool_call", "tool_use"}:
            state = part.get("state") if isinstance(part.get("state"), dict) else {}
            name = coerce_string(part.get("tool") or payload.get("name") or payload.get("tool")) or "unknown"
            frame.chunks.append(
                self._tool_use(name, state.get("input") or payload.get("input") or payload.get("args"))
            )
            output = state.get("output") if state.get("status") == "completed" else None
            if output is not None:
                frame.chunks.append(ToolResultChunk(content=coerce_string(output) or json.dumps(output, default=str)))
        elif kind in {"tool_result", "tool_output"}:
            value = coerce_string(payload.get("output") or payload.get("result") or payload.get("content"))
            if value:
                frame.chunks.append(ToolResultChunk(content=value))
        elif kind == "step_finish":
            tokens = part.get("tokens")
            frame.token_usage = _usage(tokens)
            if part.get("reason") == "stop":
                frame.signal(Signal.IDLE)
        elif kind == "error":
            error = payload.get("error")
            if isinstance(error, dict):
                data = error.get("data") if isinstance(error.get("data"), dict) else {}
                message = coerce_string(data.get("message") or error.get("message") or error.get("name"))
            else:
                message = coerce_string(payload.get("message") or error)
            message = message or "Unknown error"
            frame.error = message
            frame.chunks.append(ErrorChunk(content=message))
        return frame


ADAPTERS: dict[AgentType, type[EngineAdapter]] = {
    AgentType.CLAUDE: ClaudeAdapter,
    AgentType.CODEX: CodexAdapter,
    AgentType.OPENCODE: OpencodeAdapter,
}


def adapter_for(agent_type: AgentType | str) -> EngineAdapter:
    """Return a fresh adapter for one run of ``agent_type``."""

    return ADAPTERS[AgentType(agent_type)]()


__all__ = [
    "ADAPTERS",
    "ClaudeAdapter",
    "CodexAdapter",
    "EngineAdapter",
    "Frame",
    "Invocation",
    "MAX_PROMPT_BYTES_IN_ARGS",
    "OpencodeAdapter",
    "Signal",
    "StreamCorruption",
    "adapter_for",
]
