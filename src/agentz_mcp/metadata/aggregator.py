"""Derive session metadata from an output chunk sequence."""

from __future__ import annotations

import difflib
import math
import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ValidationError

from ..models import (
    AgentType,
    ContextWindow,
    EditedFileInfo,
    OutputMetrics,
    SessionMetadata,
    SessionStatus,
    TokenUsage,
    ToolStats,
    ToolUseChunk,
    Turn,
    chunk_adapter,
)
from .taxonomy import ToolSpec, ToolTaxonomy

CONTEXT_LIMITS: dict[str, int] = {
    AgentType.CLAUDE.value: 200_000,
    AgentType.CODEX.value: 128_000,
    AgentType.OPENCODE.value: 200_000,
}
DEFAULT_CONTEXT_LIMIT = 200_000
BASELINE_SYSTEM_TOKENS = 2_000
CHARS_PER_TOKEN = 4

PATH_KEYS = ("file_path", "path", "file", "notebook_path", "filePath")
PATCH_KEYS = ("input", "patch", "content", "diff")

_PATCH_HEADER = re.compile(r"^\*\*\* (Add|Update|Delete) File: (.+?)\s*$")
_PATCH_OPERATIONS = {"Add": "create", "Update": "edit", "Delete": "delete"}

_TURN_STATUS = {
    SessionStatus.COMPLETED: "completed",
    SessionStatus.FAILED: "failed",
    SessionStatus.CANCELLED: "cancelled",
}


def _estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _line_count(text: str) -> int:
    return len(text.splitlines())


def _line_delta(old: str, new: str) -> int:
    changed = 0
    for line in difflib.unified_diff(old.splitlines(), new.splitlines(), lineterm="", n=0):
        if line.startswith(("+++", "---")):
            continue
        if line.startswith(("+", "-")):
            changed += 1
    return changed


def _millis(start: datetime, end: datetime) -> int:
    return max(int((end - start).total_seconds() * 1000), 0)


def _coerce_status(value: SessionStatus | str | None) -> SessionStatus | None:
    if value is None:
        return None
    try:
        return SessionStatus(value)
    except ValueError:
        return None


class MetadataAggregator:
    """Pure fold from chunks to :class:`SessionMetadata`.

    The fold is deterministic and never raises: entries that do not validate
    as chunks are skipped, and tool payloads that cannot be decoded simply
    contribute no file edits.
    """

    def __init__(self, taxonomy: ToolTaxonomy | None = None) -> None:
        self._taxonomy = taxonomy or ToolTaxonomy()

    @property
    def taxonomy(self) -> ToolTaxonomy:
        return self._taxonomy

    def _coerce_chunks(self, chunks: Iterable[Any]) -> list[Any]:
        valid: list[Any] = []
        for item in chunks:
            if isinstance(item, BaseModel) and hasattr(item, "type"):
                valid.append(item)
            elif isinstance(item, Mapping):
                try:
                    valid.append(chunk_adapter.validate_python(dict(item)))
                except ValidationError:
                    continue
        return valid

    def fold(
        self,
        chunks: Iterable[Any],
        *,
        agent_type: AgentType | str | None = None,
        model_limit: int | None = None,
        token_usage: TokenUsage | None = None,
        ended_at: datetime | None = None,
        final_status: SessionStatus | str | None = None,
    ) -> SessionMetadata:
        items = self._coerce_chunks(chunks)
        status = _coerce_status(final_status)
        if ended_at is not None and ended_at.tzinfo is None:
            ended_at = ended_at.replace(tzinfo=timezone.utc)

        chunk_counts: dict[str, int] = {}
        metrics = OutputMetrics()
        stats = ToolStats()
        edited: list[EditedFileInfo] = []
        turns: list[Turn] = []
        turn_paths: set[str] = set()
        user_messages = 0
        assistant_messages = 0

        def open_turn(started_at: datetime) -> Turn:
            turn_paths.clear()
            turn = Turn(index=len(turns), started_at=started_at)
            turns.append(turn)
            return turn

        current: Turn | None = None
        for chunk in items:
            chunk_counts[chunk.type] = chunk_counts.get(chunk.type, 0) + 1

            if chunk.type == "user_message":
                user_messages += 1
                if current is not None:
                    self._close_turn(current, chunk.timestamp, "completed")
                current = open_turn(chunk.timestamp)
                continue

            if current is None:
                current = open_turn(chunk.timestamp)

            if chunk.type in {"text", "thinking"}:
                metrics.total_characters += len(chunk.content)
                metrics.estimated_output_tokens += _estimate_tokens(chunk.content)
                if chunk.type == "text":
                    assistant_messages += 1
                    current.text_characters += len(chunk.content)
            elif chunk.type == "tool_result":
                metrics.tool_result_characters += len(chunk.content)
                metrics.estimated_tool_result_tokens += _estimate_tokens(chunk.content)
                current.tool_result_characters += len(chunk.content)
            elif chunk.type == "tool_use":
                name = chunk.tool_name or "unknown"
                spec = self._taxonomy.lookup(name)
                stats.total_calls += 1
                stats.by_tool[name] = stats.by_tool.get(name, 0) + 1
                stats.by_type[spec.bucket] = stats.by_type.get(spec.bucket, 0) + 1
                current.tool_calls += 1
                current.tool_calls_by_type[spec.bucket] = (
                    current.tool_calls_by_type.get(spec.bucket, 0) + 1
                )
                for info in self._edits_for(chunk, name, spec):
                    edited.append(info)
                    current.edited_files_count += 1
                    turn_paths.add(info.path)
                    current.unique_edited_files_count = len(turn_paths)

        metrics.chunk_counts = chunk_counts

        if current is not None and status in _TURN_STATUS:
            end = ended_at or items[-1].timestamp
            self._close_turn(current, max(end, current.started_at), _TURN_STATUS[status])

        duration_ms: int | None = None
        if items:
            end = ended_at or items[-1].timestamp
            duration_ms = _millis(items[0].timestamp, end)

        agent_key = agent_type.value if isinstance(agent_type, AgentType) else agent_type
        limit = model_limit or CONTEXT_LIMITS.get(agent_key or "", DEFAULT_CONTEXT_LIMIT)
        if token_usage is not None and token_usage.total > 0:
            estimated = BASELINE_SYSTEM_TOKENS + token_usage.input + token_usage.output
        else:
            estimated = BASELINE_SYSTEM_TOKENS + metrics.estimated_output_tokens

        return SessionMetadata(
            context_window=ContextWindow(
                estimated_tokens=estimated,
                model_limit=limit,
                utilization_percent=round(estimated / limit * 100, 2) if limit else 0.0,
            ),
            edited_files=edited,
            tool_stats=stats,
            output_metrics=metrics,
            turns=turns,
            duration_ms=duration_ms,
            user_message_count=user_messages,
            assistant_message_count=assistant_messages,
            message_count=user_messages + assistant_messages,
        )

    def edited_files(self, chunks: Iterable[Any]) -> list[EditedFileInfo]:
        """Return only the file edits detected in ``chunks``."""

        edits: list[EditedFileInfo] = []
        for chunk in self._coerce_chunks(chunks):
            if chunk.type != "tool_use":
                continue
            name = chunk.tool_name or "unknown"
            edits.extend(self._edits_for(chunk, name, self._taxonomy.lookup(name)))
        return edits

    @staticmethod
    def _close_turn(turn: Turn, ended_at: datetime, status: str) -> None:
        turn.ended_at = ended_at
        turn.duration_ms = _millis(turn.started_at, ended_at)
        turn.status = status  # type: ignore[assignment]

    def _edits_for(self, chunk: ToolUseChunk, name: str, spec: ToolSpec) -> list[EditedFileInfo]:
        payload = chunk.payload()
        tool_input = payload.get("input")

        if spec.patch:
            return self._patch_edits(chunk, name, tool_input)

        if spec.operation is None or not isinstance(tool_input, dict):
            return []

        path = next(
            (tool_input[key] for key in PATH_KEYS if isinstance(tool_input.get(key), str) and tool_input[key]),
            None,
        )
        if path is None:
            return []

        size_bytes: int | None = None
        lines_changed: int | None = None
        content = tool_input.get("content")
        if spec.operation == "create" and isinstance(content, str):
            size_bytes = len(content.encode("utf-8"))
            lines_changed = _line_count(content)
        elif spec.operation == "edit":
            lines_changed = self._edit_delta(tool_input)

        return [
            EditedFileInfo(
                path=path,
                operation=spec.operation,
                timestamp=chunk.timestamp,
                tool_used=name,
                size_bytes=size_bytes,
                lines_changed=lines_changed,
            )
        ]

    @staticmethod
    def _edit_delta(tool_input: dict[str, Any]) -> int | None:
        edits = tool_input.get("edits")
        pairs: list[tuple[Any, Any]] = []
        if isinstance(edits, list):
            pairs = [
                (edit.get("old_string"), edit.get("new_string"))
                for edit in edits
                if isinstance(edit, dict)
            ]
        else:
            pairs = [(tool_input.get("old_string"), tool_input.get("new_string"))]

        total = 0
        found = False
        for old, new in pairs:
            if isinstance(old, str) and isinstance(new, str):
                total += _line_delta(old, new)
                found = True
        return total if found else None

    @staticmethod
    def _patch_edits(chunk: ToolUseChunk, name: str, tool_input: Any) -> list[EditedFileInfo]:
        text: str | None = tool_input if isinstance(tool_input, str) else None
        if isinstance(tool_input, dict):
            text = next(
                (tool_input[key] for key in PATCH_KEYS if isinstance(tool_input.get(key), str)),
                None,
            )
        if not text:
            return []

        sections: list[dict[str, Any]] = []
        current: dict[str, Any] | None = None
        for line in text.splitlines():
            header = _PATCH_HEADER.match(line)
            if header:
                current = {
                    "path": header.group(2),
                    "operation": _PATCH_OPERATIONS[header.group(1)],
                    "lines": 0,
                    "bytes": 0,
                }
                sections.append(current)
                continue
            if current is None or line.startswith("***"):
                continue
            if line.startswith(("+", "-")) and not line.startswith(("+++", "---")):
                current["lines"] += 1
                if line.startswith("+"):
                    current["bytes"] += len(line[1:].encode("utf-8")) + 1

        return [
            EditedFileInfo(
                path=entry["path"],
                operation=entry["operation"],
                timestamp=chunk.timestamp,
                tool_used=name,
                size_bytes=entry["bytes"] if entry["operation"] == "create" else None,
                lines_changed=entry["lines"] if entry["operation"] != "delete" else None,
            )
            for entry in sections
        ]


__all__ = [
    "BASELINE_SYSTEM_TOKENS",
    "CHARS_PER_TOKEN",
    "CONTEXT_LIMITS",
    "MetadataAggregator",
]
