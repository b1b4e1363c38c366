"""Utility helpers for agent engine processes."""

from __future__ import annotations

import json
import os
import re
from typing import Any, Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

_YES_NO = re.compile(r"\(?\b[yY]/[nN]\b\)?|\[[yY]/[nN]\]")
_APPROVAL_WORDS = ("approval", "approve", "permission", "allow", "confirm")
_INPUT_WORDS = ("enter ", "type your", "your response", "input:")
_ERROR_WORDS = ("error:", "fatal:", "exception:")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def coerce_string(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return None


def parse_maybe_json(value: Any) -> Any:
    """Decode ``value`` when it is a string holding a JSON object or array."""

    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    ):
        try:
            return json.loads(trimmed)
        except ValueError:
            return value
    return value


def content_blocks(content: Any) -> tuple[list[str], list[str]]:
    """Split a content value into ``(text, thinking)`` string lists."""

    text: list[str] = []
    thinking: list[str] = []

    def handle(block: Mapping[str, Any]) -> None:
        block_type = (coerce_string(block.get("type")) or "").lower()
        value = coerce_string(
            block.get("text")
            or block.get("thinking")
            or block.get("content")
            or block.get("message")
            or block.get("value")
        )
        if not value:
            return
        if "thinking" in block_type or "reasoning" in block_type:
            thinking.append(value)
        else:
            text.append(value)

    if isinstance(content, str):
        text.append(content)
    elif isinstance(content, list):
        for block in content:
            if isinstance(block, Mapping):
                handle(block)
    elif isinstance(content, Mapping):
        handle(content)
    return text, thinking


def interactive_prompt_kind(line: str) -> str | None:
    """Classify a raw output line as an approval or input prompt.

    Returns ``"approval"`` for yes/no confirmations, ``"input"`` for free-form
    questions and None otherwise.
    """

    lower = line.lower()
    if _YES_NO.search(line):
        return "approval"
    if any(word in lower for word in _INPUT_WORDS):
        return "input"
    if lower.rstrip().endswith("?") and any(word in lower for word in _APPROVAL_WORDS):
        return "approval"
    return None


def looks_like_error(line: str) -> bool:
    lower = line.lower()
    return any(word in lower for word in _ERROR_WORDS)


__all__ = [
    "coerce_string",
    "content_blocks",
    "interactive_prompt_kind",
    "looks_like_error",
    "parse_maybe_json",
    "sanitize_environment",
]
