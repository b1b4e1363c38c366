"""Agent engine CLI adapters and process launching."""

from .adapters import (
    ADAPTERS,
    ClaudeAdapter,
    CodexAdapter,
    EngineAdapter,
    Frame,
    Invocation,
    OpencodeAdapter,
    Signal,
    StreamCorruption,
    adapter_for,
)
from .runner import (
    ExecutableNotFoundError,
    LaunchedProcess,
    ProcessLauncher,
    ProcessSpawnError,
    SpawnTimeoutError,
    resolve_executable,
)

__all__ = [
    "ADAPTERS",
    "ClaudeAdapter",
    "CodexAdapter",
    "EngineAdapter",
    "ExecutableNotFoundError",
    "Frame",
    "Invocation",
    "LaunchedProcess",
    "OpencodeAdapter",
    "ProcessLauncher",
    "ProcessSpawnError",
    "Signal",
    "SpawnTimeoutError",
    "StreamCorruption",
    "adapter_for",
    "resolve_executable",
]
