"""Locate engine executables and launch supervised agent processes."""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from .utils import sanitize_environment

# Line buffer ceiling for engine stdout/stderr; longer lines are reported as corruption.
STREAM_LIMIT = 8 * 1024 * 1024

_COMMON_LOCATIONS = (
    "~/.local/bin",
    "~/.npm-global/bin",
    "~/.bun/bin",
    "~/.opencode/bin",
    "~/.claude/local",
    "/opt/homebrew/bin",
    "/usr/local/bin",
)


class ProcessSpawnError(RuntimeError):
    """Raised when an agent process cannot be started or dies before producing output."""


class ExecutableNotFoundError(ProcessSpawnError):
    """Raised when an engine CLI executable cannot be located."""


class SpawnTimeoutError(ProcessSpawnError):
    """Raised when launching the process exceeds the start timeout."""


@dataclass(slots=True)
class LaunchedProcess:
    """A running engine process and how it was started."""

    process: asyncio.subprocess.Process
    args: tuple[str, ...]
    cwd: Path

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    @property
    def stdin_writable(self) -> bool:
        stdin = self.process.stdin
        return self.running and stdin is not None and not stdin.is_closing()

    def send_signal(self, signum: int) -> bool:
        """Signal the whole process group; returns False when it is already gone."""

        if not self.running:
            return False
        try:
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            return False
        except PermissionError:
            try:
                self.process.send_signal(signum)
            except ProcessLookupError:
                return False
        return True

    def terminate(self) -> bool:
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        return self.send_signal(signal.SIGKILL)


def resolve_executable(name: str, explicit: str | Path | None = None) -> Path:
    """Find an engine CLI: explicit setting, then PATH, then common install dirs."""

    if explicit:
        candidate = Path(explicit).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
        raise ExecutableNotFoundError(f"{name} executable not found at {candidate}")

    binary = shutil.which(name)
    if binary is not None:
        return Path(binary)

    for location in _COMMON_LOCATIONS:
        candidate = Path(location).expanduser() / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate

    raise ExecutableNotFoundError(f"{name} CLI executable not found on PATH")


class ProcessLauncher:
    """Start engine processes in their own process group with a bounded start time."""

    def __init__(self, *, spawn_timeout: float = 10.0, stream_limit: int = STREAM_LIMIT) -> None:
        self._spawn_timeout = spawn_timeout
        self._stream_limit = stream_limit

    async def launch(
        self,
        executable: Path,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> LaunchedProcess:
        cmd = [str(executable), *args]
        if not cwd.is_dir():
            raise ProcessSpawnError(f"Working directory does not exist: {cwd}")
        try:
            process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *cmd,
                    cwd=str(cwd),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=sanitize_environment(env),
                    start_new_session=True,
                    limit=self._stream_limit,
                ),
                timeout=self._spawn_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise SpawnTimeoutError(
                f"Starting {executable.name} timed out after {self._spawn_timeout}s"
            ) from exc
        except FileNotFoundError as exc:
            raise ExecutableNotFoundError(f"{executable} could not be executed: {exc}") from exc
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start {executable.name}: {exc}") from exc

        return LaunchedProcess(process=process, args=tuple(cmd), cwd=cwd)


__all__ = [
    "ExecutableNotFoundError",
    "LaunchedProcess",
    "ProcessLauncher",
    "ProcessSpawnError",
    "STREAM_LIMIT",
    "SpawnTimeoutError",
    "resolve_executable",
]
