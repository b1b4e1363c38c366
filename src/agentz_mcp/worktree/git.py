"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path

from ..agents.utils import sanitize_environment


class GitNotFoundError(RuntimeError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitRunner:
    """Execute git commands asynchronously."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(self, *args: str, cwd: Path) -> GitResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment({"GIT_TERMINAL_PROMPT": "0"}),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        return GitResult(
            args=tuple(cmd),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def toplevel(self, path: Path) -> Path | None:
        """Return the repository toplevel containing ``path``, or None."""

        if not path.is_dir():
            return None
        result = await self.run("rev-parse", "--show-toplevel", cwd=path)
        if not result.ok or not result.stdout.strip():
            return None
        return Path(result.stdout.strip()).resolve()

    async def branch_exists(self, repo_root: Path, branch: str) -> bool:
        result = await self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=repo_root)
        return result.ok


__all__ = ["GitNotFoundError", "GitResult", "GitRunner"]
