"""Per-session git worktree allocation."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..storage import ChromaStore, WorktreeRecord
from .git import GitNotFoundError, GitResult, GitRunner

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "index.lock",
    "could not lock",
    "cannot lock ref",
    "unable to create",
    "file exists",
)
_INVALID_BRANCH_CHARS = re.compile(r"[^A-Za-z0-9._/-]+")
MAX_SUFFIX = 100


class WorktreeError(RuntimeError):
    """Raised when a worktree cannot be created or located."""


@dataclass(slots=True)
class WorktreeInfo:
    session_id: str
    path: Path
    branch: str
    repo_root: Path


def branch_slug(session_id: str) -> str:
    slug = _INVALID_BRANCH_CHARS.sub("-", session_id).strip("-./")
    slug = slug.replace("..", "-")
    if slug.endswith(".lock"):
        slug = slug[: -len(".lock")]
    return slug or "session"


def is_transient(result: GitResult) -> bool:
    message = result.stderr.lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class WorktreeManager:
    """Create, reuse and release one isolated worktree per session.

    Creation is serialized per repository toplevel; worktrees in different
    repositories are created independently.
    """

    def __init__(
        self,
        *,
        git: GitRunner | None = None,
        store: ChromaStore | None = None,
        worktree_dir: str = ".agentz/worktrees",
        branch_prefix: str = "agentz/session-",
        retry_backoff: float = 0.5,
    ) -> None:
        self._git = git
        self._store = store
        self._worktree_dir = worktree_dir
        self._branch_prefix = branch_prefix
        self._retry_backoff = retry_backoff
        self._registered: dict[str, WorktreeInfo] = {}
        self._repo_locks: dict[Path, asyncio.Lock] = {}

    def _runner(self) -> GitRunner:
        if self._git is None:
            try:
                self._git = GitRunner()
            except GitNotFoundError as exc:
                raise WorktreeError(str(exc)) from exc
        return self._git

    def _lock_for(self, repo_root: Path) -> asyncio.Lock:
        lock = self._repo_locks.get(repo_root)
        if lock is None:
            lock = self._repo_locks[repo_root] = asyncio.Lock()
        return lock

    def get(self, session_id: str) -> WorktreeInfo | None:
        return self._registered.get(session_id)

    def active(self) -> list[WorktreeInfo]:
        return list(self._registered.values())

    async def ensure(self, session_id: str, repo_root: Path | str) -> WorktreeInfo:
        """Return the session's worktree, creating it on first use."""

        existing = self._registered.get(session_id)
        if existing is not None and existing.path.is_dir():
            return existing

        git = self._runner()
        toplevel = await git.toplevel(Path(repo_root).expanduser())
        if toplevel is None:
            raise WorktreeError(f"{repo_root} is not inside a git repository")

        async with self._lock_for(toplevel):
            existing = self._registered.get(session_id)
            if existing is not None and existing.path.is_dir():
                return existing
            info = await self._create(git, session_id, toplevel)
            self._registered[session_id] = info

        self._record(info, "active")
        logger.info(
            "Created worktree",
            extra={"session_id": session_id, "path": str(info.path), "branch": info.branch},
        )
        return info

    async def _create(self, git: GitRunner, session_id: str, toplevel: Path) -> WorktreeInfo:
        base_dir = toplevel / self._worktree_dir
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorktreeError(f"Cannot create worktree directory {base_dir}: {exc}") from exc

        slug = branch_slug(session_id)
        branch, path = await self._free_name(git, toplevel, base_dir, slug)

        attempts = 0
        while True:
            attempts += 1
            result = await git.run("worktree", "add", "-b", branch, str(path), "HEAD", cwd=toplevel)
            if result.ok:
                return WorktreeInfo(session_id=session_id, path=path, branch=branch, repo_root=toplevel)
            if attempts == 1 and is_transient(result):
                logger.warning(
                    "Transient git failure creating worktree; retrying",
                    extra={"session_id": session_id, "stderr": result.stderr.strip()},
                )
                await asyncio.sleep(self._retry_backoff)
                branch, path = await self._free_name(git, toplevel, base_dir, slug)
                continue
            raise WorktreeError(
                f"git worktree add failed for session {session_id}: {result.stderr.strip() or result.returncode}"
            )

    async def _free_name(
        self,
        git: GitRunner,
        toplevel: Path,
        base_dir: Path,
        slug: str,
    ) -> tuple[str, Path]:
        taken_paths = {info.path for info in self._registered.values()}
        for index in range(1, MAX_SUFFIX + 1):
            suffix = "" if index == 1 else f"-{index}"
            branch = f"{self._branch_prefix}{slug}{suffix}"
            path = base_dir / f"{slug.replace('/', '-')}{suffix}"
            if path in taken_paths or path.exists():
                continue
            if await git.branch_exists(toplevel, branch):
                continue
            return branch, path
        raise WorktreeError(f"No free worktree name for {slug} after {MAX_SUFFIX} attempts")

    async def release(self, session_id: str, *, delete: bool = True) -> bool:
        """Unregister a session's worktree, optionally removing it from disk.

        Returns False when nothing was registered. Safe to call repeatedly.
        """

        info = self._registered.pop(session_id, None)
        if info is None:
            return False

        if delete:
            git = self._runner()
            async with self._lock_for(info.repo_root):
                result = await git.run("worktree", "remove", "--force", str(info.path), cwd=info.repo_root)
                if not result.ok and info.path.exists():
                    logger.warning(
                        "git worktree remove failed; deleting directory",
                        extra={"session_id": session_id, "stderr": result.stderr.strip()},
                    )
                    shutil.rmtree(info.path, ignore_errors=True)
                    await git.run("worktree", "prune", cwd=info.repo_root)
                branch_result = await git.run("branch", "-D", info.branch, cwd=info.repo_root)
                if not branch_result.ok:
                    logger.warning(
                        "Failed to delete worktree branch",
                        extra={"session_id": session_id, "branch": info.branch},
                    )

        self._record(info, "removed" if delete else "retained")
        logger.info(
            "Released worktree",
            extra={"session_id": session_id, "path": str(info.path), "deleted": delete},
        )
        return True

    def restore(self, records: Iterable[WorktreeRecord]) -> list[WorktreeInfo]:
        """Re-register worktrees whose latest record is active and still on disk."""

        latest: dict[str, WorktreeRecord] = {}
        for record in records:
            latest[record.session_id] = record
        restored: list[WorktreeInfo] = []
        for record in latest.values():
            if record.status != "active" or not record.branch:
                continue
            path = Path(record.path)
            if not path.is_dir():
                continue
            info = WorktreeInfo(
                session_id=record.session_id,
                path=path,
                branch=record.branch,
                repo_root=Path(record.repo_root),
            )
            self._registered[record.session_id] = info
            restored.append(info)
        return restored

    def _record(self, info: WorktreeInfo, status: str) -> None:
        if self._store is None:
            return
        self._store.record_worktree(
            session_id=info.session_id,
            path=str(info.path),
            branch=info.branch,
            repo_root=str(info.repo_root),
            status=status,
        )


__all__ = ["WorktreeError", "WorktreeInfo", "WorktreeManager", "branch_slug"]
