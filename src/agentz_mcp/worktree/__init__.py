"""Git worktree isolation for agent sessions."""

from .git import GitNotFoundError, GitResult, GitRunner
from .manager import WorktreeError, WorktreeInfo, WorktreeManager, branch_slug

__all__ = [
    "GitNotFoundError",
    "GitResult",
    "GitRunner",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "branch_slug",
]
