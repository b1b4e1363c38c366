"""Explicit orchestrator object wiring the session core together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from .config import AgentzSettings, get_settings
from .metadata import MetadataAggregator, TaxonomyLoader
from .models import EditedFileInfo, OutputChunk, Session, SpawnRequest
from .sessions import PendingMessage, SessionFilter, SessionStore, merge_for_display
from .storage import ChromaStore, ChromaUnavailableError, OutputStream, RegistryEvent, SessionRegistry
from .supervisor import AgentProcessSupervisor
from .worktree import WorktreeError, WorktreeManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Orchestrator:
    """Single entry point for spawning, observing and cancelling agent sessions."""

    settings: AgentzSettings
    store: SessionStore
    output: OutputStream
    registry: SessionRegistry
    supervisor: AgentProcessSupervisor
    worktrees: WorktreeManager | None = None
    chroma: ChromaStore | None = None

    async def start(self) -> list[Session]:
        """Rebuild state from the durable logs and re-register live worktrees."""

        sessions = self.store.rebuild()
        if self.worktrees is not None and self.chroma is not None:
            restored = self.worktrees.restore(self.chroma.list_worktrees())
            finished = {session.id: session for session in sessions if session.is_terminal}
            for info in restored:
                session = finished.get(info.session_id)
                if session is None or session.retain_worktree or self.settings.retain_worktrees:
                    continue
                try:
                    await self.worktrees.release(info.session_id)
                except WorktreeError as exc:
                    logger.warning(
                        "Failed to release stale worktree",
                        extra={"session_id": info.session_id, "error": str(exc)},
                    )
        return sessions

    async def spawn(self, request: SpawnRequest) -> Session:
        return await self.supervisor.spawn(request)

    def get_session(self, session_id: str) -> Session:
        return self.store.get(session_id)

    def list_sessions(self, session_filter: SessionFilter | None = None) -> list[Session]:
        return self.store.list(session_filter)

    async def cancel(self, session_id: str) -> Session:
        return await self.supervisor.cancel(session_id)

    def tail_output(self, session_id: str, from_offset: int = 0) -> list[OutputChunk]:
        self.store.get(session_id)
        return self.output.tail(session_id, from_offset)

    async def wait_output(
        self, session_id: str, from_offset: int = 0, timeout: float | None = None
    ) -> list[OutputChunk]:
        """Long-poll variant of :meth:`tail_output`."""

        self.store.get(session_id)
        return await self.output.wait(session_id, from_offset, timeout)

    def get_changed_files(self, session_id: str) -> list[EditedFileInfo]:
        return self.store.get_changed_files(session_id)

    def replay_registry(self) -> list[RegistryEvent]:
        return self.registry.replay()

    def merge_pending(self, session_id: str, pending: Sequence[PendingMessage]) -> list[OutputChunk]:
        """Return the session's chunks with undelivered optimistic messages appended."""

        return merge_for_display(self.tail_output(session_id), pending)

    async def wait(self, session_id: str, timeout: float | None = None) -> Session:
        return await self.supervisor.wait(session_id, timeout)

    async def shutdown(self) -> None:
        await self.supervisor.shutdown()


def create_orchestrator(
    settings: AgentzSettings | None = None,
    *,
    chroma: ChromaStore | None = None,
) -> Orchestrator:
    """Build an orchestrator backed by Chroma, or by memory when Chroma is unavailable."""

    settings = settings or get_settings()

    if chroma is None:
        try:
            chroma = ChromaStore(settings.chroma_persist_path)
            chroma.ping()
        except ChromaUnavailableError as exc:
            logger.warning(
                "Chroma unavailable; session history will not survive restarts",
                extra={"path": str(settings.chroma_persist_path), "error": str(exc)},
            )
            chroma = None

    taxonomy = TaxonomyLoader(settings.tool_taxonomy_path).load()
    output = OutputStream(chroma)
    registry = SessionRegistry(chroma)
    store = SessionStore(registry, output, MetadataAggregator(taxonomy))
    worktrees = WorktreeManager(
        store=chroma,
        worktree_dir=settings.worktree_dir,
        branch_prefix=settings.worktree_branch_prefix,
    )
    supervisor = AgentProcessSupervisor(store, output, settings, worktrees=worktrees)
    return Orchestrator(
        settings=settings,
        store=store,
        output=output,
        registry=registry,
        supervisor=supervisor,
        worktrees=worktrees,
        chroma=chroma,
    )


__all__ = ["Orchestrator", "create_orchestrator"]
