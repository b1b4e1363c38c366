from __future__ import annotations

import asyncio
import stat
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

from agentz_mcp.config import AgentzSettings
from agentz_mcp.storage import ChromaStore


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any] | None) -> bool:
    if not where:
        return True
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = [record for record in self.records if _matches(record.metadata, where)]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


@pytest.fixture
def stub_client() -> StubClient:
    return StubClient()


@pytest.fixture
def chroma_store(tmp_path: Path, stub_client: StubClient) -> ChromaStore:
    return ChromaStore(tmp_path / "chroma", client_factory=lambda: stub_client)


@pytest.fixture
def settings(tmp_path: Path) -> AgentzSettings:
    settings = AgentzSettings()
    settings.chroma_persist_path = tmp_path / "chroma"
    settings.default_working_dir = tmp_path
    settings.default_agent_type = "claude"
    settings.claude_path = None
    settings.codex_path = None
    settings.opencode_path = None
    settings.max_concurrent_sessions = 3
    settings.startup_output_timeout_seconds = 10.0
    settings.max_runtime_seconds = 30.0
    settings.cancel_grace_seconds = 1.0
    settings.worktree_isolation = True
    settings.retain_worktrees = False
    settings.tool_taxonomy_path = None
    return settings


@pytest.fixture
def write_engine(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable ``#!/bin/sh`` script standing in for an engine CLI."""

    def _write(name: str, body: str) -> Path:
        script = tmp_path / "bin" / name
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IEXEC)
        return script

    return _write


async def wait_for_status(store, session_id: str, statuses, timeout: float = 10.0):
    """Poll ``store`` until the session reaches one of ``statuses``."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    wanted = {statuses} if isinstance(statuses, str) else set(statuses)
    while True:
        session = store.get(session_id)
        if session.status.value in wanted:
            return session
        if loop.time() > deadline:
            raise AssertionError(f"session {session_id} stuck in {session.status.value}")
        await asyncio.sleep(0.02)
