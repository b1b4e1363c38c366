"""Storage abstractions for Agentz MCP."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import (
    RegistryEvent,
    SessionCancelled,
    SessionCompleted,
    SessionCreated,
    SessionFailed,
    SessionUpdated,
    WorktreeRecord,
)
from .output import OutputStream, output_stream_name
from .registry import REGISTRY_STREAM, SessionRegistry

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "OutputStream",
    "REGISTRY_STREAM",
    "RegistryEvent",
    "SessionCancelled",
    "SessionCompleted",
    "SessionCreated",
    "SessionFailed",
    "SessionRegistry",
    "SessionUpdated",
    "WorktreeRecord",
    "output_stream_name",
]
