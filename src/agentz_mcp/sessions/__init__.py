"""Session state, status transitions and optimistic message reconciliation."""

from .pending import PendingMessage, extract_delivered_ids, filter_pending, merge_for_display
from .status import InvalidTransitionError, TRANSITIONS, can_transition
from .store import (
    SessionFilter,
    SessionNotFoundError,
    SessionStore,
    SessionTerminalError,
    conversation_from_chunks,
)

__all__ = [
    "InvalidTransitionError",
    "PendingMessage",
    "SessionFilter",
    "SessionNotFoundError",
    "SessionStore",
    "SessionTerminalError",
    "TRANSITIONS",
    "can_transition",
    "conversation_from_chunks",
    "extract_delivered_ids",
    "filter_pending",
    "merge_for_display",
]
