"""Session status state machine."""

from __future__ import annotations

from ..models import TERMINAL_STATUSES, SessionStatus


class InvalidTransitionError(RuntimeError):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, current: SessionStatus, target: SessionStatus) -> None:
        super().__init__(f"Cannot transition session from {current.value} to {target.value}")
        self.current = current
        self.target = target


_S = SessionStatus

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    _S.PENDING: frozenset({_S.WORKING, _S.FAILED, _S.CANCELLED}),
    _S.WORKING: frozenset(
        {
            _S.WAITING_APPROVAL,
            _S.WAITING_INPUT,
            _S.IDLE,
            _S.COMPLETED,
            _S.FAILED,
            _S.CANCELLED,
        }
    ),
    _S.WAITING_APPROVAL: frozenset({_S.WORKING, _S.CANCELLED}),
    _S.WAITING_INPUT: frozenset({_S.WORKING, _S.CANCELLED}),
    _S.IDLE: frozenset({_S.WORKING, _S.COMPLETED, _S.FAILED, _S.CANCELLED}),
    _S.COMPLETED: frozenset(),
    _S.FAILED: frozenset(),
    _S.CANCELLED: frozenset(),
}

WAITING_STATUSES = frozenset({_S.WAITING_APPROVAL, _S.WAITING_INPUT, _S.IDLE})


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: SessionStatus, target: SessionStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_STATUSES


__all__ = [
    "InvalidTransitionError",
    "TRANSITIONS",
    "WAITING_STATUSES",
    "can_transition",
    "ensure_transition",
    "is_terminal",
]
