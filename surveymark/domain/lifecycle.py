"""
Response session state machine.

Guards (``may_<event>``) answer False for an invalid source state so callers
can check before acting; ``apply`` raises ``InvalidStateError`` for callers
that skip the guard.
"""

from __future__ import annotations

from enum import StrEnum

from ..infrastructure.exceptions import InvalidStateError
from .models import SessionState


class Event(StrEnum):
    START = "start"
    BEGIN_ANSWERING = "begin_answering"
    COMPLETE = "complete"
    SUBMIT = "submit"
    SEND_FOR_REVIEW = "send_for_review"
    MARK = "mark"
    PUBLISH = "publish"
    CANCEL = "cancel"
    EXPIRE = "expire"
    REOPEN = "reopen"
    RESET = "reset"


S = SessionState

TERMINAL_STATES = frozenset({S.MARKED, S.PUBLISHED, S.CANCELLED, S.EXPIRED})
MUTABLE_STATES = frozenset({S.DRAFT, S.STARTED, S.IN_PROGRESS, S.COMPLETED})
MARKABLE_STATES = frozenset({S.SUBMITTED, S.UNDER_REVIEW})

# event -> (allowed source states, target state); None means any state
TRANSITIONS: dict[Event, tuple[frozenset[SessionState] | None, SessionState]] = {
    Event.START: (frozenset({S.DRAFT}), S.STARTED),
    Event.BEGIN_ANSWERING: (frozenset({S.DRAFT, S.STARTED}), S.IN_PROGRESS),
    Event.COMPLETE: (frozenset({S.IN_PROGRESS}), S.COMPLETED),
    Event.SUBMIT: (frozenset({S.IN_PROGRESS, S.COMPLETED}), S.SUBMITTED),
    Event.SEND_FOR_REVIEW: (frozenset({S.SUBMITTED}), S.UNDER_REVIEW),
    Event.MARK: (MARKABLE_STATES, S.MARKED),
    Event.PUBLISH: (frozenset({S.MARKED}), S.PUBLISHED),
    Event.CANCEL: (frozenset(S) - TERMINAL_STATES, S.CANCELLED),
    Event.EXPIRE: (frozenset({S.DRAFT, S.STARTED, S.IN_PROGRESS}), S.EXPIRED),
    Event.REOPEN: (frozenset({S.COMPLETED, S.SUBMITTED}), S.IN_PROGRESS),
    Event.RESET: (None, S.DRAFT),
}

# events that additionally need every visible required question answered
NEEDS_COMPLETION = frozenset({Event.COMPLETE, Event.SUBMIT})


def may(event: Event | str, state: SessionState | str, can_complete: bool = True) -> bool:
    try:
        sources, _ = TRANSITIONS[Event(event)]
        current = SessionState(state)
    except ValueError:
        return False
    if sources is not None and current not in sources:
        return False
    if Event(event) in NEEDS_COMPLETION and not can_complete:
        return False
    return True


def apply(
    event: Event | str,
    state: SessionState | str,
    can_complete: bool = True,
    session_id: int | None = None,
) -> SessionState:
    """Return the target state, or raise ``InvalidStateError``."""
    if not may(event, state, can_complete):
        raise InvalidStateError(str(event), str(state), session_id)
    return TRANSITIONS[Event(event)][1]


def can_be_marked(state: SessionState | str) -> bool:
    return state in MARKABLE_STATES


def accepts_responses(state: SessionState | str) -> bool:
    return state in MUTABLE_STATES


def may_start(state: SessionState | str) -> bool:
    return may(Event.START, state)


def may_begin_answering(state: SessionState | str) -> bool:
    return may(Event.BEGIN_ANSWERING, state)


def may_complete(state: SessionState | str, can_complete: bool) -> bool:
    return may(Event.COMPLETE, state, can_complete)


def may_submit(state: SessionState | str, can_complete: bool = True) -> bool:
    return may(Event.SUBMIT, state, can_complete)


def may_send_for_review(state: SessionState | str) -> bool:
    return may(Event.SEND_FOR_REVIEW, state)


def may_mark(state: SessionState | str) -> bool:
    return may(Event.MARK, state)


def may_publish(state: SessionState | str) -> bool:
    return may(Event.PUBLISH, state)


def may_cancel(state: SessionState | str) -> bool:
    return may(Event.CANCEL, state)


def may_expire(state: SessionState | str) -> bool:
    return may(Event.EXPIRE, state)


def may_reopen(state: SessionState | str) -> bool:
    return may(Event.REOPEN, state)


def may_reset(state: SessionState | str) -> bool:
    return may(Event.RESET, state)
