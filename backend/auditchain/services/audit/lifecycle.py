"""
Event lifecycle state machine.

    CREATED -> VALIDATED -> PROCESSED -> ARCHIVED
       |           |            |
    REJECTED     FAILED      ANONYMIZED
                   |
             REPROCESSING -> PROCESSED | REJECTED

Terminal: ARCHIVED, REJECTED, EXPIRED, ANONYMIZED. EXPIRED is set only
by the retention sweep and is not part of the transition table.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime

from auditchain.core.errors import InvalidTransition
from auditchain.db.base import utcnow
from auditchain.db.models.audit import AuditEvent, EventStatus

S = EventStatus

ALLOWED_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    S.CREATED: frozenset({S.VALIDATED, S.REJECTED}),
    S.VALIDATED: frozenset({S.PROCESSED, S.FAILED}),
    S.PROCESSED: frozenset({S.ARCHIVED, S.ANONYMIZED}),
    S.FAILED: frozenset({S.REPROCESSING, S.REJECTED}),
    S.REPROCESSING: frozenset({S.PROCESSED, S.REJECTED}),
}

TERMINAL_STATES: frozenset[EventStatus] = frozenset(
    {S.ARCHIVED, S.REJECTED, S.EXPIRED, S.ANONYMIZED}
)

_NATURAL_NEXT: dict[EventStatus, EventStatus] = {
    S.CREATED: S.VALIDATED,
    S.VALIDATED: S.PROCESSED,
    S.PROCESSED: S.ARCHIVED,
    S.FAILED: S.REPROCESSING,
    S.REPROCESSING: S.PROCESSED,
}


def is_terminal(status: EventStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: EventStatus, target: EventStatus) -> bool:
    if is_terminal(current):
        return False
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: EventStatus, target: EventStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


def next_status(current: EventStatus) -> EventStatus:
    """Natural successor on the happy path; terminal states map to themselves."""
    return _NATURAL_NEXT.get(current, current)


def needs_action(status: EventStatus) -> bool:
    return status in (S.CREATED, S.FAILED, S.REPROCESSING)


def path_to(current: EventStatus, target: EventStatus) -> list[EventStatus] | None:
    """
    Shortest sequence of legal transitions from ``current`` to ``target``.

    Returns the intermediate and final states (excluding ``current``), an
    empty list when already there, or None when unreachable.
    """
    if current == target:
        return []
    queue: deque[tuple[EventStatus, list[EventStatus]]] = deque([(current, [])])
    seen = {current}
    while queue:
        state, path = queue.popleft()
        if is_terminal(state):
            continue
        for nxt in sorted(ALLOWED_TRANSITIONS.get(state, frozenset())):
            if nxt in seen:
                continue
            if nxt == target:
                return [*path, nxt]
            seen.add(nxt)
            queue.append((nxt, [*path, nxt]))
    return None


def apply_transition(
    event: AuditEvent, target: EventStatus, now: datetime | None = None
) -> EventStatus:
    """
    Move ``event`` to ``target`` in place and return the previous status.

    ``processed_at`` is stamped the first time the event leaves CREATED.
    """
    previous = event.status
    ensure_transition(previous, target)
    event.status = target
    if event.processed_at is None:
        event.processed_at = now or utcnow()
    return previous
