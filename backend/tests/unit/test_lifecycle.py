"""Unit tests for the event lifecycle state machine."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest

from auditchain.core.errors import ErrorCode, InvalidTransition
from auditchain.db.models.audit import AuditEvent, EventStatus
from auditchain.services.audit.lifecycle import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    apply_transition,
    can_transition,
    ensure_transition,
    is_terminal,
    needs_action,
    next_status,
    path_to,
)

S = EventStatus


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (S.CREATED, S.VALIDATED),
        (S.CREATED, S.REJECTED),
        (S.VALIDATED, S.PROCESSED),
        (S.VALIDATED, S.FAILED),
        (S.PROCESSED, S.ARCHIVED),
        (S.PROCESSED, S.ANONYMIZED),
        (S.FAILED, S.REPROCESSING),
        (S.FAILED, S.REJECTED),
        (S.REPROCESSING, S.PROCESSED),
        (S.REPROCESSING, S.REJECTED),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (S.CREATED, S.PROCESSED),
        (S.VALIDATED, S.ARCHIVED),
        (S.PROCESSED, S.FAILED),
        (S.FAILED, S.PROCESSED),
        (S.CREATED, S.EXPIRED),
        (S.PROCESSED, S.EXPIRED),
    ],
)
def test_disallowed_transitions(current, target):
    assert not can_transition(current, target)


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES))
def test_terminal_states_reject_everything(terminal):
    assert is_terminal(terminal)
    for target in EventStatus:
        assert not can_transition(terminal, target)


def test_table_never_leaves_a_terminal_state():
    assert not set(ALLOWED_TRANSITIONS) & TERMINAL_STATES


def test_ensure_transition_names_the_pair():
    with pytest.raises(InvalidTransition) as exc_info:
        ensure_transition(S.ARCHIVED, S.PROCESSED)
    err = exc_info.value
    assert err.code == ErrorCode.EVENT_INVALID_TRANSITION
    assert err.detail == {"from": "ARCHIVED", "to": "PROCESSED"}
    assert err.http_status == 409


def test_next_status_follows_happy_path():
    assert next_status(S.CREATED) == S.VALIDATED
    assert next_status(S.VALIDATED) == S.PROCESSED
    assert next_status(S.PROCESSED) == S.ARCHIVED
    assert next_status(S.FAILED) == S.REPROCESSING
    assert next_status(S.EXPIRED) == S.EXPIRED


def test_needs_action():
    assert needs_action(S.CREATED)
    assert needs_action(S.FAILED)
    assert needs_action(S.REPROCESSING)
    assert not needs_action(S.PROCESSED)


def test_path_to_anonymized():
    assert path_to(S.PROCESSED, S.ANONYMIZED) == [S.ANONYMIZED]
    assert path_to(S.VALIDATED, S.ANONYMIZED) == [S.PROCESSED, S.ANONYMIZED]
    assert path_to(S.FAILED, S.ANONYMIZED) == [S.REPROCESSING, S.PROCESSED, S.ANONYMIZED]
    assert path_to(S.ANONYMIZED, S.ANONYMIZED) == []
    assert path_to(S.ARCHIVED, S.ANONYMIZED) is None
    assert path_to(S.EXPIRED, S.ANONYMIZED) is None


def _event(status: EventStatus) -> AuditEvent:
    return AuditEvent(id="e1", status=status, processed_at=None)


def test_apply_transition_stamps_processed_at_once():
    event = _event(S.CREATED)
    t1 = datetime(2026, 1, 1, tzinfo=UTC)
    previous = apply_transition(event, S.VALIDATED, now=t1)
    assert previous == S.CREATED
    assert event.status == S.VALIDATED
    assert event.processed_at == t1

    apply_transition(event, S.PROCESSED, now=datetime(2026, 1, 2, tzinfo=UTC))
    assert event.processed_at == t1


def test_apply_transition_leaves_event_untouched_on_rejection():
    event = _event(S.ARCHIVED)
    with pytest.raises(InvalidTransition):
        apply_transition(event, S.PROCESSED)
    assert event.status == S.ARCHIVED
    assert event.processed_at is None
