"""
Hash chain engine.

Every event is SHA-256 hashed over its immutable identity fields. The
event stores that digest as ``self_hash`` and the predecessor's digest
as ``prev_hash``; editing any committed event is then detectable by
recomputing digests and walking the links.

The canonical form is a JSON array, so field boundaries survive string
escaping ("a" + "bc" and "ab" + "c" serialize differently). Before and
after state payloads enter the digest through their own SHA-256 so the
payloads can be scrubbed by anonymization without breaking the chain.

Everything here is pure: no I/O, no logging.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from auditchain.db.base import as_utc


class ChainLink(Protocol):
    """Structural view of an event as the hash chain sees it."""

    id: str
    event_type: Any
    actor_id: str
    target_type: str | None
    target_id: str | None
    action: str
    before_state: dict[str, Any] | None
    after_state: dict[str, Any] | None
    before_state_digest: str | None
    after_state_digest: str | None
    anonymized: bool
    occurred_at: datetime
    self_hash: str
    prev_hash: str


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    checked: int
    broken_at_index: int | None = None
    broken_event_id: str | None = None
    reason: str | None = None


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def state_digest(state: dict[str, Any] | None) -> str | None:
    """SHA-256 of a state payload, or None when there is no payload."""
    if state is None:
        return None
    return hashlib.sha256(canonical_json(state).encode()).hexdigest()


def _canonical_timestamp(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value))


def _payload_digest(anonymized: bool, payload: dict[str, Any] | None, stored: str | None) -> str | None:
    # A scrubbed payload is gone; the digest captured at commit stands in for it
    if anonymized and payload is None:
        return stored
    return state_digest(payload)


def _state_digests(event: ChainLink) -> tuple[str | None, str | None]:
    return (
        _payload_digest(event.anonymized, event.before_state, event.before_state_digest),
        _payload_digest(event.anonymized, event.after_state, event.after_state_digest),
    )


def compute_digest(event: ChainLink) -> str:
    """Deterministic SHA-256 over the event's immutable identity fields."""
    before, after = _state_digests(event)
    fields = [
        event.id,
        _enum_value(event.event_type),
        event.actor_id,
        event.target_type,
        event.target_id,
        event.action,
        before,
        after,
        _canonical_timestamp(event.occurred_at),
    ]
    return hashlib.sha256(canonical_json(fields).encode()).hexdigest()


def _link_failure(expected_prev_hash: str, event: ChainLink) -> str | None:
    if event.prev_hash != expected_prev_hash:
        return "prev_hash does not match predecessor self_hash"
    if event.self_hash != compute_digest(event):
        return "self_hash does not match recomputed digest"
    return None


def verify_link(previous: ChainLink | None, current: ChainLink) -> bool:
    """
    True iff ``current`` links to ``previous`` and its own digest holds.

    A ``previous`` of None means ``current`` claims to start the chain.
    """
    expected = previous.self_hash if previous is not None else ""
    return _link_failure(expected, current) is None


def verify_chain(
    ordered_events: Sequence[ChainLink],
    anchor_hash: str = "",
) -> ChainVerification:
    """
    Walk chronologically ordered events and report the first broken link.

    ``anchor_hash`` is the self_hash the first event must point at: empty
    for a chain that starts at its genesis event, the predecessor's
    digest when verifying a slice.
    """
    expected_prev = anchor_hash
    for index, event in enumerate(ordered_events):
        reason = _link_failure(expected_prev, event)
        if reason is not None:
            return ChainVerification(
                valid=False,
                checked=index + 1,
                broken_at_index=index,
                broken_event_id=event.id,
                reason=reason,
            )
        expected_prev = event.self_hash

    return ChainVerification(valid=True, checked=len(ordered_events))
