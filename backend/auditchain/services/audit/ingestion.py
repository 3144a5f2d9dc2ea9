"""
Event ingestion pipeline.

validate → classify → [read tail → hash → persist] → post-commit fan-out

The bracketed steps are the chain's critical section. Within a process
an asyncio lock serialises them; across processes the unique sequence
column rejects the second writer on the same tail, and the append is
retried against the new tail up to ``chain_append_max_retries`` times.

Everything after the commit (cache, live subscribers, stream emission,
VALIDATED → PROCESSED) runs in a background task and can only degrade,
never fail the submit.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError as SchemaError

from auditchain.config.settings import Settings
from auditchain.core.errors import (
    AppError,
    ChainContentionError,
    InvalidTransition,
    ValidationError,
)
from auditchain.core.metrics import (
    CHAIN_CONTENTION,
    DOWNSTREAM_DEGRADED,
    EVENTS_COMMITTED,
    SUBMIT_DURATION,
)
from auditchain.db.base import utcnow
from auditchain.db.models.audit import AuditEvent, EventStatus, EventType, Severity
from auditchain.schemas.audit import AuditEventOut, EventDraft
from auditchain.services.audit.hash_chain import canonical_json, compute_digest, state_digest
from auditchain.services.audit.lifecycle import apply_transition
from auditchain.services.audit.store import AppendConflict, AuditEventStore
from auditchain.services.cache.accelerator import CacheAccelerator
from auditchain.services.retention.policy import policy_for, retention_deadline
from auditchain.services.streaming.emitter import EmitOutcome, StreamingEmitter
from auditchain.services.streaming.subscriptions import SubscriptionRegistry

_log = structlog.get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"

_REQUIRED = ("event_type", "actor_id", "action")


def validate_draft(draft: EventDraft | Mapping[str, Any]) -> EventDraft:
    """Parse and check a draft; raises ValidationError before anything is hashed."""
    if isinstance(draft, EventDraft):
        parsed = draft
    else:
        try:
            parsed = EventDraft.model_validate(dict(draft))
        except SchemaError as exc:
            errors = [
                {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
                for err in exc.errors()
            ]
            raise ValidationError("Malformed event draft", detail={"errors": errors}) from exc

    missing = [
        name
        for name in _REQUIRED
        if getattr(parsed, name) is None
        or (isinstance(getattr(parsed, name), str) and not getattr(parsed, name).strip())
    ]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", detail={"missing": missing}
        )
    return parsed


def _normalise(state: dict[str, Any] | None) -> dict[str, Any] | None:
    # Stored payload must hash the same after a JSON round trip through the store
    if state is None:
        return None
    return json.loads(canonical_json(state))


class AuditLogger:
    """
    Append-only writer for the audit chain.

    Usage:
        committed = await audit_logger.submit({
            "event_type": "auth.login.success",
            "actor_id": "u1",
            "action": "Signed in",
        })
    """

    def __init__(
        self,
        store: AuditEventStore,
        cache: CacheAccelerator,
        emitter: StreamingEmitter,
        subscriptions: SubscriptionRegistry,
        settings: Settings,
    ) -> None:
        self._store = store
        self._cache = cache
        self._emitter = emitter
        self._subscriptions = subscriptions
        self._settings = settings
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    async def submit(self, draft: EventDraft | Mapping[str, Any]) -> AuditEventOut:
        """
        Validate, chain and durably commit one event.

        Either returns the committed, hash-linked event or raises
        ValidationError, ChainContentionError or PersistenceFailure with
        nothing committed.
        """
        parsed = validate_draft(draft)
        with SUBMIT_DURATION.time():
            event = await self._append(parsed)

        committed = AuditEventOut.model_validate(event)
        EVENTS_COMMITTED.labels(event_type=committed.event_type.value).inc()
        _log.info(
            "audit_event_committed",
            event_id=committed.id,
            sequence=committed.sequence,
            event_type=committed.event_type.value,
            actor_id=committed.actor_id,
            self_hash=committed.self_hash,
        )
        self._dispatch(committed)
        return committed

    async def log(
        self,
        event_type: EventType,
        action: str,
        actor_id: str = SYSTEM_ACTOR,
        actor_name: str | None = "System",
        severity: Severity = Severity.INFO,
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> AuditEventOut:
        """Shorthand for system-authored events."""
        return await self.submit(
            EventDraft(
                event_type=event_type,
                actor_id=actor_id,
                actor_name=actor_name,
                action=action,
                severity=severity,
                metadata=metadata,
                **fields,
            )
        )

    # ── Critical section ─────────────────────────────────────────────── #

    async def _append(self, draft: EventDraft) -> AuditEvent:
        attempts = self._settings.chain_append_max_retries + 1
        async with self._lock:
            for attempt in range(1, attempts + 1):
                try:
                    return await self._store.append(lambda tail: self._seal(draft, tail))
                except AppendConflict as exc:
                    CHAIN_CONTENTION.inc()
                    _log.warning(
                        "audit_chain_append_conflict",
                        attempt=attempt,
                        max_attempts=attempts,
                        error=str(exc),
                    )
        _log.error("audit_chain_contention_exhausted", attempts=attempts)
        raise ChainContentionError(attempts)

    def _seal(self, draft: EventDraft, tail: AuditEvent | None) -> AuditEvent:
        """Build the next link on ``tail``; runs inside the append transaction."""
        event_type, actor_id = draft.event_type, draft.actor_id
        if event_type is None or actor_id is None:
            raise ValidationError("Draft reached the chain without passing validation")
        now = utcnow()
        policy = policy_for(event_type)
        before = _normalise(draft.before_state)
        after = _normalise(draft.after_state)
        metadata = {
            **(_normalise(draft.metadata) or {}),
            "origin_system": self._settings.system_origin,
            "origin_version": self._settings.system_version,
        }

        event = AuditEvent(
            id=str(uuid.uuid4()),
            sequence=tail.sequence + 1 if tail is not None else 1,
            event_type=event_type,
            status=EventStatus.CREATED,
            severity=draft.severity or Severity.INFO,
            actor_id=actor_id,
            actor_name=draft.actor_name,
            session_id=draft.session_id,
            source_ip=draft.source_ip,
            user_agent=draft.user_agent,
            target_type=draft.target_type,
            target_id=draft.target_id,
            target_name=draft.target_name,
            action=draft.action,
            before_state=before,
            after_state=after,
            before_state_digest=state_digest(before),
            after_state_digest=state_digest(after),
            event_metadata=metadata,
            trace_id=draft.trace_id,
            span_id=draft.span_id,
            prev_hash=tail.self_hash if tail is not None else "",
            compliance_category=policy.category,
            contains_personal_data=policy.requires_personal_data,
            retention_until=retention_deadline(event_type, now),
            anonymized=False,
            occurred_at=now,
        )
        event.self_hash = compute_digest(event)
        apply_transition(event, EventStatus.VALIDATED, now)
        return event

    # ── Post-commit fan-out ──────────────────────────────────────────── #

    def _dispatch(self, event: AuditEventOut) -> None:
        task = asyncio.create_task(self._after_commit(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _after_commit(self, event: AuditEventOut) -> None:
        try:
            await self._cache.put(event)
            await self._invalidate_timeline(event)
            self._subscriptions.publish(event)
            await self.deliver(event)
        except InvalidTransition as exc:
            # Event moved on concurrently (e.g. anonymized); nothing to advance
            _log.debug("post_commit_transition_skipped", event_id=event.id, error=exc.message)
        except AppError as exc:
            DOWNSTREAM_DEGRADED.labels(component="pipeline", operation="post_commit").inc()
            _log.warning("post_commit_degraded", event_id=event.id, error=exc.message)
        except Exception as exc:
            DOWNSTREAM_DEGRADED.labels(component="pipeline", operation="post_commit").inc()
            _log.error("post_commit_failed", event_id=event.id, error=str(exc), exc_info=True)

    async def deliver(self, event: AuditEventOut) -> AuditEventOut | None:
        """
        Emit to the stream and advance the stored status accordingly.

        VALIDATED and REPROCESSING advance to PROCESSED on acknowledgement.
        A dead-lettered VALIDATED event moves to FAILED; a dead-lettered
        REPROCESSING event stays put until the next reprocessing run.
        """
        outcome = await self._emitter.emit(event)
        if outcome == EmitOutcome.DEAD_LETTERED:
            if event.status != EventStatus.VALIDATED:
                return None
            target = EventStatus.FAILED
        else:
            target = EventStatus.PROCESSED

        updated = AuditEventOut.model_validate(await self._store.update_status(event.id, target))
        await self._cache.put(updated)
        # Timelines cached while delivery was pending hold the old status
        await self._invalidate_timeline(updated)
        _log.debug("audit_event_advanced", event_id=event.id, status=target.value)
        return updated

    async def _invalidate_timeline(self, event: AuditEventOut) -> None:
        if event.target_type and event.target_id:
            await self._cache.invalidate_timeline(event.target_type, event.target_id)

    async def drain(self) -> None:
        """Wait for in-flight post-commit work."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
