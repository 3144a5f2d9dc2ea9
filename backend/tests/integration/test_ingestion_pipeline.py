"""
Integration tests for the ingestion pipeline against a real SQLite file
and an in-process Redis: chaining, classification, validation,
concurrency and post-commit delivery.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from auditchain.core.errors import ChainContentionError, IntegrityViolation, ValidationError
from auditchain.db.models.audit import AuditEvent, EventCategory, EventStatus, EventType
from auditchain.schemas.audit import EventDraft
from auditchain.services.audit.ingestion import AuditLogger
from auditchain.services.audit.store import AppendConflict
from factories import draft

pytestmark = pytest.mark.asyncio


class ContendedStore:
    """Store whose tail is always taken by someone else."""

    def __init__(self) -> None:
        self.calls = 0

    async def append(self, prepare):
        self.calls += 1
        raise AppendConflict("UNIQUE constraint failed: audit_events.sequence")


# ─── Chaining ─────────────────────────────────────────────────────────────────

async def test_first_event_starts_the_chain(service, settings):
    event = await service.submit(draft())

    assert event.sequence == 1
    assert event.prev_hash == ""
    assert len(event.self_hash) == 64
    assert event.status == EventStatus.VALIDATED
    assert event.processed_at is not None
    assert event.event_metadata["origin_system"] == settings.system_origin


async def test_each_event_links_to_its_predecessor(service):
    a = await service.submit(draft(action="A"))
    b = await service.submit(draft(action="B"))

    assert b.sequence == a.sequence + 1
    assert b.prev_hash == a.self_hash
    assert (await service.verify_chain()).valid


async def test_tampered_field_is_detected(service, session_factory):
    a = await service.submit(draft(action="A"))
    await service.submit(draft(action="B"))
    await service.audit_logger.drain()

    async with session_factory() as session:
        await session.execute(
            update(AuditEvent).where(AuditEvent.id == a.id).values(action="Rewritten")
        )
        await session.commit()

    result = await service.verify_chain()

    assert not result.valid
    assert result.broken_at_index == 0
    assert result.broken_event_id == a.id
    assert "digest" in result.reason
    with pytest.raises(IntegrityViolation):
        await service.ensure_chain_intact()


# ─── Classification ───────────────────────────────────────────────────────────

async def test_personal_data_event_is_classified(service):
    event = await service.submit(
        draft(
            event_type=EventType.DATA_ACCESSED.value,
            target_type="customer",
            target_id="c1",
            after_state={"email": "ana@example.com"},
        )
    )

    assert event.compliance_category == EventCategory.PERSONAL_DATA
    assert event.contains_personal_data
    assert event.retention_until - event.occurred_at == timedelta(days=2555)
    assert event.after_state_digest is not None
    assert event.before_state_digest is None


async def test_non_personal_event_is_not_flagged(service):
    event = await service.submit(draft())
    assert event.compliance_category == EventCategory.AUTHENTICATION
    assert not event.contains_personal_data


# ─── Validation ───────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "body",
    [
        {"actor_id": "u1", "action": "x"},
        {"event_type": "auth.login.success", "actor_id": "  ", "action": "x"},
        {"event_type": "no.such.type", "actor_id": "u1", "action": "x"},
        {**draft(), "unexpected": True},
    ],
    ids=["missing-type", "blank-actor", "unknown-type", "extra-field"],
)
async def test_invalid_drafts_are_rejected_before_persisting(service, body):
    with pytest.raises(ValidationError):
        await service.submit(body)
    assert await service.store.tail() is None


async def test_missing_fields_are_named(service):
    with pytest.raises(ValidationError) as exc_info:
        await service.submit({"actor_name": "Nobody"})
    assert exc_info.value.detail["missing"] == ["event_type", "actor_id", "action"]


async def test_unvalidated_draft_cannot_be_sealed(service):
    with pytest.raises(ValidationError):
        service.audit_logger._seal(EventDraft(actor_name="Nobody"), None)


# ─── Concurrency ──────────────────────────────────────────────────────────────

async def test_concurrent_submits_form_one_chain(service):
    events = await asyncio.gather(*(service.submit(draft(action=f"n{i}")) for i in range(20)))

    assert sorted(e.sequence for e in events) == list(range(1, 21))
    result = await service.verify_chain()
    assert result.valid
    assert result.checked == 20


async def test_competing_writers_retry_on_the_new_tail(service, settings):
    contended = settings.model_copy(update={"chain_append_max_retries": 50})
    writers = [
        AuditLogger(service.store, service.cache, service.emitter, service.subscriptions, contended)
        for _ in range(2)
    ]
    try:
        await asyncio.gather(
            *(w.submit(draft(action=f"w{n}-{i}")) for i in range(5) for n, w in enumerate(writers))
        )
    finally:
        for w in writers:
            await w.drain()

    result = await service.verify_chain()
    assert result.valid
    assert result.checked == 10
    tail = await service.store.tail()
    assert tail.sequence == 10


async def test_contention_past_the_bound_raises(service, settings):
    store = ContendedStore()
    writer = AuditLogger(
        store,
        service.cache,
        service.emitter,
        service.subscriptions,
        settings.model_copy(update={"chain_append_max_retries": 2}),
    )

    with pytest.raises(ChainContentionError) as exc_info:
        await writer.submit(draft())

    assert store.calls == 3
    assert exc_info.value.attempts == 3


# ─── Post-commit delivery ─────────────────────────────────────────────────────

async def test_acknowledged_event_is_processed(service, redis, settings):
    event = await service.submit(draft())
    await service.audit_logger.drain()

    stored = await service.store.get(event.id)
    assert stored.status == EventStatus.PROCESSED
    assert await redis.xlen(settings.stream_key) == 1
    cached = await service.cache.get_event(event.id)
    assert cached.status == EventStatus.PROCESSED


async def test_subscribers_receive_committed_events(service):
    async with service.subscriptions.subscribe("actor:u1") as queue:
        event = await service.submit(draft())
        await service.audit_logger.drain()
        assert queue.get_nowait().id == event.id


async def test_streaming_outage_fails_event_but_not_submit(service, redis_server):
    redis_server.connected = False

    event = await service.submit(draft())
    await service.audit_logger.drain()

    assert (await service.store.get(event.id)).status == EventStatus.FAILED
    assert (await service.verify_chain()).valid


async def test_reprocess_recovers_after_outage(service, redis, redis_server, settings):
    redis_server.connected = False
    event = await service.submit(draft())
    await service.audit_logger.drain()
    redis_server.connected = True

    result = await service.reprocess_failed()

    assert (result.attempted, result.recovered) == (1, 1)
    assert (await service.store.get(event.id)).status == EventStatus.PROCESSED
    assert await redis.xlen(settings.stream_key) == 1


async def test_delivery_refreshes_cached_timeline(service, redis_server):
    redis_server.connected = False
    await service.submit(draft(target_type="customer", target_id="c1"))
    await service.audit_logger.drain()
    redis_server.connected = True
    (failed,) = await service.get_timeline("customer", "c1")
    assert failed.status == EventStatus.FAILED

    await service.reprocess_failed()

    (delivered,) = await service.get_timeline("customer", "c1")
    assert delivered.status == EventStatus.PROCESSED


async def test_transitions_leave_chained_fields_untouched(service):
    event = await service.submit(draft())
    await service.audit_logger.drain()

    archived = await service.transition(event.id, EventStatus.ARCHIVED)

    assert archived.status == EventStatus.ARCHIVED
    assert archived.self_hash == event.self_hash
    assert archived.prev_hash == event.prev_hash
    assert archived.occurred_at == event.occurred_at
    assert archived.id == event.id
    assert (await service.verify_chain()).valid
