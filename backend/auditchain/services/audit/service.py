"""
Audit service facade.

Wires the ingestion pipeline, the store, the cache accelerator and the
retention engine together and exposes the query, integrity and
statistics contracts. Reads are cache-aside; chain verification always
reads the store.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.config.settings import Settings
from auditchain.core.errors import (
    ErrorCode,
    IntegrityViolation,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from auditchain.db.base import utcnow
from auditchain.db.models.audit import AuditEvent, EventStatus, EventType
from auditchain.schemas.audit import (
    ActorActivity,
    AuditEventOut,
    AuditEventPage,
    ChainVerificationResult,
    ComplianceReport,
    ComplianceStatus,
    ComplianceSummary,
    ComplianceViolation,
    EventDraft,
    EventIntegrityResult,
    ReprocessResult,
    ResumeStats,
    TypeCount,
    ViolationKind,
    ViolationSeverity,
)
from auditchain.services.audit import hash_chain
from auditchain.services.audit.ingestion import AuditLogger
from auditchain.services.audit.store import AuditEventStore, Page
from auditchain.services.cache.accelerator import CacheAccelerator
from auditchain.services.retention.engine import RetentionEngine
from auditchain.services.streaming.emitter import StreamingEmitter
from auditchain.services.streaming.subscriptions import SubscriptionRegistry

_log = structlog.get_logger(__name__)

# Reached only through the retention engine, never by an explicit request
_ENGINE_ONLY = frozenset({EventStatus.EXPIRED, EventStatus.ANONYMIZED})

# Share of clean events below which a report with violations is PARTIALLY_COMPLIANT
_ATTENTION_THRESHOLD = 95.0


def _page(page: Page) -> AuditEventPage:
    return AuditEventPage(
        items=[AuditEventOut.model_validate(e) for e in page.items],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
    )


class AuditService:
    def __init__(
        self,
        store: AuditEventStore,
        cache: CacheAccelerator,
        emitter: StreamingEmitter,
        subscriptions: SubscriptionRegistry,
        audit_logger: AuditLogger,
        retention: RetentionEngine,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.emitter = emitter
        self.subscriptions = subscriptions
        self.audit_logger = audit_logger
        self.retention = retention
        self._settings = settings

    # ── Ingestion ────────────────────────────────────────────────────── #

    async def submit(self, draft: EventDraft | Mapping[str, Any]) -> AuditEventOut:
        return await self.audit_logger.submit(draft)

    # ── Queries ──────────────────────────────────────────────────────── #

    async def get_event(self, event_id: str) -> AuditEventOut:
        cached = await self.cache.get_event(event_id)
        if cached is not None:
            return cached
        event = await self.store.get(event_id)
        if event is None:
            raise NotFoundError("AuditEvent", event_id, ErrorCode.EVENT_NOT_FOUND)
        out = AuditEventOut.model_validate(event)
        await self.cache.put(out)
        return out

    async def get_timeline(self, entity_type: str, entity_id: str) -> list[AuditEventOut]:
        cached = await self.cache.get_timeline(entity_type, entity_id)
        if cached is not None:
            return cached
        events = [
            AuditEventOut.model_validate(e)
            for e in await self.store.timeline(entity_type, entity_id)
        ]
        if events:
            await self.cache.put_timeline(entity_type, entity_id, events)
        return events

    async def get_by_actor(self, actor_id: str, page: int = 1, page_size: int = 50) -> AuditEventPage:
        return _page(await self.store.list_by_actor(actor_id, page, page_size))

    async def get_by_type(
        self, event_type: EventType, page: int = 1, page_size: int = 50
    ) -> AuditEventPage:
        return _page(await self.store.list_by_type(event_type, page, page_size))

    async def get_by_period(
        self, start: datetime, end: datetime, page: int = 1, page_size: int = 50
    ) -> AuditEventPage:
        if start > end:
            raise ValidationError("Period start must not be after its end")
        return _page(await self.store.list_by_period(start, end, page, page_size))

    async def search_text(self, term: str, page: int = 1, page_size: int = 50) -> AuditEventPage:
        if not term.strip():
            raise ValidationError("Search term must not be empty")
        return _page(await self.store.search_text(term.strip(), page, page_size))

    async def get_personal_data_for_actor(self, actor_id: str) -> list[AuditEventOut]:
        return [
            AuditEventOut.model_validate(e)
            for e in await self.store.personal_data_for_actor(actor_id)
        ]

    async def get_by_trace(self, trace_id: str) -> list[AuditEventOut]:
        """Events sharing one correlation / trace id, in commit order."""
        if not trace_id.strip():
            raise ValidationError("Trace id must not be empty")
        return [AuditEventOut.model_validate(e) for e in await self.store.by_trace(trace_id.strip())]

    # ── Integrity ────────────────────────────────────────────────────── #

    async def verify_chain(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> ChainVerificationResult:
        """
        Recompute and walk the stored chain, optionally over a time slice.

        A broken chain is a reported finding, not an exception.
        """
        events = await self.store.chain_slice(start, end)
        if not events:
            return ChainVerificationResult(valid=True, checked=0)

        anchor = await self._anchor_for(events[0])
        result = hash_chain.verify_chain(events, anchor_hash=anchor)
        if result.valid:
            _log.info("audit_chain_verified", checked=result.checked)
        else:
            _log.error(
                "audit_chain_broken",
                index=result.broken_at_index,
                event_id=result.broken_event_id,
                reason=result.reason,
            )
        return ChainVerificationResult(**asdict(result))

    async def ensure_chain_intact(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> int:
        """Strict variant of verify_chain; raises IntegrityViolation on a break."""
        result = await self.verify_chain(start, end)
        if not result.valid:
            raise IntegrityViolation(
                result.broken_at_index or 0, result.broken_event_id, result.reason or "broken link"
            )
        return result.checked

    async def verify_event(self, event_id: str) -> EventIntegrityResult:
        """
        Recompute one event's digest and check its link to the predecessor.

        Reads the store, never the cache.
        """
        event = await self.store.get(event_id)
        if event is None:
            raise NotFoundError("AuditEvent", event_id, ErrorCode.EVENT_NOT_FOUND)
        anchor = await self._anchor_for(event)
        result = hash_chain.verify_chain([event], anchor_hash=anchor)
        if not result.valid:
            _log.error("audit_event_integrity_failed", event_id=event_id, reason=result.reason)
        return EventIntegrityResult(
            event_id=event.id,
            sequence=event.sequence,
            valid=result.valid,
            digest_valid=event.self_hash == hash_chain.compute_digest(event),
            link_valid=event.prev_hash == anchor,
            reason=result.reason,
            checked_at=utcnow(),
        )

    async def _anchor_for(self, first: AuditEvent) -> str:
        # Genesis links to ""; a slice links to its predecessor or a purge checkpoint
        if first.sequence == 1:
            return ""
        predecessor = await self.store.predecessor_of(first.sequence)
        if predecessor is not None:
            return predecessor.self_hash
        checkpoint = await self.store.checkpoint_before(first.sequence)
        if checkpoint is not None:
            return checkpoint.anchor_hash
        return ""

    # ── Statistics ───────────────────────────────────────────────────── #

    async def get_resume_stats(self, since: datetime) -> ResumeStats:
        cached = await self.cache.get_stats(since)
        if cached is not None:
            return cached
        row = await self.store.resume_stats(since)
        stats = ResumeStats(since=since, **asdict(row))
        await self.cache.put_stats(stats)
        return stats

    async def count_by_type(self, start: datetime, end: datetime) -> list[TypeCount]:
        rows = await self.store.count_by_type(start, end)
        return [TypeCount(event_type=event_type, total=total) for event_type, total in rows]

    async def most_active_actors(self, since: datetime, limit: int = 50) -> list[ActorActivity]:
        rows = await self.store.most_active_actors(since, limit)
        return [
            ActorActivity(actor_id=actor_id, actor_name=name, total=total, last_event_at=last)
            for actor_id, name, total, last in rows
        ]

    async def compliance_report(
        self, start: datetime, end: datetime, report_type: str = "periodic"
    ) -> ComplianceReport:
        """
        Summarise the period's compliance posture.

        Violations are derived from the stored events: denied or blocked
        access, events kept past their retention deadline, critical events
        whose delivery failed, and any break in the period's hash chain.
        """
        if start > end:
            raise ValidationError("Period start must not be after its end")
        now = utcnow()
        row = await self.store.compliance_counts(start, end, now)
        chain = await self.verify_chain(start, end)
        by_type = await self.count_by_type(start, end)

        violations = _violations(row.unauthorized_access, row.overdue_retention, row.failed_critical)
        if not chain.valid:
            violations.append(
                ComplianceViolation(
                    kind=ViolationKind.MISSING_RECORD,
                    severity=ViolationSeverity.CRITICAL,
                    occurrences=1,
                    description=f"Hash chain broken at event {chain.broken_event_id}: {chain.reason}",
                )
            )

        flagged = min(row.total, row.unauthorized_access + row.overdue_retention + row.failed_critical)
        percentage = 100.0 if row.total == 0 else round(100 * (row.total - flagged) / row.total, 2)
        if not chain.valid:
            status = ComplianceStatus.NON_COMPLIANT
        elif not violations:
            status = ComplianceStatus.COMPLIANT
        elif percentage >= _ATTENTION_THRESHOLD:
            status = ComplianceStatus.NEEDS_ATTENTION
        else:
            status = ComplianceStatus.PARTIALLY_COMPLIANT

        report = ComplianceReport(
            id=str(uuid.uuid4()),
            report_type=report_type,
            period_start=start,
            period_end=end,
            generated_at=now,
            generated_by=self._settings.system_origin,
            summary=ComplianceSummary(
                total_events=row.total,
                events_with_violation=flagged,
                compliance_percentage=percentage,
                personal_data_accessed=row.personal_data_accessed,
                erasure_requests=row.erasure_requests,
                anonymizations=row.anonymizations,
                data_exports=row.data_exports,
                status=status,
            ),
            violations=violations,
            chain=chain,
            events_by_type={c.event_type.value: c.total for c in by_type},
        )
        _log.info(
            "compliance_report_generated",
            report_id=report.id,
            status=status.value,
            total=row.total,
            violations=len(violations),
        )
        return report

    async def count_critical_unprocessed(self) -> int:
        return await self.store.count_critical_unprocessed(utcnow())

    async def health(self) -> dict[str, Any]:
        now = utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        critical = await self.count_critical_unprocessed()
        cache_stats = self.cache.stats()
        pending_purges = len(self.cache.quarantined)
        return {
            "status": "HEALTHY" if critical == 0 and pending_purges == 0 else "DEGRADED",
            "events_today": await self.store.count_since(start_of_day),
            "critical_unprocessed": critical,
            "cache": {
                "enabled": self.cache.enabled,
                "hits": cache_stats.hits,
                "misses": cache_stats.misses,
                "evictions": cache_stats.evictions,
                "hit_ratio": round(cache_stats.hit_ratio, 4),
                "pending_purges": pending_purges,
            },
            "streaming": {
                "enabled": self.emitter.enabled,
                "circuit": self.emitter.circuit.state.value,
            },
            "subscriptions": {
                "channels": self.subscriptions.channel_keys,
                "dropped": self.subscriptions.dropped,
            },
            "checked_at": now,
        }

    async def warm_cache(self, window: timedelta = timedelta(hours=24)) -> int:
        now = utcnow()
        recent = await self.store.list_by_period(now - window, now, 1, 500)
        return await self.cache.warm(recent.items)

    # ── Lifecycle ────────────────────────────────────────────────────── #

    async def transition(self, event_id: str, target: EventStatus) -> AuditEventOut:
        if target in _ENGINE_ONLY:
            raise ValidationError(
                f"Status {target.value} is set by the retention engine only",
                detail={"status": target.value},
            )
        try:
            event = await self.store.update_status(event_id, target)
        except InvalidTransition as exc:
            _log.warning("audit_transition_rejected", event_id=event_id, **exc.detail)
            raise
        out = AuditEventOut.model_validate(event)
        await self.cache.put(out)
        if out.target_type and out.target_id:
            await self.cache.invalidate_timeline(out.target_type, out.target_id)
        _log.info("audit_event_transitioned", event_id=event_id, status=target.value)
        return out

    async def reprocess_failed(self) -> ReprocessResult:
        """Re-emit FAILED and stuck REPROCESSING events."""
        pending = await self.store.list_by_status([EventStatus.FAILED, EventStatus.REPROCESSING])
        recovered = 0
        for event in pending:
            try:
                if event.status == EventStatus.FAILED:
                    event = await self.store.update_status(event.id, EventStatus.REPROCESSING)
                updated = await self.audit_logger.deliver(AuditEventOut.model_validate(event))
            except InvalidTransition as exc:
                _log.info("reprocess_skipped", event_id=event.id, **exc.detail)
                continue
            if updated is not None and updated.status == EventStatus.PROCESSED:
                recovered += 1
        _log.info("reprocess_complete", attempted=len(pending), recovered=recovered)
        return ReprocessResult(attempted=len(pending), recovered=recovered)

    # ── Retention ────────────────────────────────────────────────────── #

    async def sweep_expired(self) -> int:
        return await self.retention.sweep_expired()

    async def anonymize(self, actor_id: str) -> int:
        return await self.retention.anonymize(actor_id)

    async def purge_expired(self, min_age_days: int | None = None) -> int:
        return await self.retention.purge_expired(min_age_days)

    async def close(self) -> None:
        await self.audit_logger.close()


def _violations(unauthorized: int, overdue: int, failed_critical: int) -> list[ComplianceViolation]:
    found = [
        (
            unauthorized,
            ViolationKind.UNAUTHORIZED_ACCESS,
            ViolationSeverity.HIGH,
            "Denied, blocked or intrusive access attempts",
        ),
        (
            overdue,
            ViolationKind.EXCESSIVE_RETENTION,
            ViolationSeverity.MEDIUM,
            "Events kept past their retention deadline",
        ),
        (
            failed_critical,
            ViolationKind.UNDELIVERED_CRITICAL,
            ViolationSeverity.HIGH,
            "Critical events whose delivery failed",
        ),
    ]
    return [
        ComplianceViolation(kind=kind, severity=severity, occurrences=n, description=text)
        for n, kind, severity, text in found
        if n
    ]


def build_audit_service(
    session_factory: async_sessionmaker[AsyncSession],
    redis: Redis | None,
    settings: Settings,
) -> AuditService:
    """Assemble one service graph; no module-level state is involved."""
    store = AuditEventStore(session_factory)
    cache = CacheAccelerator(redis, settings)
    emitter = StreamingEmitter(redis, settings)
    subscriptions = SubscriptionRegistry(settings.subscriber_queue_size)
    audit_logger = AuditLogger(store, cache, emitter, subscriptions, settings)
    retention = RetentionEngine(store, cache, audit_logger, settings)
    return AuditService(store, cache, emitter, subscriptions, audit_logger, retention, settings)
