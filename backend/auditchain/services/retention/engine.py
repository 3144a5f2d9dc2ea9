"""
Retention and anonymization engine.

sweep_expired   status flip to EXPIRED once retention_until has passed
anonymize       irreversible scrub of an actor's personal data
purge_expired   physical deletion of the oldest long-expired events

Each operation that changes anything records itself as a new chained
system event through the normal ingestion path.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from auditchain.config.settings import Settings
from auditchain.core.errors import DownstreamDegraded
from auditchain.core.metrics import EVENTS_ANONYMIZED, EVENTS_EXPIRED
from auditchain.db.base import utcnow
from auditchain.db.models.audit import AuditEvent, EventStatus, EventType, Severity
from auditchain.services.audit.ingestion import AuditLogger
from auditchain.services.audit.lifecycle import apply_transition, path_to
from auditchain.services.audit.store import AuditEventStore, EventRef
from auditchain.services.cache.accelerator import CacheAccelerator

_log = structlog.get_logger(__name__)

ANONYMIZED_NAME = "ANONYMIZED"
MASKED = "MASKED"


def scrub(event: AuditEvent) -> bool:
    """
    Replace the personal-data fields of ``event`` with sentinels in place.

    Non-terminal events are walked along the lifecycle to ANONYMIZED;
    events already in a terminal state keep their status. Returns False
    for an event that was already anonymized.
    """
    if event.anonymized:
        return False
    for step in path_to(event.status, EventStatus.ANONYMIZED) or []:
        apply_transition(event, step)
    event.actor_name = ANONYMIZED_NAME
    event.source_ip = MASKED
    event.user_agent = MASKED
    event.before_state = None
    event.after_state = None
    event.event_metadata = {}
    event.anonymized = True
    return True


class RetentionEngine:
    def __init__(
        self,
        store: AuditEventStore,
        cache: CacheAccelerator,
        audit_logger: AuditLogger,
        settings: Settings,
    ) -> None:
        self._store = store
        self._cache = cache
        self._logger = audit_logger
        self._settings = settings

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """
        Mark every event past its retention deadline as EXPIRED.

        Commits batch by batch, so cancelling mid-sweep keeps what was
        already expired and the next run picks up the rest.
        """
        now = now or utcnow()
        batch_size = self._settings.retention_sweep_batch_size
        total = 0
        while True:
            expired = await self._store.expire_batch(now, batch_size)
            if not expired:
                break
            total += len(expired)
            EVENTS_EXPIRED.inc(len(expired))
            await self._evict(expired)
            _log.info("retention_batch_expired", count=len(expired), total=total)
            if len(expired) < batch_size:
                break

        if total:
            await self._logger.log(
                EventType.CONFIG_CHANGED,
                f"{total} events marked as expired",
                metadata={"operation": "retention_sweep", "expired_count": total},
            )
        _log.info("retention_sweep_complete", expired=total)
        return total

    async def anonymize(self, actor_id: str) -> int:
        """
        Scrub every personal-data event of ``actor_id``.

        The cache is invalidated only after every scrub is durably
        committed; when this returns, no read path serves pre-scrub data.
        Returns the number of newly anonymized events.

        Raises DownstreamDegraded, after the scrub and its audit record are
        committed, when the cache could not be purged. The actor then stays
        quarantined until ``retry_cache_purges`` succeeds.
        """
        events = await self._store.personal_data_for_actor(actor_id)
        count = 0
        for event in events:
            if event.anonymized:
                continue
            _, changed = await self._store.save_anonymized(event.id, scrub)
            if changed:
                count += 1

        purge_failure: DownstreamDegraded | None = None
        try:
            await self._cache.invalidate_for_actor(actor_id)
        except DownstreamDegraded as exc:
            purge_failure = exc

        if count:
            EVENTS_ANONYMIZED.inc(count)
            await self._logger.log(
                EventType.DATA_ANONYMIZED,
                f"Personal data of actor {actor_id} anonymized ({count} events)",
                severity=Severity.WARN,
                target_type="actor",
                target_id=actor_id,
                metadata={"operation": "anonymize", "anonymized_count": count},
            )
        _log.info("actor_anonymized", actor_id=actor_id, anonymized=count, scanned=len(events))
        if purge_failure is not None:
            _log.error("actor_anonymized_cache_not_purged", actor_id=actor_id, anonymized=count)
            purge_failure.detail.update(actor_id=actor_id, anonymized_count=count)
            raise purge_failure
        return count

    async def retry_cache_purges(self) -> int:
        """Retry the cache purge of actors whose anonymization left it pending."""
        pending = self._cache.quarantined
        if not pending:
            return 0
        purged = await self._cache.retry_quarantined()
        _log.info("cache_purge_retried", pending=len(pending), purged=purged)
        return purged

    async def purge_expired(
        self, min_age_days: int | None = None, now: datetime | None = None
    ) -> int:
        """
        Physically delete EXPIRED events at least ``min_age_days`` past retention.

        Only the oldest contiguous prefix of the chain is removed; a
        checkpoint keeps the surviving suffix verifiable.
        """
        days = min_age_days if min_age_days is not None else self._settings.retention_purge_min_age_days
        cutoff = (now or utcnow()) - timedelta(days=days)
        outcome = await self._store.purge_prefix(cutoff)
        if outcome is None:
            _log.info("retention_purge_nothing_to_do", cutoff=cutoff.isoformat())
            return 0
        checkpoint = outcome.checkpoint
        await self._evict(outcome.purged)

        _log.warning(
            "retention_purged",
            purged=checkpoint.purged_count,
            through_sequence=checkpoint.purged_through_sequence,
        )
        await self._logger.log(
            EventType.CONFIG_CHANGED,
            f"{checkpoint.purged_count} expired events purged",
            severity=Severity.WARN,
            metadata={
                "operation": "retention_purge",
                "purged_count": checkpoint.purged_count,
                "purged_through_sequence": checkpoint.purged_through_sequence,
                "anchor_hash": checkpoint.anchor_hash,
            },
        )
        return checkpoint.purged_count

    async def _evict(self, refs: list[EventRef]) -> None:
        await self._cache.delete_events(ref.id for ref in refs)
        await self._cache.invalidate_timelines(ref.target for ref in refs if ref.target)
