"""
Persistence store for audit events.

Every operation opens its own short-lived session so concurrent readers
never share a transaction with the single chain writer. SQLAlchemy
errors are translated into PersistenceFailure at this boundary; a
unique-sequence violation on append is reported as AppendConflict so the
ingestion pipeline can retry against the new tail.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar

import structlog
from sqlalchemy import String, case, cast, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from auditchain.core.errors import NotFoundError, PersistenceFailure
from auditchain.db.models.audit import (
    AuditEvent,
    ChainCheckpoint,
    EventStatus,
    EventType,
    Severity,
)
from auditchain.services.audit.lifecycle import apply_transition

_log = structlog.get_logger(__name__)

T = TypeVar("T")

_MUTATE_ATTEMPTS = 3

_EXPORT_TYPES = (EventType.DATA_EXPORTED, EventType.DATA_PORTABILITY)
_UNAUTHORIZED_TYPES = (
    EventType.ACCESS_DENIED,
    EventType.LOGIN_BLOCKED,
    EventType.INTRUSION_ATTEMPT,
)


class AppendConflict(Exception):
    """Another writer committed on the tail this append was built on."""


@dataclass(frozen=True)
class Page:
    items: list[AuditEvent]
    total: int
    page: int
    page_size: int


@dataclass(frozen=True)
class EventRef:
    """Enough of an event to evict its cache entries."""

    id: str
    target_type: str | None
    target_id: str | None

    @property
    def target(self) -> tuple[str, str] | None:
        if self.target_type and self.target_id:
            return self.target_type, self.target_id
        return None


@dataclass(frozen=True)
class PurgeOutcome:
    checkpoint: ChainCheckpoint
    purged: list[EventRef]


@dataclass(frozen=True)
class ComplianceRow:
    total: int
    personal_data_accessed: int
    data_exports: int
    erasure_requests: int
    anonymizations: int
    unauthorized_access: int
    overdue_retention: int
    failed_critical: int


@dataclass(frozen=True)
class ResumeRow:
    total: int
    critical: int
    errors: int
    personal_data_count: int
    distinct_actors: int


class AuditEventStore:
    """Durable, append-mostly storage for the audit chain."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    # ── Chain append ─────────────────────────────────────────────────── #

    async def append(self, prepare: Callable[[AuditEvent | None], AuditEvent]) -> AuditEvent:
        """
        Read the current tail, build the next event from it and commit.

        ``prepare`` receives the tail (None for an empty chain) and returns
        the fully sealed event. Tail read and insert share one transaction;
        the unique sequence turns a lost race into AppendConflict.
        """
        try:
            async with self._factory() as session:
                tail = await self._tail(session)
                event = prepare(tail)
                session.add(event)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise AppendConflict(str(exc.orig)) from exc
                return event
        except AppendConflict:
            raise
        except SQLAlchemyError as exc:
            _log.error("audit_store_append_failed", error=str(exc))
            raise PersistenceFailure("append") from exc

    async def _tail(self, session: AsyncSession) -> AuditEvent | None:
        result = await session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def tail(self) -> AuditEvent | None:
        return await self._read("tail", self._tail)

    # ── Point reads ──────────────────────────────────────────────────── #

    async def get(self, event_id: str) -> AuditEvent | None:
        async def _get(session: AsyncSession) -> AuditEvent | None:
            return await session.get(AuditEvent, event_id)

        return await self._read("get", _get)

    async def predecessor_of(self, sequence: int) -> AuditEvent | None:
        """The event committed immediately before ``sequence``, if still stored."""

        async def _pred(session: AsyncSession) -> AuditEvent | None:
            result = await session.execute(
                select(AuditEvent).where(AuditEvent.sequence == sequence - 1)
            )
            return result.scalar_one_or_none()

        return await self._read("predecessor_of", _pred)

    async def checkpoint_before(self, sequence: int) -> ChainCheckpoint | None:
        async def _checkpoint(session: AsyncSession) -> ChainCheckpoint | None:
            result = await session.execute(
                select(ChainCheckpoint).where(
                    ChainCheckpoint.purged_through_sequence == sequence - 1
                )
            )
            return result.scalar_one_or_none()

        return await self._read("checkpoint_before", _checkpoint)

    # ── Range and filter scans ───────────────────────────────────────── #

    async def list_by_actor(self, actor_id: str, page: int, page_size: int) -> Page:
        return await self._paginate(
            "list_by_actor", [AuditEvent.actor_id == actor_id], page, page_size
        )

    async def list_by_type(self, event_type: EventType, page: int, page_size: int) -> Page:
        return await self._paginate(
            "list_by_type", [AuditEvent.event_type == event_type], page, page_size
        )

    async def list_by_period(
        self, start: datetime, end: datetime, page: int, page_size: int
    ) -> Page:
        return await self._paginate(
            "list_by_period",
            [AuditEvent.occurred_at >= start, AuditEvent.occurred_at <= end],
            page,
            page_size,
        )

    async def search_text(self, term: str, page: int, page_size: int) -> Page:
        pattern = f"%{term}%"
        return await self._paginate(
            "search_text",
            [
                or_(
                    AuditEvent.action.ilike(pattern),
                    AuditEvent.target_name.ilike(pattern),
                    cast(AuditEvent.event_metadata, String).ilike(pattern),
                )
            ],
            page,
            page_size,
        )

    async def timeline(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        async def _timeline(session: AsyncSession) -> list[AuditEvent]:
            result = await session.execute(
                select(AuditEvent)
                .where(AuditEvent.target_type == entity_type, AuditEvent.target_id == entity_id)
                .order_by(AuditEvent.sequence.asc())
            )
            return list(result.scalars().all())

        return await self._read("timeline", _timeline)

    async def personal_data_for_actor(self, actor_id: str) -> list[AuditEvent]:
        async def _pii(session: AsyncSession) -> list[AuditEvent]:
            result = await session.execute(
                select(AuditEvent)
                .where(
                    AuditEvent.actor_id == actor_id,
                    AuditEvent.contains_personal_data.is_(True),
                )
                .order_by(AuditEvent.sequence.desc())
            )
            return list(result.scalars().all())

        return await self._read("personal_data_for_actor", _pii)

    async def chain_slice(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[AuditEvent]:
        """Events in commit order, optionally bounded by occurrence time."""

        async def _slice(session: AsyncSession) -> list[AuditEvent]:
            query = select(AuditEvent)
            if start is not None:
                query = query.where(AuditEvent.occurred_at >= start)
            if end is not None:
                query = query.where(AuditEvent.occurred_at <= end)
            result = await session.execute(query.order_by(AuditEvent.sequence.asc()))
            return list(result.scalars().all())

        return await self._read("chain_slice", _slice)

    async def by_trace(self, trace_id: str) -> list[AuditEvent]:
        async def _by_trace(session: AsyncSession) -> list[AuditEvent]:
            result = await session.execute(
                select(AuditEvent)
                .where(AuditEvent.trace_id == trace_id)
                .order_by(AuditEvent.sequence.asc())
            )
            return list(result.scalars().all())

        return await self._read("by_trace", _by_trace)

    async def list_by_status(self, statuses: Sequence[EventStatus]) -> list[AuditEvent]:
        async def _by_status(session: AsyncSession) -> list[AuditEvent]:
            result = await session.execute(
                select(AuditEvent)
                .where(AuditEvent.status.in_(list(statuses)))
                .order_by(AuditEvent.sequence.asc())
            )
            return list(result.scalars().all())

        return await self._read("list_by_status", _by_status)

    # ── Mutation ─────────────────────────────────────────────────────── #

    async def mutate(self, event_id: str, change: Callable[[AuditEvent], T]) -> tuple[AuditEvent, T]:
        """
        Apply ``change`` to a freshly loaded event and commit it.

        The row version makes this a compare-and-set: if another writer
        changed the row in between, the event is reloaded and ``change``
        re-applied (and re-validated) against the current state.
        """
        for attempt in range(1, _MUTATE_ATTEMPTS + 1):
            try:
                async with self._factory() as session:
                    event = await session.get(AuditEvent, event_id)
                    if event is None:
                        raise NotFoundError("AuditEvent", event_id)
                    outcome = change(event)
                    await session.commit()
                    return event, outcome
            except StaleDataError:
                _log.info("audit_event_mutation_conflict", event_id=event_id, attempt=attempt)
                continue
            except SQLAlchemyError as exc:
                _log.error("audit_store_mutate_failed", event_id=event_id, error=str(exc))
                raise PersistenceFailure("mutate") from exc
        raise PersistenceFailure("mutate", f"Event {event_id} kept changing concurrently")

    async def update_status(self, event_id: str, target: EventStatus) -> AuditEvent:
        """Compare-and-set a lifecycle transition against the stored status."""
        event, _ = await self.mutate(event_id, lambda e: apply_transition(e, target))
        return event

    async def save_anonymized(
        self, event_id: str, scrub: Callable[[AuditEvent], bool]
    ) -> tuple[AuditEvent, bool]:
        """Persist an irreversible scrub; ``scrub`` reports whether anything changed."""
        return await self.mutate(event_id, scrub)

    async def expire_batch(self, now: datetime, limit: int) -> list[EventRef]:
        """Flip up to ``limit`` overdue events to EXPIRED in one committed batch."""
        try:
            async with self._factory() as session:
                result = await session.execute(
                    select(AuditEvent.id, AuditEvent.target_type, AuditEvent.target_id)
                    .where(
                        AuditEvent.retention_until < now,
                        AuditEvent.status != EventStatus.EXPIRED,
                    )
                    .order_by(AuditEvent.sequence.asc())
                    .limit(limit)
                )
                refs = [EventRef(*row) for row in result.all()]
                if not refs:
                    return []
                ids = [ref.id for ref in refs]
                await session.execute(
                    update(AuditEvent)
                    .where(
                        AuditEvent.id.in_(ids),
                        AuditEvent.status != EventStatus.EXPIRED,
                    )
                    .values(
                        status=EventStatus.EXPIRED,
                        row_version=AuditEvent.row_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return refs
        except SQLAlchemyError as exc:
            _log.error("audit_store_expire_failed", error=str(exc))
            raise PersistenceFailure("expire_batch") from exc

    async def purge_prefix(self, cutoff: datetime) -> PurgeOutcome | None:
        """
        Delete the oldest contiguous run of purgeable events.

        Purgeable means EXPIRED with retention_until before ``cutoff``. The
        tail is never deleted. A checkpoint holding the last deleted
        self_hash is written in the same transaction. The deleted events
        are returned so their cache entries can be evicted.
        """
        purgeable = (AuditEvent.status == EventStatus.EXPIRED) & (
            AuditEvent.retention_until < cutoff
        )
        try:
            async with self._factory() as session:
                tail = await self._tail(session)
                if tail is None:
                    return None
                blocker = await session.execute(
                    select(func.min(AuditEvent.sequence)).where(~purgeable)
                )
                boundary = min(blocker.scalar_one_or_none() or tail.sequence, tail.sequence)
                last = await session.execute(
                    select(AuditEvent)
                    .where(AuditEvent.sequence < boundary)
                    .order_by(AuditEvent.sequence.desc())
                    .limit(1)
                )
                last_purged = last.scalar_one_or_none()
                if last_purged is None:
                    return None
                doomed = await session.execute(
                    select(AuditEvent.id, AuditEvent.target_type, AuditEvent.target_id)
                    .where(AuditEvent.sequence < boundary)
                )
                purged = [EventRef(*row) for row in doomed.all()]
                deleted = await session.execute(
                    delete(AuditEvent)
                    .where(AuditEvent.sequence < boundary)
                    .execution_options(synchronize_session=False)
                )
                checkpoint = ChainCheckpoint(
                    purged_through_sequence=last_purged.sequence,
                    anchor_hash=last_purged.self_hash,
                    purged_count=deleted.rowcount or 0,
                )
                session.add(checkpoint)
                await session.commit()
                return PurgeOutcome(checkpoint, purged)
        except SQLAlchemyError as exc:
            _log.error("audit_store_purge_failed", error=str(exc))
            raise PersistenceFailure("purge_prefix") from exc

    # ── Aggregates ───────────────────────────────────────────────────── #

    async def resume_stats(self, since: datetime) -> ResumeRow:
        async def _resume(session: AsyncSession) -> ResumeRow:
            result = await session.execute(
                select(
                    func.count(AuditEvent.id),
                    func.count(case((AuditEvent.severity == Severity.CRITICAL, 1))),
                    func.count(case((AuditEvent.severity == Severity.ERROR, 1))),
                    func.count(case((AuditEvent.contains_personal_data.is_(True), 1))),
                    func.count(func.distinct(AuditEvent.actor_id)),
                ).where(AuditEvent.occurred_at >= since)
            )
            total, critical, errors, personal, actors = result.one()
            return ResumeRow(total, critical, errors, personal, actors)

        return await self._read("resume_stats", _resume)

    async def count_by_type(self, start: datetime, end: datetime) -> list[tuple[EventType, int]]:
        async def _by_type(session: AsyncSession) -> list[tuple[EventType, int]]:
            total = func.count(AuditEvent.id).label("total")
            result = await session.execute(
                select(AuditEvent.event_type, total)
                .where(AuditEvent.occurred_at >= start, AuditEvent.occurred_at <= end)
                .group_by(AuditEvent.event_type)
                .order_by(total.desc())
            )
            return [(row[0], row[1]) for row in result.all()]

        return await self._read("count_by_type", _by_type)

    async def compliance_counts(
        self, start: datetime, end: datetime, now: datetime
    ) -> ComplianceRow:
        def _count(condition: Any) -> Any:
            return func.count(case((condition, 1)))

        async def _compliance(session: AsyncSession) -> ComplianceRow:
            result = await session.execute(
                select(
                    func.count(AuditEvent.id),
                    _count(AuditEvent.event_type == EventType.DATA_ACCESSED),
                    _count(AuditEvent.event_type.in_(_EXPORT_TYPES)),
                    _count(AuditEvent.event_type == EventType.RIGHT_TO_BE_FORGOTTEN),
                    _count(AuditEvent.event_type == EventType.DATA_ANONYMIZED),
                    _count(AuditEvent.event_type.in_(_UNAUTHORIZED_TYPES)),
                    _count(
                        (AuditEvent.retention_until < now)
                        & (AuditEvent.status != EventStatus.EXPIRED)
                    ),
                    _count(
                        (AuditEvent.status == EventStatus.FAILED)
                        & (AuditEvent.severity == Severity.CRITICAL)
                    ),
                ).where(AuditEvent.occurred_at >= start, AuditEvent.occurred_at <= end)
            )
            return ComplianceRow(*result.one())

        return await self._read("compliance_counts", _compliance)

    async def most_active_actors(
        self, since: datetime, limit: int
    ) -> list[tuple[str, str | None, int, datetime]]:
        async def _actors(session: AsyncSession) -> list[tuple[str, str | None, int, datetime]]:
            total = func.count(AuditEvent.id).label("total")
            result = await session.execute(
                select(
                    AuditEvent.actor_id,
                    func.max(AuditEvent.actor_name),
                    total,
                    func.max(AuditEvent.occurred_at),
                )
                .where(AuditEvent.occurred_at >= since)
                .group_by(AuditEvent.actor_id)
                .order_by(total.desc())
                .limit(limit)
            )
            return [(r[0], r[1], r[2], r[3]) for r in result.all()]

        return await self._read("most_active_actors", _actors)

    async def count_critical_unprocessed(self, now: datetime) -> int:
        async def _critical(session: AsyncSession) -> int:
            result = await session.execute(
                select(func.count(AuditEvent.id)).where(
                    AuditEvent.severity.in_([Severity.ERROR, Severity.CRITICAL]),
                    AuditEvent.status.in_([EventStatus.CREATED, EventStatus.FAILED]),
                    AuditEvent.occurred_at >= now - timedelta(hours=24),
                )
            )
            return result.scalar_one()

        return await self._read("count_critical_unprocessed", _critical)

    async def count_since(self, start: datetime) -> int:
        async def _count(session: AsyncSession) -> int:
            result = await session.execute(
                select(func.count(AuditEvent.id)).where(AuditEvent.occurred_at >= start)
            )
            return result.scalar_one()

        return await self._read("count_since", _count)

    # ── Helpers ──────────────────────────────────────────────────────── #

    async def _read(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async with self._factory() as session:
                return await fn(session)
        except SQLAlchemyError as exc:
            _log.error("audit_store_read_failed", operation=operation, error=str(exc))
            raise PersistenceFailure(operation) from exc

    async def _paginate(self, operation: str, filters: list, page: int, page_size: int) -> Page:
        async def _page(session: AsyncSession) -> Page:
            query = select(AuditEvent).where(*filters)
            count = await session.execute(select(func.count()).select_from(query.subquery()))
            result = await session.execute(
                query.order_by(AuditEvent.sequence.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return Page(
                items=list(result.scalars().all()),
                total=count.scalar_one(),
                page=page,
                page_size=page_size,
            )

        return await self._read(operation, _page)
