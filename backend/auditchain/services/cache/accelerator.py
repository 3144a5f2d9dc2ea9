"""
Cache-aside accelerator backed by Redis.

Advisory only: every failure or timeout degrades to a logged miss and
never reaches the caller. Chain verification never reads from here.

Keys:
  audit:event:{id}                   single event (TTL tier by event age)
  audit:timeline:{type}:{id}         whole timeline, recomputed on miss
  audit:stats:{since}                resume statistics
  audit:actor:{actor_id}             set of keys holding that actor's data
  audit:scrubbed:{actor_id}          tombstone left by an anonymization

Writes of entries carrying unscrubbed personal data WATCH the tombstone
of every actor involved, so a read that raced an anonymization is
discarded by Redis instead of re-caching pre-scrub data.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

import structlog
from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaError
from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError, WatchError

from auditchain.config.settings import Settings
from auditchain.core.errors import DownstreamDegraded
from auditchain.core.metrics import CACHE_REQUESTS, DOWNSTREAM_DEGRADED
from auditchain.db.base import as_utc, utcnow
from auditchain.db.models.audit import AuditEvent
from auditchain.schemas.audit import AuditEventOut, ResumeStats
from auditchain.services.retention.policy import policy_for

_log = structlog.get_logger(__name__)

T = TypeVar("T")

PREFIX = "audit:"

_timeline_adapter = TypeAdapter(list[AuditEventOut])


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    evictions: int

    @property
    def hit_ratio(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


def event_key(event_id: str) -> str:
    return f"{PREFIX}event:{event_id}"


def timeline_key(entity_type: str, entity_id: str) -> str:
    return f"{PREFIX}timeline:{entity_type}:{entity_id}"


def stats_key(since: datetime) -> str:
    return f"{PREFIX}stats:{as_utc(since).isoformat()}"


def actor_index_key(actor_id: str) -> str:
    return f"{PREFIX}actor:{actor_id}"


def tombstone_key(actor_id: str) -> str:
    return f"{PREFIX}scrubbed:{actor_id}"


def _as_out(event: AuditEvent | AuditEventOut) -> AuditEventOut:
    if isinstance(event, AuditEventOut):
        return event
    return AuditEventOut.model_validate(event)


class CacheAccelerator:
    """
    Read-through cache for events, entity timelines and statistics.

    A ``None`` client (or ``cache_enabled=False``) turns every operation
    into a miss, which is the same behaviour callers see when Redis is down.
    """

    def __init__(self, redis: Redis | None, settings: Settings) -> None:
        self._redis = redis if settings.cache_enabled else None
        self._settings = settings
        self._timeout = settings.redis_timeout_seconds
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        # Actors whose post-anonymization purge failed; their cached
        # personal data is not served by this process until it succeeds
        self._quarantined: set[str] = set()

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    # ── Single events ────────────────────────────────────────────────── #

    async def get_event(self, event_id: str) -> AuditEventOut | None:
        if self._redis is None:
            return None
        raw = await self._guard("get_event", self._redis.get(event_key(event_id)))
        if raw is None:
            self._record("event", hit=False)
            return None
        try:
            cached = AuditEventOut.model_validate_json(raw)
        except SchemaError:
            _log.warning("cache_entry_corrupt", key=event_key(event_id))
            self._record("event", hit=False)
            return None
        if self._quarantined_actors([cached]):
            self._record("event", hit=False)
            return None
        self._record("event", hit=True)
        return cached

    async def put(self, event: AuditEvent | AuditEventOut) -> bool:
        """Cache one event; returns False when skipped or Redis is unavailable."""
        if self._redis is None:
            return False
        out = _as_out(event)
        ok = await self._guard(
            "put",
            self._write(
                self._redis, [out], event_key(out.id), self._event_ttl(out), out.model_dump_json()
            ),
        )
        return bool(ok)

    def _event_ttl(self, event: AuditEventOut) -> int:
        age = (utcnow() - as_utc(event.occurred_at)).total_seconds()
        if age < self._settings.cache_recent_window_seconds:
            return self._settings.cache_ttl_recent_seconds
        return self._settings.cache_ttl_old_seconds

    async def delete_events(self, event_ids: Iterable[str]) -> int:
        if self._redis is None:
            return 0
        keys = [event_key(event_id) for event_id in event_ids]
        if not keys:
            return 0
        removed = await self._guard("delete_events", self._redis.delete(*keys))
        self._evictions += removed or 0
        return removed or 0

    async def warm(self, events: Iterable[AuditEvent | AuditEventOut]) -> int:
        """Pre-populate entries for critical events."""
        warmed = 0
        for event in events:
            if policy_for(event.event_type).is_critical and await self.put(event):
                warmed += 1
        _log.info("cache_warmed", entries=warmed)
        return warmed

    # ── Timelines ────────────────────────────────────────────────────── #

    async def get_timeline(self, entity_type: str, entity_id: str) -> list[AuditEventOut] | None:
        if self._redis is None:
            return None
        key = timeline_key(entity_type, entity_id)
        raw = await self._guard("get_timeline", self._redis.get(key))
        if raw is None:
            self._record("timeline", hit=False)
            return None
        try:
            cached = _timeline_adapter.validate_json(raw)
        except SchemaError:
            _log.warning("cache_entry_corrupt", key=key)
            self._record("timeline", hit=False)
            return None
        if self._quarantined_actors(cached):
            self._record("timeline", hit=False)
            return None
        self._record("timeline", hit=True)
        return cached

    async def put_timeline(
        self, entity_type: str, entity_id: str, events: list[AuditEvent | AuditEventOut]
    ) -> bool:
        """Store the whole ordered timeline; never appended to incrementally."""
        if self._redis is None:
            return False
        outs = [_as_out(e) for e in events]
        ok = await self._guard(
            "put_timeline",
            self._write(
                self._redis,
                outs,
                timeline_key(entity_type, entity_id),
                self._settings.cache_ttl_timeline_seconds,
                _timeline_adapter.dump_json(outs),
            ),
        )
        return bool(ok)

    async def invalidate_timeline(self, entity_type: str, entity_id: str) -> None:
        if self._redis is None:
            return
        removed = await self._guard(
            "invalidate_timeline", self._redis.delete(timeline_key(entity_type, entity_id))
        )
        self._evictions += removed or 0

    async def invalidate_timelines(self, targets: Iterable[tuple[str, str]]) -> None:
        if self._redis is None:
            return
        keys = [timeline_key(entity_type, entity_id) for entity_type, entity_id in set(targets)]
        if not keys:
            return
        removed = await self._guard("invalidate_timelines", self._redis.delete(*keys))
        self._evictions += removed or 0

    # ── Statistics ───────────────────────────────────────────────────── #

    async def get_stats(self, since: datetime) -> ResumeStats | None:
        if self._redis is None:
            return None
        raw = await self._guard("get_stats", self._redis.get(stats_key(since)))
        if raw is None:
            self._record("stats", hit=False)
            return None
        try:
            cached = ResumeStats.model_validate_json(raw)
        except SchemaError:
            self._record("stats", hit=False)
            return None
        self._record("stats", hit=True)
        return cached

    async def put_stats(self, stats: ResumeStats) -> None:
        if self._redis is None:
            return
        await self._guard(
            "put_stats",
            self._redis.setex(
                stats_key(stats.since),
                self._settings.cache_ttl_stats_seconds,
                stats.model_dump_json(),
            ),
        )

    # ── Invalidation ─────────────────────────────────────────────────── #

    async def invalidate_for_actor(self, actor_id: str) -> int:
        """
        Drop every cached entry holding this actor's data.

        Unlike the rest of this class a failure here is not advisory: the
        purge is retried, and if Redis still fails the actor stays
        quarantined in this process and DownstreamDegraded is raised.
        """
        redis = self._redis
        if redis is None:
            return 0
        self._quarantined.add(actor_id)
        attempts = self._settings.cache_invalidation_attempts
        for attempt in range(1, attempts + 1):
            try:
                removed = await asyncio.wait_for(
                    self._invalidate_actor(redis, actor_id), timeout=self._timeout
                )
            except (RedisError, TimeoutError, OSError) as exc:
                DOWNSTREAM_DEGRADED.labels(component="cache", operation="invalidate_for_actor").inc()
                _log.warning(
                    "cache_actor_invalidation_failed",
                    actor_id=actor_id,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(exc) or type(exc).__name__,
                )
                if attempt < attempts:
                    await asyncio.sleep(self._settings.cache_invalidation_backoff_seconds * attempt)
                continue
            self._quarantined.discard(actor_id)
            self._evictions += removed
            _log.info("cache_actor_invalidated", actor_id=actor_id, removed=removed)
            return removed

        raise DownstreamDegraded(
            "cache",
            "invalidate_for_actor",
            f"Cached entries of actor {actor_id} could not be purged",
        )

    async def _invalidate_actor(self, redis: Redis, actor_id: str) -> int:
        # Tombstone first: a put that lands after it is refused, one that
        # landed before it is already listed in the index
        await redis.setex(tombstone_key(actor_id), self._settings.cache_ttl_old_seconds, "1")
        index = actor_index_key(actor_id)
        keys = list(await redis.smembers(index))
        async with redis.pipeline(transaction=True) as pipe:
            if keys:
                pipe.delete(*keys)
            pipe.delete(index)
            results = await pipe.execute()
        return int(results[0]) if keys else 0

    @property
    def quarantined(self) -> frozenset[str]:
        return frozenset(self._quarantined)

    async def retry_quarantined(self) -> int:
        """Retry the purge for every quarantined actor; returns how many succeeded."""
        purged = 0
        for actor_id in sorted(self._quarantined):
            try:
                await self.invalidate_for_actor(actor_id)
            except DownstreamDegraded:
                continue
            purged += 1
        return purged

    async def clear(self) -> int:
        """Remove every key under the audit prefix."""
        if self._redis is None:
            return 0
        removed = await self._guard("clear", self._clear(self._redis))
        self._evictions += removed or 0
        _log.info("cache_cleared", removed=removed or 0)
        return removed or 0

    async def _clear(self, redis: Redis) -> int:
        removed = 0
        batch: list[str] = []
        async for key in redis.scan_iter(match=f"{PREFIX}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += await redis.delete(*batch)
                batch = []
        if batch:
            removed += await redis.delete(*batch)
        return removed

    def stats(self) -> CacheStats:
        return CacheStats(hits=self._hits, misses=self._misses, evictions=self._evictions)

    # ── Helpers ──────────────────────────────────────────────────────── #

    async def _write(
        self, redis: Redis, events: list[AuditEventOut], key: str, ttl: int, payload: str | bytes
    ) -> bool:
        """
        SETEX ``key`` and index it under every actor in ``events``.

        Refused when an actor with unscrubbed personal data in ``events``
        carries a tombstone, or gets one before the write commits.
        """
        actors = _unscrubbed_actors(events)
        if actors & self._quarantined:
            _log.debug("cache_put_skipped_quarantined_actor", key=key)
            return False
        tombstones = [tombstone_key(a) for a in sorted(actors)]
        async with redis.pipeline(transaction=True) as pipe:
            try:
                if tombstones:
                    await pipe.watch(*tombstones)
                    if await self._scrubbed(pipe, tombstones):
                        _log.debug("cache_put_skipped_scrubbed_actor", key=key)
                        return False
                    pipe.multi()
                pipe.setex(key, ttl, payload)
                for actor_id in {e.actor_id for e in events}:
                    self._index(pipe, actor_id, key)
                await pipe.execute()
            except WatchError:
                _log.info("cache_put_raced_anonymization", key=key)
                return False
        return True

    async def _scrubbed(self, pipe: Pipeline, tombstones: list[str]) -> bool:
        return await pipe.exists(*tombstones) > 0

    def _index(self, pipe: Any, actor_id: str, key: str) -> None:
        index = actor_index_key(actor_id)
        pipe.sadd(index, key)
        # Index outlives every entry it points at
        pipe.expire(index, self._settings.cache_ttl_old_seconds)

    def _quarantined_actors(self, events: list[AuditEventOut]) -> set[str]:
        if not self._quarantined:
            return set()
        return _unscrubbed_actors(events) & self._quarantined

    def _record(self, kind: str, hit: bool) -> None:
        if hit:
            self._hits += 1
        else:
            self._misses += 1
        CACHE_REQUESTS.labels(kind=kind, result="hit" if hit else "miss").inc()

    async def _guard(self, operation: str, call: Awaitable[T]) -> T | None:
        """Bound a Redis round trip by the configured timeout and swallow failures."""
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except (RedisError, TimeoutError, OSError) as exc:
            DOWNSTREAM_DEGRADED.labels(component="cache", operation=operation).inc()
            _log.warning("cache_operation_failed", operation=operation, error=str(exc) or type(exc).__name__)
            return None


def _unscrubbed_actors(events: Iterable[AuditEventOut]) -> set[str]:
    return {e.actor_id for e in events if e.contains_personal_data and not e.anonymized}
