"""Unit tests for the Redis cache-aside accelerator."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from auditchain.core.errors import DownstreamDegraded
from auditchain.db.base import utcnow
from auditchain.db.models.audit import EventType
from auditchain.services.cache.accelerator import (
    CacheAccelerator,
    actor_index_key,
    event_key,
    timeline_key,
    tombstone_key,
)
from factories import event_out

pytestmark = pytest.mark.asyncio


class SlowRedis:
    async def get(self, key):
        await asyncio.sleep(5)


@pytest.fixture
def cache(redis, settings) -> CacheAccelerator:
    return CacheAccelerator(redis, settings)


# ─── Single events ────────────────────────────────────────────────────────────

async def test_miss_then_hit(cache):
    assert await cache.get_event("evt-1") is None
    assert await cache.put(event_out())

    cached = await cache.get_event("evt-1")

    assert cached is not None
    assert cached.actor_name == "Ana Souza"
    assert cached.after_state == {"email": "ana@example.com"}
    stats = cache.stats()
    assert (stats.hits, stats.misses) == (1, 1)
    assert stats.hit_ratio == 0.5


async def test_recent_events_get_short_ttl(cache, redis, settings):
    await cache.put(event_out())
    ttl = await redis.ttl(event_key("evt-1"))
    assert 0 < ttl <= settings.cache_ttl_recent_seconds


async def test_old_events_get_long_ttl(cache, redis, settings):
    await cache.put(event_out(occurred_at=utcnow() - timedelta(days=2)))
    ttl = await redis.ttl(event_key("evt-1"))
    assert settings.cache_ttl_recent_seconds < ttl <= settings.cache_ttl_old_seconds


async def test_put_indexes_key_under_actor(cache, redis):
    await cache.put(event_out())
    assert await redis.smembers(actor_index_key("u1")) == {event_key("evt-1")}


async def test_corrupt_entry_is_a_miss(cache, redis):
    await redis.set(event_key("evt-1"), "{not json")
    assert await cache.get_event("evt-1") is None


# ─── Timelines ────────────────────────────────────────────────────────────────

async def test_timeline_round_trip_keeps_order(cache, redis, settings):
    events = [event_out(id=f"e{i}", sequence=i) for i in range(1, 4)]
    assert await cache.put_timeline("customer", "c1", events)

    cached = await cache.get_timeline("customer", "c1")

    assert [e.id for e in cached] == ["e1", "e2", "e3"]
    ttl = await redis.ttl(timeline_key("customer", "c1"))
    assert 0 < ttl <= settings.cache_ttl_timeline_seconds


async def test_invalidate_timeline(cache):
    await cache.put_timeline("customer", "c1", [event_out()])
    await cache.invalidate_timeline("customer", "c1")
    assert await cache.get_timeline("customer", "c1") is None


# ─── Actor invalidation ───────────────────────────────────────────────────────

async def test_invalidate_for_actor_drops_events_and_timelines(cache, redis):
    await cache.put(event_out(id="e1"))
    await cache.put(event_out(id="e2", actor_id="u2"))
    await cache.put_timeline("customer", "c1", [event_out(id="e1")])

    removed = await cache.invalidate_for_actor("u1")

    assert removed == 2
    assert await cache.get_event("e1") is None
    assert await cache.get_timeline("customer", "c1") is None
    assert await cache.get_event("e2") is not None
    assert not await redis.exists(actor_index_key("u1"))


async def test_tombstone_blocks_stale_personal_data(cache, redis):
    await cache.invalidate_for_actor("u1")
    assert await redis.exists(tombstone_key("u1"))

    assert not await cache.put(event_out())
    assert not await cache.put_timeline("customer", "c1", [event_out()])
    assert await cache.get_event("evt-1") is None


async def test_tombstone_admits_scrubbed_and_non_personal_events(cache):
    await cache.invalidate_for_actor("u1")

    assert await cache.put(event_out(id="e1", anonymized=True, actor_name="ANONYMIZED"))
    assert await cache.put(
        event_out(id="e2", event_type=EventType.LOGIN_SUCCESS, contains_personal_data=False)
    )


async def test_put_that_races_invalidation_is_discarded(cache, redis, monkeypatch):
    checked = asyncio.Event()
    release = asyncio.Event()
    check = cache._scrubbed

    async def paused_check(pipe, tombstones):
        scrubbed = await check(pipe, tombstones)
        checked.set()
        await release.wait()
        return scrubbed

    monkeypatch.setattr(cache, "_scrubbed", paused_check)
    put = asyncio.create_task(cache.put(event_out()))
    await checked.wait()

    assert await cache.invalidate_for_actor("u1") == 0
    release.set()

    assert await put is False
    assert not await redis.exists(event_key("evt-1"))
    assert not await redis.exists(actor_index_key("u1"))


async def test_quarantined_actor_is_not_served_until_purge_succeeds(cache, redis, redis_server):
    await cache.put(event_out())
    await cache.put(event_out(id="e2", actor_id="u2"))
    redis_server.connected = False
    with pytest.raises(DownstreamDegraded):
        await cache.invalidate_for_actor("u1")
    redis_server.connected = True

    assert await redis.exists(event_key("evt-1"))
    assert await cache.get_event("evt-1") is None
    assert await cache.put(event_out(id="e3")) is False
    assert await cache.get_event("e2") is not None

    assert await cache.retry_quarantined() == 1
    assert cache.quarantined == frozenset()
    assert not await redis.exists(event_key("evt-1"))
    assert await redis.exists(tombstone_key("u1"))


# ─── Maintenance ──────────────────────────────────────────────────────────────

async def test_clear_removes_only_audit_keys(cache, redis):
    await cache.put(event_out())
    await redis.set("other:key", "1")

    removed = await cache.clear()

    assert removed >= 2
    assert await redis.get("other:key") == "1"
    assert [k async for k in redis.scan_iter(match="audit:*")] == []


async def test_warm_only_caches_critical_events(cache):
    warmed = await cache.warm(
        [
            event_out(id="critical", event_type=EventType.DATA_ACCESSED),
            event_out(id="routine", event_type=EventType.LOGIN_SUCCESS),
        ]
    )
    assert warmed == 1
    assert await cache.get_event("critical") is not None
    assert await cache.get_event("routine") is None


# ─── Degradation ──────────────────────────────────────────────────────────────

async def test_unreachable_redis_degrades_to_miss(cache, redis_server):
    redis_server.connected = False

    assert await cache.put(event_out()) is False
    assert await cache.get_event("evt-1") is None
    assert await cache.get_timeline("customer", "c1") is None


async def test_failed_actor_purge_raises_and_quarantines(cache, redis_server):
    redis_server.connected = False

    with pytest.raises(DownstreamDegraded) as exc_info:
        await cache.invalidate_for_actor("u1")

    assert exc_info.value.detail == {"component": "cache", "operation": "invalidate_for_actor"}
    assert cache.quarantined == {"u1"}


async def test_slow_redis_is_bounded_by_timeout(settings):
    cache = CacheAccelerator(SlowRedis(), settings.model_copy(update={"redis_timeout_seconds": 0.05}))
    assert await asyncio.wait_for(cache.get_event("evt-1"), timeout=1) is None


async def test_disabled_cache_is_always_a_miss(redis, settings):
    cache = CacheAccelerator(redis, settings.model_copy(update={"cache_enabled": False}))
    assert not cache.enabled
    assert await cache.put(event_out()) is False
    assert await cache.get_event("evt-1") is None
