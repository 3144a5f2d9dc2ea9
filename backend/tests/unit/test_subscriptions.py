"""Unit tests for the reference-counted subscription registry."""
from __future__ import annotations

from auditchain.db.models.audit import EventType
from auditchain.services.streaming.subscriptions import SubscriptionRegistry, filter_key
from factories import event_out


def test_filter_key():
    assert filter_key() == "all"
    assert filter_key(actor_id="u1") == "actor:u1"
    assert filter_key(event_type="auth.logout") == "type:auth.logout"


async def test_channel_created_on_first_subscribe_and_reaped_on_last_leave():
    registry = SubscriptionRegistry()
    async with registry.subscribe("actor:u1"):
        assert registry.channel_keys == ["actor:u1"]
        async with registry.subscribe("actor:u1"):
            assert registry.subscriber_count("actor:u1") == 2
        assert registry.subscriber_count("actor:u1") == 1
    assert registry.channel_keys == []
    assert registry.subscriber_count("actor:u1") == 0


async def test_publish_routes_by_filter():
    registry = SubscriptionRegistry()
    event = event_out(actor_id="u1", event_type=EventType.DATA_ACCESSED)
    async with (
        registry.subscribe("all") as everyone,
        registry.subscribe("actor:u1") as mine,
        registry.subscribe("actor:u2") as theirs,
        registry.subscribe("type:data.accessed") as by_type,
    ):
        delivered = registry.publish(event)
        assert delivered == 3
        assert everyone.get_nowait().id == event.id
        assert mine.get_nowait().id == event.id
        assert by_type.get_nowait().id == event.id
        assert theirs.empty()


async def test_full_queue_drops_without_blocking():
    registry = SubscriptionRegistry(queue_size=1)
    async with registry.subscribe("all") as queue:
        registry.publish(event_out(id="e1"))
        registry.publish(event_out(id="e2"))
        assert queue.qsize() == 1
        assert registry.dropped == 1


async def test_publish_without_subscribers_is_noop():
    assert SubscriptionRegistry().publish(event_out()) == 0
