"""
Unit tests for the BroadcastHub.

Tests:
- Online counter
- Topic fan-out and unsubscribe
- Drop-oldest policy for slow subscribers
- Snapshots
"""

import asyncio
import logging
import threading

import pytest

from racer.pubsub.hub import (
    LEADERBOARD_TOPIC,
    ONLINE_TOPIC,
    BroadcastHub,
    BroadcastTopic,
    OnlineCounter,
)


class TestOnlineCounter:
    """Test OnlineCounter."""

    def test_increment_decrement(self):
        counter = OnlineCounter()
        counter.increment()
        counter.increment()
        counter.decrement()

        assert counter.value == 1

    def test_never_negative(self):
        counter = OnlineCounter()
        counter.decrement()

        assert counter.value == 0

    def test_thread_safe(self):
        counter = OnlineCounter()

        def work():
            for _ in range(1000):
                counter.increment()

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter.value == 4000


class TestBroadcastTopic:
    """Test topic fan-out."""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives(self):
        topic = BroadcastTopic("leaderboard")
        first = topic.subscribe()
        second = topic.subscribe()

        assert topic.publish("m1") == 2
        assert await first.get() == "m1"
        assert await second.get() == "m1"

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        topic = BroadcastTopic("online")
        subscription = topic.subscribe()
        subscription.close()

        assert topic.subscriber_count == 0
        assert topic.publish("m1") == 0

    @pytest.mark.asyncio
    async def test_context_manager_unsubscribes(self):
        topic = BroadcastTopic("online")
        async with topic.subscribe():
            assert topic.subscriber_count == 1
        assert topic.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self, caplog):
        """A slow subscriber loses its oldest messages; publish never blocks."""
        topic = BroadcastTopic("leaderboard", capacity=2)
        subscription = topic.subscribe()

        with caplog.at_level(logging.WARNING):
            for message in ("m1", "m2", "m3"):
                topic.publish(message)

        assert subscription.dropped == 1
        assert topic.get_stats()["dropped"] == 1
        assert await subscription.get() == "m2"
        assert await subscription.get() == "m3"
        assert "dropped oldest" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_affect_others(self):
        topic = BroadcastTopic("leaderboard", capacity=1)
        slow = topic.subscribe()
        fast = topic.subscribe()

        topic.publish("m1")
        assert await fast.get() == "m1"
        topic.publish("m2")

        assert await fast.get() == "m2"
        assert slow.dropped == 1

    @pytest.mark.asyncio
    async def test_get_waits_for_publish(self):
        topic = BroadcastTopic("online")
        subscription = topic.subscribe()

        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        assert not waiter.done()

        topic.publish("m1")
        assert await asyncio.wait_for(waiter, timeout=1) == "m1"

    @pytest.mark.asyncio
    async def test_iteration_ends_on_close(self):
        topic = BroadcastTopic("online")
        subscription = topic.subscribe()
        topic.publish("m1")

        received = []

        async def consume():
            async for message in subscription:
                received.append(message)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        subscription.close()
        await asyncio.wait_for(task, timeout=1)

        assert received == ["m1"]


class TestBroadcastHub:
    """Test hub topics and snapshots."""

    def test_topics(self):
        hub = BroadcastHub()
        assert hub.topics == [ONLINE_TOPIC, LEADERBOARD_TOPIC]

    def test_unknown_topic(self):
        with pytest.raises(KeyError):
            BroadcastHub().subscribe("prices")

    @pytest.mark.asyncio
    async def test_snapshot_starts_empty(self):
        hub = BroadcastHub()
        assert await hub.get_snapshot(LEADERBOARD_TOPIC) is None

    @pytest.mark.asyncio
    async def test_publish_with_snapshot(self):
        hub = BroadcastHub()
        subscription = hub.subscribe(LEADERBOARD_TOPIC)

        await hub.publish(LEADERBOARD_TOPIC, "board-1", snapshot=True)

        assert await hub.get_snapshot(LEADERBOARD_TOPIC) == "board-1"
        assert await subscription.get() == "board-1"

    @pytest.mark.asyncio
    async def test_publish_without_snapshot_keeps_old(self):
        hub = BroadcastHub()
        await hub.set_snapshot(LEADERBOARD_TOPIC, "board-1")

        await hub.publish(LEADERBOARD_TOPIC, "board-2")

        assert await hub.get_snapshot(LEADERBOARD_TOPIC) == "board-1"

    def test_stats(self):
        hub = BroadcastHub()
        hub.online.increment()
        hub.subscribe(ONLINE_TOPIC)

        stats = hub.get_stats()
        assert stats["online"] == 1
        assert stats["topics"][ONLINE_TOPIC]["subscribers"] == 1
