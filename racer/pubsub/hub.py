"""
Broadcast Hub

Process-wide fan-out shared by publishers and connection routers:
- OnlineCounter: number of open client connections
- BroadcastTopic per subscription type, one bounded queue per subscriber
- Latest snapshot per topic for late joiners

The hub is constructed explicitly and passed to its users.
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set


ONLINE_TOPIC = "online"
LEADERBOARD_TOPIC = "leaderboard"

DEFAULT_SUBSCRIBER_CAPACITY = 10_000


class OnlineCounter:
    """Thread-safe connection counter."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def decrement(self) -> int:
        with self._lock:
            if self._value > 0:
                self._value -= 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class TopicSubscription:
    """
    One subscriber's view of a topic.

    Messages queue up to `capacity`; when full the oldest is dropped so a slow
    subscriber never blocks the publisher.
    """

    def __init__(self, topic: "BroadcastTopic", capacity: int):
        self._topic = topic
        self._capacity = capacity
        self._messages: Deque[Any] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return len(self._messages)

    def _offer(self, message: Any) -> bool:
        """Queue a message. Returns False when an older message was dropped for it."""
        if self._closed:
            return True
        dropped = False
        if len(self._messages) >= self._capacity:
            self._messages.popleft()
            self.dropped += 1
            dropped = True
        self._messages.append(message)
        self._ready.set()
        return not dropped

    async def get(self) -> Any:
        """Next message; StopAsyncIteration once closed and drained."""
        while not self._messages:
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()
        return self._messages.popleft()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._topic._unsubscribe(self)
        self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class BroadcastTopic:
    """Named fan-out channel."""

    def __init__(self, name: str, capacity: int = DEFAULT_SUBSCRIBER_CAPACITY, logger: logging.Logger = None):
        self.name = name
        self._capacity = capacity
        self._subscribers: Set[TopicSubscription] = set()
        self._logger = logger or logging.getLogger("BroadcastTopic")
        self._stats = {
            "published": 0,
            "dropped": 0,
        }

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> TopicSubscription:
        subscription = TopicSubscription(self, self._capacity)
        self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: TopicSubscription):
        self._subscribers.discard(subscription)

    def publish(self, message: Any) -> int:
        """Deliver to every subscriber without blocking. Returns receivers."""
        self._stats["published"] += 1
        subscribers = list(self._subscribers)
        for subscription in subscribers:
            if not subscription._offer(message):
                self._stats["dropped"] += 1
                self._logger.warning(
                    f"Topic {self.name}: subscriber queue full, dropped oldest message "
                    f"({subscription.dropped} dropped for this subscriber)"
                )
        return len(subscribers)

    def get_stats(self) -> Dict:
        stats = dict(self._stats)
        stats["subscribers"] = self.subscriber_count
        return stats


class BroadcastHub:
    """
    Shared state between publishers and connections.

    Usage:
        hub = BroadcastHub()
        async with hub.subscribe("leaderboard") as subscription:
            async for message in subscription:
                ...
        await hub.publish("leaderboard", payload, snapshot=True)
    """

    TOPICS = (ONLINE_TOPIC, LEADERBOARD_TOPIC)

    def __init__(self, capacity: int = DEFAULT_SUBSCRIBER_CAPACITY, logger: logging.Logger = None):
        self._logger = logger or logging.getLogger("BroadcastHub")
        self.online = OnlineCounter()
        self._topics: Dict[str, BroadcastTopic] = {
            name: BroadcastTopic(name, capacity, self._logger) for name in self.TOPICS
        }
        self._snapshots: Dict[str, Optional[Any]] = {name: None for name in self.TOPICS}
        self._snapshot_locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self.TOPICS}

    def topic(self, name: str) -> BroadcastTopic:
        try:
            return self._topics[name]
        except KeyError:
            raise KeyError(f"unknown topic {name!r}") from None

    @property
    def topics(self) -> List[str]:
        return list(self._topics)

    def subscribe(self, name: str) -> TopicSubscription:
        return self.topic(name).subscribe()

    def subscriber_count(self, name: str) -> int:
        return self.topic(name).subscriber_count

    async def get_snapshot(self, name: str) -> Optional[Any]:
        self.topic(name)
        async with self._snapshot_locks[name]:
            return self._snapshots[name]

    async def set_snapshot(self, name: str, payload: Any):
        self.topic(name)
        async with self._snapshot_locks[name]:
            self._snapshots[name] = payload

    async def publish(self, name: str, payload: Any, snapshot: bool = False) -> int:
        """Optionally replace the topic snapshot, then broadcast."""
        topic = self.topic(name)
        if snapshot:
            await self.set_snapshot(name, payload)
        return topic.publish(payload)

    def get_stats(self) -> Dict:
        return {
            "online": self.online.value,
            "topics": {name: topic.get_stats() for name, topic in self._topics.items()},
        }
