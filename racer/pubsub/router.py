"""
Subscription Router

One router per client connection:
- Inbound loop: subscription requests from the client
- Outbound loop: drains a private bounded queue to the client
- One forwarder task per subscribed topic, relaying hub messages

Each request replaces the whole subscription set. A malformed request is
answered with the parse error and the connection stays open.
"""

import asyncio
import logging
from typing import Dict, FrozenSet, Iterable, Optional, Protocol

from .hub import LEADERBOARD_TOPIC, ONLINE_TOPIC, BroadcastHub
from .messages import SubscriptionParseError, online_payload, parse_subscription_request


DEFAULT_OUTBOUND_CAPACITY = 1000


class Connection(Protocol):
    """Text transport for one client."""

    async def receive_text(self) -> Optional[str]:
        """Next text frame, or None once the client has gone away."""
        ...

    async def send_text(self, message: str) -> None:
        ...


class SubscriptionRouter:
    """
    Per-connection state machine.

    State is {active_topics, forwarder tasks}; replace_subscriptions() is the
    only place it changes.

    Usage:
        router = SubscriptionRouter(hub, connection)
        await router.run()  # returns when the connection closes
    """

    def __init__(
        self,
        hub: BroadcastHub,
        connection: Connection,
        outbound_capacity: int = DEFAULT_OUTBOUND_CAPACITY,
        name: str = "client",
        logger: logging.Logger = None
    ):
        self._hub = hub
        self._connection = connection
        self._name = name
        self._logger = logger or logging.getLogger("SubscriptionRouter")
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=outbound_capacity)

        self._active_topics: FrozenSet[str] = frozenset()
        self._forwarders: Dict[str, asyncio.Task] = {}
        self._replace_lock = asyncio.Lock()
        self._counted = False

        self._stats = {
            "requests": 0,
            "parse_errors": 0,
            "messages_sent": 0,
        }

    @property
    def active_topics(self) -> FrozenSet[str]:
        return self._active_topics

    @property
    def forwarder_count(self) -> int:
        return sum(1 for task in self._forwarders.values() if not task.done())

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def run(self):
        self._hub.online.increment()
        self._counted = True
        self._logger.debug(f"{self._name}: connected (online={self._hub.online.value})")

        tasks = [
            asyncio.create_task(self._outbound_loop()),
            asyncio.create_task(self._inbound_loop()),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self._logger.debug(f"{self._name}: connection loop ended: {result}")
            await self._cancel_forwarders()
            self._active_topics = frozenset()
            if self._counted:
                self._counted = False
                self._hub.online.decrement()
            self._logger.debug(f"{self._name}: disconnected (online={self._hub.online.value})")

    async def _inbound_loop(self):
        while True:
            raw = await self._connection.receive_text()
            if raw is None:
                return
            await self.handle_message(raw)

    async def _outbound_loop(self):
        while True:
            message = await self._outbound.get()
            await self._connection.send_text(message)
            self._stats["messages_sent"] += 1

    # =========================================================================
    # Requests
    # =========================================================================

    async def handle_message(self, raw: str):
        self._stats["requests"] += 1
        try:
            request = parse_subscription_request(raw)
        except SubscriptionParseError as e:
            self._stats["parse_errors"] += 1
            self._logger.debug(f"{self._name}: bad subscription request: {e}")
            await self._outbound.put(str(e))
            return

        self._logger.info(
            f"{self._name}: address {request.address} subscribed to {request.topics}"
        )
        await self.replace_subscriptions(request.topics)

    async def replace_subscriptions(self, topics: Iterable[str]):
        """Cancel every forwarder, then start one per requested topic."""
        topics = frozenset(topics)
        for topic in topics:
            self._hub.topic(topic)

        async with self._replace_lock:
            await self._cancel_forwarders()
            self._forwarders = {
                topic: asyncio.create_task(self._forward(topic))
                for topic in sorted(topics)
            }
            self._active_topics = topics

    async def _cancel_forwarders(self):
        forwarders, self._forwarders = self._forwarders, {}
        for task in forwarders.values():
            task.cancel()
        if forwarders:
            await asyncio.gather(*forwarders.values(), return_exceptions=True)

    # =========================================================================
    # Forwarding
    # =========================================================================

    async def _initial_message(self, topic: str) -> Optional[str]:
        if topic == ONLINE_TOPIC:
            return online_payload(self._hub.online.value)
        if topic == LEADERBOARD_TOPIC:
            return await self._hub.get_snapshot(LEADERBOARD_TOPIC)
        return None

    async def _forward(self, topic: str):
        # Subscribe before reading the initial value so nothing published in between is lost
        subscription = self._hub.subscribe(topic)
        try:
            initial = await self._initial_message(topic)
            if initial is not None:
                await self._outbound.put(initial)
            async for message in subscription:
                await self._outbound.put(message)
        finally:
            subscription.close()

    def get_stats(self) -> Dict:
        stats = dict(self._stats)
        stats["active_topics"] = sorted(self._active_topics)
        stats["outbound_pending"] = self._outbound.qsize()
        return stats
