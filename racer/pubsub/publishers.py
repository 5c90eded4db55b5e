"""
Periodic publishers feeding the BroadcastHub.

- OnlinePublisher: connection count every interval
- LeaderboardPublisher: current cycle metadata and per-symbol totals

A tick with no subscribers on its topic does nothing (no store reads).
A tick that fails or times out is abandoned; the previous snapshot stays.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from ..chain.client import ChainClient
from ..persistence.async_store import AsyncStore
from .hub import LEADERBOARD_TOPIC, ONLINE_TOPIC, BroadcastHub
from .messages import leaderboard_payload, online_payload


@dataclass
class PublisherConfig:
    """Tick timing shared by the publishers."""
    interval: float = 5.0
    timeout: float = 5.0


class TickOutcome(Enum):
    SKIPPED = "skipped"      # no subscribers
    PUBLISHED = "published"
    ABANDONED = "abandoned"  # failure or timeout, snapshot untouched


class PeriodicPublisher:
    """Base loop: tick() every `interval` seconds until stop()."""

    topic = ""

    def __init__(self, hub: BroadcastHub, config: Optional[PublisherConfig] = None, logger: logging.Logger = None):
        self.config = config or PublisherConfig()
        self._hub = hub
        self._logger = logger or logging.getLogger(type(self).__name__)
        self._running = False
        self._stop_event = asyncio.Event()
        self._stats = {
            "ticks": 0,
            "skipped": 0,
            "published": 0,
            "abandoned": 0,
            "last_outcome": None,
            "last_error": None,
            "last_published_at": None,
        }

    async def start(self):
        pass

    async def tick(self) -> TickOutcome:
        raise NotImplementedError

    async def run(self):
        """Tick immediately, then every interval."""
        try:
            await self.start()
        except Exception as e:
            self._logger.critical(f"ALERT: {type(self).__name__} could not start: {e}")
            raise
        self._running = True
        self._stop_event.clear()
        self._logger.info(f"{type(self).__name__} started (interval={self.config.interval}s)")

        while self._running:
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.config.interval)
            except asyncio.TimeoutError:
                pass

        self._logger.info(f"{type(self).__name__} stopped")

    async def stop(self):
        self._running = False
        self._stop_event.set()

    def _record(self, outcome: TickOutcome, error: Optional[str] = None) -> TickOutcome:
        self._stats["ticks"] += 1
        self._stats[outcome.value] += 1
        self._stats["last_outcome"] = outcome.value
        if outcome == TickOutcome.PUBLISHED:
            self._stats["last_published_at"] = time.time()
        if error is not None:
            self._stats["last_error"] = error
        return outcome

    def get_stats(self) -> Dict:
        stats = dict(self._stats)
        stats["topic"] = self.topic
        stats["subscribers"] = self._hub.subscriber_count(self.topic)
        return stats


class OnlinePublisher(PeriodicPublisher):
    """Broadcasts {"type": "online", "count": n}."""

    topic = ONLINE_TOPIC

    async def tick(self) -> TickOutcome:
        if self._hub.subscriber_count(ONLINE_TOPIC) < 1:
            return self._record(TickOutcome.SKIPPED)
        await self._hub.publish(ONLINE_TOPIC, online_payload(self._hub.online.value))
        return self._record(TickOutcome.PUBLISHED)


class LeaderboardPublisher(PeriodicPublisher):
    """
    Recomputes the current cycle's leaderboard and broadcasts it.

    Each published payload also becomes the topic snapshot, which new
    leaderboard subscribers receive first.
    """

    topic = LEADERBOARD_TOPIC

    def __init__(
        self,
        store: AsyncStore,
        client: ChainClient,
        hub: BroadcastHub,
        config: Optional[PublisherConfig] = None,
        chain_id: Optional[int] = None,
        logger: logging.Logger = None
    ):
        super().__init__(hub, config, logger)
        self._store = store
        self._client = client
        self._chain_id = chain_id

    @property
    def chain_id(self) -> Optional[int]:
        return self._chain_id

    async def start(self):
        """Resolve the chain id when it was not configured. Failure is fatal."""
        if self._chain_id is None:
            self._chain_id = await self._client.chain_id()
            self._logger.info(f"Leaderboard publisher resolved chain id {self._chain_id}")

    async def tick(self) -> TickOutcome:
        if self._hub.subscriber_count(LEADERBOARD_TOPIC) < 1:
            return self._record(TickOutcome.SKIPPED)
        if self._chain_id is None:
            await self.start()

        try:
            payload = await asyncio.wait_for(self._build_payload(), self.config.timeout)
        except asyncio.TimeoutError:
            message = f"leaderboard tick timed out after {self.config.timeout}s"
            self._logger.error(message)
            return self._record(TickOutcome.ABANDONED, message)
        except Exception as e:
            message = f"leaderboard tick failed: {type(e).__name__}: {e}"
            self._logger.error(message)
            return self._record(TickOutcome.ABANDONED, message)

        if payload is None:
            return self._record(TickOutcome.ABANDONED, "no current cycle")

        await self._hub.publish(LEADERBOARD_TOPIC, payload, snapshot=True)
        return self._record(TickOutcome.PUBLISHED)

    async def _build_payload(self) -> Optional[str]:
        cycle = await self._store.get_current_cycle(self._chain_id)
        if cycle is None:
            self._logger.info(f"No cycle on chain {self._chain_id} yet, leaderboard not published")
            return None

        head = await self._client.head_block_number()
        vote_count = await self._store.count_votes(cycle.id, self._chain_id)
        entries = await self._store.leaderboard(cycle.id, self._chain_id)
        return leaderboard_payload(cycle, head, vote_count, entries)

    def get_stats(self) -> Dict:
        stats = super().get_stats()
        stats["chain_id"] = self._chain_id
        return stats


async def run_publishers(publishers: List[PeriodicPublisher]):
    """Run publishers concurrently until all of them stop."""
    await asyncio.gather(*(publisher.run() for publisher in publishers))


async def stop_publishers(publishers: List[PeriodicPublisher]):
    for publisher in publishers:
        await publisher.stop()
