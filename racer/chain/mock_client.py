"""
Mock Chain Client

Scripted in-memory chain for tests and offline development. Events are kept
per block so a test can rewrite a block's contents to simulate a reorg.

Usage:
    client = MockChainClient(chain_id=31337)
    client.set_block_events(100, [CycleCreated(...)])
    client.push_head(110)
    client.end_heads()  # engine.run() returns once the stream is drained
"""

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set

from ..types import ChainEvent, RacerEvent
from .client import BlockNotification, ChainClient, ChainClientError, HeadSubscription


_END = object()


class MockHeadSubscription(HeadSubscription):
    """Head stream fed from an asyncio.Queue."""

    def __init__(self, queue: "asyncio.Queue"):
        self._queue = queue
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[BlockNotification]:
        while not self._closed:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    async def close(self):
        if not self._closed:
            self._closed = True
            # Wake a consumer blocked on get()
            self._queue.put_nowait(_END)


class MockChainClient(ChainClient):
    """In-memory ChainClient with failure injection."""

    def __init__(self, chain_id: int = 31337, head: int = 0):
        self._chain_id = chain_id
        self.head = head
        self._blocks: Dict[int, List[RacerEvent]] = defaultdict(list)
        self._heads: "asyncio.Queue" = asyncio.Queue()

        # Failure injection
        self.fail_chain_id = False
        self.fail_subscribe = False
        self.fail_head = False
        self.fail_query: Optional[Exception] = None
        self.unresolvable_hashes: Set[str] = set()
        self.query_delay: float = 0.0

        # Observations
        self.queries: List[tuple] = []

    # =========================================================================
    # Scripting
    # =========================================================================

    def set_block_events(self, block_number: int, events: Sequence[RacerEvent]):
        """Replace the events emitted in `block_number` (use [] to empty it)."""
        self._blocks[block_number] = list(events)

    def add_event(self, block_number: int, event: RacerEvent):
        self._blocks[block_number].append(event)

    def push_head(self, number: int, block_hash: Optional[str] = None, with_number: bool = True):
        """Announce a new head. with_number=False forces a lookup by hash."""
        self.head = max(self.head, number)
        notification = BlockNotification(
            block_hash=block_hash or f"0x{number:064x}",
            number=number if with_number else None,
        )
        self._heads.put_nowait(notification)

    def end_heads(self):
        """Terminate the head stream after the queued notifications."""
        self._heads.put_nowait(_END)

    # =========================================================================
    # ChainClient
    # =========================================================================

    async def chain_id(self) -> int:
        if self.fail_chain_id:
            raise ChainClientError("eth_chainId unavailable")
        return self._chain_id

    async def head_block_number(self) -> int:
        if self.fail_head:
            raise ChainClientError("eth_blockNumber unavailable")
        return self.head

    async def subscribe_new_heads(self) -> MockHeadSubscription:
        if self.fail_subscribe:
            raise ChainClientError("eth_subscribe unavailable")
        return MockHeadSubscription(self._heads)

    async def resolve_block_number(self, notification: BlockNotification) -> int:
        if notification.block_hash in self.unresolvable_hashes:
            raise ChainClientError(f"block {notification.block_hash} not found")
        if notification.number is not None:
            return notification.number
        return int(notification.block_hash, 16)

    async def query_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        self.queries.append((from_block, to_block))
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if self.fail_query is not None:
            raise self.fail_query

        events = []
        for block_number in sorted(self._blocks):
            if from_block <= block_number <= to_block:
                for index, event in enumerate(self._blocks[block_number]):
                    events.append(ChainEvent(event=event, block_number=block_number, log_index=index))
        return events
