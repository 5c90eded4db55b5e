"""
Chain Sync Engine

Follows one chain's head and mirrors the Racer contract into the store.

Per head notification:
1. Resolve the head height H
2. Read the chain's sync cursor
3. Reconcile [target, H] in one transaction: delete rows observed at or
   above target, reset claims, re-query events and re-apply them
4. Advance the cursor to the reorg-safe height in that same transaction

Rows below the reorg-safe height are final; everything above it is rewritten
on every head, so reorged blocks heal on the next notification.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from ..chain.client import BlockNotification, ChainClient, ChainClientError, HeadSubscription
from ..chain.events import EventDecodeError
from ..persistence.async_store import AsyncStore, AsyncTransaction
from ..persistence.store import StoreError
from ..types import ChainEvent, Cycle, CycleCreated, Vote, VoteClaimed, VotePlaced


DEFAULT_REORG_THRESHOLD = 7


class EngineState(Enum):
    CONNECTING = "CONNECTING"
    FOLLOWING = "FOLLOWING"
    FAULTED = "FAULTED"
    STOPPED = "STOPPED"


class ChainSyncFault(RuntimeError):
    """The engine cannot continue (no chain id, no head stream, unresolvable head)."""


# Failures that abandon one reconciliation and leave the cursor where it was
TRANSIENT_ERRORS = (StoreError, ChainClientError, EventDecodeError, asyncio.TimeoutError)


def reorg_safe_height(head: int, reorg_threshold: int) -> int:
    return max(0, head - reorg_threshold)


def compute_target_height(
    last_synchronized: int,
    start_height: int,
    head: int,
    reorg_threshold: int = DEFAULT_REORG_THRESHOLD
) -> int:
    """
    First block to reconcile for a head at `head`.

    Never below the configured start height, never above the reorg-safe
    height, so the last `reorg_threshold` blocks are always re-read.
    """
    return min(max(last_synchronized, start_height), reorg_safe_height(head, reorg_threshold))


@dataclass
class SyncEngineConfig:
    """Configuration for one chain's sync engine."""
    start_height: int = 0
    reorg_threshold: int = DEFAULT_REORG_THRESHOLD
    reconcile_timeout: Optional[float] = 60.0  # None disables


@dataclass
class ReconcileResult:
    """Outcome of one committed reconciliation."""
    from_block: int
    to_block: int
    synced_height: int
    cycles_deleted: int = 0
    votes_deleted: int = 0
    claims_reset: int = 0
    events_applied: int = 0
    claims_ignored: int = 0


class ChainSyncEngine:
    """
    Keeps the store consistent with one chain.

    Lifecycle:
        CONNECTING -> FOLLOWING -> FAULTED on a fatal error
        STOPPED after stop() or when the head stream ends

    Usage:
        engine = ChainSyncEngine(client, AsyncStore(store), SyncEngineConfig(start_height=100))
        await engine.run()  # raises ChainSyncFault when the engine faults
    """

    def __init__(
        self,
        client: ChainClient,
        store: AsyncStore,
        config: Optional[SyncEngineConfig] = None,
        logger: logging.Logger = None
    ):
        self.config = config or SyncEngineConfig()
        self._client = client
        self._store = store
        self._logger = logger or logging.getLogger("ChainSyncEngine")

        self._state = EngineState.CONNECTING
        self._chain_id: Optional[int] = None
        self._subscription: Optional[HeadSubscription] = None
        self._running = False

        self._stats = {
            "heads_seen": 0,
            "reconciliations_committed": 0,
            "reconciliations_failed": 0,
            "events_applied": 0,
            "claims_ignored": 0,
            "last_head": None,
            "last_synced_height": None,
            "last_error": None,
            "start_time": 0,
        }

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def chain_id(self) -> Optional[int]:
        return self._chain_id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self):
        """Resolve the chain id and open the head stream. Any failure is fatal."""
        self._state = EngineState.CONNECTING
        try:
            self._chain_id = await self._client.chain_id()
            self._subscription = await self._client.subscribe_new_heads()
        except ChainClientError as e:
            self._fault(f"could not connect: {e}")
            raise ChainSyncFault(str(e)) from e

        self._logger.info(
            f"Connected to chain {self._chain_id} "
            f"(start_height={self.config.start_height}, "
            f"reorg_threshold={self.config.reorg_threshold})"
        )

    async def run(self):
        """Follow the head stream until stop(), the stream ends, or a fault."""
        self._running = True
        self._stats["start_time"] = time.time()
        if self._subscription is None:
            await self.connect()

        self._state = EngineState.FOLLOWING
        try:
            async for notification in self._subscription:
                if not self._running:
                    break
                await self.process_notification(notification)
        except ChainSyncFault:
            raise
        except Exception as e:
            self._fault(f"unexpected {type(e).__name__}: {e}")
            raise
        finally:
            await self._close_subscription()
            if self._state != EngineState.FAULTED:
                self._state = EngineState.STOPPED
            self._running = False

        self._logger.info(f"Chain {self._chain_id} engine stopped")

    async def stop(self):
        self._running = False
        await self._close_subscription()

    async def _close_subscription(self):
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    def _fault(self, message: str):
        self._state = EngineState.FAULTED
        self._stats["last_error"] = message
        self._logger.error(f"Chain {self._chain_id} engine faulted: {message}")

    # =========================================================================
    # Head processing
    # =========================================================================

    async def process_notification(self, notification: BlockNotification) -> Optional[ReconcileResult]:
        try:
            head = await self._client.resolve_block_number(notification)
        except ChainClientError as e:
            self._fault(f"could not resolve head {notification.block_hash}: {e}")
            raise ChainSyncFault(str(e)) from e
        return await self.process_head(head)

    async def process_head(self, head: int) -> Optional[ReconcileResult]:
        """
        Reconcile for a new head at `head`.

        Returns the result when the reconciliation committed, None when it was
        abandoned (the same range is retried on the next head).
        """
        self._stats["heads_seen"] += 1
        self._stats["last_head"] = head

        try:
            last = await self._store.get_sync_height(self._chain_id)
        except StoreError as e:
            self._record_failure(f"could not read sync cursor: {e}")
            return None

        safe = reorg_safe_height(head, self.config.reorg_threshold)
        target = compute_target_height(last, self.config.start_height, head, self.config.reorg_threshold)

        try:
            result = await self.reconcile(target, head, safe)
        except TRANSIENT_ERRORS as e:
            self._record_failure(
                f"reconcile [{target}, {head}] failed: {type(e).__name__}: {e}"
            )
            return None

        self._stats["reconciliations_committed"] += 1
        self._stats["events_applied"] += result.events_applied
        self._stats["claims_ignored"] += result.claims_ignored
        self._stats["last_synced_height"] = safe
        self._logger.info(
            f"Chain {self._chain_id}: reconciled [{target}, {head}] "
            f"events={result.events_applied} deleted={result.cycles_deleted}c/{result.votes_deleted}v "
            f"cursor={safe}"
        )
        return result

    def _record_failure(self, message: str):
        self._stats["reconciliations_failed"] += 1
        self._stats["last_error"] = message
        self._logger.error(f"Chain {self._chain_id}: {message}")

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self, from_block: int, to_block: int, synced_height: int) -> ReconcileResult:
        """
        Rewrite [from_block, to_block] and move the cursor to `synced_height`.

        All writes share one transaction: on any failure nothing is kept and
        the exception propagates.
        """
        tx = await self._store.begin_transaction()
        try:
            body = self._reconcile_in(tx, from_block, to_block, synced_height)
            if self.config.reconcile_timeout is None:
                result = await body
            else:
                result = await asyncio.wait_for(body, self.config.reconcile_timeout)
            await tx.commit()
        except BaseException:
            await tx.rollback()
            raise
        return result

    async def _reconcile_in(
        self,
        tx: AsyncTransaction,
        from_block: int,
        to_block: int,
        synced_height: int
    ) -> ReconcileResult:
        chain_id = self._chain_id
        result = ReconcileResult(from_block=from_block, to_block=to_block, synced_height=synced_height)

        result.cycles_deleted = await tx.delete_cycles(chain_id, from_block)
        result.votes_deleted = await tx.delete_votes(chain_id, from_block)
        result.claims_reset = await tx.reset_claims_from(chain_id, from_block)

        events = await self._client.query_events(from_block, to_block)
        for chain_event in events:
            if await self._apply_event(tx, chain_event):
                result.events_applied += 1
            else:
                result.claims_ignored += 1

        await tx.set_sync_height(chain_id, synced_height)
        return result

    async def _apply_event(self, tx: AsyncTransaction, chain_event: ChainEvent) -> bool:
        """Write one event. Returns False when a claim names an unknown vote."""
        event = chain_event.event
        block = chain_event.block_number
        self._logger.debug(f"Chain {self._chain_id} block {block}: {chain_event.name} {event}")

        if isinstance(event, CycleCreated):
            await tx.upsert_cycle(Cycle(
                id=event.id,
                chain_id=self._chain_id,
                start_block=event.start_block,
                block_length=event.block_length,
                vote_price=event.vote_price,
                creator=event.creator,
                observed_at_block=block,
            ))
            return True

        if isinstance(event, VotePlaced):
            await tx.upsert_vote(Vote(
                id=event.vote_id,
                chain_id=self._chain_id,
                cycle_id=event.cycle_id,
                placer=event.placer,
                symbol=event.symbol,
                amount=event.amount,
                placement=event.placement,
                observed_at_block=block,
            ))
            return True

        if isinstance(event, VoteClaimed):
            found = await tx.set_vote_claimed(event.id, self._chain_id, True, block)
            if not found:
                self._logger.warning(
                    f"Chain {self._chain_id} block {block}: claim for unknown vote {event.id} ignored"
                )
            return found

        raise EventDecodeError(f"unsupported event {type(event).__name__}")

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict:
        stats = dict(self._stats)
        stats["chain_id"] = self._chain_id
        stats["state"] = self._state.value
        if stats["start_time"]:
            stats["uptime"] = time.time() - stats["start_time"]
        return stats
