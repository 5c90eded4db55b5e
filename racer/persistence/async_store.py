"""
Async facade over a blocking Store.

Every round-trip runs on a ThreadPoolExecutor so the event loop only suspends
while the database works. The executor is sized above the connection pool so
a thread waiting for a pooled connection never starves an open transaction.
"""

import asyncio
import functools
import logging
from concurrent import futures
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from ..types import Cycle, LeaderboardEntry, Vote
from .store import Store, StoreTransaction


def _release_orphan(future: futures.Future):
    # begin_transaction finished after its caller was cancelled
    if future.cancelled() or future.exception() is not None:
        return
    future.result().rollback()


class AsyncTransaction:
    """Awaitable wrapper around StoreTransaction. Same connection for every call."""

    def __init__(self, store: "AsyncStore", tx: StoreTransaction):
        self._store = store
        self._tx = tx
        self._pending: Optional[futures.Future] = None

    @property
    def finished(self) -> bool:
        return self._tx.finished

    async def _call(self, fn, *args):
        self._pending = self._store._submit(fn, *args)
        return await asyncio.wrap_future(self._pending)

    async def upsert_cycle(self, cycle: Cycle) -> None:
        await self._call(self._tx.upsert_cycle, cycle)

    async def delete_cycles(self, chain_id: int, from_block: int) -> int:
        return await self._call(self._tx.delete_cycles, chain_id, from_block)

    async def upsert_vote(self, vote: Vote) -> None:
        await self._call(self._tx.upsert_vote, vote)

    async def delete_votes(self, chain_id: int, from_block: int) -> int:
        return await self._call(self._tx.delete_votes, chain_id, from_block)

    async def set_vote_claimed(
        self,
        vote_id: int,
        chain_id: int,
        claimed: bool,
        block_number: Optional[int] = None
    ) -> bool:
        return await self._call(
            self._tx.set_vote_claimed, vote_id, chain_id, claimed, block_number
        )

    async def reset_claims_from(self, chain_id: int, from_block: int) -> int:
        return await self._call(self._tx.reset_claims_from, chain_id, from_block)

    async def set_sync_height(self, chain_id: int, height: int) -> None:
        await self._call(self._tx.set_sync_height, chain_id, height)

    async def commit(self) -> None:
        await self._call(self._tx.commit)

    def _rollback_after_pending(self):
        # A cancelled await does not stop the worker thread; let it finish first
        if self._pending is not None:
            futures.wait([self._pending])
        self._tx.rollback()

    async def rollback(self) -> None:
        # Shielded: a cancelled reconciliation must still release its connection
        await asyncio.shield(self._store._run(self._rollback_after_pending))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._tx.finished:
            return False
        if exc_type is not None:
            await self.rollback()
            return False
        await self.commit()
        return False


class AsyncStore:
    """
    Usage:
        store = AsyncStore(SQLiteStore("racer.db"))
        async with await store.begin_transaction() as tx:
            await tx.delete_cycles(chain_id, 100)
        height = await store.get_sync_height(chain_id)
    """

    def __init__(self, store: Store, max_workers: Optional[int] = None):
        self._store = store
        workers = max_workers or store.pool.max_connections * 2
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="racer-store")
        self._logger = logging.getLogger("AsyncStore")

    @property
    def store(self) -> Store:
        return self._store

    def _submit(self, fn, *args) -> futures.Future:
        return self._executor.submit(fn, *args)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    def close(self):
        self._executor.shutdown(wait=True)
        self._store.close()

    async def begin_transaction(self) -> AsyncTransaction:
        future = self._submit(self._store.begin_transaction)
        try:
            tx = await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            future.add_done_callback(_release_orphan)
            raise
        return AsyncTransaction(self, tx)

    async def get_sync_height(self, chain_id: int) -> int:
        return await self._run(self._store.get_sync_height, chain_id)

    async def set_sync_height(self, chain_id: int, height: int) -> None:
        await self._run(self._store.set_sync_height, chain_id, height)

    async def get_current_cycle(self, chain_id: int) -> Optional[Cycle]:
        return await self._run(self._store.get_current_cycle, chain_id)

    async def get_vote(self, vote_id: int, chain_id: int) -> Optional[Vote]:
        return await self._run(self._store.get_vote, vote_id, chain_id)

    async def count_votes(self, cycle_id: int, chain_id: int) -> int:
        return await self._run(self._store.count_votes, cycle_id, chain_id)

    async def leaderboard(self, cycle_id: int, chain_id: int) -> List[LeaderboardEntry]:
        return await self._run(self._store.leaderboard, cycle_id, chain_id)

    async def get_stats(self) -> dict:
        return await self._run(self._store.get_stats)
