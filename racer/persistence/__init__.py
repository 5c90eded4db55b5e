"""Persistence layer for cycles, votes and per-chain sync cursors."""

from .pool import ConnectionPool, PoolTimeout, SQLitePool
from .store import (
    Store,
    StoreError,
    StoreTransaction,
    SQLiteStore,
    leaderboard_sort_key,
    open_store,
)
from .async_store import AsyncStore, AsyncTransaction

__all__ = [
    "ConnectionPool",
    "PoolTimeout",
    "SQLitePool",
    "Store",
    "StoreError",
    "StoreTransaction",
    "SQLiteStore",
    "leaderboard_sort_key",
    "open_store",
    "AsyncStore",
    "AsyncTransaction",
]
