"""
Bounded connection pools.

One pool is shared by every indexer engine and publisher in a process. Its size
bounds the number of concurrent store round-trips; a reconciliation holds one
connection for its whole transaction.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional


class PoolTimeout(RuntimeError):
    """No connection became free within the acquire timeout."""


class ConnectionPool:
    """Base pool: a semaphore bounds checked-out connections."""

    def __init__(self, max_connections: int = 5, acquire_timeout: Optional[float] = 30.0):
        if max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        self.max_connections = max_connections
        self._acquire_timeout = acquire_timeout
        self._slots = threading.BoundedSemaphore(max_connections)
        self._closed = False

    def acquire(self):
        if self._closed:
            raise RuntimeError("pool is closed")
        if not self._slots.acquire(timeout=self._acquire_timeout):
            raise PoolTimeout(
                f"no free connection after {self._acquire_timeout}s "
                f"(max_connections={self.max_connections})"
            )
        try:
            return self._checkout()
        except BaseException:
            self._slots.release()
            raise

    def release(self, conn, discard: bool = False):
        try:
            self._checkin(conn, discard or self._closed)
        finally:
            self._slots.release()

    @contextmanager
    def connection(self):
        conn = self.acquire()
        discard = False
        try:
            yield conn
        except BaseException:
            discard = self._is_broken(conn)
            raise
        finally:
            self.release(conn, discard=discard)

    def close(self):
        self._closed = True
        self._close_idle()

    # Hooks
    def _checkout(self):
        raise NotImplementedError

    def _checkin(self, conn, discard: bool):
        raise NotImplementedError

    def _close_idle(self):
        raise NotImplementedError

    def _is_broken(self, conn) -> bool:
        return False


class SQLitePool(ConnectionPool):
    """
    Pool of sqlite3 connections to one database file.

    Connections are created lazily, opened with check_same_thread=False
    (a transaction may hop between executor threads) and autocommit mode
    so transactions are started explicitly.
    """

    def __init__(
        self,
        db_path: str,
        max_connections: int = 5,
        busy_timeout: float = 30.0,
        acquire_timeout: Optional[float] = 30.0
    ):
        super().__init__(max_connections, acquire_timeout)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        elif max_connections > 1:
            # Separate :memory: connections would see separate databases
            raise ValueError("an in-memory SQLite database needs max_connections=1")
        self.db_path = db_path
        self._busy_timeout = busy_timeout
        self._idle: List[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._logger = logging.getLogger("SQLitePool")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self._busy_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _checkout(self) -> sqlite3.Connection:
        with self._lock:
            if self._idle:
                return self._idle.pop()
        return self._connect()

    def _checkin(self, conn: sqlite3.Connection, discard: bool):
        if conn.in_transaction:
            # Never hand out a connection with a half-finished transaction
            conn.rollback()
        if discard:
            conn.close()
            return
        with self._lock:
            self._idle.append(conn)

    def _close_idle(self):
        with self._lock:
            idle, self._idle = self._idle, []
        for conn in idle:
            conn.close()
