"""
PostgreSQL backend for the Racer store.

uint256 quantities are NUMERIC(78, 0), so sums and ordering happen in SQL.
Connections come from a psycopg2 ThreadedConnectionPool; a semaphore makes
callers wait for a free connection instead of failing when it is exhausted.
"""

import logging
from typing import List, Optional

import psycopg2
from psycopg2 import extensions, extras, pool as pg_pool

from ..types import LeaderboardEntry
from .pool import ConnectionPool
from .store import Store


class PostgresPool(ConnectionPool):
    """Bounded wrapper around psycopg2's ThreadedConnectionPool."""

    def __init__(
        self,
        dsn: str,
        max_connections: int = 5,
        min_connections: int = 1,
        acquire_timeout: Optional[float] = 30.0
    ):
        super().__init__(max_connections, acquire_timeout)
        self._logger = logging.getLogger("PostgresPool")
        self._pool = pg_pool.ThreadedConnectionPool(
            min(min_connections, max_connections),
            max_connections,
            dsn,
        )

    def _checkout(self):
        conn = self._pool.getconn()
        conn.autocommit = False
        return conn

    def _checkin(self, conn, discard: bool):
        if not discard and conn.closed == 0:
            try:
                if conn.get_transaction_status() != extensions.TRANSACTION_STATUS_IDLE:
                    conn.rollback()
            except psycopg2.Error as e:
                self._logger.warning(f"Discarding connection that failed to reset: {e}")
                discard = True
        self._pool.putconn(conn, close=discard or conn.closed != 0)

    def _close_idle(self):
        self._pool.closeall()

    def _is_broken(self, conn) -> bool:
        return conn.closed != 0


class PostgresStore(Store):
    """PostgreSQL backend (the production store)."""

    DRIVER_ERRORS = (psycopg2.Error,)

    def __init__(self, dsn: str, max_connections: int = 5, logger: logging.Logger = None):
        super().__init__(PostgresPool(dsn, max_connections=max_connections), logger)

    def _adapt_sql(self, sql: str) -> str:
        return sql.replace("?", "%s")

    def _cursor(self, conn):
        return conn.cursor(cursor_factory=extras.RealDictCursor)

    def _finish_read(self, conn):
        # Do not leave the pooled connection idle in a transaction. A dropped
        # connection has nothing to roll back and must not mask the read error.
        if conn.closed:
            return
        try:
            conn.rollback()
        except self.DRIVER_ERRORS as e:
            self._logger.warning(f"Rollback after read failed: {e}")

    def _create_schema(self):
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("""
                CREATE TABLE IF NOT EXISTS cycles (
                    id NUMERIC(78, 0) NOT NULL,
                    chain_id BIGINT NOT NULL,
                    start_block NUMERIC(78, 0) NOT NULL,
                    block_length NUMERIC(78, 0) NOT NULL,
                    vote_price NUMERIC(78, 0) NOT NULL,
                    balance NUMERIC(78, 0) NOT NULL DEFAULT 0,
                    creator TEXT NOT NULL,
                    observed_at_block BIGINT NOT NULL,
                    PRIMARY KEY (id, chain_id)
                );

                CREATE TABLE IF NOT EXISTS votes (
                    id NUMERIC(78, 0) NOT NULL,
                    chain_id BIGINT NOT NULL,
                    cycle_id NUMERIC(78, 0) NOT NULL,
                    placer TEXT NOT NULL,
                    symbol BYTEA NOT NULL,
                    amount NUMERIC(78, 0) NOT NULL,
                    placement NUMERIC(78, 0) NOT NULL DEFAULT 0,
                    observed_at_block BIGINT NOT NULL,
                    claimed BOOLEAN NOT NULL DEFAULT FALSE,
                    claimed_at_block BIGINT,
                    PRIMARY KEY (id, chain_id)
                );

                CREATE TABLE IF NOT EXISTS sync_cursors (
                    chain_id BIGINT PRIMARY KEY,
                    last_synchronized_height BIGINT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_cycles_chain_block ON cycles(chain_id, observed_at_block);
                CREATE INDEX IF NOT EXISTS idx_votes_chain_block ON votes(chain_id, observed_at_block);
                CREATE INDEX IF NOT EXISTS idx_votes_cycle ON votes(cycle_id, chain_id);
            """)
            conn.commit()

    def leaderboard(self, cycle_id: int, chain_id: int) -> List[LeaderboardEntry]:
        rows = self._read("""
            SELECT symbol,
                   SUM(amount) AS amount,
                   MAX(observed_at_block) AS latest_block
            FROM votes
            WHERE cycle_id = ? AND chain_id = ?
            GROUP BY symbol
            ORDER BY amount DESC, latest_block ASC, symbol ASC
        """, (cycle_id, chain_id))
        return [
            LeaderboardEntry(
                symbol=bytes(row["symbol"]),
                amount=int(row["amount"]),
                latest_contributing_block=int(row["latest_block"]),
            )
            for row in rows
        ]
