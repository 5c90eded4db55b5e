"""
Racer Store - relational persistence for cycles, votes and sync cursors.

Write side (indexer):
- Transactions with upsert/delete of cycles and votes, claim flags, sync cursor
- A transaction holds one pooled connection until commit or rollback

Read side (publishers):
- Current cycle per chain (derived at query time, never a stored flag)
- Vote count and per-symbol leaderboard for a cycle

SQLiteStore is the default backend; PostgresStore lives in postgres_store.py.
Both share the SQL below, written with '?' placeholders.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterable, List, Optional

from ..types import Cycle, LeaderboardEntry, Vote
from .pool import ConnectionPool, PoolTimeout, SQLitePool


class StoreError(RuntimeError):
    """Any failure of a store round-trip."""


def leaderboard_sort_key(entry: LeaderboardEntry):
    """Highest sum first; on equal sums the earlier latest contribution wins."""
    return (-entry.amount, entry.latest_contributing_block, entry.symbol)


CYCLE_COLUMNS = (
    "id, chain_id, start_block, block_length, vote_price, balance, "
    "creator, observed_at_block"
)

VOTE_COLUMNS = (
    "id, chain_id, cycle_id, placer, symbol, amount, placement, "
    "observed_at_block, claimed, claimed_at_block"
)


class StoreTransaction:
    """
    Unit of work on a single pooled connection.

    Used as a context manager it commits on success and rolls back on error.
    After commit() or rollback() the connection goes back to the pool and the
    transaction can no longer be used.
    """

    def __init__(self, store: "Store", conn):
        self._store = store
        self._conn = conn
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._finished:
            return False
        if exc_type is not None:
            self.rollback()
            return False
        self.commit()
        return False

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run one statement. Returns the affected row count."""
        if self._finished:
            raise StoreError("transaction already finished")
        return self._store._execute(self._conn, sql, params)

    # =========================================================================
    # Cycles
    # =========================================================================

    def upsert_cycle(self, cycle: Cycle) -> None:
        n = self._store._num
        self._execute(f"""
            INSERT INTO cycles ({CYCLE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id, chain_id) DO UPDATE SET
                start_block = excluded.start_block,
                block_length = excluded.block_length,
                vote_price = excluded.vote_price,
                balance = excluded.balance,
                creator = excluded.creator,
                observed_at_block = excluded.observed_at_block
        """, (
            n(cycle.id),
            cycle.chain_id,
            n(cycle.start_block),
            n(cycle.block_length),
            n(cycle.vote_price),
            n(cycle.balance),
            cycle.creator,
            cycle.observed_at_block,
        ))

    def delete_cycles(self, chain_id: int, from_block: int) -> int:
        """Delete cycles observed at or above `from_block`. Returns rows deleted."""
        return self._execute(
            "DELETE FROM cycles WHERE chain_id = ? AND observed_at_block >= ?",
            (chain_id, from_block)
        )

    # =========================================================================
    # Votes
    # =========================================================================

    def upsert_vote(self, vote: Vote) -> None:
        n = self._store._num
        self._execute(f"""
            INSERT INTO votes ({VOTE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id, chain_id) DO UPDATE SET
                cycle_id = excluded.cycle_id,
                placer = excluded.placer,
                symbol = excluded.symbol,
                amount = excluded.amount,
                placement = excluded.placement,
                observed_at_block = excluded.observed_at_block,
                claimed = excluded.claimed,
                claimed_at_block = excluded.claimed_at_block
        """, (
            n(vote.id),
            vote.chain_id,
            n(vote.cycle_id),
            vote.placer,
            bytes(vote.symbol),
            n(vote.amount),
            n(vote.placement),
            vote.observed_at_block,
            bool(vote.claimed),
            vote.claimed_at_block,
        ))

    def delete_votes(self, chain_id: int, from_block: int) -> int:
        """Delete votes observed at or above `from_block`. Returns rows deleted."""
        return self._execute(
            "DELETE FROM votes WHERE chain_id = ? AND observed_at_block >= ?",
            (chain_id, from_block)
        )

    def set_vote_claimed(
        self,
        vote_id: int,
        chain_id: int,
        claimed: bool,
        block_number: Optional[int] = None
    ) -> bool:
        """Set the claim flag. Returns False when the vote does not exist."""
        updated = self._execute(
            "UPDATE votes SET claimed = ?, claimed_at_block = ? WHERE id = ? AND chain_id = ?",
            (bool(claimed), block_number if claimed else None, self._store._num(vote_id), chain_id)
        )
        return updated > 0

    def reset_claims_from(self, chain_id: int, from_block: int) -> int:
        """
        Clear claims that may have come from blocks at or above `from_block`.

        Covers votes observed in the range and votes placed earlier whose
        VoteClaimed event was in the range.
        """
        return self._execute("""
            UPDATE votes SET claimed = ?, claimed_at_block = NULL
            WHERE chain_id = ?
              AND claimed = ?
              AND (observed_at_block >= ? OR claimed_at_block >= ?)
        """, (False, chain_id, True, from_block, from_block))

    # =========================================================================
    # Sync cursor
    # =========================================================================

    def set_sync_height(self, chain_id: int, height: int) -> None:
        self._execute("""
            INSERT INTO sync_cursors (chain_id, last_synchronized_height)
            VALUES (?, ?)
            ON CONFLICT (chain_id) DO UPDATE SET
                last_synchronized_height = excluded.last_synchronized_height
        """, (chain_id, height))

    # =========================================================================
    # Completion
    # =========================================================================

    def commit(self) -> None:
        if self._finished:
            raise StoreError("transaction already finished")
        try:
            self._store._commit(self._conn)
        except StoreError:
            self._abort()
            raise
        self._finished = True
        self._store._pool.release(self._conn)

    def rollback(self) -> None:
        if self._finished:
            return
        self._abort()

    def _abort(self):
        self._finished = True
        broken = False
        try:
            self._store._rollback(self._conn)
        except StoreError as e:
            self._store._logger.error(f"Rollback failed, discarding connection: {e}")
            broken = True
        self._store._pool.release(self._conn, discard=broken)


class Store:
    """
    Shared store logic over a ConnectionPool.

    Subclasses provide the schema, value conversion, driver error types and
    the current-cycle ordering.
    """

    # Order that puts the current cycle first
    CURRENT_CYCLE_ORDER = "start_block DESC, observed_at_block DESC, id DESC"

    # Driver exceptions to wrap into StoreError
    DRIVER_ERRORS: tuple = ()

    def __init__(self, pool: ConnectionPool, logger: logging.Logger = None):
        self._pool = pool
        self._logger = logger or logging.getLogger(type(self).__name__)
        self._create_schema()

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def close(self):
        self._pool.close()

    # =========================================================================
    # Backend hooks
    # =========================================================================

    def _create_schema(self):
        raise NotImplementedError

    def _adapt_sql(self, sql: str) -> str:
        return sql

    def _num(self, value: int) -> Any:
        """Python int -> column value for uint256 quantities."""
        return value

    def _begin(self, conn):
        pass

    def _finish_read(self, conn):
        pass

    def _commit(self, conn):
        try:
            conn.commit()
        except self.DRIVER_ERRORS as e:
            raise StoreError(f"commit failed: {e}") from e

    def _rollback(self, conn):
        try:
            conn.rollback()
        except self.DRIVER_ERRORS as e:
            raise StoreError(f"rollback failed: {e}") from e

    def _cursor(self, conn):
        return conn.cursor()

    def _execute(self, conn, sql: str, params: Iterable[Any] = (), fetch: bool = False):
        """
        Run one statement on its own cursor and close the cursor.

        Returns the fetched rows when `fetch` is set, else the affected row count.
        """
        try:
            cursor = self._cursor(conn)
            try:
                cursor.execute(self._adapt_sql(sql), tuple(params))
                return cursor.fetchall() if fetch else cursor.rowcount
            finally:
                cursor.close()
        except self.DRIVER_ERRORS as e:
            raise StoreError(str(e)) from e

    def _acquire(self):
        try:
            return self._pool.acquire()
        except PoolTimeout as e:
            raise StoreError(str(e)) from e

    @contextmanager
    def _connection(self):
        conn = self._acquire()
        discard = False
        try:
            yield conn
        except StoreError:
            discard = True
            raise
        finally:
            self._pool.release(conn, discard=discard)

    def _read(self, sql: str, params: Iterable[Any] = ()) -> List[Any]:
        with self._connection() as conn:
            try:
                return self._execute(conn, sql, params, fetch=True)
            finally:
                self._finish_read(conn)

    # =========================================================================
    # Transactions
    # =========================================================================

    def begin_transaction(self) -> StoreTransaction:
        """Check out a connection and open a transaction on it."""
        conn = self._acquire()
        try:
            self._begin(conn)
        except self.DRIVER_ERRORS as e:
            self._pool.release(conn, discard=True)
            raise StoreError(f"could not begin transaction: {e}") from e
        except BaseException:
            self._pool.release(conn, discard=True)
            raise
        return StoreTransaction(self, conn)

    # =========================================================================
    # Sync cursor
    # =========================================================================

    def get_sync_height(self, chain_id: int) -> int:
        rows = self._read(
            "SELECT last_synchronized_height FROM sync_cursors WHERE chain_id = ?",
            (chain_id,)
        )
        if not rows:
            return 0
        return int(rows[0]["last_synchronized_height"])

    def set_sync_height(self, chain_id: int, height: int) -> None:
        with self.begin_transaction() as tx:
            tx.set_sync_height(chain_id, height)

    # =========================================================================
    # Read side
    # =========================================================================

    def _row_to_cycle(self, row, is_current: bool = False) -> Cycle:
        return Cycle(
            id=int(row["id"]),
            chain_id=int(row["chain_id"]),
            start_block=int(row["start_block"]),
            block_length=int(row["block_length"]),
            vote_price=int(row["vote_price"]),
            balance=int(row["balance"]),
            creator=row["creator"],
            observed_at_block=int(row["observed_at_block"]),
            is_current=is_current,
        )

    def _row_to_vote(self, row) -> Vote:
        claimed_at = row["claimed_at_block"]
        return Vote(
            id=int(row["id"]),
            chain_id=int(row["chain_id"]),
            cycle_id=int(row["cycle_id"]),
            placer=row["placer"],
            symbol=bytes(row["symbol"]),
            amount=int(row["amount"]),
            placement=int(row["placement"]),
            observed_at_block=int(row["observed_at_block"]),
            claimed=bool(row["claimed"]),
            claimed_at_block=int(claimed_at) if claimed_at is not None else None,
        )

    def get_current_cycle(self, chain_id: int) -> Optional[Cycle]:
        """The latest cycle for the chain, or None when no cycle exists."""
        rows = self._read(
            f"SELECT {CYCLE_COLUMNS} FROM cycles WHERE chain_id = ? "
            f"ORDER BY {self.CURRENT_CYCLE_ORDER} LIMIT 1",
            (chain_id,)
        )
        if not rows:
            return None
        return self._row_to_cycle(rows[0], is_current=True)

    def get_cycle(self, cycle_id: int, chain_id: int) -> Optional[Cycle]:
        rows = self._read(
            f"SELECT {CYCLE_COLUMNS} FROM cycles WHERE id = ? AND chain_id = ?",
            (self._num(cycle_id), chain_id)
        )
        if not rows:
            return None
        current = self.get_current_cycle(chain_id)
        return self._row_to_cycle(rows[0], is_current=current is not None and current.id == cycle_id)

    def list_cycles(self, chain_id: int) -> List[Cycle]:
        """All cycles for a chain, newest first; exactly one is marked current."""
        rows = self._read(
            f"SELECT {CYCLE_COLUMNS} FROM cycles WHERE chain_id = ? "
            f"ORDER BY {self.CURRENT_CYCLE_ORDER}",
            (chain_id,)
        )
        return [self._row_to_cycle(row, is_current=(i == 0)) for i, row in enumerate(rows)]

    def get_vote(self, vote_id: int, chain_id: int) -> Optional[Vote]:
        rows = self._read(
            f"SELECT {VOTE_COLUMNS} FROM votes WHERE id = ? AND chain_id = ?",
            (self._num(vote_id), chain_id)
        )
        return self._row_to_vote(rows[0]) if rows else None

    def list_votes(self, chain_id: int, cycle_id: Optional[int] = None) -> List[Vote]:
        if cycle_id is None:
            rows = self._read(
                f"SELECT {VOTE_COLUMNS} FROM votes WHERE chain_id = ?",
                (chain_id,)
            )
        else:
            rows = self._read(
                f"SELECT {VOTE_COLUMNS} FROM votes WHERE chain_id = ? AND cycle_id = ?",
                (chain_id, self._num(cycle_id))
            )
        votes = [self._row_to_vote(row) for row in rows]
        votes.sort(key=lambda v: (v.observed_at_block, v.id))
        return votes

    def count_votes(self, cycle_id: int, chain_id: int) -> int:
        rows = self._read(
            "SELECT COUNT(*) AS vote_count FROM votes WHERE cycle_id = ? AND chain_id = ?",
            (self._num(cycle_id), chain_id)
        )
        return int(rows[0]["vote_count"])

    def leaderboard(self, cycle_id: int, chain_id: int) -> List[LeaderboardEntry]:
        """
        Per-symbol vote totals for a cycle.

        Summed in Python so uint256 amounts stay exact on backends without a
        wide enough integer type.
        """
        rows = self._read(
            "SELECT symbol, amount, observed_at_block FROM votes "
            "WHERE cycle_id = ? AND chain_id = ?",
            (self._num(cycle_id), chain_id)
        )
        totals = {}
        for row in rows:
            symbol = bytes(row["symbol"])
            amount, latest = totals.get(symbol, (0, 0))
            totals[symbol] = (
                amount + int(row["amount"]),
                max(latest, int(row["observed_at_block"])),
            )

        entries = [
            LeaderboardEntry(symbol=symbol, amount=amount, latest_contributing_block=latest)
            for symbol, (amount, latest) in totals.items()
        ]
        entries.sort(key=leaderboard_sort_key)
        return entries

    def get_stats(self) -> dict:
        cycles = self._read("SELECT COUNT(*) AS n FROM cycles")
        votes = self._read("SELECT COUNT(*) AS n FROM votes")
        return {
            "backend": type(self).__name__,
            "cycles": int(cycles[0]["n"]),
            "votes": int(votes[0]["n"]),
            "max_connections": self._pool.max_connections,
        }


class SQLiteStore(Store):
    """
    SQLite backend.

    uint256 quantities are stored as decimal TEXT (SQLite integers are 64-bit);
    block heights and chain ids are INTEGER so range predicates compare numerically.
    """

    # Decimal TEXT sorts numerically when compared by length first
    CURRENT_CYCLE_ORDER = (
        "LENGTH(start_block) DESC, start_block DESC, "
        "observed_at_block DESC, LENGTH(id) DESC, id DESC"
    )

    DRIVER_ERRORS = (sqlite3.Error,)

    def __init__(self, db_path: str = "racer.db", max_connections: int = 5, logger: logging.Logger = None):
        self.db_path = db_path
        super().__init__(SQLitePool(db_path, max_connections=max_connections), logger)

    def _num(self, value: int) -> str:
        return str(int(value))

    def _begin(self, conn):
        # Take the write lock up front so the whole reconciliation is serialized
        conn.execute("BEGIN IMMEDIATE")

    def _create_schema(self):
        with self._pool.connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS cycles (
                    id TEXT NOT NULL,
                    chain_id INTEGER NOT NULL,
                    start_block TEXT NOT NULL,
                    block_length TEXT NOT NULL,
                    vote_price TEXT NOT NULL,
                    balance TEXT NOT NULL DEFAULT '0',
                    creator TEXT NOT NULL,
                    observed_at_block INTEGER NOT NULL,
                    PRIMARY KEY (id, chain_id)
                );

                CREATE TABLE IF NOT EXISTS votes (
                    id TEXT NOT NULL,
                    chain_id INTEGER NOT NULL,
                    cycle_id TEXT NOT NULL,
                    placer TEXT NOT NULL,
                    symbol BLOB NOT NULL,
                    amount TEXT NOT NULL,
                    placement TEXT NOT NULL DEFAULT '0',
                    observed_at_block INTEGER NOT NULL,
                    claimed INTEGER NOT NULL DEFAULT 0,
                    claimed_at_block INTEGER,
                    PRIMARY KEY (id, chain_id)
                );

                CREATE TABLE IF NOT EXISTS sync_cursors (
                    chain_id INTEGER PRIMARY KEY,
                    last_synchronized_height INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_cycles_chain_block ON cycles(chain_id, observed_at_block);
                CREATE INDEX IF NOT EXISTS idx_votes_chain_block ON votes(chain_id, observed_at_block);
                CREATE INDEX IF NOT EXISTS idx_votes_cycle ON votes(cycle_id, chain_id);
            """)


def open_store(database_url: str, max_connections: int = 5) -> Store:
    """
    Open the backend named by `database_url`.

    postgres://... or postgresql://... -> PostgresStore
    sqlite:///path, a bare path or :memory: -> SQLiteStore
    """
    if database_url.startswith(("postgres://", "postgresql://")):
        from .postgres_store import PostgresStore
        return PostgresStore(database_url, max_connections=max_connections)

    path = database_url
    if path.startswith("sqlite:///"):
        path = path[len("sqlite:///"):]
    elif path.startswith("sqlite://"):
        path = path[len("sqlite://"):] or ":memory:"
    if path == ":memory:":
        max_connections = 1
    return SQLiteStore(path, max_connections=max_connections)
