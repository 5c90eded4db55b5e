"""
Unit tests for PostgresStore without a database server.

psycopg2's ThreadedConnectionPool is replaced by a fake that hands out
scripted connections, so the driver-facing paths can be exercised:
- Placeholder adaptation and NUMERIC row mapping
- Cursors closed after every round-trip
- A dropped connection surfaces as StoreError and is discarded
- The sync engine treats a dropped connection as transient
"""

import asyncio
from decimal import Decimal

import psycopg2
import pytest
from psycopg2 import extensions

from racer.chain import MockChainClient
from racer.indexer import ChainSyncEngine, EngineState, SyncEngineConfig
from racer.persistence import AsyncStore, StoreError
from racer.persistence import postgres_store
from racer.persistence.postgres_store import PostgresStore


CHAIN = 31337


class FakeCursor:
    def __init__(self, conn):
        self._conn = conn
        self._rows = []
        self.rowcount = -1
        self.closed = False
        conn.cursors.append(self)

    def execute(self, sql, params=None):
        if self._conn.drop_on_execute:
            # What psycopg2 does when the server goes away mid-query
            self._conn.closed = 2
            raise psycopg2.OperationalError("server closed the connection unexpectedly")
        self._conn.executed.append((sql, params))
        self._conn.status = extensions.TRANSACTION_STATUS_INTRANS
        self._rows = self._conn.results.pop(0) if self._conn.results else []
        self.rowcount = len(self._rows)

    def fetchall(self):
        return self._rows

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class FakeConnection:
    """Scripted psycopg2 connection. `results` holds one row list per statement."""

    def __init__(self):
        self.closed = 0
        self.autocommit = True
        self.status = extensions.TRANSACTION_STATUS_IDLE
        self.drop_on_execute = False
        self.results = []
        self.executed = []
        self.cursors = []
        self.rollbacks = 0
        self.commits = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def get_transaction_status(self):
        return self.status

    def _check_open(self):
        if self.closed:
            raise psycopg2.InterfaceError("connection already closed")

    def commit(self):
        self._check_open()
        self.commits += 1
        self.status = extensions.TRANSACTION_STATUS_IDLE

    def rollback(self):
        self._check_open()
        self.rollbacks += 1
        self.status = extensions.TRANSACTION_STATUS_IDLE

    def close(self):
        self.closed = 1


class FakeThreadedPool:
    """Stands in for psycopg2.pool.ThreadedConnectionPool."""

    def __init__(self, minconn, maxconn, dsn):
        self.connections = []
        self.returned = []

    @property
    def current(self) -> FakeConnection:
        return self.connections[-1]

    def getconn(self):
        if not self.connections or self.current.closed:
            self.connections.append(FakeConnection())
        return self.current

    def putconn(self, conn, close=False):
        self.returned.append((conn, close))
        if close:
            conn.close()

    def closeall(self):
        for conn in self.connections:
            conn.close()


@pytest.fixture
def store(monkeypatch):
    monkeypatch.setattr(postgres_store.pg_pool, "ThreadedConnectionPool", FakeThreadedPool)
    return PostgresStore("postgresql://racer@localhost/racer", max_connections=2)


def fake_pool(store) -> FakeThreadedPool:
    return store.pool._pool


def vote_row(**overrides):
    row = {
        "id": Decimal(1),
        "chain_id": CHAIN,
        "cycle_id": Decimal(7),
        "placer": "0xabc",
        "symbol": memoryview(b"AAAA"),
        "amount": Decimal(10 ** 30),
        "placement": Decimal(2),
        "observed_at_block": 105,
        "claimed": True,
        "claimed_at_block": 110,
    }
    row.update(overrides)
    return row


class TestQueries:
    """Test SQL adaptation and row mapping."""

    def test_placeholders_adapted(self, store):
        assert store._adapt_sql("a = ? AND b = ?") == "a = %s AND b = %s"

    def test_schema_created_and_committed(self, store):
        conn = fake_pool(store).current
        assert "CREATE TABLE IF NOT EXISTS votes" in conn.executed[0][0]
        assert "NUMERIC(78, 0)" in conn.executed[0][0]
        assert conn.commits == 1

    def test_vote_row_mapping(self, store):
        conn = fake_pool(store).current
        conn.results = [[vote_row()]]

        vote = store.get_vote(1, CHAIN)

        sql, params = conn.executed[-1]
        assert "%s" in sql and "?" not in sql
        assert params == (1, CHAIN)
        assert vote.amount == 10 ** 30
        assert vote.symbol == b"AAAA"
        assert vote.claimed_at_block == 110

    def test_leaderboard_order_comes_from_sql(self, store):
        conn = fake_pool(store).current
        conn.results = [[
            {"symbol": memoryview(b"BBBB"), "amount": Decimal(30), "latest_block": 3},
            {"symbol": memoryview(b"AAAA"), "amount": Decimal(30), "latest_block": 5},
            {"symbol": memoryview(b"CCCC"), "amount": Decimal(10), "latest_block": 9},
        ]]

        entries = store.leaderboard(7, CHAIN)

        assert "ORDER BY amount DESC, latest_block ASC, symbol ASC" in conn.executed[-1][0]
        assert [e.symbol for e in entries] == [b"BBBB", b"AAAA", b"CCCC"]
        assert entries[0].latest_contributing_block == 3

    def test_read_leaves_connection_idle(self, store):
        conn = fake_pool(store).current
        store.get_sync_height(CHAIN)

        assert conn.status == extensions.TRANSACTION_STATUS_IDLE
        assert conn.rollbacks >= 1

    def test_cursors_closed(self, store):
        conn = fake_pool(store).current
        store.get_sync_height(CHAIN)
        with store.begin_transaction() as tx:
            tx.delete_votes(CHAIN, 100)

        assert conn.cursors
        assert all(cursor.closed for cursor in conn.cursors)

    def test_transaction_returns_row_counts(self, store):
        conn = fake_pool(store).current
        conn.results = [[{}, {}]]
        with store.begin_transaction() as tx:
            assert tx.delete_cycles(CHAIN, 100) == 2
        assert conn.commits == 2


class TestDroppedConnection:
    """A server restart is a store failure, never a driver error leaking out."""

    def test_read_raises_store_error(self, store):
        conn = fake_pool(store).current
        conn.drop_on_execute = True

        with pytest.raises(StoreError) as exc:
            store.get_sync_height(CHAIN)
        assert "server closed the connection" in str(exc.value)

    def test_broken_connection_discarded_and_replaced(self, store):
        pool = fake_pool(store)
        broken = pool.current
        broken.drop_on_execute = True

        with pytest.raises(StoreError):
            store.get_sync_height(CHAIN)
        assert pool.returned[-1] == (broken, True)

        assert store.get_sync_height(CHAIN) == 0
        assert pool.current is not broken

    def test_failed_reset_discards_connection(self, store):
        pool = fake_pool(store)
        conn = pool.current

        def failing_rollback():
            raise psycopg2.OperationalError("terminating connection")

        conn.status = extensions.TRANSACTION_STATUS_INERROR
        conn.rollback = failing_rollback
        store.pool.release(store.pool.acquire())

        assert pool.returned[-1] == (conn, True)

    def test_transaction_on_dropped_connection(self, store):
        conn = fake_pool(store).current
        tx = store.begin_transaction()
        conn.drop_on_execute = True

        with pytest.raises(StoreError):
            tx.delete_votes(CHAIN, 100)
        tx.rollback()

        assert tx.finished
        assert fake_pool(store).returned[-1][0] is conn

    @pytest.mark.asyncio
    async def test_engine_survives_database_restart(self, store):
        client = MockChainClient(chain_id=CHAIN)
        engine = ChainSyncEngine(
            client,
            AsyncStore(store),
            SyncEngineConfig(start_height=90, reorg_threshold=7, reconcile_timeout=5.0),
        )
        await engine.connect()
        fake_pool(store).current.drop_on_execute = True

        assert await engine.process_head(100) is None
        assert engine.get_stats()["reconciliations_failed"] == 1
        assert engine.state != EngineState.FAULTED

        # The pool hands out a fresh connection on the next head
        result = await asyncio.wait_for(engine.process_head(101), timeout=5)
        assert result is not None
        assert result.synced_height == 94
