"""
Integration tests for the pub/sub WebSocket server.

Runs the FastAPI app in-process with a real SQLite store behind the
leaderboard publisher and a mock chain for the head height.
"""

import json
import os
import tempfile

import pytest
from fastapi.testclient import TestClient

from racer.chain import MockChainClient
from racer.persistence import AsyncStore, SQLiteStore
from racer.pubsub import (
    BroadcastHub,
    LeaderboardPublisher,
    OnlinePublisher,
    PublisherConfig,
)
from racer.pubsub.server import create_app
from racer.types import Cycle, Vote


CHAIN = 31337
PLACER = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"


def seed(store):
    """One current cycle with three votes on two symbols."""
    with store.begin_transaction() as tx:
        tx.upsert_cycle(Cycle(
            id=3,
            chain_id=CHAIN,
            start_block=100,
            block_length=50,
            vote_price=10,
            creator=PLACER,
            observed_at_block=100,
        ))
        for vote_id, symbol, amount in ((1, b"AAAA", 10), (2, b"BBBB", 40), (3, b"AAAA", 5)):
            tx.upsert_vote(Vote(
                id=vote_id,
                chain_id=CHAIN,
                cycle_id=3,
                placer=PLACER,
                symbol=symbol,
                amount=amount,
                observed_at_block=100 + vote_id,
            ))


class TestWebSocketServer:
    """Test /ws and /api/status end to end."""

    @pytest.fixture
    def sqlite_store(self):
        fd, path = tempfile.mkstemp(suffix='.db')
        os.close(fd)
        store = SQLiteStore(path, max_connections=2)
        seed(store)
        yield store
        store.close()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(path + suffix):
                os.unlink(path + suffix)

    @pytest.fixture
    def hub(self):
        return BroadcastHub()

    @pytest.fixture
    def app(self, hub, sqlite_store):
        chain = MockChainClient(chain_id=CHAIN, head=120)
        config = PublisherConfig(interval=0.05, timeout=1.0)
        publishers = [
            OnlinePublisher(hub, config),
            LeaderboardPublisher(AsyncStore(sqlite_store), chain, hub, config),
        ]
        return create_app(hub, publishers, clients=[chain])

    def test_status_endpoint(self, app):
        with TestClient(app) as client:
            response = client.get("/api/status")

        assert response.status_code == 200
        status = response.json()
        assert status["online"] == 0
        assert status["subscribers"] == {"leaderboard": 0, "online": 0}
        assert len(status["publishers"]) == 2

    def test_online_subscription(self, app):
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text(json.dumps({"address": None, "subscriptions": ["online"]}))
                message = json.loads(ws.receive_text())

                assert message == {"type": "online", "count": 1}
                assert client.get("/api/status").json()["online"] == 1

    def test_leaderboard_subscription(self, app):
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text(json.dumps({"subscriptions": ["leaderboard"]}))
                message = json.loads(ws.receive_text())

        assert message == {
            "type": "leaderboard",
            "cycle_id": 3,
            "metadata": {"blocks_remaining": 30, "votes": 3, "payout": "30"},
            "leaderboard": [
                {"emoji": "B", "value": 40},
                {"emoji": "A", "value": 15},
            ],
        }

    def test_parse_error_keeps_connection(self, app):
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text('{"subscriptions": ["prices"]}')
                error = ws.receive_text()
                assert "unknown variant" in error

                ws.send_text(json.dumps({"subscriptions": ["online"]}))
                assert json.loads(ws.receive_text())["type"] == "online"

    def test_late_joiner_gets_snapshot_first(self, app, hub):
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as first:
                first.send_text(json.dumps({"subscriptions": ["leaderboard"]}))
                published = first.receive_text()

                with client.websocket_connect("/ws") as second:
                    second.send_text(json.dumps({"subscriptions": ["leaderboard"]}))
                    assert second.receive_text() == published
