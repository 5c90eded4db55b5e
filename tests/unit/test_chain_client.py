"""
Unit tests for the JSON-RPC chain client and its mock.

The JSON-RPC transport is replaced by a canned responder so no node is needed.
"""

import pytest

from racer.chain import (
    RACER_TOPICS,
    BlockNotification,
    ChainClientConfig,
    ChainClientError,
    JsonRpcChainClient,
    MockChainClient,
)
from racer.chain.client import NewHeadsSubscription
from racer.types import VoteClaimed


CONTRACT = "0x2222222222222222222222222222222222222222"


class CannedRpc:
    """Stands in for JsonRpcChainClient._call."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def __call__(self, method, params):
        self.calls.append((method, params))
        response = self.responses[method]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def client():
    return JsonRpcChainClient(ChainClientConfig(rpc_url="http://node:8545", contract_address=CONTRACT))


class TestJsonRpcChainClient:
    """Test request shapes and response decoding."""

    @pytest.mark.asyncio
    async def test_chain_id_and_head(self, client, monkeypatch):
        rpc = CannedRpc({"eth_chainId": "0x7a69", "eth_blockNumber": "0x64"})
        monkeypatch.setattr(client, "_call", rpc)

        assert await client.chain_id() == 31337
        assert await client.head_block_number() == 100

    @pytest.mark.asyncio
    async def test_resolve_uses_header_number(self, client, monkeypatch):
        rpc = CannedRpc({})
        monkeypatch.setattr(client, "_call", rpc)

        assert await client.resolve_block_number(BlockNotification("0xabc", 55)) == 55
        assert rpc.calls == []

    @pytest.mark.asyncio
    async def test_resolve_by_hash(self, client, monkeypatch):
        rpc = CannedRpc({"eth_getBlockByHash": {"number": "0x10"}})
        monkeypatch.setattr(client, "_call", rpc)

        assert await client.resolve_block_number(BlockNotification("0xabc")) == 16
        assert rpc.calls[0] == ("eth_getBlockByHash", ["0xabc", False])

    @pytest.mark.asyncio
    async def test_resolve_unknown_hash(self, client, monkeypatch):
        monkeypatch.setattr(client, "_call", CannedRpc({"eth_getBlockByHash": None}))

        with pytest.raises(ChainClientError):
            await client.resolve_block_number(BlockNotification("0xabc"))

    @pytest.mark.asyncio
    async def test_query_events_filter(self, client, monkeypatch):
        rpc = CannedRpc({"eth_getLogs": []})
        monkeypatch.setattr(client, "_call", rpc)

        assert await client.query_events(100, 120) == []

        method, params = rpc.calls[0]
        assert method == "eth_getLogs"
        assert params == [{
            "address": CONTRACT,
            "fromBlock": "0x64",
            "toBlock": "0x78",
            "topics": [RACER_TOPICS],
        }]

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, client, monkeypatch):
        monkeypatch.setattr(client, "_call", CannedRpc({"eth_chainId": ChainClientError("HTTP 502")}))

        with pytest.raises(ChainClientError):
            await client.chain_id()

    def test_ws_url_derived_from_rpc_url(self):
        config = ChainClientConfig(rpc_url="https://node/rpc", contract_address=CONTRACT)
        assert config.resolved_ws_url() == "wss://node/rpc"

        config = ChainClientConfig(rpc_url="https://node", contract_address=CONTRACT, ws_url="ws://other")
        assert config.resolved_ws_url() == "ws://other"


class TestHeadNotifications:
    """Test newHeads message parsing."""

    def test_parses_header(self):
        message = {
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": "0x1", "result": {"hash": "0xabc", "number": "0x1f"}},
        }
        assert NewHeadsSubscription._parse_notification(message) == BlockNotification("0xabc", 31)

    def test_header_without_number(self):
        message = {"method": "eth_subscription", "params": {"result": {"hash": "0xabc"}}}
        assert NewHeadsSubscription._parse_notification(message) == BlockNotification("0xabc", None)

    def test_ignores_other_messages(self):
        assert NewHeadsSubscription._parse_notification({"id": 1, "result": "0x1"}) is None


class TestMockChainClient:
    """Test the scripted chain used by engine tests."""

    @pytest.mark.asyncio
    async def test_query_returns_block_tagged_events(self):
        client = MockChainClient()
        claim = VoteClaimed(placer="0xabc", id=1, reward=2)
        client.set_block_events(10, [claim])
        client.set_block_events(30, [claim])

        events = await client.query_events(5, 20)

        assert [(e.block_number, e.event) for e in events] == [(10, claim)]
        assert client.queries == [(5, 20)]

    @pytest.mark.asyncio
    async def test_head_stream(self):
        client = MockChainClient()
        client.push_head(5)
        client.push_head(6, with_number=False)
        client.end_heads()

        subscription = await client.subscribe_new_heads()
        numbers = [await client.resolve_block_number(n) async for n in subscription]

        assert numbers == [5, 6]
