"""
Chain Client

Capability interface the indexer and publishers need from an EVM node, and a
JSON-RPC implementation of it:

- HTTP JSON-RPC (aiohttp): eth_chainId, eth_blockNumber, eth_getBlockByHash, eth_getLogs
- WebSocket (websockets): eth_subscribe ["newHeads"] for live head notifications

Reconnecting a dropped head stream is this module's job, not the indexer's.
Only the initial subscription is allowed to fail loudly.
"""

import asyncio
import itertools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
import websockets

from ..config import http_to_ws
from ..types import ChainEvent
from .events import RACER_TOPICS, EventDecodeError, decode_logs
from .numeric import hex_to_int, int_to_hex


class ChainClientError(RuntimeError):
    """Any failure talking to the node."""


@dataclass(frozen=True)
class BlockNotification:
    """A new-head notification. `number` is None when the node sent only a hash."""
    block_hash: str
    number: Optional[int] = None


class HeadSubscription(ABC):
    """Async-iterable stream of head notifications."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[BlockNotification]:
        ...

    @abstractmethod
    async def close(self):
        ...


class ChainClient(ABC):
    """Operations the core needs from a chain node. All may raise ChainClientError."""

    @abstractmethod
    async def chain_id(self) -> int:
        ...

    @abstractmethod
    async def head_block_number(self) -> int:
        ...

    @abstractmethod
    async def subscribe_new_heads(self) -> HeadSubscription:
        ...

    @abstractmethod
    async def resolve_block_number(self, notification: BlockNotification) -> int:
        ...

    @abstractmethod
    async def query_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        """Racer events in [from_block, to_block], ordered by block then log index."""
        ...

    async def start(self):
        """Open transport resources. No-op by default."""

    async def stop(self):
        """Release transport resources. No-op by default."""


@dataclass
class ChainClientConfig:
    """Configuration for JsonRpcChainClient."""
    rpc_url: str
    contract_address: str
    ws_url: Optional[str] = None  # None = derived from rpc_url

    request_timeout: float = 30.0

    # Head stream reconnection
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    ping_interval: float = 20.0

    def resolved_ws_url(self) -> str:
        return self.ws_url or http_to_ws(self.rpc_url)


class JsonRpcChainClient(ChainClient):
    """
    EVM JSON-RPC client scoped to one Racer contract.

    Usage:
        client = JsonRpcChainClient(ChainClientConfig(rpc_url, contract_address))
        await client.start()
        chain_id = await client.chain_id()
        subscription = await client.subscribe_new_heads()
        async for head in subscription:
            ...
        await client.stop()
    """

    def __init__(self, config: ChainClientConfig, logger: logging.Logger = None):
        self.config = config
        self._logger = logger or logging.getLogger("JsonRpcChainClient")
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def start(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )

    async def stop(self):
        if self._session:
            await self._session.close()
            self._session = None

    # =========================================================================
    # JSON-RPC transport
    # =========================================================================

    async def _call(self, method: str, params: List[Any]) -> Any:
        if self._session is None:
            await self.start()

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            async with self._session.post(
                self.config.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"}
            ) as response:
                if response.status != 200:
                    raise ChainClientError(f"{method} failed: HTTP {response.status}")
                body = await response.json(content_type=None)
        except ChainClientError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ChainClientError(f"{method} failed: {e}") from e

        if "error" in body and body["error"] is not None:
            raise ChainClientError(f"{method} error: {body['error']}")
        return body.get("result")

    # =========================================================================
    # ChainClient
    # =========================================================================

    async def chain_id(self) -> int:
        return hex_to_int(await self._call("eth_chainId", []))

    async def head_block_number(self) -> int:
        return hex_to_int(await self._call("eth_blockNumber", []))

    async def resolve_block_number(self, notification: BlockNotification) -> int:
        if notification.number is not None:
            return notification.number
        block = await self._call("eth_getBlockByHash", [notification.block_hash, False])
        if not block or block.get("number") is None:
            raise ChainClientError(f"block {notification.block_hash} not found")
        return hex_to_int(block["number"])

    async def query_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        logs = await self._call("eth_getLogs", [{
            "address": self.config.contract_address,
            "fromBlock": int_to_hex(from_block),
            "toBlock": int_to_hex(to_block),
            "topics": [RACER_TOPICS],
        }])
        try:
            events = decode_logs(logs or [])
        except EventDecodeError as e:
            raise ChainClientError(f"could not decode logs [{from_block}, {to_block}]: {e}") from e

        self._logger.debug(f"eth_getLogs [{from_block}, {to_block}]: {len(events)} events")
        return events

    async def subscribe_new_heads(self) -> "NewHeadsSubscription":
        subscription = NewHeadsSubscription(self.config, self._logger)
        await subscription.open()
        return subscription


class NewHeadsSubscription(HeadSubscription):
    """
    eth_subscribe newHeads over a WebSocket.

    open() fails fast. Once open, a dropped socket is reopened with
    exponential backoff and iteration resumes transparently.
    """

    def __init__(self, config: ChainClientConfig, logger: logging.Logger):
        self._config = config
        self._logger = logger
        self._ws = None
        self._closed = False

    async def open(self):
        url = self._config.resolved_ws_url()
        try:
            self._ws = await websockets.connect(url, ping_interval=self._config.ping_interval)
            await self._ws.send(json.dumps({
                "jsonrpc": "2.0",
                "id": 1,
                "method": "eth_subscribe",
                "params": ["newHeads"],
            }))
            reply = json.loads(await self._ws.recv())
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException, ValueError) as e:
            await self._discard_socket()
            raise ChainClientError(f"could not subscribe to new heads on {url}: {e}") from e

        if reply.get("error"):
            await self._discard_socket()
            raise ChainClientError(f"eth_subscribe rejected: {reply['error']}")
        self._logger.info(f"Subscribed to new heads on {url}")

    async def _discard_socket(self):
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                self._logger.debug(f"error closing head socket: {e}")
            self._ws = None

    async def _reconnect(self):
        delay = self._config.reconnect_delay
        while not self._closed:
            try:
                await self.open()
                return
            except ChainClientError as e:
                self._logger.warning(f"Head stream reconnect failed: {e}, retrying in {delay}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._config.max_reconnect_delay)

    @staticmethod
    def _parse_notification(message: Dict[str, Any]) -> Optional[BlockNotification]:
        if message.get("method") != "eth_subscription":
            return None
        header = (message.get("params") or {}).get("result") or {}
        block_hash = header.get("hash")
        if block_hash is None:
            return None
        number = header.get("number")
        return BlockNotification(
            block_hash=block_hash,
            number=hex_to_int(number) if number is not None else None,
        )

    async def __aiter__(self) -> AsyncIterator[BlockNotification]:
        while not self._closed:
            if self._ws is None:
                await self._reconnect()
                continue
            try:
                raw = await self._ws.recv()
            except websockets.ConnectionClosed as e:
                if self._closed:
                    return
                self._logger.warning(f"Head stream dropped: {e}")
                self._ws = None
                continue

            try:
                notification = self._parse_notification(json.loads(raw))
            except ValueError as e:
                self._logger.warning(f"Ignoring malformed head notification: {e}")
                continue
            if notification is not None:
                yield notification

    async def close(self):
        self._closed = True
        await self._discard_socket()
