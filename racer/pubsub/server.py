"""
WebSocket server for the Racer pub/sub feeds.

Endpoints:
- /ws          subscription WebSocket (one SubscriptionRouter per client)
- /api/status  online count, topic subscribers, publisher stats

Run with scripts/run_server.py.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, WebSocket

from ..chain.client import ChainClient
from ..config import ServerConfig
from .hub import BroadcastHub
from .publishers import PeriodicPublisher, run_publishers, stop_publishers
from .router import DEFAULT_OUTBOUND_CAPACITY, SubscriptionRouter


logger = logging.getLogger(__name__)


class WebSocketConnection:
    """Connection adapter over a FastAPI WebSocket. Binary frames are ignored."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket

    async def receive_text(self) -> Optional[str]:
        while True:
            message = await self._websocket.receive()
            if message["type"] == "websocket.disconnect":
                return None
            text = message.get("text")
            if text is not None:
                return text

    async def send_text(self, message: str) -> None:
        await self._websocket.send_text(message)


def create_app(
    hub: BroadcastHub,
    publishers: Optional[List[PeriodicPublisher]] = None,
    config: Optional[ServerConfig] = None,
    clients: Optional[List[ChainClient]] = None
) -> FastAPI:
    """Build the app. Publishers and chain clients live as long as the app."""
    publishers = list(publishers or [])
    clients = list(clients or [])
    outbound_capacity = config.outbound_capacity if config else DEFAULT_OUTBOUND_CAPACITY

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for client in clients:
            await client.start()
        task = None
        if publishers:
            task = asyncio.create_task(run_publishers(publishers))
            logger.info(f"Started {len(publishers)} publisher(s)")
        try:
            yield
        finally:
            if task is not None:
                await stop_publishers(publishers)
                try:
                    await asyncio.wait_for(task, timeout=10)
                except asyncio.TimeoutError:
                    logger.warning("Publishers did not stop in time, cancelling")
                    task.cancel()
                except Exception as e:
                    logger.error(f"Publisher exited with error: {e}")
            for client in clients:
                await client.stop()

    app = FastAPI(title="Racer Pub/Sub", lifespan=lifespan)
    app.state.hub = hub
    app.state.publishers = publishers

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        client = websocket.client
        name = f"{client.host}:{client.port}" if client else "client"
        router = SubscriptionRouter(
            hub,
            WebSocketConnection(websocket),
            outbound_capacity=outbound_capacity,
            name=name,
        )
        await router.run()

    @app.get("/api/status")
    async def get_status():
        return {
            "online": hub.online.value,
            "subscribers": {name: hub.subscriber_count(name) for name in hub.topics},
            "publishers": [publisher.get_stats() for publisher in publishers],
        }

    return app
