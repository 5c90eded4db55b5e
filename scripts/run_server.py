#!/usr/bin/env python3
"""
Racer Pub/Sub Server Runner.

Serves the /ws subscription endpoint with uvicorn and runs the online and
leaderboard publishers. Configuration comes from the environment or a .env
file (DATABASE_URL, RPC_URL, RACER_ADDRESS, CHAIN_ID, SERVER_HOST, ...).

Usage:
    python scripts/run_server.py
    python scripts/run_server.py --host 0.0.0.0 --port 3000 --verbose
"""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from racer.chain import ChainClientConfig, JsonRpcChainClient
from racer.config import ConfigError, ServerConfig
from racer.persistence import AsyncStore, open_store
from racer.pubsub import BroadcastHub, LeaderboardPublisher, OnlinePublisher, PublisherConfig
from racer.pubsub.server import create_app


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    return logging.getLogger('RacerServer')


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Racer Pub/Sub Server - live online count and leaderboard over WebSocket'
    )
    parser.add_argument('--host', type=str, default=None, help='Bind address (default: SERVER_HOST or 127.0.0.1)')
    parser.add_argument('--port', type=int, default=None, help='Bind port (default: SERVER_PORT or 3000)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    logger = setup_logging(args.verbose)

    try:
        config = ServerConfig.from_env()
    except ConfigError as e:
        logger.critical(f"Invalid configuration: {e}")
        return 2

    host = args.host or config.host
    port = args.port or config.port

    store = AsyncStore(open_store(config.database_url, max_connections=config.pool_size))
    client = JsonRpcChainClient(ChainClientConfig(
        rpc_url=config.rpc_url,
        contract_address=config.racer_address,
    ))
    hub = BroadcastHub()
    publisher_config = PublisherConfig(
        interval=config.publish_interval,
        timeout=config.publish_timeout,
    )
    publishers = [
        OnlinePublisher(hub, publisher_config),
        LeaderboardPublisher(store, client, hub, publisher_config, chain_id=config.chain_id),
    ]
    app = create_app(hub, publishers, config, clients=[client])

    logger.info(f"Listening on {host}:{port}")
    try:
        uvicorn.run(app, host=host, port=port, log_level="debug" if args.verbose else "info")
    finally:
        store.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
