#!/usr/bin/env python3
"""
Racer Indexer Runner.

Follows every configured chain and mirrors the Racer contract into the
database. Configuration comes from the environment or a .env file
(DATABASE_URL, RPC_URL, WS_RPC_URL, RACER_ADDRESS, START_HEIGHT, ...).

Usage:
    python scripts/run_indexer.py
    python scripts/run_indexer.py --verbose
    python scripts/run_indexer.py --status  # Print store stats and exit

Exits non-zero when any chain's engine faulted, so a process supervisor
can restart it.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from racer.chain import ChainClientConfig, JsonRpcChainClient
from racer.config import ConfigError, IndexerConfig
from racer.indexer import IndexerCoordinator, SyncEngineConfig
from racer.persistence import AsyncStore, StoreError, open_store


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    return logging.getLogger('RacerIndexer')


def print_status(stats: dict):
    print()
    print("=" * 60)
    print("RACER INDEXER STATUS")
    print("=" * 60)
    for key, value in stats.items():
        print(f"  {key}: {value}")
    print()


async def run_indexer(config: IndexerConfig, logger: logging.Logger) -> int:
    store = AsyncStore(open_store(config.database_url, max_connections=config.pool_size))
    engine_config = SyncEngineConfig(
        start_height=config.start_height,
        reorg_threshold=config.reorg_threshold,
        reconcile_timeout=config.reconcile_timeout,
    )
    coordinator = IndexerCoordinator(store, engine_config)
    for endpoint in config.chains:
        client = JsonRpcChainClient(ChainClientConfig(
            rpc_url=endpoint.rpc_url,
            contract_address=config.racer_address,
            ws_url=endpoint.ws_url,
        ))
        coordinator.add_chain(endpoint.name, client)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(coordinator.stop()))
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises
            pass

    logger.info(
        f"Indexing {len(config.chains)} chain(s) for contract {config.racer_address} "
        f"from height {config.start_height}"
    )
    try:
        result = await coordinator.run()
    finally:
        store.close()

    if not result.ok:
        logger.critical(f"Faulted chains: {', '.join(result.faulted)}")
        return 1
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Racer Indexer - reorg-aware chain sync into the database'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--status',
        action='store_true',
        help='Print store stats and exit'
    )
    args = parser.parse_args()

    logger = setup_logging(args.verbose)

    try:
        config = IndexerConfig.from_env()
    except ConfigError as e:
        logger.critical(f"Invalid configuration: {e}")
        return 2

    if args.status:
        try:
            store = open_store(config.database_url, max_connections=1)
        except StoreError as e:
            logger.error(f"Could not open store: {e}")
            return 1
        try:
            print_status(store.get_stats())
        finally:
            store.close()
        return 0

    try:
        return asyncio.run(run_indexer(config, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == '__main__':
    sys.exit(main())
