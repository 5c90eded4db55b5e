"""
Indexer Coordinator

Runs one ChainSyncEngine per configured chain against a shared store.
Engines are independent: a faulted chain is reported and the others keep
following their heads.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..chain.client import ChainClient
from ..persistence.async_store import AsyncStore
from .sync_engine import ChainSyncEngine, ChainSyncFault, EngineState, SyncEngineConfig


@dataclass
class CoordinatorResult:
    """Outcome of IndexerCoordinator.run()."""
    stopped: List[str] = field(default_factory=list)
    faulted: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.faulted


class IndexerCoordinator:
    """
    Orchestrates the sync engines.

    Usage:
        coordinator = IndexerCoordinator(store, SyncEngineConfig(start_height=100))
        coordinator.add_chain("mainnet", client)
        result = await coordinator.run()
        if not result.ok:
            sys.exit(1)
    """

    def __init__(
        self,
        store: AsyncStore,
        engine_config: Optional[SyncEngineConfig] = None,
        logger: logging.Logger = None
    ):
        self._store = store
        self._engine_config = engine_config or SyncEngineConfig()
        self._logger = logger or logging.getLogger("IndexerCoordinator")

        self._clients: Dict[str, ChainClient] = {}
        self._engines: Dict[str, ChainSyncEngine] = {}

    def add_chain(self, name: str, client: ChainClient, config: Optional[SyncEngineConfig] = None) -> ChainSyncEngine:
        if name in self._engines:
            raise ValueError(f"chain {name!r} already added")
        engine = ChainSyncEngine(
            client,
            self._store,
            config or self._engine_config,
            logger=logging.getLogger(f"ChainSyncEngine[{name}]"),
        )
        self._clients[name] = client
        self._engines[name] = engine
        return engine

    @property
    def engines(self) -> Dict[str, ChainSyncEngine]:
        return dict(self._engines)

    async def run(self) -> CoordinatorResult:
        """Run every engine to completion. Never raises for an engine fault."""
        if not self._engines:
            raise ValueError("no chains configured")

        names = list(self._engines)
        self._logger.info(f"Starting {len(names)} sync engine(s): {', '.join(names)}")
        outcomes = await asyncio.gather(
            *(self._run_engine(name) for name in names),
            return_exceptions=True
        )

        result = CoordinatorResult()
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException) or self._engines[name].state == EngineState.FAULTED:
                result.faulted.append(name)
            else:
                result.stopped.append(name)
        self._logger.info(f"Indexer finished: stopped={result.stopped} faulted={result.faulted}")
        return result

    async def _run_engine(self, name: str):
        client = self._clients[name]
        engine = self._engines[name]
        try:
            await client.start()
            await engine.run()
        except ChainSyncFault as e:
            self._logger.critical(f"ALERT: sync engine for chain {name} faulted: {e}")
            raise
        except Exception as e:
            self._logger.critical(f"ALERT: sync engine for chain {name} crashed: {e}", exc_info=True)
            raise
        finally:
            await client.stop()

    async def stop(self):
        for engine in self._engines.values():
            await engine.stop()
        self._logger.info("Indexer stop requested")

    def get_stats(self) -> Dict:
        return {name: engine.get_stats() for name, engine in self._engines.items()}
