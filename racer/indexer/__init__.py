"""
Racer indexer: mirrors the contract into the store, one engine per chain.
"""

from .sync_engine import (
    ChainSyncEngine,
    ChainSyncFault,
    EngineState,
    ReconcileResult,
    SyncEngineConfig,
    compute_target_height,
    reorg_safe_height,
)
from .coordinator import CoordinatorResult, IndexerCoordinator

__all__ = [
    "ChainSyncEngine",
    "ChainSyncFault",
    "EngineState",
    "ReconcileResult",
    "SyncEngineConfig",
    "compute_target_height",
    "reorg_safe_height",
    "CoordinatorResult",
    "IndexerCoordinator",
]
