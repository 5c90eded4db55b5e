"""
Chain access for the Racer contract.

Components:
- numeric: fixed-width integer <-> Decimal codec
- events: pure log decoding into event variants
- ChainClient: node capability interface (JSON-RPC implementation + mock)
"""

from .numeric import (
    bytes_to_decimal,
    decimal_to_bytes,
    decimal_to_int,
    hex_to_int,
    int_to_hex,
)
from .events import (
    CYCLE_CREATED_TOPIC,
    VOTE_PLACED_TOPIC,
    VOTE_CLAIMED_TOPIC,
    RACER_TOPICS,
    EventDecodeError,
    decode_event,
    decode_log,
    decode_logs,
)
from .client import (
    BlockNotification,
    ChainClient,
    ChainClientConfig,
    ChainClientError,
    HeadSubscription,
    JsonRpcChainClient,
)
from .mock_client import MockChainClient

__all__ = [
    "bytes_to_decimal",
    "decimal_to_bytes",
    "decimal_to_int",
    "hex_to_int",
    "int_to_hex",
    "CYCLE_CREATED_TOPIC",
    "VOTE_PLACED_TOPIC",
    "VOTE_CLAIMED_TOPIC",
    "RACER_TOPICS",
    "EventDecodeError",
    "decode_event",
    "decode_log",
    "decode_logs",
    "BlockNotification",
    "ChainClient",
    "ChainClientConfig",
    "ChainClientError",
    "HeadSubscription",
    "JsonRpcChainClient",
    "MockChainClient",
]
