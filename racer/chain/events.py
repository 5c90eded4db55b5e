"""
Racer Event Decoding

Pure decoding of raw `eth_getLogs` entries into Racer event variants.
No transport, no side effects: a raw log dict goes in, a ChainEvent comes out.

Contract events:
    CycleCreated(address indexed creator, uint256 indexed id, uint256, uint256, uint256)
    VotePlaced(address indexed placer, uint256 indexed voteId, uint256 indexed cycleId,
               bytes4 symbol, uint256 amount, uint256 placement)
    VoteClaimed(address indexed placer, uint256 indexed id, uint256 reward)
"""

from typing import Any, Dict, List, Optional, Sequence

from eth_abi import decode as abi_decode
from eth_utils import decode_hex, encode_hex, keccak

from ..types import ChainEvent, CycleCreated, RacerEvent, VoteClaimed, VotePlaced
from .numeric import hex_to_int


CYCLE_CREATED_SIGNATURE = "CycleCreated(address,uint256,uint256,uint256,uint256)"
VOTE_PLACED_SIGNATURE = "VotePlaced(address,uint256,uint256,bytes4,uint256,uint256)"
VOTE_CLAIMED_SIGNATURE = "VoteClaimed(address,uint256,uint256)"

CYCLE_CREATED_TOPIC = encode_hex(keccak(text=CYCLE_CREATED_SIGNATURE))
VOTE_PLACED_TOPIC = encode_hex(keccak(text=VOTE_PLACED_SIGNATURE))
VOTE_CLAIMED_TOPIC = encode_hex(keccak(text=VOTE_CLAIMED_SIGNATURE))

RACER_TOPICS: List[str] = [CYCLE_CREATED_TOPIC, VOTE_PLACED_TOPIC, VOTE_CLAIMED_TOPIC]


class EventDecodeError(ValueError):
    """A log claimed to be a Racer event but could not be decoded."""


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return decode_hex(value)
    # HexBytes and friends
    return bytes(value)


def _topic_address(topic: bytes) -> str:
    if len(topic) != 32:
        raise EventDecodeError(f"address topic must be 32 bytes, got {len(topic)}")
    return "0x" + topic[-20:].hex()


def _topic_uint(topic: bytes) -> int:
    if len(topic) != 32:
        raise EventDecodeError(f"uint256 topic must be 32 bytes, got {len(topic)}")
    return int.from_bytes(topic, byteorder="big", signed=False)


def _require_topics(topics: Sequence[bytes], count: int, name: str):
    if len(topics) != count:
        raise EventDecodeError(f"{name} expects {count} topics, got {len(topics)}")


def _decode_cycle_created(topics: Sequence[bytes], data: bytes) -> CycleCreated:
    _require_topics(topics, 3, "CycleCreated")
    start_block, block_length, vote_price = abi_decode(
        ["uint256", "uint256", "uint256"], data
    )
    return CycleCreated(
        creator=_topic_address(topics[1]),
        id=_topic_uint(topics[2]),
        start_block=start_block,
        block_length=block_length,
        vote_price=vote_price,
    )


def _decode_vote_placed(topics: Sequence[bytes], data: bytes) -> VotePlaced:
    _require_topics(topics, 4, "VotePlaced")
    symbol, amount, placement = abi_decode(["bytes4", "uint256", "uint256"], data)
    return VotePlaced(
        placer=_topic_address(topics[1]),
        vote_id=_topic_uint(topics[2]),
        cycle_id=_topic_uint(topics[3]),
        symbol=bytes(symbol),
        amount=amount,
        placement=placement,
    )


def _decode_vote_claimed(topics: Sequence[bytes], data: bytes) -> VoteClaimed:
    _require_topics(topics, 3, "VoteClaimed")
    (reward,) = abi_decode(["uint256"], data)
    return VoteClaimed(
        placer=_topic_address(topics[1]),
        id=_topic_uint(topics[2]),
        reward=reward,
    )


_DECODERS = {
    CYCLE_CREATED_TOPIC: _decode_cycle_created,
    VOTE_PLACED_TOPIC: _decode_vote_placed,
    VOTE_CLAIMED_TOPIC: _decode_vote_claimed,
}


def decode_event(topics: Sequence[Any], data: Any) -> Optional[RacerEvent]:
    """
    Decode topics + data into an event variant.

    Returns:
        The event, or None when topic0 is not a Racer event.

    Raises:
        EventDecodeError: topic0 matched but the payload is malformed
    """
    if not topics:
        return None
    topic_bytes = [_to_bytes(t) for t in topics]
    decoder = _DECODERS.get(encode_hex(topic_bytes[0]))
    if decoder is None:
        return None
    try:
        return decoder(topic_bytes, _to_bytes(data))
    except EventDecodeError:
        raise
    except Exception as e:
        raise EventDecodeError(f"malformed {decoder.__name__[8:]} payload: {e}") from e


def decode_log(raw_log: Dict[str, Any]) -> Optional[ChainEvent]:
    """
    Decode one `eth_getLogs` entry.

    The event is tagged with the log's own blockNumber, not the boundary of
    the queried range. Logs flagged `removed` (dropped by a reorg) and logs
    with unknown topic0 return None.
    """
    if raw_log.get("removed"):
        return None
    event = decode_event(raw_log.get("topics") or [], raw_log.get("data") or b"")
    if event is None:
        return None
    if raw_log.get("blockNumber") is None:
        raise EventDecodeError("log has no blockNumber (pending log?)")
    return ChainEvent(
        event=event,
        block_number=hex_to_int(raw_log["blockNumber"]),
        log_index=hex_to_int(raw_log.get("logIndex") or 0),
    )


def decode_logs(raw_logs: Sequence[Dict[str, Any]]) -> List[ChainEvent]:
    """Decode a batch of logs, ordered by (block_number, log_index)."""
    events = [e for e in (decode_log(log) for log in raw_logs) if e is not None]
    events.sort(key=lambda e: (e.block_number, e.log_index))
    return events
