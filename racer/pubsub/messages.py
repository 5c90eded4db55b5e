"""
WebSocket message shapes.

Client -> server:
    {"address": "0x..." | null, "subscriptions": ["online", "leaderboard"]}

Server -> client:
    {"type": "online", "count": 3}
    {"type": "leaderboard", "cycle_id": 7,
     "metadata": {"blocks_remaining": 12, "votes": 40, "payout": "4000"},
     "leaderboard": [{"emoji": "🚀", "value": 30}, ...]}
    a bare parse-error string for malformed requests
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from ..types import Cycle, LeaderboardEntry


class SubscriptionType(Enum):
    ONLINE = "online"
    LEADERBOARD = "leaderboard"


class SubscriptionParseError(ValueError):
    """Malformed subscription request. The message is sent back to the client."""


@dataclass(frozen=True)
class SubscriptionRequest:
    address: Optional[str] = None
    subscriptions: FrozenSet[SubscriptionType] = field(default_factory=frozenset)

    @property
    def topics(self) -> List[str]:
        return sorted(s.value for s in self.subscriptions)


def _parse_subscription_type(value: Any) -> SubscriptionType:
    if not isinstance(value, str):
        raise SubscriptionParseError(
            f"invalid type: expected a string subscription type, got {json.dumps(value)}"
        )
    try:
        return SubscriptionType(value)
    except ValueError:
        expected = " or ".join(f"`{t.value}`" for t in SubscriptionType)
        raise SubscriptionParseError(f"unknown variant `{value}`, expected {expected}") from None


def parse_subscription_request(raw: str) -> SubscriptionRequest:
    """Parse a client request. Raises SubscriptionParseError with a client-facing message."""
    try:
        message = json.loads(raw)
    except ValueError as e:
        raise SubscriptionParseError(f"invalid JSON: {e}") from None

    if not isinstance(message, dict):
        raise SubscriptionParseError("invalid type: expected a JSON object")

    address = message.get("address")
    if address is not None and not isinstance(address, str):
        raise SubscriptionParseError("invalid type: `address` must be a string or null")

    subscriptions = message.get("subscriptions")
    if subscriptions is None:
        subscriptions = []
    if not isinstance(subscriptions, list):
        raise SubscriptionParseError("invalid type: `subscriptions` must be an array")

    return SubscriptionRequest(
        address=address,
        subscriptions=frozenset(_parse_subscription_type(s) for s in subscriptions),
    )


# =============================================================================
# Server payloads
# =============================================================================

def online_payload(count: int) -> str:
    return json.dumps({"type": "online", "count": count})


def leaderboard_message(
    cycle: Cycle,
    head_block: int,
    vote_count: int,
    entries: Sequence[LeaderboardEntry]
) -> Dict[str, Any]:
    """Leaderboard message for `cycle` as seen at `head_block`."""
    return {
        "type": "leaderboard",
        "cycle_id": cycle.id,
        "metadata": {
            "blocks_remaining": cycle.blocks_remaining(head_block),
            "votes": vote_count,
            # Exact integer product, string-formatted
            "payout": str(vote_count * cycle.vote_price),
        },
        "leaderboard": [
            {"emoji": entry.display_symbol, "value": entry.amount}
            for entry in entries
        ],
    }


def leaderboard_payload(
    cycle: Cycle,
    head_block: int,
    vote_count: int,
    entries: Sequence[LeaderboardEntry]
) -> str:
    return json.dumps(leaderboard_message(cycle, head_block, vote_count, entries), ensure_ascii=False)
