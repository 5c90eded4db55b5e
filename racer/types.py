"""
Racer Data Types

Rows mirrored from the Racer contract and the event variants that produce them.
Arbitrary-precision quantities (ids, amounts, prices, block numbers) are plain ints.
"""

from dataclasses import dataclass, replace
from typing import Optional, Union


SYMBOL_SIZE = 4


@dataclass(frozen=True)
class Cycle:
    """
    One voting round on one chain.

    `is_current` is never stored; the store derives it at query time
    (latest start_block per chain).
    """
    id: int
    chain_id: int
    start_block: int
    block_length: int
    vote_price: int
    creator: str
    observed_at_block: int
    balance: int = 0
    is_current: bool = False

    @property
    def end_block(self) -> int:
        return self.start_block + self.block_length

    def blocks_remaining(self, head_block: int) -> int:
        """Blocks left before the cycle ends, floored at zero."""
        return max(0, self.end_block - head_block)

    def as_current(self, is_current: bool = True) -> "Cycle":
        return replace(self, is_current=is_current)


@dataclass(frozen=True)
class Vote:
    """One stake placed on a symbol within a cycle."""
    id: int
    chain_id: int
    cycle_id: int
    placer: str
    symbol: bytes  # exactly SYMBOL_SIZE bytes
    amount: int
    observed_at_block: int
    placement: int = 0
    claimed: bool = False
    claimed_at_block: Optional[int] = None

    def __post_init__(self):
        if len(self.symbol) != SYMBOL_SIZE:
            raise ValueError(
                f"vote symbol must be {SYMBOL_SIZE} bytes, got {len(self.symbol)}"
            )


@dataclass(frozen=True)
class LeaderboardEntry:
    """Per-symbol aggregate for one cycle. Recomputed on every publish."""
    symbol: bytes
    amount: int
    latest_contributing_block: int

    @property
    def display_symbol(self) -> str:
        """First character of the UTF-8 symbol, '?' when undecodable."""
        try:
            text = self.symbol.rstrip(b"\x00").decode("utf-8")
        except UnicodeDecodeError:
            return "?"
        return text[0] if text else "?"


# =============================================================================
# Contract events
# =============================================================================

@dataclass(frozen=True)
class CycleCreated:
    creator: str
    id: int
    start_block: int
    block_length: int
    vote_price: int


@dataclass(frozen=True)
class VotePlaced:
    placer: str
    vote_id: int
    cycle_id: int
    symbol: bytes
    amount: int
    placement: int


@dataclass(frozen=True)
class VoteClaimed:
    placer: str
    id: int
    reward: int


RacerEvent = Union[CycleCreated, VotePlaced, VoteClaimed]


@dataclass(frozen=True)
class ChainEvent:
    """A decoded contract event tagged with the block it was emitted in."""
    event: RacerEvent
    block_number: int
    log_index: int = 0

    @property
    def name(self) -> str:
        return type(self.event).__name__
