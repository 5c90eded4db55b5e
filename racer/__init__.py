"""
Racer: chain sync and live broadcast for the Racer voting contract.

Subpackages:
- chain: event decoding and node access
- persistence: relational store for cycles, votes and sync cursors
- indexer: reorg-aware chain sync engines
- pubsub: broadcast hub, publishers and WebSocket routing
"""

__version__ = "0.1.0"
