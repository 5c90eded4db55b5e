"""
Racer pub/sub: broadcast hub, periodic publishers and per-connection routing.
"""

from .hub import (
    DEFAULT_SUBSCRIBER_CAPACITY,
    LEADERBOARD_TOPIC,
    ONLINE_TOPIC,
    BroadcastHub,
    BroadcastTopic,
    OnlineCounter,
    TopicSubscription,
)
from .messages import (
    SubscriptionParseError,
    SubscriptionRequest,
    SubscriptionType,
    leaderboard_message,
    leaderboard_payload,
    online_payload,
    parse_subscription_request,
)
from .publishers import (
    LeaderboardPublisher,
    OnlinePublisher,
    PeriodicPublisher,
    PublisherConfig,
    TickOutcome,
    run_publishers,
    stop_publishers,
)
from .router import Connection, SubscriptionRouter

__all__ = [
    "DEFAULT_SUBSCRIBER_CAPACITY",
    "LEADERBOARD_TOPIC",
    "ONLINE_TOPIC",
    "BroadcastHub",
    "BroadcastTopic",
    "OnlineCounter",
    "TopicSubscription",
    "SubscriptionParseError",
    "SubscriptionRequest",
    "SubscriptionType",
    "leaderboard_message",
    "leaderboard_payload",
    "online_payload",
    "parse_subscription_request",
    "LeaderboardPublisher",
    "OnlinePublisher",
    "PeriodicPublisher",
    "PublisherConfig",
    "TickOutcome",
    "run_publishers",
    "stop_publishers",
    "Connection",
    "SubscriptionRouter",
]
