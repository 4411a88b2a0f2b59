"""Real-time streaming: wire protocol and subscription manager."""

from tickersync.stream.manager import ConnectionState, SubscriptionManager

__all__ = ["ConnectionState", "SubscriptionManager"]
