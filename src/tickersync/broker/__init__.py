"""Brokerage REST access: client interface, KIS implementation, tokens and pacing."""

from tickersync.broker.client import BrokerClient
from tickersync.broker.kis_client import KisClient
from tickersync.broker.rate_limiter import RequestQueue, RequestQueues
from tickersync.broker.tokens import TokenManager

__all__ = ["BrokerClient", "KisClient", "RequestQueue", "RequestQueues", "TokenManager"]
