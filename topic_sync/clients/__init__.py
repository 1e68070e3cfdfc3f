"""API clients for the Allora chain and Forge."""
from topic_sync.clients.base import BaseAPIClient, RateLimiter
from topic_sync.clients.chain import AlloraChainClient
from topic_sync.clients.forge import ForgeClient

__all__ = [
    "AlloraChainClient",
    "BaseAPIClient",
    "ForgeClient",
    "RateLimiter",
]
