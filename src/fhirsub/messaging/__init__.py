"""
Messaging module - Redis-based coordination between fhirsub workers.

Usage:
    from fhirsub.messaging import RedisClient, RedisBridge

    client = RedisClient("redis://redis:6379")
    bridge = RedisBridge(client, coordinator, registry)
    await bridge.start()
"""

from __future__ import annotations

from .bridge import (
    RESOURCE_WRITTEN_CHANNEL,
    SUBSCRIPTION_CHANGED_CHANNEL,
    SUBSCRIPTION_ID_KEY,
    RedisBridge,
)
from .client import RedisClient

__all__ = [
    "RedisClient",
    "RedisBridge",
    "RESOURCE_WRITTEN_CHANNEL",
    "SUBSCRIPTION_CHANGED_CHANNEL",
    "SUBSCRIPTION_ID_KEY",
]
