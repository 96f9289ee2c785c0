"""
Subscriptions module - registry and durable storage.
"""

from __future__ import annotations

from .registry import (
    ActiveSubscriptions,
    SubscriptionRegistry,
    coerce_channel_type,
    coerce_payload_encoding,
)
from .store import (
    InMemorySubscriptionStore,
    SqlSubscriptionStore,
    SubscriptionRecord,
    SubscriptionStore,
)

__all__ = [
    "ActiveSubscriptions",
    "SubscriptionRegistry",
    "coerce_channel_type",
    "coerce_payload_encoding",
    "InMemorySubscriptionStore",
    "SqlSubscriptionStore",
    "SubscriptionRecord",
    "SubscriptionStore",
]
