"""
fhirsub - FHIR subscription engine.

Clients register standing queries (subscriptions) against a FHIR resource
type plus search criteria. When a matching resource is written, the server
pushes a notification over the subscription's channel (WebSocket or
rest-hook).

Usage:
    from fhirsub import SubscriptionServer, load_config

    server = SubscriptionServer(load_config())
    app = server.app

Or embedded in an existing write path:
    registry = SubscriptionRegistry()
    channels = ChannelManager(registry)
    coordinator = DispatchCoordinator(registry, channels)

    await registry.startup()
    await coordinator.on_resource_written(FhirResource(observation_json))
"""

from __future__ import annotations

__version__ = "0.1.0"

from .app import SubscriptionServer, create_app
from .channels import ChannelManager, Notification, RestHookTransport, WebSocketTransport
from .config import FhirSubConfig, load_config
from .core import (
    AlreadyAttached,
    ChannelState,
    ChannelType,
    CriteriaMatcher,
    CriteriaParser,
    DeliveryFailure,
    DispatchResult,
    FhirResource,
    FhirSubError,
    NotFound,
    ParsedCriteria,
    PayloadEncoding,
    Subscription,
    SubscriptionNotActive,
    SubscriptionNotFound,
    SubscriptionStatus,
    ValidationError,
    build_criteria,
)
from .dispatch import DispatchCoordinator
from .subscriptions import InMemorySubscriptionStore, SqlSubscriptionStore, SubscriptionRegistry

__all__ = [
    "__version__",
    # App
    "SubscriptionServer",
    "create_app",
    "FhirSubConfig",
    "load_config",
    # Engine
    "SubscriptionRegistry",
    "InMemorySubscriptionStore",
    "SqlSubscriptionStore",
    "ChannelManager",
    "DispatchCoordinator",
    "CriteriaMatcher",
    "CriteriaParser",
    "build_criteria",
    # Transports
    "Notification",
    "RestHookTransport",
    "WebSocketTransport",
    # Types
    "ChannelState",
    "ChannelType",
    "DispatchResult",
    "FhirResource",
    "ParsedCriteria",
    "PayloadEncoding",
    "Subscription",
    "SubscriptionStatus",
    # Errors
    "FhirSubError",
    "ValidationError",
    "NotFound",
    "SubscriptionNotFound",
    "SubscriptionNotActive",
    "AlreadyAttached",
    "DeliveryFailure",
]
