"""
fhirsub server - wires the subscription engine into a FastAPI application.

Usage:
    from fhirsub import SubscriptionServer

    server = SubscriptionServer(load_config())
    app = server.app

Creates a pre-configured FastAPI application with:
- Subscription registration API and resource write endpoints
- WebSocket notification endpoint (/websocket)
- Lifecycle hooks for the store, the registry and the Redis bridge
- CORS middleware and a /health endpoint
- Logging filter to suppress noisy healthcheck logs
"""

from __future__ import annotations

import itertools
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .channels.manager import ChannelManager
from .channels.payload import CONTENT_TYPES
from .channels.router import WebSocketChannelRouter
from .channels.transport import RestHookTransport
from .config import FhirSubConfig
from .core.criteria import CriteriaParser
from .core.errors import FhirSubError, ValidationError
from .core.resource import FhirResource
from .core.types import (
    ChannelType,
    DispatchResult,
    Subscription,
    SubscriptionIn,
    SubscriptionStatus,
)
from .dispatch.coordinator import DispatchCoordinator
from .messaging.bridge import RedisBridge
from .messaging.client import RedisClient
from .subscriptions.registry import SubscriptionRegistry
from .subscriptions.store import InMemorySubscriptionStore, SqlSubscriptionStore, SubscriptionStore

logger = logging.getLogger(__name__)


# Statuses a client may ask for when creating a subscription
CREATABLE_STATUSES = (None, SubscriptionStatus.REQUESTED.value, SubscriptionStatus.ACTIVE.value)


class HealthcheckLogFilter(logging.Filter):
    """Filter out noisy healthcheck logs."""

    FILTERED_PATHS = ("/health",)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        for path in self.FILTERED_PATHS:
            if f'"{path}' in message or f" {path} " in message:
                return False
        return True


def _setup_logging_filter():
    """Add filter to uvicorn access logger to suppress healthcheck logs."""
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthcheckLogFilter())


def configure_logging(level: str = "INFO") -> None:
    """Root logging setup used by the CLI."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_store(config: FhirSubConfig) -> SubscriptionStore:
    """Create the subscription store selected by config.store."""
    if config.store == "sql":
        return SqlSubscriptionStore(config.database_url, echo=config.sql_echo)
    if config.store == "memory":
        return InMemorySubscriptionStore()
    raise ValueError(f"Unknown subscription store '{config.store}' (expected 'memory' or 'sql')")


class SubscriptionServer:
    """
    Subscription engine plus its HTTP/WebSocket surface.

    Owns:
    - SubscriptionRegistry (with its durable store)
    - ChannelManager and the WebSocket endpoint handler
    - DispatchCoordinator called for every resource write
    - RedisBridge when redis_url is configured
    """

    def __init__(
        self,
        config: Optional[FhirSubConfig] = None,
        *,
        store: Optional[SubscriptionStore] = None,
        redis_client: Optional[RedisClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize server.

        Args:
            config: Server configuration (defaults without env overrides)
            store: Subscription store (built from config.store otherwise)
            redis_client: Redis client for the bridge (built from config.redis_url otherwise)
            http_client: Shared httpx client for rest-hook deliveries
        """
        self.config = config or FhirSubConfig()
        self.store = store if store is not None else build_store(self.config)
        self.http_client = http_client

        self.parser = CriteriaParser(self.config.resource_types)
        self.registry = SubscriptionRegistry(
            store=self.store,
            parser=self.parser,
            supported_channel_types=self.config.supported_channel_types,
        )
        self.channels = ChannelManager(self.registry)
        self.coordinator = DispatchCoordinator(
            self.registry,
            self.channels,
            push_timeout=self.config.push_timeout,
            max_delivery_failures=self.config.max_delivery_failures,
            transport_factory=self.rest_hook_transport,
        )
        self.websocket_router = WebSocketChannelRouter(self.channels)

        if redis_client is None and self.config.redis_url:
            redis_client = RedisClient(self.config.redis_url)
        self.redis_client = redis_client
        self.bridge: Optional[RedisBridge] = None
        if redis_client is not None:
            self.bridge = RedisBridge(redis_client, self.coordinator, self.registry)

        self._resource_ids = itertools.count(1)

        self.app = self._create_app()
        self.app.state.server = self

    # === Lifecycle ===

    async def start(self) -> None:
        """Load subscriptions, connect Redis and reattach rest-hook channels."""
        if isinstance(self.store, SqlSubscriptionStore):
            await self.store.init()

        await self.registry.startup()

        if self.bridge is not None:
            await self.bridge.start()
            await self.bridge.ensure_id_floor(self.registry.highest_id)
            self.registry.id_allocator = self.bridge.allocate_id

        for subscription in self.registry.list_subscriptions():
            if subscription.is_active and subscription.channel_type == ChannelType.REST_HOOK:
                await self._attach_rest_hook(subscription)

        logger.info("fhirsub server started")

    async def stop(self) -> None:
        if self.bridge is not None:
            await self.bridge.stop()
        await self.coordinator.drain()
        await self.channels.close_all()
        await self.store.close()
        if self.redis_client is not None:
            await self.redis_client.disconnect()
        logger.info("fhirsub server stopped")

    # === Subscriptions ===

    async def create_subscription(self, body: SubscriptionIn) -> Subscription:
        """
        Register a subscription from a FHIR Subscription resource.

        Rest-hook subscriptions get their channel attached right away.

        Raises:
            ValidationError: Invalid resource, criteria, channel or endpoint
        """
        errors = []
        if body.resourceType != "Subscription":
            errors.append(f"Expected resourceType 'Subscription', got '{body.resourceType}'")
        if body.status not in CREATABLE_STATUSES:
            errors.append(f"Cannot create a subscription with status '{body.status}'")
        if errors:
            raise ValidationError(errors)

        subscription_id = await self.registry.register(
            body.criteria,
            channel_type=body.channel.type,
            payload_encoding=body.channel.payload,
            reason=body.reason,
            endpoint=body.channel.endpoint,
            headers=body.channel.header,
        )
        subscription = self.registry.get(subscription_id)

        if subscription.channel_type == ChannelType.REST_HOOK:
            await self._attach_rest_hook(subscription)

        if self.bridge is not None:
            await self.bridge.publish_subscription_changed(subscription_id)
        return self.registry.get(subscription_id)

    async def delete_subscription(self, subscription_id: str, *, purge: bool = False) -> None:
        """
        Turn a subscription off, or remove it entirely with purge.

        Raises:
            NotFound: Unknown subscription id
        """
        if purge:
            await self.registry.remove(subscription_id)
        else:
            await self.registry.deactivate(subscription_id)

        if self.bridge is not None:
            await self.bridge.publish_subscription_changed(subscription_id)

    def rest_hook_transport(self, subscription: Subscription) -> Optional[RestHookTransport]:
        """Transport for a rest-hook subscription; None for other channel types."""
        if subscription.channel_type != ChannelType.REST_HOOK:
            return None
        return RestHookTransport(
            subscription.endpoint,
            subscription.headers,
            content_type=CONTENT_TYPES[subscription.payload_encoding],
            timeout=self.config.rest_hook_timeout,
            client=self.http_client,
        )

    async def _attach_rest_hook(self, subscription: Subscription) -> None:
        transport = self.rest_hook_transport(subscription)
        try:
            await self.channels.attach(subscription.id, transport)
        except FhirSubError as e:
            logger.warning(f"Could not attach rest-hook for subscription {subscription.id}: {e}")

    # === Resource writes ===

    async def write_resource(
        self,
        resource_type: str,
        data: dict[str, Any],
        resource_id: Optional[str] = None,
    ) -> tuple[FhirResource, DispatchResult]:
        """
        Accept a resource write and dispatch it.

        Args:
            resource_type: Type from the request path
            data: FHIR JSON body
            resource_id: Id from the request path (PUT); assigned when None

        Returns:
            (stored resource, dispatch result)

        Raises:
            ValidationError: Body type or id disagrees with the path
        """
        body_type = data.get("resourceType", resource_type)
        if body_type != resource_type:
            raise ValidationError([f"Body resourceType '{body_type}' does not match '{resource_type}'"])
        if resource_id is not None and data.get("id") not in (None, resource_id):
            raise ValidationError([f"Body id '{data.get('id')}' does not match '{resource_id}'"])

        resource = FhirResource({**data, "resourceType": resource_type})
        resource = resource.with_id(resource_id or str(next(self._resource_ids)))

        result = await self.coordinator.on_resource_written(resource)
        if self.bridge is not None:
            await self.bridge.publish_resource_written(resource)
        return resource, result

    # === App ===

    def _create_app(self) -> FastAPI:
        from .api.router import router

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            # Startup
            _setup_logging_filter()
            await self.start()

            yield

            # Shutdown
            await self.stop()

        app = FastAPI(
            title="fhirsub",
            description="FHIR subscription engine",
            version="0.1.0",
            lifespan=lifespan,
        )

        # CORS middleware
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        # Health check endpoint
        @app.get("/health")
        async def health_check():
            return {
                "status": "ok",
                "subscriptions": len(self.registry.list_subscriptions()),
                "channels": self.channels.channel_count,
                "pending_deliveries": self.coordinator.pending_count,
            }

        app.include_router(router)
        return app


def create_app(config: Optional[FhirSubConfig] = None, **kwargs: Any) -> FastAPI:
    """Create the FastAPI app; keyword arguments go to SubscriptionServer."""
    return SubscriptionServer(config, **kwargs).app


__all__ = [
    "HealthcheckLogFilter",
    "SubscriptionServer",
    "build_store",
    "configure_logging",
    "create_app",
]
