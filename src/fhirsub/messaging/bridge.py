"""
Redis Pub/Sub bridge between fhirsub processes.

Channels are process-local (a WebSocket lives in one worker), so every
worker must see every write. The bridge:
- publishes resource writes handled locally; other workers dispatch them to
  their own channels
- publishes subscription changes; other workers reload the record from the
  shared store
- hands out subscription ids from a shared Redis counter
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Optional

from ..core.resource import FhirResource
from ..dispatch.coordinator import DispatchCoordinator
from ..subscriptions.registry import SubscriptionRegistry
from .client import RedisClient

logger = logging.getLogger(__name__)


RESOURCE_WRITTEN_CHANNEL = "fhirsub.resource.written"
SUBSCRIPTION_CHANGED_CHANNEL = "fhirsub.subscription.changed"
SUBSCRIPTION_ID_KEY = "fhirsub:subscription:id"


class RedisBridge:
    """
    Fan-out of write events and subscription changes across workers.

    Usage:
        bridge = RedisBridge(client, coordinator, registry)
        registry.id_allocator = bridge.allocate_id
        await bridge.start()

        # In the write path, after local dispatch
        await bridge.publish_resource_written(resource)
    """

    def __init__(
        self,
        client: RedisClient,
        coordinator: DispatchCoordinator,
        registry: SubscriptionRegistry,
        *,
        instance_id: Optional[str] = None,
    ):
        self.client = client
        self.coordinator = coordinator
        self.registry = registry
        self.instance_id = instance_id or uuid.uuid4().hex
        self._pubsub = None
        self._listener_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self):
        """Subscribe to bridge channels and start the listener task"""
        if self._running:
            logger.warning("Redis bridge already running")
            return

        await self.client.connect()
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(RESOURCE_WRITTEN_CHANNEL, SUBSCRIPTION_CHANGED_CHANNEL)

        self._running = True
        self._listener_task = asyncio.create_task(self._listen())
        logger.info(f"Redis bridge started (instance {self.instance_id})")

    async def stop(self):
        """Stop listening"""
        self._running = False

        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                logger.debug("Redis bridge listener cancelled")
            self._listener_task = None

        if self._pubsub:
            await self._pubsub.aclose()
            self._pubsub = None

        logger.info("Redis bridge stopped")

    # === Publishing ===

    async def publish_resource_written(self, resource: FhirResource) -> int:
        """Announce a locally handled write to the other workers."""
        return await self._publish(RESOURCE_WRITTEN_CHANNEL, {"resource": resource.as_dict()})

    async def publish_subscription_changed(self, subscription_id: str) -> int:
        """Ask the other workers to reload a subscription from the store."""
        return await self._publish(SUBSCRIPTION_CHANGED_CHANNEL, {"id": subscription_id})

    async def _publish(self, channel: str, data: dict[str, Any]) -> int:
        payload = json.dumps({"origin": self.instance_id, **data}, ensure_ascii=False)
        try:
            count = await self.client.publish(channel, payload)
            logger.debug(f"Published to {channel}: {count} subscribers received")
            return count
        except Exception as e:
            logger.error(f"Failed to publish to {channel}: {e}", exc_info=True)
            return 0

    # === Shared ids ===

    async def allocate_id(self) -> str:
        """Next subscription id from the shared counter."""
        return str(await self.client.incr(SUBSCRIPTION_ID_KEY))

    async def ensure_id_floor(self, highest_id: int) -> None:
        """Make sure the shared counter is not behind ids already stored."""
        current = await self.client.get(SUBSCRIPTION_ID_KEY)
        if current is None or int(current) < highest_id:
            await self.client.set(SUBSCRIPTION_ID_KEY, str(highest_id))
            logger.info(f"Subscription id counter raised to {highest_id}")

    # === Listening ===

    async def _listen(self):
        """Listen for bridge messages"""
        logger.info("Redis bridge listener started")
        try:
            while self._running:
                try:
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=1.0
                    )
                    if message and message["type"] == "message":
                        await self._handle_message(message["channel"], message["data"])
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Redis bridge listener error: {e}", exc_info=True)
                    await asyncio.sleep(1)
        except asyncio.CancelledError:
            logger.info("Redis bridge listener cancelled")
            raise

    async def _handle_message(self, channel: str, raw_data: str):
        """Handle one bridge message; messages from this instance are ignored."""
        try:
            data = json.loads(raw_data)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON in message from {channel}: {raw_data[:100]}")
            return

        if data.get("origin") == self.instance_id:
            return

        if channel == RESOURCE_WRITTEN_CHANNEL:
            try:
                resource = FhirResource(data["resource"])
            except (KeyError, ValueError) as e:
                logger.warning(f"Ignoring malformed write event: {e}")
                return
            await self.coordinator.on_resource_written(resource, relayed=True)

        elif channel == SUBSCRIPTION_CHANGED_CHANNEL:
            subscription_id = data.get("id")
            if subscription_id:
                await self.registry.reload(str(subscription_id))
