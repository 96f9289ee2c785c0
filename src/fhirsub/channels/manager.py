"""Notification channel manager"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..core.errors import (
    AlreadyAttached,
    DeliveryFailure,
    NotFound,
    SubscriptionNotActive,
    SubscriptionNotFound,
    ValidationError,
)
from ..core.types import ChannelInfo, ChannelState, ChannelType, PayloadEncoding, Subscription
from ..subscriptions.registry import SubscriptionRegistry
from .payload import Notification, encode_notification
from .transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class Channel:
    """A delivery channel for one subscription. Owned by ChannelManager."""
    subscription_id: str
    channel_type: ChannelType
    encoding: PayloadEncoding
    transport: Transport
    state: ChannelState = ChannelState.DISCONNECTED
    # Serializes writes and close; FIFO so pushes keep dispatch order
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def info(self) -> ChannelInfo:
        return ChannelInfo(
            subscription_id=self.subscription_id,
            channel_type=self.channel_type,
            encoding=self.encoding,
            state=self.state,
        )


class ChannelManager:
    """
    Manages long-lived delivery channels keyed by subscription id.

    Manages:
    - Attaching transports to ACTIVE subscriptions (one open channel per
      subscription and channel type)
    - Pushing serialized notifications
    - Closing channels on detach, delivery failure, or when the registry
      reports a subscription left ACTIVE

    All methods run on the event loop; none of them holds the registry lock
    while awaiting transport I/O.
    """

    def __init__(self, registry: SubscriptionRegistry):
        self.registry = registry
        self._channels: dict[tuple[str, ChannelType], Channel] = {}
        registry.add_listener(self._on_subscription_inactive)

    async def attach(self, subscription_id: str, transport: Transport) -> ChannelInfo:
        """
        Open a channel for a subscription.

        Args:
            subscription_id: Subscription to deliver for
            transport: Transport to own; its handshake is completed here

        Returns:
            ChannelInfo of the OPEN channel

        Raises:
            SubscriptionNotFound: Unknown subscription id
            SubscriptionNotActive: Subscription status is not ACTIVE
            AlreadyAttached: An open channel already exists for this subscription
            DeliveryFailure: The channel was detached before its handshake completed
            ValidationError: Transport type differs from the subscription's channel type
        """
        subscription = self._active_subscription(subscription_id)

        if transport.channel_type != subscription.channel_type:
            raise ValidationError([
                f"Subscription '{subscription_id}' delivers via {subscription.channel_type.value}, "
                f"not {transport.channel_type.value}"
            ])

        key = (subscription_id, subscription.channel_type)
        existing = self._channels.get(key)
        if existing is not None and existing.state in (ChannelState.CONNECTING, ChannelState.OPEN):
            raise AlreadyAttached(subscription_id, subscription.channel_type.value)

        channel = Channel(
            subscription_id=subscription_id,
            channel_type=subscription.channel_type,
            encoding=subscription.payload_encoding,
            transport=transport,
        )
        channel.state = ChannelState.CONNECTING
        self._channels[key] = channel

        try:
            await transport.open()
        except Exception as e:
            logger.warning(f"Handshake failed for subscription {subscription_id}: {e}")
            channel.state = ChannelState.CLOSED
            self._forget(channel)
            raise

        # Deactivation may have happened during the handshake
        try:
            current: Optional[Subscription] = self.registry.get(subscription_id)
        except NotFound:
            current = None
        if current is None or not current.is_active or self._channels.get(key) is not channel:
            await self._close(channel)
            if current is None:
                raise SubscriptionNotFound(subscription_id)
            if not current.is_active:
                raise SubscriptionNotActive(subscription_id, current.status.value)
            raise DeliveryFailure(subscription_id, "channel closed during handshake")

        channel.state = ChannelState.OPEN
        logger.info(f"Channel opened for subscription {subscription_id} ({channel.channel_type.value})")
        return channel.info()

    async def push(self, subscription_id: str, notification: Notification) -> None:
        """
        Deliver a notification over the subscription's open channel.

        At most once: a failed write closes the channel and is not retried.

        Raises:
            DeliveryFailure: No open channel, serialization failed or the write failed
        """
        channel = self._channel_for(subscription_id)
        if channel is None or channel.state != ChannelState.OPEN:
            raise DeliveryFailure(subscription_id, "no open channel")

        try:
            payload = encode_notification(notification, channel.encoding)
        except Exception as e:
            raise DeliveryFailure(subscription_id, f"payload encoding failed: {e}", e)

        async with channel.lock:
            if channel.state != ChannelState.OPEN:
                raise DeliveryFailure(subscription_id, f"channel {channel.state.value}")
            try:
                await channel.transport.send(payload)
            except Exception as e:
                logger.warning(f"Send to subscription {subscription_id} failed: {e}")
                await self._close_locked(channel)
                raise DeliveryFailure(subscription_id, str(e), e)

        logger.debug(f"Pushed notification to subscription {subscription_id}")

    async def detach(self, subscription_id: str, transport: Optional[Transport] = None) -> None:
        """
        Close the subscription's channel(s). Idempotent.

        Args:
            subscription_id: Subscription id
            transport: Only detach if the channel owns this transport
        """
        for key, channel in list(self._channels.items()):
            if key[0] != subscription_id:
                continue
            if transport is not None and channel.transport is not transport:
                continue
            await self._close(channel)

    def info(self, subscription_id: str) -> Optional[ChannelInfo]:
        channel = self._channel_for(subscription_id)
        return channel.info() if channel else None

    def has_channel(self, subscription_id: str) -> bool:
        return self._channel_for(subscription_id) is not None

    @property
    def channel_count(self) -> int:
        """Number of channels not yet closed"""
        return len(self._channels)

    async def close_all(self) -> None:
        """Close every channel (shutdown)."""
        for channel in list(self._channels.values()):
            await self._close(channel)
        logger.info("All notification channels closed")

    # === Internals ===

    def _active_subscription(self, subscription_id: str) -> Subscription:
        try:
            subscription = self.registry.get(subscription_id)
        except NotFound:
            raise SubscriptionNotFound(subscription_id)
        if not subscription.is_active:
            raise SubscriptionNotActive(subscription_id, subscription.status.value)
        return subscription

    def _channel_for(self, subscription_id: str) -> Optional[Channel]:
        for (sid, _), channel in self._channels.items():
            if sid == subscription_id:
                return channel
        return None

    def _forget(self, channel: Channel) -> None:
        key = (channel.subscription_id, channel.channel_type)
        if self._channels.get(key) is channel:
            del self._channels[key]

    async def _close(self, channel: Channel) -> None:
        if channel.state in (ChannelState.CLOSING, ChannelState.CLOSED):
            self._forget(channel)
            return
        # Mark first so pushes queued on the lock observe the closing state
        channel.state = ChannelState.CLOSING
        async with channel.lock:
            await self._close_locked(channel)

    async def _close_locked(self, channel: Channel) -> None:
        """Close transport; caller holds channel.lock."""
        channel.state = ChannelState.CLOSING
        self._forget(channel)
        try:
            await channel.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport for subscription {channel.subscription_id}: {e}")
        channel.state = ChannelState.CLOSED
        logger.info(f"Channel closed for subscription {channel.subscription_id}")

    async def _on_subscription_inactive(self, subscription: Subscription) -> None:
        await self.detach(subscription.id)
