"""
Dispatch coordinator.

Called by the write path after a resource is durably written. Evaluates
every active subscription for the resource type on the caller's task, then
starts one delivery task per match and returns without waiting for them.
Delivery is best effort relative to the write: nothing here raises back
into the caller, and a stalled channel only holds up its own delivery.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Callable, Optional

from ..channels.manager import ChannelManager
from ..channels.payload import Notification
from ..channels.transport import Transport
from ..core.errors import AlreadyAttached, DeliveryFailure, NotFound, SubscriptionNotActive
from ..core.matcher import CriteriaMatcher
from ..core.resource import SearchableResource
from ..core.types import ChannelType, DispatchResult, Subscription
from ..subscriptions.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


# Builds a transport for a subscription whose channel needs no client
# connection (rest-hook); None when the channel type cannot be reopened
TransportFactory = Callable[[Subscription], Optional[Transport]]

# Channel types delivered by whichever worker handled the write
CONNECTIONLESS_CHANNEL_TYPES = frozenset({ChannelType.REST_HOOK})


class DispatchCoordinator:
    """
    Fans a resource write out to matching subscriptions.

    Usage:
        coordinator = DispatchCoordinator(registry, channels)
        result = await coordinator.on_resource_written(resource)
        result.scheduled  # ids with a delivery in flight

        await coordinator.drain()
        result.delivered  # ids notified
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        channels: ChannelManager,
        matcher: Optional[CriteriaMatcher] = None,
        *,
        push_timeout: float = 10.0,
        max_delivery_failures: int = 3,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """
        Initialize coordinator.

        Args:
            registry: Subscription registry
            channels: Channel manager used for delivery
            matcher: Criteria matcher (shares the registry's parser by default)
            push_timeout: Seconds a single push may take before it counts as failed
            max_delivery_failures: Consecutive failures before a subscription goes to ERROR
                (0 disables the policy)
            transport_factory: Reopens connectionless channels closed by an earlier failure
        """
        self.registry = registry
        self.channels = channels
        self.matcher = matcher or CriteriaMatcher(registry.parser)
        self.push_timeout = push_timeout
        self.max_delivery_failures = max_delivery_failures
        self.transport_factory = transport_factory
        self._failures: dict[str, int] = {}
        self._pending: set[asyncio.Task] = set()
        registry.add_listener(self._forget_failures)

    async def on_resource_written(
        self,
        resource: SearchableResource,
        *,
        relayed: bool = False,
    ) -> DispatchResult:
        """
        Evaluate one written resource and start delivery to the matches.

        Returns once every subscription has been evaluated. Pushes run in
        background tasks; their outcome is appended to the result's
        ``delivered`` and ``failed`` lists as each one finishes.

        Args:
            resource: The written resource
            relayed: The write was handled by another worker; only channels
                bound to a client connection here are served

        Returns:
            DispatchResult listing evaluated, matched and scheduled subscription ids
        """
        result = DispatchResult(resource_type=resource.type, resource_id=resource.id)

        try:
            for subscription in self.registry.active_subscriptions_for(resource.type):
                result.evaluated.append(subscription.id)
                if not self._matches(resource, subscription):
                    continue

                result.matched.append(subscription.id)
                if relayed and subscription.channel_type in CONNECTIONLESS_CHANNEL_TYPES:
                    continue
                if not self.channels.has_channel(subscription.id) and not self._can_reopen(subscription, relayed):
                    logger.debug(f"Subscription {subscription.id} matched but has no channel attached")
                    continue

                # Tasks start in dispatch order, so the FIFO channel lock keeps per-subscription order
                self._start_delivery(subscription, resource, result)
                result.scheduled.append(subscription.id)
        except Exception as e:
            logger.error(f"Dispatch of {resource.type}/{resource.id} aborted: {e}", exc_info=True)

        logger.info(
            f"Dispatched {resource.type}/{resource.id}: {len(result.evaluated)} evaluated, "
            f"{len(result.matched)} matched, {len(result.scheduled)} scheduled"
        )
        return result

    def submit(
        self,
        resource: SearchableResource,
        loop: asyncio.AbstractEventLoop,
    ) -> concurrent.futures.Future:
        """Schedule dispatch on the server loop from a write path running in another thread."""
        return asyncio.run_coroutine_threadsafe(self.on_resource_written(resource), loop)

    async def drain(self) -> None:
        """Wait until every delivery started so far has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _start_delivery(
        self,
        subscription: Subscription,
        resource: SearchableResource,
        result: DispatchResult,
    ) -> None:
        task = asyncio.create_task(self._deliver(subscription, resource))
        self._pending.add(task)
        task.add_done_callback(lambda done: self._delivery_done(done, result))

    def _delivery_done(self, task: asyncio.Task, result: DispatchResult) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.debug(f"Delivery of {result.resource_type}/{result.resource_id} cancelled")
            return

        error = task.exception()
        if error is not None:
            logger.error(
                f"Delivery of {result.resource_type}/{result.resource_id} crashed: {error}",
                exc_info=error,
            )
            return

        subscription_id, delivered = task.result()
        if delivered:
            result.delivered.append(subscription_id)
        elif delivered is False:
            result.failed.append(subscription_id)

    def _matches(self, resource: SearchableResource, subscription: Subscription) -> bool:
        try:
            criteria = self.registry.parsed_criteria(subscription.id)
        except NotFound:
            return False  # removed while iterating
        if criteria is None:
            return False

        try:
            return self.matcher.evaluate(resource, criteria)
        except Exception as e:
            logger.error(f"Matching subscription {subscription.id} failed: {e}", exc_info=True)
            return False

    def _can_reopen(self, subscription: Subscription, relayed: bool) -> bool:
        return (
            not relayed
            and self.transport_factory is not None
            and subscription.channel_type in CONNECTIONLESS_CHANNEL_TYPES
        )

    async def _reopen(self, subscription: Subscription) -> None:
        transport = self.transport_factory(subscription)
        if transport is None:
            return
        try:
            await self.channels.attach(subscription.id, transport)
            logger.info(f"Reopened {subscription.channel_type.value} channel for subscription {subscription.id}")
        except AlreadyAttached:
            await transport.close()  # reopened by a concurrent dispatch

    async def _deliver(
        self,
        subscription: Subscription,
        resource: SearchableResource,
    ) -> tuple[str, Optional[bool]]:
        """
        Push to one subscription; never raises so other deliveries are unaffected.

        Returns:
            (subscription id, True if delivered, False if failed, None if the
            subscription left ACTIVE before delivery)
        """
        subscription_id = subscription.id
        notification = Notification(subscription_id=subscription_id, resource=resource)
        try:
            if not self.channels.has_channel(subscription_id):
                await self._reopen(subscription)
            await asyncio.wait_for(
                self.channels.push(subscription_id, notification),
                timeout=self.push_timeout,
            )
        except (NotFound, SubscriptionNotActive) as e:
            logger.debug(f"Skipping delivery to subscription {subscription_id}: {e}")
            return subscription_id, None
        except DeliveryFailure as e:
            await self._record_failure(subscription_id, str(e))
            return subscription_id, False
        except asyncio.TimeoutError:
            logger.warning(f"Push to subscription {subscription_id} timed out after {self.push_timeout}s")
            await self.channels.detach(subscription_id)
            await self._record_failure(subscription_id, "push timed out")
            return subscription_id, False
        except Exception as e:
            logger.error(f"Unexpected error delivering to subscription {subscription_id}: {e}", exc_info=True)
            await self._record_failure(subscription_id, str(e))
            return subscription_id, False

        self._failures.pop(subscription_id, None)
        logger.debug(f"Delivered {resource.type}/{resource.id} to subscription {subscription_id}")
        return subscription_id, True

    async def _record_failure(self, subscription_id: str, message: str) -> None:
        try:
            active = self.registry.get(subscription_id).is_active
        except NotFound:
            active = False
        if not active:
            # turned off or removed meanwhile; keep that status
            self._failures.pop(subscription_id, None)
            logger.debug(f"Delivery to subscription {subscription_id} failed after it left ACTIVE: {message}")
            return

        count = self._failures.get(subscription_id, 0) + 1
        self._failures[subscription_id] = count
        logger.warning(f"Delivery failure {count} for subscription {subscription_id}: {message}")

        if not self.max_delivery_failures or count < self.max_delivery_failures:
            return

        self._failures.pop(subscription_id, None)
        try:
            await self.registry.mark_error(
                subscription_id,
                f"{count} consecutive delivery failures, last: {message}",
            )
        except NotFound:
            logger.debug(f"Subscription {subscription_id} was removed before it could be marked as error")

    def _forget_failures(self, subscription: Subscription) -> None:
        """Registry listener: counts end when a subscription leaves ACTIVE or is removed."""
        self._failures.pop(subscription.id, None)

    def failure_count(self, subscription_id: str) -> int:
        return self._failures.get(subscription_id, 0)
