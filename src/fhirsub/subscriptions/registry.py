"""
Subscription registry.

Stores subscriptions with their parsed criteria and status, writes through
to a durable store, and answers "which active subscriptions watch this
resource type" for the dispatch path.

Records are never mutated in place: a status change swaps in a new copy
under the lock, so readers iterating concurrently always see a consistent
record.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from typing import Awaitable, Callable, Iterable, Iterator, Optional, Union
from urllib.parse import urlparse

from ..core.criteria import CriteriaParser
from ..core.errors import NotFound, ValidationError
from ..core.types import (
    PAYLOAD_MIME_TYPES,
    ChannelType,
    ParsedCriteria,
    PayloadEncoding,
    Subscription,
    SubscriptionStatus,
)
from .store import InMemorySubscriptionStore, SubscriptionStore

logger = logging.getLogger(__name__)


StatusListener = Callable[[Subscription], Union[Awaitable[None], None]]
IdAllocator = Callable[[], Awaitable[str]]

DEFAULT_CHANNEL_TYPES = (ChannelType.WEBSOCKET, ChannelType.REST_HOOK)


def coerce_channel_type(value: Union[str, ChannelType]) -> ChannelType:
    """Turn "websocket" / ChannelType.WEBSOCKET into ChannelType."""
    if isinstance(value, ChannelType):
        return value
    try:
        return ChannelType(str(value).strip().lower())
    except ValueError:
        raise ValidationError([f"Unknown channel type '{value}'"])


def coerce_payload_encoding(value: Union[str, PayloadEncoding, None]) -> PayloadEncoding:
    """Turn a mime type, an encoding name or None into PayloadEncoding."""
    if isinstance(value, PayloadEncoding):
        return value
    key = (value or "").strip().lower()
    # Drop parameters such as "; charset=utf-8"
    key = key.split(";", 1)[0].strip()
    if key in PAYLOAD_MIME_TYPES:
        return PAYLOAD_MIME_TYPES[key]
    raise ValidationError([f"Unsupported payload type '{value}'"])


class ActiveSubscriptions:
    """
    Lazy view of the active subscriptions for one resource type.

    Every iteration reads the registry's current state, so it can be
    iterated again and reflects deactivations made in between.
    """

    def __init__(self, registry: SubscriptionRegistry, resource_type: str):
        self._registry = registry
        self.resource_type = resource_type

    def __iter__(self) -> Iterator[Subscription]:
        for subscription_id in self._registry._ids_for_type(self.resource_type):
            subscription = self._registry._current(subscription_id)
            if subscription is not None and subscription.is_active:
                yield subscription

    def __repr__(self) -> str:
        return f"ActiveSubscriptions({self.resource_type!r})"


class SubscriptionRegistry:
    """
    Thread-safe registry of subscriptions.

    Usage:
        registry = SubscriptionRegistry()
        subscription_id = await registry.register(
            "Observation?subject=Patient/1",
            channel_type="websocket",
            payload_encoding=None,
        )

        for subscription in registry.active_subscriptions_for("Observation"):
            ...
    """

    def __init__(
        self,
        store: Optional[SubscriptionStore] = None,
        parser: Optional[CriteriaParser] = None,
        supported_channel_types: Optional[Iterable[Union[str, ChannelType]]] = None,
        id_allocator: Optional[IdAllocator] = None,
    ):
        """
        Initialize registry.

        Args:
            store: Durable store (defaults to an in-memory store)
            parser: Criteria parser (defaults to built-in FHIR resource types)
            supported_channel_types: Channel types accepted at registration
            id_allocator: Shared id source for registries in several processes
                (defaults to a local counter)
        """
        self.id_allocator = id_allocator
        self.highest_id = 0
        self.store = store if store is not None else InMemorySubscriptionStore()
        self.parser = parser or CriteriaParser()
        self.supported_channel_types = frozenset(
            coerce_channel_type(c) for c in (supported_channel_types or DEFAULT_CHANNEL_TYPES)
        )

        self._subscriptions: dict[str, Subscription] = {}
        self._parsed: dict[str, ParsedCriteria] = {}
        self._by_type: dict[str, list[str]] = {}  # resource type -> ACTIVE ids in registration order
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._listeners: list[StatusListener] = []

    # === Startup ===

    async def startup(self) -> None:
        """Load stored subscriptions and resume id assignment after the highest id."""
        stored = await self.store.load_all()
        highest = 0

        for subscription in stored:
            if subscription.id.isdigit():
                highest = max(highest, int(subscription.id))

            parsed: Optional[ParsedCriteria] = None
            if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.REQUESTED):
                try:
                    parsed = self.parser.parse(subscription.criteria)
                except ValidationError as e:
                    subscription = subscription.model_copy(update={
                        "status": SubscriptionStatus.ERROR,
                        "error": "; ".join(e.errors),
                    })
                    await self.store.save(subscription)
                    logger.warning(f"Stored subscription {subscription.id} has invalid criteria: {e.errors}")
                else:
                    if subscription.status == SubscriptionStatus.REQUESTED:
                        subscription = subscription.model_copy(update={"status": SubscriptionStatus.ACTIVE})
                        await self.store.save(subscription)
            else:
                try:
                    parsed = self.parser.parse(subscription.criteria)
                except ValidationError:
                    parsed = None

            with self._lock:
                self._insert(subscription, parsed)

        with self._lock:
            self._ids = itertools.count(highest + 1)
            self.highest_id = highest

        logger.info(f"Subscription registry loaded {len(stored)} subscription(s)")

    # === Listeners ===

    def add_listener(self, listener: StatusListener) -> None:
        """
        Register a callback for status changes away from ACTIVE and removals.

        The callback receives the updated subscription (status OFF or ERROR,
        or the last known record on removal).
        """
        self._listeners.append(listener)

    async def _notify(self, subscription: Subscription) -> None:
        for listener in self._listeners:
            try:
                result = listener(subscription)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Status listener failed for subscription {subscription.id}: {e}", exc_info=True)

    # === Operations ===

    def validate(
        self,
        criteria: str,
        channel_type: Union[str, ChannelType],
        payload_encoding: Union[str, PayloadEncoding, None] = None,
        endpoint: Optional[str] = None,
    ) -> tuple[ParsedCriteria, ChannelType, PayloadEncoding]:
        """
        Validate registration input without registering.

        Raises:
            ValidationError: With every problem found
        """
        errors: list[str] = []

        parsed = None
        try:
            parsed = self.parser.parse(criteria)
        except ValidationError as e:
            errors.extend(e.errors)

        channel = None
        try:
            channel = coerce_channel_type(channel_type)
            if channel not in self.supported_channel_types:
                errors.append(f"Channel type '{channel.value}' is not supported")
        except ValidationError as e:
            errors.extend(e.errors)

        encoding = None
        try:
            encoding = coerce_payload_encoding(payload_encoding)
        except ValidationError as e:
            errors.extend(e.errors)

        if channel == ChannelType.REST_HOOK:
            url = urlparse(endpoint or "")
            if url.scheme not in ("http", "https") or not url.netloc:
                errors.append(f"rest-hook channel requires an http(s) endpoint, got '{endpoint}'")

        if errors:
            raise ValidationError(errors)

        return parsed, channel, encoding

    async def register(
        self,
        criteria: str,
        channel_type: Union[str, ChannelType],
        payload_encoding: Union[str, PayloadEncoding, None] = None,
        reason: str = "",
        endpoint: Optional[str] = None,
        headers: Optional[list[str]] = None,
    ) -> str:
        """
        Register a subscription and make it ACTIVE.

        Args:
            criteria: Criteria string
            channel_type: Channel type ("websocket", "rest-hook", ...)
            payload_encoding: Encoding name or payload mime type (None -> ping only)
            reason: Free text
            endpoint: Delivery URL for rest-hook channels
            headers: Extra "Name: value" headers for rest-hook channels

        Returns:
            Assigned subscription id

        Raises:
            ValidationError: If criteria, channel type or endpoint are invalid
        """
        parsed, channel, encoding = self.validate(criteria, channel_type, payload_encoding, endpoint)

        if self.id_allocator is not None:
            subscription_id = await self.id_allocator()
        else:
            with self._lock:
                subscription_id = str(next(self._ids))

        subscription = Subscription(
            id=subscription_id,
            criteria=criteria.strip(),
            channel_type=channel,
            payload_encoding=encoding,
            status=SubscriptionStatus.REQUESTED,
            reason=reason or "",
            endpoint=endpoint if channel == ChannelType.REST_HOOK else None,
            headers=list(headers or []),
        )
        subscription = subscription.model_copy(update={"status": SubscriptionStatus.ACTIVE})

        await self.store.save(subscription)
        with self._lock:
            self._insert(subscription, parsed)

        logger.info(
            f"Registered subscription {subscription_id} for '{subscription.criteria}' "
            f"via {channel.value} ({encoding.value})"
        )
        return subscription_id

    def get(self, subscription_id: str) -> Subscription:
        """
        Get subscription by id.

        Raises:
            NotFound: If the id is unknown
        """
        subscription = self._current(subscription_id)
        if subscription is None:
            raise NotFound(subscription_id)
        return subscription

    def list_subscriptions(self) -> list[Subscription]:
        """All known subscriptions in registration order."""
        with self._lock:
            return list(self._subscriptions.values())

    def parsed_criteria(self, subscription_id: str) -> Optional[ParsedCriteria]:
        """Criteria parsed at registration; None for subscriptions stuck in ERROR."""
        with self._lock:
            if subscription_id not in self._subscriptions:
                raise NotFound(subscription_id)
            return self._parsed.get(subscription_id)

    async def deactivate(self, subscription_id: str) -> None:
        """
        Turn a subscription OFF. Idempotent for subscriptions already OFF.

        Raises:
            NotFound: If the id is unknown
        """
        await self._transition(subscription_id, SubscriptionStatus.OFF, error=None)
        logger.info(f"Deactivated subscription {subscription_id}")

    async def mark_error(self, subscription_id: str, message: str) -> None:
        """
        Move a subscription to ERROR.

        Raises:
            NotFound: If the id is unknown
        """
        await self._transition(subscription_id, SubscriptionStatus.ERROR, error=message)
        logger.warning(f"Subscription {subscription_id} moved to error: {message}")

    async def remove(self, subscription_id: str) -> None:
        """
        Delete a subscription. Its id no longer resolves afterwards.

        Raises:
            NotFound: If the id is unknown
        """
        with self._lock:
            subscription = self._discard(subscription_id)
        if subscription is None:
            raise NotFound(subscription_id)

        await self.store.delete(subscription_id)
        logger.info(f"Removed subscription {subscription_id}")
        await self._notify(subscription.model_copy(update={"status": SubscriptionStatus.OFF}))

    async def reload(self, subscription_id: str) -> Optional[Subscription]:
        """
        Refresh one subscription from the store after another process changed it.

        Returns:
            The reloaded subscription, or None if it no longer exists
        """
        stored = await self.store.load(subscription_id)

        parsed: Optional[ParsedCriteria] = None
        if stored is not None:
            try:
                parsed = self.parser.parse(stored.criteria)
            except ValidationError as e:
                logger.warning(f"Reloaded subscription {subscription_id} has invalid criteria: {e.errors}")
                if stored.is_active:
                    stored = stored.model_copy(update={
                        "status": SubscriptionStatus.ERROR,
                        "error": "; ".join(e.errors),
                    })

        with self._lock:
            previous = self._discard(subscription_id)
            if stored is not None:
                self._insert(stored, parsed)

        if previous is not None and previous.is_active and (stored is None or not stored.is_active):
            await self._notify(stored or previous.model_copy(update={"status": SubscriptionStatus.OFF}))

        logger.debug(f"Reloaded subscription {subscription_id}")
        return stored

    def active_subscriptions_for(self, resource_type: str) -> ActiveSubscriptions:
        """Lazy, restartable view of ACTIVE subscriptions watching resource_type."""
        return ActiveSubscriptions(self, resource_type)

    # === Internals ===

    def _discard(self, subscription_id: str) -> Optional[Subscription]:
        """Drop a record from all maps; caller holds the lock."""
        self._unindex(subscription_id)
        self._parsed.pop(subscription_id, None)
        return self._subscriptions.pop(subscription_id, None)

    async def _transition(
        self,
        subscription_id: str,
        status: SubscriptionStatus,
        error: Optional[str],
    ) -> None:
        with self._lock:
            current = self._subscriptions.get(subscription_id)
            if current is None:
                raise NotFound(subscription_id)
            if current.status == status and current.error == error:
                return
            updated = current.model_copy(update={"status": status, "error": error})
            self._subscriptions[subscription_id] = updated
            if updated.is_active:
                self._index(subscription_id)
            else:
                self._unindex(subscription_id)

        await self.store.save(updated)
        if current.is_active and not updated.is_active:
            await self._notify(updated)

    def _insert(self, subscription: Subscription, parsed: Optional[ParsedCriteria]) -> None:
        """Add a record; caller holds the lock."""
        self._subscriptions[subscription.id] = subscription
        if parsed is not None:
            self._parsed[subscription.id] = parsed
            if subscription.is_active:
                self._index(subscription.id)

    def _index(self, subscription_id: str) -> None:
        """Make an ACTIVE subscription visible to dispatch; caller holds the lock."""
        parsed = self._parsed.get(subscription_id)
        if parsed is None:
            return
        ids = self._by_type.setdefault(parsed.resource_type, [])
        if subscription_id not in ids:
            ids.append(subscription_id)

    def _unindex(self, subscription_id: str) -> None:
        parsed = self._parsed.get(subscription_id)
        if parsed is None:
            return
        ids = self._by_type.get(parsed.resource_type)
        if ids and subscription_id in ids:
            ids.remove(subscription_id)
            if not ids:
                del self._by_type[parsed.resource_type]

    def _ids_for_type(self, resource_type: str) -> list[str]:
        with self._lock:
            return list(self._by_type.get(resource_type, ()))

    def _current(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)
