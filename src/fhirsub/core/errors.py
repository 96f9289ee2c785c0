"""
Custom exceptions for the fhirsub subscription engine.
"""

from __future__ import annotations

from typing import Optional


class FhirSubError(Exception):
    """Base exception for all fhirsub errors."""
    pass


class ValidationError(FhirSubError):
    """Raised when a subscription fails validation (criteria, channel type, endpoint)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Validation failed: {errors}")


class NotFound(FhirSubError):
    """Raised when a subscription id does not resolve."""

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription '{subscription_id}' not found")


class SubscriptionNotFound(NotFound):
    """Raised when a channel is attached to an unknown subscription."""
    pass


class SubscriptionNotActive(FhirSubError):
    """Raised when a channel is attached to a subscription that is not active."""

    def __init__(self, subscription_id: str, status: str):
        self.subscription_id = subscription_id
        self.status = status
        super().__init__(f"Subscription '{subscription_id}' is not active (status: {status})")


class AlreadyAttached(FhirSubError):
    """Raised when a second channel is attached while one is still open."""

    def __init__(self, subscription_id: str, channel_type: str):
        self.subscription_id = subscription_id
        self.channel_type = channel_type
        super().__init__(
            f"Subscription '{subscription_id}' already has an open {channel_type} channel"
        )


class DeliveryFailure(FhirSubError):
    """Raised when a notification could not be written to its channel."""

    def __init__(self, subscription_id: str, message: str, cause: Optional[BaseException] = None):
        self.subscription_id = subscription_id
        self.cause = cause
        super().__init__(f"Delivery to subscription '{subscription_id}' failed: {message}")
