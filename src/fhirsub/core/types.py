"""
Pydantic models for subscriptions, parsed criteria and channel state.

These define the registry's records and the normalized internal representation
of subscription criteria.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Lifecycle state of a subscription."""
    REQUESTED = "requested"
    ACTIVE = "active"
    ERROR = "error"
    OFF = "off"


class ChannelType(str, Enum):
    """Delivery channel kinds a subscription may ask for."""
    WEBSOCKET = "websocket"
    REST_HOOK = "rest-hook"
    EMAIL = "email"
    SMS = "sms"
    MESSAGE = "message"


class PayloadEncoding(str, Enum):
    """
    How a matched resource is carried in a notification.

    NONE delivers only the subscription id as a correlation ping.
    """
    JSON = "json"
    XML = "xml"
    NONE = "none"


class ChannelState(str, Enum):
    """State of a notification channel."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


# Mime types accepted in channel.payload, mapped to encodings
PAYLOAD_MIME_TYPES: dict[str, PayloadEncoding] = {
    "": PayloadEncoding.NONE,
    "none": PayloadEncoding.NONE,
    "json": PayloadEncoding.JSON,
    "application/json": PayloadEncoding.JSON,
    "application/fhir+json": PayloadEncoding.JSON,
    "application/json+fhir": PayloadEncoding.JSON,
    "xml": PayloadEncoding.XML,
    "application/xml": PayloadEncoding.XML,
    "application/fhir+xml": PayloadEncoding.XML,
    "application/xml+fhir": PayloadEncoding.XML,
}

# Mime types reported back for each encoding
ENCODING_MIME_TYPES: dict[PayloadEncoding, Optional[str]] = {
    PayloadEncoding.JSON: "application/fhir+json",
    PayloadEncoding.XML: "application/fhir+xml",
    PayloadEncoding.NONE: None,
}


# --- Parsed criteria ---

class ParameterConstraint(BaseModel):
    """
    One search parameter constraint from a criteria string.

    Input: "subject=Patient/1,Patient/2"
    Parsed: ParameterConstraint(name="subject", values=["Patient/1", "Patient/2"])
    """
    name: str
    modifier: Optional[str] = None  # exact, missing
    values: list[str]


class ParsedCriteria(BaseModel):
    """Criteria split into a resource type and ordered constraints."""
    resource_type: str
    constraints: list[ParameterConstraint] = Field(default_factory=list)


# --- Registry records ---

class Subscription(BaseModel):
    """A registered standing query plus its delivery channel."""
    id: str
    criteria: str
    channel_type: ChannelType
    payload_encoding: PayloadEncoding = PayloadEncoding.NONE
    status: SubscriptionStatus = SubscriptionStatus.REQUESTED
    reason: str = ""
    endpoint: Optional[str] = None
    headers: list[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def to_fhir(self) -> dict[str, Any]:
        """Render as a FHIR Subscription resource."""
        channel: dict[str, Any] = {"type": self.channel_type.value}
        mime = ENCODING_MIME_TYPES[self.payload_encoding]
        if mime:
            channel["payload"] = mime
        if self.endpoint:
            channel["endpoint"] = self.endpoint
        if self.headers:
            channel["header"] = list(self.headers)

        resource: dict[str, Any] = {
            "resourceType": "Subscription",
            "id": self.id,
            "status": self.status.value,
            "reason": self.reason,
            "criteria": self.criteria,
            "channel": channel,
        }
        if self.error:
            resource["error"] = self.error
        return resource


# --- API request types ---

class SubscriptionChannelIn(BaseModel):
    """channel element of an incoming FHIR Subscription."""
    type: str
    payload: Optional[str] = None
    endpoint: Optional[str] = None
    header: list[str] = Field(default_factory=list)


class SubscriptionIn(BaseModel):
    """
    FHIR Subscription resource as posted by a client.

    Example:
    {
        "resourceType": "Subscription",
        "status": "requested",
        "reason": "Monitor new neonatal function",
        "criteria": "Observation?subject=Patient/1",
        "channel": {"type": "websocket", "payload": "application/json"}
    }
    """
    resourceType: str = "Subscription"
    criteria: str
    reason: str = ""
    status: Optional[str] = None
    channel: SubscriptionChannelIn


class ChannelInfo(BaseModel):
    """Read-only view of a channel; never exposes the transport."""
    subscription_id: str
    channel_type: ChannelType
    encoding: PayloadEncoding
    state: ChannelState


class DispatchResult(BaseModel):
    """Outcome of dispatching one resource write."""
    resource_type: str
    resource_id: Optional[str] = None
    evaluated: list[str] = Field(default_factory=list)
    matched: list[str] = Field(default_factory=list)
    delivered: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    scheduled: list[str] = Field(default_factory=list)
