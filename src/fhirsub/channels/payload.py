"""
Notification payloads.

NONE sends exactly the subscription id (correlation ping). JSON and XML carry
the matched resource in FHIR JSON or FHIR XML form; XML goes through the
fhir.resources model of the resource type, which validates the resource and
emits elements in schema order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from fhir.resources import construct_fhir_element

from ..core.resource import SearchableResource
from ..core.types import PayloadEncoding

CONTENT_TYPES = {
    PayloadEncoding.NONE: "text/plain",
    PayloadEncoding.JSON: "application/fhir+json",
    PayloadEncoding.XML: "application/fhir+xml",
}


@dataclass
class Notification:
    """A matched write to deliver to one subscription."""
    subscription_id: str
    resource: SearchableResource


def _resource_dict(resource: SearchableResource) -> dict[str, Any]:
    as_dict = getattr(resource, "as_dict", None)
    if as_dict is None:
        raise TypeError(f"{type(resource).__name__} cannot be serialized (no as_dict())")
    return as_dict()


def to_fhir_xml(data: dict[str, Any]) -> str:
    """
    Render a FHIR JSON resource as FHIR XML.

    Raises:
        ValueError: Unknown resource type, or the resource is not valid FHIR
    """
    resource = construct_fhir_element(data["resourceType"], data)
    return resource.xml()


def encode_notification(notification: Notification, encoding: PayloadEncoding) -> str:
    """
    Serialize a notification body.

    Raises:
        TypeError: If the resource cannot be rendered for JSON/XML encodings
        ValueError: If the resource cannot be rendered as FHIR XML
    """
    if encoding == PayloadEncoding.NONE:
        return notification.subscription_id
    data = _resource_dict(notification.resource)
    if encoding == PayloadEncoding.JSON:
        return json.dumps(data, ensure_ascii=False)
    return to_fhir_xml(data)
