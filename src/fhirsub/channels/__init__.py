"""
Channels module - notification delivery.

Provides:
- ChannelManager: channel state machine, attach/push/detach
- WebSocketTransport / RestHookTransport: delivery paths
- WebSocketChannelRouter: "bind <id>" WebSocket endpoint handler
- Notification / encode_notification: payload serialization
"""

from __future__ import annotations

from .manager import Channel, ChannelManager
from .payload import CONTENT_TYPES, Notification, encode_notification, to_fhir_xml
from .router import WebSocketChannelRouter
from .transport import RestHookTransport, Transport, WebSocketTransport

__all__ = [
    # Manager
    "Channel",
    "ChannelManager",
    # Payload
    "CONTENT_TYPES",
    "Notification",
    "encode_notification",
    "to_fhir_xml",
    # Router
    "WebSocketChannelRouter",
    # Transports
    "RestHookTransport",
    "Transport",
    "WebSocketTransport",
]
