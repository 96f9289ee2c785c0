"""
Transports carrying notifications to subscribers.

A transport is owned by the ChannelManager once attached; nothing outside the
manager writes to it.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx
from fastapi import WebSocket
from starlette.websockets import WebSocketState

from ..core.types import ChannelType

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Server-to-client delivery path."""

    channel_type: ChannelType

    async def open(self) -> None:
        """Complete the handshake; the channel becomes OPEN when this returns."""
        ...

    async def send(self, payload: str) -> None: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """Transport over an accepted (or acceptable) FastAPI WebSocket."""

    channel_type = ChannelType.WEBSOCKET

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def open(self) -> None:
        if self.websocket.application_state == WebSocketState.CONNECTING:
            await self.websocket.accept()

    async def send(self, payload: str) -> None:
        await self.websocket.send_text(payload)

    async def close(self) -> None:
        if self.websocket.application_state == WebSocketState.CONNECTED:
            await self.websocket.close()

    def __repr__(self) -> str:
        return f"WebSocketTransport({self.websocket.client})"


class RestHookTransport:
    """
    Transport POSTing each notification to a subscriber endpoint.

    Usage:
        transport = RestHookTransport("https://example.org/hook", headers=["Authorization: Bearer x"])
        await transport.open()
        await transport.send("5")
    """

    channel_type = ChannelType.REST_HOOK

    def __init__(
        self,
        endpoint: str,
        headers: Optional[list[str]] = None,
        *,
        content_type: str = "text/plain",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize transport.

        Args:
            endpoint: URL receiving notifications
            headers: Extra "Name: value" headers
            content_type: Content-Type of the POSTed body
            timeout: HTTP request timeout in seconds
            client: Shared httpx client (a private one is created otherwise)
        """
        self.endpoint = endpoint
        self.headers = self._parse_headers(headers or [])
        self.headers.setdefault("Content-Type", content_type)
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @staticmethod
    def _parse_headers(raw: list[str]) -> dict[str, str]:
        headers = {}
        for line in raw:
            name, sep, value = line.partition(":")
            if not sep or not name.strip():
                logger.warning(f"Ignoring malformed rest-hook header '{line}'")
                continue
            headers[name.strip()] = value.strip()
        return headers

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

    async def send(self, payload: str) -> None:
        if self._client is None:
            raise RuntimeError("Rest-hook transport is not open")
        response = await self._client.post(
            self.endpoint, content=payload, headers=self.headers, timeout=self.timeout
        )
        response.raise_for_status()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def __repr__(self) -> str:
        return f"RestHookTransport({self.endpoint})"
