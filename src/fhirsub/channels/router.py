"""
WebSocket endpoint for notification channels.

Wire protocol:
    client -> server   "bind <subscription id>"
    server -> client   "bound <subscription id>"
                       or "failed to bind: <reason>" (connection then closes)
    server -> client   notification frames (for payload NONE: the subscription id)
    client -> server   "ping"  ->  "pong"
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect

from ..core.errors import FhirSubError
from .manager import ChannelManager
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)


class WebSocketChannelRouter:
    """
    Handles WebSocket connections that bind to a subscription.

    The connection stays bound for its lifetime; the handler only suspends
    while waiting for the next client frame, and notifications are written by
    the ChannelManager from the dispatch path.
    """

    def __init__(self, manager: ChannelManager):
        self.manager = manager

    async def handle_connection(self, websocket: WebSocket):
        """
        Serve one WebSocket connection.

        Flow:
        1. Accept connection
        2. Wait for "bind <id>" and attach the channel
        3. Answer pings until the client disconnects or the channel is closed
        4. Detach on the way out
        """
        await websocket.accept()
        transport = WebSocketTransport(websocket)
        bound_id: Optional[str] = None

        try:
            while True:
                message = (await websocket.receive_text()).strip()
                command, _, argument = message.partition(" ")
                command = command.lower()

                if command == "bind":
                    if bound_id is not None:
                        await websocket.send_text(f"failed to bind: already bound to {bound_id}")
                        continue
                    bound_id = await self._bind(websocket, transport, argument.strip())
                    if bound_id is None:
                        return

                elif command == "ping":
                    await websocket.send_text("pong")

                else:
                    logger.warning(f"Unexpected WebSocket message: {message[:100]}")
                    await websocket.send_text(f"unexpected message: {command}")

        except WebSocketDisconnect:
            logger.info(f"WebSocket client disconnected (subscription {bound_id})")
        except RuntimeError as e:
            # Raised by receive after the server side closed the socket
            logger.debug(f"WebSocket closed for subscription {bound_id}: {e}")
        finally:
            if bound_id is not None:
                await self.manager.detach(bound_id, transport=transport)

    async def _bind(self, websocket: WebSocket, transport: WebSocketTransport, subscription_id: str) -> Optional[str]:
        """Attach the connection; returns the bound id or None after reporting failure."""
        if not subscription_id:
            await self._refuse(websocket, "missing subscription id")
            return None

        try:
            await self.manager.attach(subscription_id, transport)
        except FhirSubError as e:
            logger.info(f"WebSocket bind to {subscription_id} refused: {e}")
            await self._refuse(websocket, str(e))
            return None

        await websocket.send_text(f"bound {subscription_id}")
        return subscription_id

    async def _refuse(self, websocket: WebSocket, reason: str):
        await websocket.send_text(f"failed to bind: {reason}")
        await websocket.close()
