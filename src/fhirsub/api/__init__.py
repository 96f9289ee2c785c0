"""
API module - FastAPI router for subscriptions, resource writes and the
notification WebSocket.
"""

from __future__ import annotations

from .router import get_server, operation_outcome, router

__all__ = ["router", "get_server", "operation_outcome"]
