"""
Dispatch module - resource write fan-out to subscriptions.
"""

from __future__ import annotations

from .coordinator import DispatchCoordinator

__all__ = ["DispatchCoordinator"]
