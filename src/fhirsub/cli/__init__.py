"""
fhirsub CLI - Command line tools for running the subscription server.
"""

from __future__ import annotations

from .main import main, app

__all__ = ["main", "app"]
