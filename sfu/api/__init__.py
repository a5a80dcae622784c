"""
Signaling API: WebSocket protocol engine, shared state and schemas.
"""

from __future__ import annotations

from .server import SignalingConnection, SignalingManager, create_app
from .state import SignalingState

__all__ = ["SignalingConnection", "SignalingManager", "SignalingState", "create_app"]
