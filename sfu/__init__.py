"""
SFU signaling service.

Coordinates a publish/subscribe WebRTC session over a WebSocket: codec
capability negotiation, transport creation, DTLS connect, produce and consume.
The media plane itself lives behind :class:`sfu.media.MediaEngine`.
"""

from __future__ import annotations

from .config import ServerConfig, load_config

__all__ = [
    "ServerConfig",
    "load_config",
]
