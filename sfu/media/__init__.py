"""
Media engine adapters.
"""

from __future__ import annotations

from .engine import (
    AdapterError,
    AdapterTimeout,
    ConsumerHandle,
    MediaEngine,
    ProducerHandle,
    TransportDirection,
    TransportHandle,
    TransportState,
)
from .loopback import LoopbackMediaEngine

__all__ = [
    "AdapterError",
    "AdapterTimeout",
    "ConsumerHandle",
    "LoopbackMediaEngine",
    "MediaEngine",
    "ProducerHandle",
    "TransportDirection",
    "TransportHandle",
    "TransportState",
]
