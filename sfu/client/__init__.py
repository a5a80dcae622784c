"""Signaling client for publishing and subscribing through the SFU."""

from .bridge import BridgeTimeout, NegotiationError, TransportBridge
from .local import LocalDevice, LocalTrack, LocalTransport, MediaSink
from .signaling import SignalingClient

__all__ = [
    "BridgeTimeout",
    "LocalDevice",
    "LocalTrack",
    "LocalTransport",
    "MediaSink",
    "NegotiationError",
    "SignalingClient",
    "TransportBridge",
]
