"""
Interfaces of the endpoint-local WebRTC stack.

These mirror what a mediasoup-style client device exposes.  The signaling
client only talks to these protocols, so any implementation (a browser bridge,
an aiortc-backed device, a test double) can be plugged in.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

# "connect" handlers receive the local DTLS parameters; "produce" handlers
# receive kind and RTP parameters and return the server producer id;
# "connectionstatechange" handlers receive the new state string.
ConnectHandler = Callable[[Dict[str, Any]], Awaitable[None]]
ProduceHandler = Callable[[str, Dict[str, Any]], Awaitable[str]]
StateHandler = Callable[[str], Optional[Awaitable[None]]]


class LocalTrack(Protocol):
    kind: str


class LocalProducer(Protocol):
    id: str
    track: LocalTrack


class LocalConsumer(Protocol):
    id: str
    track: LocalTrack


class LocalTransport(Protocol):
    id: str

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        ...

    async def produce(self, track: LocalTrack) -> LocalProducer:
        ...

    async def consume(
        self, *, id: str, producer_id: str, kind: str, rtp_parameters: Dict[str, Any]
    ) -> LocalConsumer:
        ...

    def close(self) -> None:
        ...


class LocalDevice(Protocol):
    rtp_capabilities: Dict[str, Any]

    async def load(self, router_rtp_capabilities: Dict[str, Any]) -> None:
        ...

    def can_produce(self, kind: str) -> bool:
        ...

    def create_send_transport(self, params: Dict[str, Any]) -> LocalTransport:
        ...

    def create_recv_transport(self, params: Dict[str, Any]) -> LocalTransport:
        ...

    async def acquire_track(self, source: str) -> LocalTrack:
        """Capture a video track from ``"webcam"`` or ``"screen"``."""
        ...


class MediaSink(Protocol):
    def attach(self, track: LocalTrack) -> None:
        ...


__all__ = [
    "ConnectHandler",
    "LocalConsumer",
    "LocalDevice",
    "LocalProducer",
    "LocalTrack",
    "LocalTransport",
    "MediaSink",
    "ProduceHandler",
    "StateHandler",
]
