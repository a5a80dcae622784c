"""
Media engine adapter contract.

The signaling layer never touches RTP itself; it drives an SFU through the
:class:`MediaEngine` interface and keeps the returned handles on the session
that created them.
"""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


MEDIA_KINDS = ("audio", "video")


class AdapterError(RuntimeError):
    """Raised when the media engine rejects or fails an operation."""


class AdapterTimeout(AdapterError):
    """Raised when a media engine call does not complete in time."""


class TransportDirection(str, enum.Enum):
    SEND = "send"
    RECV = "recv"


class TransportState(str, enum.Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class ProducerHandle:
    id: str
    kind: str
    rtp_parameters: Dict[str, Any]
    transport_id: str
    closed: bool = False


@dataclass
class ConsumerHandle:
    id: str
    producer_id: str
    kind: str
    rtp_parameters: Dict[str, Any]
    transport_id: str
    type: str = "simple"
    paused: bool = False
    closed: bool = False

    def describe(self) -> Dict[str, Any]:
        """Wire shape of the ``subscribed`` reply."""
        return {
            "producerId": self.producer_id,
            "id": self.id,
            "kind": self.kind,
            "rtpParameters": self.rtp_parameters,
            "type": self.type,
            "producerPaused": self.paused,
        }


@dataclass
class TransportHandle:
    """
    A negotiated ICE+DTLS path between one endpoint and the engine.

    Producers and consumers created on the transport are tracked here so that
    closing the transport releases them as well.
    """

    id: str
    direction: TransportDirection
    ice_parameters: Dict[str, Any]
    ice_candidates: List[Dict[str, Any]]
    dtls_parameters: Dict[str, Any]
    available_outgoing_bitrate: Optional[int] = None
    state: TransportState = TransportState.NEW
    producers: Dict[str, ProducerHandle] = field(default_factory=dict)
    consumers: Dict[str, ConsumerHandle] = field(default_factory=dict)

    @property
    def connected(self) -> bool:
        return self.state == TransportState.CONNECTED

    @property
    def closed(self) -> bool:
        return self.state == TransportState.CLOSED

    def params(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "iceParameters": self.ice_parameters,
            "iceCandidates": self.ice_candidates,
            "dtlsParameters": self.dtls_parameters,
        }


class MediaEngine(abc.ABC):
    """
    Abstract SFU adapter.

    Every coroutine may raise :class:`AdapterError`.  Callers are expected to
    bound each call with a timeout.
    """

    async def start(self) -> None:
        """Bring up workers/routers.  Called once before any other method."""

    async def close(self) -> None:
        """Release every resource held by the engine."""

    @abc.abstractmethod
    async def get_router_capabilities(self) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def create_transport(
        self, direction: TransportDirection, *, force_tcp: bool = False
    ) -> TransportHandle:
        ...

    @abc.abstractmethod
    async def set_max_incoming_bitrate(self, transport: TransportHandle, bitrate: int) -> None:
        ...

    @abc.abstractmethod
    async def connect_transport(self, transport: TransportHandle, dtls_parameters: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def produce(
        self, transport: TransportHandle, kind: str, rtp_parameters: Dict[str, Any]
    ) -> ProducerHandle:
        ...

    @abc.abstractmethod
    def can_consume(self, producer_id: str, rtp_capabilities: Dict[str, Any]) -> bool:
        ...

    @abc.abstractmethod
    async def consume(
        self,
        transport: TransportHandle,
        producer_id: str,
        rtp_capabilities: Dict[str, Any],
        *,
        paused: bool = False,
    ) -> ConsumerHandle:
        ...

    @abc.abstractmethod
    async def resume(self, consumer: ConsumerHandle) -> None:
        ...

    @abc.abstractmethod
    async def close_transport(self, transport: TransportHandle) -> None:
        ...

    def get_producer(self, producer_id: str) -> Optional[ProducerHandle]:
        """Look up a live producer by id.  Engines without an index return ``None``."""
        return None


__all__ = [
    "AdapterError",
    "AdapterTimeout",
    "ConsumerHandle",
    "MEDIA_KINDS",
    "MediaEngine",
    "ProducerHandle",
    "TransportDirection",
    "TransportHandle",
    "TransportState",
]
