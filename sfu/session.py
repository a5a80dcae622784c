"""
Per-connection signaling session and its stage machine.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from .media.engine import ConsumerHandle, ProducerHandle, TransportHandle

LOG = logging.getLogger(__name__)


class SignalingError(RuntimeError):
    """Base class for signaling failures."""


class ProtocolError(SignalingError):
    """Raised when an inbound frame cannot be understood at all."""


class PreconditionError(SignalingError):
    """Raised when a request arrives before the session is ready for it."""


class CapabilityError(SignalingError):
    """Raised when an endpoint cannot consume the requested producer."""


class PublishStage(str, enum.Enum):
    IDLE = "Idle"
    CAPABILITIES_LOADED = "CapabilitiesLoaded"
    PRODUCER_TRANSPORT_CREATED = "ProducerTransportCreated"
    PRODUCER_CONNECTED = "ProducerConnected"
    PRODUCING = "Producing"


class SubscribeStage(str, enum.Enum):
    IDLE = "Idle"
    CONSUMER_TRANSPORT_CREATED = "ConsumerTransportCreated"
    CONSUMER_CONNECTED = "ConsumerConnected"
    CONSUMING = "Consuming"


_ANY_PUBLISH = frozenset(PublishStage)
_ANY_SUBSCRIBE = frozenset(SubscribeStage)

# event -> (allowed source stages, target stage)
PUBLISH_TRANSITIONS: Dict[str, Tuple[FrozenSet[PublishStage], Optional[PublishStage]]] = {
    "getRouterRtpCapabilities": (_ANY_PUBLISH, PublishStage.CAPABILITIES_LOADED),
    "createProducerTransport": (_ANY_PUBLISH, PublishStage.PRODUCER_TRANSPORT_CREATED),
    "connectProducerTransport": (
        frozenset({PublishStage.PRODUCER_TRANSPORT_CREATED}),
        PublishStage.PRODUCER_CONNECTED,
    ),
    "produce": (
        frozenset({PublishStage.PRODUCER_CONNECTED, PublishStage.PRODUCING}),
        PublishStage.PRODUCING,
    ),
}

SUBSCRIBE_TRANSITIONS: Dict[str, Tuple[FrozenSet[SubscribeStage], Optional[SubscribeStage]]] = {
    "createConsumerTransport": (_ANY_SUBSCRIBE, SubscribeStage.CONSUMER_TRANSPORT_CREATED),
    # Receive transports connect lazily on first consume, so connect may
    # arrive after the consumer already exists.  ``None`` keeps the stage.
    "connectConsumerTransport": (
        frozenset(
            {
                SubscribeStage.CONSUMER_TRANSPORT_CREATED,
                SubscribeStage.CONSUMING,
            }
        ),
        None,
    ),
    "consume": (
        frozenset(
            {
                SubscribeStage.CONSUMER_TRANSPORT_CREATED,
                SubscribeStage.CONSUMER_CONNECTED,
                SubscribeStage.CONSUMING,
            }
        ),
        SubscribeStage.CONSUMING,
    ),
    "resume": (frozenset({SubscribeStage.CONSUMING}), SubscribeStage.CONSUMING),
}


@dataclass
class Session:
    """
    Everything one signaling connection owns.

    Handles are only assigned once the media engine call that produced them
    has succeeded, so a failed request leaves the session untouched.
    """

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    publish_stage: PublishStage = PublishStage.IDLE
    subscribe_stage: SubscribeStage = SubscribeStage.IDLE
    producer_transport: Optional[TransportHandle] = None
    producer: Optional[ProducerHandle] = None
    consumer_transport: Optional[TransportHandle] = None
    consumer: Optional[ConsumerHandle] = None
    # Producers replaced by a later ``produce`` stay open until their
    # transport closes.
    superseded_producers: List[ProducerHandle] = field(default_factory=list)

    # ------------------------------------------------------------------ checks

    def require_publish(self, event: str) -> None:
        allowed, _ = PUBLISH_TRANSITIONS[event]
        if self.publish_stage not in allowed:
            raise PreconditionError(f"{event} not allowed in publish stage {self.publish_stage.value}")
        if event == "connectProducerTransport":
            self._require_unconnected(self.producer_transport, "producer")
        elif event == "produce":
            if self.producer_transport is None or not self.producer_transport.connected:
                raise PreconditionError("producer transport is not connected")

    def require_subscribe(self, event: str) -> None:
        allowed, _ = SUBSCRIBE_TRANSITIONS[event]
        if event == "connectConsumerTransport":
            self._require_unconnected(self.consumer_transport, "consumer")
        if self.subscribe_stage not in allowed:
            if event == "resume":
                raise PreconditionError("no consumer to resume")
            raise PreconditionError(f"{event} not allowed in subscribe stage {self.subscribe_stage.value}")
        if event == "resume":
            if self.consumer is None:
                raise PreconditionError("no consumer to resume")
            if self.consumer_transport is None or not self.consumer_transport.connected:
                raise PreconditionError("consumer transport is not connected")

    @staticmethod
    def _require_unconnected(transport: Optional[TransportHandle], label: str) -> None:
        if transport is None or transport.closed:
            raise PreconditionError(f"{label} transport does not exist")
        if transport.connected:
            raise PreconditionError(f"{label} transport already connected")

    # ------------------------------------------------------------------ transitions

    def advance_publish(self, event: str) -> PublishStage:
        """Apply a transition whose preconditions were checked before the engine call."""
        _, target = PUBLISH_TRANSITIONS[event]
        if event == "getRouterRtpCapabilities" and self.publish_stage != PublishStage.IDLE:
            # Re-reading capabilities never rewinds an in-flight publish.
            return self.publish_stage
        if target is not None and target != self.publish_stage:
            LOG.debug("Session %s publish %s -> %s", self.session_id[:8], self.publish_stage.value, target.value)
            self.publish_stage = target
        return self.publish_stage

    def advance_subscribe(self, event: str) -> SubscribeStage:
        _, target = SUBSCRIBE_TRANSITIONS[event]
        if event == "connectConsumerTransport" and self.subscribe_stage == SubscribeStage.CONSUMER_TRANSPORT_CREATED:
            target = SubscribeStage.CONSUMER_CONNECTED
        if target is not None and target != self.subscribe_stage:
            LOG.debug("Session %s subscribe %s -> %s", self.session_id[:8], self.subscribe_stage.value, target.value)
            self.subscribe_stage = target
        return self.subscribe_stage

    # ------------------------------------------------------------------ handles

    def replace_producer_transport(self, transport: TransportHandle) -> Optional[TransportHandle]:
        """Install a new send transport; returns the previous one for closing."""
        previous = self.producer_transport
        self.producer_transport = transport
        self.producer = None
        self.superseded_producers = []
        return previous

    def replace_consumer_transport(self, transport: TransportHandle) -> Optional[TransportHandle]:
        previous = self.consumer_transport
        self.consumer_transport = transport
        self.consumer = None
        return previous

    def set_producer(self, producer: ProducerHandle) -> Optional[ProducerHandle]:
        """Store ``producer``; returns the reference it replaced, if any."""
        previous = self.producer
        if previous is not None and not previous.closed:
            self.superseded_producers.append(previous)
        self.producer = producer
        return previous

    def owned_producers(self) -> List[ProducerHandle]:
        producers = [item for item in self.superseded_producers if not item.closed]
        if self.producer is not None and not self.producer.closed:
            producers.append(self.producer)
        return producers

    def release(self) -> List[TransportHandle]:
        """
        Detach and return every transport the session owns.

        The caller closes the returned transports through the media engine,
        which in turn closes their producers and consumers.
        """

        transports = [
            transport
            for transport in (self.producer_transport, self.consumer_transport)
            if transport is not None
        ]
        self.producer_transport = None
        self.producer = None
        self.superseded_producers = []
        self.consumer_transport = None
        self.consumer = None
        self.publish_stage = PublishStage.IDLE
        self.subscribe_stage = SubscribeStage.IDLE
        return transports

    def snapshot(self) -> dict:
        return {
            "sessionId": self.session_id,
            "publishStage": self.publish_stage.value,
            "subscribeStage": self.subscribe_stage.value,
            "producerTransportId": self.producer_transport.id if self.producer_transport else None,
            "producerId": self.producer.id if self.producer else None,
            "ownedProducerIds": [producer.id for producer in self.owned_producers()],
            "consumerTransportId": self.consumer_transport.id if self.consumer_transport else None,
            "consumerId": self.consumer.id if self.consumer else None,
        }


__all__ = [
    "CapabilityError",
    "PreconditionError",
    "ProtocolError",
    "PublishStage",
    "PUBLISH_TRANSITIONS",
    "Session",
    "SignalingError",
    "SubscribeStage",
    "SUBSCRIBE_TRANSITIONS",
]
