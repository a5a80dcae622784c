"""
In-process reference implementation of :class:`MediaEngine`.

The loopback engine does not move any RTP.  It implements the bookkeeping
side of an SFU router faithfully (identifiers, ICE/DTLS parameter generation,
DTLS role negotiation, codec matching, paused video consumers and cascading
close) which is everything the signaling layer can observe.
"""

from __future__ import annotations

import itertools
import logging
import secrets
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..config import MediaSettings
from . import capabilities
from .engine import (
    AdapterError,
    ConsumerHandle,
    MediaEngine,
    ProducerHandle,
    TransportDirection,
    TransportHandle,
    TransportState,
)

LOG = logging.getLogger(__name__)

IdFactory = Callable[[str], str]

DTLS_ROLES = {"auto", "client", "server"}
FINGERPRINT_ALGORITHMS = {"sha-1", "sha-224", "sha-256", "sha-384", "sha-512"}


def _uuid_ids(_prefix: str) -> str:
    return str(uuid.uuid4())


def _fingerprint() -> str:
    return ":".join(f"{byte:02X}" for byte in secrets.token_bytes(32))


class LoopbackMediaEngine(MediaEngine):
    """
    Router bookkeeping without a media plane.

    ``id_factory`` receives ``"transport"``, ``"producer"`` or ``"consumer"``
    and returns the identifier for the new handle.
    """

    def __init__(
        self,
        settings: Optional[MediaSettings] = None,
        *,
        id_factory: Optional[IdFactory] = None,
    ) -> None:
        self.settings = settings or MediaSettings()
        self._id_factory: IdFactory = id_factory or _uuid_ids
        self._router_capabilities: Optional[Dict[str, Any]] = None
        self._transports: Dict[str, TransportHandle] = {}
        self._producers: Dict[str, ProducerHandle] = {}
        self._consumers: Dict[str, ConsumerHandle] = {}
        self._consumers_by_producer: Dict[str, Dict[str, ConsumerHandle]] = {}
        self._bitrate_caps: Dict[str, int] = {}
        self._port_cycle = itertools.cycle(
            range(self.settings.worker.rtc_min_port, self.settings.worker.rtc_max_port + 1)
        )

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self._router_capabilities is None:
            try:
                self._router_capabilities = capabilities.build_router_capabilities(
                    self.settings.router.media_codecs
                )
            except ValueError as exc:
                raise AdapterError(f"invalid router media codecs: {exc}") from exc
            LOG.info(
                "Loopback router ready with codecs: %s",
                ", ".join(
                    codec["mimeType"]
                    for codec in self._router_capabilities["codecs"]
                    if not capabilities.is_rtx(codec)
                ),
            )

    async def close(self) -> None:
        for transport in list(self._transports.values()):
            await self.close_transport(transport)

    # ------------------------------------------------------------------ helpers

    def _require_open(self, transport: TransportHandle) -> None:
        if transport.closed or transport.id not in self._transports:
            raise AdapterError(f"transport {transport.id} is closed")

    def _ice_candidates(self, force_tcp: bool) -> List[Dict[str, Any]]:
        options = self.settings.web_rtc_transport
        protocols = []
        if options.enable_udp and not force_tcp:
            protocols.append("udp")
        if options.enable_tcp:
            protocols.append("tcp")
        if options.prefer_udp and "udp" in protocols:
            protocols.sort(key=lambda value: value != "udp")
        if not protocols:
            raise AdapterError("no transport protocol enabled")

        candidates = []
        base_priority = 1076302079
        for listen in options.listen_ips:
            for index, protocol in enumerate(protocols):
                candidate = {
                    "foundation": f"{protocol}candidate",
                    "priority": base_priority - index,
                    "ip": listen.announced_ip or listen.ip,
                    "address": listen.announced_ip or listen.ip,
                    "protocol": protocol,
                    "port": next(self._port_cycle),
                    "type": "host",
                }
                if protocol == "tcp":
                    candidate["tcpType"] = "passive"
                candidates.append(candidate)
        return candidates

    def _close_producer(self, producer: ProducerHandle) -> None:
        producer.closed = True
        self._producers.pop(producer.id, None)
        for consumer in list(self._consumers_by_producer.pop(producer.id, {}).values()):
            self._close_consumer(consumer)

    def _close_consumer(self, consumer: ConsumerHandle) -> None:
        consumer.closed = True
        self._consumers.pop(consumer.id, None)
        by_producer = self._consumers_by_producer.get(consumer.producer_id)
        if by_producer:
            by_producer.pop(consumer.id, None)
        transport = self._transports.get(consumer.transport_id)
        if transport is not None:
            transport.consumers.pop(consumer.id, None)

    # ------------------------------------------------------------------ MediaEngine

    async def get_router_capabilities(self) -> Dict[str, Any]:
        await self.start()
        return self._router_capabilities

    async def create_transport(
        self, direction: TransportDirection, *, force_tcp: bool = False
    ) -> TransportHandle:
        await self.start()
        transport = TransportHandle(
            id=self._id_factory("transport"),
            direction=TransportDirection(direction),
            ice_parameters={
                "usernameFragment": secrets.token_hex(8),
                "password": secrets.token_hex(16),
                "iceLite": True,
            },
            ice_candidates=self._ice_candidates(force_tcp),
            dtls_parameters={
                "role": "auto",
                "fingerprints": [{"algorithm": "sha-256", "value": _fingerprint()}],
            },
            available_outgoing_bitrate=self.settings.web_rtc_transport.initial_available_outgoing_bitrate,
        )
        self._transports[transport.id] = transport
        LOG.debug("Created %s transport %s", transport.direction.value, transport.id)
        return transport

    async def set_max_incoming_bitrate(self, transport: TransportHandle, bitrate: int) -> None:
        self._require_open(transport)
        if int(bitrate) <= 0:
            raise AdapterError(f"invalid bitrate {bitrate}")
        self._bitrate_caps[transport.id] = int(bitrate)

    async def connect_transport(self, transport: TransportHandle, dtls_parameters: Dict[str, Any]) -> None:
        self._require_open(transport)
        if transport.state != TransportState.NEW:
            raise AdapterError(f"transport {transport.id} already connected")
        if not isinstance(dtls_parameters, dict):
            raise AdapterError("missing dtlsParameters")

        remote_role = dtls_parameters.get("role", "auto")
        if remote_role not in DTLS_ROLES:
            raise AdapterError(f"invalid DTLS role {remote_role!r}")
        local_role = transport.dtls_parameters.get("role", "auto")
        if local_role != "auto" and local_role == remote_role:
            raise AdapterError(f"DTLS role mismatch: both ends are {remote_role}")

        fingerprints = dtls_parameters.get("fingerprints")
        if not isinstance(fingerprints, list) or not fingerprints:
            raise AdapterError("dtlsParameters has no fingerprints")
        for fingerprint in fingerprints:
            if not isinstance(fingerprint, dict) or not fingerprint.get("value"):
                raise AdapterError("malformed DTLS fingerprint")
            if fingerprint.get("algorithm") not in FINGERPRINT_ALGORITHMS:
                raise AdapterError(f"unsupported fingerprint algorithm {fingerprint.get('algorithm')!r}")

        if local_role == "auto":
            transport.dtls_parameters["role"] = "client" if remote_role == "server" else "server"
        transport.state = TransportState.CONNECTED
        LOG.debug("Transport %s connected (local DTLS role %s)", transport.id, transport.dtls_parameters["role"])

    async def produce(
        self, transport: TransportHandle, kind: str, rtp_parameters: Dict[str, Any]
    ) -> ProducerHandle:
        self._require_open(transport)
        if transport.direction != TransportDirection.SEND:
            raise AdapterError(f"transport {transport.id} cannot produce")
        try:
            capabilities.validate_producer_parameters(
                await self.get_router_capabilities(), kind, rtp_parameters
            )
        except ValueError as exc:
            raise AdapterError(str(exc)) from exc

        producer = ProducerHandle(
            id=self._id_factory("producer"),
            kind=kind,
            rtp_parameters=rtp_parameters,
            transport_id=transport.id,
        )
        transport.producers[producer.id] = producer
        self._producers[producer.id] = producer
        LOG.debug("Created %s producer %s on %s", kind, producer.id, transport.id)
        return producer

    def get_producer(self, producer_id: str) -> Optional[ProducerHandle]:
        return self._producers.get(producer_id)

    def can_consume(self, producer_id: str, rtp_capabilities: Dict[str, Any]) -> bool:
        producer = self._producers.get(producer_id)
        if producer is None or producer.closed:
            return False
        return capabilities.can_consume(producer.rtp_parameters, rtp_capabilities)

    async def consume(
        self,
        transport: TransportHandle,
        producer_id: str,
        rtp_capabilities: Dict[str, Any],
        *,
        paused: bool = False,
    ) -> ConsumerHandle:
        self._require_open(transport)
        if transport.direction != TransportDirection.RECV:
            raise AdapterError(f"transport {transport.id} cannot consume")
        producer = self._producers.get(producer_id)
        if producer is None or producer.closed:
            raise AdapterError(f"producer {producer_id} not found")
        try:
            rtp_parameters = capabilities.consumer_rtp_parameters(producer.rtp_parameters, rtp_capabilities)
        except ValueError as exc:
            raise AdapterError(str(exc)) from exc

        consumer = ConsumerHandle(
            id=self._id_factory("consumer"),
            producer_id=producer.id,
            kind=producer.kind,
            rtp_parameters=rtp_parameters,
            transport_id=transport.id,
            paused=bool(paused),
        )
        transport.consumers[consumer.id] = consumer
        self._consumers[consumer.id] = consumer
        self._consumers_by_producer.setdefault(producer.id, {})[consumer.id] = consumer
        LOG.debug("Created %s consumer %s of %s", consumer.kind, consumer.id, producer.id)
        return consumer

    async def resume(self, consumer: ConsumerHandle) -> None:
        if consumer.closed or consumer.id not in self._consumers:
            raise AdapterError(f"consumer {consumer.id} is closed")
        consumer.paused = False

    async def close_transport(self, transport: TransportHandle) -> None:
        if transport.closed:
            return
        for producer in list(transport.producers.values()):
            self._close_producer(producer)
        for consumer in list(transport.consumers.values()):
            self._close_consumer(consumer)
        transport.producers.clear()
        transport.consumers.clear()
        transport.state = TransportState.CLOSED
        self._transports.pop(transport.id, None)
        self._bitrate_caps.pop(transport.id, None)
        LOG.debug("Closed transport %s", transport.id)

    # ------------------------------------------------------------------ introspection

    def stats(self) -> Dict[str, int]:
        return {
            "transports": len(self._transports),
            "producers": len(self._producers),
            "consumers": len(self._consumers),
        }

    def bitrate_cap(self, transport_id: str) -> Optional[int]:
        return self._bitrate_caps.get(transport_id)


__all__ = ["LoopbackMediaEngine"]
