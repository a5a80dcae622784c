"""
Publish/subscribe signaling client.

Speaks the same WebSocket protocol as :mod:`sfu.api.server` and drives a
:class:`~sfu.client.local.LocalDevice`: load router capabilities on connect,
publish a webcam or screen track, subscribe to the published producer and
resume it once the receive transport is up.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Union

import websockets

from .bridge import RECV, SEND, TransportBridge
from .local import LocalDevice, LocalTrack, LocalTransport, MediaSink

LOG = logging.getLogger(__name__)

SOURCES = ("webcam", "screen")


class MessageChannel(Protocol):
    """The subset of a ``websockets`` client connection the client uses."""

    async def send(self, message: str) -> None:
        ...

    async def close(self) -> None:
        ...

    def __aiter__(self) -> Any:
        ...


class SignalingClient:
    def __init__(
        self,
        channel: MessageChannel,
        device: LocalDevice,
        *,
        local_sink: Optional[MediaSink] = None,
        remote_sink: Optional[MediaSink] = None,
        negotiation_timeout: float = 10.0,
        on_new_producer: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        self.channel = channel
        self.device = device
        self.local_sink = local_sink
        self.remote_sink = remote_sink
        self.on_new_producer = on_new_producer
        self.bridge = TransportBridge(self.send, timeout=negotiation_timeout)

        self.source = "webcam"
        self.send_transport: Optional[LocalTransport] = None
        self.recv_transport: Optional[LocalTransport] = None
        self.local_track: Optional[LocalTrack] = None
        self.remote_track: Optional[LocalTrack] = None
        self.producer_id: Optional[str] = None
        self.errors: List[Any] = []

        self.device_loaded = asyncio.Event()
        self.published = asyncio.Event()
        self.subscribed = asyncio.Event()
        self.resumed = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    async def connect(cls, url: str, device: LocalDevice, **kwargs: Any) -> "SignalingClient":
        channel = await websockets.connect(url)
        return cls(channel, device, **kwargs)

    # ------------------------------------------------------------------ outbound

    async def send(self, message: Dict[str, Any]) -> None:
        await self.channel.send(json.dumps(message))

    async def start(self) -> None:
        LOG.info("Connected to signaling server")
        await self.send({"type": "getRouterRtpCapabilities"})

    async def publish(self, source: str = "webcam") -> bool:
        if source not in SOURCES:
            raise ValueError(f"source must be one of {', '.join(SOURCES)}")
        if not self.device.can_produce("video"):
            LOG.error("cannot produce video")
            return False
        self.source = source
        LOG.info("Publishing %s", source)
        await self.send(
            {
                "type": "createProducerTransport",
                "forceTcp": False,
                "rtpCapabilities": self.device.rtp_capabilities,
            }
        )
        return True

    async def subscribe(self) -> None:
        await self.send({"type": "createConsumerTransport", "forceTcp": False})

    # ------------------------------------------------------------------ inbound

    async def run(self) -> None:
        """Request capabilities, then dispatch server frames until the channel closes."""
        await self.start()
        try:
            async for frame in self.channel:
                await self.dispatch(frame)
        except websockets.ConnectionClosed:
            LOG.info("Signaling connection closed")
        finally:
            await self.close()

    async def dispatch(self, frame: Union[str, bytes]) -> None:
        try:
            message = json.loads(frame)
        except (TypeError, ValueError):
            LOG.warning("JSON validation failed")
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("type")
        LOG.debug("Received %s", message_type)

        if message_type == "error":
            LOG.error("Server error for %s: %s", message.get("request"), message.get("data"))
            self.errors.append(message.get("data"))

        if self.bridge.handle_message(message):
            return

        if message_type == "routerCapabilities":
            await self.device.load(message.get("data") or {})
            self.device_loaded.set()
            LOG.info("Device loaded")
        elif message_type == "producerTransportCreated":
            self._on_producer_transport_created(message.get("data") or {})
        elif message_type == "subTransportCreated":
            await self._on_sub_transport_created(message.get("data") or {})
        elif message_type == "subscribed":
            self._spawn(self._on_subscribed(message.get("data") or {}))
        elif message_type == "resumed":
            self.resumed.set()
        elif message_type == "newProducer":
            LOG.info("New producer available: %s", message.get("data"))
            if self.on_new_producer is not None:
                self.on_new_producer(message.get("data"))

    def _spawn(self, coro: Awaitable[None]) -> None:
        # Negotiation awaits replies read by the dispatch loop, so it must not
        # run inline.
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Negotiation step failed: %s", exc, exc_info=exc)
            self.errors.append(str(exc))

    def _on_producer_transport_created(self, params: Dict[str, Any]) -> None:
        transport = self.device.create_send_transport(params)
        self.send_transport = transport

        def _attach_local() -> None:
            if self.local_sink is not None and self.local_track is not None:
                self.local_sink.attach(self.local_track)

        self.bridge.attach(transport, SEND, on_connected=_attach_local)
        self._spawn(self._produce(transport))

    async def _produce(self, transport: LocalTransport) -> None:
        self.local_track = await self.device.acquire_track(self.source)
        producer = await transport.produce(self.local_track)
        self.producer_id = producer.id
        self.published.set()

    async def _on_sub_transport_created(self, params: Dict[str, Any]) -> None:
        transport = self.device.create_recv_transport(params)
        self.recv_transport = transport

        async def _attach_remote_and_resume() -> None:
            if self.remote_sink is not None and self.remote_track is not None:
                self.remote_sink.attach(self.remote_track)
            await self.send({"type": "resume"})

        self.bridge.attach(transport, RECV, on_connected=_attach_remote_and_resume)
        await self.send({"type": "consume", "rtpCapabilities": self.device.rtp_capabilities})

    async def _on_subscribed(self, data: Dict[str, Any]) -> None:
        if self.recv_transport is None:
            LOG.error("subscribed received without a receive transport")
            return
        consumer = await self.recv_transport.consume(
            id=data["id"],
            producer_id=data["producerId"],
            kind=data["kind"],
            rtp_parameters=data["rtpParameters"],
        )
        self.remote_track = consumer.track
        self.subscribed.set()

    async def close(self) -> None:
        self.bridge.close()
        for task in list(self._tasks):
            task.cancel()
        for transport in (self.send_transport, self.recv_transport):
            if transport is not None:
                transport.close()
        self.send_transport = None
        self.recv_transport = None
        await self.channel.close()


__all__ = ["MessageChannel", "SOURCES", "SignalingClient"]
