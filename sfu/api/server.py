"""
FastAPI signaling surface for the SFU.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from ..config import ServerConfig
from ..media.engine import (
    AdapterError,
    AdapterTimeout,
    MediaEngine,
    TransportDirection,
    TransportHandle,
)
from ..media.loopback import LoopbackMediaEngine
from ..session import CapabilityError, PreconditionError, ProtocolError, Session, SignalingError
from . import schemas
from .state import SignalingState

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class OutboundMessage:
    payload: Dict[str, Any]
    allow_drop: bool = False


class SignalingConnection:
    """Own one WebSocket, its session and its send/receive loops."""

    def __init__(self, manager: "SignalingManager", websocket: WebSocket, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.session = Session()
        self.send_queue: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=queue_size)
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        # Register before accepting so a client that sees the handshake
        # complete is already reachable by broadcasts.
        await self.manager.register(self)
        try:
            await self.websocket.accept()
        except Exception:
            self.logger.exception("Failed to accept WebSocket connection")
            await self.manager.finalise(self)
            return

        self.logger.info("Signaling client connected")
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Signaling connection crashed")
        finally:
            await self.manager.finalise(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any], *, allow_drop: bool = False) -> None:
        if self.is_stopped:
            return

        message = OutboundMessage(payload=dict(payload), allow_drop=allow_drop)
        if allow_drop:
            try:
                self.send_queue.put_nowait(message)
            except asyncio.QueueFull:
                self.logger.debug("Dropping %s message due to backpressure", payload.get("type"))
            return

        await self.send_queue.put(message)

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    frame = await self.websocket.receive()
                except asyncio.CancelledError:
                    raise
                except (WebSocketDisconnect, RuntimeError):
                    break
                except Exception:
                    self.logger.exception("Failed to receive message")
                    break

                if frame.get("type") == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes")
                if raw is None:
                    continue

                # Handled to completion before the next frame is read so
                # replies leave in request order.
                try:
                    await self.manager.handle_message(self, raw)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    self.logger.exception("Unhandled error while processing message")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(outbound.payload)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message or "not connected" in message.lower():
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()


class SignalingManager:
    """
    Drive the publish/subscribe handshake for every connection.

    ``handle_message`` is the single entry point: it validates a frame against
    the connection's session stage, calls the media engine (bounded by
    ``adapter_timeout``) and answers with exactly one reply, broadcast or
    ``error``.
    """

    def __init__(
        self,
        engine: MediaEngine,
        state: Optional[SignalingState] = None,
        *,
        adapter_timeout: float = 10.0,
        queue_size: int = 256,
        max_incoming_bitrate: Optional[int] = None,
    ) -> None:
        self.engine = engine
        self.state = state or SignalingState()
        self.adapter_timeout = max(0.001, float(adapter_timeout))
        self.queue_size = max(1, int(queue_size))
        self.max_incoming_bitrate = max_incoming_bitrate

        self._connections: Dict[str, SignalingConnection] = {}
        self._lock = asyncio.Lock()
        self._handlers: Dict[str, Callable[[SignalingConnection, Any], Awaitable[None]]] = {
            "getRouterRtpCapabilities": self._on_get_router_capabilities,
            "createProducerTransport": self._on_create_producer_transport,
            "connectProducerTransport": self._on_connect_producer_transport,
            "produce": self._on_produce,
            "createConsumerTransport": self._on_create_consumer_transport,
            "connectConsumerTransport": self._on_connect_consumer_transport,
            "consume": self._on_consume,
            "resume": self._on_resume,
        }

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        try:
            await self._call(self.engine.start(), "start")
            await self.router_capabilities()
        except AdapterError:
            LOG.exception("Failed to start media engine; capabilities will be fetched on demand.")

    async def stop(self) -> None:
        async with self._lock:
            connections = list(self._connections.values())
        for connection in connections:
            await connection.close(code=1001, reason="server shutdown")
        try:
            await self._call(self.engine.close(), "close")
        except AdapterError:
            LOG.exception("Failed to close media engine cleanly.")

    async def run(self, websocket: WebSocket) -> None:
        connection = SignalingConnection(self, websocket, queue_size=self.queue_size)
        await connection.run()

    async def register(self, connection: SignalingConnection) -> None:
        async with self._lock:
            self._connections[connection.session_id] = connection
            self.state.add_session(connection.session)

    async def finalise(self, connection: SignalingConnection) -> None:
        async with self._lock:
            if self._connections.pop(connection.session_id, None) is None:
                return
            self.state.remove_session(connection.session)
            transports = connection.session.release()
        await self._close_transports(connection, transports)
        connection.logger.info("Signaling client disconnected")

    async def _close_transports(self, connection: SignalingConnection, transports: List[TransportHandle]) -> None:
        for transport in transports:
            try:
                await self._call(self.engine.close_transport(transport), "closeTransport")
            except AdapterError as exc:
                connection.logger.warning("Failed to close transport %s: %s", transport.id, exc)

    # ------------------------------------------------------------------ fan-out

    async def broadcast(
        self,
        message: Dict[str, Any],
        *,
        exclude: Optional[SignalingConnection] = None,
    ) -> None:
        async with self._lock:
            targets = list(self._connections.values())

        if exclude is not None:
            targets = [connection for connection in targets if connection is not exclude]

        if not targets:
            return

        await asyncio.gather(
            *[target.send(dict(message), allow_drop=True) for target in targets],
            return_exceptions=True,
        )

    # ------------------------------------------------------------------ dispatch

    async def handle_message(self, connection: SignalingConnection, raw: Any) -> None:
        try:
            message = schemas.decode_frame(raw)
        except ProtocolError as exc:
            connection.logger.warning("Dropping malformed message: %s", exc)
            return

        message_type = message["type"]
        handler = self._handlers.get(message_type)
        if handler is None:
            connection.logger.debug("Ignoring unknown message type %s", message_type)
            return

        try:
            request = schemas.REQUEST_MODELS[message_type].model_validate(message)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
            )
            connection.logger.warning("Rejecting invalid %s: %s", message_type, details)
            await self._send_error(connection, message_type, f"invalid {message_type}: {details}")
            return

        try:
            await handler(connection, request)
        except asyncio.CancelledError:
            raise
        except SignalingError as exc:
            connection.logger.info("%s rejected: %s", message_type, exc)
            await self._send_error(connection, message_type, str(exc))
        except AdapterError as exc:
            connection.logger.warning("%s failed in media engine: %s", message_type, exc, exc_info=True)
            await self._send_error(connection, message_type, str(exc))
        except Exception as exc:
            connection.logger.exception("Unhandled error while processing %s", message_type)
            await self._send_error(connection, message_type, str(exc) or exc.__class__.__name__)

    async def _send_error(self, connection: SignalingConnection, request_type: str, description: str) -> None:
        await connection.send(schemas.outbound("error", description, request=request_type))

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.adapter_timeout)
        except asyncio.TimeoutError as exc:
            raise AdapterTimeout(f"{operation} timed out after {self.adapter_timeout:g}s") from exc

    @staticmethod
    def _check_transport_id(transport: Optional[TransportHandle], transport_id: Optional[str]) -> None:
        if transport is not None and transport_id is not None and transport.id != transport_id:
            raise PreconditionError(f"unknown transport {transport_id}")

    async def router_capabilities(self) -> Dict[str, Any]:
        if self.state.router_capabilities is None:
            self.state.router_capabilities = await self._call(
                self.engine.get_router_capabilities(), "getRouterCapabilities"
            )
        return self.state.router_capabilities

    async def _create_transport(
        self, connection: SignalingConnection, direction: TransportDirection, force_tcp: bool
    ) -> TransportHandle:
        transport = await self._call(
            self.engine.create_transport(direction, force_tcp=force_tcp), "createTransport"
        )
        if self.max_incoming_bitrate:
            try:
                await self._call(
                    self.engine.set_max_incoming_bitrate(transport, self.max_incoming_bitrate),
                    "setMaxIncomingBitrate",
                )
            except AdapterError as exc:
                connection.logger.warning("Failed to cap incoming bitrate on %s: %s", transport.id, exc)
        return transport

    # ------------------------------------------------------------------ publish side

    async def _on_get_router_capabilities(
        self, connection: SignalingConnection, request: schemas.RouterCapabilitiesRequest
    ) -> None:
        capabilities = await self.router_capabilities()
        connection.session.advance_publish("getRouterRtpCapabilities")
        await connection.send(schemas.outbound("routerCapabilities", capabilities))

    async def _on_create_producer_transport(
        self, connection: SignalingConnection, request: schemas.CreateTransportRequest
    ) -> None:
        session = connection.session
        session.require_publish("createProducerTransport")
        transport = await self._create_transport(connection, TransportDirection.SEND, request.force_tcp)

        previous = session.replace_producer_transport(transport)
        self.state.forget_producers(session)
        session.advance_publish("createProducerTransport")
        await connection.send(schemas.outbound("producerTransportCreated", transport.params()))
        if previous is not None:
            connection.logger.info("Replacing producer transport %s", previous.id)
            await self._close_transports(connection, [previous])

    async def _on_connect_producer_transport(
        self, connection: SignalingConnection, request: schemas.ConnectTransportRequest
    ) -> None:
        session = connection.session
        session.require_publish("connectProducerTransport")
        self._check_transport_id(session.producer_transport, request.transport_id)
        await self._call(
            self.engine.connect_transport(session.producer_transport, request.dtls_parameters),
            "connectTransport",
        )
        session.advance_publish("connectProducerTransport")
        await connection.send(schemas.outbound("producerConnected", "producer is connected"))

    async def _on_produce(self, connection: SignalingConnection, request: schemas.ProduceRequest) -> None:
        session = connection.session
        session.require_publish("produce")
        self._check_transport_id(session.producer_transport, request.transport_id)
        producer = await self._call(
            self.engine.produce(session.producer_transport, request.kind, request.rtp_parameters),
            "produce",
        )

        previous = session.set_producer(producer)
        if previous is not None:
            # The earlier producer stays open; only the reference moves.
            connection.logger.warning(
                "produce repeated: producer %s replaces %s without closing it", producer.id, previous.id
            )
        self.state.register_producer(session, producer)
        session.advance_publish("produce")
        await connection.send(schemas.outbound("produced", {"id": producer.id}))
        await self.broadcast(schemas.outbound("newProducer", {"id": producer.id, "kind": producer.kind}))

    # ------------------------------------------------------------------ subscribe side

    async def _on_create_consumer_transport(
        self, connection: SignalingConnection, request: schemas.CreateTransportRequest
    ) -> None:
        session = connection.session
        session.require_subscribe("createConsumerTransport")
        transport = await self._create_transport(connection, TransportDirection.RECV, request.force_tcp)

        previous = session.replace_consumer_transport(transport)
        session.advance_subscribe("createConsumerTransport")
        await connection.send(schemas.outbound("subTransportCreated", transport.params()))
        if previous is not None:
            connection.logger.info("Replacing consumer transport %s", previous.id)
            await self._close_transports(connection, [previous])

    async def _on_connect_consumer_transport(
        self, connection: SignalingConnection, request: schemas.ConnectTransportRequest
    ) -> None:
        session = connection.session
        session.require_subscribe("connectConsumerTransport")
        self._check_transport_id(session.consumer_transport, request.transport_id)
        await self._call(
            self.engine.connect_transport(session.consumer_transport, request.dtls_parameters),
            "connectTransport",
        )
        session.advance_subscribe("connectConsumerTransport")
        await connection.send(schemas.outbound("consumerConnected", "consumer transport is connected"))

    async def _on_consume(self, connection: SignalingConnection, request: schemas.ConsumeRequest) -> None:
        session = connection.session
        session.require_subscribe("consume")
        producer = self.state.resolve_producer(request.producer_id)
        if producer is None:
            if request.producer_id is not None:
                raise PreconditionError(f"producer {request.producer_id} not found")
            raise PreconditionError("no producer available")

        if not self.engine.can_consume(producer.id, request.rtp_capabilities):
            connection.logger.warning("cannot consume producer %s", producer.id)
            raise CapabilityError("cannot consume")

        consumer = await self._call(
            self.engine.consume(
                session.consumer_transport,
                producer.id,
                request.rtp_capabilities,
                paused=producer.kind == "video",
            ),
            "consume",
        )
        previous = session.consumer
        if previous is not None and not previous.closed:
            # The earlier consumer stays open until its transport closes.
            connection.logger.warning(
                "consume repeated: consumer %s replaces %s without closing it", consumer.id, previous.id
            )
        session.consumer = consumer
        session.advance_subscribe("consume")
        await connection.send(schemas.outbound("subscribed", consumer.describe()))

    async def _on_resume(self, connection: SignalingConnection, request: schemas.ResumeRequest) -> None:
        session = connection.session
        session.require_subscribe("resume")
        await self._call(self.engine.resume(session.consumer), "resume")
        session.advance_subscribe("resume")
        await connection.send(schemas.outbound("resumed", "resumed"))


def create_app(
    *,
    config: Optional[ServerConfig] = None,
    engine: Optional[MediaEngine] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    server_config = config or ServerConfig()
    media_engine = engine or LoopbackMediaEngine(server_config.media)

    manager = SignalingManager(
        media_engine,
        adapter_timeout=server_config.adapter_timeout,
        queue_size=server_config.queue_size,
        max_incoming_bitrate=server_config.media.web_rtc_transport.max_incoming_bitrate,
    )

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        await manager.start()
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await manager.stop()

    app = FastAPI(title="SFU Signaling API", lifespan=app_lifespan)
    app.state.signaling = manager
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket(server_config.ws_path)
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await manager.run(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "connections": manager.connection_count}

    @app.get("/api/state")
    async def get_state() -> dict:
        return manager.state.snapshot()

    @app.get("/api/router-capabilities")
    async def get_router_capabilities() -> dict:
        try:
            return await manager.router_capabilities()
        except AdapterError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    return app


__all__ = ["OutboundMessage", "SignalingConnection", "SignalingManager", "create_app"]
