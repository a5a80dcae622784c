"""
Client-side transport bridge.

The local WebRTC stack raises ``connect`` and ``produce`` on a transport and
waits for the handler to finish.  The bridge turns each event into a signaling
request and parks a future, keyed by request type and transport id, until the
server's confirmation (or an ``error`` for the same request) arrives.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .local import LocalTransport

LOG = logging.getLogger(__name__)

SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]

SEND = "send"
RECV = "recv"

CONNECT_REQUESTS = {
    SEND: "connectProducerTransport",
    RECV: "connectConsumerTransport",
}

# server reply -> request it confirms
CONFIRMATIONS = {
    "producerConnected": "connectProducerTransport",
    "consumerConnected": "connectConsumerTransport",
    "produced": "produce",
}


class NegotiationError(RuntimeError):
    """Raised when the server rejects a bridged negotiation step."""


class BridgeTimeout(NegotiationError):
    """Raised when the server does not confirm a negotiation step in time."""


class TransportBridge:
    def __init__(self, send: SendCallable, *, timeout: float = 10.0) -> None:
        self._send = send
        self.timeout = max(0.001, float(timeout))
        self._pending: Dict[Tuple[str, str], asyncio.Future] = {}

    @property
    def pending(self) -> Tuple[Tuple[str, str], ...]:
        return tuple(self._pending)

    # ------------------------------------------------------------------ wiring

    def attach(
        self,
        transport: LocalTransport,
        direction: str,
        *,
        on_connected: Optional[Callable[[], Any]] = None,
        label: Optional[str] = None,
    ) -> None:
        """
        Register the negotiation handlers on a freshly created local transport.
        """

        if direction not in CONNECT_REQUESTS:
            raise ValueError(f"unknown transport direction {direction!r}")
        name = label or ("Producer" if direction == SEND else "Consumer")

        async def _on_connect(dtls_parameters: Dict[str, Any]) -> None:
            LOG.debug("%s transport connect event called", name)
            await self.connect(transport.id, direction, dtls_parameters)

        async def _on_produce(kind: str, rtp_parameters: Dict[str, Any]) -> str:
            LOG.debug("%s transport produce event called", name)
            return await self.produce(transport.id, kind, rtp_parameters)

        async def _on_state(state: str) -> None:
            if state == "connecting":
                LOG.info("%s transport connecting", name)
            elif state == "connected":
                LOG.info("%s transport connected", name)
                if on_connected is not None:
                    result = on_connected()
                    if inspect.isawaitable(result):
                        await result
            elif state == "disconnected":
                LOG.info("%s transport disconnected", name)
            elif state == "failed":
                transport.close()
                LOG.error("%s transport failed", name)

        transport.on("connect", _on_connect)
        if direction == SEND:
            transport.on("produce", _on_produce)
        transport.on("connectionstatechange", _on_state)

    # ------------------------------------------------------------------ negotiation

    async def connect(self, transport_id: str, direction: str, dtls_parameters: Dict[str, Any]) -> None:
        request_type = CONNECT_REQUESTS[direction]
        message: Dict[str, Any] = {"type": request_type, "dtlsParameters": dtls_parameters}
        if direction == RECV:
            message["transportId"] = transport_id
        await self._request(request_type, transport_id, message)

    async def produce(self, transport_id: str, kind: str, rtp_parameters: Dict[str, Any]) -> str:
        data = await self._request(
            "produce",
            transport_id,
            {
                "type": "produce",
                "transportId": transport_id,
                "kind": kind,
                "rtpParameters": rtp_parameters,
            },
        )
        if not isinstance(data, dict) or not data.get("id"):
            raise NegotiationError(f"produced reply carries no producer id: {data!r}")
        return str(data["id"])

    async def _request(self, request_type: str, transport_id: str, message: Dict[str, Any]) -> Any:
        key = (request_type, transport_id)
        if key in self._pending:
            raise NegotiationError(f"{request_type} already pending for transport {transport_id}")

        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise BridgeTimeout(
                f"no reply to {request_type} for transport {transport_id} within {self.timeout:g}s"
            ) from exc
        finally:
            self._pending.pop(key, None)

    def _first_pending(self, request_type: Optional[str]) -> Optional[asyncio.Future]:
        for (pending_type, _), future in self._pending.items():
            if pending_type == request_type and not future.done():
                return future
        return None

    # ------------------------------------------------------------------ server replies

    def handle_message(self, message: Dict[str, Any]) -> bool:
        """
        Resolve or reject a pending negotiation.  Returns ``True`` when the
        message was a negotiation reply.
        """

        message_type = message.get("type")
        if message_type in CONFIRMATIONS:
            future = self._first_pending(CONFIRMATIONS[message_type])
            if future is None:
                LOG.error("Shouldn't have received %s from server", message_type)
            else:
                future.set_result(message.get("data"))
            return True

        if message_type == "error":
            future = self._first_pending(message.get("request"))
            if future is None:
                return False
            future.set_exception(NegotiationError(str(message.get("data"))))
            return True

        return False

    def close(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()


__all__ = [
    "BridgeTimeout",
    "CONFIRMATIONS",
    "NegotiationError",
    "RECV",
    "SEND",
    "TransportBridge",
]
