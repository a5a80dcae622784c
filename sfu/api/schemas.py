"""
Pydantic schemas mirroring the signaling WebSocket contract.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..media.engine import MEDIA_KINDS
from ..session import ProtocolError


class SignalingRequest(BaseModel):
    """Fields shared by every client request; unknown fields are tolerated."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RouterCapabilitiesRequest(SignalingRequest):
    pass


class CreateTransportRequest(SignalingRequest):
    force_tcp: bool = Field(default=False, alias="forceTcp")
    rtp_capabilities: Optional[Dict[str, Any]] = Field(default=None, alias="rtpCapabilities")


class ConnectTransportRequest(SignalingRequest):
    transport_id: Optional[str] = Field(default=None, alias="transportId")
    dtls_parameters: Dict[str, Any] = Field(alias="dtlsParameters")


class ProduceRequest(SignalingRequest):
    transport_id: Optional[str] = Field(default=None, alias="transportId")
    kind: str
    rtp_parameters: Dict[str, Any] = Field(alias="rtpParameters")

    @field_validator("kind")
    @classmethod
    def _check_kind(cls, value: str) -> str:
        if value not in MEDIA_KINDS:
            raise ValueError(f"kind must be one of {', '.join(MEDIA_KINDS)}")
        return value


class ConsumeRequest(SignalingRequest):
    rtp_capabilities: Dict[str, Any] = Field(alias="rtpCapabilities")
    producer_id: Optional[str] = Field(default=None, alias="producerId")


class ResumeRequest(SignalingRequest):
    pass


REQUEST_MODELS: Dict[str, Type[SignalingRequest]] = {
    "getRouterRtpCapabilities": RouterCapabilitiesRequest,
    "createProducerTransport": CreateTransportRequest,
    "connectProducerTransport": ConnectTransportRequest,
    "produce": ProduceRequest,
    "createConsumerTransport": CreateTransportRequest,
    "connectConsumerTransport": ConnectTransportRequest,
    "consume": ConsumeRequest,
    "resume": ResumeRequest,
}


def decode_frame(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Turn one WebSocket frame into a tagged message.

    Raises :class:`ProtocolError` for anything that is not a JSON object with a
    string ``type``.
    """

    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"invalid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolError("message is not an object")
    if not isinstance(message.get("type"), str):
        raise ProtocolError("message has no type tag")
    return message


def outbound(message_type: str, data: Any = None, **fields: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"type": message_type, "data": data}
    payload.update(fields)
    return payload


__all__ = [
    "ConnectTransportRequest",
    "ConsumeRequest",
    "CreateTransportRequest",
    "ProduceRequest",
    "REQUEST_MODELS",
    "ResumeRequest",
    "RouterCapabilitiesRequest",
    "SignalingRequest",
    "decode_frame",
    "outbound",
]
