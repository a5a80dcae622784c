"""
RTP capability negotiation helpers.

Codec matching follows the usual SFU rules: MIME type (case-insensitive),
clock rate and, for audio, channel count must agree.  Retransmission codecs
(``*/rtx``) ride along with the media codec they reference via ``apt``.
"""

from __future__ import annotations

import copy
import random
from typing import Any, Dict, Iterable, List, Optional, Set

from .engine import MEDIA_KINDS

DYNAMIC_PAYLOAD_TYPES = list(range(100, 128)) + list(range(96, 100))

VIDEO_RTCP_FEEDBACK = [
    {"type": "nack", "parameter": ""},
    {"type": "nack", "parameter": "pli"},
    {"type": "ccm", "parameter": "fir"},
    {"type": "goog-remb", "parameter": ""},
    {"type": "transport-cc", "parameter": ""},
]
AUDIO_RTCP_FEEDBACK = [{"type": "transport-cc", "parameter": ""}]

HEADER_EXTENSIONS = [
    ("audio", "urn:ietf:params:rtp-hdrext:sdes:mid", 1),
    ("video", "urn:ietf:params:rtp-hdrext:sdes:mid", 1),
    ("audio", "http://www.webrtc.org/experiments/rtp-hdrext/abs-send-time", 4),
    ("video", "http://www.webrtc.org/experiments/rtp-hdrext/abs-send-time", 4),
    ("video", "http://www.ietf.org/id/draft-holmer-rmcat-transport-wide-cc-extensions-01", 5),
    ("audio", "urn:ietf:params:rtp-hdrext:ssrc-audio-level", 10),
]


def is_rtx(codec: Dict[str, Any]) -> bool:
    return str(codec.get("mimeType", "")).lower().endswith("/rtx")


def codec_kind(codec: Dict[str, Any]) -> str:
    kind = codec.get("kind")
    if kind:
        return str(kind)
    return str(codec.get("mimeType", "")).split("/", 1)[0].lower()


def codecs_match(left: Dict[str, Any], right: Dict[str, Any]) -> bool:
    if str(left.get("mimeType", "")).lower() != str(right.get("mimeType", "")).lower():
        return False
    if left.get("clockRate") != right.get("clockRate"):
        return False
    if codec_kind(left) == "audio":
        if (left.get("channels") or 1) != (right.get("channels") or 1):
            return False
    return True


def _validate_media_codec(codec: Dict[str, Any]) -> None:
    kind = codec.get("kind")
    if kind not in MEDIA_KINDS:
        raise ValueError(f"invalid codec kind {kind!r}")
    mime_type = str(codec.get("mimeType") or "")
    if "/" not in mime_type or mime_type.split("/", 1)[0].lower() != kind:
        raise ValueError(f"invalid mimeType {mime_type!r} for kind {kind}")
    clock_rate = codec.get("clockRate")
    if not isinstance(clock_rate, int) or clock_rate <= 0:
        raise ValueError(f"invalid clockRate {clock_rate!r} for {mime_type}")


def build_router_capabilities(media_codecs: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Expand configured media codecs into router RTP capabilities.

    Every codec gets a dynamic ``preferredPayloadType`` and RTCP feedback;
    video codecs also get an RTX companion.
    """

    media_codecs = list(media_codecs)
    for item in media_codecs:
        _validate_media_codec(item)

    used: Set[int] = set()
    for item in media_codecs:
        preferred = item.get("preferredPayloadType")
        if preferred:
            if preferred in used:
                raise ValueError(f"duplicate preferredPayloadType {preferred}")
            used.add(preferred)
    free = (value for value in DYNAMIC_PAYLOAD_TYPES if value not in used)

    def next_payload_type() -> int:
        for value in free:
            used.add(value)
            return value
        raise ValueError("no dynamic payload types left")

    codecs: List[Dict[str, Any]] = []
    for item in media_codecs:
        codec = {
            "kind": item["kind"],
            "mimeType": item["mimeType"],
            "clockRate": item["clockRate"],
            "preferredPayloadType": item.get("preferredPayloadType") or next_payload_type(),
            "parameters": dict(item.get("parameters") or {}),
        }
        if item["kind"] == "audio":
            codec["channels"] = item.get("channels") or 1
            codec["rtcpFeedback"] = copy.deepcopy(AUDIO_RTCP_FEEDBACK)
            codecs.append(codec)
            continue

        codec["rtcpFeedback"] = copy.deepcopy(VIDEO_RTCP_FEEDBACK)
        codecs.append(codec)
        codecs.append(
            {
                "kind": "video",
                "mimeType": "video/rtx",
                "clockRate": item["clockRate"],
                "preferredPayloadType": next_payload_type(),
                "parameters": {"apt": codec["preferredPayloadType"]},
                "rtcpFeedback": [],
            }
        )

    header_extensions = [
        {"kind": kind, "uri": uri, "preferredId": preferred_id, "direction": "sendrecv"}
        for kind, uri, preferred_id in HEADER_EXTENSIONS
    ]
    return {"codecs": codecs, "headerExtensions": header_extensions}


def _capability_codecs(rtp_capabilities: Any) -> List[Dict[str, Any]]:
    if not isinstance(rtp_capabilities, dict):
        return []
    return _dict_entries(rtp_capabilities.get("codecs"))


def _dict_entries(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _media_codecs(rtp_parameters: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [codec for codec in _dict_entries(rtp_parameters.get("codecs")) if not is_rtx(codec)]


def validate_producer_parameters(
    router_capabilities: Dict[str, Any], kind: str, rtp_parameters: Any
) -> None:
    """Raise ``ValueError`` unless every media codec is supported by the router."""

    if kind not in MEDIA_KINDS:
        raise ValueError(f"invalid kind {kind!r}")
    if not isinstance(rtp_parameters, dict):
        raise ValueError("rtpParameters must be an object")
    media_codecs = _media_codecs(rtp_parameters)
    if not media_codecs:
        raise ValueError("rtpParameters has no media codecs")

    router_codecs = [
        codec for codec in _capability_codecs(router_capabilities) if codec_kind(codec) == kind
    ]
    for codec in media_codecs:
        if codec_kind(codec) != kind:
            raise ValueError(f"codec {codec.get('mimeType')} does not match kind {kind}")
        if not any(codecs_match(codec, candidate) for candidate in router_codecs):
            raise ValueError(f"unsupported codec {codec.get('mimeType')}/{codec.get('clockRate')}")


def find_matching_codec(
    codec: Dict[str, Any], rtp_capabilities: Any
) -> Optional[Dict[str, Any]]:
    for candidate in _capability_codecs(rtp_capabilities):
        if codecs_match(codec, candidate):
            return candidate
    return None


def can_consume(producer_rtp_parameters: Dict[str, Any], rtp_capabilities: Any) -> bool:
    """Whether an endpoint advertising ``rtp_capabilities`` can decode the producer."""

    return any(
        find_matching_codec(codec, rtp_capabilities) is not None
        for codec in _media_codecs(producer_rtp_parameters)
    )


def consumer_rtp_parameters(
    producer_rtp_parameters: Dict[str, Any], rtp_capabilities: Any
) -> Dict[str, Any]:
    """
    Derive the RTP parameters a consumer sends to an endpoint.

    Only codecs the endpoint supports survive; RTX entries survive when the
    codec they repair does.  A fresh SSRC is allocated for the outbound
    stream.
    """

    kept: List[Dict[str, Any]] = []
    kept_payload_types = set()
    for codec in _media_codecs(producer_rtp_parameters):
        if find_matching_codec(codec, rtp_capabilities) is None:
            continue
        kept.append(copy.deepcopy(codec))
        kept_payload_types.add(codec.get("payloadType"))

    if not kept:
        raise ValueError("no compatible codecs")

    for codec in _dict_entries(producer_rtp_parameters.get("codecs")):
        parameters = codec.get("parameters")
        if not is_rtx(codec) or not isinstance(parameters, dict):
            continue
        if parameters.get("apt") in kept_payload_types:
            kept.append(copy.deepcopy(codec))

    supported_uris = {
        extension.get("uri")
        for extension in _dict_entries(rtp_capabilities.get("headerExtensions"))
        if isinstance(extension.get("uri"), str)
    }
    header_extensions = [
        copy.deepcopy(extension)
        for extension in _dict_entries(producer_rtp_parameters.get("headerExtensions"))
        if isinstance(extension.get("uri"), str) and extension["uri"] in supported_uris
    ]

    rtcp = producer_rtp_parameters.get("rtcp")
    rtcp = dict(rtcp) if isinstance(rtcp, dict) else {}
    rtcp.setdefault("cname", "%08x" % random.getrandbits(32))
    rtcp["reducedSize"] = True

    return {
        "codecs": kept,
        "headerExtensions": header_extensions,
        "encodings": [{"ssrc": random.randint(100_000_000, 999_999_999)}],
        "rtcp": rtcp,
    }


__all__ = [
    "build_router_capabilities",
    "can_consume",
    "codecs_match",
    "consumer_rtp_parameters",
    "find_matching_codec",
    "is_rtx",
    "validate_producer_parameters",
]
