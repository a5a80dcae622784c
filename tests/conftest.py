from __future__ import annotations

import copy
import itertools
from typing import Any, Callable, Dict

import pytest

from sfu.media import capabilities
from sfu.config import RouterSettings

VP8_RTP_PARAMETERS: Dict[str, Any] = {
    "mid": "0",
    "codecs": [
        {
            "mimeType": "video/VP8",
            "payloadType": 96,
            "clockRate": 90000,
            "parameters": {},
            "rtcpFeedback": [{"type": "nack", "parameter": ""}],
        },
        {
            "mimeType": "video/rtx",
            "payloadType": 97,
            "clockRate": 90000,
            "parameters": {"apt": 96},
            "rtcpFeedback": [],
        },
    ],
    "headerExtensions": [
        {"uri": "urn:ietf:params:rtp-hdrext:sdes:mid", "id": 1},
        {"uri": "urn:example:unsupported-extension", "id": 9},
    ],
    "encodings": [{"ssrc": 11111111}],
    "rtcp": {"cname": "publisher", "reducedSize": True},
}

OPUS_RTP_PARAMETERS: Dict[str, Any] = {
    "mid": "1",
    "codecs": [
        {"mimeType": "audio/opus", "payloadType": 111, "clockRate": 48000, "channels": 2},
    ],
    "encodings": [{"ssrc": 22222222}],
}

H264_ONLY_CAPABILITIES: Dict[str, Any] = {
    "codecs": [{"kind": "video", "mimeType": "video/H264", "clockRate": 90000}],
    "headerExtensions": [],
}

CLIENT_DTLS: Dict[str, Any] = {
    "role": "client",
    "fingerprints": [{"algorithm": "sha-256", "value": "AB:CD:EF:01"}],
}


@pytest.fixture
def router_capabilities() -> Dict[str, Any]:
    return capabilities.build_router_capabilities(RouterSettings().media_codecs)


@pytest.fixture
def vp8_parameters() -> Dict[str, Any]:
    return copy.deepcopy(VP8_RTP_PARAMETERS)


@pytest.fixture
def opus_parameters() -> Dict[str, Any]:
    return copy.deepcopy(OPUS_RTP_PARAMETERS)


@pytest.fixture
def h264_capabilities() -> Dict[str, Any]:
    return copy.deepcopy(H264_ONLY_CAPABILITIES)


@pytest.fixture
def dtls_parameters() -> Dict[str, Any]:
    return copy.deepcopy(CLIENT_DTLS)


@pytest.fixture
def sequential_ids() -> Callable[[str], str]:
    """Deterministic handle ids: ``p1``, ``p2`` for producers, ``t1`` for transports..."""

    counters: Dict[str, Any] = {}

    def _next(prefix: str) -> str:
        counter = counters.setdefault(prefix, itertools.count(1))
        return f"{prefix[0]}{next(counter)}"

    return _next
