"""Tests for the in-process media engine."""

from __future__ import annotations

import asyncio

import pytest

from sfu.config import MediaSettings, WebRtcTransportSettings
from sfu.media import AdapterError, LoopbackMediaEngine, TransportDirection, TransportState


def test_transport_parameters(sequential_ids) -> None:
    engine = LoopbackMediaEngine(id_factory=sequential_ids)

    transport = asyncio.run(engine.create_transport(TransportDirection.SEND))
    params = transport.params()

    assert params["id"] == "t1"
    assert params["iceParameters"]["usernameFragment"]
    assert params["dtlsParameters"]["role"] == "auto"
    assert params["dtlsParameters"]["fingerprints"][0]["algorithm"] == "sha-256"
    protocols = [candidate["protocol"] for candidate in params["iceCandidates"]]
    assert protocols == ["udp", "tcp"]
    assert all(candidate["ip"] == "127.0.0.1" for candidate in params["iceCandidates"])


def test_force_tcp_drops_udp_candidates() -> None:
    engine = LoopbackMediaEngine()

    transport = asyncio.run(engine.create_transport(TransportDirection.RECV, force_tcp=True))

    assert [candidate["protocol"] for candidate in transport.ice_candidates] == ["tcp"]


def test_no_enabled_protocol_is_an_adapter_error() -> None:
    settings = MediaSettings(web_rtc_transport=WebRtcTransportSettings(enable_udp=True, enable_tcp=False))
    engine = LoopbackMediaEngine(settings)

    with pytest.raises(AdapterError):
        asyncio.run(engine.create_transport(TransportDirection.SEND, force_tcp=True))


def test_connect_negotiates_dtls_role(dtls_parameters) -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        transport = await engine.create_transport(TransportDirection.SEND)
        await engine.connect_transport(transport, dtls_parameters)
        return transport

    transport = asyncio.run(scenario())

    assert transport.state == TransportState.CONNECTED
    assert transport.dtls_parameters["role"] == "server"


@pytest.mark.parametrize(
    "dtls",
    [
        {"role": "client", "fingerprints": []},
        {"role": "sideways", "fingerprints": [{"algorithm": "sha-256", "value": "AA"}]},
        {"role": "client", "fingerprints": [{"algorithm": "md5", "value": "AA"}]},
        {"role": "client", "fingerprints": [{"algorithm": "sha-256"}]},
    ],
)
def test_connect_rejects_bad_dtls(dtls) -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        transport = await engine.create_transport(TransportDirection.SEND)
        await engine.connect_transport(transport, dtls)

    with pytest.raises(AdapterError):
        asyncio.run(scenario())


def test_connect_twice_fails(dtls_parameters) -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        transport = await engine.create_transport(TransportDirection.SEND)
        await engine.connect_transport(transport, dtls_parameters)
        await engine.connect_transport(transport, dtls_parameters)

    with pytest.raises(AdapterError, match="already connected"):
        asyncio.run(scenario())


def test_produce_and_consume(sequential_ids, vp8_parameters, router_capabilities) -> None:
    engine = LoopbackMediaEngine(id_factory=sequential_ids)

    async def scenario():
        send = await engine.create_transport(TransportDirection.SEND)
        recv = await engine.create_transport(TransportDirection.RECV)
        producer = await engine.produce(send, "video", vp8_parameters)
        consumer = await engine.consume(recv, producer.id, router_capabilities, paused=True)
        return producer, consumer

    producer, consumer = asyncio.run(scenario())

    assert producer.id == "p1"
    assert consumer.id == "c1"
    assert consumer.producer_id == "p1"
    assert consumer.kind == "video"
    assert consumer.paused is True
    assert consumer.describe()["producerPaused"] is True
    assert engine.can_consume("p1", router_capabilities)
    assert engine.stats() == {"transports": 2, "producers": 1, "consumers": 1}


def test_produce_rejects_unsupported_codec(vp8_parameters) -> None:
    engine = LoopbackMediaEngine()
    vp8_parameters["codecs"][0]["mimeType"] = "video/AV1"

    async def scenario():
        send = await engine.create_transport(TransportDirection.SEND)
        await engine.produce(send, "video", vp8_parameters)

    with pytest.raises(AdapterError, match="unsupported codec"):
        asyncio.run(scenario())


def test_produce_on_receive_transport_fails(vp8_parameters) -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        recv = await engine.create_transport(TransportDirection.RECV)
        await engine.produce(recv, "video", vp8_parameters)

    with pytest.raises(AdapterError):
        asyncio.run(scenario())


def test_can_consume_with_incompatible_capabilities(vp8_parameters, h264_capabilities) -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        send = await engine.create_transport(TransportDirection.SEND)
        return await engine.produce(send, "video", vp8_parameters)

    producer = asyncio.run(scenario())

    assert not engine.can_consume(producer.id, h264_capabilities)
    assert not engine.can_consume("missing", h264_capabilities)


def test_resume_unpauses_consumer(vp8_parameters, router_capabilities) -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        send = await engine.create_transport(TransportDirection.SEND)
        recv = await engine.create_transport(TransportDirection.RECV)
        producer = await engine.produce(send, "video", vp8_parameters)
        consumer = await engine.consume(recv, producer.id, router_capabilities, paused=True)
        await engine.resume(consumer)
        return consumer

    consumer = asyncio.run(scenario())

    assert consumer.paused is False


def test_closing_send_transport_cascades(vp8_parameters, router_capabilities) -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        send = await engine.create_transport(TransportDirection.SEND)
        recv = await engine.create_transport(TransportDirection.RECV)
        producer = await engine.produce(send, "video", vp8_parameters)
        consumer = await engine.consume(recv, producer.id, router_capabilities)
        await engine.close_transport(send)
        await engine.close_transport(send)
        return send, producer, consumer

    send, producer, consumer = asyncio.run(scenario())

    assert send.closed
    assert producer.closed
    assert consumer.closed
    assert engine.get_producer(producer.id) is None
    assert engine.stats() == {"transports": 1, "producers": 0, "consumers": 0}


def test_bitrate_cap_is_recorded() -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        transport = await engine.create_transport(TransportDirection.SEND)
        await engine.set_max_incoming_bitrate(transport, 1_500_000)
        return transport

    transport = asyncio.run(scenario())

    assert engine.bitrate_cap(transport.id) == 1_500_000


def test_transports_carry_initial_outgoing_bitrate() -> None:
    settings = MediaSettings(web_rtc_transport=WebRtcTransportSettings(initial_available_outgoing_bitrate=600_000))

    default_transport = asyncio.run(LoopbackMediaEngine().create_transport(TransportDirection.RECV))
    tuned_transport = asyncio.run(LoopbackMediaEngine(settings).create_transport(TransportDirection.SEND))

    assert default_transport.available_outgoing_bitrate == 1_000_000
    assert tuned_transport.available_outgoing_bitrate == 600_000


def test_produce_with_malformed_codec_entries_is_an_adapter_error() -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        send = await engine.create_transport(TransportDirection.SEND)
        await engine.produce(send, "video", {"codecs": ["video/VP8", 96]})

    with pytest.raises(AdapterError, match="no media codecs"):
        asyncio.run(scenario())
