"""Tests for the per-connection stage machine."""

import pytest

from sfu.media.engine import ConsumerHandle, ProducerHandle, TransportDirection, TransportHandle, TransportState
from sfu.session import PreconditionError, PublishStage, Session, SubscribeStage


def _transport(transport_id: str, direction: TransportDirection) -> TransportHandle:
    return TransportHandle(
        id=transport_id,
        direction=direction,
        ice_parameters={},
        ice_candidates=[],
        dtls_parameters={"role": "auto", "fingerprints": []},
    )


def _producer(producer_id: str) -> ProducerHandle:
    return ProducerHandle(id=producer_id, kind="video", rtp_parameters={}, transport_id="t1")


def test_publish_happy_path() -> None:
    session = Session()
    assert session.publish_stage == PublishStage.IDLE

    session.advance_publish("getRouterRtpCapabilities")
    assert session.publish_stage == PublishStage.CAPABILITIES_LOADED

    session.require_publish("createProducerTransport")
    session.replace_producer_transport(_transport("t1", TransportDirection.SEND))
    session.advance_publish("createProducerTransport")

    session.require_publish("connectProducerTransport")
    session.producer_transport.state = TransportState.CONNECTED
    session.advance_publish("connectProducerTransport")
    assert session.publish_stage == PublishStage.PRODUCER_CONNECTED

    session.require_publish("produce")
    session.set_producer(_producer("p1"))
    session.advance_publish("produce")
    assert session.publish_stage == PublishStage.PRODUCING


def test_connect_before_create_is_rejected() -> None:
    session = Session()
    with pytest.raises(PreconditionError):
        session.require_publish("connectProducerTransport")
    with pytest.raises(PreconditionError, match="does not exist"):
        session.require_subscribe("connectConsumerTransport")


def test_produce_requires_connected_transport() -> None:
    session = Session()
    session.replace_producer_transport(_transport("t1", TransportDirection.SEND))
    session.advance_publish("createProducerTransport")

    with pytest.raises(PreconditionError):
        session.require_publish("produce")


def test_second_connect_is_rejected() -> None:
    session = Session()
    session.replace_producer_transport(_transport("t1", TransportDirection.SEND))
    session.advance_publish("createProducerTransport")
    session.producer_transport.state = TransportState.CONNECTED
    session.advance_publish("connectProducerTransport")

    with pytest.raises(PreconditionError):
        session.require_publish("connectProducerTransport")


def test_capabilities_do_not_rewind_publish_stage() -> None:
    session = Session()
    session.replace_producer_transport(_transport("t1", TransportDirection.SEND))
    session.advance_publish("createProducerTransport")

    session.advance_publish("getRouterRtpCapabilities")

    assert session.publish_stage == PublishStage.PRODUCER_TRANSPORT_CREATED


def test_produce_twice_keeps_previous_producer_open() -> None:
    session = Session()
    first = _producer("p1")
    second = _producer("p2")

    assert session.set_producer(first) is None
    assert session.set_producer(second) is first

    assert session.producer is second
    assert not first.closed
    assert [producer.id for producer in session.owned_producers()] == ["p1", "p2"]


def test_consume_before_connect_then_connect() -> None:
    session = Session()
    session.replace_consumer_transport(_transport("t2", TransportDirection.RECV))
    session.advance_subscribe("createConsumerTransport")

    session.require_subscribe("consume")
    session.consumer = ConsumerHandle(
        id="c1", producer_id="p1", kind="video", rtp_parameters={}, transport_id="t2", paused=True
    )
    session.advance_subscribe("consume")
    assert session.subscribe_stage == SubscribeStage.CONSUMING

    with pytest.raises(PreconditionError, match="not connected"):
        session.require_subscribe("resume")

    session.require_subscribe("connectConsumerTransport")
    session.consumer_transport.state = TransportState.CONNECTED
    session.advance_subscribe("connectConsumerTransport")
    assert session.subscribe_stage == SubscribeStage.CONSUMING

    session.require_subscribe("resume")


def test_connect_then_consume() -> None:
    session = Session()
    session.replace_consumer_transport(_transport("t2", TransportDirection.RECV))
    session.advance_subscribe("createConsumerTransport")
    session.consumer_transport.state = TransportState.CONNECTED
    session.advance_subscribe("connectConsumerTransport")

    assert session.subscribe_stage == SubscribeStage.CONSUMER_CONNECTED
    session.require_subscribe("consume")


def test_resume_without_consumer() -> None:
    session = Session()
    with pytest.raises(PreconditionError, match="no consumer to resume"):
        session.require_subscribe("resume")


def test_replacing_transport_resets_handles() -> None:
    session = Session()
    first = _transport("t1", TransportDirection.SEND)
    session.replace_producer_transport(first)
    session.set_producer(_producer("p1"))

    previous = session.replace_producer_transport(_transport("t3", TransportDirection.SEND))

    assert previous is first
    assert session.producer is None
    assert session.owned_producers() == []


def test_release_returns_transports_and_resets_stages() -> None:
    session = Session()
    session.replace_producer_transport(_transport("t1", TransportDirection.SEND))
    session.advance_publish("createProducerTransport")
    session.replace_consumer_transport(_transport("t2", TransportDirection.RECV))
    session.advance_subscribe("createConsumerTransport")

    transports = session.release()

    assert [transport.id for transport in transports] == ["t1", "t2"]
    assert session.publish_stage == PublishStage.IDLE
    assert session.subscribe_stage == SubscribeStage.IDLE
    assert session.snapshot()["producerTransportId"] is None
