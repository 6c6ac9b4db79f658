import time
from unittest.mock import MagicMock, patch

import grpc
import pytest
import requests
from kafka.errors import KafkaTimeoutError, NoBrokersAvailable

from loadsim.clients import (
    ClientFactory,
    GrpcConnection,
    HttpClient,
    KafkaConnection,
    Protocol,
    Security,
    StatusClass,
    TargetConfig,
    connect,
    create_producer,
    open_connection,
)
from loadsim.errors import TransportConnectionError
from loadsim.schemas import ChallengesResponse

from .conftest import FakeConnection

CHALLENGES_BODY = b'{"challenges": [{"challengeId": "c1", "goals": [{"goalId": "g1", "status": "completed"}]}]}'


def _response(status, content=b"", text=""):
    response = MagicMock(spec=requests.Response)
    response.status_code = status
    response.content = content
    response.text = text or content.decode("utf-8")
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def recorded():
    return []


@pytest.fixture
def http(session, recorded):
    return HttpClient(
        "http://svc/challenge/",
        timeout=5.0,
        default_headers={"X-Namespace": "test"},
        recorder=recorded.append,
        session=session,
    )


def test_http_success_decodes_through_schema(http, session, recorded):
    session.request.return_value = _response(200, CHALLENGES_BODY)

    result = http.get("/v1/challenges", tag="challenges", headers={"Authorization": "Bearer t"}, schema=ChallengesResponse)

    assert result.ok
    assert result.status == 200
    assert result.response_payload.completed_goals() == [("c1", "g1")]
    assert recorded == [result]
    session.request.assert_called_once_with(
        "GET",
        "http://svc/challenge/v1/challenges",
        headers={"X-Namespace": "test", "Authorization": "Bearer t"},
        params=None,
        timeout=5.0,
    )


def test_http_json_body_is_sent_as_json(http, session):
    session.request.return_value = _response(200, b"{}")

    http.post("/v1/challenges/initialize", {"a": 1}, tag="initialize")

    assert session.request.call_args.kwargs["json"] == {"a": 1}


def test_http_body_not_matching_schema_is_a_decode_failure(http, session):
    session.request.return_value = _response(200, b'{"challenges": "nope"}')

    result = http.get("/v1/challenges", tag="challenges", schema=ChallengesResponse)

    assert result.status_class is StatusClass.FAILURE
    assert result.error == "decode"


def test_http_unexpected_status_is_a_failure(http, session):
    session.request.return_value = _response(500, text="internal error")

    result = http.get("/v1/challenges", tag="challenges")

    assert result.failed
    assert result.error == "status"
    assert result.status == 500
    assert result.detail == "internal error"


def test_http_tolerated_status_is_an_expected_failure(http, session):
    session.request.return_value = _response(409, text="already claimed")

    result = http.post("/v1/challenges/c1/goals/g1/claim", tag="claim", tolerated_statuses=(400, 409))

    assert result.status_class is StatusClass.EXPECTED_FAILURE
    assert not result.failed
    assert not result.ok


@pytest.mark.parametrize(
    "exc, kind",
    [
        (requests.exceptions.Timeout("read timed out"), "timeout"),
        (requests.exceptions.ConnectionError("refused"), "connection"),
        (requests.exceptions.InvalidURL("bad"), "failure"),
    ],
)
def test_http_transport_errors_become_failed_results(http, session, recorded, exc, kind):
    session.request.side_effect = exc

    result = http.get("/v1/challenges", tag="challenges", tags={"phase": "init"})

    assert result.failed
    assert result.error == kind
    assert result.timed_out is (kind == "timeout")
    assert result.tags == {"phase": "init"}
    assert recorded == [result]


def test_http_close_closes_session(http, session):
    http.close()
    session.close.assert_called_once_with()


class FakeRpcError(grpc.RpcError):
    def __init__(self, code, details="boom"):
        super().__init__(details)
        self._code = code
        self._details = details

    def code(self):
        return self._code

    def details(self):
        return self._details


@pytest.fixture
def grpc_channel():
    channel = MagicMock(name="Channel")
    method = MagicMock(name="unary", return_value=b'{"processed": true}')
    channel.unary_unary.return_value = method
    with patch("loadsim.clients.grpc.insecure_channel", return_value=channel) as insecure, patch(
        "loadsim.clients.grpc.channel_ready_future"
    ) as ready:
        yield channel, method, insecure, ready


def test_grpc_connects_lazily_and_once(grpc_channel, recorded):
    channel, method, insecure, _ = grpc_channel
    connection = GrpcConnection("events:6566", recorder=recorded.append, timeout=2.0)

    assert not connection.is_open
    first = connection.invoke("pkg.Service/OnMessage", {"id": "1"}, tag="login_event")
    connection.invoke("pkg.Service/OnMessage", {"id": "2"}, tag="login_event")

    assert connection.connect() is connection
    assert connection.connect_attempts == 1
    insecure.assert_called_once_with("events:6566")
    channel.unary_unary.assert_called_once()
    assert channel.unary_unary.call_args.args == ("/pkg.Service/OnMessage",)
    method.assert_called_with({"id": "2"}, timeout=2.0)
    assert first.ok
    assert first.status == "OK"
    assert first.response_payload == {"processed": True}
    assert first.protocol is Protocol.GRPC
    assert len(recorded) == 2


class SlowHandshake(FakeConnection):
    def _connect(self):
        super()._connect()
        time.sleep(0.3)


def test_handshake_time_is_not_call_latency():
    connection = SlowHandshake()

    first = connection.invoke("svc/Login", {})
    second = connection.invoke("svc/Login", {})

    assert connection.handshakes == 1
    assert first.ok and second.ok
    assert first.latency_ms < 150
    assert second.latency_ms < 150


def test_connect_returns_an_open_handle(grpc_channel):
    _, _, insecure, _ = grpc_channel

    connection = connect("events:6566", Security.PLAINTEXT, timeout=2.0)

    assert isinstance(connection, GrpcConnection)
    assert connection.is_open
    assert connection.connect_attempts == 1
    insecure.assert_called_once_with("events:6566")
    connection.close()


def test_grpc_deadline_exceeded_is_a_timeout(grpc_channel):
    _, method, _, _ = grpc_channel
    method.side_effect = FakeRpcError(grpc.StatusCode.DEADLINE_EXCEEDED)
    connection = GrpcConnection("events:6566")

    result = connection.invoke("pkg.Service/OnMessage", {})

    assert result.timed_out
    assert result.status == "DEADLINE_EXCEEDED"
    assert connection.is_open


def test_grpc_unavailable_drops_the_channel_and_reconnects(grpc_channel):
    channel, method, _, _ = grpc_channel
    method.side_effect = [FakeRpcError(grpc.StatusCode.UNAVAILABLE), b"{}"]
    connection = GrpcConnection("events:6566")

    failed = connection.invoke("pkg.Service/OnMessage", {})
    assert failed.error == "connection"
    assert not connection.is_open
    channel.close.assert_called_once_with()

    recovered = connection.invoke("pkg.Service/OnMessage", {})
    assert recovered.ok
    assert connection.connect_attempts == 2


def test_grpc_other_status_is_a_plain_failure(grpc_channel):
    _, method, _, _ = grpc_channel
    method.side_effect = FakeRpcError(grpc.StatusCode.INVALID_ARGUMENT, "bad user")

    result = GrpcConnection("events:6566").invoke("pkg.Service/OnMessage", {})

    assert result.error == "failure"
    assert result.status == "INVALID_ARGUMENT"
    assert "bad user" in result.detail


def test_grpc_channel_not_ready_is_a_connection_failure(grpc_channel):
    channel, _, _, ready = grpc_channel
    ready.return_value.result.side_effect = grpc.FutureTimeoutError()
    connection = GrpcConnection("events:6566", connect_timeout=0.1)

    result = connection.invoke("pkg.Service/OnMessage", {})

    assert result.error == "connection"
    assert not connection.is_open
    channel.close.assert_called_once_with()


def test_grpc_secure_channel():
    with patch("loadsim.clients.grpc.secure_channel") as secure, patch(
        "loadsim.clients.grpc.ssl_channel_credentials"
    ) as credentials, patch("loadsim.clients.grpc.channel_ready_future"):
        GrpcConnection("events:443", Security.SECURE).connect()
    secure.assert_called_once_with("events:443", credentials.return_value)


def test_close_is_idempotent(grpc_channel):
    channel, _, _, _ = grpc_channel
    connection = GrpcConnection("events:6566").connect()
    connection.close()
    connection.close()
    channel.close.assert_called_once_with()


@pytest.fixture
def producer():
    instance = MagicMock(name="KafkaProducer")
    metadata = MagicMock(topic="pkg.Service", partition=3, offset=42)
    instance.send.return_value.get.return_value = metadata
    with patch("loadsim.clients.KafkaProducer", return_value=instance) as factory:
        yield instance, factory


def test_kafka_publishes_to_topic_from_service_method(producer):
    instance, factory = producer
    connection = KafkaConnection("broker:9092")

    result = connection.invoke("pkg.Service/OnMessage", {"id": "evt-1", "userId": "u1"}, tag="stat_event")

    assert result.ok
    assert result.protocol is Protocol.KAFKA
    assert result.response_payload == {"topic": "pkg.Service", "partition": 3, "offset": 42}
    instance.send.assert_called_once_with("pkg.Service", key="evt-1", value={"id": "evt-1", "userId": "u1"})
    assert factory.call_args.kwargs["security_protocol"] == "PLAINTEXT"


def test_kafka_explicit_topic_mapping():
    connection = KafkaConnection("broker:9092", topics={"pkg.Service/OnMessage": "login-events"})
    assert connection.topic_for("pkg.Service/OnMessage") == "login-events"
    assert connection.topic_for("/other.Service/OnMessage") == "other.Service"


def test_kafka_missing_ack_is_a_timeout(producer):
    instance, _ = producer
    instance.send.return_value.get.side_effect = KafkaTimeoutError("no ack")

    result = KafkaConnection("broker:9092").invoke("pkg.Service/OnMessage", {})

    assert result.timed_out
    assert result.status == "TIMEOUT"


def test_kafka_close_flushes_then_closes(producer):
    instance, _ = producer
    connection = KafkaConnection("broker:9092").connect()
    connection.close()
    instance.flush.assert_called_once_with()
    instance.close.assert_called_once_with()


def test_create_producer_gives_up_after_deadline():
    with patch("loadsim.clients.KafkaProducer", side_effect=NoBrokersAvailable()):
        with pytest.raises(TransportConnectionError):
            create_producer("broker:9092", deadline_s=0)


def test_open_connection_rejects_http():
    with pytest.raises(ValueError):
        open_connection(Protocol.HTTP, "svc:80")


def test_factory_builds_unopened_handles():
    factory = ClientFactory(
        TargetConfig(
            base_url="http://svc/challenge",
            rpc_address="broker:9092",
            rpc_transport=Protocol.KAFKA,
            rpc_timeout=3.0,
            default_headers={"X-Namespace": "test"},
        )
    )

    connection = factory.rpc("stat", recorder=lambda result: None)
    http = factory.http(recorder=lambda result: None)

    assert isinstance(connection, KafkaConnection)
    assert not connection.is_open
    assert connection.timeout == 3.0
    assert isinstance(http, HttpClient)
    http.close()
