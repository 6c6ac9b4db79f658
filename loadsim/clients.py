from __future__ import annotations

import enum
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Mapping

import grpc
import requests
from kafka import KafkaProducer
from kafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError, NoBrokersAvailable
from pydantic import BaseModel, ValidationError

from .errors import (
    CallError,
    CallFailure,
    CallTimeoutError,
    DecodeError,
    TransportConnectionError,
)

LOGGER = logging.getLogger("loadsim.clients")

DEFAULT_SUCCESS_STATUSES: frozenset[int] = frozenset(range(200, 400))


class Protocol(str, enum.Enum):
    HTTP = "http"
    GRPC = "grpc"
    KAFKA = "kafka"


class StatusClass(str, enum.Enum):
    SUCCESS = "success"
    EXPECTED_FAILURE = "expected_failure"
    FAILURE = "failure"


class Security(str, enum.Enum):
    PLAINTEXT = "plaintext"
    SECURE = "secure"


@dataclass(frozen=True)
class CallResult:
    """Outcome of one call against the target service."""

    operation_tag: str
    protocol: Protocol
    status_class: StatusClass
    latency_ms: float
    status: int | str | None = None
    response_payload: Any = None
    error: str | None = None
    detail: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_class is StatusClass.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status_class is StatusClass.FAILURE

    @property
    def timed_out(self) -> bool:
        return self.error == CallTimeoutError.kind


Recorder = Callable[[CallResult], None]


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


def _failure(
    tag: str,
    protocol: Protocol,
    started: float,
    exc: CallError,
    tags: Mapping[str, str] | None,
) -> CallResult:
    return CallResult(
        operation_tag=tag,
        protocol=protocol,
        status_class=StatusClass.FAILURE,
        latency_ms=_elapsed_ms(started),
        status=exc.status,
        error=exc.kind,
        detail=str(exc),
        tags=dict(tags or {}),
    )


class HttpClient:
    """Unary request/response client bound to one virtual user.

    The underlying ``requests.Session`` keeps connections alive between calls;
    callers only ever see ``CallResult`` values.
    """

    protocol = Protocol.HTTP

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        default_headers: Mapping[str, str] | None = None,
        recorder: Recorder | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._default_headers = dict(default_headers or {})
        self._recorder = recorder
        self._session = session or requests.Session()

    def call(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        *,
        tag: str,
        tags: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        schema: type[BaseModel] | None = None,
        expected_statuses: Collection[int] | None = None,
        tolerated_statuses: Collection[int] = (),
    ) -> CallResult:
        kwargs: dict[str, Any] = {
            "headers": {**self._default_headers, **(headers or {})},
            "params": params,
            "timeout": self._timeout,
        }
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["data"] = body

        started = time.perf_counter()
        try:
            response = self._session.request(method.upper(), self._url(path), **kwargs)
        except requests.exceptions.Timeout as exc:
            return self._finish(_failure(tag, self.protocol, started, CallTimeoutError(str(exc)), tags))
        except requests.exceptions.ConnectionError as exc:
            return self._finish(
                _failure(tag, self.protocol, started, TransportConnectionError(str(exc)), tags)
            )
        except requests.exceptions.RequestException as exc:
            return self._finish(_failure(tag, self.protocol, started, CallFailure(str(exc)), tags))
        latency_ms = _elapsed_ms(started)

        status = response.status_code
        successes = expected_statuses if expected_statuses is not None else DEFAULT_SUCCESS_STATUSES
        error: str | None = None
        detail: str | None = None
        payload: Any = None
        if status in successes:
            status_class = StatusClass.SUCCESS
            try:
                payload = _decode_body(response, schema)
            except DecodeError as exc:
                status_class = StatusClass.FAILURE
                error = exc.kind
                detail = str(exc)
        elif status in tolerated_statuses:
            status_class = StatusClass.EXPECTED_FAILURE
            payload = response.text
        else:
            status_class = StatusClass.FAILURE
            error = "status"
            detail = response.text[:200]

        return self._finish(
            CallResult(
                operation_tag=tag,
                protocol=self.protocol,
                status_class=status_class,
                latency_ms=latency_ms,
                status=status,
                response_payload=payload,
                error=error,
                detail=detail,
                tags=dict(tags or {}),
            )
        )

    def get(self, path: str, **kwargs: Any) -> CallResult:
        return self.call("GET", path, **kwargs)

    def post(self, path: str, body: Any = None, **kwargs: Any) -> CallResult:
        return self.call("POST", path, body=body, **kwargs)

    def put(self, path: str, body: Any = None, **kwargs: Any) -> CallResult:
        return self.call("PUT", path, body=body, **kwargs)

    def close(self) -> None:
        self._session.close()

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    def _finish(self, result: CallResult) -> CallResult:
        if self._recorder is not None:
            self._recorder(result)
        return result


def _decode_body(response: requests.Response, schema: type[BaseModel] | None) -> Any:
    if schema is None:
        return response.text
    try:
        return schema.model_validate_json(response.content or b"{}")
    except ValidationError as exc:
        raise DecodeError(
            f"response does not match {schema.__name__}: {exc.error_count()} error(s)",
            status=response.status_code,
        ) from exc


class RpcConnection(ABC):
    """Persistent connection owned by exactly one virtual user.

    Opened lazily on the first ``invoke``; ``connect`` on an open handle is a
    no-op. A connection-level failure discards the handle so the next
    ``invoke`` reconnects.
    """

    protocol: Protocol

    def __init__(
        self,
        address: str,
        security: Security = Security.PLAINTEXT,
        *,
        timeout: float = 10.0,
        connect_timeout: float = 5.0,
        recorder: Recorder | None = None,
    ) -> None:
        self.address = address
        self.security = security
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.connect_attempts = 0
        self._recorder = recorder
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def connect(self) -> RpcConnection:
        if self._open:
            return self
        self.connect_attempts += 1
        self._connect()
        self._open = True
        LOGGER.debug("%s connection to %s opened (%s)", self.protocol.value, self.address, self.security.value)
        return self

    def invoke(
        self,
        service_method: str,
        message: Any,
        *,
        tag: str | None = None,
        tags: Mapping[str, str] | None = None,
    ) -> CallResult:
        operation = tag or service_method
        started = time.perf_counter()
        try:
            self.connect()
            started = time.perf_counter()
            payload, status = self._invoke(service_method, message)
        except TransportConnectionError as exc:
            self.close()
            return self._finish(_failure(operation, self.protocol, started, exc, tags))
        except CallError as exc:
            return self._finish(_failure(operation, self.protocol, started, exc, tags))

        return self._finish(
            CallResult(
                operation_tag=operation,
                protocol=self.protocol,
                status_class=StatusClass.SUCCESS,
                latency_ms=_elapsed_ms(started),
                status=status,
                response_payload=payload,
                tags=dict(tags or {}),
            )
        )

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._close()

    def _finish(self, result: CallResult) -> CallResult:
        if self._recorder is not None:
            self._recorder(result)
        return result

    @abstractmethod
    def _connect(self) -> None: ...

    @abstractmethod
    def _invoke(self, service_method: str, message: Any) -> tuple[Any, int | str]: ...

    @abstractmethod
    def _close(self) -> None: ...


def _json_bytes(message: Any) -> bytes:
    return json.dumps(message).encode("utf-8")


def _json_payload(raw: bytes | None) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"response is not JSON: {exc}") from exc


class GrpcConnection(RpcConnection):
    """Unary gRPC calls over one channel, with pluggable message codecs.

    JSON bytes by default; pass protobuf ``SerializeToString`` / ``FromString``
    to talk to a service with compiled messages.
    """

    protocol = Protocol.GRPC

    def __init__(
        self,
        address: str,
        security: Security = Security.PLAINTEXT,
        *,
        serializer: Callable[[Any], bytes] | None = None,
        deserializer: Callable[[bytes], Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(address, security, **kwargs)
        self._serializer = serializer or _json_bytes
        self._deserializer = deserializer or _json_payload
        self._channel: grpc.Channel | None = None
        self._methods: dict[str, Callable[..., Any]] = {}

    def _connect(self) -> None:
        if self.security is Security.SECURE:
            channel = grpc.secure_channel(self.address, grpc.ssl_channel_credentials())
        else:
            channel = grpc.insecure_channel(self.address)
        try:
            grpc.channel_ready_future(channel).result(timeout=self.connect_timeout)
        except grpc.FutureTimeoutError as exc:
            channel.close()
            raise TransportConnectionError(
                f"gRPC channel to {self.address} not ready within {self.connect_timeout:g} seconds"
            ) from exc
        self._channel = channel

    def _invoke(self, service_method: str, message: Any) -> tuple[Any, str]:
        method = self._methods.get(service_method)
        if method is None:
            path = service_method if service_method.startswith("/") else f"/{service_method}"
            method = self._channel.unary_unary(path, request_serializer=self._serializer)
            self._methods[service_method] = method
        try:
            raw = method(message, timeout=self.timeout)
        except grpc.RpcError as exc:
            code = exc.code()
            detail = f"{code.name}: {exc.details()}"
            if code is grpc.StatusCode.DEADLINE_EXCEEDED:
                raise CallTimeoutError(detail, status=code.name) from exc
            if code is grpc.StatusCode.UNAVAILABLE:
                raise TransportConnectionError(detail, status=code.name) from exc
            raise CallFailure(detail, status=code.name) from exc
        return self._deserializer(raw), grpc.StatusCode.OK.name

    def _close(self) -> None:
        channel, self._channel = self._channel, None
        self._methods.clear()
        if channel is not None:
            channel.close()


def create_producer(
    broker: str,
    security: Security = Security.PLAINTEXT,
    deadline_s: float = 0.0,
) -> KafkaProducer:
    backoff = 1.0
    max_backoff = 10.0
    deadline = time.time() + deadline_s

    while True:
        try:
            return KafkaProducer(
                bootstrap_servers=broker,
                security_protocol="SSL" if security is Security.SECURE else "PLAINTEXT",
                key_serializer=lambda v: v.encode("utf-8") if v else None,
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            )
        except NoBrokersAvailable as exc:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise TransportConnectionError(
                    f"failed to connect to Kafka broker {broker} within {deadline_s:g} seconds"
                ) from exc

            time.sleep(min(backoff, remaining))
            backoff = min(backoff * 1.5, max_backoff)


class KafkaConnection(RpcConnection):
    """Publishes event messages and waits for the broker acknowledgement.

    The service method selects the topic: an explicit ``topics`` entry, else
    the part before ``/`` (``pkg.Service/OnMessage`` -> ``pkg.Service``).
    """

    protocol = Protocol.KAFKA

    def __init__(
        self,
        address: str,
        security: Security = Security.PLAINTEXT,
        *,
        topics: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(address, security, **kwargs)
        self._topics = dict(topics or {})
        self._producer: KafkaProducer | None = None

    def topic_for(self, service_method: str) -> str:
        return self._topics.get(service_method) or service_method.strip("/").split("/", 1)[0]

    def _connect(self) -> None:
        self._producer = create_producer(self.address, self.security, deadline_s=self.connect_timeout)

    def _invoke(self, service_method: str, message: Any) -> tuple[Any, str]:
        topic = self.topic_for(service_method)
        key = message.get("id") if isinstance(message, Mapping) else None
        try:
            future = self._producer.send(topic, key=key, value=message)
            metadata = future.get(timeout=self.timeout)
        except KafkaTimeoutError as exc:
            raise CallTimeoutError(f"no acknowledgement from {topic}: {exc}", status="TIMEOUT") from exc
        except KafkaConnectionError as exc:
            raise TransportConnectionError(str(exc), status=type(exc).__name__) from exc
        except KafkaError as exc:
            raise CallFailure(str(exc), status=type(exc).__name__) from exc
        return {"topic": metadata.topic, "partition": metadata.partition, "offset": metadata.offset}, "OK"

    def _close(self) -> None:
        producer, self._producer = self._producer, None
        if producer is None:
            return
        try:
            producer.flush()
        finally:
            producer.close()


CONNECTION_TYPES: dict[Protocol, type[RpcConnection]] = {
    Protocol.GRPC: GrpcConnection,
    Protocol.KAFKA: KafkaConnection,
}


def open_connection(
    kind: Protocol,
    address: str,
    security: Security = Security.PLAINTEXT,
    **kwargs: Any,
) -> RpcConnection:
    """Build an unopened connection handle; it connects on first use."""
    try:
        connection_type = CONNECTION_TYPES[kind]
    except KeyError:
        raise ValueError(f"{kind} is not a persistent-connection transport") from None
    return connection_type(address, security, **kwargs)


def connect(
    address: str,
    security: Security = Security.PLAINTEXT,
    kind: Protocol = Protocol.GRPC,
    **kwargs: Any,
) -> RpcConnection:
    return open_connection(kind, address, security, **kwargs).connect()


@dataclass(frozen=True)
class TargetConfig:
    base_url: str
    rpc_address: str
    rpc_transport: Protocol = Protocol.GRPC
    security: Security = Security.PLAINTEXT
    http_timeout: float = 30.0
    rpc_timeout: float = 10.0
    connect_timeout: float = 5.0
    default_headers: Mapping[str, str] = field(default_factory=dict)


class ClientFactory:
    """Builds the per-virtual-user clients for one target."""

    def __init__(self, target: TargetConfig) -> None:
        self.target = target

    def http(self, recorder: Recorder) -> HttpClient:
        return HttpClient(
            self.target.base_url,
            timeout=self.target.http_timeout,
            default_headers=self.target.default_headers,
            recorder=recorder,
        )

    def rpc(self, name: str, recorder: Recorder) -> RpcConnection:
        LOGGER.debug("creating %s connection handle %r", self.target.rpc_transport.value, name)
        return open_connection(
            self.target.rpc_transport,
            self.target.rpc_address,
            self.target.security,
            timeout=self.target.rpc_timeout,
            connect_timeout=self.target.connect_timeout,
            recorder=recorder,
        )


__all__ = [
    "CallResult",
    "ClientFactory",
    "GrpcConnection",
    "HttpClient",
    "KafkaConnection",
    "Protocol",
    "Recorder",
    "RpcConnection",
    "Security",
    "StatusClass",
    "TargetConfig",
    "connect",
    "create_producer",
    "open_connection",
]
