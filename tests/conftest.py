from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock

import pytest

from loadsim.clients import CallResult, Protocol, RpcConnection, Security, StatusClass
from loadsim.engine.collector import MetricsCollector
from loadsim.fixtures import Fixture, build_records


class FakeConnection(RpcConnection):
    """In-memory persistent connection that counts handshakes and closes."""

    protocol = Protocol.GRPC

    def __init__(self, address: str = "fake:1", security: Security = Security.PLAINTEXT, **kwargs: Any) -> None:
        super().__init__(address, security, **kwargs)
        self.handshakes = 0
        self.closes = 0
        self.sent: list[tuple[str, Any]] = []
        self.fail_with: Exception | None = None

    def _connect(self) -> None:
        self.handshakes += 1

    def _invoke(self, service_method: str, message: Any) -> tuple[Any, str]:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((service_method, message))
        return {"ok": True}, "OK"

    def _close(self) -> None:
        self.closes += 1


class FakeClients:
    """Stands in for ClientFactory: mock HTTP clients and fake RPC connections."""

    def __init__(self) -> None:
        self.http_clients: list[MagicMock] = []
        self.connections: list[FakeConnection] = []
        self._lock = threading.Lock()

    def http(self, recorder):
        client = MagicMock(name="HttpClient")
        with self._lock:
            self.http_clients.append(client)
        return client

    def rpc(self, name, recorder):
        connection = FakeConnection(recorder=recorder)
        with self._lock:
            self.connections.append(connection)
        return connection


def make_result(
    tag: str = "op",
    latency_ms: float = 10.0,
    status_class: StatusClass = StatusClass.SUCCESS,
    protocol: Protocol = Protocol.HTTP,
    **kwargs: Any,
) -> CallResult:
    return CallResult(
        operation_tag=tag,
        protocol=protocol,
        status_class=status_class,
        latency_ms=latency_ms,
        **kwargs,
    )


@pytest.fixture
def fixture() -> Fixture:
    users = [{"id": f"user-{i}", "name": f"User {i}"} for i in range(4)]
    tokens = ["token-a", "token-b"]
    challenges = (
        {"challengeId": "daily-challenges", "goals": ({"goalId": "daily-login"}, {"goalId": "daily-10-kills"})},
    )
    return Fixture(build_records(users, tokens), {"challenges": challenges})


@pytest.fixture
def collector() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def clients() -> FakeClients:
    return FakeClients()
