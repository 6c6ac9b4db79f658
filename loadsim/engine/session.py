from __future__ import annotations

import enum
import logging
import random
import threading
import time
import types
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping, Union

from ..calllog import DEFAULT_SLOW_CALL_MS, log_call
from ..errors import CallError, ConfigError
from .selector import WeightedTable

if TYPE_CHECKING:
    from ..clients import CallResult, ClientFactory, HttpClient, RpcConnection
    from ..fixtures import Fixture, IdentityRecord
    from .collector import MetricsCollector

LOGGER = logging.getLogger("loadsim.session")

Action = Callable[["VirtualUserContext"], Any]
StepAction = Union[Action, WeightedTable]


@dataclass(frozen=True)
class ThinkTime:
    """Pause drawn uniformly from ``[minimum, maximum]`` seconds."""

    minimum: float = 0.0
    maximum: float = 0.0

    def __post_init__(self) -> None:
        if self.minimum < 0 or self.maximum < self.minimum:
            raise ConfigError(f"invalid think time [{self.minimum}, {self.maximum}]")

    def __bool__(self) -> bool:
        return self.maximum > 0

    def draw(self, rng: random.Random) -> float:
        if self.maximum == self.minimum:
            return self.minimum
        return rng.uniform(self.minimum, self.maximum)


NO_THINK = ThinkTime()


def think(minimum: float, maximum: float | None = None) -> ThinkTime:
    return ThinkTime(minimum, minimum if maximum is None else maximum)


@dataclass(frozen=True)
class Step:
    """One unit of a session: an action, or a weighted table of actions.

    A table entry of None means "do nothing" for that share of draws.
    ``when`` gates the step on earlier results kept in ``ctx.vars``.
    """

    name: str
    action: StepAction
    think: ThinkTime = NO_THINK
    when: Callable[[VirtualUserContext], bool] | None = None

    def resolve(self, ctx: VirtualUserContext) -> Action | None:
        if isinstance(self.action, WeightedTable):
            return ctx.pick(self.action)
        return self.action


@dataclass(frozen=True)
class SessionSpec:
    """A virtual user's journey: ordered steps, then an inter-session gap."""

    name: str
    steps: tuple[Step, ...]
    gap: ThinkTime = NO_THINK
    tags: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "tags", types.MappingProxyType(dict(self.tags)))
        if not self.steps:
            raise ConfigError(f"session {self.name!r} has no steps")


class SessionOutcome(str, enum.Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


class VirtualUserContext:
    """State owned by one worker slot and reused across its sessions.

    Holds the slot's identity index, its random source, its HTTP client and
    its persistent connections (opened lazily, closed only by ``close``), and
    the per-session variables steps use to pass results forward.
    """

    def __init__(
        self,
        vu_id: int,
        fixture: Fixture,
        collector: MetricsCollector,
        clients: ClientFactory,
        rng: random.Random | None = None,
        tags: Mapping[str, str] | None = None,
        slow_call_ms: float = DEFAULT_SLOW_CALL_MS,
    ) -> None:
        self.vu_id = vu_id
        self.fixture = fixture
        self.rng = rng or random.Random()
        self.tags = dict(tags or {})
        self.iteration = 0
        self.vars: dict[str, Any] = {}
        self._collector = collector
        self._clients = clients
        self._slow_call_ms = slow_call_ms
        self._http: HttpClient | None = None
        self._connections: dict[str, RpcConnection] = {}

    @property
    def identity(self) -> IdentityRecord:
        return self.fixture.get(self.vu_id)

    def random_identity(self) -> IdentityRecord:
        return self.fixture.get(self.rng.randrange(len(self.fixture)))

    @property
    def http(self) -> HttpClient:
        if self._http is None:
            self._http = self._clients.http(self.record)
        return self._http

    def rpc(self, name: str) -> RpcConnection:
        connection = self._connections.get(name)
        if connection is None:
            connection = self._clients.rpc(name, self.record)
            self._connections[name] = connection
        return connection

    @property
    def connections(self) -> Mapping[str, RpcConnection]:
        return types.MappingProxyType(self._connections)

    def draw(self) -> float:
        return self.rng.random()

    def pick(self, table: WeightedTable) -> Any:
        return table.pick(self.rng)

    def record(self, result: CallResult) -> None:
        self._collector.record_call(result, self.tags)
        log_call(result, self._slow_call_ms)

    def check(
        self,
        subject: Any,
        checks: Mapping[str, Callable[[Any], bool]],
        tags: Mapping[str, str] | None = None,
    ) -> bool:
        outcomes = {}
        for name, predicate in checks.items():
            try:
                outcomes[name] = bool(predicate(subject))
            except Exception:  # noqa: BLE001
                LOGGER.debug("check %r raised; counting it as failed", name, exc_info=True)
                outcomes[name] = False
        return self._collector.record_checks(outcomes, {**self.tags, **(tags or {})})

    def begin_session(self) -> None:
        self.iteration += 1
        self.vars.clear()

    def record_step_error(self, step: str, kind: str) -> None:
        self._collector.record_step_error(step, kind, self.tags)

    def record_session(self, outcome: SessionOutcome, duration_ms: float) -> None:
        self._collector.record_iteration(outcome.value, duration_ms, self.tags)

    def close(self) -> None:
        for name, connection in list(self._connections.items()):
            LOGGER.debug("vu %d closing connection %r", self.vu_id, name)
            connection.close()
        self._connections.clear()
        if self._http is not None:
            self._http.close()
            self._http = None


def pause(duration: ThinkTime, rng: random.Random, cancel: threading.Event) -> bool:
    """Sleep for a drawn think time; True if cancelled meanwhile."""
    seconds = duration.draw(rng)
    if seconds <= 0:
        return cancel.is_set()
    return cancel.wait(seconds)


def run_step(step: Step, ctx: VirtualUserContext) -> None:
    try:
        if step.when is not None and not step.when(ctx):
            return
        action = step.resolve(ctx)
        if action is None:
            return
        action(ctx)
    except CallError as exc:
        LOGGER.debug("step %s of vu %d failed: %s", step.name, ctx.vu_id, exc)
        ctx.record_step_error(step.name, exc.kind)
    except Exception:  # noqa: BLE001
        LOGGER.exception("step %s of vu %d raised", step.name, ctx.vu_id)
        ctx.record_step_error(step.name, "exception")


def run_session(spec: SessionSpec, ctx: VirtualUserContext, cancel: threading.Event) -> SessionOutcome:
    """Walk every step in order; only cancellation ends a session early."""
    ctx.begin_session()
    for step in spec.steps:
        if cancel.is_set():
            return SessionOutcome.INTERRUPTED
        run_step(step, ctx)
        if step.think and pause(step.think, ctx.rng, cancel):
            return SessionOutcome.INTERRUPTED
    return SessionOutcome.COMPLETED


def run_iteration(spec: SessionSpec, ctx: VirtualUserContext, cancel: threading.Event) -> SessionOutcome:
    started = time.perf_counter()
    outcome = run_session(spec, ctx, cancel)
    ctx.record_session(outcome, (time.perf_counter() - started) * 1000.0)
    if outcome is SessionOutcome.COMPLETED and spec.gap:
        pause(spec.gap, ctx.rng, cancel)
    return outcome


__all__ = [
    "Action",
    "NO_THINK",
    "SessionOutcome",
    "SessionSpec",
    "Step",
    "ThinkTime",
    "VirtualUserContext",
    "pause",
    "run_iteration",
    "run_session",
    "run_step",
    "think",
]
