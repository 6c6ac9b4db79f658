"""Concrete workloads against the challenge service, as declarative tables.

Every workload is a ``Workload`` built from the run settings and the loaded
fixture: its stages say how sessions arrive, its sessions say what a virtual
user does, and its thresholds decide the verdict.
"""

from __future__ import annotations

import functools
import logging
import math
import time
from typing import Any, Callable, Mapping

from .clients import CallResult
from .engine.collector import parse_thresholds
from .engine.config import LoadProfile, Stage, Workload, parse_duration
from .engine.selector import WeightedTable
from .engine.session import SessionSpec, Step, VirtualUserContext, think
from .errors import ConfigError
from .fixtures import Fixture, IdentityRecord
from .schemas import ChallengesResponse, InitializeResponse, SelectGoalsResponse, SetActiveResponse
from .settings import RunSettings

LOGGER = logging.getLogger("loadsim.workloads")

LOGIN_SERVICE = "accelbyte.iam.account.v1.UserAuthenticationUserLoggedInService/OnMessage"
STAT_SERVICE = "accelbyte.social.statistic.v1.StatisticStatItemUpdatedService/OnMessage"
STAT_CODES = ("enemy_kills", "login_count", "games_played", "headshots", "wins")
BATCH_GOALS = ("daily-login", "daily-10-kills", "daily-3-matches")
RANDOM_SELECT_COUNT = 5

CHALLENGES_PATH = "/v1/challenges"
INITIALIZE_PATH = "/v1/challenges/initialize"

_COIN = WeightedTable.of((True, 1.0), (False, 1.0))


def _status(expected: int) -> Callable[[CallResult], bool]:
    return lambda result: result.status == expected


def _has_challenges(result: CallResult) -> bool:
    return result.ok and len(result.response_payload.challenges) > 0


def _faster_than(limit_ms: float) -> Callable[[CallResult], bool]:
    return lambda result: result.latency_ms < limit_ms


def _event_ok(result: CallResult) -> bool:
    return result.ok


class ChallengeActions:
    """Session steps against the challenge API and the event handler.

    Each public method is an action: it takes the virtual user's context,
    issues its calls, records its checks and leaves anything later steps
    need in ``ctx.vars``.
    """

    def __init__(self, namespace: str, challenge_id: str, challenges: Any = ()) -> None:
        self.namespace = namespace
        self.challenge_id = challenge_id
        self.challenges = tuple(challenges or ())

    # identity

    def use_own_identity(self, ctx: VirtualUserContext) -> None:
        ctx.vars["identity"] = ctx.identity

    def _identity(self, ctx: VirtualUserContext) -> IdentityRecord:
        identity = ctx.vars.get("identity")
        if identity is None:
            identity = ctx.random_identity()
            ctx.vars["identity"] = identity
        return identity

    def _headers(self, ctx: VirtualUserContext) -> dict[str, str]:
        identity = self._identity(ctx)
        return {
            "Authorization": f"Bearer {identity.token}",
            "Content-Type": "application/json",
            "X-Mock-User-Id": identity.user_id,
        }

    # http

    def initialize(
        self,
        phase: str | None = None,
        fast_path: bool = False,
        latency_checks: bool = False,
    ) -> Callable[[VirtualUserContext], CallResult]:
        tags = {"phase": phase} if phase else {}

        def action(ctx: VirtualUserContext) -> CallResult:
            result = ctx.http.post(
                INITIALIZE_PATH,
                {},
                tag="initialize",
                tags=tags,
                headers=self._headers(ctx),
                schema=InitializeResponse,
            )
            checks: dict[str, Callable[[CallResult], bool]] = {
                "initialize: status 200": _status(200),
                "initialize: has assigned goals": lambda r: r.ok
                and r.response_payload.assigned_goals is not None,
            }
            if fast_path:
                checks["initialize: fast path"] = lambda r: r.ok and r.response_payload.new_assignments == 0
            if latency_checks:
                checks["initialize: response time < 200ms"] = _faster_than(200)
                checks["initialize: response time < 1s"] = _faster_than(1000)
            ctx.check(result, checks, tags)
            return result

        return action

    def _challenges(
        self,
        ctx: VirtualUserContext,
        tag: str,
        active_only: bool | None = None,
        check_prefix: str = "challenges",
    ) -> CallResult:
        tags = {} if active_only is None else {"active_only": str(active_only).lower()}
        result = ctx.http.get(
            CHALLENGES_PATH,
            tag=tag,
            tags=tags,
            headers=self._headers(ctx),
            params={"active_only": "true"} if active_only else None,
            schema=ChallengesResponse,
        )
        ctx.check(
            result,
            {
                f"{check_prefix}: status 200": _status(200),
                f"{check_prefix}: has data": _has_challenges,
            },
        )
        if result.ok:
            ctx.vars["claimable"] = result.response_payload.completed_goals()
        return result

    def browse(self, ctx: VirtualUserContext) -> CallResult:
        return self._challenges(ctx, "browse_challenges", check_prefix="browse")

    def query_challenges(self, ctx: VirtualUserContext) -> CallResult:
        return self._challenges(ctx, "challenges", active_only=ctx.pick(_COIN))

    def check_progress(self, ctx: VirtualUserContext) -> CallResult:
        result = self._challenges(ctx, "check_progress", check_prefix="progress")
        ctx.check(
            result,
            {
                "progress: has challenge data": lambda r: r.ok
                and any(c.challenge_id == self.challenge_id for c in r.response_payload.challenges)
            },
        )
        return result

    def claim_observed(self, ctx: VirtualUserContext) -> CallResult | None:
        """Claim the first completed-but-unclaimed goal an earlier step saw."""
        claimable = ctx.vars.get("claimable") or []
        if not claimable:
            return None
        challenge_id, goal_id = claimable[0]
        result = ctx.http.post(
            f"/v1/challenges/{challenge_id}/goals/{goal_id}/claim",
            tag="claim",
            headers=self._headers(ctx),
            tolerated_statuses=(400, 409),
        )
        ctx.check(result, {"claim: status 200, 400 or 409": lambda r: r.status in (200, 400, 409)})
        return result

    def browse_and_claim(self, ctx: VirtualUserContext, active_only: bool | None = True) -> CallResult | None:
        self._challenges(ctx, "challenges", active_only=active_only)
        return self.claim_observed(ctx)

    def set_goal_active(self, ctx: VirtualUserContext) -> CallResult | None:
        if not self.challenges:
            LOGGER.debug("no challenge seeds loaded; skipping set_active")
            return None
        challenge = self.challenges[ctx.rng.randrange(len(self.challenges))]
        goals = challenge.get("goals") or ()
        if not goals:
            return None
        goal = goals[ctx.rng.randrange(len(goals))]
        is_active = ctx.pick(_COIN)
        tags = {"action": "activate" if is_active else "deactivate"}
        result = ctx.http.put(
            f"/v1/challenges/{_seed_id(challenge, 'challengeId')}/goals/{_seed_id(goal, 'goalId')}/active",
            {"is_active": is_active},
            tag="set_active",
            tags=tags,
            headers=self._headers(ctx),
            schema=SetActiveResponse,
        )
        ctx.check(result, {"set_active: status 200": _status(200)}, tags)
        return result

    def random_select(self, ctx: VirtualUserContext) -> CallResult:
        return self._select(
            ctx,
            "random_select",
            "random-select",
            {"count": RANDOM_SELECT_COUNT, "replace_existing": False, "exclude_active": True},
        )

    def batch_select(self, ctx: VirtualUserContext) -> CallResult:
        return self._select(
            ctx,
            "batch_select",
            "batch-select",
            {"goal_ids": list(BATCH_GOALS), "replace_existing": False},
        )

    def _select(self, ctx: VirtualUserContext, tag: str, route: str, body: Mapping[str, Any]) -> CallResult:
        result = ctx.http.post(
            f"/v1/challenges/{self.challenge_id}/goals/{route}",
            dict(body),
            tag=tag,
            headers=self._headers(ctx),
            schema=SelectGoalsResponse,
        )
        ctx.check(
            result,
            {
                f"{tag}: status 200": _status(200),
                f"{tag}: has selected goals": lambda r: r.ok and len(r.response_payload.selected_goals) > 0,
                f"{tag}: response time < 50ms": _faster_than(50),
            },
        )
        return result

    # events

    def login_event(self, ctx: VirtualUserContext) -> CallResult:
        identity = ctx.random_identity()
        message = {
            "id": generate_event_id(ctx),
            "userId": identity.user_id,
            "namespace": self.namespace,
        }
        result = ctx.rpc("login").invoke(LOGIN_SERVICE, message, tag="login_event")
        ctx.check(result, {"login event processed": _event_ok})
        return result

    def stat_event(self, ctx: VirtualUserContext) -> CallResult:
        identity = ctx.random_identity()
        message = {
            "id": generate_event_id(ctx),
            "userId": identity.user_id,
            "namespace": self.namespace,
            "payload": {
                "statCode": STAT_CODES[ctx.rng.randrange(len(STAT_CODES))],
                "latestValue": ctx.rng.randrange(1000),
            },
        }
        result = ctx.rpc("stat").invoke(STAT_SERVICE, message, tag="stat_event")
        ctx.check(result, {"stat event processed": _event_ok})
        return result


def idle(ctx: VirtualUserContext) -> None:
    """Stands in for gameplay; the step's think time is the whole point."""


def generate_event_id(ctx: VirtualUserContext) -> str:
    return f"loadsim-event-{int(time.time() * 1000)}-{ctx.rng.getrandbits(32):08x}"


def _seed_id(record: Mapping[str, Any], key: str) -> str:
    value = record.get(key) or record.get("id")
    if not value:
        raise ConfigError(f"seed record has neither {key!r} nor 'id'")
    return str(value)


def _ceil(value: float) -> int:
    return max(1, math.ceil(value))


def _rpc_duration(settings: RunSettings) -> str:
    return f"{settings.rpc_transport.value}_req_duration"


def _actions(settings: RunSettings, fixture: Fixture) -> ChallengeActions:
    return ChallengeActions(settings.namespace, settings.challenge_id, fixture.seed("challenges"))


def _event_session(actions: ChallengeActions) -> SessionSpec:
    return SessionSpec(
        "event_load",
        (Step("event", WeightedTable.of((actions.login_event, 0.2), (actions.stat_event, 0.8))),),
    )


def _event_stage(
    settings: RunSettings,
    actions: ChallengeActions,
    eps: float,
    duration: str,
    name: str = "event_load",
    preallocated: int = 1000,
    max_concurrency: int = 1500,
    **kwargs: Any,
) -> Stage:
    return Stage.constant(
        name,
        _event_session(actions),
        eps,
        duration,
        max_concurrency=max_concurrency,
        preallocated=preallocated,
        graceful_stop=settings.graceful_stop,
        **kwargs,
    )


def api_load(settings: RunSettings, fixture: Fixture) -> Workload:
    actions = _actions(settings, fixture)
    rps = settings.target_rps or 100
    # Lists every challenge, not only the active ones
    list_and_claim = functools.partial(actions.browse_and_claim, active_only=None)
    session = SessionSpec(
        "api_load",
        (Step("api", WeightedTable.of((actions.browse, 0.8), (list_and_claim, 0.2))),),
    )
    stage = Stage.constant(
        "api_load",
        session,
        rps,
        "10m",
        max_concurrency=_ceil(min(rps * 2, 2000)),
        preallocated=_ceil(min(rps, 1000)),
        graceful_stop=settings.graceful_stop,
    )
    return Workload(
        name="api_load",
        description=f"HTTP browse/claim mix at {rps:g} sessions/s",
        profile=LoadProfile((stage,)),
        thresholds=parse_thresholds(
            {"http_req_duration": ["p(95)<2000"], "http_req_failed": ["rate<0.01"]}
        ),
    )


def event_load(settings: RunSettings, fixture: Fixture) -> Workload:
    actions = _actions(settings, fixture)
    eps = settings.target_eps or 1000
    return Workload(
        name="event_load",
        description=f"login/stat events at {eps:g} events/s over persistent connections",
        profile=LoadProfile((_event_stage(settings, actions, eps, "10m"),)),
        thresholds=parse_thresholds({_rpc_duration(settings): ["p(95)<500"], "checks": ["rate>0.99"]}),
    )


def combined(settings: RunSettings, fixture: Fixture) -> Workload:
    actions = _actions(settings, fixture)
    rps = settings.target_rps or 300
    eps = settings.target_eps or 500
    api = Stage.constant(
        "api_load",
        SessionSpec("api_browse", (Step("browse", actions.browse),)),
        rps,
        "30m",
        max_concurrency=_ceil(min(rps * 2, 1000)),
        preallocated=_ceil(min(rps, 500)),
        start_time=0.0,
        graceful_stop=settings.graceful_stop,
    )
    events = _event_stage(settings, actions, eps, "30m", start_time=0.0)
    return Workload(
        name="combined",
        description=f"HTTP browse at {rps:g}/s alongside events at {eps:g}/s",
        profile=LoadProfile((api, events)),
        thresholds=parse_thresholds(
            {
                "http_req_duration": ["p(95)<2000"],
                "http_req_failed": ["rate<0.01"],
                _rpc_duration(settings): ["p(95)<500"],
                "checks": ["rate>0.99"],
            }
        ),
    )


def smoke(settings: RunSettings, fixture: Fixture) -> Workload:
    actions = _actions(settings, fixture)
    rps = settings.target_rps or 100
    eps = settings.target_eps or 200
    init_session = SessionSpec("initialization", (Step("initialize", actions.initialize(phase="init")),))
    gameplay = SessionSpec(
        "api_gameplay",
        (
            Step(
                "gameplay",
                WeightedTable.of(
                    (actions.initialize(phase="gameplay", fast_path=True), 0.10),
                    (actions.set_goal_active, 0.15),
                    (actions.browse_and_claim, 0.05),
                    (actions.query_challenges, 0.70),
                ),
            ),
        ),
    )
    gameplay_start = parse_duration("30s")
    stages = (
        Stage.constant(
            "initialization_phase",
            init_session,
            rps,
            "30s",
            max_concurrency=200,
            preallocated=100,
            start_time=0.0,
            graceful_stop=settings.graceful_stop,
        ),
        Stage.constant(
            "api_gameplay",
            gameplay,
            rps,
            "4m30s",
            max_concurrency=200,
            preallocated=100,
            start_time=gameplay_start,
            graceful_stop=settings.graceful_stop,
        ),
        _event_stage(
            settings,
            actions,
            eps,
            "4m30s",
            name="event_gameplay",
            preallocated=200,
            max_concurrency=300,
            start_time=gameplay_start,
        ),
    )
    return Workload(
        name="smoke",
        description="short initialize burst, then mixed API gameplay and events",
        profile=LoadProfile(stages, total_duration=parse_duration("5m")),
        thresholds=parse_thresholds(
            {
                "http_req_duration{endpoint:initialize,phase:init}": ["p(95)<100"],
                "http_req_duration{endpoint:initialize,phase:gameplay}": ["p(95)<50"],
                "http_req_duration{endpoint:challenges}": ["p(95)<200"],
                "http_req_duration{endpoint:set_active}": ["p(95)<100"],
                _rpc_duration(settings): ["p(95)<500"],
                "checks": ["rate>0.99"],
            }
        ),
    )


def initialize_ramp(settings: RunSettings, fixture: Fixture) -> Workload:
    actions = _actions(settings, fixture)
    session = SessionSpec(
        "initialize",
        (Step("initialize", actions.initialize(latency_checks=True)),),
    )
    stages = (
        Stage.ramp(
            "warmup_phase",
            session,
            10,
            50,
            "2m",
            max_concurrency=500,
            preallocated=100,
            tags={"phase": "warmup"},
            graceful_stop=settings.graceful_stop,
        ),
        Stage.ramp(
            "rampup_phase",
            session,
            50,
            300,
            "3m",
            max_concurrency=1000,
            preallocated=500,
            start_time=parse_duration("2m"),
            tags={"phase": "rampup"},
            graceful_stop=settings.graceful_stop,
        ),
        Stage.constant(
            "sustained_phase",
            session,
            300,
            "5m",
            max_concurrency=1000,
            preallocated=500,
            start_time=parse_duration("5m"),
            tags={"phase": "sustained"},
            graceful_stop=settings.graceful_stop,
        ),
    )
    return Workload(
        name="initialize_ramp",
        description="initialize endpoint: warm-up ramp, ramp-up, sustained 300/s",
        profile=LoadProfile(stages, total_duration=parse_duration("10m")),
        thresholds=parse_thresholds(
            {
                "http_req_duration": ["p(95)<100", "p(99)<200"],
                "http_req_duration{phase:warmup}": ["p(95)<100"],
                "http_req_duration{phase:rampup}": ["p(95)<100"],
                "http_req_duration{phase:sustained}": ["p(95)<100", "p(99)<200"],
                "http_req_failed": ["rate<0.01"],
                "checks": ["rate>0.99"],
            }
        ),
    )


def realistic_sessions(settings: RunSettings, fixture: Fixture) -> Workload:
    actions = _actions(settings, fixture)
    vus = settings.target_vus or 150
    iterations = settings.iterations or 120
    eps = settings.target_eps or 500
    journey = SessionSpec(
        "user_session",
        (
            Step("bind_identity", actions.use_own_identity),
            Step("initialize", actions.initialize(), think(1, 2)),
            Step("browse", actions.browse, think(2, 4)),
            Step(
                "select_goals",
                WeightedTable.of((actions.random_select, 0.6), (actions.batch_select, 0.4)),
                think(3, 5),
            ),
            Step("gameplay", idle, think(5, 10)),
            Step("check_progress", actions.check_progress, think(2, 3)),
            Step(
                "claim",
                WeightedTable.of((actions.claim_observed, 0.3), (None, 0.7)),
                when=lambda ctx: bool(ctx.vars.get("claimable")),
            ),
        ),
        gap=think(5, 10),
    )
    stages = (
        Stage.fixed_iterations(
            "user_sessions",
            journey,
            concurrency=vus,
            iterations=iterations,
            max_duration="30m",
            start_time=0.0,
            graceful_stop=settings.graceful_stop,
        ),
        _event_stage(settings, actions, eps, "30m", start_time=0.0),
    )
    return Workload(
        name="realistic_sessions",
        description=f"{vus} users x {iterations} sessions of the full journey, events at {eps:g}/s",
        profile=LoadProfile(stages),
        thresholds=parse_thresholds(
            {
                "http_req_duration": ["p(95)<2000"],
                "http_req_failed": ["rate<0.01"],
                "checks": ["rate>0.99"],
                "http_req_duration{endpoint:batch_select}": ["p(95)<50"],
                "http_req_duration{endpoint:random_select}": ["p(95)<50"],
                "http_req_duration{endpoint:initialize}": ["p(95)<100"],
                "http_req_duration{endpoint:browse_challenges}": ["p(95)<500"],
                "http_req_duration{endpoint:check_progress}": ["p(95)<500"],
                "http_req_duration{endpoint:claim}": ["p(95)<100"],
                _rpc_duration(settings): ["p(95)<500"],
            }
        ),
    )


WorkloadBuilder = Callable[[RunSettings, Fixture], Workload]

WORKLOADS: dict[str, WorkloadBuilder] = {
    "api_load": api_load,
    "event_load": event_load,
    "combined": combined,
    "smoke": smoke,
    "initialize_ramp": initialize_ramp,
    "realistic_sessions": realistic_sessions,
}


def build_workload(settings: RunSettings, fixture: Fixture) -> Workload:
    try:
        builder = WORKLOADS[settings.workload]
    except KeyError:
        known = ", ".join(sorted(WORKLOADS))
        raise ConfigError(f"unknown workload {settings.workload!r} (known: {known})") from None
    workload = builder(settings, fixture)
    if settings.duration is not None:
        LOGGER.info("squeezing every stage of %s to %.1fs", workload.name, settings.duration)
        workload = Workload(
            name=workload.name,
            profile=workload.profile.with_window(settings.duration),
            thresholds=workload.thresholds,
            description=workload.description,
        )
    return workload


__all__ = [
    "ChallengeActions",
    "WORKLOADS",
    "build_workload",
    "generate_event_id",
    "idle",
]
