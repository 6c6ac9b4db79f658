import threading
import time

import pytest

from loadsim.engine.collector import MISSED_ARRIVALS, SESSION_STARTS, STEP_ERRORS
from loadsim.engine.config import LoadProfile, Stage
from loadsim.engine.scheduler import Scheduler, SlotPool
from loadsim.engine.session import SessionSpec, Step, think

pytestmark = pytest.mark.timing


class Gauge:
    """Tracks how many sessions are inside an action at once."""

    def __init__(self):
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def hold(self, seconds):
        def action(ctx):
            with self._lock:
                self.current += 1
                self.peak = max(self.peak, self.current)
            try:
                time.sleep(seconds)
            finally:
                with self._lock:
                    self.current -= 1

        return action


def _session(*steps, name="s"):
    return SessionSpec(name, steps)


def _run(stages, fixture, collector, clients, seed=1):
    scheduler = Scheduler(LoadProfile(tuple(stages)), fixture, collector, clients, seed=seed)
    return scheduler.run()


def test_constant_rate_issues_one_start_per_tick(fixture, collector, clients):
    stage = Stage.constant("a", _session(Step("noop", lambda ctx: None)), rate=10, duration=1, max_concurrency=100)

    started = time.monotonic()
    (report,) = _run([stage], fixture, collector, clients)
    elapsed = time.monotonic() - started

    assert abs(report.started - 10) <= 1
    assert report.missed_arrivals == 0
    assert report.completed == report.started
    assert 0.9 <= elapsed < 3.0
    assert collector.aggregate(SESSION_STARTS, {"stage": "a"}).count == report.started


def test_saturated_stage_reports_missed_arrivals(fixture, collector, clients):
    gauge = Gauge()
    stage = Stage.constant(
        "b",
        _session(Step("slow", gauge.hold(0.1))),
        rate=1000,
        duration=0.5,
        max_concurrency=5,
        preallocated=0,
    )

    (report,) = _run([stage], fixture, collector, clients)

    assert report.ticks == 500
    assert report.missed_arrivals > report.started
    assert report.peak_active <= 5
    assert gauge.peak <= 5
    assert report.slots <= 5
    assert collector.aggregate(MISSED_ARRIVALS, {"stage": "b"}).count == report.missed_arrivals


def test_fixed_iterations_run_every_worker_to_completion(fixture, collector, clients):
    counts = {}
    lock = threading.Lock()

    def tally(ctx):
        with lock:
            counts[ctx.vu_id] = counts.get(ctx.vu_id, 0) + 1

    stage = Stage.fixed_iterations("f", _session(Step("tally", tally)), concurrency=3, iterations=4, max_duration=5)

    (report,) = _run([stage], fixture, collector, clients)

    assert report.started == report.completed == 12
    assert sorted(counts.values()) == [4, 4, 4]


def test_raising_guard_does_not_cost_the_worker_its_iterations(fixture, collector, clients):
    stage = Stage.fixed_iterations(
        "guarded",
        _session(Step("claim", lambda ctx: None, when=lambda ctx: ctx.vars["claimable"])),
        concurrency=1,
        iterations=5,
        max_duration=5,
    )

    (report,) = _run([stage], fixture, collector, clients)

    assert report.started == report.completed == 5
    assert collector.aggregate(STEP_ERRORS, {"stage": "guarded"}).count == 5


def test_fixed_iterations_stop_at_max_duration(fixture, collector, clients):
    stage = Stage.fixed_iterations(
        "f",
        _session(Step("tick", lambda ctx: time.sleep(0.01))),
        concurrency=2,
        iterations=1000,
        max_duration=0.3,
        graceful_stop=1,
    )

    started = time.monotonic()
    (report,) = _run([stage], fixture, collector, clients)

    assert report.completed < 2000
    assert time.monotonic() - started < 3.0


def test_in_flight_sessions_finish_after_window(fixture, collector, clients):
    stage = Stage.constant(
        "drain",
        _session(Step("long", lambda ctx: time.sleep(0.5))),
        rate=5,
        duration=0.2,
        max_concurrency=5,
        graceful_stop=5,
    )

    (report,) = _run([stage], fixture, collector, clients)

    assert report.started >= 1
    assert report.completed == report.started
    assert report.interrupted == 0


def test_sessions_are_interrupted_after_graceful_stop(fixture, collector, clients):
    stage = Stage.constant(
        "cut",
        _session(Step("think", lambda ctx: None, think(10)), Step("after", lambda ctx: None)),
        rate=5,
        duration=0.2,
        max_concurrency=5,
        graceful_stop=0.1,
    )

    started = time.monotonic()
    (report,) = _run([stage], fixture, collector, clients)

    assert report.started >= 1
    assert report.interrupted == report.started
    assert time.monotonic() - started < 5.0


def test_overlapping_stages_use_independent_pools(fixture, collector, clients):
    gauge = Gauge()
    session = _session(Step("hold", gauge.hold(0.1)))
    stages = [
        Stage.constant("one", session, rate=100, duration=0.3, max_concurrency=2, start_time=0),
        Stage.constant("two", session, rate=100, duration=0.3, max_concurrency=2, start_time=0),
    ]

    reports = _run(stages, fixture, collector, clients)

    assert [r.peak_active for r in reports] == [2, 2]
    assert gauge.peak > 2
    assert gauge.peak <= 4


def test_cancel_stops_new_sessions(fixture, collector, clients):
    stage = Stage.constant("long", _session(Step("noop", lambda ctx: None)), rate=100, duration=30, max_concurrency=10)
    scheduler = Scheduler(LoadProfile((stage,)), fixture, collector, clients)

    started = time.monotonic()
    scheduler.start()
    time.sleep(0.2)
    scheduler.cancel()
    (report,) = scheduler.wait()

    assert scheduler.cancelled
    assert time.monotonic() - started < 5.0
    assert 0 < report.started < 200


def test_slot_teardown_closes_connections_once(fixture, collector, clients):
    def send(ctx):
        ctx.rpc("login").invoke("svc/Login", {})
        ctx.rpc("stat").invoke("svc/Stat", {})

    stage = Stage.constant("events", _session(Step("send", send)), rate=50, duration=0.3, max_concurrency=3)

    (report,) = _run([stage], fixture, collector, clients)

    assert report.started > 0
    assert len(clients.connections) % 2 == 0
    assert 2 <= len(clients.connections) <= 2 * report.slots
    assert all(c.handshakes == 1 for c in clients.connections)
    assert all(c.closes == 1 for c in clients.connections)


def test_seeded_runs_are_reproducible(fixture, collector, clients):
    def run_once():
        draws = []
        stage = Stage.fixed_iterations(
            "seeded",
            _session(Step("draw", lambda ctx: draws.append(ctx.draw()))),
            concurrency=1,
            iterations=5,
            max_duration=5,
        )
        _run([stage], fixture, collector, clients, seed=99)
        return draws

    assert run_once() == run_once()


def test_vu_ids_are_numbered_per_stage(fixture, collector, clients):
    def run_once():
        records = []
        lock = threading.Lock()

        def record(ctx):
            with lock:
                records.append((ctx.vu_id, ctx.identity.user_id, ctx.draw()))

        stages = [
            Stage.constant(
                "noise",
                _session(Step("noop", lambda ctx: None)),
                rate=50,
                duration=0.2,
                max_concurrency=50,
                preallocated=50,
                start_time=0,
            ),
            Stage.fixed_iterations(
                "journey",
                _session(Step("record", record)),
                concurrency=3,
                iterations=2,
                max_duration=5,
                start_time=0,
            ),
        ]
        _run(stages, fixture, collector, clients, seed=7)
        return sorted(records)

    first = run_once()

    assert [vu_id for vu_id, _, _ in first] == [0, 0, 1, 1, 2, 2]
    assert {user for _, user, _ in first} == {"user-0", "user-1", "user-2"}
    for _ in range(3):
        assert run_once() == first


def test_slot_pool_never_exceeds_cap(fixture, collector, clients):
    from loadsim.engine.session import VirtualUserContext

    ids = iter(range(100))
    stage = Stage.constant("p", _session(Step("noop", lambda ctx: None)), rate=1, duration=1, max_concurrency=2)
    pool = SlotPool(
        stage,
        lambda: VirtualUserContext(next(ids), fixture, collector, clients),
        max_size=2,
        preallocate=1,
    )
    try:
        first, second = pool.acquire(), pool.acquire()
        assert first is not None and second is not None
        assert pool.acquire() is None
        assert pool.peak_active == 2
        pool.release(first)
        assert pool.acquire() is first
    finally:
        pool.release(first)
        pool.release(second)
        pool.shutdown()
    assert pool.wait_idle(0)
