from __future__ import annotations

import dataclasses
import functools
import itertools
import logging
import queue
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from ..calllog import DEFAULT_SLOW_CALL_MS
from ..clients import ClientFactory
from ..fixtures import Fixture
from .collector import MetricsCollector
from .config import ExecutorMode, LoadProfile, Stage
from .session import SessionOutcome, VirtualUserContext, run_iteration

LOGGER = logging.getLogger("loadsim.scheduler")

Job = Callable[[VirtualUserContext], None]
ContextFactory = Callable[[Stage], VirtualUserContext]


@dataclass
class StageReport:
    name: str
    mode: str
    offset: float = 0.0
    started: int = 0
    completed: int = 0
    interrupted: int = 0
    missed_arrivals: int = 0
    peak_active: int = 0
    slots: int = 0
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None

    @property
    def ticks(self) -> int:
        return self.started + self.missed_arrivals

    @property
    def duration_s(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return max(self.finished_at - self.started_at, 0.0)

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["ticks"] = self.ticks
        return data


class WorkerSlot:
    """One worker thread bound to one virtual-user context for a whole stage.

    Jobs are handed over through an inbox; the context (and every connection
    it opened) is closed when the slot is stopped.
    """

    def __init__(self, ctx: VirtualUserContext, name: str) -> None:
        self.ctx = ctx
        self._inbox: queue.SimpleQueue[Job | None] = queue.SimpleQueue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def vu_id(self) -> int:
        return self.ctx.vu_id

    def submit(self, job: Job) -> None:
        self._inbox.put(job)

    def stop(self) -> None:
        self._inbox.put(None)

    def join(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        try:
            while True:
                job = self._inbox.get()
                if job is None:
                    return
                try:
                    job(self.ctx)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("job on vu %d raised", self.ctx.vu_id)
        finally:
            self.ctx.close()


class SlotPool:
    """Worker slots for one stage, grown on demand up to ``max_size``.

    ``acquire`` never blocks: it hands out an idle slot, spawns a new one
    while under the cap, or returns None.
    """

    def __init__(
        self,
        stage: Stage,
        factory: Callable[[], VirtualUserContext],
        max_size: int,
        preallocate: int = 0,
    ) -> None:
        self._stage = stage
        self._factory = factory
        self._max_size = max_size
        self._slots: list[WorkerSlot] = []
        self._idle: list[WorkerSlot] = []
        self._active = 0
        self._changed = threading.Condition()
        self.peak_active = 0
        for _ in range(preallocate):
            self._idle.append(self._spawn())

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def active(self) -> int:
        with self._changed:
            return self._active

    def acquire(self) -> WorkerSlot | None:
        with self._changed:
            if self._idle:
                slot = self._idle.pop()
            elif len(self._slots) < self._max_size:
                slot = self._spawn()
            else:
                return None
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
            return slot

    def release(self, slot: WorkerSlot) -> None:
        with self._changed:
            self._active -= 1
            self._idle.append(slot)
            self._changed.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._changed:
            return self._changed.wait_for(lambda: self._active == 0, timeout)

    def shutdown(self, timeout: float = 5.0) -> None:
        for slot in self._slots:
            slot.stop()
        deadline = time.monotonic() + timeout
        for slot in self._slots:
            if not slot.join(max(deadline - time.monotonic(), 0.0)):
                LOGGER.warning("stage %s: vu %d did not stop in time", self._stage.name, slot.vu_id)

    def _spawn(self) -> WorkerSlot:
        ctx = self._factory()
        slot = WorkerSlot(ctx, name=f"{self._stage.name}-vu-{ctx.vu_id}")
        self._slots.append(slot)
        return slot


class _StageRunner:
    def __init__(
        self,
        stage: Stage,
        collector: MetricsCollector,
        contexts: ContextFactory,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stage = stage
        self.report = StageReport(stage.name, stage.mode.value)
        self._collector = collector
        self._contexts = contexts
        self._clock = clock
        self._tags = {"stage": stage.name, "scenario": stage.session.name}
        self._counts_lock = threading.Lock()
        # No new sessions once set; in-flight sessions keep running
        self._draining = threading.Event()
        # In-flight sessions stop at their next step boundary once set
        self._interrupt = threading.Event()

    def cancel(self) -> None:
        self._draining.set()
        self._interrupt.set()

    def run(self, start_at: float) -> StageReport:
        raise NotImplementedError

    def _pool(self, max_size: int, preallocate: int) -> SlotPool:
        return SlotPool(
            self.stage,
            functools.partial(self._contexts, self.stage),
            max_size=max_size,
            preallocate=preallocate,
        )

    def _wait_until(self, deadline: float) -> bool:
        """Sleep until ``deadline``; True if the stage was cancelled first."""
        return self._draining.wait(max(deadline - self._clock(), 0.0))

    def _count(self, outcome: SessionOutcome) -> None:
        with self._counts_lock:
            if outcome is SessionOutcome.COMPLETED:
                self.report.completed += 1
            else:
                self.report.interrupted += 1

    def _drain(self, pool: SlotPool) -> None:
        self._draining.set()
        if not pool.wait_idle(self.stage.graceful_stop):
            LOGGER.info(
                "stage %s: graceful stop of %.1fs elapsed with %d sessions in flight; interrupting",
                self.stage.name,
                self.stage.graceful_stop,
                pool.active,
            )
            self._interrupt.set()
            pool.wait_idle()
        pool.shutdown()


class ArrivalRateRunner(_StageRunner):
    """Starts sessions on the stage's arrival timeline, independent of completions."""

    def run(self, start_at: float) -> StageReport:
        stage = self.stage
        if self._wait_until(start_at):
            return self.report
        pool = self._pool(stage.max_concurrency, stage.preallocated_concurrency)
        self.report.started_at = time.time()
        LOGGER.info(
            "stage %s: %s %.2f -> %.2f sessions/s for %.1fs (max %d vus)",
            stage.name,
            stage.mode.value,
            stage.start_rate,
            stage.end_rate,
            stage.duration,
            stage.max_concurrency,
        )
        try:
            for tick in itertools.count():
                offset = stage.arrival_offset(tick)
                if offset is None or offset >= stage.duration:
                    break
                if self._wait_until(start_at + offset):
                    break
                self._dispatch(pool)
            self._wait_until(start_at + stage.duration)
        finally:
            self._drain(pool)
            self.report.peak_active = pool.peak_active
            self.report.slots = pool.size
            self.report.finished_at = time.time()
        return self.report

    def _dispatch(self, pool: SlotPool) -> None:
        slot = pool.acquire()
        if slot is None:
            self.report.missed_arrivals += 1
            self._collector.record_missed_arrival(self._tags)
            LOGGER.debug("stage %s: no free vu, arrival missed", self.stage.name)
            return
        self.report.started += 1
        self._collector.record_session_start(self._tags)
        slot.submit(functools.partial(self._session, pool, slot))

    def _session(self, pool: SlotPool, slot: WorkerSlot, ctx: VirtualUserContext) -> None:
        try:
            self._count(run_iteration(self.stage.session, ctx, self._interrupt))
        finally:
            pool.release(slot)


class PerWorkerIterationsRunner(_StageRunner):
    """Each of ``concurrency`` workers runs its sessions back to back."""

    def run(self, start_at: float) -> StageReport:
        stage = self.stage
        if self._wait_until(start_at):
            return self.report
        pool = self._pool(stage.concurrency, stage.concurrency)
        self.report.started_at = time.time()
        LOGGER.info(
            "stage %s: %d vus x %d iterations (max %.1fs)",
            stage.name,
            stage.concurrency,
            stage.iterations_per_worker,
            stage.max_duration,
        )
        try:
            for _ in range(stage.concurrency):
                slot = pool.acquire()
                slot.submit(functools.partial(self._loop, pool, slot))
            if not pool.wait_idle(stage.max_duration):
                LOGGER.info("stage %s: max duration reached", stage.name)
        finally:
            self._drain(pool)
            self.report.peak_active = pool.peak_active
            self.report.slots = pool.size
            self.report.finished_at = time.time()
        return self.report

    def _loop(self, pool: SlotPool, slot: WorkerSlot, ctx: VirtualUserContext) -> None:
        try:
            for _ in range(self.stage.iterations_per_worker):
                if self._draining.is_set():
                    return
                with self._counts_lock:
                    self.report.started += 1
                self._collector.record_session_start(self._tags)
                self._count(run_iteration(self.stage.session, ctx, self._interrupt))
        finally:
            pool.release(slot)


RUNNERS: dict[ExecutorMode, type[_StageRunner]] = {
    ExecutorMode.CONSTANT: ArrivalRateRunner,
    ExecutorMode.RAMP: ArrivalRateRunner,
    ExecutorMode.FIXED_ITERATIONS: PerWorkerIterationsRunner,
}


class Scheduler:
    """Runs every stage of a load profile on its own thread at its offset."""

    def __init__(
        self,
        profile: LoadProfile,
        fixture: Fixture,
        collector: MetricsCollector,
        clients: ClientFactory,
        seed: int | str | None = None,
        slow_call_ms: float = DEFAULT_SLOW_CALL_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._profile = profile
        self._fixture = fixture
        self._collector = collector
        self._clients = clients
        self._seed = seed
        self._slow_call_ms = slow_call_ms
        self._clock = clock
        self._vu_ids = {entry.stage.name: itertools.count() for entry in profile.schedule()}
        self._vu_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._threads: list[threading.Thread] = []
        self._runners = [
            (entry.offset, RUNNERS[entry.stage.mode](entry.stage, collector, self._context, clock))
            for entry in profile.schedule()
        ]

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self) -> list[StageReport]:
        self.start()
        return self.wait()

    def start(self) -> None:
        start = self._clock()
        for offset, runner in self._runners:
            runner.report.offset = offset
            thread = threading.Thread(
                target=self._run_stage,
                args=(runner, start + offset),
                name=f"stage-{runner.stage.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def wait(self) -> list[StageReport]:
        """Block until every stage has drained; reports in declared stage order."""
        for thread in self._threads:
            thread.join()
        return [runner.report for _, runner in self._runners]

    def cancel(self) -> None:
        LOGGER.warning("cancelling run")
        self._cancelled.set()
        for _, runner in self._runners:
            runner.cancel()

    def _run_stage(self, runner: _StageRunner, start_at: float) -> None:
        try:
            report = runner.run(start_at)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("stage %s aborted", runner.stage.name)
            runner.report.error = str(exc)
            return
        LOGGER.info(
            "stage %s finished: %d started, %d completed, %d interrupted, %d missed arrivals",
            report.name,
            report.started,
            report.completed,
            report.interrupted,
            report.missed_arrivals,
        )

    def _context(self, stage: Stage) -> VirtualUserContext:
        with self._vu_lock:
            vu_id = next(self._vu_ids[stage.name])
        rng = random.Random(f"{self._seed}:{stage.name}:{vu_id}") if self._seed is not None else random.Random()
        tags = {
            "stage": stage.name,
            "scenario": stage.session.name,
            **stage.session.tags,
            **stage.tags,
        }
        return VirtualUserContext(
            vu_id=vu_id,
            fixture=self._fixture,
            collector=self._collector,
            clients=self._clients,
            rng=rng,
            tags=tags,
            slow_call_ms=self._slow_call_ms,
        )


__all__ = [
    "ArrivalRateRunner",
    "PerWorkerIterationsRunner",
    "Scheduler",
    "SlotPool",
    "StageReport",
    "WorkerSlot",
]
