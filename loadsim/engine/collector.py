from __future__ import annotations

import enum
import functools
import logging
import math
import operator
import re
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from ..clients import CallResult, Protocol, StatusClass
from ..errors import ConfigError

if TYPE_CHECKING:
    from .scheduler import StageReport

LOGGER = logging.getLogger("loadsim.collector")


class MetricKind(str, enum.Enum):
    TREND = "trend"
    RATE = "rate"
    COUNTER = "counter"


CHECKS = "checks"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
SESSIONS_INTERRUPTED = "sessions_interrupted"
SESSION_STARTS = "session_starts"
MISSED_ARRIVALS = "missed_arrivals"
STEP_ERRORS = "step_errors"
CALL_TIMEOUTS = "call_timeouts"


def duration_metric(protocol: Protocol) -> str:
    return f"{protocol.value}_req_duration"


def failed_metric(protocol: Protocol) -> str:
    return f"{protocol.value}_req_failed"


def requests_metric(protocol: Protocol) -> str:
    return f"{protocol.value}_reqs"


BUILTIN_METRICS: dict[str, MetricKind] = {
    CHECKS: MetricKind.RATE,
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
    SESSIONS_INTERRUPTED: MetricKind.COUNTER,
    SESSION_STARTS: MetricKind.COUNTER,
    MISSED_ARRIVALS: MetricKind.COUNTER,
    STEP_ERRORS: MetricKind.COUNTER,
    CALL_TIMEOUTS: MetricKind.COUNTER,
}
for _protocol in Protocol:
    BUILTIN_METRICS[duration_metric(_protocol)] = MetricKind.TREND
    BUILTIN_METRICS[failed_metric(_protocol)] = MetricKind.RATE
    BUILTIN_METRICS[requests_metric(_protocol)] = MetricKind.COUNTER

SAMPLE_COLUMNS = ["metric", "ts", "value"]
TABLE_COLUMNS = [
    "metric",
    "endpoint",
    "kind",
    "count",
    "sum",
    "rate",
    "avg",
    "min",
    "med",
    "max",
    "p90",
    "p95",
    "p99",
]

Tags = tuple[tuple[str, str], ...]
SeriesKey = tuple[str, Tags]


class _Series:
    """Append-only ``(ts, value)`` buffer for one metric and tag set.

    Running totals are kept on append; only percentiles read the stored values.
    """

    __slots__ = ("data", "size", "total", "minimum", "maximum")

    def __init__(self, capacity: int = 64) -> None:
        self.data = np.empty((capacity, 2), dtype=float)
        self.size = 0
        self.total = 0.0
        self.minimum = math.inf
        self.maximum = -math.inf

    def append(self, ts: float, value: float) -> None:
        if self.size == len(self.data):
            grown = np.empty((len(self.data) * 2, 2), dtype=float)
            grown[: self.size] = self.data
            self.data = grown
        self.data[self.size] = (ts, value)
        self.size += 1
        self.total += value
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)

    def snapshot(self) -> _Snapshot:
        # Rows below size are never rewritten, so the view stays valid after growth
        return _Snapshot(self.size, self.total, self.minimum, self.maximum, self.data[: self.size])


@dataclass(frozen=True, eq=False)
class _Snapshot:
    count: int
    total: float
    minimum: float
    maximum: float
    rows: np.ndarray


class _Shard:
    """Series written by exactly one thread.

    The lock is only contended when a reader takes a snapshot.
    """

    __slots__ = ("series", "lock")

    def __init__(self) -> None:
        self.series: dict[SeriesKey, _Series] = {}
        self.lock = threading.Lock()


class MetricsCollector:
    """Thread-safe sample store for every call, check and session outcome.

    Each worker thread appends to its own shard of per-key series, so
    writers never contend with each other. Aggregates and threshold checks
    merge the per-key running totals; the full pandas DataFrame is only
    built for the run's outputs.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._local = threading.local()
        self._shards: list[_Shard] = []
        self._shards_lock = threading.Lock()
        self._kinds: dict[str, MetricKind] = dict(BUILTIN_METRICS)
        self.started_at = clock()

    def define(self, metric: str, kind: MetricKind) -> None:
        self._kinds[metric] = kind

    def kind_of(self, metric: str) -> MetricKind:
        kind = self._kinds.get(metric)
        if kind is not None:
            return kind
        if metric.endswith("_duration"):
            return MetricKind.TREND
        if metric.endswith(("_failed", "_rate")):
            return MetricKind.RATE
        return MetricKind.COUNTER

    def add(self, metric: str, value: float = 1.0, tags: Mapping[str, Any] | None = None) -> None:
        key = (metric, _clean_tags(tags or {}))
        shard = self._shard()
        with shard.lock:
            series = shard.series.get(key)
            if series is None:
                series = shard.series[key] = _Series()
            series.append(self._clock(), float(value))

    def record_call(self, result: CallResult, tags: Mapping[str, Any] | None = None) -> None:
        merged = {**(tags or {}), **result.tags}
        merged["endpoint"] = result.operation_tag
        merged["protocol"] = result.protocol.value
        if result.status is not None:
            merged["status"] = result.status
        if result.error:
            merged["error"] = result.error
        if result.status_class is StatusClass.EXPECTED_FAILURE:
            merged["expected"] = "true"

        self.add(duration_metric(result.protocol), result.latency_ms, merged)
        self.add(failed_metric(result.protocol), 1.0 if result.failed else 0.0, merged)
        self.add(requests_metric(result.protocol), 1.0, merged)
        if result.timed_out:
            self.add(CALL_TIMEOUTS, 1.0, merged)

    def record_checks(self, outcomes: Mapping[str, bool], tags: Mapping[str, Any] | None = None) -> bool:
        for name, passed in outcomes.items():
            self.add(CHECKS, 1.0 if passed else 0.0, {**(tags or {}), "check": name})
        return all(outcomes.values())

    def record_iteration(self, outcome: str, duration_ms: float, tags: Mapping[str, Any] | None = None) -> None:
        if outcome == "completed":
            self.add(ITERATIONS, 1.0, tags)
            self.add(ITERATION_DURATION, duration_ms, tags)
        else:
            self.add(SESSIONS_INTERRUPTED, 1.0, tags)

    def record_session_start(self, tags: Mapping[str, Any] | None = None) -> None:
        self.add(SESSION_STARTS, 1.0, tags)

    def record_missed_arrival(self, tags: Mapping[str, Any] | None = None) -> None:
        self.add(MISSED_ARRIVALS, 1.0, tags)

    def record_step_error(self, step: str, kind: str, tags: Mapping[str, Any] | None = None) -> None:
        self.add(STEP_ERRORS, 1.0, {**(tags or {}), "step": step, "error": kind})

    def keys(self) -> set[SeriesKey]:
        """Every distinct (metric, tags) pair recorded so far."""
        return {key for key, _ in self._snapshots()}

    def tag_values(self, metric: str, name: str) -> list[str]:
        values = {dict(tags).get(name) for key_metric, tags in self.keys() if key_metric == metric}
        return sorted(value for value in values if value is not None)

    def build_dataframe(self) -> pd.DataFrame:
        frames = []
        for (metric, tags), snapshot in self._snapshots():
            if not snapshot.count:
                continue
            frame = pd.DataFrame({"metric": metric, "ts": snapshot.rows[:, 0], "value": snapshot.rows[:, 1]})
            for name, value in tags:
                frame[name] = value
            frames.append(frame)
        if not frames:
            return pd.DataFrame(columns=SAMPLE_COLUMNS)
        return pd.concat(frames, ignore_index=True).sort_values("ts", kind="stable", ignore_index=True)

    def aggregate(self, metric: str, tags: Mapping[str, str] | Iterable[tuple[str, str]] = ()) -> MetricAggregate:
        """Merge every series of ``metric`` whose tags include all of ``tags``."""
        wanted = set(_clean_tags(dict(tags)))
        parts = [
            snapshot
            for (key_metric, key_tags), snapshot in self._snapshots()
            if key_metric == metric and wanted.issubset(key_tags)
        ]
        return MetricAggregate.merge(metric, self.kind_of(metric), parts, self.elapsed_s())

    def evaluate(self, thresholds: Sequence[Threshold]) -> list[ThresholdResult]:
        return [threshold.evaluate(self.aggregate(threshold.metric, threshold.tags)) for threshold in thresholds]

    def elapsed_s(self) -> float:
        return max(self._clock() - self.started_at, 1e-9)

    def _snapshots(self) -> list[tuple[SeriesKey, _Snapshot]]:
        with self._shards_lock:
            shards = list(self._shards)
        snapshots = []
        for shard in shards:
            with shard.lock:
                snapshots.extend((key, series.snapshot()) for key, series in shard.series.items())
        return snapshots

    def _shard(self) -> _Shard:
        shard = getattr(self._local, "shard", None)
        if shard is None:
            shard = _Shard()
            with self._shards_lock:
                self._shards.append(shard)
            self._local.shard = shard
        return shard


def _clean_tags(tags: Mapping[str, Any]) -> Tags:
    return tuple(sorted((str(key), str(val)) for key, val in tags.items() if val is not None))


@dataclass(frozen=True, eq=False)
class MetricAggregate:
    metric: str
    kind: MetricKind
    count: int = 0
    total: float = 0.0
    minimum: float = math.inf
    maximum: float = -math.inf
    chunks: tuple[np.ndarray, ...] = ()
    elapsed_s: float = 1.0

    @classmethod
    def merge(
        cls,
        metric: str,
        kind: MetricKind,
        parts: Sequence[_Snapshot],
        elapsed_s: float = 1.0,
    ) -> MetricAggregate:
        parts = [part for part in parts if part.count]
        if not parts:
            return cls(metric, kind, elapsed_s=elapsed_s)
        return cls(
            metric,
            kind,
            count=sum(part.count for part in parts),
            total=sum(part.total for part in parts),
            minimum=min(part.minimum for part in parts),
            maximum=max(part.maximum for part in parts),
            chunks=tuple(part.rows[:, 1] for part in parts),
            elapsed_s=elapsed_s,
        )

    @property
    def empty(self) -> bool:
        return self.count == 0

    @functools.cached_property
    def values(self) -> np.ndarray:
        if not self.chunks:
            return np.empty(0)
        return np.concatenate(self.chunks)

    def value(self, aggregation: str, percentile: float | None = None) -> float | None:
        if self.empty:
            return None
        if aggregation == "count":
            return float(self.count)
        if aggregation == "sum":
            return self.total
        if aggregation == "rate":
            if self.kind is MetricKind.COUNTER:
                return self.total / self.elapsed_s
            return self.total / self.count
        if aggregation == "avg":
            return self.total / self.count
        if aggregation == "min":
            return self.minimum
        if aggregation == "max":
            return self.maximum
        if aggregation == "med":
            return float(np.median(self.values))
        if aggregation == "p":
            return float(np.percentile(self.values, percentile))
        raise ValueError(f"unknown aggregation {aggregation!r}")


_THRESHOLD_KEY = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*(?:\{([^}]*)\})?\s*$")
_THRESHOLD_EXPR = re.compile(
    r"^\s*(avg|min|max|med|count|rate|sum|p\(\s*(\d+(?:\.\d+)?)\s*\))"
    r"\s*(<=|>=|==|!=|<|>)\s*(-?\d+(?:\.\d+)?)\s*$"
)
_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class Threshold:
    """A pass/fail predicate on one (metric, tag filter) aggregate."""

    metric: str
    aggregation: str
    op: str
    bound: float
    tags: Tags = ()
    percentile: float | None = None

    @classmethod
    def parse(cls, key: str, expression: str) -> Threshold:
        key_match = _THRESHOLD_KEY.match(key)
        if not key_match:
            raise ConfigError(f"invalid threshold metric {key!r}")
        metric, raw_tags = key_match.groups()
        tags = _parse_tag_filter(raw_tags or "", key)

        expr_match = _THRESHOLD_EXPR.match(expression)
        if not expr_match:
            raise ConfigError(f"invalid threshold expression {expression!r} for {key}")
        aggregation, percentile, op, bound = expr_match.groups()
        if percentile is not None:
            aggregation = "p"
            if not 0.0 <= float(percentile) <= 100.0:
                raise ConfigError(f"percentile out of range in {expression!r}")
        return cls(
            metric=metric,
            aggregation=aggregation,
            op=op,
            bound=float(bound),
            tags=tags,
            percentile=float(percentile) if percentile is not None else None,
        )

    @property
    def key(self) -> str:
        if not self.tags:
            return self.metric
        return f"{self.metric}{{{','.join(f'{k}:{v}' for k, v in self.tags)}}}"

    @property
    def expression(self) -> str:
        aggregation = f"p({self.percentile:g})" if self.aggregation == "p" else self.aggregation
        return f"{aggregation}{self.op}{self.bound:g}"

    def evaluate(self, aggregate: MetricAggregate) -> ThresholdResult:
        observed = aggregate.value(self.aggregation, self.percentile)
        if observed is None:
            return ThresholdResult(self, None, True)
        return ThresholdResult(self, observed, _OPERATORS[self.op](observed, self.bound))

    def __str__(self) -> str:
        return f"{self.key} {self.expression}"


def _parse_tag_filter(raw: str, key: str) -> Tags:
    pairs = []
    for part in filter(None, (item.strip() for item in raw.split(","))):
        name, sep, value = part.partition(":")
        if not sep or not name.strip() or not value.strip():
            raise ConfigError(f"invalid tag filter {part!r} in {key!r}")
        pairs.append((name.strip(), value.strip()))
    return tuple(pairs)


def parse_thresholds(declared: Mapping[str, Sequence[str]]) -> list[Threshold]:
    """Thresholds from a ``{"metric{tag:value}": ["p(95)<500", ...]}`` mapping."""
    return [Threshold.parse(key, expression) for key, expressions in declared.items() for expression in expressions]


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float | None
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.threshold.key,
            "expression": self.threshold.expression,
            "observed": self.observed,
            "passed": self.passed,
        }


class ThresholdMonitor:
    """Re-evaluates thresholds on an interval while the run is in progress."""

    def __init__(
        self,
        collector: MetricsCollector,
        thresholds: Sequence[Threshold],
        interval_s: float,
    ) -> None:
        self._collector = collector
        self._thresholds = list(thresholds)
        self._interval_s = interval_s
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.failing: set[str] = set()

    def start(self) -> None:
        if self._interval_s <= 0 or not self._thresholds:
            return
        thread = threading.Thread(target=self._run, name="threshold-monitor", daemon=True)
        thread.start()
        self._thread = thread

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval_s):
            for result in self._collector.evaluate(self._thresholds):
                name = str(result.threshold)
                if not result.passed and name not in self.failing:
                    LOGGER.warning("threshold %s failing (observed %.3f)", name, result.observed)
                    self.failing.add(name)
                elif result.passed and name in self.failing:
                    LOGGER.info("threshold %s recovered", name)
                    self.failing.discard(name)


def _describe(aggregate: MetricAggregate, endpoint: str) -> dict[str, Any]:
    row: dict[str, Any] = {
        "metric": aggregate.metric,
        "endpoint": endpoint,
        "kind": aggregate.kind.value,
        "count": aggregate.count,
        "sum": aggregate.value("sum"),
        "rate": aggregate.value("rate"),
    }
    if aggregate.kind is MetricKind.TREND:
        row.update(
            avg=aggregate.value("avg"),
            min=aggregate.value("min"),
            med=aggregate.value("med"),
            max=aggregate.value("max"),
            p90=aggregate.value("p", 90),
            p95=aggregate.value("p", 95),
            p99=aggregate.value("p", 99),
        )
    return row


def metric_table(collector: MetricsCollector) -> pd.DataFrame:
    """Per-metric statistics, overall (endpoint ``*``) and per endpoint tag."""
    metrics = sorted({metric for metric, _ in collector.keys()})
    if not metrics:
        return pd.DataFrame(columns=TABLE_COLUMNS)
    rows = []
    for metric in metrics:
        rows.append(_describe(collector.aggregate(metric), "*"))
        for endpoint in collector.tag_values(metric, "endpoint"):
            rows.append(_describe(collector.aggregate(metric, {"endpoint": endpoint}), endpoint))
    return pd.DataFrame(rows, columns=TABLE_COLUMNS)


@dataclass
class RunSummary:
    passed: bool
    thresholds: list[ThresholdResult]
    stages: list[StageReport]
    metrics: pd.DataFrame
    started_at: float
    finished_at: float
    namespace: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def missed_arrivals(self) -> int:
        return sum(stage.missed_arrivals for stage in self.stages)

    def to_dict(self) -> dict[str, Any]:
        metrics = self.metrics.astype(object).where(self.metrics.notna(), None)
        return {
            "passed": self.passed,
            "namespace": self.namespace,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_s": self.duration_s,
            "missed_arrivals": self.missed_arrivals,
            "thresholds": [result.to_dict() for result in self.thresholds],
            "stages": [stage.to_dict() for stage in self.stages],
            "metrics": metrics.to_dict(orient="records"),
            **self.extra,
        }


def summarize(
    collector: MetricsCollector,
    thresholds: Sequence[Threshold],
    stages: Sequence[StageReport],
    namespace: str | None = None,
) -> RunSummary:
    results = collector.evaluate(thresholds)
    for result in results:
        if not result.passed:
            LOGGER.warning("threshold %s failed (observed %.3f)", result.threshold, result.observed)
    return RunSummary(
        passed=all(result.passed for result in results),
        thresholds=results,
        stages=list(stages),
        metrics=metric_table(collector),
        started_at=collector.started_at,
        finished_at=time.time(),
        namespace=namespace,
    )


def _fmt(value: Any, suffix: str = "") -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "-"
    return f"{value:.2f}{suffix}"


def format_summary(summary: RunSummary) -> str:
    lines = [f"Run finished in {summary.duration_s:.1f}s"]
    if summary.namespace:
        lines.append(f"Namespace: {summary.namespace}")

    lines.append("Stages:")
    for stage in summary.stages:
        lines.append(
            f"  {stage.name} [{stage.mode}] starts={stage.started} completed={stage.completed} "
            f"interrupted={stage.interrupted} missed_arrivals={stage.missed_arrivals} "
            f"peak_vus={stage.peak_active}"
        )

    lines.append("Metrics:")
    for row in summary.metrics.to_dict(orient="records"):
        label = row["metric"] if row["endpoint"] == "*" else f"    {{endpoint:{row['endpoint']}}}"
        if row["kind"] == MetricKind.TREND.value:
            stats = (
                f"avg={_fmt(row['avg'])} min={_fmt(row['min'])} med={_fmt(row['med'])} "
                f"max={_fmt(row['max'])} p(90)={_fmt(row['p90'])} p(95)={_fmt(row['p95'])} "
                f"p(99)={_fmt(row['p99'])}"
            )
        elif row["kind"] == MetricKind.RATE.value:
            passes = int(row["sum"] or 0)
            stats = f"rate={_fmt((row['rate'] or 0.0) * 100, '%')} ({passes}/{row['count']})"
        else:
            stats = f"count={int(row['sum'] or 0)} rate={_fmt(row['rate'], '/s')}"
        lines.append(f"  {label:<40} {stats}")

    if summary.thresholds:
        lines.append("Thresholds:")
        for result in summary.thresholds:
            mark = "✓" if result.passed else "✗"
            observed = "no data" if result.observed is None else f"observed {result.observed:.3f}"
            lines.append(f"  {mark} {result.threshold} ({observed})")

    lines.append(f"Verdict: {'PASSED' if summary.passed else 'FAILED'}")
    return "\n".join(lines)


__all__ = [
    "CALL_TIMEOUTS",
    "CHECKS",
    "ITERATIONS",
    "ITERATION_DURATION",
    "MISSED_ARRIVALS",
    "SESSIONS_INTERRUPTED",
    "SESSION_STARTS",
    "STEP_ERRORS",
    "MetricAggregate",
    "MetricKind",
    "MetricsCollector",
    "RunSummary",
    "Threshold",
    "ThresholdMonitor",
    "ThresholdResult",
    "duration_metric",
    "failed_metric",
    "format_summary",
    "metric_table",
    "parse_thresholds",
    "requests_metric",
    "summarize",
]
