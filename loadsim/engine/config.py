from __future__ import annotations

import dataclasses
import enum
import math
import re
import types
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Iterator, Mapping, Sequence

from ..errors import ConfigError

if TYPE_CHECKING:
    from .collector import Threshold
    from .session import SessionSpec

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | float | int) -> float:
    """Seconds from a number or a k6-style string such as ``"4m30s"`` or ``"500ms"``."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(number + unit for number, unit in parts) != text:
                raise ConfigError(f"invalid duration {value!r}") from None
            seconds = sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)
    if seconds < 0 or math.isnan(seconds) or math.isinf(seconds):
        raise ConfigError(f"duration must be a finite value >= 0, got {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    minutes, secs = divmod(seconds, 60)
    if minutes and secs:
        return f"{minutes:.0f}m{secs:g}s"
    if minutes:
        return f"{minutes:.0f}m"
    return f"{secs:g}s"


class ExecutorMode(str, enum.Enum):
    CONSTANT = "constant"
    RAMP = "ramp"
    FIXED_ITERATIONS = "fixed_iterations"


@dataclass(frozen=True)
class Stage:
    """One block of a load profile: an executor, its pacing and the session it drives.

    Arrival-rate stages (constant/ramp) use ``start_rate``/``end_rate``,
    ``duration``, ``max_concurrency`` and ``preallocated_concurrency``.
    Fixed-iteration stages use ``concurrency``, ``iterations_per_worker`` and
    ``max_duration``. ``start_time`` is an absolute offset into the run; when
    None the stage starts as soon as the previous stage's window ends.
    """

    name: str
    session: SessionSpec
    mode: ExecutorMode = ExecutorMode.CONSTANT
    start_rate: float = 0.0
    end_rate: float | None = None
    duration: float = 0.0
    max_concurrency: int = 1
    preallocated_concurrency: int = 0
    concurrency: int = 0
    iterations_per_worker: int = 0
    max_duration: float = 0.0
    start_time: float | None = None
    graceful_stop: float = 30.0
    tags: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", types.MappingProxyType(dict(self.tags)))
        if not self.name:
            raise ConfigError("stage name must not be empty")
        if self.start_time is not None and self.start_time < 0:
            raise ConfigError(f"{self.name}: start_time must be >= 0, got {self.start_time}")
        if self.graceful_stop < 0:
            raise ConfigError(f"{self.name}: graceful_stop must be >= 0, got {self.graceful_stop}")

        if self.mode is ExecutorMode.FIXED_ITERATIONS:
            if self.concurrency < 1:
                raise ConfigError(f"{self.name}: concurrency must be >= 1, got {self.concurrency}")
            if self.iterations_per_worker < 1:
                raise ConfigError(
                    f"{self.name}: iterations_per_worker must be >= 1, got {self.iterations_per_worker}"
                )
            if self.max_duration <= 0:
                raise ConfigError(f"{self.name}: max_duration must be > 0, got {self.max_duration}")
            return

        if self.end_rate is None:
            object.__setattr__(self, "end_rate", self.start_rate)
        if self.mode is ExecutorMode.CONSTANT and self.end_rate != self.start_rate:
            raise ConfigError(f"{self.name}: constant stages cannot change rate")
        if self.start_rate < 0 or self.end_rate < 0:
            raise ConfigError(f"{self.name}: rates must be >= 0")
        if self.duration <= 0:
            raise ConfigError(f"{self.name}: duration must be > 0, got {self.duration}")
        if self.max_concurrency < 1:
            raise ConfigError(f"{self.name}: max_concurrency must be >= 1, got {self.max_concurrency}")
        if not 0 <= self.preallocated_concurrency <= self.max_concurrency:
            raise ConfigError(
                f"{self.name}: preallocated_concurrency must be between 0 and max_concurrency "
                f"({self.max_concurrency}), got {self.preallocated_concurrency}"
            )

    @classmethod
    def constant(
        cls,
        name: str,
        session: SessionSpec,
        rate: float,
        duration: float | str,
        max_concurrency: int,
        preallocated: int | None = None,
        **kwargs,
    ) -> Stage:
        return cls(
            name=name,
            session=session,
            mode=ExecutorMode.CONSTANT,
            start_rate=rate,
            end_rate=rate,
            duration=parse_duration(duration),
            max_concurrency=max_concurrency,
            preallocated_concurrency=max_concurrency if preallocated is None else preallocated,
            **kwargs,
        )

    @classmethod
    def ramp(
        cls,
        name: str,
        session: SessionSpec,
        start_rate: float,
        end_rate: float,
        duration: float | str,
        max_concurrency: int,
        preallocated: int | None = None,
        **kwargs,
    ) -> Stage:
        return cls(
            name=name,
            session=session,
            mode=ExecutorMode.RAMP,
            start_rate=start_rate,
            end_rate=end_rate,
            duration=parse_duration(duration),
            max_concurrency=max_concurrency,
            preallocated_concurrency=max_concurrency if preallocated is None else preallocated,
            **kwargs,
        )

    @classmethod
    def fixed_iterations(
        cls,
        name: str,
        session: SessionSpec,
        concurrency: int,
        iterations: int,
        max_duration: float | str,
        **kwargs,
    ) -> Stage:
        return cls(
            name=name,
            session=session,
            mode=ExecutorMode.FIXED_ITERATIONS,
            concurrency=concurrency,
            iterations_per_worker=iterations,
            max_duration=parse_duration(max_duration),
            **kwargs,
        )

    @property
    def is_arrival_rate(self) -> bool:
        return self.mode is not ExecutorMode.FIXED_ITERATIONS

    @property
    def window(self) -> float:
        return self.max_duration if self.mode is ExecutorMode.FIXED_ITERATIONS else self.duration

    def rate_at(self, elapsed: float) -> float:
        """Target arrivals per second at ``elapsed`` seconds into the stage."""
        if not self.is_arrival_rate:
            return 0.0
        fraction = min(max(elapsed / self.duration, 0.0), 1.0)
        return self.start_rate + (self.end_rate - self.start_rate) * fraction

    def arrival_offset(self, tick: int) -> float | None:
        """Seconds into the stage at which arrival ``tick`` (0-based) is due.

        Arrivals follow the integral of the (linearly interpolated) rate, so
        tick ``k`` lands where the cumulative expected arrivals reach ``k``.
        None when the rate never accumulates that many arrivals.
        """
        if tick < 0:
            raise ValueError(f"tick must be >= 0, got {tick}")
        r0 = self.start_rate
        slope = (self.end_rate - r0) / self.duration
        if slope == 0:
            if r0 == 0:
                return None
            return tick / r0
        discriminant = r0 * r0 + 2.0 * slope * tick
        if discriminant < 0:
            return None
        return (-r0 + math.sqrt(discriminant)) / slope

    def expected_arrivals(self) -> float:
        return (self.start_rate + self.end_rate) / 2.0 * self.duration if self.is_arrival_rate else 0.0

    def with_window(self, seconds: float) -> Stage:
        if self.mode is ExecutorMode.FIXED_ITERATIONS:
            return dataclasses.replace(self, max_duration=seconds)
        return dataclasses.replace(self, duration=seconds)


@dataclass(frozen=True)
class ScheduledStage:
    stage: Stage
    offset: float

    @property
    def end(self) -> float:
        return self.offset + self.stage.window


@dataclass(frozen=True)
class LoadProfile:
    """Ordered stages; each is placed on the run timeline by ``schedule``."""

    stages: tuple[Stage, ...]
    total_duration: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        if not self.stages:
            raise ConfigError("load profile needs at least one stage")
        names = [stage.name for stage in self.stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigError(f"duplicate stage names: {', '.join(duplicates)}")
        if self.total_duration is not None:
            end = self.end
            if not math.isclose(end, self.total_duration, abs_tol=1e-6):
                raise ConfigError(
                    f"stages end at {end:g}s but the profile declares {self.total_duration:g}s"
                )

    def __iter__(self) -> Iterator[Stage]:
        return iter(self.stages)

    def schedule(self) -> list[ScheduledStage]:
        scheduled: list[ScheduledStage] = []
        previous_end = 0.0
        for stage in self.stages:
            offset = stage.start_time if stage.start_time is not None else previous_end
            entry = ScheduledStage(stage=stage, offset=offset)
            scheduled.append(entry)
            previous_end = entry.end
        return scheduled

    @property
    def end(self) -> float:
        return max(entry.end for entry in self.schedule())

    def with_window(self, seconds: float) -> LoadProfile:
        """Every stage squeezed to ``seconds`` and laid back to back by declared order."""
        stages = []
        offsets: dict[float, float] = {}
        cursor = 0.0
        for entry in self.schedule():
            # Stages that shared a start offset keep sharing one
            if entry.offset not in offsets:
                offsets[entry.offset] = cursor
                cursor += seconds
            stage = entry.stage.with_window(seconds)
            stages.append(_at(stage, offsets[entry.offset]))
        return LoadProfile(tuple(stages))


def _at(stage: Stage, offset: float) -> Stage:
    return dataclasses.replace(stage, start_time=offset)


@dataclass(frozen=True)
class Workload:
    """A named load profile plus the thresholds that decide its verdict."""

    name: str
    profile: LoadProfile
    thresholds: Sequence[Threshold] = ()
    description: str | None = None

    def __iter__(self) -> Iterable[Stage]:
        return iter(self.profile)


__all__ = [
    "ExecutorMode",
    "LoadProfile",
    "ScheduledStage",
    "Stage",
    "Workload",
    "format_duration",
    "parse_duration",
]
