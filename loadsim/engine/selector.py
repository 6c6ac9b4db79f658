from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Generic, Iterable, Mapping, TypeVar

from ..errors import ConfigError

T = TypeVar("T")


@dataclass(frozen=True)
class WeightedTable(Generic[T]):
    """Ordered (choice, weight) pairs; weights are normalised at selection time."""

    entries: tuple[tuple[T, float], ...]

    def __post_init__(self) -> None:
        if not self.entries:
            raise ConfigError("weighted table needs at least one entry")
        for choice, weight in self.entries:
            if weight < 0:
                raise ConfigError(f"negative weight {weight} for {choice!r}")
        if sum(weight for _, weight in self.entries) <= 0:
            raise ConfigError("weighted table weights must sum to > 0")

    @classmethod
    def of(cls, *pairs: tuple[T, float]) -> WeightedTable[T]:
        return cls(tuple(pairs))

    @classmethod
    def from_mapping(cls, weights: Mapping[T, float]) -> WeightedTable[T]:
        return cls(tuple(weights.items()))

    @classmethod
    def uniform(cls, choices: Iterable[T]) -> WeightedTable[T]:
        return cls(tuple((choice, 1.0) for choice in choices))

    def cutoffs(self) -> tuple[float, ...]:
        total = sum(weight for _, weight in self.entries)
        running = 0.0
        cutoffs = []
        for _, weight in self.entries:
            running += weight
            cutoffs.append(running / total)
        return tuple(cutoffs)

    def normalised(self) -> dict[T, float]:
        total = sum(weight for _, weight in self.entries)
        return {choice: weight / total for choice, weight in self.entries}

    def pick(self, rng: random.Random) -> T:
        return select(self, rng.random())


def select(table: WeightedTable[T], draw: float) -> T:
    """First entry whose cumulative cutoff exceeds ``draw``; ties go to table order."""
    if not 0.0 <= draw < 1.0:
        raise ValueError(f"draw must be in [0, 1), got {draw}")
    for (choice, _), cutoff in zip(table.entries, table.cutoffs()):
        if cutoff > draw:
            return choice
    # Float rounding can leave the last cutoff a hair under 1.0
    return next(choice for choice, weight in reversed(table.entries) if weight > 0)


__all__ = ["WeightedTable", "select"]
