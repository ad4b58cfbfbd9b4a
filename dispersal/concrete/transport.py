"""
Transport modes: turning an expected number of dispersers into discrete events.

A transport mode is a closed set of immutable configurations. The single
operation on them, :func:`generate_events`, dispatches on the mode with
pattern matching and returns the sizes of the dispersal events of one source
cell for one step.

Modes:
    BatchGroups(max_event_size):
        The total `min(N * rate, N)` (truncated) always disperses. It is split
        into events of uniformly random size in [1, max_event_size].
    HierarchicalGroups(scalar):
        A Binomial(N, rate) number of events, each of Poisson(N * scalar)
        size. The loop stops at the first event that would exceed N, so the
        total is random and may fall short of the binomial expectation.

Both modes never emit more than the source population N in total.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from dispersal.types_ import Real


@dataclass(frozen=True, slots=True)
class BatchGroups:
    """Fixed total split into uniformly sized batches.

    `max_event_size=None` uses the `max_dispersers` of the rule.
    """

    max_event_size: int | None = None

    def __post_init__(self) -> None:
        if self.max_event_size is not None and self.max_event_size < 1:
            raise ValueError(f"max_event_size must be at least 1, got {self.max_event_size}")


@dataclass(frozen=True, slots=True)
class HierarchicalGroups:
    """Binomial number of Poisson sized events."""

    scalar: float = 1e-8

    def __post_init__(self) -> None:
        if not math.isfinite(self.scalar) or self.scalar < 0:
            raise ValueError(f"scalar must be a non-negative number, got {self.scalar}")


TransportMode = BatchGroups | HierarchicalGroups


def generate_events(
    mode: TransportMode,
    population: Real,
    rate: Real,
    rng: np.random.Generator,
    max_dispersers: Real = 100,
) -> list[int]:
    """Draw the sizes of the dispersal events leaving one cell in one step.

    Parameters
    ----------
    mode : TransportMode
        The transport mode.
    population : Real
        Current population of the source cell, truncated to a count.
    rate : Real
        Dispersal probability per individual.
    rng : np.random.Generator
        Random generator to draw from.
    max_dispersers : Real, optional
        Largest batch for `BatchGroups()` without an explicit size, by default 100.

    Returns
    -------
    list[int]
        Positive event sizes, summing to at most `population`.

    Raises
    ------
    TypeError
        If `mode` is not a transport mode.
    """
    n = math.trunc(population)
    if n <= 0 or rate <= 0:
        return []
    match mode:
        case BatchGroups(max_event_size=max_event_size):
            max_size = math.trunc(max_dispersers if max_event_size is None else max_event_size)
            total = math.trunc(min(population * rate, population))
            events = []
            dispersed = 0
            while dispersed < total:
                size = min(int(rng.integers(1, max_size, endpoint=True)), total - dispersed)
                events.append(size)
                dispersed += size
            return events
        case HierarchicalGroups(scalar=scalar):
            nevents = int(rng.binomial(n, min(float(rate), 1.0)))
            events = []
            dispersed = 0
            for _ in range(nevents):
                size = int(rng.poisson(population * scalar))
                if size + dispersed > population:
                    break
                if size:
                    events.append(size)
                    dispersed += size
            return events
        case _:
            raise TypeError(f"Unknown transport mode {mode!r}")
