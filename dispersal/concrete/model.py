"""
A minimal simulation host for dispersal rules.

This module provides the Simulation class, which owns an ArrayGrid and a list
of rules, and applies every rule once to every live cell at each step. It is
the reference implementation of the host contract rules are written against:
values are read at the start of the step, mass is added through the grid, and
a random generator is passed explicitly to every call.

Randomness:
    Every row of the grid draws from its own generator, seeded from the
    simulation seed, the step number and the row. The writes of each row are
    buffered and applied in row order at the end of the step. Results
    therefore do not depend on `max_workers` or on the order rows are
    processed in, down to the last bit of floating point sums.

Usage:
    from dispersal import ArrayGrid, HumanDispersal, Simulation

    rule = HumanDispersal(human_pop, scale=2)
    sim = Simulation(ArrayGrid(initial), [rule], seed=42)
    sim.run(100)
    sim.grid.values
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from dispersal.abstract.grid import AbstractWritableGrid
from dispersal.abstract.rule import AbstractRule
from dispersal.concrete.diagnostics import DispersalCollector
from dispersal.concrete.grid import ArrayGrid
from dispersal.concrete.human import NO_DISPERSAL, DispersalOutcome
from dispersal.types_ import GridIndex, GridShape, Real, TimeT


class _RowWriter(AbstractWritableGrid):
    """The grid as seen by the cells of one row during a step.

    Reads go to the grid. Writes are buffered until `flush`, which the
    simulation calls row by row in row order, so every destination receives
    its additions in the same order whichever thread ran the row.
    """

    def __init__(self, grid: ArrayGrid) -> None:
        self._grid = grid
        self._writes: list[tuple[Real, GridIndex]] = []

    @property
    def shape(self) -> GridShape:
        return self._grid.shape

    def get(self, index: GridIndex) -> float:
        return self._grid.get(index)

    def add(self, amount: Real, index: GridIndex) -> None:
        self._writes.append((amount, index))

    def isinbounds(self, index: GridIndex) -> bool:
        return self._grid.isinbounds(index)

    def ismasked(self, index: GridIndex) -> bool:
        return self._grid.ismasked(index)

    def flush(self) -> None:
        for amount, index in self._writes:
            self._grid.add(amount, index)
        self._writes.clear()


class Simulation:
    """Step loop applying cell rules to an ArrayGrid."""

    random: np.random.Generator
    running: bool
    _seed: int | Sequence[int]

    def __init__(
        self,
        grid: ArrayGrid,
        rules: Iterable[AbstractRule],
        seed: int | Sequence[int] | None = None,
        timestep: TimeT = 1.0,
        max_workers: int = 1,
        collector: DispersalCollector | None = None,
    ) -> None:
        """Create a new simulation.

        Parameters
        ----------
        grid : ArrayGrid
            The grid holding the population.
        rules : Iterable[AbstractRule]
            Rules applied, in order, to every live cell at every step.
        seed : int | Sequence[int] | None, optional
            The seed of the simulation's generators.
        timestep : TimeT, optional
            Duration of a step, for rules that depend on it, by default 1.0.
        max_workers : int, optional
            Number of threads processing rows concurrently, by default 1.
        collector : DispersalCollector | None, optional
            Receives the dispersal outcomes of every step.
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.grid = grid
        self.rules = list(rules)
        self.timestep = timestep
        self.max_workers = max_workers
        self.collector = collector
        self.random = None
        self.reset_randomizer(seed)
        self.running = True
        self.last_outcome = NO_DISPERSAL
        self._steps = 0

    @property
    def steps(self) -> int:
        """Get the current step count."""
        return self._steps

    @property
    def seed(self) -> int | Sequence[int]:
        return self._seed

    def reset_randomizer(self, seed: int | Sequence[int] | None) -> None:
        """Reset the simulation random number generator.

        Parameters
        ----------
        seed : int | Sequence[int] | None
            A new seed for the RNG; if None, a fresh seed is drawn from the OS
        """
        if seed is None:
            seed = np.random.SeedSequence().entropy
        assert seed is not None
        self._seed = seed
        self.random = np.random.default_rng(seed=self._seed)

    def row_generator(self, row: int) -> np.random.Generator:
        """Generator for `row` at the current step."""
        seed = list(self._seed) if isinstance(self._seed, Sequence) else [self._seed]
        return np.random.default_rng([*seed, self._steps, row])

    def run(self, steps: int) -> None:
        """Run `steps` steps, or until `running` is set to False."""
        for _ in range(steps):
            if not self.running:
                break
            self.step()

    def step(self) -> DispersalOutcome:
        """Run a single step.

        Rows run sequentially or on the thread pool. Their writes are then
        applied to the grid in row order, so floating point sums, and hence
        results, are identical for any `max_workers`.

        Returns
        -------
        DispersalOutcome
            Totals over every rule execution of the step.
        """
        self._steps += 1
        rows = range(self.grid.shape[0])
        self.grid.begin_step()
        try:
            if self.max_workers == 1:
                results = [self._step_row(row) for row in rows]
            else:
                with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                    results = list(executor.map(self._step_row, rows))
            outcomes = []
            for outcome, writer in results:
                writer.flush()
                outcomes.append(outcome)
        finally:
            self.grid.end_step()
        if self.collector is not None:
            total = self.collector.collect(self._steps, outcomes, self.grid.total())
        else:
            total = sum(outcomes, DispersalOutcome())
        self.last_outcome = total
        return total

    def _step_row(self, row: int) -> tuple[DispersalOutcome, _RowWriter]:
        grid = self.grid
        writer = _RowWriter(grid)
        rng = self.row_generator(row)
        total = NO_DISPERSAL
        for col in range(grid.shape[1]):
            index = (row, col)
            value = grid.get(index)
            if value == 0 or grid.ismasked(index):
                continue
            for rule in self.rules:
                outcome = rule.execute(writer, value, index, rng)
                if isinstance(outcome, DispersalOutcome):
                    total = total + outcome
        return total, writer
