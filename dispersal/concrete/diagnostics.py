"""
Collection of per-step dispersal diagnostics.

Masked and out-of-bounds destinations make dispersal lose mass under the
"discard" policy. :class:`DispersalCollector` records, for every step, how
many events were drawn and how much mass was dispersed, discarded and
retained, together with the total population after the step. Frames are
stored as Polars LazyFrames and concatenated on read.

Usage:
    collector = DispersalCollector(seed=42)
    sim = Simulation(grid, [rule], seed=42, collector=collector)
    sim.run(10)
    collector.data.select("step", "discarded")
"""

from __future__ import annotations

from collections.abc import Iterable

import polars as pl

from dispersal.concrete.human import DispersalOutcome
from dispersal.types_ import DataFrame, LazyFrame

_SCHEMA = {
    "step": pl.Int64,
    "seed": pl.String,
    "events": pl.Int64,
    "dispersed": pl.Int64,
    "discarded": pl.Int64,
    "retained": pl.Int64,
    "population": pl.Float64,
}


class DispersalCollector:
    """In-memory collector of per-step dispersal totals."""

    _frames: list[LazyFrame]

    def __init__(self, seed: int | str | None = None) -> None:
        """
        Initialize the collector.

        Parameters
        ----------
        seed : int | str | None, optional
            Seed of the simulation, stored with every row.
        """
        self.seed = seed
        self._frames = []

    def collect(
        self,
        step: int,
        outcomes: Iterable[DispersalOutcome],
        population: float,
    ) -> DispersalOutcome:
        """
        Record the outcomes of one step.

        Parameters
        ----------
        step : int
            The step the outcomes belong to.
        outcomes : Iterable[DispersalOutcome]
            The outcomes of every rule execution in the step.
        population : float
            Total population after the step.

        Returns
        -------
        DispersalOutcome
            The totals of the step.
        """
        total = sum(outcomes, DispersalOutcome())
        self._frames.append(
            pl.LazyFrame(
                [
                    {
                        "step": step,
                        "seed": str(self.seed),
                        "events": total.events,
                        "dispersed": total.dispersed,
                        "discarded": total.discarded,
                        "retained": total.retained,
                        "population": float(population),
                    }
                ],
                schema=_SCHEMA,
            )
        )
        return total

    @property
    def data(self) -> DataFrame:
        """
        Retrieve the collected data as an eagerly evaluated Polars DataFrame.

        Returns
        -------
        pl.DataFrame
            One row per collected step, in collection order.
        """
        if not self._frames:
            return pl.DataFrame(schema=_SCHEMA)
        return pl.concat([lf.collect() for lf in self._frames])

    def reset(self) -> None:
        """Delete the collected data."""
        self._frames = []
