"""Abstract rule interface.

A rule is executed by the simulation host once per live cell per step. It
receives the grid, the current value of the cell, the cell index and an
explicit random generator, and produces side effects only through
:meth:`AbstractWritableGrid.add`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from dispersal.abstract.grid import AbstractWritableGrid
from dispersal.types_ import Generator, GridIndex, Real


class AbstractRule(ABC):
    """Base class for rules applied to single cells of a writable grid."""

    @abstractmethod
    def execute(
        self,
        grid: AbstractWritableGrid,
        value: Real,
        index: GridIndex,
        rng: Generator,
    ) -> Any:
        """Apply the rule to one cell.

        Parameters
        ----------
        grid : AbstractWritableGrid
            The grid to read from and write to.
        value : Real
            The value of the cell at the start of the step.
        index : GridIndex
            The (row, column) index of the cell.
        rng : Generator
            The random generator to draw from. Hosts that execute cells in
            parallel should pass independent generators per task.

        Returns
        -------
        Any
            Rule-specific bookkeeping. Hosts may ignore it.
        """
        ...
