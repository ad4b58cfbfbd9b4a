"""Abstract writable grid interface.

This module defines the *interface only* for the grids dispersal rules write
into. Concrete behavior lives in concrete implementations (e.g. the numpy-backed
:class:`dispersal.concrete.grid.ArrayGrid`) or in an external simulation host.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from dispersal.types_ import GridIndex, GridShape, Real


class AbstractWritableGrid(ABC):
    """Interface for grids that rules read source values from and add mass to.

    Rules only read through `get` and only write through `add`. Hosts that
    execute cells concurrently must make `add` atomic, as two source cells can
    disperse into the same destination during one step.
    """

    @property
    @abstractmethod
    def shape(self) -> GridShape: ...

    @abstractmethod
    def get(self, index: GridIndex) -> float:
        """Return the value of the cell at `index` at the start of the step."""
        ...

    @abstractmethod
    def add(self, amount: Real, index: GridIndex) -> None:
        """Add `amount` to the cell at `index` (negative to remove)."""
        ...

    @abstractmethod
    def isinbounds(self, index: GridIndex) -> bool: ...

    @abstractmethod
    def ismasked(self, index: GridIndex) -> bool: ...
