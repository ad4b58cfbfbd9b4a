"""
Numpy-backed writable grid.

This module provides :class:`ArrayGrid`, a double-buffered implementation of
:class:`dispersal.abstract.grid.AbstractWritableGrid`. Rules read cell values
from the current buffer and add mass to the next buffer, so every cell sees
the state at the start of the step regardless of the order cells are visited
in. Writes are serialized with a lock, which makes `add` atomic when the host
executes cells from several threads.

Usage:
    grid = ArrayGrid(initial, mask=land)
    grid.begin_step()
    rule.execute(grid, grid.get((i, j)), (i, j), rng)
    grid.end_step()
"""

from __future__ import annotations

import threading

import numpy as np

from dispersal.abstract.grid import AbstractWritableGrid
from dispersal.utils import copydoc
from dispersal.types_ import GridIndex, GridShape, Real


@copydoc(AbstractWritableGrid)
class ArrayGrid(AbstractWritableGrid):
    """Double-buffered numpy implementation of AbstractWritableGrid.

    Parameters
    ----------
    values : array-like
        Initial cell values.
    mask : array-like | None, optional
        Boolean array, True where cells may hold population. Cells where it
        is False are masked. Defaults to no mask.
    """

    _values: np.ndarray
    _next: np.ndarray
    _mask: np.ndarray | None

    def __init__(self, values, mask=None) -> None:
        values = np.array(values, dtype=np.float64)
        if values.ndim != 2:
            raise ValueError(f"ArrayGrid expects a 2D array, got {values.ndim} dimensions")
        if mask is not None:
            mask = np.asarray(mask, dtype=bool)
            if mask.shape != values.shape:
                raise ValueError(
                    f"Mask shape {mask.shape} does not match grid shape {values.shape}"
                )
        self._values = values
        self._next = values.copy()
        self._mask = mask
        self._lock = threading.Lock()
        self._in_step = False

    @property
    def shape(self) -> GridShape:
        return (self._values.shape[0], self._values.shape[1])

    @property
    def values(self) -> np.ndarray:
        """The current buffer. Writes made during a step appear after `end_step`."""
        return self._values

    @property
    def mask(self) -> np.ndarray | None:
        return self._mask

    def total(self) -> float:
        """Sum of the current buffer over unmasked cells."""
        if self._mask is None:
            return float(self._values.sum())
        return float(self._values[self._mask].sum())

    def begin_step(self) -> None:
        """Start a step: the next buffer starts as a copy of the current one."""
        np.copyto(self._next, self._values)
        self._in_step = True

    def end_step(self) -> None:
        """Publish the writes of the step by swapping buffers."""
        self._values, self._next = self._next, self._values
        self._in_step = False

    def get(self, index: GridIndex) -> float:
        return float(self._values[index[0], index[1]])

    def add(self, amount: Real, index: GridIndex) -> None:
        target = self._next if self._in_step else self._values
        with self._lock:
            target[index[0], index[1]] += amount

    def isinbounds(self, index: GridIndex) -> bool:
        return 0 <= index[0] < self._values.shape[0] and 0 <= index[1] < self._values.shape[1]

    def ismasked(self, index: GridIndex) -> bool:
        if self._mask is None:
            return False
        if not self.isinbounds(index):
            return True
        return not self._mask[index[0], index[1]]
