"""
Gravity index precomputation.

For every coarse cell the gravity towards every other coarse cell is

    g(c, d) = (H_c ** beta) * (H_d ** beta) / D(c, d) ** gamma

where `H` is the downsampled human population and `D` the distance between
the cells. The `nshortlisted` destinations with the largest gravity are kept
and turned into a cumulative distribution over the retained candidates only,
ordered from the lowest to the highest gravity, so that a uniform draw in
[0, 1) can be mapped to a destination with a binary search.

Classes:
    Shortlist:
        Read-only view over the cumulative distribution of one source cell.
    GravityIndex:
        The shortlists of every coarse cell, stored as three dense arrays.

Functions:
    build_gravity_index:
        Downsample, build distances and compute every shortlist. The work is
        split into one task per coarse column on a bounded thread pool. Each
        worker checks out a private scratch arena, and tasks write disjoint
        columns of the output, so no locking is needed.

The number of workers defaults to the `DISPERSAL_MAX_WORKERS` environment
variable, and to the `ThreadPoolExecutor` default when it is unset.
"""

from __future__ import annotations

import os
import queue
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import polars as pl

from dispersal.concrete.distances import build_distances
from dispersal.concrete.downsampling import downsample
from dispersal.concrete.ordering import CellGravity, CellInterval
from dispersal.types_ import Aggregator, DataFrame, GridIndex, GridShape, Real
from dispersal.utils import env_int

MAX_WORKERS_ENV = "DISPERSAL_MAX_WORKERS"


def default_max_workers() -> int:
    """Return the default size of the precomputation thread pool."""
    return env_int(MAX_WORKERS_ENV) or min(32, (os.cpu_count() or 1) + 4)


class Shortlist:
    """Cumulative distribution over the destinations of one source cell.

    Entries are ordered from the lowest to the highest gravity. Cumulative
    proportions are non-decreasing (strictly increasing when every retained
    gravity is positive) and the last one is exactly 1.0.
    """

    __slots__ = ("_cumprops", "_destinations")

    def __init__(self, cumprops: np.ndarray, destinations: np.ndarray) -> None:
        if cumprops.ndim != 1 or destinations.shape != (cumprops.shape[0], 2):
            raise ValueError(
                "Shortlist expects cumprops of shape (n,) and destinations of shape (n, 2)"
            )
        self._cumprops = cumprops
        self._destinations = destinations

    @classmethod
    def from_gravities(cls, gravities: Sequence[CellGravity]) -> Shortlist:
        """Build a shortlist from gravity records ordered from highest to lowest."""
        if not gravities:
            raise ValueError("Cannot build a shortlist from no gravities")
        intervals = gravity_to_intervals(gravities)
        cumprops = np.array([interval.cumprop for interval in intervals], dtype=np.float64)
        destinations = np.array([interval.index for interval in intervals], dtype=np.intp)
        return cls(cumprops, destinations)

    def __len__(self) -> int:
        return self._cumprops.shape[0]

    def __getitem__(self, k: int) -> CellInterval:
        dest = self._destinations[k]
        return CellInterval(float(self._cumprops[k]), (int(dest[0]), int(dest[1])))

    def __iter__(self) -> Iterator[CellInterval]:
        for k in range(len(self)):
            yield self[k]

    def __repr__(self) -> str:
        return f"Shortlist(n={len(self)}, top={self[len(self) - 1].index})"

    @property
    def cumprops(self) -> np.ndarray:
        return self._cumprops

    @property
    def destinations(self) -> np.ndarray:
        return self._destinations

    @property
    def proportions(self) -> np.ndarray:
        """Probability of each entry."""
        return np.diff(self._cumprops, prepend=0.0)

    def search(self, u):
        """Position of the first entry whose cumulative proportion is >= `u`.

        Accepts a scalar or an array of draws.
        """
        pos = np.searchsorted(self._cumprops, u, side="left")
        pos = np.minimum(pos, len(self) - 1)
        return int(pos) if np.ndim(pos) == 0 else pos

    def sample(self, rng: np.random.Generator, size: int | None = None) -> np.ndarray:
        """Draw coarse destination indices.

        Returns an array of shape (2,) when `size` is None, else (size, 2).
        """
        return self._destinations[self.search(rng.random(size))]


class GravityIndex:
    """The precomputed shortlists of every coarse cell.

    Instances are immutable: parameter changes build a new index.
    """

    __slots__ = ("_cumprops", "_destinations", "_valid", "_scale")

    def __init__(
        self,
        cumprops: np.ndarray,
        destinations: np.ndarray,
        valid: np.ndarray,
        scale: int,
    ) -> None:
        for arr in (cumprops, destinations, valid):
            arr.flags.writeable = False
        self._cumprops = cumprops
        self._destinations = destinations
        self._valid = valid
        self._scale = scale

    def __getitem__(self, index: GridIndex) -> Shortlist | None:
        """Shortlist of the coarse cell at `index`, None if it has no data."""
        i, j = int(index[0]), int(index[1])
        if not self._valid[i, j]:
            return None
        return Shortlist(self._cumprops[i, j], self._destinations[i, j])

    def __iter__(self) -> Iterator[tuple[tuple[int, int], Shortlist | None]]:
        for i in range(self.shape[0]):
            for j in range(self.shape[1]):
                yield (i, j), self[i, j]

    def __repr__(self) -> str:
        return (
            f"GravityIndex(shape={self.shape}, nshortlisted={self.nshortlisted}, "
            f"scale={self._scale})"
        )

    @property
    def shape(self) -> GridShape:
        return (self._valid.shape[0], self._valid.shape[1])

    @property
    def nshortlisted(self) -> int:
        return self._cumprops.shape[2]

    @property
    def scale(self) -> int:
        return self._scale

    @property
    def valid(self) -> np.ndarray:
        """Boolean mask of coarse cells that have a shortlist."""
        return self._valid

    @property
    def cumprops(self) -> np.ndarray:
        return self._cumprops

    @property
    def destinations(self) -> np.ndarray:
        return self._destinations

    def to_frame(self) -> DataFrame:
        """Return every shortlist entry as a row.

        Returns
        -------
        pl.DataFrame
            Columns `source_dim_0`, `source_dim_1`, `rank` (0 is the lowest
            gravity), `cumprop`, `proportion`, `dest_dim_0`, `dest_dim_1`.
        """
        n = self.nshortlisted
        src_rows, src_cols = np.nonzero(self._valid)
        cumprops = self._cumprops[self._valid]
        dest = self._destinations[self._valid]
        return pl.DataFrame(
            {
                "source_dim_0": np.repeat(src_rows, n),
                "source_dim_1": np.repeat(src_cols, n),
                "rank": np.tile(np.arange(n), src_rows.shape[0]),
                "cumprop": cumprops.ravel(),
                "proportion": np.diff(cumprops, axis=1, prepend=0.0).ravel(),
                "dest_dim_0": dest[..., 0].ravel(),
                "dest_dim_1": dest[..., 1].ravel(),
            }
        )


def gravity_to_intervals(gravity_shortlist: Sequence[CellGravity]) -> list[CellInterval]:
    """Convert gravities ordered from highest to lowest into cumulative intervals.

    The intervals are ordered from the lowest to the highest gravity. Each
    proportion is relative to the sum of the shortlist only, and the last
    interval is set to exactly 1.0.
    """
    shortlist_sum = sum(gravity_shortlist)
    nshortlisted = len(gravity_shortlist)
    intervals = []
    cumprop = 0.0
    for n, cell in enumerate(reversed(gravity_shortlist), start=1):
        if shortlist_sum > 0:
            prop = cell.gravity / shortlist_sum
        else:
            prop = 1.0 / nshortlisted
        cumprop = 1.0 if n == nshortlisted else cumprop + prop
        intervals.append(CellInterval(cumprop, cell.index))
    return intervals


def cell_gravities(
    human_pow: np.ndarray,
    distances: np.ndarray,
    i: int,
    j: int,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """Gravity from coarse cell (i, j) towards every coarse cell.

    Parameters
    ----------
    human_pow : np.ndarray
        Coarse human population already raised to the human exponent.
    distances : np.ndarray
        Distance field from :func:`build_distances`.
    i, j : int
        The source cell.
    out : np.ndarray | None, optional
        Buffer of the shape of `human_pow`. Allocated if None.

    Returns
    -------
    np.ndarray
        Gravity per destination. No-data destinations have gravity 0.
    """
    h, w = human_pow.shape
    rows = np.abs(i - np.arange(h))
    cols = np.abs(j - np.arange(w))
    out = np.divide(human_pow, distances[np.ix_(rows, cols)], out=out)
    out *= human_pow[i, j]
    out[np.isnan(out)] = 0.0
    return out


def select_top(gravities: np.ndarray, n: int, scratch: np.ndarray | None = None) -> np.ndarray:
    """Flat indices of the `n` largest gravities, highest first.

    Uses a partial selection, then orders the `n` survivors only. Equal
    gravities are taken and ordered by flat (row-major) index, lowest first.

    Parameters
    ----------
    gravities : np.ndarray
        Flat gravity vector.
    n : int
        Number of entries to keep.
    scratch : np.ndarray | None, optional
        Buffer of the size of `gravities` used for the partial selection.

    Returns
    -------
    np.ndarray
    """
    size = gravities.shape[0]
    if n >= size:
        candidates = np.arange(size)
    else:
        if scratch is None:
            scratch = np.empty_like(gravities)
        scratch[...] = gravities
        kth = size - n
        scratch.partition(kth)
        threshold = scratch[kth]
        above = np.flatnonzero(gravities > threshold)
        ties = np.flatnonzero(gravities == threshold)[: n - above.shape[0]]
        candidates = np.concatenate((above, ties))
    order = np.lexsort((candidates, -gravities[candidates]))
    return candidates[order]


def cumulative_proportions(magnitudes: np.ndarray) -> np.ndarray:
    """Cumulative proportions of `magnitudes`, ending exactly at 1.0.

    A shortlist with no positive gravity is treated as uniform.
    """
    total = magnitudes.sum()
    if total > 0:
        cumprops = np.cumsum(magnitudes / total)
    else:
        cumprops = np.cumsum(np.full(magnitudes.shape[0], 1.0 / magnitudes.shape[0]))
    cumprops[-1] = 1.0
    return cumprops


@dataclass(slots=True)
class _WorkerArena:
    """Scratch buffers owned by one worker for the duration of a task."""

    gravities: np.ndarray
    flat: np.ndarray

    @classmethod
    def allocate(cls, shape: GridShape) -> _WorkerArena:
        gravities = np.empty(shape, dtype=np.float64)
        return cls(gravities=gravities, flat=np.empty(gravities.size, dtype=np.float64))


def _precalc_column(
    j: int,
    human_pow: np.ndarray,
    distances: np.ndarray,
    nshortlisted: int,
    cumprops: np.ndarray,
    destinations: np.ndarray,
    valid: np.ndarray,
    arenas: queue.SimpleQueue,
) -> None:
    arena = arenas.get()
    try:
        width = human_pow.shape[1]
        flat_gravities = arena.gravities.reshape(-1)
        for i in range(human_pow.shape[0]):
            if np.isnan(human_pow[i, j]):
                valid[i, j] = False
                cumprops[i, j] = np.nan
                destinations[i, j] = -1
                continue
            cell_gravities(human_pow, distances, i, j, out=arena.gravities)
            top = select_top(flat_gravities, nshortlisted, scratch=arena.flat)
            # Low to high gravity
            top = top[::-1]
            cumprops[i, j] = cumulative_proportions(flat_gravities[top])
            destinations[i, j, :, 0], destinations[i, j, :, 1] = np.divmod(top, width)
            valid[i, j] = True
    finally:
        arenas.put(arena)


def build_gravity_index(
    human_pop,
    cellsize: Real = 1.0,
    scale: int = 4,
    aggregator: Aggregator = "mean",
    human_exponent: Real = 1.0,
    dist_exponent: Real = 1.0,
    nshortlisted: int = 100,
    max_workers: int | None = None,
    human_buffer: np.ndarray | None = None,
    distances: np.ndarray | None = None,
) -> GravityIndex:
    """Precompute the dispersal shortlist of every coarse cell.

    Parameters
    ----------
    human_pop : array-like
        Fine human population raster, NaN for no-data.
    cellsize : Real, optional
        Width of a fine cell, by default 1.0.
    scale : int, optional
        Downsampling factor, by default 4.
    aggregator : Aggregator, optional
        Reduction used when downsampling, by default "mean".
    human_exponent : Real, optional
        Exponent applied to the human population, by default 1.0.
    dist_exponent : Real, optional
        Exponent applied to distances, by default 1.0.
    nshortlisted : int, optional
        Length of every shortlist, by default 100.
    max_workers : int | None, optional
        Size of the thread pool. Defaults to :func:`default_max_workers`.
    human_buffer, distances : np.ndarray | None, optional
        Pre-allocated coarse buffers, rewritten in place.

    Returns
    -------
    GravityIndex

    Raises
    ------
    ValueError
        If `nshortlisted` is not positive or exceeds the number of coarse cells.
    """
    human_pow = downsample(human_pop, aggregator, scale, out=human_buffer)
    ncells = human_pow.size
    if nshortlisted < 1 or nshortlisted > ncells:
        raise ValueError(
            f"nshortlisted must be between 1 and the number of coarse cells ({ncells}), "
            f"got {nshortlisted}"
        )
    np.power(human_pow, human_exponent, out=human_pow)
    distances = build_distances(human_pow.shape, dist_exponent, cellsize, scale, out=distances)

    h, w = human_pow.shape
    cumprops = np.empty((h, w, nshortlisted), dtype=np.float64)
    destinations = np.empty((h, w, nshortlisted, 2), dtype=np.intp)
    valid = np.empty((h, w), dtype=bool)

    n_workers = max(1, min(max_workers or default_max_workers(), w))
    arenas: queue.SimpleQueue = queue.SimpleQueue()
    for _ in range(n_workers):
        arenas.put(_WorkerArena.allocate((h, w)))
    args = (human_pow, distances, nshortlisted, cumprops, destinations, valid, arenas)

    if n_workers == 1:
        for j in range(w):
            _precalc_column(j, *args)
    else:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = [executor.submit(_precalc_column, j, *args) for j in range(w)]
            for future in futures:
                future.result()

    return GravityIndex(cumprops, destinations, valid, scale)
