"""Distance field between coarse cells, raised to the gravity distance exponent."""

from __future__ import annotations

import math

import numpy as np

from dispersal.types_ import GridShape, Real


def mean_intracell_distance(width: Real) -> float:
    """Mean distance from the centroid of a square of side `width` to a uniform point inside it."""
    return width / 6 * (math.sqrt(2) + math.log(1 + math.sqrt(2)))


def build_distances(
    shape: GridShape,
    dist_exponent: Real,
    cellsize: Real,
    scale: int,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """Build the exponentiated distances for every coarse offset.

    Euclidean distance is mirrored across both axes, so only non-negative
    offsets are stored: `distances[abs(di), abs(dj)]` is the distance term for
    any pair of coarse cells `di` rows and `dj` columns apart.

    The zero offset would give a distance of zero and an infinite self gravity.
    It uses the mean distance from a cell centroid to a random point in the
    same cell instead.

    Parameters
    ----------
    shape : GridShape
        Shape of the coarse grid.
    dist_exponent : Real
        Exponent applied to every distance.
    cellsize : Real
        Width of a fine cell.
    scale : int
        Number of fine cells along the side of a coarse cell.
    out : np.ndarray | None, optional
        Pre-allocated buffer of shape `shape`. Allocated if None.

    Returns
    -------
    np.ndarray
    """
    if out is None:
        out = np.empty(shape, dtype=np.float64)
    elif out.shape != tuple(shape):
        raise ValueError(f"Distance buffer has shape {out.shape}, expected {tuple(shape)}")
    width = cellsize * scale
    rows = np.arange(shape[0], dtype=np.float64)[:, None]
    cols = np.arange(shape[1], dtype=np.float64)[None, :]
    np.multiply(np.hypot(rows, cols), width, out=out)
    out[0, 0] = mean_intracell_distance(width)
    np.power(out, dist_exponent, out=out)
    return out
