"""
Downsampling of population rasters and fine/coarse index mapping.

Gravity precomputation is quadratic in the number of grid cells, so it runs on
a coarse copy of the human population raster. Every coarse cell aggregates the
`scale x scale` block of fine cells it covers; blocks at the lower and right
edges may be partial when the fine shape is not a multiple of `scale`.

No-data is represented by NaN. Masked arrays are accepted and their masked
cells are treated as no-data.
"""

from __future__ import annotations

from collections.abc import Callable

import numpy as np

from dispersal.types_ import Aggregator, GridIndex, GridShape, Raster

_AGGREGATORS: dict[str, Callable[[np.ndarray], float]] = {
    "mean": np.mean,
    "sum": np.sum,
    "median": np.median,
    "max": np.max,
    "min": np.min,
}

# NaN-skipping reductions for the vectorised path over named aggregators
_BLOCK_AGGREGATORS: dict[str, Callable[..., np.ndarray]] = {
    "mean": np.nanmean,
    "sum": np.nansum,
    "median": np.nanmedian,
    "max": np.nanmax,
    "min": np.nanmin,
}


def resolve_aggregator(aggregator: Aggregator) -> Callable[[np.ndarray], float]:
    """Return the reduction function for `aggregator`.

    Parameters
    ----------
    aggregator : Aggregator
        A callable reducing a 1D array to a scalar, or one of "mean", "sum",
        "median", "max", "min".

    Returns
    -------
    Callable[[np.ndarray], float]

    Raises
    ------
    ValueError
        If `aggregator` is an unknown name.
    """
    if callable(aggregator):
        return aggregator
    try:
        return _AGGREGATORS[aggregator]
    except KeyError:
        raise ValueError(
            f"Unknown aggregator {aggregator!r}, expected a callable or one of {sorted(_AGGREGATORS)}"
        ) from None


def as_raster(raster) -> Raster:
    """Return `raster` as a 2D float array with NaN marking no-data."""
    if np.ma.isMaskedArray(raster):
        arr = np.ma.asarray(raster, dtype=np.float64).filled(np.nan)
    else:
        arr = np.asarray(raster, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError(f"Expected a 2D raster, got an array with {arr.ndim} dimensions")
    return arr


def coarse_shape(shape: tuple[int, ...], scale: int) -> GridShape:
    """Shape of the coarse grid covering `shape` at `scale` (rounded up)."""
    return (-(-int(shape[0]) // scale), -(-int(shape[1]) // scale))


def init_downsample(fine_raster, scale: int) -> np.ndarray:
    """Allocate a coarse buffer for `fine_raster` at `scale`."""
    return np.empty(coarse_shape(np.shape(fine_raster), scale), dtype=np.float64)


def downsample(
    fine_raster,
    aggregator: Aggregator = "mean",
    scale: int = 4,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """Aggregate `fine_raster` into a coarse buffer.

    Parameters
    ----------
    fine_raster : array-like
        The fine resolution raster. NaN (or masked) cells are no-data.
    aggregator : Aggregator, optional
        Reduction applied to the valid fine cells of each block, by default "mean".
    scale : int, optional
        Side length of the block of fine cells per coarse cell, by default 4.
    out : np.ndarray | None, optional
        Pre-allocated coarse buffer, rewritten in place. Allocated if None.

    Returns
    -------
    np.ndarray
        The coarse buffer. Cells whose block holds no valid value are NaN.

    Raises
    ------
    ValueError
        If `scale` is not positive or `out` has the wrong shape.
    """
    if scale < 1:
        raise ValueError(f"scale must be a positive integer, got {scale}")
    fine = as_raster(fine_raster)
    func = resolve_aggregator(aggregator)
    shape = coarse_shape(fine.shape, scale)
    if out is None:
        out = np.empty(shape, dtype=np.float64)
    elif out.shape != shape:
        raise ValueError(f"Coarse buffer has shape {out.shape}, expected {shape}")

    if scale == 1 and isinstance(aggregator, str):
        # Every named reduction of a single value is the value itself
        out[...] = fine
        return out

    if isinstance(aggregator, str):
        return _downsample_blocks(fine, aggregator, scale, out)

    for i in range(shape[0]):
        for j in range(shape[1]):
            block = fine[i * scale : (i + 1) * scale, j * scale : (j + 1) * scale]
            values = block[~np.isnan(block)]
            out[i, j] = func(values) if values.size else np.nan
    return out


def _downsample_blocks(fine: np.ndarray, name: str, scale: int, out: np.ndarray) -> np.ndarray:
    """Reduce every block at once with the NaN-skipping version of `name`.

    The raster is padded with NaN up to a multiple of `scale`, so partial edge
    blocks only reduce over the fine cells they cover.
    """
    h, w = out.shape
    padded = np.full((h * scale, w * scale), np.nan)
    padded[: fine.shape[0], : fine.shape[1]] = fine
    blocks = padded.reshape(h, scale, w, scale).swapaxes(1, 2).reshape(h, w, scale * scale)
    empty = np.isnan(blocks).all(axis=2)
    # No-data blocks are reduced over zeros, then set to NaN
    blocks[empty] = 0.0
    out[...] = _BLOCK_AGGREGATORS[name](blocks, axis=2)
    out[empty] = np.nan
    return out


def coarse_index(fine_index: GridIndex, scale: int) -> tuple[int, int]:
    """Index of the coarse cell containing the fine cell `fine_index`."""
    return (int(fine_index[0]) // scale, int(fine_index[1]) // scale)


def fine_index(coarse_index: GridIndex, scale: int) -> tuple[int, int]:
    """Index of the first (top-left) fine cell of the coarse cell `coarse_index`."""
    return (int(coarse_index[0]) * scale, int(coarse_index[1]) * scale)
