"""Type aliases for the dispersal package."""

from __future__ import annotations

from collections.abc import Callable
from typing import Literal

import numpy as np
import polars as pl
from numpy import ndarray

###----- Scalars -----###
# numpy scalars flow through grid lookups, so aliases accept them too
Integer = int | np.integer
Real = int | float | np.integer | np.floating

###----- Grid -----###
GridIndex = tuple[Integer, Integer]
GridShape = tuple[int, int]
Raster = ndarray

###----- Precomputation -----###
AggregatorName = Literal["mean", "sum", "median", "max", "min"]
Aggregator = AggregatorName | Callable[[ndarray], float]

###----- Runtime -----###
DiscardPolicy = Literal["discard", "retain", "redraw"]
Generator = np.random.Generator
TimeT = float | int

###----- Output -----###
DataFrame = pl.DataFrame
LazyFrame = pl.LazyFrame

__all__ = [
    "Aggregator",
    "AggregatorName",
    "DataFrame",
    "DiscardPolicy",
    "Generator",
    "GridIndex",
    "GridShape",
    "Integer",
    "LazyFrame",
    "Raster",
    "Real",
    "TimeT",
]
