"""
dispersal: gravity-model human-driven dispersal for grid simulations.

dispersal simulates stochastic long-distance dispersal of a population quantity
across a 2D grid. The likelihood of moving between two cells follows a gravity
model over human population density. For every cell a shortlist of the most
probable destinations is precomputed once, and at every simulation step each
cell routes discrete dispersal events to destinations sampled from it.

Key Features:
- Downsampling of fine population rasters to bound precomputation cost
- Column-parallel gravity index precomputation with per-worker scratch buffers
- Pluggable transport modes (BatchGroups, HierarchicalGroups)
- Explicit random generators for reproducible runs under parallel execution
- Diagnostics of dispersed and discarded mass collected as Polars DataFrames

Main Components:
- HumanDispersal: the dispersal rule, owning the precomputed gravity index
- ArrayGrid: numpy-backed writable grid implementing the host accessors
- Simulation: a minimal host that steps the grid and collects diagnostics

Usage:
To use dispersal, build a rule from a human population raster and run it on a
grid:

    import numpy as np
    from dispersal import ArrayGrid, HumanDispersal, Simulation

    human_pop = np.random.default_rng(0).random((40, 40)) * 1000
    rule = HumanDispersal(human_pop, scale=4, dispersalperpop=1e-4)
    grid = ArrayGrid(np.full(human_pop.shape, 100.0))
    sim = Simulation(grid, [rule], seed=42)
    sim.run(10)

License: MIT
"""

from __future__ import annotations

from dispersal.utils import env_flag

# Enable runtime type checking if requested via environment variable
if env_flag("DISPERSAL_RUNTIME_TYPECHECKING"):
    from beartype.claw import beartype_this_package

    beartype_this_package()

from dispersal.concrete.diagnostics import DispersalCollector
from dispersal.concrete.gravity import GravityIndex, Shortlist, build_gravity_index
from dispersal.concrete.grid import ArrayGrid
from dispersal.concrete.human import (
    DispersalOutcome,
    HumanDispersal,
    populate,
    populate_shortlist,
)
from dispersal.concrete.model import Simulation
from dispersal.concrete.transport import (
    BatchGroups,
    HierarchicalGroups,
    TransportMode,
    generate_events,
)

__all__ = [
    "ArrayGrid",
    "BatchGroups",
    "DispersalCollector",
    "DispersalOutcome",
    "GravityIndex",
    "HierarchicalGroups",
    "HumanDispersal",
    "Shortlist",
    "Simulation",
    "TransportMode",
    "build_gravity_index",
    "generate_events",
    "populate",
    "populate_shortlist",
]

__version__ = "0.1.0.dev0"
