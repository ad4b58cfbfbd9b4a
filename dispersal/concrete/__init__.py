"""
Concrete implementations of dispersal components.

This package provides the precomputation engine, the dispersal rule and a
minimal numpy-backed simulation host built on the interfaces defined in
dispersal.abstract.

Modules:
    downsampling: Aggregation of fine rasters into coarse buffers and index mapping.
    distances: Exponentiated distance field between coarse cells.
    ordering: CellGravity and CellInterval ordered value types.
    gravity: Shortlist, GravityIndex and the column-parallel index builder.
    transport: BatchGroups and HierarchicalGroups transport modes.
    human: HumanDispersal rule, DispersalOutcome and shortlist rendering.
    grid: ArrayGrid, a double-buffered writable grid.
    model: Simulation, the step loop.
    diagnostics: DispersalCollector, per-step totals as Polars DataFrames.

Usage:
    Users can import the concrete implementations directly from this package:

    from dispersal.concrete import ArrayGrid, HumanDispersal, Simulation

    rule = HumanDispersal(human_pop, mode=HierarchicalGroups(scalar=1e-3))
    sim = Simulation(ArrayGrid(initial, mask=land), [rule], seed=1)
    sim.run(50)
"""

from dispersal.concrete.diagnostics import DispersalCollector
from dispersal.concrete.gravity import GravityIndex, Shortlist, build_gravity_index
from dispersal.concrete.grid import ArrayGrid
from dispersal.concrete.human import DispersalOutcome, HumanDispersal, populate
from dispersal.concrete.model import Simulation
from dispersal.concrete.transport import BatchGroups, HierarchicalGroups, generate_events

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
    "build_gravity_index",
    "generate_events",
    "populate",
]
