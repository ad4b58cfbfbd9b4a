"""
dispersal abstract components.

This package contains abstract base classes that define the interfaces between
the dispersal rules and the simulation host that owns the population grids.

Classes:
    grid.py:
        - AbstractWritableGrid: Accessor contract of a writable population grid.

    rule.py:
        - AbstractRule: Base class for rules executed once per cell per step.

These abstract classes provide the foundation for the concrete implementations
in dispersal.concrete, and for external hosts that want to drive the rules
with their own grid storage.

Usage:
    These classes are not meant to be instantiated directly. Instead, they
    should be inherited by concrete implementations:

    from dispersal.abstract import AbstractWritableGrid

    class MyGrid(AbstractWritableGrid):
        # Implement get, add, isinbounds, ismasked and shape here
        ...

Note:
    The abstract classes use Python's ABC (Abstract Base Class) module to define
    abstract methods that must be implemented by concrete subclasses.
"""

from dispersal.abstract.grid import AbstractWritableGrid
from dispersal.abstract.rule import AbstractRule

__all__ = ["AbstractRule", "AbstractWritableGrid"]
