"""
Ordered value types for gravity selection and destination sampling.

`CellGravity` tags a coarse cell index with its gravity and `CellInterval` tags
it with the cumulative proportion of the shortlist up to and including it.
Both order by their magnitude only, so a sorted list keeps its cell identity
and a list of intervals can be searched with `bisect` using plain floats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import total_ordering
from numbers import Real


def _magnitude(other):
    if isinstance(other, (CellGravity, CellInterval)):
        return other._key
    if isinstance(other, Real):
        return other
    return NotImplemented


@total_ordering
@dataclass(frozen=True, slots=True, eq=False)
class CellGravity:
    """Gravity towards a coarse cell."""

    gravity: float
    index: tuple[int, int] = field(compare=False)

    @property
    def _key(self) -> float:
        return self.gravity

    def __eq__(self, other) -> bool:
        key = _magnitude(other)
        return key if key is NotImplemented else self.gravity == key

    def __lt__(self, other) -> bool:
        key = _magnitude(other)
        return key if key is NotImplemented else self.gravity < key

    def __hash__(self) -> int:
        return hash(self.gravity)

    def __add__(self, other):
        key = _magnitude(other)
        return key if key is NotImplemented else self.gravity + key

    __radd__ = __add__


@total_ordering
@dataclass(frozen=True, slots=True, eq=False)
class CellInterval:
    """Cumulative proportion of a shortlist ending at a destination cell."""

    cumprop: float
    index: tuple[int, int] = field(compare=False)

    @property
    def _key(self) -> float:
        return self.cumprop

    def __eq__(self, other) -> bool:
        key = _magnitude(other)
        return key if key is NotImplemented else self.cumprop == key

    def __lt__(self, other) -> bool:
        key = _magnitude(other)
        return key if key is NotImplemented else self.cumprop < key

    def __hash__(self) -> int:
        return hash(self.cumprop)
