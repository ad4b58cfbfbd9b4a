"""
Human-driven long-distance dispersal.

This module defines :class:`HumanDispersal`, a rule in which the number of
long-distance dispersers leaving a cell is proportional to its human
population, and their destinations follow a gravity model over human
population and distance:

    g(i, j) = (H_i * H_j) ** beta / d(i, j) ** gamma

where beta is `human_exponent` and gamma is `dist_exponent`. For every cell a
shortlist of the `nshortlisted` destinations with the highest gravity is
precomputed on a grid downsampled by `scale`. Larger scales make the
precomputation and the runtime lookups cheaper at the cost of spatial detail.

At every step, for every cell, the rule:
    1. derives the dispersal rate from the human population of the cell,
    2. draws the sizes of the dispersal events from its transport mode,
    3. samples a coarse destination per event from the shortlist, and a
       random fine cell inside it,
    4. adds the event to the destination, unless the destination is masked or
       outside the grid, in which case the discard policy applies,
    5. removes what left the cell from it.

Discard policies:
    "discard": the event's mass is lost. The source still loses it.
    "retain":  the event is cancelled and its mass stays in the source.
    "redraw":  the destination is redrawn up to `max_redraws` times, then the
               event is retained.

Functions:
    populate:
        Render the precomputed shortlists of a rule into a raster, for plotting
        or inspection.
"""

from __future__ import annotations

import math
import threading
import warnings
from copy import copy
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import numpy as np
from beartype import beartype

from dispersal.abstract.grid import AbstractWritableGrid
from dispersal.abstract.rule import AbstractRule
from dispersal.concrete.downsampling import (
    as_raster,
    coarse_index,
    coarse_shape,
    fine_index,
    resolve_aggregator,
)
from dispersal.concrete.gravity import GravityIndex, Shortlist, build_gravity_index
from dispersal.concrete.transport import BatchGroups, HierarchicalGroups, TransportMode, generate_events
from dispersal.types_ import (
    Aggregator,
    DiscardPolicy,
    Generator,
    GridIndex,
    GridShape,
    Integer,
    Real,
)

# Bounds used by parameter fitting. They are not enforced.
PARAMETER_BOUNDS: dict[str, tuple[float, float]] = {
    "human_exponent": (1.0, 3.0),
    "dist_exponent": (1.0, 3.0),
    "dispersalperpop": (0.0, 1e-8),
    "max_dispersers": (50.0, 10000.0),
}

DISCARD_POLICIES = ("discard", "retain", "redraw")

# Parameters the gravity index depends on. Changing any other parameter
# keeps the current index.
_PRECALC_PARAMS = frozenset(
    {"cellsize", "scale", "aggregator", "human_exponent", "dist_exponent", "nshortlisted"}
)
_INTEGER_PARAMS = ("scale", "nshortlisted", "max_redraws")
_REAL_PARAMS = ("cellsize", "human_exponent", "dist_exponent", "dispersalperpop", "max_dispersers")


@dataclass(frozen=True, slots=True)
class DispersalOutcome:
    """Bookkeeping of one rule execution on one cell.

    `dispersed` reached a destination, `discarded` was lost to masked or
    out-of-bounds destinations and `retained` was cancelled and stayed in the
    source cell.
    """

    events: int = 0
    dispersed: int = 0
    discarded: int = 0
    retained: int = 0

    def __add__(self, other: DispersalOutcome) -> DispersalOutcome:
        if not isinstance(other, DispersalOutcome):
            return NotImplemented
        return DispersalOutcome(
            events=self.events + other.events,
            dispersed=self.dispersed + other.dispersed,
            discarded=self.discarded + other.discarded,
            retained=self.retained + other.retained,
        )

    @property
    def removed(self) -> int:
        """Mass taken from the source cell."""
        return self.dispersed + self.discarded


NO_DISPERSAL = DispersalOutcome()


@dataclass(frozen=True, slots=True)
class _RuleState:
    """Parameters and the gravity index built from them, published together."""

    params: MappingProxyType
    index: GravityIndex


@beartype
class HumanDispersal(AbstractRule):
    """Gravity-model dispersal driven by human population.

    Parameters
    ----------
    human_pop : np.ndarray
        Human population raster matching the simulation grid. NaN or masked
        cells are no-data: they never disperse and never receive dispersers.
    mode : TransportMode, optional
        How dispersers are grouped into events, by default BatchGroups().
    cellsize : Real, optional
        Width of a (square) grid cell, by default 1.0.
    scale : Integer, optional
        Downsampling factor for the precomputation, by default 4 (1:16 cells).
    aggregator : Aggregator, optional
        Reduction used when downsampling, by default "mean".
    human_exponent : Real, optional
        Human population exponent, by default 1.0.
    dist_exponent : Real, optional
        Distance exponent, by default 1.0.
    dispersalperpop : Real, optional
        Dispersal probability per unit of human population, by default 1e-3.
    max_dispersers : Real, optional
        Largest single dispersal event for BatchGroups, by default 100.
    nshortlisted : Integer, optional
        Length of each destination shortlist, by default 100. Longer lists
        represent the tail of the distribution better but cost more memory.
    discard_policy : DiscardPolicy, optional
        What happens to events sent to masked or out-of-bounds cells, by
        default "discard".
    max_redraws : Integer, optional
        Redraws per event under the "redraw" policy, by default 10.
    max_workers : int | None, optional
        Thread pool size for the precomputation. None uses the package default.

    Raises
    ------
    ValueError
        If a parameter is out of its domain, including `nshortlisted` larger
        than the number of coarse cells.
    """

    def __init__(
        self,
        human_pop: np.ndarray,
        *,
        mode: TransportMode = BatchGroups(),
        cellsize: Real = 1.0,
        scale: Integer = 4,
        aggregator: Aggregator = "mean",
        human_exponent: Real = 1.0,
        dist_exponent: Real = 1.0,
        dispersalperpop: Real = 1e-3,
        max_dispersers: Real = 100,
        nshortlisted: Integer = 100,
        discard_policy: DiscardPolicy = "discard",
        max_redraws: Integer = 10,
        max_workers: int | None = None,
    ) -> None:
        human = as_raster(human_pop)
        human.flags.writeable = False
        self._human_pop = human
        self._max_workers = max_workers
        self._lock = threading.Lock()
        self._human_buffer = None
        self._distances = None
        params = {
            "mode": mode,
            "cellsize": cellsize,
            "scale": scale,
            "aggregator": aggregator,
            "human_exponent": human_exponent,
            "dist_exponent": dist_exponent,
            "dispersalperpop": dispersalperpop,
            "max_dispersers": max_dispersers,
            "nshortlisted": nshortlisted,
            "discard_policy": discard_policy,
            "max_redraws": max_redraws,
        }
        self._validate(params)
        self._state = _RuleState(MappingProxyType(params), self._build(params))

    def __getitem__(self, index: GridIndex) -> Shortlist | None:
        return self._state.index[index]

    def __repr__(self) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in self._state.params.items())
        return f"HumanDispersal(shape={self._human_pop.shape}, {args})"

    # Parameters ###################################################

    @property
    def params(self) -> dict[str, Any]:
        """The current parameters."""
        return dict(self._state.params)

    @property
    def bounds(self) -> dict[str, tuple[float, float]]:
        """Fitting bounds of the tunable parameters."""
        return dict(PARAMETER_BOUNDS)

    def out_of_bounds(self) -> list[str]:
        """Names of parameters whose value lies outside their fitting bounds."""
        params = self._state.params
        return [
            name
            for name, (low, high) in PARAMETER_BOUNDS.items()
            if not low <= params[name] <= high
        ]

    @property
    def human_pop(self) -> np.ndarray:
        return self._human_pop

    @property
    def mode(self) -> TransportMode:
        return self._state.params["mode"]

    @property
    def scale(self) -> int:
        return self._state.params["scale"]

    @property
    def gravity_index(self) -> GravityIndex:
        return self._state.index

    @property
    def shape(self) -> GridShape:
        """Shape of the coarse grid of shortlists."""
        return self._state.index.shape

    def shortlist(self, index: GridIndex) -> Shortlist | None:
        """Shortlist of the coarse cell containing the fine cell `index`."""
        state = self._state
        return state.index[coarse_index(index, state.params["scale"])]

    def rebuild(self, **changes: Any) -> GravityIndex:
        """Apply parameter changes, rebuilding the gravity index if needed.

        The new index is built completely before the parameters and the index
        are published together. Concurrent `execute` calls keep using the
        previous state until then.

        Returns
        -------
        GravityIndex
            The index in use after the change.

        Raises
        ------
        TypeError
            If a parameter name is unknown or a value has the wrong type.
        ValueError
            If a parameter value is invalid. The rule is left unchanged.
        """
        with self._lock:
            state = self._state
            unknown = set(changes) - set(state.params)
            if unknown:
                raise TypeError(f"Unknown parameters: {sorted(unknown)}")
            params = {**state.params, **changes}
            self._validate(params)
            if _PRECALC_PARAMS.intersection(changes):
                index = self._build(params)
            else:
                index = state.index
            self._state = _RuleState(MappingProxyType(params), index)
            return index

    def with_params(self, **changes: Any) -> HumanDispersal:
        """Return a new rule with `changes` applied. This rule is unchanged."""
        other = copy(self)
        other._lock = threading.Lock()
        other._human_buffer = None
        other._distances = None
        other.rebuild(**changes)
        return other

    def _validate(self, params: dict[str, Any]) -> None:
        """Check `params` in place, normalising integer parameters to `int`.

        Raises
        ------
        TypeError
            If a parameter has the wrong type.
        ValueError
            If a parameter is out of its domain.
        """
        mode = params["mode"]
        if not isinstance(mode, (BatchGroups, HierarchicalGroups)):
            raise TypeError(f"mode must be BatchGroups or HierarchicalGroups, got {mode!r}")
        for name in _INTEGER_PARAMS:
            if not isinstance(params[name], (int, np.integer)):
                raise TypeError(f"{name} must be an integer, got {params[name]!r}")
            params[name] = int(params[name])
        for name in _REAL_PARAMS:
            if not isinstance(params[name], (int, float, np.integer, np.floating)):
                raise TypeError(f"{name} must be a real number, got {params[name]!r}")
        if not (isinstance(params["aggregator"], str) or callable(params["aggregator"])):
            raise TypeError(f"aggregator must be a name or a callable, got {params['aggregator']!r}")
        if not isinstance(params["discard_policy"], str):
            raise TypeError(f"discard_policy must be a string, got {params['discard_policy']!r}")
        resolve_aggregator(params["aggregator"])
        for name in _REAL_PARAMS:
            if not math.isfinite(params[name]):
                raise ValueError(f"{name} must be finite, got {params[name]}")
        if params["cellsize"] <= 0:
            raise ValueError(f"cellsize must be positive, got {params['cellsize']}")
        if params["scale"] < 1:
            raise ValueError(f"scale must be a positive integer, got {params['scale']}")
        if params["dispersalperpop"] < 0:
            raise ValueError(f"dispersalperpop must be non-negative, got {params['dispersalperpop']}")
        if params["max_dispersers"] < 1:
            raise ValueError(f"max_dispersers must be at least 1, got {params['max_dispersers']}")
        ncells = math.prod(coarse_shape(self._human_pop.shape, params["scale"]))
        if not 1 <= params["nshortlisted"] <= ncells:
            raise ValueError(
                f"nshortlisted must be between 1 and the number of coarse cells ({ncells}), "
                f"got {params['nshortlisted']}"
            )
        if params["discard_policy"] not in DISCARD_POLICIES:
            raise ValueError(
                f"discard_policy must be one of {DISCARD_POLICIES}, got {params['discard_policy']!r}"
            )
        if params["max_redraws"] < 0:
            raise ValueError(f"max_redraws must be non-negative, got {params['max_redraws']}")

    def _build(self, params: dict[str, Any]) -> GravityIndex:
        scale = params["scale"]
        shape = coarse_shape(self._human_pop.shape, scale)
        if self._human_buffer is None or self._human_buffer.shape != shape:
            self._human_buffer = np.empty(shape, dtype=np.float64)
            self._distances = np.empty(shape, dtype=np.float64)
        if params["discard_policy"] == "discard" and any(n % scale for n in self._human_pop.shape):
            warnings.warn(
                f"Grid shape {self._human_pop.shape} is not a multiple of scale={scale}; "
                "events sent to the edge coarse cells can land outside the grid and be discarded.",
                UserWarning,
                stacklevel=3,
            )
        return build_gravity_index(
            self._human_pop,
            cellsize=params["cellsize"],
            scale=scale,
            aggregator=params["aggregator"],
            human_exponent=params["human_exponent"],
            dist_exponent=params["dist_exponent"],
            nshortlisted=params["nshortlisted"],
            max_workers=self._max_workers,
            human_buffer=self._human_buffer,
            distances=self._distances,
        )

    # Execution ###################################################

    def execute(
        self,
        grid: AbstractWritableGrid,
        value: Real,
        index: GridIndex,
        rng: Generator,
    ) -> DispersalOutcome:
        """Disperse from the cell at `index` for one step.

        Parameters
        ----------
        grid : AbstractWritableGrid
            The grid to write to.
        value : Real
            Population of the cell at the start of the step.
        index : GridIndex
            The (row, column) index of the cell.
        rng : Generator
            Random generator for event sizes and destinations.

        Returns
        -------
        DispersalOutcome
        """
        if value == 0:
            return NO_DISPERSAL
        # One read of the state, so a concurrent rebuild cannot mix parameters
        state = self._state
        params = state.params
        rate = self._human_pop[index[0], index[1]] * params["dispersalperpop"]
        if np.isnan(rate):
            return NO_DISPERSAL
        scale = params["scale"]
        shortlist = state.index[coarse_index(index, scale)]
        if shortlist is None:
            return NO_DISPERSAL

        events = generate_events(params["mode"], value, rate, rng, params["max_dispersers"])
        if not events:
            return NO_DISPERSAL

        policy = params["discard_policy"]
        destinations = _draw_destinations(shortlist, scale, rng, len(events))
        dispersed = discarded = retained = 0
        for size, dest in zip(events, destinations):
            dest = (int(dest[0]), int(dest[1]))
            if policy == "redraw":
                for _ in range(params["max_redraws"]):
                    if _is_open(grid, dest):
                        break
                    redrawn = _draw_destinations(shortlist, scale, rng, 1)[0]
                    dest = (int(redrawn[0]), int(redrawn[1]))
            if _is_open(grid, dest):
                grid.add(size, dest)
                dispersed += size
            elif policy == "discard":
                discarded += size
            else:
                retained += size

        removed = dispersed + discarded
        if removed:
            grid.add(-removed, index)
        return DispersalOutcome(
            events=len(events), dispersed=dispersed, discarded=discarded, retained=retained
        )


def _draw_destinations(
    shortlist: Shortlist, scale: int, rng: np.random.Generator, n: int
) -> np.ndarray:
    """Sample `n` fine destinations: a coarse cell, then a random cell inside it."""
    coarse = shortlist.sample(rng, n)
    return coarse * scale + rng.integers(0, scale, size=(n, 2))


def _is_open(grid: AbstractWritableGrid, index: tuple[int, int]) -> bool:
    return grid.isinbounds(index) and not grid.ismasked(index)


# Examining the shortlists ###################################################


def populate_shortlist(A: np.ndarray, shortlist: Shortlist | None, scale: int = 1) -> np.ndarray:
    """Add the probability of every destination of `shortlist` into `A`.

    Each probability is written at the first fine cell of its coarse
    destination. NaN cells of `A` are overwritten rather than summed.
    """
    if shortlist is None:
        return A
    for interval, prop in zip(shortlist, shortlist.proportions):
        i, j = fine_index(interval.index, scale)
        if np.isnan(A[i, j]):
            A[i, j] = prop
        else:
            A[i, j] += prop
    return A


def populate(rule: HumanDispersal, *indices: GridIndex) -> np.ndarray:
    """Render the shortlists of `rule` into a raster of the human population's shape.

    Parameters
    ----------
    rule : HumanDispersal
        The rule whose gravity index is rendered.
    *indices : GridIndex
        Coarse indices of the shortlists to render. All shortlists if omitted.

    Returns
    -------
    np.ndarray
        float32 raster. With all shortlists rendered, each cell holds the sum
        over sources of the probability of dispersing to it.
    """
    A = np.zeros(rule.human_pop.shape, dtype=np.float32)
    index = rule.gravity_index
    if indices:
        shortlists = [index[i] for i in indices]
    else:
        shortlists = [shortlist for _, shortlist in index]
    for shortlist in shortlists:
        populate_shortlist(A, shortlist, index.scale)
    return A
