import math

import numpy as np
import polars as pl
import pytest
from polars.testing import assert_frame_equal

from dispersal.concrete.distances import build_distances, mean_intracell_distance
from dispersal.concrete.gravity import (
    GravityIndex,
    Shortlist,
    build_gravity_index,
    cell_gravities,
    cumulative_proportions,
    default_max_workers,
    gravity_to_intervals,
    select_top,
)
from dispersal.concrete.ordering import CellGravity

D0 = mean_intracell_distance(1.0)
# Gravities from cell (1, 1) of [[1, 2], [3, 4]] at scale 1
G_SELF = 16 / D0
G_SUM = 8 + 12 + G_SELF


class Test_cell_gravities:
    def test_hand_computed(self, small_pop):
        distances = build_distances(small_pop.shape, 1.0, 1.0, 1)
        gravities = cell_gravities(small_pop, distances, 1, 1)
        np.testing.assert_allclose(gravities, [[4 / math.sqrt(2), 8.0], [12.0, G_SELF]])

    def test_nodata_destination_has_zero_gravity(self):
        human = np.array([[np.nan, 1.0], [1.0, 1.0]])
        distances = build_distances(human.shape, 1.0, 1.0, 1)
        gravities = cell_gravities(human, distances, 1, 1)
        assert gravities[0, 0] == 0.0

    def test_out_buffer(self, small_pop):
        distances = build_distances(small_pop.shape, 1.0, 1.0, 1)
        out = np.empty((2, 2))
        assert cell_gravities(small_pop, distances, 0, 0, out=out) is out


class Test_select_top:
    def test_highest_first(self):
        gravities = np.array([0.5, 3.0, 1.0, 2.0])
        np.testing.assert_array_equal(select_top(gravities, 2), [1, 3])
        np.testing.assert_array_equal(select_top(gravities, 4), [1, 3, 2, 0])

    def test_ties_break_by_flat_index(self):
        gravities = np.array([1.0, 2.0, 1.0, 1.0, 0.0])
        np.testing.assert_array_equal(select_top(gravities, 3), [1, 0, 2])

    def test_scratch_is_used(self):
        gravities = np.array([5.0, 1.0, 3.0])
        scratch = np.empty(3)
        np.testing.assert_array_equal(select_top(gravities, 1, scratch=scratch), [0])
        np.testing.assert_array_equal(gravities, [5.0, 1.0, 3.0])


def test_cumulative_proportions():
    cumprops = cumulative_proportions(np.array([1.0, 1.0, 2.0]))
    np.testing.assert_allclose(cumprops, [0.25, 0.5, 1.0])
    assert cumprops[-1] == 1.0
    np.testing.assert_allclose(cumulative_proportions(np.zeros(4)), [0.25, 0.5, 0.75, 1.0])


def test_gravity_to_intervals():
    intervals = gravity_to_intervals(
        [CellGravity(3.0, (0, 0)), CellGravity(1.0, (0, 1)), CellGravity(0.0, (1, 1))]
    )
    assert [iv.index for iv in intervals] == [(1, 1), (0, 1), (0, 0)]
    assert [iv.cumprop for iv in intervals] == pytest.approx([0.0, 0.25, 1.0])
    assert intervals[-1].cumprop == 1.0
    uniform = gravity_to_intervals([CellGravity(0.0, (0, 0)), CellGravity(0.0, (0, 1))])
    assert [iv.cumprop for iv in uniform] == [0.5, 1.0]


class Test_Shortlist:
    @pytest.fixture
    def shortlist(self):
        return Shortlist(
            np.array([0.2, 0.5, 1.0]),
            np.array([[2, 2], [0, 1], [1, 1]]),
        )

    def test_sequence_protocol(self, shortlist):
        assert len(shortlist) == 3
        assert shortlist[0].cumprop == 0.2
        assert shortlist[2].index == (1, 1)
        assert [iv.index for iv in shortlist] == [(2, 2), (0, 1), (1, 1)]
        np.testing.assert_allclose(shortlist.proportions, [0.2, 0.3, 0.5])
        assert "Shortlist(n=3" in repr(shortlist)

    def test_search(self, shortlist):
        assert shortlist.search(0.0) == 0
        assert shortlist.search(0.2) == 0
        assert shortlist.search(np.nextafter(0.2, 1.0)) == 1
        assert shortlist.search(0.5) == 1
        assert shortlist.search(np.nextafter(1.0, 0.0)) == 2
        np.testing.assert_array_equal(shortlist.search(np.array([0.1, 0.3, 0.9])), [0, 1, 2])

    def test_sample(self, shortlist, rng):
        single = shortlist.sample(rng)
        assert single.shape == (2,)
        many = shortlist.sample(rng, 1000)
        assert many.shape == (1000, 2)
        counts = {tuple(d): 0 for d in shortlist.destinations.tolist()}
        for dest in many.tolist():
            counts[tuple(dest)] += 1
        # Most likely destination receives the most draws
        assert max(counts, key=counts.get) == (1, 1)

    def test_from_gravities(self):
        shortlist = Shortlist.from_gravities(
            [CellGravity(2.0, (1, 0)), CellGravity(1.0, (0, 0)), CellGravity(1.0, (0, 1))]
        )
        np.testing.assert_allclose(shortlist.cumprops, [0.25, 0.5, 1.0])
        np.testing.assert_array_equal(shortlist.destinations, [[0, 1], [0, 0], [1, 0]])
        with pytest.raises(ValueError):
            Shortlist.from_gravities([])

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            Shortlist(np.array([0.5, 1.0]), np.zeros((3, 2), dtype=np.intp))


class Test_build_gravity_index:
    def test_hand_computed_shortlist(self, small_pop):
        index = build_gravity_index(small_pop, scale=1, nshortlisted=3, max_workers=1)
        shortlist = index[1, 1]
        assert [iv.index for iv in shortlist] == [(0, 1), (1, 0), (1, 1)]
        np.testing.assert_allclose(shortlist.cumprops, [8 / G_SUM, 20 / G_SUM, 1.0])
        assert shortlist.cumprops[-1] == 1.0

    def test_matches_record_based_construction(self, small_pop):
        index = build_gravity_index(small_pop, scale=1, nshortlisted=3, max_workers=1)
        records = Shortlist.from_gravities(
            [CellGravity(G_SELF, (1, 1)), CellGravity(12.0, (1, 0)), CellGravity(8.0, (0, 1))]
        )
        np.testing.assert_allclose(index[1, 1].cumprops, records.cumprops)
        np.testing.assert_array_equal(index[1, 1].destinations, records.destinations)

    def test_cumulative_proportions_valid(self, random_pop):
        index = build_gravity_index(random_pop, scale=2, nshortlisted=10)
        assert index.shape == (6, 6)
        assert index.nshortlisted == 10
        for _, shortlist in index:
            cumprops = shortlist.cumprops
            assert np.all(np.diff(cumprops) > 0)
            assert cumprops[-1] == 1.0
            assert np.all(cumprops > 0)

    def test_destinations_ordered_by_gravity(self, random_pop):
        coarse_human = random_pop
        index = build_gravity_index(coarse_human, scale=1, nshortlisted=6, max_workers=1)
        distances = build_distances(coarse_human.shape, 1.0, 1.0, 1)
        for (i, j), shortlist in index:
            gravities = cell_gravities(coarse_human, distances, i, j)
            picked = np.array([gravities[d[0], d[1]] for d in shortlist.destinations])
            assert np.all(np.diff(picked) >= 0)
            assert picked[0] >= np.sort(gravities, axis=None)[-6]

    def test_uniform_population_prefers_nearest_cells(self, uniform_pop):
        index = build_gravity_index(uniform_pop, scale=1, nshortlisted=8, max_workers=1)
        dest = [tuple(d) for d in index[4, 4].destinations.tolist()]
        # Self first, then the four orthogonal neighbours, ties in row-major order
        assert dest[::-1][:5] == [(4, 4), (3, 4), (4, 3), (4, 5), (5, 4)]
        assert dest[:3] == [(5, 3), (3, 5), (3, 3)]
        assert (5, 5) not in dest

    def test_nodata_sources_and_destinations(self):
        human = np.ones((3, 3))
        human[0, 0] = np.nan
        index = build_gravity_index(human, scale=1, nshortlisted=8)
        assert index[0, 0] is None
        assert not index.valid[0, 0]
        assert index.valid.sum() == 8
        for _, shortlist in index:
            if shortlist is not None:
                assert [0, 0] not in shortlist.destinations.tolist()

    def test_zero_population_is_uniform(self):
        index = build_gravity_index(np.zeros((2, 2)), scale=1, nshortlisted=4)
        np.testing.assert_allclose(index[0, 0].cumprops, [0.25, 0.5, 0.75, 1.0])

    def test_downsampled(self, random_pop):
        index = build_gravity_index(random_pop, scale=4, nshortlisted=9)
        assert index.shape == (3, 3)
        assert index.scale == 4
        assert "GravityIndex(shape=(3, 3)" in repr(index)

    def test_invalid_nshortlisted(self, small_pop):
        with pytest.raises(ValueError):
            build_gravity_index(small_pop, scale=1, nshortlisted=5)
        with pytest.raises(ValueError):
            build_gravity_index(small_pop, scale=1, nshortlisted=0)
        with pytest.raises(ValueError):
            build_gravity_index(small_pop, scale=2, nshortlisted=2)

    def test_parallel_matches_sequential(self, random_pop):
        sequential = build_gravity_index(random_pop, scale=1, nshortlisted=15, max_workers=1)
        parallel = build_gravity_index(random_pop, scale=1, nshortlisted=15, max_workers=4)
        np.testing.assert_array_equal(sequential.cumprops, parallel.cumprops)
        np.testing.assert_array_equal(sequential.destinations, parallel.destinations)
        np.testing.assert_array_equal(sequential.valid, parallel.valid)

    def test_buffers_are_reused(self, random_pop):
        human_buffer = np.empty((6, 6))
        distances = np.empty((6, 6))
        build_gravity_index(
            random_pop, scale=2, nshortlisted=4, human_buffer=human_buffer, distances=distances
        )
        assert distances[0, 1] == 2.0

    def test_index_is_read_only(self, small_pop):
        index = build_gravity_index(small_pop, scale=1, nshortlisted=2)
        with pytest.raises(ValueError):
            index.cumprops[0, 0, 0] = 0.5
        with pytest.raises(ValueError):
            index.destinations[0, 0, 0, 0] = 1


class Test_GravityIndex_to_frame:
    def test_columns_and_rows(self, small_pop):
        index = build_gravity_index(small_pop, scale=1, nshortlisted=3)
        df = index.to_frame()
        assert df.columns == [
            "source_dim_0",
            "source_dim_1",
            "rank",
            "cumprop",
            "proportion",
            "dest_dim_0",
            "dest_dim_1",
        ]
        assert df.height == 12

    def test_proportions_sum_to_one(self, random_pop):
        index = build_gravity_index(random_pop, scale=3, nshortlisted=5)
        totals = (
            index.to_frame()
            .group_by(["source_dim_0", "source_dim_1"])
            .agg(pl.col("proportion").sum())
        )
        assert totals.height == 16
        np.testing.assert_allclose(totals["proportion"].to_numpy(), 1.0)

    def test_top_rank_entry(self, small_pop):
        index = build_gravity_index(small_pop, scale=1, nshortlisted=3)
        top = (
            index.to_frame()
            .filter((pl.col("source_dim_0") == 1) & (pl.col("source_dim_1") == 1))
            .filter(pl.col("rank") == 2)
            .select("dest_dim_0", "dest_dim_1", "cumprop")
        )
        expected = pl.DataFrame({"dest_dim_0": [1], "dest_dim_1": [1], "cumprop": [1.0]})
        assert_frame_equal(top, expected, check_dtypes=False)

    def test_skips_nodata_sources(self):
        human = np.ones((2, 2))
        human[1, 0] = np.nan
        df = build_gravity_index(human, scale=1, nshortlisted=2).to_frame()
        assert df.height == 6
        assert df.filter((pl.col("source_dim_0") == 1) & (pl.col("source_dim_1") == 0)).is_empty()


def test_default_max_workers(monkeypatch):
    monkeypatch.setenv("DISPERSAL_MAX_WORKERS", "3")
    assert default_max_workers() == 3
    monkeypatch.setenv("DISPERSAL_MAX_WORKERS", "zero")
    with pytest.raises(ValueError):
        default_max_workers()
    monkeypatch.delenv("DISPERSAL_MAX_WORKERS")
    assert default_max_workers() >= 5


def test_gravity_index_iteration(small_pop):
    index = build_gravity_index(small_pop, scale=1, nshortlisted=1)
    items = list(index)
    assert [idx for idx, _ in items] == [(0, 0), (0, 1), (1, 0), (1, 1)]
    assert all(isinstance(shortlist, Shortlist) for _, shortlist in items)
    assert isinstance(index, GravityIndex)
