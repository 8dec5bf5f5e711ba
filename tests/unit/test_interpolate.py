# tests/unit/test_interpolate.py

import warnings

import numpy as np
import pytest

from alsgrid.exceptions import UnresolvedGapWarning
from alsgrid.lidar import IDW, TIN, GapReport, interpolate, parse_method
from alsgrid.raster import NODATA_VAL

from helpers import assert_grid_match, assert_nodata_at

def _empty(grid_factory, height, width):
    return grid_factory(np.full((height, width), NODATA_VAL))

def test_idw_k1_single_source_is_exact(grid_factory):
    grid = _empty(grid_factory, 3, 3)
    sources = np.array([[40.3, -17.7, 42.123]])

    filled, report = interpolate(grid, sources, IDW(k=1, power=2.0, rmax=None))

    assert report.count == 0
    assert np.all(filled.get_band(1) == 42.123)

def test_idw_fewer_neighbours_than_k_uses_those_found(grid_factory):
    grid = _empty(grid_factory, 2, 2)
    sources = np.array([[7.0, 9.0, 3.25]])

    filled, _ = interpolate(grid, sources, IDW(k=10, power=2.0, rmax=None))

    assert np.all(filled.get_band(1) == 3.25)

def test_idw_weighted_average(grid_factory):
    # cell centre at (0.5, 0.5); sources at distance 1 (z=10) and 2 (z=20)
    grid = _empty(grid_factory, 1, 1)
    sources = np.array([[1.5, 0.5, 10.0], [0.5, 2.5, 20.0]])

    filled, _ = interpolate(grid, sources, IDW(k=2, power=2.0))

    # (10/1 + 20/4) / (1/1 + 1/4)
    assert filled.get_band(1)[0, 0] == pytest.approx(12.0)

def test_idw_extreme_power_stays_finite(grid_factory):
    # cell centre at (0.5, 0.5); sources 10 (z=10) and 12 (z=30) units away, so d ** 400 overflows
    grid = _empty(grid_factory, 1, 1)
    far = np.array([[10.5, 0.5, 10.0], [0.5, 12.5, 30.0]])
    near = np.array([[0.51, 0.5, 10.0], [0.5, 0.53, 30.0]])

    from_far, far_report = interpolate(grid, far, IDW(k=2, power=400.0, rmax=None))
    from_near, _ = interpolate(grid, near, IDW(k=2, power=400.0, rmax=None))

    assert far_report.count == 0
    # the nearer source dominates completely at this power
    assert from_far.get_band(1)[0, 0] == pytest.approx(10.0)
    assert from_near.get_band(1)[0, 0] == pytest.approx(10.0)

def test_idw_coincident_source_returns_its_value(grid_factory):
    grid = _empty(grid_factory, 3, 3)
    sources = np.array([[0.5, 2.5, 7.5], [2.5, 0.5, 100.0]])

    filled, _ = interpolate(grid, sources, IDW(k=5))

    assert filled.get_band(1)[0, 0] == 7.5
    assert filled.get_band(1)[2, 2] == 100.0

def test_idw_ties_prefer_lowest_source_index(grid_factory):
    grid = _empty(grid_factory, 1, 1)
    left = [-0.5, 0.5, 1.0]
    right = [1.5, 0.5, 2.0]

    first, _ = interpolate(grid, np.array([left, right]), IDW(k=1))
    swapped, _ = interpolate(grid, np.array([right, left]), IDW(k=1))

    assert first.get_band(1)[0, 0] == 1.0
    assert swapped.get_band(1)[0, 0] == 2.0

def test_idw_nothing_within_rmax_leaves_unresolved_gap(grid_factory):
    values = np.full((1, 100), NODATA_VAL)
    values[0, 0] = 5.0
    grid = grid_factory(values)
    sources = np.array([[0.5, 0.5, 5.0]])

    with pytest.warns(UnresolvedGapWarning):
        filled, report = interpolate(grid, sources, IDW(k=10, power=2.0, rmax=50.0), stage="dtm")

    band = filled.get_band(1)
    # centres up to 50 units away (col 50) are reached, the rest are not
    assert np.all(band[0, :51] == 5.0)
    assert_nodata_at(filled, np.zeros(49, dtype=int), np.arange(51, 100))
    assert not np.any(band == 0.0)

    assert isinstance(report, GapReport)
    assert report.stage == "dtm"
    assert report.count == 49
    assert report.total_cells == 100
    assert report.fraction == pytest.approx(0.49)
    np.testing.assert_array_equal(report.cells[:, 1], np.arange(51, 100))
    assert filled.provenance.parameters["unresolved_cells"] == 49

def test_idw_without_sources_reports_every_gap(grid_factory):
    grid = _empty(grid_factory, 2, 3)

    with pytest.warns(UnresolvedGapWarning):
        filled, report = interpolate(grid, np.empty((0, 3)), IDW())

    assert report.count == 6
    assert np.all(filled.get_band(1) == NODATA_VAL)

def test_existing_cells_are_not_modified(grid_factory, engine):
    rng = np.random.default_rng(5)
    values = rng.uniform(0, 10, (12, 12))
    holes = rng.random((12, 12)) < 0.3
    values[holes] = NODATA_VAL
    grid = grid_factory(values)
    sources = np.column_stack([rng.uniform(0, 12, 200), rng.uniform(0, 12, 200), rng.uniform(0, 10, 200)])

    filled, report = interpolate(grid, sources, IDW(k=4, rmax=None), engine=engine)

    assert report.count == 0
    np.testing.assert_array_equal(filled.get_band(1)[~holes], values[~holes])
    assert_grid_match(filled, grid)

def test_idw_is_deterministic(grid_factory, engine):
    rng = np.random.default_rng(9)
    grid = _empty(grid_factory, 20, 20)
    sources = np.column_stack([rng.uniform(0, 20, 300), rng.uniform(0, 20, 300), rng.uniform(0, 50, 300)])

    a, _ = interpolate(grid, sources, IDW(k=8, power=1.5, rmax=10.0), engine=engine)
    b, _ = interpolate(grid, sources, IDW(k=8, power=1.5, rmax=10.0), engine=engine)

    assert a == b

def test_tin_reproduces_a_plane(grid_factory):
    grid = _empty(grid_factory, 10, 10)
    # z = x over the whole square
    sources = np.array([
        [0.0, 0.0, 0.0], [10.0, 0.0, 10.0], [0.0, 10.0, 0.0], [10.0, 10.0, 10.0]
    ])

    filled, report = interpolate(grid, sources, TIN())

    xs, _ = filled.xy(*np.indices((10, 10)))
    assert report.count == 0
    np.testing.assert_allclose(filled.get_band(1), xs, atol=1e-9)

def test_tin_outside_hull_is_unresolved(grid_factory):
    grid = _empty(grid_factory, 10, 10)
    sources = np.array([[0.0, 0.0, 1.0], [10.0, 0.0, 1.0], [0.0, 10.0, 1.0]])

    with pytest.warns(UnresolvedGapWarning):
        filled, report = interpolate(grid, sources, TIN())

    band = filled.get_band(1)
    rows, cols = np.indices((10, 10))
    # cell centres satisfy x + y = col - row + 10; the hull edge is x + y = 10
    inside = cols < rows
    outside = cols > rows

    np.testing.assert_allclose(band[inside], 1.0)
    assert np.all(band[outside] == NODATA_VAL)
    assert report.count >= int(outside.sum())

def test_tin_duplicate_xy_keeps_highest(grid_factory):
    grid = _empty(grid_factory, 4, 4)
    sources = np.array([
        [0.0, 0.0, 1.0], [0.0, 0.0, 5.0],
        [4.0, 0.0, 5.0], [0.0, 4.0, 5.0], [4.0, 4.0, 5.0]
    ])

    filled, _ = interpolate(grid, sources, TIN())

    np.testing.assert_allclose(filled.get_band(1), 5.0)

@pytest.mark.parametrize("sources", [
    np.array([[0.0, 0.0, 1.0], [5.0, 5.0, 2.0]]),
    np.array([[0.0, 0.0, 1.0], [1.0, 1.0, 2.0], [2.0, 2.0, 3.0]]),
])
def test_tin_degenerate_sources_leave_every_gap(grid_factory, sources):
    grid = _empty(grid_factory, 3, 3)

    with pytest.warns(UnresolvedGapWarning):
        filled, report = interpolate(grid, sources, TIN())

    assert report.count == 9
    assert np.all(filled.get_band(1) == NODATA_VAL)

def test_full_grid_needs_no_interpolation(grid_factory):
    grid = grid_factory(np.ones((3, 3)))

    with warnings.catch_warnings():
        warnings.simplefilter("error", UnresolvedGapWarning)
        filled, report = interpolate(grid, np.empty((0, 3)), TIN())

    assert report.count == 0
    assert report.fraction == 0.0
    np.testing.assert_array_equal(filled.get_band(1), 1.0)

def test_provenance_records_method(grid_factory):
    grid = _empty(grid_factory, 2, 2)
    filled, _ = interpolate(grid, np.array([[1.0, 1.0, 3.0]]), IDW(k=3, power=1.0, rmax=None), stage="dsm")

    assert filled.provenance.stage == "dsm"
    assert filled.provenance.algorithm == "idw"
    assert filled.provenance.parameters["k"] == 3

def test_parse_method():
    assert parse_method("idw", k=4, power=1.0, rmax=20.0) == IDW(k=4, power=1.0, rmax=20.0)
    assert parse_method("TIN") == TIN()
    assert parse_method("none") is None
    assert parse_method(None) is None

    with pytest.raises(ValueError, match="Unknown interpolation method"):
        parse_method("kriging")
    with pytest.raises(ValueError):
        parse_method("tin", k=3)

@pytest.mark.parametrize("kwargs", [
    {'k': 0},
    {'k': 2.5},
    {'k': True},
    {'power': 0.0},
    {'rmax': -1.0},
    {'rmax': 0.0},
])
def test_idw_rejects_invalid_parameters(kwargs):
    with pytest.raises(ValueError):
        IDW(**kwargs)

def test_unknown_method_type_raises(grid_factory):
    with pytest.raises(TypeError):
        interpolate(_empty(grid_factory, 1, 1), np.empty((0, 3)), "idw")
