# tests/unit/test_engine.py

import numpy as np
import pytest

from alsgrid.raster import (
    DispatchConfig,
    EngineConfig,
    GridSpec,
    available_workers,
    dispatch,
    estimate_grid_memory,
    iter_windows,
    parallel_map
)
from alsgrid.raster import resources

def test_available_workers_never_claims_every_core(monkeypatch):
    monkeypatch.setattr(resources.psutil, "cpu_count", lambda logical=True: 8)

    assert available_workers() == 6
    assert available_workers(1.0) == 8
    assert available_workers(0.01) == 1

def test_single_core_still_gets_one_worker(monkeypatch):
    monkeypatch.setattr(resources.psutil, "cpu_count", lambda logical=True: 1)
    assert EngineConfig().workers == 1

def test_max_workers_caps_the_pool(monkeypatch):
    monkeypatch.setattr(resources.psutil, "cpu_count", lambda logical=True: 16)

    assert EngineConfig(max_workers=3).workers == 3
    assert EngineConfig(max_workers=64, cpu_fraction=0.5).workers == 8

@pytest.mark.parametrize("kwargs", [
    {'max_workers': 0},
    {'cpu_fraction': 0.0},
    {'cpu_fraction': 1.5},
    {'chunk_size': 0},
    {'tile_size': 0},
])
def test_engine_config_validation(kwargs):
    with pytest.raises(ValueError):
        EngineConfig(**kwargs)

def test_windows_cover_every_cell_once():
    coverage = np.zeros((10, 7), dtype=int)
    for window in iter_windows(10, 7, tile_size=3):
        coverage[window.toslices()] += 1
    assert np.all(coverage == 1)

def test_parallel_map_preserves_order(engine):
    assert parallel_map(lambda v: v * v, range(20), engine) == [v * v for v in range(20)]

def test_parallel_map_propagates_errors(engine):
    def explode(v):
        if v == 3:
            raise RuntimeError("boom")
        return v

    with pytest.raises(RuntimeError, match="boom"):
        parallel_map(explode, range(6), engine)

def test_dispatch_stitches_windows(grid_factory, engine):
    values = np.arange(90, dtype=np.float64).reshape(9, 10)
    grid = grid_factory(values)

    result = dispatch(
        func=lambda grid, offset: grid.get_band(1) + offset,
        input_map={'grid': grid},
        static_kwargs={'offset': 1.0},
        config=DispatchConfig(engine=engine)
    )

    np.testing.assert_array_equal(result, values + 1.0)

def test_dispatch_halo_gives_neighbour_context(grid_factory, engine):
    values = np.arange(64, dtype=np.float64).reshape(8, 8)
    grid = grid_factory(values)

    def window_height(grid):
        # every core cell sees the halo rows around it
        return np.full((grid.height, grid.width), float(grid.height))

    result = dispatch(
        func=window_height,
        input_map={'grid': grid},
        config=DispatchConfig(engine=engine, overlap=1)
    )

    # tile_size=4 with a 1-cell halo: 5 rows at the grid edge tiles, never fewer
    assert np.all(result >= 5.0)

def test_dispatch_rejects_mismatched_inputs(grid_factory):
    with pytest.raises(ValueError):
        dispatch(
            func=lambda a, b: a.get_band(1),
            input_map={'a': grid_factory(np.ones((3, 3))), 'b': grid_factory(np.ones((4, 3)))}
        )

def test_memory_estimate_reports_requirement():
    estimate = estimate_grid_memory((100, 100), dtype=np.float64, layers=2, safety_factor=1.0)
    assert estimate.total_required_bytes == 100 * 100 * 8 * 2

def test_grid_spec_snaps_to_resolution():
    spec = GridSpec.from_bounds((3.7, 10.2, 9.1, 12.0), resolution=2.0)

    assert (spec.min_x, spec.min_y) == (2.0, 10.0)
    assert spec.shape == (2, 4)
    assert spec.bounds == (2.0, 10.0, 10.0, 14.0)

@pytest.mark.parametrize("resolution", [0.1, 0.05])
def test_grid_spec_contains_projected_bounds(resolution):
    x = np.array([221703.9, 221710.35])
    y = np.array([5012345.7, 5012350.05])

    spec = GridSpec.from_bounds((x.min(), y.min(), x.max(), y.max()), resolution)
    _, _, inside = spec.cell_index(x, y)

    assert spec.min_x <= x.min()
    assert spec.min_y <= y.min()
    assert np.all(inside)

def test_grid_spec_cell_index_is_north_up():
    spec = GridSpec(min_x=0.0, min_y=0.0, resolution=1.0, width=3, height=3)

    rows, cols, inside = spec.cell_index(np.array([0.5, 2.5, 5.0]), np.array([0.5, 2.5, 0.5]))

    assert rows[0] == 2 and cols[0] == 0
    assert rows[1] == 0 and cols[1] == 2
    assert not inside[2]

def test_grid_spec_rejects_bad_geometry():
    with pytest.raises(ValueError):
        GridSpec.from_bounds((0.0, 0.0, 1.0, 1.0), resolution=0.0)
    with pytest.raises(ValueError):
        GridSpec.from_bounds((1.0, 0.0, 0.0, 1.0), resolution=1.0)
