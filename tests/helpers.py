# tests/helpers.py

import numpy as np
from alsgrid.raster.layer import Raster

def assert_grid_match(r1: Raster, r2: Raster):
    """Strictly verify two rasters share the exact same grid."""
    assert r1.crs == r2.crs, \
        f"CRS mismatch: {r1.crs} != {r2.crs}"

    assert r1.shape == r2.shape, \
        f"Shape mismatch: {r1.shape} != {r2.shape}"

    assert np.allclose(np.array(r1.transform), np.array(r2.transform), atol=1e-9), \
        "Transform mismatch (Pixel alignment error)"

def assert_nodata_at(grid: Raster, rows, cols):
    """Check that the given cells hold the grid's no-data value."""
    values = grid.get_band(1)[np.asarray(rows), np.asarray(cols)]
    assert np.all(values == grid.nodata), f"Expected no-data at ({rows}, {cols}), got {values}"
