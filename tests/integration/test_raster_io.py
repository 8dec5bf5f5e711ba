# tests/integration/test_raster_io.py

import numpy as np
import pytest
import rasterio
from rasterio.windows import Window

from alsgrid.raster import NODATA_VAL, Provenance, load, read_info, save

from helpers import assert_grid_match

def test_geotiff_round_trip(tmp_path, grid_factory):
    values = np.arange(30, dtype=np.float64).reshape(5, 6)
    values[1, 2] = NODATA_VAL
    grid = grid_factory(values, origin=(500000.0, 5000010.0))
    grid.provenance = Provenance(
        stage="dtm",
        algorithm="max+idw",
        source_filter="classification in [2]",
        parameters={'k': 10, 'power': 2.0, 'rmax': 50.0}
    )

    path = save(grid, tmp_path / "dtm.tif")
    loaded = load(path)

    assert_grid_match(loaded, grid)
    assert loaded.nodata == NODATA_VAL
    np.testing.assert_array_equal(loaded.get_band(1), values)
    assert loaded.provenance == grid.provenance

def test_saved_profile(tmp_path, grid_factory):
    grid = grid_factory(np.ones((4, 4)))
    path = save(grid, tmp_path / "nested" / "ones.tif")

    with rasterio.open(path) as src:
        assert src.driver == "GTiff"
        assert src.profile['compress'] == 'lzw'
        assert src.nodata == NODATA_VAL

def test_read_info(tmp_path, grid_factory):
    grid = grid_factory(np.ones((3, 5)), resolution=2.0)
    path = save(grid, tmp_path / "info.tif")

    info = read_info(path)

    assert info['resolution'] == (2.0, 2.0)
    assert (info['height'], info['width']) == (3, 5)
    assert info['crs'] == grid.crs

def test_windowed_load(tmp_path, grid_factory):
    values = np.arange(36, dtype=np.float64).reshape(6, 6)
    path = save(grid_factory(values), tmp_path / "full.tif")

    part = load(path, window=Window(col_off=2, row_off=1, width=3, height=2))

    np.testing.assert_array_equal(part.get_band(1), values[1:3, 2:5])
    assert part.bounds[0] == pytest.approx(2.0)

def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load(tmp_path / "missing.tif")

def test_load_unreadable_file(tmp_path):
    path = tmp_path / "broken.tif"
    path.write_bytes(b"not a tiff")
    with pytest.raises(IOError):
        load(path)
