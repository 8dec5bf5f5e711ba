# tests/conftest.py

import pytest
import numpy as np
import laspy
import pyproj
from rasterio.transform import Affine

from alsgrid.lidar import PointCloud
from alsgrid.raster import EngineConfig, Raster, NODATA_VAL

TEST_CRS = "EPSG:32619"

@pytest.fixture
def crs():
    return TEST_CRS

@pytest.fixture
def engine():
    """Two workers and small partitions so the parallel paths are exercised."""
    return EngineConfig(max_workers=2, chunk_size=50, tile_size=4)

@pytest.fixture
def cloud_factory():
    """
    Fixture: Builds a PointCloud from plain lists in the test CRS.
    """
    def _make(x, y, z, classification=None, return_number=None, crs=TEST_CRS):
        return PointCloud.from_arrays(
            x=np.asarray(x, dtype=np.float64),
            y=np.asarray(y, dtype=np.float64),
            z=np.asarray(z, dtype=np.float64),
            classification=classification,
            return_number=return_number,
            crs=crs
        )
    return _make

@pytest.fixture
def synthetic_plot(cloud_factory):
    """
    A 20 x 20 m plot on flat ground at z=100.

    Ground returns (class 2) every 0.5 m, except a 4 x 4 m hole in the middle.
    A 6 x 6 m crown (class 5) sits at z=110 over the south-west quarter, with first
    returns on top and a lower second return under each.
    One overlap point (class 22) and one bird (class 1, z=500) complete the cloud.
    """
    gx, gy = np.meshgrid(np.arange(0.25, 20.0, 0.5), np.arange(0.25, 20.0, 0.5))
    gx, gy = gx.ravel(), gy.ravel()
    hole = (gx > 8) & (gx < 12) & (gy > 8) & (gy < 12)
    gx, gy = gx[~hole], gy[~hole]
    gz = np.full(gx.shape, 100.0)

    cx, cy = np.meshgrid(np.arange(1.25, 7.0, 0.5), np.arange(1.25, 7.0, 0.5))
    cx, cy = cx.ravel(), cy.ravel()

    x = np.concatenate([gx, cx, cx, [15.5], [17.5]])
    y = np.concatenate([gy, cy, cy, [15.5], [17.5]])
    z = np.concatenate([gz, np.full(cx.shape, 110.0), np.full(cx.shape, 105.0), [120.0], [500.0]])
    classification = np.concatenate([
        np.full(gx.shape, 2), np.full(cx.shape, 5), np.full(cx.shape, 5), [22], [1]
    ])
    return_number = np.concatenate([
        np.ones(gx.shape), np.ones(cx.shape), np.full(cx.shape, 2), [1], [1]
    ])

    return cloud_factory(x, y, z, classification=classification, return_number=return_number)

@pytest.fixture
def las_factory(tmp_path):
    """
    Fixture: Writes a LAS 1.2 file from a PointCloud, optionally embedding its CRS.
    """
    def _write(cloud: PointCloud, name: str = "plot.las", embed_crs: bool = True):
        path = tmp_path / name

        header = laspy.LasHeader(point_format=3, version="1.2")
        header.scales = np.array([0.01, 0.01, 0.01])
        header.offsets = np.floor(np.array([cloud.x.min(), cloud.y.min(), cloud.z.min()]))
        if embed_crs:
            header.add_crs(pyproj.CRS.from_user_input(cloud.crs.to_string()))

        las = laspy.LasData(header)
        las.x = np.asarray(cloud.x)
        las.y = np.asarray(cloud.y)
        las.z = np.asarray(cloud.z)
        las.classification = np.asarray(cloud.classification)
        las.return_number = np.asarray(cloud.return_number)
        las.number_of_returns = np.asarray(cloud.return_number)
        las.write(path)
        return path

    return _write

@pytest.fixture
def grid_factory():
    """
    Fixture: Builds a single-band float grid with 1 m cells and its top-left corner at (0, height).
    """
    def _make(values, nodata=NODATA_VAL, crs=TEST_CRS, origin=(0.0, None), resolution=1.0):
        data = np.asarray(values, dtype=np.float64)
        left, top = origin
        top = data.shape[-2] * resolution if top is None else top
        return Raster(
            data=data,
            transform=Affine.translation(left, top) * Affine.scale(resolution, -resolution),
            crs=crs,
            nodata=nodata
        )
    return _make
