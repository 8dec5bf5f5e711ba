# src/alsgrid/lidar/rasterize.py

"""
This module implements functions to rasterize lidar point clouds.
"""

import logging
import math
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import numpy as np
from numba import jit
from rasterio.crs import CRS

from alsgrid.raster.engine import EngineConfig, parallel_map
from alsgrid.raster.grid import GridSpec
from alsgrid.raster.layer import NODATA_VAL, Provenance, Raster
from alsgrid.raster.resources import ensure_grid_fits

from .filters import first_returns
from .layer import PointCloud, read_extent

log = logging.getLogger(__name__)

__all__ = [
    "Aggregation",
    "points_to_grid",
    "NODATA_VAL"
]

class Aggregation(Enum):
    """
    Cell aggregation rules. Every rule is order-independent.

    Options:
        COUNT: Number of points per cell (point density).
        MAX: Highest z per cell (surface models).
        MIN: Lowest z per cell.
        MEAN: Mean z per cell.
        FIRST_RETURN_MAX: Highest z among first returns only.
    """
    COUNT = "count"
    MAX = "max"
    MIN = "min"
    MEAN = "mean"
    FIRST_RETURN_MAX = "first-return-max"

# Kernel flags (0=count, 1=max, 2=min, 3=sum)
_METHOD_FLAGS = {
    Aggregation.COUNT: 0,
    Aggregation.MAX: 1,
    Aggregation.MIN: 2,
    Aggregation.MEAN: 3,
    Aggregation.FIRST_RETURN_MAX: 1
}

@jit(nopython=True, nogil=True, cache=True)
def _rasterize_chunk(
    values: np.ndarray,
    counts: np.ndarray,
    rows: np.ndarray,
    cols: np.ndarray,
    z: np.ndarray,
    method_flag: int
    ):
    """
    Helper function to rasterize a chunk of points into a partial grid using explicit loops for numba optimization.

    Args:
        values: 2D array accumulating the aggregated z per cell.
        counts: 2D array accumulating the number of points per cell.
        rows: Row indices for each point.
        cols: Column indices for each point.
        z: Z values for each point.
        method_flag: Integer flag indicating the aggregation method (0=count, 1=max, 2=min, 3=sum).

    Returns:
        None (the grids are modified in place).
    """
    for i in range(len(rows)):
        r = rows[i]
        c = cols[i]
        counts[r, c] += 1
        if method_flag == 1:  # max
            if z[i] > values[r, c]:
                values[r, c] = z[i]
        elif method_flag == 2:  # min
            if z[i] < values[r, c]:
                values[r, c] = z[i]
        elif method_flag == 3:  # sum
            values[r, c] += z[i]

def _init_values(shape: Tuple[int, int], method_flag: int) -> np.ndarray:
    """Identity element of the reduction, so any real point replaces it."""
    if method_flag == 1:
        return np.full(shape, -np.inf, dtype=np.float64)
    if method_flag == 2:
        return np.full(shape, np.inf, dtype=np.float64)
    return np.zeros(shape, dtype=np.float64)

def _merge_partials(
    acc: Tuple[np.ndarray, np.ndarray],
    part: Tuple[np.ndarray, np.ndarray],
    method_flag: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Combines two partial grids with the associative reduction of the method."""
    values, counts = acc
    if method_flag == 1:
        np.maximum(values, part[0], out=values)
    elif method_flag == 2:
        np.minimum(values, part[0], out=values)
    else:
        np.add(values, part[0], out=values)
    np.add(counts, part[1], out=counts)
    return values, counts

def _partition(n: int, workers: int) -> List[slice]:
    """Splits n points into one contiguous slice per worker."""
    if n == 0:
        return [slice(0, 0)]
    step = math.ceil(n / workers)
    return [slice(start, min(start + step, n)) for start in range(0, n, step)]

def _accumulate(
    clouds: Iterable[PointCloud],
    spec: GridSpec,
    method_flag: int,
    engine: EngineConfig
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Rasterizes every cloud into partial grids on the worker pool and merges them.

    Each worker owns a single partial grid and walks its slice chunk_size points at a time,
    so at most engine.workers partials exist next to the accumulator.
    """
    acc = (_init_values(spec.shape, method_flag), np.zeros(spec.shape, dtype=np.uint32))

    for pc in clouds:
        # Convert point coordinates to grid indices once; workers only touch their own slice
        rows, cols, inside = spec.cell_index(pc.x, pc.y)
        if not np.any(inside):
            continue
        rows, cols, z = rows[inside], cols[inside], pc.z[inside].astype(np.float64)

        def rasterize_slice(sl: slice) -> Tuple[np.ndarray, np.ndarray]:
            values = _init_values(spec.shape, method_flag)
            counts = np.zeros(spec.shape, dtype=np.uint32)
            for start in range(sl.start, sl.stop, engine.chunk_size):
                chunk = slice(start, min(start + engine.chunk_size, sl.stop))
                _rasterize_chunk(values, counts, rows[chunk], cols[chunk], z[chunk], method_flag)
            return values, counts

        for part in parallel_map(rasterize_slice, _partition(len(z), engine.workers), engine):
            acc = _merge_partials(acc, part, method_flag)

    return acc

def points_to_grid(
    source: Union[str, Path, PointCloud],
    resolution: Optional[float] = None,
    aggregation: Union[str, Aggregation] = Aggregation.MAX,
    grid_spec: Optional[GridSpec] = None,
    crs: Optional[Union[str, CRS]] = None,
    nodata: float = NODATA_VAL,
    engine: Optional[EngineConfig] = None,
    provenance: Optional[Provenance] = None
) -> Raster:
    """
    Rasterizes point cloud distributions into dense grids.

    This function can be used to create DSMs, DTMs, or point density maps by specifying the appropriate method.
    Points are split across the worker pool, each worker fills a private partial grid, and the partials are
    merged with the method's associative reduction, so the result never depends on point order.

    Args:
        source (Union[str, Path, PointCloud]): Filepath to stream from or existing PointCloud object.
        resolution (float): Geographic units per cell. Ignored when grid_spec is given.
        aggregation (Union[str, Aggregation]): Statistical aggregator ('max', 'min', 'mean', 'count', 'first-return-max').
        grid_spec (GridSpec, optional): Explicit grid geometry; points outside it are dropped.
        crs (Union[str, CRS], optional): CRS assignment for file sources without one.
        nodata (float): Filler value for cells no point falls into.
        engine (EngineConfig, optional): Compute budget.
        provenance (Provenance, optional): Record attached to the output.

    Returns:
        Raster: Compiled and geo-aligned cell array. Empty cells hold nodata for every aggregation.
    """
    aggregation = Aggregation(aggregation)
    engine = engine or EngineConfig()
    method_flag = _METHOD_FLAGS[aggregation]

    if isinstance(source, (str, Path)):
        # Read the header first to get bounds for grid sizing, then stream in chunks
        bounds, out_crs = read_extent(source, crs=crs)
        clouds = PointCloud.iter_chunks(source, chunk_size=engine.chunk_size, crs=out_crs)
    else:
        out_crs = source.crs
        clouds = [source]
        bounds = None if grid_spec is not None else source.bounds

    if grid_spec is None:
        if resolution is None:
            raise ValueError("Either resolution or grid_spec must be provided.")
        grid_spec = GridSpec.from_bounds(bounds, resolution)

    if aggregation == Aggregation.FIRST_RETURN_MAX:
        only_first = first_returns()
        clouds = (pc.filter(only_first) for pc in clouds)

    # Each worker holds a values and a counts partial next to the accumulator
    ensure_grid_fits(grid_spec.shape, dtype=np.float64, layers=2 * (engine.workers + 1))

    log.debug(f"Rasterizing with '{aggregation.value}' into grid {grid_spec.shape} at {grid_spec.resolution}")
    values, counts = _accumulate(clouds, grid_spec, method_flag, engine)

    if aggregation == Aggregation.COUNT:
        grid = np.where(counts > 0, counts.astype(np.float64), nodata)
    elif aggregation == Aggregation.MEAN:
        grid = np.where(counts > 0, values / np.maximum(counts, 1), nodata)
    else:
        grid = np.where(counts > 0, values, nodata)

    if provenance is None:
        provenance = Provenance(
            stage="grid",
            algorithm=aggregation.value,
            parameters={'resolution': grid_spec.resolution}
        )

    return Raster(
        data=grid,
        transform=grid_spec.transform,
        crs=out_crs,
        nodata=nodata,
        provenance=provenance
    )
