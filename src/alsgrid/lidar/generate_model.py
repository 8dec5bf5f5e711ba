# src/alsgrid/lidar/generate_model.py

"""
This module implements functions to generate elevation products from lidar point clouds.

Every product is built on a caller-supplied GridSpec so that terrain, surface and
density grids of one run are always co-registered.
"""

import logging
from typing import Optional, Tuple, Union

import numpy as np
import scipy.ndimage as ndimage

from alsgrid.raster.algebra import subtract
from alsgrid.raster.engine import DispatchConfig, EngineConfig, dispatch
from alsgrid.raster.grid import GridSpec
from alsgrid.raster.layer import NODATA_VAL, Provenance, Raster

from .filters import first_returns
from .interpolate import IDW, GapReport, InterpolationMethod, interpolate
from .layer import PointCloud
from .rasterize import Aggregation, points_to_grid

log = logging.getLogger(__name__)

__all__ = [
    "generate_dtm",
    "generate_dsm",
    "generate_density",
    "calculate_chm"
]

def generate_dtm(
    ground: PointCloud,
    grid_spec: GridSpec,
    method: Optional[InterpolationMethod] = None,
    aggregation: Union[str, Aggregation] = Aggregation.MAX,
    engine: Optional[EngineConfig] = None,
    source_filter: str = ""
) -> Tuple[Raster, GapReport]:
    """
    Rasterizes ground returns and interpolates the cells no ground point fell into.

    Args:
        ground (PointCloud): Points already classified as ground.
        grid_spec (GridSpec): Shared output geometry.
        method (InterpolationMethod, optional): Gap filling method. Defaults to IDW(k=10, power=2, rmax=50).
        aggregation (Union[str, Aggregation]): Per-cell reduction of ground elevations.
        engine (EngineConfig, optional): Compute budget.
        source_filter (str): Description of the ground filter, kept in provenance.

    Returns:
        Tuple[Raster, GapReport]: Continuous terrain surface and the cells left unresolved.
    """
    method = method or IDW(k=10, power=2.0, rmax=50.0)
    aggregation = Aggregation(aggregation)

    log.info(f"Generating DTM from {len(ground):,} ground points ({aggregation.value} + {method.name})")
    sparse = points_to_grid(
        ground,
        aggregation=aggregation,
        grid_spec=grid_spec,
        engine=engine,
        provenance=Provenance(
            stage="dtm",
            algorithm=aggregation.value,
            source_filter=source_filter,
            parameters={'resolution': grid_spec.resolution}
        )
    )

    return interpolate(sparse, ground, method, engine=engine, stage="dtm")

def generate_dsm(
    canopy: PointCloud,
    grid_spec: GridSpec,
    method: Optional[InterpolationMethod] = None,
    aggregation: Union[str, Aggregation] = Aggregation.MAX,
    engine: Optional[EngineConfig] = None,
    source_filter: str = ""
) -> Tuple[Raster, Optional[GapReport]]:
    """
    Rasterizes the uppermost returns into a surface model.

    Without a method the sparse grid is returned as is and empty cells stay no-data.
    With FIRST_RETURN_MAX, only first returns are used as interpolation sources too.

    Args:
        canopy (PointCloud): Points left after outlier removal.
        grid_spec (GridSpec): Shared output geometry.
        method (InterpolationMethod, optional): Gap filling method, or None.
        aggregation (Union[str, Aggregation]): MAX or FIRST_RETURN_MAX.
        engine (EngineConfig, optional): Compute budget.
        source_filter (str): Description of the canopy filter, kept in provenance.

    Returns:
        Tuple[Raster, Optional[GapReport]]: Surface grid and, when interpolated, its gap report.
    """
    aggregation = Aggregation(aggregation)

    log.info(f"Generating DSM from {len(canopy):,} points ({aggregation.value})")
    sparse = points_to_grid(
        canopy,
        aggregation=aggregation,
        grid_spec=grid_spec,
        engine=engine,
        provenance=Provenance(
            stage="dsm",
            algorithm=aggregation.value,
            source_filter=source_filter,
            parameters={'resolution': grid_spec.resolution}
        )
    )

    if method is None:
        return sparse, None

    sources = canopy
    if aggregation == Aggregation.FIRST_RETURN_MAX:
        sources = canopy.filter(first_returns())

    return interpolate(sparse, sources, method, engine=engine, stage="dsm")

def generate_density(
    cloud: PointCloud,
    grid_spec: GridSpec,
    engine: Optional[EngineConfig] = None,
    source_filter: str = ""
) -> Raster:
    """
    Point count per cell over the filtered cloud. Empty cells hold the nodata sentinel.
    """
    return points_to_grid(
        cloud,
        aggregation=Aggregation.COUNT,
        grid_spec=grid_spec,
        engine=engine,
        provenance=Provenance(
            stage="density",
            algorithm=Aggregation.COUNT.value,
            source_filter=source_filter,
            parameters={'resolution': grid_spec.resolution}
        )
    )

def _median_block(
    chm: Raster,
    filter_size: int,
    out_nodata: float
) -> np.ndarray:
    """
    Helper function to smooth one CHM window. Designed for use with the dispatch framework.

    Args:
        chm: Window of the canopy height grid, including its halo.
        filter_size: Size of the median filter.
        out_nodata: Value written to no-data cells.

    Returns:
        np.ndarray: Smoothed window; no-data cells are kept as no-data.
    """
    valid = chm.valid_mask()
    temp = np.where(valid, chm.get_band(1), 0.0)
    smoothed = ndimage.median_filter(temp, size=filter_size)
    return np.where(valid, smoothed, out_nodata)

def calculate_chm(
    dsm: Raster,
    dtm: Raster,
    engine: Optional[EngineConfig] = None,
    filter_size: int = 0
) -> Raster:
    """
    Calculates the Canopy Height Model (CHM) as DSM minus DTM.

    Negative heights are kept; use raster.algebra.clip to clamp them. A cell is no-data
    when either input is no-data there.

    Args:
        dsm: Digital Surface Model.
        dtm: Digital Terrain Model on the same grid.
        engine: Compute budget for the windowed evaluation.
        filter_size: Size of an optional median filter applied to valid cells. 0 disables it.

    Returns:
        Raster: The canopy height grid.

    Raises:
        GridMismatchError: If the two grids are not co-registered.
    """
    if filter_size < 0:
        raise ValueError(f"filter_size must be >= 0, got {filter_size}")

    parameters = {'filter_size': filter_size}
    chm = subtract(dsm, dtm, engine=engine)

    if filter_size > 1:
        # The halo lets each window see the neighbours its median filter reaches
        smoothed = dispatch(
            func=_median_block,
            input_map={'chm': chm},
            static_kwargs={'filter_size': filter_size, 'out_nodata': NODATA_VAL},
            config=DispatchConfig(engine=engine, overlap=filter_size // 2 + 1)
        )
        chm = Raster(data=smoothed, transform=chm.transform, crs=chm.crs, nodata=NODATA_VAL)

    valid = chm.valid_mask()
    if np.any(valid):
        log.debug(f"CHM range: {chm.get_band(1)[valid].min():.2f} to {chm.get_band(1)[valid].max():.2f}")

    return Raster(
        data=chm.data,
        transform=chm.transform,
        crs=chm.crs,
        nodata=NODATA_VAL,
        band_names={"CHM": 1},
        provenance=Provenance(
            stage="chm",
            algorithm="subtract",
            source_filter=f"{_stage_of(dsm)} - {_stage_of(dtm)}",
            parameters=parameters
        )
    )

def _stage_of(grid: Raster) -> str:
    return grid.provenance.stage if grid.provenance else "grid"
