# src/alsgrid/lidar/interpolate.py

"""
This module fills no-data cells of a rasterized grid from the source points that produced it.

Two methods are available:
    IDW: k-nearest-neighbour inverse distance weighting within a search radius.
    TIN: linear interpolation on a Delaunay triangulation of the source points.

Cells that cannot be resolved (nothing within rmax, outside the convex hull) keep the
no-data value and are reported in a GapReport. They are never zero-filled.
"""

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Tuple, Union

import numpy as np
from numba import jit
from scipy.interpolate import LinearNDInterpolator
from scipy.spatial import Delaunay, QhullError, cKDTree

from alsgrid.exceptions import UnresolvedGapWarning
from alsgrid.raster.engine import EngineConfig, parallel_map
from alsgrid.raster.layer import NODATA_VAL, Provenance, Raster

from .layer import PointCloud

log = logging.getLogger(__name__)

__all__ = [
    "IDW",
    "TIN",
    "InterpolationMethod",
    "parse_method",
    "GapReport",
    "interpolate"
]

# Extra neighbours fetched so equidistant candidates can be ordered by index
_TIE_MARGIN = 4
_MIN_BLOCK = 4096

@dataclass(frozen=True)
class IDW:
    """
    Inverse distance weighting parameters.

    Args:
        k (int): Maximum number of neighbours per cell.
        power (float): Distance exponent p in 1/d^p.
        rmax (float | None): Search radius in CRS units. None means unbounded.
    """
    k: int = 10
    power: float = 2.0
    rmax: Optional[float] = None

    name: ClassVar[str] = "idw"

    def __post_init__(self):
        if isinstance(self.k, bool) or not isinstance(self.k, (int, np.integer)) or self.k < 1:
            raise ValueError(f"IDW k must be a positive integer, got {self.k!r}")
        if not self.power > 0:
            raise ValueError(f"IDW power must be positive, got {self.power}")
        if self.rmax is not None and not self.rmax > 0:
            raise ValueError(f"IDW rmax must be positive or None, got {self.rmax}")

    def parameters(self) -> Dict[str, object]:
        return {'k': int(self.k), 'power': float(self.power), 'rmax': self.rmax}

@dataclass(frozen=True)
class TIN:
    """Delaunay triangulation with linear interpolation inside each triangle."""

    name: ClassVar[str] = "tin"

    def parameters(self) -> Dict[str, object]:
        return {}

InterpolationMethod = Union[IDW, TIN]

def parse_method(name: Optional[str], **params) -> Optional[InterpolationMethod]:
    """
    Maps a configuration string to an interpolation method.

    Args:
        name: 'idw', 'tin', or 'none'/None for no interpolation.
        **params: IDW parameters (k, power, rmax). Unused keys are rejected for TIN.

    Returns:
        IDW, TIN or None.
    """
    if name is None or str(name).lower() == "none":
        return None

    key = str(name).lower()
    if key == IDW.name:
        return IDW(**params)
    if key == TIN.name:
        if params:
            raise ValueError(f"TIN takes no parameters, got {sorted(params)}")
        return TIN()
    raise ValueError(f"Unknown interpolation method '{name}'. Options: 'idw', 'tin', 'none'")

@dataclass(frozen=True, eq=False)
class GapReport:
    """
    Cells interpolation could not resolve.

    Args:
        stage (str): Stage that produced the grid ('dtm', 'dsm', ...).
        cells (np.ndarray): (N, 2) array of (row, col) indices still holding no-data.
        total_cells (int): Number of cells in the grid.
    """
    stage: str
    cells: np.ndarray = field(default_factory=lambda: np.empty((0, 2), dtype=np.int64))
    total_cells: int = 0

    @property
    def count(self) -> int:
        return int(len(self.cells))

    @property
    def fraction(self) -> float:
        return self.count / self.total_cells if self.total_cells else 0.0

    def __str__(self) -> str:
        return f"{self.stage}: {self.count} unresolved cells ({self.fraction:.2%})"

@jit(nopython=True, nogil=True, cache=True)
def _idw_weights(
    dist: np.ndarray,
    idx: np.ndarray,
    values: np.ndarray,
    n_sources: int,
    k: int,
    power: float
    ):
    """
    Weighted average of the neighbour values for each target, with explicit loops for numba optimization.

    Args:
        dist: (M, K') neighbour distances, ascending per row (inf when absent).
        idx: (M, K') neighbour indices (n_sources when absent).
        values: Source z values.
        n_sources: Number of source points (marker for absent neighbours).
        k: Number of neighbours to use.
        power: Distance exponent.

    Returns:
        1D array of estimates; NaN where no neighbour exists.
    """
    m = dist.shape[0]
    out = np.full(m, np.nan)
    for i in range(m):
        num = 0.0
        den = 0.0
        used = 0
        first = 0.0
        nearest = 0.0
        exact = False
        for j in range(dist.shape[1]):
            if used == k:
                break
            s = idx[i, j]
            if s >= n_sources:
                break
            d = dist[i, j]
            if d == 0.0:
                # A coincident source defines the value outright
                out[i] = values[s]
                exact = True
                break
            if used == 0:
                first = values[s]
                nearest = d
            # Scaled by the nearest distance: w is in (0, 1] and the first weight is 1
            w = (nearest / d) ** power
            num += w * values[s]
            den += w
            used += 1
        if exact:
            continue
        if used == 1:
            out[i] = first
        elif used > 1:
            out[i] = num / den
    return out

def _as_source_array(sources: Union[PointCloud, np.ndarray]) -> np.ndarray:
    """Normalizes sources to a finite (N, 3) float64 array of x, y, z."""
    arr = sources.xyz if isinstance(sources, PointCloud) else np.asarray(sources, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Sources must be a PointCloud or an (N, 3) array, got shape {arr.shape}")
    return arr[np.all(np.isfinite(arr), axis=1)]

def _blocks(m: int, engine: EngineConfig) -> List[slice]:
    step = max(_MIN_BLOCK, math.ceil(m / engine.workers))
    return [slice(start, min(start + step, m)) for start in range(0, m, step)]

def _idw(
    src: np.ndarray,
    targets: np.ndarray,
    method: IDW,
    engine: EngineConfig
) -> np.ndarray:
    n = len(src)
    if n == 0:
        return np.full(len(targets), np.nan)

    tree = cKDTree(src[:, :2])
    k_query = min(n, method.k + _TIE_MARGIN)
    # cKDTree excludes neighbours at exactly the bound; nudge it so rmax itself is inclusive
    upper = np.inf if method.rmax is None else np.nextafter(method.rmax, np.inf)
    z = np.ascontiguousarray(src[:, 2])

    def query_block(sl: slice) -> np.ndarray:
        dist, idx = tree.query(targets[sl], k=k_query, distance_upper_bound=upper)
        if k_query == 1:
            dist, idx = dist[:, np.newaxis], idx[:, np.newaxis]

        # Order by distance, then by source index, so ties resolve the same way every run
        order = np.lexsort((idx, dist), axis=-1)
        dist = np.take_along_axis(dist, order, axis=-1)
        idx = np.take_along_axis(idx, order, axis=-1)
        return _idw_weights(dist, idx.astype(np.int64), z, n, method.k, float(method.power))

    results = parallel_map(query_block, _blocks(len(targets), engine), engine)
    return np.concatenate(results) if results else np.empty(0)

def _tin(src: np.ndarray, targets: np.ndarray) -> np.ndarray:
    out = np.full(len(targets), np.nan)

    # Collapse duplicate xy to their highest z so the triangulation is well defined
    xy, inverse = np.unique(src[:, :2], axis=0, return_inverse=True)
    z = np.full(len(xy), -np.inf)
    np.maximum.at(z, inverse.reshape(-1), src[:, 2])

    if len(xy) < 3:
        log.debug(f"TIN needs at least 3 distinct sources, got {len(xy)}")
        return out

    try:
        tri = Delaunay(xy)
    except QhullError as e:
        log.warning(f"Triangulation failed, gaps stay unresolved: {e}")
        return out

    interpolator = LinearNDInterpolator(tri, z, fill_value=np.nan)
    return interpolator(targets)

def interpolate(
    grid: Raster,
    sources: Union[PointCloud, np.ndarray],
    method: InterpolationMethod,
    engine: Optional[EngineConfig] = None,
    stage: Optional[str] = None
) -> Tuple[Raster, GapReport]:
    """
    Fills the no-data cells of a grid from the points that produced it.

    Cells holding a value are left untouched. Each no-data cell centre is estimated
    independently, so the work is spread over the worker pool in blocks of cells.

    Args:
        grid (Raster): Sparse grid from points_to_grid.
        sources (Union[PointCloud, np.ndarray]): Source points (PointCloud or (N, 3) x, y, z array).
        method (InterpolationMethod): IDW(...) or TIN().
        engine (EngineConfig, optional): Compute budget.
        stage (str, optional): Name recorded in the gap report and provenance.

    Returns:
        Tuple[Raster, GapReport]: The filled grid and the cells left unresolved.
    """
    if not isinstance(method, (IDW, TIN)):
        raise TypeError(f"method must be IDW or TIN, got {type(method).__name__}")

    engine = engine or EngineConfig()
    stage = stage or (grid.provenance.stage if grid.provenance else "interpolate")
    total = grid.height * grid.width

    gaps = grid.nodata_cells()
    filled = grid.get_band(1).astype(np.float64)
    nodata = grid.nodata if grid.nodata is not None else NODATA_VAL

    if len(gaps) == 0:
        report = GapReport(stage=stage, total_cells=total)
    else:
        src = _as_source_array(sources)
        xs, ys = grid.xy(gaps[:, 0], gaps[:, 1])
        targets = np.column_stack((xs, ys))

        log.info(f"Interpolating {len(gaps):,} empty cells with {method.name.upper()} from {len(src):,} sources")
        if isinstance(method, IDW):
            estimates = _idw(src, targets, method, engine)
        else:
            estimates = _tin(src, targets)

        resolved = np.isfinite(estimates)
        filled[gaps[resolved, 0], gaps[resolved, 1]] = estimates[resolved]

        unresolved = gaps[~resolved]
        filled[unresolved[:, 0], unresolved[:, 1]] = nodata
        report = GapReport(stage=stage, cells=unresolved, total_cells=total)

    if report.count:
        log.warning(f"Unresolved gaps after {method.name.upper()} interpolation - {report}")
        warnings.warn(str(report), UnresolvedGapWarning, stacklevel=2)

    base = grid.provenance
    provenance = Provenance(
        stage=stage,
        algorithm=f"{base.algorithm}+{method.name}" if base else method.name,
        source_filter=base.source_filter if base else "",
        parameters={
            **(base.parameters if base else {}),
            **method.parameters(),
            'unresolved_cells': report.count
        }
    )

    return Raster(
        data=filled,
        transform=grid.transform,
        crs=grid.crs,
        nodata=nodata,
        band_names=grid.band_names,
        provenance=provenance
    ), report
