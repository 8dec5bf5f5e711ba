# src/alsgrid/pipeline.py

"""
This module orchestrates the end-to-end derivation of terrain and canopy grids
from one point cloud:

    filter -> DTM -> DSM -> CHM -> density (-> slope, aspect, hillshade)

Stages run in order. Each stage parallelizes internally through the engine, and
the cancellation token is consulted between stages.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

from rasterio.crs import CRS

from alsgrid.exceptions import PipelineCancelled, PipelineError
from alsgrid.lidar.filters import all_points, classification_in, classification_not_in, z_below
from alsgrid.lidar.generate_model import calculate_chm, generate_density, generate_dsm, generate_dtm
from alsgrid.lidar.interpolate import IDW, TIN, GapReport, InterpolationMethod, parse_method
from alsgrid.lidar.layer import PointCloud
from alsgrid.lidar.rasterize import Aggregation
from alsgrid.raster.algebra import AngleUnit, aspect, hillshade, slope
from alsgrid.raster.engine import EngineConfig
from alsgrid.raster.grid import GridSpec
from alsgrid.raster.io import save
from alsgrid.raster.layer import Raster

log = logging.getLogger(__name__)

__all__ = [
    "PipelineConfig",
    "PipelineResult",
    "CancellationToken",
    "run_dsm_pipeline",
    "run_pipeline_from_file"
]

_TERRAIN_AGGREGATIONS = (Aggregation.MAX, Aggregation.MIN, Aggregation.MEAN)
_CANOPY_AGGREGATIONS = (Aggregation.MAX, Aggregation.FIRST_RETURN_MAX)

def _coerce_method(value: Any) -> Optional[InterpolationMethod]:
    """Accepts a method variant, its name, or a mapping such as {'name': 'idw', 'k': 8}."""
    if value is None or isinstance(value, (IDW, TIN)):
        return value
    if isinstance(value, str):
        return parse_method(value)
    if isinstance(value, Mapping):
        params = dict(value)
        return parse_method(params.pop("name", None), **params)
    raise ValueError(f"Cannot interpret {value!r} as an interpolation method")

@dataclass
class PipelineConfig:
    """
    Parameters of one pipeline run.

    Args:
        resolution (float): Cell size in CRS units shared by every output grid.
        ground_class_code (int): Classification code of ground returns (ASPRS 2).
        excluded_overlap_classes (Tuple[int, ...]): Codes dropped before any stage (e.g. 22, 23).
        elevation_outlier_threshold (float | None): Points above this z are left out of the DSM.
        dtm_method (InterpolationMethod): Gap filling for the DTM.
        dsm_method (InterpolationMethod | None): Gap filling for the DSM, or None to keep it sparse.
        terrain_aggregation (Aggregation): Per-cell reduction of ground points.
        canopy_aggregation (Aggregation): MAX or FIRST_RETURN_MAX.
        terrain_metrics (bool): Also derive slope, aspect and hillshade from the DTM.
        slope_unit (AngleUnit): Unit of slope and aspect.
    """
    resolution: float = 1.0
    ground_class_code: int = 2
    excluded_overlap_classes: Tuple[int, ...] = ()
    elevation_outlier_threshold: Optional[float] = None
    dtm_method: InterpolationMethod = field(default_factory=lambda: IDW(k=10, power=2.0, rmax=50.0))
    dsm_method: Optional[InterpolationMethod] = None
    terrain_aggregation: Aggregation = Aggregation.MAX
    canopy_aggregation: Aggregation = Aggregation.MAX
    terrain_metrics: bool = False
    slope_unit: AngleUnit = AngleUnit.DEGREES

    def __post_init__(self):
        if not self.resolution > 0:
            raise ValueError(f"resolution must be positive, got {self.resolution}")
        if not 0 <= int(self.ground_class_code) <= 255:
            raise ValueError(f"ground_class_code must be in [0, 255], got {self.ground_class_code}")

        self.excluded_overlap_classes = tuple(sorted(set(int(c) for c in self.excluded_overlap_classes)))
        if self.ground_class_code in self.excluded_overlap_classes:
            raise ValueError(f"Ground class {self.ground_class_code} cannot also be excluded")

        self.dtm_method = _coerce_method(self.dtm_method)
        self.dsm_method = _coerce_method(self.dsm_method)
        if self.dtm_method is None:
            raise ValueError("dtm_method is required (IDW or TIN)")

        self.terrain_aggregation = Aggregation(self.terrain_aggregation)
        self.canopy_aggregation = Aggregation(self.canopy_aggregation)
        if self.terrain_aggregation not in _TERRAIN_AGGREGATIONS:
            raise ValueError(
                f"terrain_aggregation must be one of {[a.value for a in _TERRAIN_AGGREGATIONS]}, "
                f"got '{self.terrain_aggregation.value}'"
            )
        if self.canopy_aggregation not in _CANOPY_AGGREGATIONS:
            raise ValueError(
                f"canopy_aggregation must be one of {[a.value for a in _CANOPY_AGGREGATIONS]}, "
                f"got '{self.canopy_aggregation.value}'"
            )

        self.slope_unit = AngleUnit(self.slope_unit)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> 'PipelineConfig':
        """
        Builds a config from plain values (CLI arguments, a parsed JSON file).

        Unknown keys are rejected rather than silently ignored.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown pipeline option(s): {sorted(unknown)}")
        return cls(**dict(values))

class CancellationToken:
    """
    Cooperative cancellation flag shared between the caller and a running pipeline.

    The pipeline checks it between stages; a stage already running completes first.
    """
    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str):
        """Raises PipelineCancelled if cancellation was requested before `stage`."""
        if self._event.is_set():
            raise PipelineCancelled(stage, "Run cancelled before this stage started")

@dataclass
class PipelineResult:
    """
    Grids produced by one run, all on the same GridSpec.

    The terrain derivatives are None unless terrain_metrics was requested.
    `gaps` maps each interpolated stage to its GapReport.
    """
    grid_spec: GridSpec
    dtm: Raster
    dsm: Raster
    chm: Raster
    density: Raster
    slope: Optional[Raster] = None
    aspect: Optional[Raster] = None
    hillshade: Optional[Raster] = None
    gaps: Dict[str, GapReport] = field(default_factory=dict)

    def products(self) -> Dict[str, Raster]:
        """Returns every produced grid keyed by product name."""
        names = ("dtm", "dsm", "chm", "density", "slope", "aspect", "hillshade")
        return {name: getattr(self, name) for name in names if getattr(self, name) is not None}

@contextmanager
def _stage(name: str, token: CancellationToken) -> Iterator[None]:
    """
    Runs one stage: checks for cancellation, times it, and wraps failures with the stage name.
    """
    token.check(name)
    log.info(f"Stage '{name}' started")
    start = time.perf_counter()
    try:
        yield
    except PipelineError:
        raise
    except Exception as e:
        log.error(f"Stage '{name}' failed: {e}")
        raise PipelineError(name, str(e)) from e
    log.info(f"Stage '{name}' finished in {time.perf_counter() - start:.2f}s")

def run_dsm_pipeline(
    cloud: PointCloud,
    config: Optional[PipelineConfig] = None,
    engine: Optional[EngineConfig] = None,
    cancel_token: Optional[CancellationToken] = None
) -> PipelineResult:
    """
    Derives DTM, DSM, CHM and point density grids from a classified point cloud.

    Args:
        cloud (PointCloud): Input points with ground classification already assigned.
        config (PipelineConfig, optional): Run parameters. Defaults to PipelineConfig().
        engine (EngineConfig, optional): Compute budget shared by every stage.
        cancel_token (CancellationToken, optional): Checked between stages.

    Returns:
        PipelineResult: Co-registered grids plus the per-stage gap reports.

    Raises:
        PipelineCancelled: If the token was cancelled.
        PipelineError: If a stage fails; the original error is chained as __cause__.
    """
    config = config or PipelineConfig()
    engine = engine or EngineConfig()
    token = cancel_token or CancellationToken()
    gaps: Dict[str, GapReport] = {}

    log.info(f"Running pipeline on {len(cloud):,} points at {config.resolution} (workers={engine.workers})")

    with _stage("filter", token):
        if config.excluded_overlap_classes:
            cloud = cloud.filter(classification_not_in(config.excluded_overlap_classes))

        # One grid for every product keeps DTM and DSM co-registered
        grid_spec = GridSpec.from_bounds(cloud.bounds, config.resolution)
        log.debug(f"Grid {grid_spec.shape} at origin ({grid_spec.min_x}, {grid_spec.min_y})")

        ground_filter = classification_in([config.ground_class_code])
        ground = cloud.filter(ground_filter)

        if config.elevation_outlier_threshold is None:
            canopy_filter = all_points()
        else:
            canopy_filter = z_below(config.elevation_outlier_threshold)
        canopy = cloud.filter(canopy_filter)

    with _stage("dtm", token):
        dtm, gaps["dtm"] = generate_dtm(
            ground,
            grid_spec,
            method=config.dtm_method,
            aggregation=config.terrain_aggregation,
            engine=engine,
            source_filter=ground_filter.description
        )

    with _stage("dsm", token):
        dsm, dsm_gaps = generate_dsm(
            canopy,
            grid_spec,
            method=config.dsm_method,
            aggregation=config.canopy_aggregation,
            engine=engine,
            source_filter=canopy_filter.description
        )
        if dsm_gaps is not None:
            gaps["dsm"] = dsm_gaps

    with _stage("chm", token):
        chm = calculate_chm(dsm, dtm, engine=engine)

    with _stage("density", token):
        density = generate_density(cloud, grid_spec, engine=engine)

    result = PipelineResult(grid_spec=grid_spec, dtm=dtm, dsm=dsm, chm=chm, density=density, gaps=gaps)

    if config.terrain_metrics:
        with _stage("terrain", token):
            result.slope = slope(dtm, unit=config.slope_unit, engine=engine)
            result.aspect = aspect(dtm, unit=config.slope_unit, engine=engine)
            result.hillshade = hillshade(dtm, engine=engine)

    for report in gaps.values():
        if report.count:
            log.warning(f"Run finished with unresolved gaps - {report}")

    return result

def run_pipeline_from_file(
    path: Union[str, Path],
    output_dir: Union[str, Path],
    config: Optional[PipelineConfig] = None,
    crs: Optional[Union[str, CRS]] = None,
    engine: Optional[EngineConfig] = None,
    cancel_token: Optional[CancellationToken] = None
) -> Dict[str, Path]:
    """
    Loads a LAS/LAZ file, runs the pipeline and writes every grid as GeoTIFF.

    Args:
        path: Input point cloud.
        output_dir: Directory receiving dtm.tif, dsm.tif, chm.tif, density.tif, ...
        config: Run parameters.
        crs: CRS to assign when the file carries none.
        engine: Compute budget.
        cancel_token: Checked between stages.

    Returns:
        Dict[str, Path]: Written files keyed by product name.
    """
    token = cancel_token or CancellationToken()
    output_dir = Path(output_dir)

    with _stage("load", token):
        cloud = PointCloud.from_file(path, crs=crs)

    result = run_dsm_pipeline(cloud, config=config, engine=engine, cancel_token=token)

    written: Dict[str, Path] = {}
    with _stage("write", token):
        for name, grid in result.products().items():
            written[name] = save(grid, output_dir / f"{name}.tif")

    log.info(f"Wrote {len(written)} grids to {output_dir}")
    return written
