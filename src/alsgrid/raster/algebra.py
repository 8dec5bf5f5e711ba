# src/alsgrid/raster/algebra.py

"""
This module implements elementwise arithmetic between co-registered grids and
terrain derivatives (slope, aspect, hillshade) computed from local gradients.
"""

import logging
from enum import Enum
from typing import Optional, Union

import numexpr as ne
import numpy as np
import scipy.ndimage as ndimage

from alsgrid.exceptions import GridMismatchError

from .engine import DispatchConfig, EngineConfig, dispatch
from .layer import NODATA_VAL, Provenance, Raster

log = logging.getLogger(__name__)

__all__ = [
    "RasterOp",
    "AngleUnit",
    "require_aligned",
    "binary_op",
    "add",
    "subtract",
    "clip",
    "slope",
    "aspect",
    "hillshade"
]

class RasterOp(Enum):
    """
    Elementwise binary operations. Each value is the numexpr formula over inputs a and b.
    """
    ADD = "a + b"
    SUBTRACT = "a - b"
    MULTIPLY = "a * b"
    DIVIDE = "a / b"
    MINIMUM = "where(a < b, a, b)"
    MAXIMUM = "where(a > b, a, b)"

class AngleUnit(Enum):
    """Output unit for slope and aspect."""
    DEGREES = "degrees"
    RADIANS = "radians"

# Horn (1981) 3x3 weights; rows run north to south
_HORN_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
_HORN_Y = np.array([[1, 2, 1], [0, 0, 0], [-1, -2, -1]], dtype=np.float64)

def require_aligned(a: Raster, b: Raster):
    """
    Verifies that two grids share extent, resolution and CRS.

    Raises:
        GridMismatchError: Describing the first property that differs.
    """
    if a.is_aligned(b):
        return
    if (a.height, a.width) != (b.height, b.width):
        raise GridMismatchError(f"Shape mismatch: {(a.height, a.width)} != {(b.height, b.width)}")
    if a.crs != b.crs:
        raise GridMismatchError(f"CRS mismatch: {a.crs} != {b.crs}")
    if not a.transform.almost_equals(b.transform, precision=1e-9):
        raise GridMismatchError(
            f"Transform mismatch (extent or resolution differ):\n{a.transform}\n!=\n{b.transform}"
        )

def _binary_block(
    a: Raster,
    b: Raster,
    formula: str,
    out_nodata: float
) -> np.ndarray:
    """
    Evaluates one window of a binary operation, propagating no-data from either side.
    """
    mask = a.valid_mask() & b.valid_mask()

    # Placeholder 1.0 keeps masked cells out of divide-by-zero territory
    local_dict = {
        "a": np.where(mask, a.get_band(1), 1.0).astype(np.float64),
        "b": np.where(mask, b.get_band(1), 1.0).astype(np.float64)
    }
    result = ne.evaluate(formula, local_dict=local_dict)

    mask &= np.isfinite(result)
    return np.where(mask, result, out_nodata)

def binary_op(
    a: Raster,
    b: Raster,
    op: Union[str, RasterOp],
    engine: Optional[EngineConfig] = None,
    provenance: Optional[Provenance] = None
) -> Raster:
    """
    Combines two co-registered grids cell by cell.

    Args:
        a: Left operand.
        b: Right operand.
        op: RasterOp or its name ('add', 'subtract', 'multiply', 'divide', 'minimum', 'maximum').
        engine: Compute budget for the windowed evaluation.
        provenance: Optional record attached to the result.

    Returns:
        Raster: float64 grid with NODATA_VAL wherever either input is no-data.

    Raises:
        GridMismatchError: If the grids differ in extent, resolution or CRS.
    """
    if isinstance(op, str):
        try:
            op = RasterOp[op.upper()]
        except KeyError:
            raise ValueError(f"Unknown raster operation '{op}'. Options: {[o.name.lower() for o in RasterOp]}")

    require_aligned(a, b)

    result = dispatch(
        func=_binary_block,
        input_map={'a': a, 'b': b},
        static_kwargs={'formula': op.value, 'out_nodata': NODATA_VAL},
        config=DispatchConfig(engine=engine)
    )

    return Raster(
        data=result,
        transform=a.transform,
        crs=a.crs,
        nodata=NODATA_VAL,
        provenance=provenance
    )

def add(a: Raster, b: Raster, **kwargs) -> Raster:
    return binary_op(a, b, RasterOp.ADD, **kwargs)

def subtract(a: Raster, b: Raster, **kwargs) -> Raster:
    return binary_op(a, b, RasterOp.SUBTRACT, **kwargs)

def clip(
    grid: Raster,
    lower: Optional[float] = None,
    upper: Optional[float] = None
) -> Raster:
    """
    Clamps valid cells to [lower, upper]; no-data cells are left untouched.

    The pipeline never clamps on its own. This is the hook for callers who want
    e.g. negative canopy heights set to zero.
    """
    valid = grid.valid_mask()
    arr = grid.get_band(1)
    clipped = np.where(valid, np.clip(arr, lower, upper), arr)
    return Raster(
        data=clipped,
        transform=grid.transform,
        crs=grid.crs,
        nodata=grid.nodata,
        band_names=grid.band_names,
        provenance=grid.provenance
    )

def _terrain_block(
    grid: Raster,
    product: str,
    unit: AngleUnit,
    azimuth: float,
    altitude: float,
    out_nodata: float
) -> np.ndarray:
    """
    Computes slope, aspect or hillshade for one window (including its halo).

    A cell is valid only if its full 3x3 neighbourhood holds data. The window border
    counts as missing, which invalidates true grid edges while the halo ring that
    covers internal tile edges is cropped away by the dispatcher.
    """
    x_res, y_res = grid.resolution
    valid = grid.valid_mask()
    z = np.where(valid, grid.get_band(1), 0.0).astype(np.float64)

    supported = ndimage.binary_erosion(valid, structure=np.ones((3, 3), dtype=bool), border_value=0)

    dzdx = ndimage.correlate(z, _HORN_X / (8.0 * x_res), mode='nearest')
    dzdy = ndimage.correlate(z, _HORN_Y / (8.0 * y_res), mode='nearest')

    gradient = np.hypot(dzdx, dzdy)
    slope_rad = np.arctan(gradient)

    if product == "slope":
        out = np.degrees(slope_rad) if unit == AngleUnit.DEGREES else slope_rad
        return np.where(supported, out, out_nodata)

    # Compass azimuth of the downslope direction: 0 = north, clockwise
    aspect_rad = np.mod(np.arctan2(-dzdx, -dzdy), 2.0 * np.pi)

    if product == "aspect":
        out = np.degrees(aspect_rad) if unit == AngleUnit.DEGREES else aspect_rad
        flat = gradient == 0.0
        return np.where(supported & ~flat, out, out_nodata)

    zenith = np.radians(90.0 - altitude)
    sun_az = np.radians(azimuth)
    shade = (np.cos(zenith) * np.cos(slope_rad) +
             np.sin(zenith) * np.sin(slope_rad) * np.cos(sun_az - aspect_rad))
    shade = np.clip(shade, 0.0, 1.0) * 255.0
    return np.where(supported, shade, out_nodata)

def _terrain_product(
    grid: Raster,
    product: str,
    unit: AngleUnit = AngleUnit.DEGREES,
    azimuth: float = 315.0,
    altitude: float = 45.0,
    engine: Optional[EngineConfig] = None
) -> Raster:
    unit = AngleUnit(unit)

    result = dispatch(
        func=_terrain_block,
        input_map={'grid': grid},
        static_kwargs={
            'product': product,
            'unit': unit,
            'azimuth': azimuth,
            'altitude': altitude,
            'out_nodata': NODATA_VAL
        },
        config=DispatchConfig(engine=engine, overlap=1)
    )

    parameters = {'unit': unit.value}
    if product == "hillshade":
        parameters = {'azimuth': azimuth, 'altitude': altitude}

    return Raster(
        data=result,
        transform=grid.transform,
        crs=grid.crs,
        nodata=NODATA_VAL,
        band_names={product.upper(): 1},
        provenance=Provenance(
            stage=product,
            algorithm="horn",
            source_filter=grid.provenance.stage if grid.provenance else "",
            parameters=parameters
        )
    )

def slope(
    grid: Raster,
    unit: Union[str, AngleUnit] = AngleUnit.DEGREES,
    engine: Optional[EngineConfig] = None
) -> Raster:
    """
    Surface slope from Horn finite differences.

    Args:
        grid: Elevation grid (e.g. a DTM).
        unit: AngleUnit.DEGREES or AngleUnit.RADIANS.
        engine: Compute budget.

    Returns:
        Raster: Slope angle per cell; cells whose 3x3 window touches no-data or the edge are no-data.
    """
    return _terrain_product(grid, "slope", unit=unit, engine=engine)

def aspect(
    grid: Raster,
    unit: Union[str, AngleUnit] = AngleUnit.DEGREES,
    engine: Optional[EngineConfig] = None
) -> Raster:
    """
    Compass direction the surface faces (downslope azimuth, clockwise from north).

    Flat cells have no aspect and are no-data.
    """
    return _terrain_product(grid, "aspect", unit=unit, engine=engine)

def hillshade(
    grid: Raster,
    azimuth: float = 315.0,
    altitude: float = 45.0,
    engine: Optional[EngineConfig] = None
) -> Raster:
    """
    Shaded relief (0-255) for a light source at the given azimuth and altitude in degrees.
    """
    return _terrain_product(grid, "hillshade", azimuth=azimuth, altitude=altitude, engine=engine)
