# src/alsgrid/raster/io.py

"""
This module handles all disk-based operations for raster data.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import rasterio
from rasterio.windows import Window

from .layer import Raster, Provenance

log = logging.getLogger(__name__)

__all__ = [
    "load",
    "save",
    "read_info"
]

def load(
    path: Union[str, Path],
    band: int = 1,
    window: Optional[Window] = None
) -> Raster:
    """
    Load a single-band grid from disk into memory.

    Args:
        path: Path to raster file. All supported GDAL formats are accepted.
        band: 1-based band index to load.
        window: Optional rasterio Window object to load only a spatial subset.

    Returns:
        Raster: In-memory Raster object, with provenance restored from tags when present.
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Raster file not found: {path}")

    log.debug(f"Loading raster: {path.name}")

    try:
        with rasterio.open(path) as src:
            data = src.read([band], window=window)
            transform = src.window_transform(window) if window is not None else src.transform
            desc = src.descriptions[band - 1]

            return Raster(
                data=data,
                transform=transform,
                crs=src.crs,
                nodata=src.nodata,
                band_names={desc: 1} if desc else None,
                provenance=Provenance.from_tags(src.tags())
            )

    except rasterio.RasterioIOError as e:
        raise IOError(f"Failed to read raster from {path}: {e}") from e

def save(
    raster: Raster,
    path: Union[str, Path],
    **profile_kwargs
) -> Path:
    """
    Write a Raster object to disk as a georeferenced file.

    Resolution, extent, CRS and the no-data sentinel travel in the profile;
    provenance is stored as dataset tags.

    Args:
        raster: Raster object to save
        path: Output file path. All supported GDAL formats are accepted.
        **profile_kwargs: Override default rasterio profile settings.

    Returns:
        Path: The written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    profile = raster.profile.copy()
    profile.update(profile_kwargs)

    log.info(f"Saving raster {raster.shape} → {path}")

    try:
        with rasterio.open(path, 'w', **profile) as dst:
            dst.write(raster.data)

            if raster.band_names:
                for name, idx in raster.band_names.items():
                    if 1 <= idx <= raster.count:
                        dst.set_band_description(idx, name)

            if raster.provenance is not None:
                dst.update_tags(**raster.provenance.to_tags())

    except Exception as e:
        raise IOError(f"Failed to save raster to {path}: {e}") from e

    return path

def read_info(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Inspects a raster file and extracts spatial metadata in a single pass.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    try:
        with rasterio.open(path) as src:
            return {
                'crs': src.crs,
                'transform': src.transform,
                'bounds': src.bounds,
                'resolution': src.res,
                'width': src.width,
                'height': src.height,
                'count': src.count,
                'driver': src.driver,
                'nodata': src.nodata,
                'tags': src.tags()
            }
    except Exception as e:
        raise IOError(f"Failed to read metadata from {path}: {e}") from e
