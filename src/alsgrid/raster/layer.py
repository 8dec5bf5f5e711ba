# src/alsgrid/raster/layer.py

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.transform import Affine
from rasterio.windows import Window
from rasterio.windows import transform as compute_window_transform

from alsgrid.exceptions import RasterValidationError

log = logging.getLogger(__name__)

__all__ = ["Raster", "Provenance", "NODATA_VAL"]

NODATA_VAL = -9999.0

@dataclass(frozen=True)
class Provenance:
    """
    Reproducibility record attached to a derived grid (DTM, DSM, CHM, ...).

    Args:
        stage: Pipeline stage that produced the grid ('dtm', 'dsm', 'chm').
        algorithm: Aggregation or interpolation used ('max', 'idw', 'subtract').
        source_filter: Description of the point filter feeding the stage.
        parameters: Algorithm parameters (resolution, k, power, ...).
    """
    stage: str
    algorithm: str
    source_filter: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_tags(self) -> Dict[str, str]:
        """Flattens the record into GeoTIFF metadata tags."""
        return {
            "ALSGRID_STAGE": self.stage,
            "ALSGRID_ALGORITHM": self.algorithm,
            "ALSGRID_SOURCE_FILTER": self.source_filter,
            "ALSGRID_PARAMETERS": json.dumps(self.parameters, sort_keys=True, default=str)
        }

    @classmethod
    def from_tags(cls, tags: Dict[str, str]) -> Optional['Provenance']:
        """Rebuilds a record from GeoTIFF tags. Returns None if the file carries none."""
        if "ALSGRID_STAGE" not in tags:
            return None
        return cls(
            stage=tags["ALSGRID_STAGE"],
            algorithm=tags.get("ALSGRID_ALGORITHM", ""),
            source_filter=tags.get("ALSGRID_SOURCE_FILTER", ""),
            parameters=json.loads(tags.get("ALSGRID_PARAMETERS", "{}"))
        )

class Raster:
    """
    The fundamental grid unit of the alsgrid pipeline.

    A Raster is an in-memory "Envelope" that synchronizes:
    1. The 'Heavy' Data: A read-only NumPy array of cells.
    2. The 'Light' Context: Geospatial metadata (CRS, Transform, no-data sentinel).

    Rasters are written once by the stage that produces them and never modified
    afterwards, so they can be shared freely between worker threads.

    Attributes:
        data (np.ndarray): The cell array in (Bands, Height, Width) format.
        transform (Affine): The affine transform matrix.
        crs (CRS): The Coordinate Reference System.
        nodata (float | int | None): The value representing missing data.
        band_names (Dict[str, int]): Mapping of semantic names to 1-based band indices.
        provenance (Provenance | None): How the grid was produced.
    """

    def __init__(
        self,
        data: np.ndarray,
        transform: Affine,
        crs: Optional[CRS],
        nodata: Optional[Union[float, int]] = None,
        band_names: Optional[Dict[str, int]] = None,
        provenance: Optional[Provenance] = None
    ):
        """
        Initialize a Raster object.

        Args:
            data: Input array. Must be 2D (Height, Width) or 3D (Bands, Height, Width).
                  2D arrays are automatically promoted to 3D (1, Height, Width).
            transform: Geospatial transform (maps cells to coordinates).
            crs: Coordinate Reference System.
            nodata: Value indicating no data.
            band_names: Optional mapping of names to band indices ('DTM': 1).
            provenance: Optional reproducibility record.

        Raises:
            RasterValidationError: If dimensions mismatch or types are incorrect.
        """
        self.validate_inputs(data, transform)

        # Enforce 3D structure (Bands, Height, Width)
        if data.ndim == 2:
            data = data[np.newaxis, :, :]

        # A read-only view leaves the caller's array untouched
        view = data.view()
        view.flags.writeable = False

        self._data = view
        self.transform = transform
        self.crs = CRS.from_user_input(crs) if crs is not None else None
        self.nodata = nodata
        self.band_names = band_names or {}
        self.provenance = provenance

    @staticmethod
    def validate_inputs(data: np.ndarray, transform: Affine):
        """Internal validation logic."""
        if not isinstance(data, np.ndarray):
            raise TypeError(f"Data must be numpy.ndarray, got {type(data)}")

        if data.ndim not in (2, 3):
            raise RasterValidationError(f"Data must be 2D or 3D, got shape {data.shape}")

        if not isinstance(transform, Affine):
            raise TypeError(f"Transform must be rasterio.Affine, got {type(transform)}")

    def read_window(self, window: Window) -> 'Raster':
        """
        Slices a tile out of this raster.

        Args:
            window: Window in cell coordinates. Must lie inside the raster.

        Returns:
            Raster: A tile sharing the parent's CRS and nodata, with a shifted transform.
        """
        row_off, col_off = int(window.row_off), int(window.col_off)
        height, width = int(window.height), int(window.width)

        # NOTE: Rasterio windows use (col, row), Numpy uses (row, col),
        # but our data format is (Bands, Height, Width)
        window_data = self._data[:, row_off:row_off + height, col_off:col_off + width]

        return Raster(
            data=window_data,
            transform=compute_window_transform(window, self.transform),
            crs=self.crs,
            nodata=self.nodata,
            band_names=self.band_names
        )

    # Dynamic metadata properties

    @property
    def data(self) -> np.ndarray:
        """Access the raw (read-only) cell data."""
        return self._data

    @property
    def width(self) -> int:
        return self._data.shape[2]

    @property
    def height(self) -> int:
        return self._data.shape[1]

    @property
    def count(self) -> int:
        return self._data.shape[0]

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Returns (Bands, Height, Width)."""
        return self._data.shape

    @property
    def resolution(self) -> Tuple[float, float]:
        """Returns (x cell size, y cell size) in CRS units."""
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Returns (left, bottom, right, top) in CRS units."""
        left, bottom, right, top = rasterio.transform.array_bounds(self.height, self.width, self.transform)
        return left, bottom, right, top

    @property
    def profile(self) -> Dict[str, Any]:
        """
        Generates a Rasterio-compliant profile based on current state.
        Properties like compression and tiling can be overridden by passing
        rasterio profile parameters to io.save.
        """
        return {
            'driver': 'GTiff',
            'dtype': self._data.dtype,
            'nodata': self.nodata,
            'width': self.width,
            'height': self.height,
            'count': self.count,
            'crs': self.crs,
            'transform': self.transform,
            'compress': 'lzw',
            'tiled': True
        }

    def get_band(self, identifier: Union[int, str] = 1) -> np.ndarray:
        """
        Retrieve a specific band by 1-based index or semantic name.

        Returns:
            np.ndarray: 2D array of the band.
        """
        if isinstance(identifier, str):
            if identifier not in self.band_names:
                raise KeyError(f"Band name '{identifier}' not found in {list(self.band_names.keys())}")
            idx = self.band_names[identifier]
        else:
            idx = identifier

        if not (1 <= idx <= self.count):
            raise IndexError(f"Band index {idx} out of range (1-{self.count})")

        return self._data[idx - 1]

    def valid_mask(self, band: Union[int, str] = 1) -> np.ndarray:
        """
        Boolean mask of cells holding a real value.

        NaN is always treated as missing, in addition to the declared nodata sentinel.
        """
        arr = self.get_band(band)
        if not np.issubdtype(arr.dtype, np.floating):
            mask = np.ones(arr.shape, dtype=bool)
        else:
            mask = ~np.isnan(arr)
        if self.nodata is not None and not np.isnan(self.nodata):
            mask &= arr != self.nodata
        return mask

    def nodata_cells(self, band: Union[int, str] = 1) -> np.ndarray:
        """Returns an (N, 2) array of (row, col) indices of missing cells."""
        return np.argwhere(~self.valid_mask(band))

    def is_aligned(self, other: 'Raster', tolerance: float = 1e-9) -> bool:
        """True if both rasters share shape, extent, resolution and CRS."""
        return (
            self.height == other.height and
            self.width == other.width and
            self.transform.almost_equals(other.transform, precision=tolerance) and
            self.crs == other.crs
        )

    def xy(self, rows: np.ndarray, cols: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Map coordinates of cell centres for the given row/column indices."""
        rows = np.asarray(rows, dtype=np.float64)
        cols = np.asarray(cols, dtype=np.float64)
        xs = self.transform.c + (cols + 0.5) * self.transform.a + (rows + 0.5) * self.transform.b
        ys = self.transform.f + (cols + 0.5) * self.transform.d + (rows + 0.5) * self.transform.e
        return xs, ys

    def __repr__(self) -> str:
        """Returns a string representation of the Raster object based on its metadata."""
        stage = f" stage={self.provenance.stage}" if self.provenance else ""
        return (f"<Raster shape={self.shape} dtype={self._data.dtype} "
                f"crs={self.crs} bounds={self.bounds}{stage}>")

    def __eq__(self, other: object) -> bool:
        """Checks equality based on metadata and cell data."""
        if not isinstance(other, Raster):
            return NotImplemented

        # Check metadata first (cheap)
        meta_eq = (
            self.transform == other.transform and
            self.crs == other.crs and
            self.nodata == other.nodata and
            self.shape == other.shape
        )
        if not meta_eq:
            return False

        # Check data only if necessary (expensive)
        return np.array_equal(self._data, other.data, equal_nan=True)
