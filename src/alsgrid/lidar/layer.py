# src/alsgrid/lidar/layer.py

"""
This module defines the core data structure for lidar point clouds, along with methods for loading and basic manipulation.
"""

import logging
import struct
from dataclasses import dataclass, fields
from pathlib import Path
from typing import TYPE_CHECKING, Generator, Optional, Tuple, Union

import laspy
import numpy as np
from laspy.errors import LaspyException
from rasterio.crs import CRS

from alsgrid.exceptions import CRSUndefinedError, FormatError

if TYPE_CHECKING:
    from .filters import PointFilter

log = logging.getLogger(__name__)

__all__ = [
    "PointCloud",
    "read_extent",
    "filter_points",
    "bounding_box"
]

Bounds = Tuple[float, float, float, float]

_PARSE_ERRORS = (LaspyException, ValueError, EOFError, struct.error)

def _resolve_crs(
    header: laspy.LasHeader,
    crs: Optional[Union[str, CRS]],
    source: Path
) -> CRS:
    """
    Decides the CRS of a point cloud from its header and the caller's assignment.

    A caller-supplied CRS always wins. Without one, the header must carry a CRS;
    nothing is inferred from the coordinates.
    """
    embedded = None
    try:
        parsed = header.parse_crs()
        if parsed is not None:
            embedded = CRS.from_wkt(parsed.to_wkt())
    except Exception as e:
        if crs is None:
            raise FormatError(f"Unreadable CRS record in {source}: {e}") from e
        log.warning(f"Ignoring unreadable CRS record in {source.name}: {e}")

    if crs is not None:
        assigned = CRS.from_user_input(crs)
        if embedded is not None and embedded != assigned:
            log.warning(f"Overriding embedded CRS {embedded} of {source.name} with {assigned}")
        return assigned

    if embedded is None:
        raise CRSUndefinedError(
            f"{source} has no CRS in its header. "
            "Assign one explicitly (e.g. crs='EPSG:2154')."
        )
    return embedded

def read_extent(
    path: Union[str, Path],
    crs: Optional[Union[str, CRS]] = None
) -> Tuple[Bounds, CRS]:
    """
    Reads the bounding box and CRS of a LAS/LAZ file without loading its points.

    Returns:
        Tuple of ((xmin, ymin, xmax, ymax), CRS).
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Lidar file not found: {path}")

    try:
        with laspy.open(path) as fh:
            header = fh.header
            bounds = (header.x_min, header.y_min, header.x_max, header.y_max)
    except _PARSE_ERRORS as e:
        raise FormatError(f"Could not parse point cloud header of {path}: {e}") from e

    return bounds, _resolve_crs(header, crs, path)

@dataclass
class PointCloud:
    """
    Core data structure for holding LiDAR point cloud data in a single CRS.

    Point attributes (one entry per point, read-only once built):
        x (np.ndarray): X coordinates of points.
        y (np.ndarray): Y coordinates of points.
        z (np.ndarray): Z coordinates (elevation) of points.
        classification (np.ndarray): Point classifications (ground, vegetation, etc.).
        return_number (np.ndarray): Return number for each point (1 for first return, etc.).
        intensity (np.ndarray | None): Optional return intensity.

    Spatial reference:
        crs (CRS): Coordinate reference system shared by all points.
    """
    x: np.ndarray
    y: np.ndarray
    z: np.ndarray
    classification: np.ndarray
    return_number: np.ndarray
    crs: CRS
    intensity: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.crs is None:
            raise CRSUndefinedError("A point cloud requires an explicitly assigned CRS.")
        self.crs = CRS.from_user_input(self.crs)

        n = len(self.x)
        for f in fields(self):
            if f.name == "crs":
                continue
            arr = getattr(self, f.name)
            if arr is None:
                continue
            arr = np.asarray(arr)
            if arr.shape != (n,):
                raise ValueError(f"Attribute '{f.name}' has shape {arr.shape}, expected ({n},)")
            view = arr.view()
            view.flags.writeable = False
            setattr(self, f.name, view)

    @classmethod
    def from_arrays(
        cls,
        x: np.ndarray,
        y: np.ndarray,
        z: np.ndarray,
        crs: Union[str, CRS],
        classification: Optional[np.ndarray] = None,
        return_number: Optional[np.ndarray] = None,
        intensity: Optional[np.ndarray] = None
    ) -> 'PointCloud':
        """
        Builds a point cloud from decoded coordinate arrays.

        Missing classification defaults to 1 (unclassified) and missing return number to 1.
        """
        x = np.asarray(x, dtype=np.float64)
        n = len(x)
        return cls(
            x=x,
            y=np.asarray(y, dtype=np.float64),
            z=np.asarray(z, dtype=np.float64),
            classification=np.asarray(classification if classification is not None else np.ones(n), dtype=np.uint8),
            return_number=np.asarray(return_number if return_number is not None else np.ones(n), dtype=np.uint8),
            intensity=None if intensity is None else np.asarray(intensity),
            crs=crs
        )

    @classmethod
    def _from_las_points(cls, points, crs: CRS) -> 'PointCloud':
        """Helper mapping laspy point records to our PointCloud structure."""
        return cls(
            x=np.array(points.x, dtype=np.float64),
            y=np.array(points.y, dtype=np.float64),
            z=np.array(points.z, dtype=np.float64),
            classification=np.array(points.classification, dtype=np.uint8),
            return_number=np.array(points.return_number, dtype=np.uint8),
            intensity=np.array(points.intensity),
            crs=crs
        )

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        crs: Optional[Union[str, CRS]] = None
        ) -> 'PointCloud':
        """
        Loads the entirety of a LiDAR point cloud into memory.

        Args:
            path (Union[str, Path]): Target .las or .laz file.
            crs (Union[str, CRS], optional): CRS to assign. Required when the file carries none.

        Returns:
            PointCloud: Fully populated object.

        Raises:
            FileNotFoundError: If the file does not exist.
            FormatError: If the file cannot be parsed.
            CRSUndefinedError: If no CRS is embedded and none is supplied.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Lidar file not found: {path}")

        try:
            with laspy.open(path) as fh:
                las = fh.read()
        except _PARSE_ERRORS as e:
            raise FormatError(f"Could not parse point cloud {path}: {e}") from e

        resolved = _resolve_crs(las.header, crs, path)
        pc = cls._from_las_points(las, resolved)
        log.info(f"Loaded {len(pc):,} points from {path.name} (CRS: {resolved})")
        return pc

    @classmethod
    def iter_chunks(
        cls,
        path: Union[str, Path],
        chunk_size: int = 1_000_000,
        crs: Optional[Union[str, CRS]] = None
        ) -> Generator['PointCloud', None, None]:
        """
        Iterates over a LiDAR file in chunks to maintain strict memory safety.

        Args:
            path (Union[str, Path]): Target .las or .laz file.
            chunk_size (int): Number of points to stream per chunk.
            crs (Union[str, CRS], optional): CRS to assign. Required when the file carries none.

        Yields:
            Generator[PointCloud, None, None]: Sequential point cloud fragments sharing the file's CRS.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Lidar file not found: {path}")

        try:
            with laspy.open(path) as fh:
                resolved = _resolve_crs(fh.header, crs, path)
                for chunk in fh.chunk_iterator(chunk_size):
                    yield cls._from_las_points(chunk, resolved)
        except _PARSE_ERRORS as e:
            raise FormatError(f"Could not stream point cloud {path}: {e}") from e

    def __len__(self) -> int:
        return len(self.x)

    @property
    def is_empty(self) -> bool:
        return len(self.x) == 0

    @property
    def bounds(self) -> Bounds:
        """
        Returns (xmin, ymin, xmax, ymax) of the points.

        Raises:
            ValueError: If the cloud holds no points.
        """
        if self.is_empty:
            raise ValueError("An empty point cloud has no bounding box.")
        return (float(np.min(self.x)), float(np.min(self.y)),
                float(np.max(self.x)), float(np.max(self.y)))

    @property
    def xyz(self) -> np.ndarray:
        """Coordinates stacked as an (N, 3) array."""
        return np.column_stack((self.x, self.y, self.z))

    def subset(self, mask: np.ndarray) -> 'PointCloud':
        """
        Returns a new point cloud holding the points selected by a boolean mask.
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (len(self),):
            raise ValueError(f"Mask has shape {mask.shape}, expected ({len(self)},)")
        return PointCloud(
            x=self.x[mask],
            y=self.y[mask],
            z=self.z[mask],
            classification=self.classification[mask],
            return_number=self.return_number[mask],
            intensity=None if self.intensity is None else self.intensity[mask],
            crs=self.crs
        )

    def filter(self, predicate: 'PointFilter') -> 'PointCloud':
        """
        Applies a filter predicate without modifying this cloud.

        Args:
            predicate (PointFilter): Stateless predicate over point attributes.

        Returns:
            PointCloud: The points for which the predicate holds, in their original order.
        """
        kept = self.subset(predicate(self))
        log.debug(f"Filter '{predicate.description}' kept {len(kept):,}/{len(self):,} points")
        return kept

def filter_points(cloud: PointCloud, predicate: 'PointFilter') -> PointCloud:
    """Functional alias for PointCloud.filter."""
    return cloud.filter(predicate)

def bounding_box(cloud: PointCloud) -> Bounds:
    """Functional alias for PointCloud.bounds."""
    return cloud.bounds
