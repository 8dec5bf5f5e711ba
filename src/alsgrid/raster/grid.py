# src/alsgrid/raster/grid.py

"""
This module defines the geometry shared by every grid produced from one point cloud.
"""

import logging
import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from rasterio.transform import Affine

log = logging.getLogger(__name__)

__all__ = [
    "GridSpec"
]

def _snap_down(value: float, resolution: float) -> float:
    """Largest multiple of the resolution that is not greater than value."""
    steps = math.floor(value / resolution)
    # steps * resolution can round above value, e.g. 2217039 * 0.1 = 221703.90000000002
    while steps * resolution > value:
        steps -= 1
    return steps * resolution

@dataclass(frozen=True)
class GridSpec:
    """
    Regular north-up grid: origin at the lower-left corner, square cells.

    Args:
        min_x (float): Western edge of the grid.
        min_y (float): Southern edge of the grid.
        resolution (float): Cell size in CRS units.
        width (int): Number of columns.
        height (int): Number of rows.
    """
    min_x: float
    min_y: float
    resolution: float
    width: int
    height: int

    def __post_init__(self):
        if not self.resolution > 0:
            raise ValueError(f"Resolution must be positive, got {self.resolution}")
        if self.width < 1 or self.height < 1:
            raise ValueError(f"Grid must have at least one cell, got {self.height}x{self.width}")

    @classmethod
    def from_bounds(
        cls,
        bounds: Tuple[float, float, float, float],
        resolution: float
    ) -> 'GridSpec':
        """
        Snaps a bounding box outward to multiples of the resolution.

        The lower-left corner is floored to the resolution and never lies above the
        minimum coordinate. Enough cells are added that points lying exactly on the
        maximum edge still fall inside the grid.

        Args:
            bounds: (xmin, ymin, xmax, ymax) of the points.
            resolution: Cell size in CRS units.
        """
        if not resolution > 0:
            raise ValueError(f"Resolution must be positive, got {resolution}")

        xmin, ymin, xmax, ymax = bounds
        if xmax < xmin or ymax < ymin:
            raise ValueError(f"Invalid bounds {bounds}")

        min_x = _snap_down(xmin, resolution)
        min_y = _snap_down(ymin, resolution)
        width = int(math.floor((xmax - min_x) / resolution)) + 1
        height = int(math.floor((ymax - min_y) / resolution)) + 1

        return cls(min_x=min_x, min_y=min_y, resolution=resolution, width=width, height=height)

    @property
    def shape(self) -> Tuple[int, int]:
        """Returns (height, width)."""
        return self.height, self.width

    @property
    def max_x(self) -> float:
        return self.min_x + self.width * self.resolution

    @property
    def max_y(self) -> float:
        return self.min_y + self.height * self.resolution

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Returns (left, bottom, right, top)."""
        return self.min_x, self.min_y, self.max_x, self.max_y

    @property
    def transform(self) -> Affine:
        """
        Generates the affine transform mapping (col, row) to map coordinates.
        """
        # Translate spatial coordinates into discrete cell space through a combination of scaling and translation
        return Affine.translation(self.min_x, self.max_y) * Affine.scale(self.resolution, -self.resolution)

    def cell_index(
        self,
        x: np.ndarray,
        y: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Maps coordinates to (row, col) cell indices.

        The column is floor((x - min_x) / res). The row is counted from the south edge as
        floor((y - min_y) / res), then flipped so row 0 is the northernmost.

        Returns:
            Tuple of (rows, cols, inside) where inside flags points within the grid.
        """
        cols = np.floor((np.asarray(x) - self.min_x) / self.resolution).astype(np.int64)
        rows_from_south = np.floor((np.asarray(y) - self.min_y) / self.resolution).astype(np.int64)
        rows = (self.height - 1) - rows_from_south
        inside = (rows >= 0) & (rows < self.height) & (cols >= 0) & (cols < self.width)
        return rows, cols, inside

    def cell_centers(
        self,
        rows: np.ndarray,
        cols: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Map coordinates of the centres of the given cells."""
        xs = self.min_x + (np.asarray(cols, dtype=np.float64) + 0.5) * self.resolution
        ys = self.max_y - (np.asarray(rows, dtype=np.float64) + 0.5) * self.resolution
        return xs, ys
