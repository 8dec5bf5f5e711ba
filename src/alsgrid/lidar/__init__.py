# src/alsgrid/lidar/__init__.py
#
# Copyright (c) The alsgrid project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The lidar subpackage provides core functionality for handling lidar data,
including I/O operations, point filtering, rasterization, gap interpolation
and lidar-derived elevation products.
"""

# Data structure
from .layer import (
    PointCloud,
    read_extent,
    filter_points,
    bounding_box
)

# Point filters
from .filters import (
    PointFilter,
    all_points,
    classification_in,
    classification_not_in,
    return_number_eq,
    first_returns,
    z_below,
    z_above
)

# Rasterization
from .rasterize import (
    Aggregation,
    points_to_grid,
    NODATA_VAL
)

# Interpolation
from .interpolate import (
    IDW,
    TIN,
    InterpolationMethod,
    parse_method,
    GapReport,
    interpolate
)

# Elevation products
from .generate_model import (
    generate_dtm,
    generate_dsm,
    generate_density,
    calculate_chm
)

__all__ = [
    # Data structure
    "PointCloud",
    "read_extent",
    "filter_points",
    "bounding_box",

    # Point filters
    "PointFilter",
    "all_points",
    "classification_in",
    "classification_not_in",
    "return_number_eq",
    "first_returns",
    "z_below",
    "z_above",

    # Rasterization
    "Aggregation",
    "points_to_grid",
    "NODATA_VAL",

    # Interpolation
    "IDW",
    "TIN",
    "InterpolationMethod",
    "parse_method",
    "GapReport",
    "interpolate",

    # Elevation products
    "generate_dtm",
    "generate_dsm",
    "generate_density",
    "calculate_chm",
]
