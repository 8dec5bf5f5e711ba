# src/alsgrid/raster/__init__.py
#
# Copyright (c) The alsgrid project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The raster subpackage provides core functionality for handling grid data,
including I/O operations, grid geometry, resource management,
engine dispatching and raster algebra.
"""
# Core data structure
from .layer import (
    Raster,
    Provenance,
    NODATA_VAL
)

# Grid geometry
from .grid import (
    GridSpec
)

# I/O operations
from .io import (
    load,
    save,
    read_info
)

# Resource management
from .resources import (
    MemoryEstimate,
    estimate_grid_memory,
    ensure_grid_fits,
    available_workers
)

# Engine operations
from .engine import (
    EngineConfig,
    DispatchConfig,
    iter_windows,
    parallel_map,
    dispatch
)

# Raster algebra
from .algebra import (
    RasterOp,
    AngleUnit,
    require_aligned,
    binary_op,
    add,
    subtract,
    clip,
    slope,
    aspect,
    hillshade
)

__all__ = [
    # Layer
    "Raster",
    "Provenance",
    "NODATA_VAL",

    # Grid
    "GridSpec",

    # I/O
    "load",
    "save",
    "read_info",

    # Resources
    "MemoryEstimate",
    "estimate_grid_memory",
    "ensure_grid_fits",
    "available_workers",

    # Engine
    "EngineConfig",
    "DispatchConfig",
    "iter_windows",
    "parallel_map",
    "dispatch",

    # Algebra
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
