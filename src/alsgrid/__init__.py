# src/alsgrid/__init__.py
#
# Copyright (c) The alsgrid project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
alsgrid derives terrain (DTM), surface (DSM) and canopy height (CHM) grids
from airborne laser scanning point clouds.
"""

from . import lidar, raster

from .exceptions import (
    AlsGridError,
    FormatError,
    CRSUndefinedError,
    GridMismatchError,
    RasterValidationError,
    PipelineError,
    PipelineCancelled,
    UnresolvedGapWarning
)

from .pipeline import (
    PipelineConfig,
    PipelineResult,
    CancellationToken,
    run_dsm_pipeline,
    run_pipeline_from_file
)

__version__ = "0.1.0"

__all__ = [
    # Subpackages
    "lidar",
    "raster",

    # Errors
    "AlsGridError",
    "FormatError",
    "CRSUndefinedError",
    "GridMismatchError",
    "RasterValidationError",
    "PipelineError",
    "PipelineCancelled",
    "UnresolvedGapWarning",

    # Pipeline
    "PipelineConfig",
    "PipelineResult",
    "CancellationToken",
    "run_dsm_pipeline",
    "run_pipeline_from_file",
]
