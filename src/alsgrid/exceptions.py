# src/alsgrid/exceptions.py

"""
This module defines the error taxonomy shared by every alsgrid stage.

Fatal conditions are exceptions. Interpolation gaps that cannot be filled are
reported through the UnresolvedGapWarning category instead, so callers can
decide on acceptability themselves.
"""

__all__ = [
    "AlsGridError",
    "FormatError",
    "CRSUndefinedError",
    "GridMismatchError",
    "RasterValidationError",
    "PipelineError",
    "PipelineCancelled",
    "UnresolvedGapWarning"
]

class AlsGridError(Exception):
    """Base class for all alsgrid errors."""

class FormatError(AlsGridError):
    """The point cloud source is unreadable or corrupt."""

class CRSUndefinedError(AlsGridError):
    """The source carries no CRS and the caller did not assign one."""

class GridMismatchError(AlsGridError):
    """Two grids combined elementwise do not share extent, resolution and CRS."""

class RasterValidationError(AlsGridError, ValueError):
    """Array handed to a Raster has an unsupported shape."""

class PipelineError(AlsGridError):
    """
    A pipeline stage failed.

    Args:
        stage (str): Name of the stage that aborted the run (e.g. 'dtm').
        message (str): Description of the failure.
    """
    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"[{stage}] {message}")

class PipelineCancelled(PipelineError):
    """The run was cancelled between two stages."""

class UnresolvedGapWarning(UserWarning):
    """Interpolation left one or more cells without a value."""
