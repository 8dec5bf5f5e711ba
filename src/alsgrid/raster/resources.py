# src/alsgrid/raster/resources.py

"""
This module performs static analysis on grid allocations and system hardware.

It checks two key aspects before processing:
- Memory safety for allocating dense grids in RAM (Memory Estimation)
- Available compute units for the worker pool (Worker Budget)
"""

import logging
import math
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np
import psutil

log = logging.getLogger(__name__)

__all__ = [
    "MemoryEstimate",
    "estimate_grid_memory",
    "ensure_grid_fits",
    "available_workers"
]

DEFAULT_SAFETY_FACTOR = 3.0
MIN_FREE_GB = 0.5

@dataclass(frozen=True)
class MemoryEstimate:
    """
    Estimation of memory requirements and safety for allocating a grid.

    Args:
        total_required_bytes: Total bytes required for the grid layers (with overhead)
        available_system_bytes: Currently available system memory in bytes
        is_safe: Boolean indicating if the allocation is considered safe
        reason: Explanation for the safety assessment (e.g. "Req: 1.20GB, Avail: 8.00GB")
    """
    total_required_bytes: int
    available_system_bytes: int
    is_safe: bool
    reason: str

def estimate_grid_memory(
    shape: Tuple[int, int],
    dtype: Union[str, np.dtype] = np.float64,
    layers: int = 1,
    safety_factor: float = DEFAULT_SAFETY_FACTOR,
    min_free_gb: float = MIN_FREE_GB
) -> MemoryEstimate:
    """
    Checks if a set of dense grids fits in RAM safely.

    Args:
        shape: (height, width) of the grid.
        dtype: Cell data type.
        layers: Number of simultaneous arrays of that shape (partials, counts, output).
        safety_factor: Multiplier to account for temporaries (default 3.0).
        min_free_gb: Minimum free GB to leave available after allocating.

    Returns:
        MemoryEstimate: Contains total required bytes, available bytes, safety boolean, and reason.
    """
    raw_bytes = int(shape[0]) * int(shape[1]) * np.dtype(dtype).itemsize * layers
    total_required = int(raw_bytes * safety_factor)

    mem = psutil.virtual_memory()
    min_free_bytes = int(min_free_gb * (1024**3))
    is_safe = (total_required + min_free_bytes) <= mem.available

    reason = f"Req: {total_required/1e9:.2f}GB, Avail: {mem.available/1e9:.2f}GB"

    return MemoryEstimate(total_required, mem.available, is_safe, reason)

def ensure_grid_fits(
    shape: Tuple[int, int],
    dtype: Union[str, np.dtype] = np.float64,
    layers: int = 1
) -> MemoryEstimate:
    """
    Raises MemoryError when a grid allocation would exhaust available RAM.

    Returns:
        MemoryEstimate: The passing estimate, for logging by the caller.
    """
    estimate = estimate_grid_memory(shape, dtype=dtype, layers=layers)
    if not estimate.is_safe:
        log.error(f"Grid {shape} rejected: {estimate.reason}")
        raise MemoryError(
            f"Grid of shape {shape} does not fit in memory. {estimate.reason}\n"
            "Tip: Use a coarser resolution or a smaller extent."
        )
    log.debug(f"Grid {shape} accepted: {estimate.reason}")
    return estimate

def available_workers(cpu_fraction: float = 0.8) -> int:
    """
    Number of worker threads to claim from the logical CPUs of this machine.

    Args:
        cpu_fraction: Share of logical CPUs to use, in (0, 1].

    Returns:
        int: At least 1. Stays below the full core count on multi-core machines
             unless cpu_fraction is 1.0.
    """
    if not 0.0 < cpu_fraction <= 1.0:
        raise ValueError(f"cpu_fraction must be in (0, 1], got {cpu_fraction}")

    logical = psutil.cpu_count(logical=True) or 1
    return max(1, math.floor(logical * cpu_fraction))
