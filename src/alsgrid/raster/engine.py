# src/alsgrid/raster/engine.py

"""
This module manages parallel execution for grid processing.

It serves as the core dispatch mechanism: work is split into independent
partitions (row/column windows of a grid, or slices of a point array), handed to
a bounded thread pool, and merged back without shared mutable state.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, Tuple

import numpy as np
from rasterio.windows import Window

from .layer import Raster
from .resources import available_workers

log = logging.getLogger(__name__)

__all__ = [
    "EngineConfig",
    "DispatchConfig",
    "iter_windows",
    "parallel_map",
    "dispatch"
]

@dataclass(frozen=True)
class EngineConfig:
    """
    Explicit compute budget for one pipeline run.

    Args:
        max_workers: Hard cap on worker threads. None means no cap beyond cpu_fraction.
        cpu_fraction: Share of logical CPUs claimed by default. Default=0.8.
        chunk_size: Maximum number of points read or binned in one step.
        tile_size: Edge length (in cells) of the windows used for grid operations.
    """
    max_workers: Optional[int] = None
    cpu_fraction: float = 0.8
    chunk_size: int = 2_000_000
    tile_size: int = 256

    def __post_init__(self):
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if not 0.0 < self.cpu_fraction <= 1.0:
            raise ValueError(f"cpu_fraction must be in (0, 1], got {self.cpu_fraction}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.tile_size < 1:
            raise ValueError(f"tile_size must be >= 1, got {self.tile_size}")

    @property
    def workers(self) -> int:
        """Resolved number of worker threads."""
        n = available_workers(self.cpu_fraction)
        if self.max_workers is not None:
            n = min(n, self.max_workers)
        return n

class DispatchConfig:
    """Configuration object for the execution engine.

    Args:
        engine: EngineConfig providing worker count and tile size.
        overlap: Halo (in cells) read around each window. Results are cropped back to the core.
    """
    def __init__(
        self,
        engine: Optional[EngineConfig] = None,
        overlap: int = 0
    ):
        self.engine = engine or EngineConfig()
        self.overlap = overlap

def iter_windows(
    height: int,
    width: int,
    tile_size: int = 256
) -> Generator[Window, None, None]:
    """
    Generates non-overlapping windows covering a (height, width) grid.

    Edge windows are clipped to the grid. Together the windows cover every cell exactly once.
    """
    for row_off in range(0, height, tile_size):
        for col_off in range(0, width, tile_size):
            yield Window(
                col_off=col_off,
                row_off=row_off,
                width=min(tile_size, width - col_off),
                height=min(tile_size, height - row_off)
            )

def _expand_window(window: Window, halo: int, height: int, width: int) -> Window:
    """Helper to grow a core window by a halo, clipped to the grid."""
    row0 = max(0, int(window.row_off) - halo)
    col0 = max(0, int(window.col_off) - halo)
    row1 = min(height, int(window.row_off + window.height) + halo)
    col1 = min(width, int(window.col_off + window.width) + halo)
    return Window(col_off=col0, row_off=row0, width=col1 - col0, height=row1 - row0)

def parallel_map(
    func: Callable[[Any], Any],
    items: Iterable[Any],
    engine: Optional[EngineConfig] = None
) -> List[Any]:
    """
    Applies func to every item on a bounded thread pool, preserving input order.

    Falls back to a plain loop when a single worker is configured or there is only one item.
    Exceptions raised by func propagate to the caller.
    """
    engine = engine or EngineConfig()
    items = list(items)
    n_workers = min(engine.workers, len(items))

    if n_workers <= 1:
        return [func(item) for item in items]

    log.debug(f"Running {func.__name__} over {len(items)} partitions on {n_workers} workers")
    with ThreadPoolExecutor(max_workers=n_workers) as pool:
        return list(pool.map(func, items))

def dispatch(
    func: Callable[..., np.ndarray],
    input_map: Dict[str, Raster],
    static_kwargs: Optional[Dict] = None,
    config: Optional[DispatchConfig] = None
) -> np.ndarray:
    """
    Execute a block function over co-registered rasters, one window per task.

    Args:
        func: Block function. Receives one tile Raster per input_map key (as keyword arguments)
              plus static_kwargs, and returns a 2D array shaped like the tile.
        input_map: Dictionary mapping argument names to Raster objects.
                   {'a': dsm, 'b': dtm}
        static_kwargs: Keyword arguments passed through to func.
        config: Execution configuration (workers, halo).

    Returns:
        np.ndarray: The window results stitched back into one (height, width) grid.
    """
    if not input_map:
        raise ValueError("Cannot dispatch engine without at least one raster input.")

    static_kwargs = static_kwargs or {}
    config = config or DispatchConfig()

    primary = next(iter(input_map.values()))
    height, width = primary.height, primary.width
    for name, raster in input_map.items():
        if (raster.height, raster.width) != (height, width):
            raise ValueError(
                f"Input '{name}' has shape {(raster.height, raster.width)}, "
                f"expected {(height, width)}."
            )

    halo = config.overlap
    windows = list(iter_windows(height, width, config.engine.tile_size))
    log.debug(f"Dispatching {func.__name__} over {len(windows)} windows (halo={halo})")

    def run_window(window: Window) -> Tuple[Window, np.ndarray]:
        outer = _expand_window(window, halo, height, width)
        tiles = {name: raster.read_window(outer) for name, raster in input_map.items()}
        block = np.asarray(func(**{**static_kwargs, **tiles}))

        # crop the halo back off so each window writes only its own cells
        r0 = int(window.row_off - outer.row_off)
        c0 = int(window.col_off - outer.col_off)
        core = block[r0:r0 + int(window.height), c0:c0 + int(window.width)]
        return window, core

    results = parallel_map(run_window, windows, config.engine)

    out = np.empty((height, width), dtype=results[0][1].dtype)
    for window, core in results:
        out[window.toslices()] = core
    return out
