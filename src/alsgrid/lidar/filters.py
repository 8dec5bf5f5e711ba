# src/alsgrid/lidar/filters.py

"""
This module implements composable point filter predicates.

A predicate is a stateless function from a PointCloud to a boolean mask, wrapped with a
description so derived grids can record which points produced them.
"""

import logging
from typing import Callable, Iterable

import numpy as np

from .layer import PointCloud

log = logging.getLogger(__name__)

__all__ = [
    "PointFilter",
    "all_points",
    "classification_in",
    "classification_not_in",
    "return_number_eq",
    "first_returns",
    "z_below",
    "z_above"
]

class PointFilter:
    """
    Boolean predicate over point attributes.

    Predicates combine with `&` (and), `|` (or) and `~` (not).

    Args:
        func: Vectorised function returning one boolean per point.
        description: Human-readable form, stored in grid provenance.
    """
    def __init__(self, func: Callable[[PointCloud], np.ndarray], description: str):
        self._func = func
        self.description = description

    def __call__(self, cloud: PointCloud) -> np.ndarray:
        mask = np.asarray(self._func(cloud), dtype=bool)
        if mask.shape != (len(cloud),):
            raise ValueError(
                f"Filter '{self.description}' returned shape {mask.shape}, expected ({len(cloud)},)"
            )
        return mask

    def __and__(self, other: 'PointFilter') -> 'PointFilter':
        return PointFilter(
            lambda pc: self(pc) & other(pc),
            f"({self.description}) and ({other.description})"
        )

    def __or__(self, other: 'PointFilter') -> 'PointFilter':
        return PointFilter(
            lambda pc: self(pc) | other(pc),
            f"({self.description}) or ({other.description})"
        )

    def __invert__(self) -> 'PointFilter':
        return PointFilter(lambda pc: ~self(pc), f"not ({self.description})")

    def __repr__(self) -> str:
        return f"<PointFilter {self.description}>"

def all_points() -> PointFilter:
    return PointFilter(lambda pc: np.ones(len(pc), dtype=bool), "all points")

def classification_in(codes: Iterable[int]) -> PointFilter:
    """Keeps points whose classification code is one of `codes`."""
    codes = sorted(set(int(c) for c in codes))
    return PointFilter(
        lambda pc: np.isin(pc.classification, codes),
        f"classification in {codes}"
    )

def classification_not_in(codes: Iterable[int]) -> PointFilter:
    """Drops points whose classification code is one of `codes` (e.g. overlap classes)."""
    codes = sorted(set(int(c) for c in codes))
    return PointFilter(
        lambda pc: ~np.isin(pc.classification, codes),
        f"classification not in {codes}"
    )

def return_number_eq(number: int) -> PointFilter:
    return PointFilter(lambda pc: pc.return_number == number, f"return number == {number}")

def first_returns() -> PointFilter:
    return return_number_eq(1)

def z_below(threshold: float) -> PointFilter:
    """Keeps points with z <= threshold. Points above it are treated as outliers."""
    return PointFilter(lambda pc: pc.z <= threshold, f"z <= {threshold}")

def z_above(threshold: float) -> PointFilter:
    return PointFilter(lambda pc: pc.z > threshold, f"z > {threshold}")
