"""Pixel-level difference scoring between two normalized images.

The perceptual test follows the YIQ colour-delta metric used by pixelmatch:
a pixel differs when its squared YIQ delta exceeds ``MAX_YIQ_DELTA * t**2``.
On greyscale input the chroma terms vanish, leaving only the luma term.
"""
from __future__ import annotations

from typing import Union

import numpy as np

from astrovision.errors import DimensionMismatchError
from astrovision.imaging import NormalizedImage

__all__ = [
    "DEFAULT_THRESHOLD",
    "MAX_YIQ_DELTA",
    "count_differences",
    "difference_mask",
]

DEFAULT_THRESHOLD = 0.15
MAX_YIQ_DELTA = 35215.0

# YIQ luma weights and the luma term of the delta formula
_Y_WEIGHTS = (0.29889531, 0.58662247, 0.11448223)
_Y_DELTA_WEIGHT = 0.5053

GridLike = Union[NormalizedImage, np.ndarray]


def _as_grid(image: GridLike) -> np.ndarray:
    arr = image.pixels if isinstance(image, NormalizedImage) else np.asarray(image)
    if arr.ndim != 2:
        raise DimensionMismatchError(f"Expected a single-channel 2-D grid, got shape {arr.shape}.")
    return arr


def difference_mask(a: GridLike, b: GridLike, threshold: float = DEFAULT_THRESHOLD) -> np.ndarray:
    """Boolean grid marking positions whose perceptual delta exceeds `threshold`."""
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"threshold must be within [0, 1], got {threshold}")
    left = _as_grid(a)
    right = _as_grid(b)
    if left.shape != right.shape:
        raise DimensionMismatchError(
            f"Image dimensions differ: {left.shape[1]}x{left.shape[0]} vs {right.shape[1]}x{right.shape[0]}."
        )

    dv = left.astype(np.float64) - right.astype(np.float64)
    dy = dv * sum(_Y_WEIGHTS)
    delta = _Y_DELTA_WEIGHT * dy * dy
    return delta > MAX_YIQ_DELTA * threshold * threshold


def count_differences(a: GridLike, b: GridLike, threshold: float = DEFAULT_THRESHOLD) -> int:
    """Number of pixel positions that differ beyond `threshold` (0..width*height)."""
    return int(np.count_nonzero(difference_mask(a, b, threshold)))
