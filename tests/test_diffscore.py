from __future__ import annotations

import numpy as np
import pytest

from astrovision.diffscore import count_differences, difference_mask
from astrovision.errors import DimensionMismatchError
from astrovision.imaging import NormalizedImage


def test_identical_images_score_zero(sky_frame):
    frame = sky_frame()
    assert count_differences(frame, frame.copy()) == 0


def test_score_counts_changed_positions(sky_frame, brighten):
    frame = sky_frame()
    assert count_differences(brighten(frame, 2000), frame) == 2000
    assert count_differences(brighten(frame, 10), frame) == 10


def test_scorer_is_symmetric():
    rng = np.random.default_rng(seed=11)
    a = rng.integers(0, 256, size=(500, 500), dtype=np.uint8)
    b = rng.integers(0, 256, size=(500, 500), dtype=np.uint8)
    assert count_differences(a, b) == count_differences(b, a)


def test_accepts_normalized_images(sky_frame, brighten):
    frame = sky_frame()
    left = NormalizedImage(pixels=brighten(frame, 25))
    right = NormalizedImage(pixels=frame)
    assert count_differences(left, right) == 25


def test_default_tolerance_boundary():
    # At t=0.15 a grey delta of 39 stays under the cutoff, 40 crosses it
    base = np.zeros((4, 4), dtype=np.uint8)
    assert count_differences(base, np.full((4, 4), 39, dtype=np.uint8)) == 0
    assert count_differences(base, np.full((4, 4), 40, dtype=np.uint8)) == 16


def test_zero_threshold_flags_any_change():
    base = np.zeros((3, 3), dtype=np.uint8)
    other = base.copy()
    other[1, 1] = 1
    assert count_differences(base, other, threshold=0.0) == 1


def test_full_threshold_flags_nothing():
    base = np.zeros((3, 3), dtype=np.uint8)
    assert count_differences(base, np.full((3, 3), 255, dtype=np.uint8), threshold=1.0) == 0


def test_mask_shape_matches_input(sky_frame):
    frame = sky_frame(size=32)
    mask = difference_mask(frame, frame)
    assert mask.shape == (32, 32)
    assert mask.dtype == bool


def test_dimension_mismatch_raises():
    with pytest.raises(DimensionMismatchError):
        count_differences(np.zeros((500, 500), dtype=np.uint8), np.zeros((400, 500), dtype=np.uint8))


def test_multichannel_input_is_rejected():
    with pytest.raises(DimensionMismatchError):
        count_differences(np.zeros((8, 8, 3), dtype=np.uint8), np.zeros((8, 8, 3), dtype=np.uint8))


@pytest.mark.parametrize("threshold", [-0.1, 1.5])
def test_threshold_out_of_range(threshold):
    base = np.zeros((2, 2), dtype=np.uint8)
    with pytest.raises(ValueError):
        count_differences(base, base, threshold=threshold)
