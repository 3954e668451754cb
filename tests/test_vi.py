"""Tests for vegetation-index computation and classification masking."""
import numpy as np
import pytest

from phenoflow.api.sources import MaskKind
from phenoflow.config import FetchSettings
from phenoflow.processing.vi import (
    compute_vi,
    invalid_mask,
    mask_bounds,
    recompute_vi,
    upsample_mask_grid,
)
from phenoflow.utils.geometry import coverage_mask, pixel_centers_inside


def _grid(value, shape=(3, 3)):
    return np.full(shape, value, dtype=np.uint16)


def test_ndvi_from_dn():
    inside = np.ones((3, 3), dtype=bool)
    vi, valid, median = compute_vi(_grid(1000), _grid(3000), inside, None, 0.0)
    assert valid == 9
    assert median == pytest.approx(0.5)
    assert vi.dtype == np.float32


def test_dvi_from_dn():
    inside = np.ones((3, 3), dtype=bool)
    _, _, median = compute_vi(_grid(1000), _grid(3000), inside, None, 0.0, mode="dvi")
    assert median == pytest.approx(0.2)


def test_nodata_saturated_and_outside_rejected():
    red = _grid(1000)
    nir = _grid(3000)
    red[0, 0] = 0
    nir[0, 1] = 65535
    nir[0, 2] = 16000  # reflectance 1.6
    inside = np.ones((3, 3), dtype=bool)
    inside[2, 2] = False
    vi, valid, _ = compute_vi(red, nir, inside, None, 0.0)
    assert valid == 5
    assert np.isnan(vi[0, :]).all()
    assert np.isnan(vi[2, 2])


def test_dn_offset_rejects_negative_reflectance():
    red = _grid(1500)
    red[1, 1] = 900  # below the -1000 offset
    vi, valid, median = compute_vi(red, _grid(3500), np.ones((3, 3), dtype=bool), None, -1000.0)
    assert valid == 8
    assert np.isnan(vi[1, 1])
    assert median == pytest.approx((0.25 - 0.05) / 0.30, abs=1e-6)


def test_all_invalid_gives_zero_valid():
    inside = np.ones((3, 3), dtype=bool)
    invalid = np.ones((3, 3), dtype=bool)
    vi, valid, median = compute_vi(_grid(1000), _grid(3000), inside, invalid, 0.0)
    assert valid == 0
    assert median == 0.0
    assert np.isnan(vi).all()


def test_scl_valid_classes():
    classes = np.array([[4, 5, 8], [9, 3, 0]], dtype=np.uint16)
    invalid = invalid_mask(classes, MaskKind.SCL, frozenset({4, 5}))
    np.testing.assert_array_equal(invalid, [[False, False, True], [True, True, True]])


def test_fmask_cloud_and_shadow_bits():
    classes = np.array([0, 1, 2, 4, 6, 8, 64], dtype=np.uint16)
    invalid = invalid_mask(classes, MaskKind.FMASK, frozenset())
    np.testing.assert_array_equal(invalid, [False, False, True, True, True, False, False])


def test_mask_bounds_half_resolution():
    assert mask_bounds((5, 7, 12, 14), 2) == (2, 3, 6, 7)
    assert mask_bounds((5, 7, 12, 14), 1) == (5, 7, 12, 14)


def test_upsample_aligns_odd_offsets():
    # Mask pixel k covers band columns 2k and 2k+1
    bounds = (5, 7, 12, 14)
    grid = np.arange(16, dtype=np.uint16).reshape(4, 4)
    up = upsample_mask_grid(grid, bounds, 2)
    assert up.shape == (7, 7)
    # Band column 5 -> mask column 2 -> window column 0
    assert up[0, 0] == grid[0, 0]
    # Band column 6 -> mask column 3 -> window column 1
    assert up[0, 1] == grid[0, 1]
    # Band row 8 -> mask row 4 -> window row 1
    assert up[1, 0] == grid[1, 0]


def test_pixel_centers_inside_square():
    ring = [(1, 1), (3, 1), (3, 3), (1, 3), (1, 1)]
    inside = pixel_centers_inside(ring, 4, 4)
    assert inside.sum() == 4
    assert inside[1:3, 1:3].all()


def test_coverage_mask_threshold():
    ring = [(0.0, 0.0), (0.5, 0.0), (0.5, 1.0), (0.0, 1.0)]
    mask = coverage_mask(ring, 3, 1, 0.5)
    # Second pixel is exactly half covered
    np.testing.assert_array_equal(mask, [[True, True, False]])


def test_recompute_switches_mode(synthetic_frames):
    settings = FetchSettings(vi_mode="dvi")
    updated = recompute_vi(synthetic_frames, settings)
    assert len(updated) == len(synthetic_frames)
    frame = updated[0]
    expected = (frame.nir[0, 0] - frame.red[0, 0]) / 10000.0
    assert frame.vi_mode == "dvi"
    assert frame.median_vi == pytest.approx(expected, abs=1e-6)


def test_recompute_drops_frames_without_valid_pixels(synthetic_frames):
    first = synthetic_frames[0]
    first.red[:] = 0
    updated = recompute_vi(synthetic_frames, FetchSettings())
    assert len(updated) == len(synthetic_frames) - 1
