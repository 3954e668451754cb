"""Tests for per-pixel fitting, outlier filtering and the cleaned refit."""
import math

import numpy as np
import pytest

from phenoflow.config import FitSettings
from phenoflow.models.phenology import DLParams, FitQuality, PixelPhenology, PixelPhenologyResult
from phenoflow.phenology.outliers import OutlierFilter, normalized_distance, robust_center
from phenoflow.phenology.scheduler import PixelFitScheduler

from conftest import TRUE_PARAMS, make_frames


def test_every_pixel_of_clean_field_fits_well(synthetic_frames):
    """A 5x5 AOI where every pixel traces the same curve fits good everywhere."""
    settings = FitSettings(pixel_workers=2)
    progress = []
    scheduler = PixelFitScheduler(settings, rng=np.random.default_rng(3), progress_callback=progress.append)

    result = scheduler.fit_all(synthetic_frames, TRUE_PARAMS)

    assert (result.width, result.height) == (5, 5)
    assert result.good_count == 25
    assert all(px.params.rmse < 0.01 for px in result.iter_pixels())
    assert all(px.n_valid_obs == 8 for px in result.iter_pixels())
    assert progress[-1] == pytest.approx(1.0)
    sos = result.parameter_map("sos")
    assert not np.isnan(sos).any()
    np.testing.assert_allclose(sos, TRUE_PARAMS.sos, rtol=0.05)


def test_sparse_pixel_is_skipped():
    frames = make_frames(size=3)
    for frame in frames[3:]:
        frame.vi[0, 0] = np.nan
    settings = FitSettings(pixel_workers=1, pixel_ensemble_runs=1, max_iter=200)
    result = PixelFitScheduler(settings, rng=np.random.default_rng(0)).fit_all(frames, TRUE_PARAMS)

    skipped = result.pixels[0][0]
    assert skipped.quality is FitQuality.SKIPPED
    assert skipped.n_valid_obs == 3
    assert math.isinf(skipped.params.rmse)
    assert skipped.rejection.human_readable == "Insufficient observations (3)"
    assert result.good_count == 8


def test_poor_fit_classified_with_reason():
    frames = make_frames(size=2)
    zigzag = [0.1, 0.8, 0.1, 0.8, 0.1, 0.8, 0.1, 0.1]
    for frame, value in zip(frames, zigzag):
        frame.vi[1, 1] = value
    settings = FitSettings(pixel_workers=1, pixel_ensemble_runs=1, max_iter=300, rmse_threshold=0.01)
    result = PixelFitScheduler(settings, rng=np.random.default_rng(0)).fit_all(frames, TRUE_PARAMS)

    poor = result.pixels[1][1]
    assert poor.quality is FitQuality.POOR
    assert poor.rejection.rmse_threshold == 0.01
    assert poor.rejection.human_readable.startswith("Poor fit")

    relaxed = result.reclassified(10.0)
    assert relaxed.pixels[1][1].quality is FitQuality.GOOD


def test_aoi_restricts_fitted_pixels():
    frames = make_frames(size=4)
    for frame in frames:
        frame.polygon_norm = [(0.0, 0.0), (0.5, 0.0), (0.5, 1.0), (0.0, 1.0), (0.0, 0.0)]
    scheduler = PixelFitScheduler(FitSettings(pixel_workers=1), enforce_aoi=True)
    assert {col for _, col in scheduler.select_pixels(frames)} == {0, 1}
    scheduler = PixelFitScheduler(FitSettings(pixel_workers=1), enforce_aoi=False)
    assert len(scheduler.select_pixels(frames)) == 16


def _grid_result(size=5, outliers=()):
    """Good fits varying by +-2% with the column; ``outliers`` get sos + 100."""
    pixels = []
    for row in range(size):
        cells = []
        for col in range(size):
            k = col - 2
            x = TRUE_PARAMS.as_array() * (1 + 0.01 * k)
            if (row, col) in outliers:
                x[2] += 100.0
                x[4] += 100.0
            params = DLParams.from_array(x, rmse=0.01)
            cells.append(PixelPhenology(row, col, params, 8, FitQuality.GOOD))
        pixels.append(cells)
    return PixelPhenologyResult(size, size, pixels, TRUE_PARAMS)


def test_reason_map_and_uncertainty():
    result = _grid_result()
    result.pixels[0][0] = None
    result.pixels[0][1] = PixelPhenology(0, 1, TRUE_PARAMS, 2, FitQuality.SKIPPED)
    result.pixels[0][2] = PixelPhenology(0, 2, TRUE_PARAMS, 8, FitQuality.POOR)

    reasons = result.rejection_reason_map()
    assert np.isnan(reasons[0, 0])
    assert reasons[0, 1] == 3.0
    assert reasons[0, 2] == 1.0
    assert reasons[4, 4] == 0.0

    full = dict((name, (median, iqr)) for name, median, iqr in _grid_result().parameter_uncertainty())
    assert full["sos"][0] == pytest.approx(120.0)
    assert full["sos"][1] == pytest.approx(2.4)


def test_median_pixel_has_zero_distance():
    values = np.array([TRUE_PARAMS.as_array() * (1 + 0.01 * k) for k in (-2, -1, 0, 1, 2)])
    medians, mads = robust_center(values)
    assert normalized_distance(values[2], medians, mads) == 0.0
    assert normalized_distance(values[0], medians, mads) == pytest.approx(2.0)


def test_isolated_outlier_is_rescued():
    result = OutlierFilter(FitSettings()).filter(_grid_result(outliers={(2, 2)}))
    assert result.outlier_count == 0
    assert result.good_count == 25


def test_outlier_cluster_is_flagged():
    block = {(r, c) for r in range(3) for c in range(3)}
    result = OutlierFilter(FitSettings()).filter(_grid_result(outliers=block))

    corner = result.pixels[0][0]
    assert corner.quality is FitQuality.OUTLIER
    assert corner.rejection.cluster_distance > 4.0
    assert corner.rejection.param_z_scores["sos"] > 4.0
    assert corner.rejection.human_readable.startswith("Outlier parameters")
    # Mostly surrounded by normal pixels, so kept
    assert result.pixels[2][2].quality is FitQuality.GOOD
    assert result.pixels[4][4].quality is FitQuality.GOOD
    assert result.outlier_count >= 4


def test_filter_needs_five_good_pixels():
    result = _grid_result(size=2, outliers={(0, 0)})
    assert OutlierFilter(FitSettings()).filter(result) is result


def test_refit_uses_surviving_pixels():
    frames = make_frames(size=5)
    result = _grid_result()
    refit = OutlierFilter(FitSettings(field_ensemble_runs=5)).refit(
        result, frames, np.random.default_rng(9)
    )
    assert refit is not None
    assert refit.best.rmse < 0.01


def test_refit_without_good_pixels_returns_none():
    frames = make_frames(size=5)
    result = _grid_result()
    result.pixels = [[None] * 5 for _ in range(5)]
    assert OutlierFilter(FitSettings()).refit(result, frames, np.random.default_rng(0)) is None
