"""Robust outlier detection over per-pixel fits, with spatial rescue."""
import logging
import math
from dataclasses import replace

import numpy as np

from phenoflow.models.phenology import PARAM_NAMES, FitQuality, RejectionDetail
from phenoflow.phenology.optimizer import ensemble_fit

logger = logging.getLogger(__name__)

MIN_GOOD_PIXELS = 5
MAD_FLOOR = 1e-10

NEIGHBOR_OFFSETS = ((-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1))


def robust_center(values):
    """Per-column median and MAD of a (pixels, params) array; MAD is floored."""
    medians = np.median(values, axis=0)
    mads = np.median(np.abs(values - medians), axis=0)
    return medians, np.maximum(mads, MAD_FLOOR)


def normalized_distance(x, medians, mads):
    """sqrt(mean(((x - median) / MAD)^2))"""
    z = (np.asarray(x, dtype=float) - medians) / mads
    return float(math.sqrt(np.mean(z * z)))


class OutlierFilter:
    """Flags good fits whose parameters sit far from the field consensus."""

    def __init__(self, settings):
        self.settings = settings
        self.threshold = settings.outlier_threshold
        self.rescue_fraction = settings.spatial_rescue_fraction

    def filter(self, result):
        """
        Reclassify statistical outliers among good pixels.

        Candidates (distance above the threshold) are rescued when at least
        ``rescue_fraction`` of their good 8-neighbours are not candidates.
        Fewer than five good pixels leaves the result unchanged.

        Returns:
            New PixelPhenologyResult
        """
        good = list(result.iter_pixels(FitQuality.GOOD))
        if len(good) < MIN_GOOD_PIXELS:
            return result

        values = np.array([px.params.as_array() for px in good])
        medians, mads = robust_center(values)

        height, width = result.height, result.width
        distances = np.zeros((height, width))
        is_good = np.zeros((height, width), dtype=bool)
        for px, x in zip(good, values):
            is_good[px.row, px.col] = True
            distances[px.row, px.col] = normalized_distance(x, medians, mads)
        is_candidate = is_good & (distances > self.threshold)

        is_outlier = is_candidate.copy()
        for row, col in zip(*np.nonzero(is_candidate)):
            total = kept = 0
            for dr, dc in NEIGHBOR_OFFSETS:
                r, c = row + dr, col + dc
                if 0 <= r < height and 0 <= c < width and is_good[r, c]:
                    total += 1
                    if not is_candidate[r, c]:
                        kept += 1
            if total and kept / total >= self.rescue_fraction:
                is_outlier[row, col] = False

        pixels = [list(row) for row in result.pixels]
        for px in good:
            if not is_outlier[px.row, px.col]:
                continue
            z = np.abs(px.params.as_array() - medians) / mads
            pixels[px.row][px.col] = replace(
                px,
                quality=FitQuality.OUTLIER,
                rejection=RejectionDetail(
                    reason=FitQuality.OUTLIER,
                    observation_count=px.n_valid_obs,
                    rmse=px.params.rmse,
                    cluster_distance=float(distances[px.row, px.col]),
                    cluster_threshold=self.threshold,
                    param_z_scores=dict(zip(PARAM_NAMES, z.tolist())),
                ),
            )

        rescued = int(is_candidate.sum() - is_outlier.sum())
        logger.info(
            "Outlier filter: %d candidates, %d rescued, %d flagged",
            int(is_candidate.sum()), rescued, int(is_outlier.sum()),
        )
        return replace(result, pixels=pixels)

    def refit(self, result, frames, rng):
        """
        Field-level ensemble fit on the median VI of surviving good pixels.

        Returns:
            FieldFit, or None when fewer dates than the minimum remain
        """
        medians = np.array(result.filtered_median_vi(frames), dtype=float)
        doys = np.array([frame.day_of_year for frame in frames], dtype=float)
        valid = ~np.isnan(medians)
        if valid.sum() < self.settings.min_observations:
            logger.warning("Too few dates with good pixels for a cleaned refit")
            return None
        return ensemble_fit(doys[valid], medians[valid], self.settings, rng)
