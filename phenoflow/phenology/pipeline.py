"""End-to-end phenology: field fit, per-pixel fits, outlier filter, cleaned refit."""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from phenoflow.config import config
from phenoflow.models.phenology import FieldFit, PixelPhenologyResult
from phenoflow.phenology.optimizer import ensemble_fit
from phenoflow.phenology.outliers import OutlierFilter
from phenoflow.phenology.scheduler import PixelFitScheduler

logger = logging.getLogger(__name__)


@dataclass
class PhenologyRun:
    field_fit: FieldFit
    pixels: Optional[PixelPhenologyResult] = None
    refit: Optional[FieldFit] = None

    @property
    def final_fit(self):
        return self.refit or self.field_fit


def field_series(frames):
    """(doys, median VI) of the frames, ignoring NaN medians."""
    doys = np.array([frame.day_of_year for frame in frames], dtype=float)
    values = np.array([frame.median_vi for frame in frames], dtype=float)
    valid = ~np.isnan(values)
    return doys[valid], values[valid]


def run_phenology(frames, settings=None, rng=None, per_pixel=True, enforce_aoi=True,
                  progress_callback=None):
    """
    Fit the field curve, then optionally every pixel.

    Args:
        frames: VIFrames sorted by date
        settings: FitSettings (default from config); validated here
        rng: numpy Generator for every perturbation
        per_pixel: Also run per-pixel fits, outlier filter and refit
        enforce_aoi: Restrict per-pixel fits to AOI pixels
        progress_callback: Per-pixel progress, called with a fraction

    Returns:
        PhenologyRun
    """
    settings = (settings or config.fit_settings()).validate()
    rng = rng if rng is not None else np.random.default_rng()
    frames = sorted(frames, key=lambda f: f.date)

    doys, values = field_series(frames)
    field_fit = ensemble_fit(doys, values, settings, rng)
    best = field_fit.best
    logger.info(
        "Field fit: sos=%.0f eos=%.0f mn=%.3f mx=%.3f rmse=%.4f (%d viable of %d runs)",
        best.sos, best.eos, best.mn, best.mx, best.rmse,
        len(field_fit.ensemble), settings.field_ensemble_runs,
    )
    if not per_pixel:
        return PhenologyRun(field_fit=field_fit)

    scheduler = PixelFitScheduler(
        settings, rng=rng, progress_callback=progress_callback, enforce_aoi=enforce_aoi
    )
    pixels = scheduler.fit_all(frames, best)

    outlier_filter = OutlierFilter(settings)
    pixels = outlier_filter.filter(pixels)
    refit = outlier_filter.refit(pixels, frames, rng)
    if refit is not None:
        logger.info("Cleaned refit: rmse=%.4f", refit.best.rmse)
    return PhenologyRun(field_fit=field_fit, pixels=pixels, refit=refit)
