"""Double-logistic phenology fitting."""

from phenoflow.phenology.optimizer import (
    bounds_for_mode,
    ensemble_fit,
    filter_cycle_contamination,
    fit,
    huber_loss,
    initial_guess,
    nelder_mead,
    pixel_fit,
    rmse,
)
from phenoflow.phenology.scheduler import PixelFitScheduler
from phenoflow.phenology.outliers import OutlierFilter
from phenoflow.phenology.pipeline import PhenologyRun, run_phenology

__all__ = [
    "bounds_for_mode",
    "ensemble_fit",
    "filter_cycle_contamination",
    "fit",
    "huber_loss",
    "initial_guess",
    "nelder_mead",
    "pixel_fit",
    "rmse",
    "PixelFitScheduler",
    "OutlierFilter",
    "PhenologyRun",
    "run_phenology",
]
