"""Data models."""

from phenoflow.models.scene import SceneItem
from phenoflow.models.frame import VIFrame
from phenoflow.models.phenology import (
    PARAM_NAMES,
    DLParams,
    FieldFit,
    FitQuality,
    PixelPhenology,
    PixelPhenologyResult,
    RejectionDetail,
)

__all__ = [
    "SceneItem",
    "VIFrame",
    "PARAM_NAMES",
    "DLParams",
    "FieldFit",
    "FitQuality",
    "PixelPhenology",
    "PixelPhenologyResult",
    "RejectionDetail",
]
