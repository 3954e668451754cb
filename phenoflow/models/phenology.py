"""Data models for double-logistic phenology fits."""
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

PARAM_NAMES = ("mn", "mx", "sos", "rsp", "eos", "rau")


@dataclass(frozen=True)
class DLParams:
    """
    Beck double-logistic parameters.

    f(t) = mn + (mx - mn) * (1/(1+exp(-rsp*(t-sos))) + 1/(1+exp(rau*(t-eos))) - 1)
    """

    mn: float
    mx: float
    sos: float
    rsp: float
    eos: float
    rau: float
    rmse: float = 0.0

    def evaluate(self, t):
        """Evaluate at day(s) of year; accepts scalars or arrays."""
        t = np.asarray(t, dtype=float)
        with np.errstate(over="ignore"):
            spring = 1.0 / (1.0 + np.exp(-self.rsp * (t - self.sos)))
            autumn = 1.0 / (1.0 + np.exp(self.rau * (t - self.eos)))
        value = self.mn + (self.mx - self.mn) * (spring + autumn - 1.0)
        return float(value) if value.ndim == 0 else value

    @property
    def amplitude(self):
        return self.mx - self.mn

    @property
    def season_length(self):
        return self.eos - self.sos

    def as_array(self):
        return np.array([self.mn, self.mx, self.sos, self.rsp, self.eos, self.rau], dtype=float)

    @classmethod
    def from_array(cls, values, rmse=0.0):
        mn, mx, sos, rsp, eos, rau = (float(v) for v in values)
        return cls(mn=mn, mx=mx, sos=sos, rsp=rsp, eos=eos, rau=rau, rmse=rmse)

    def with_rmse(self, rmse):
        return replace(self, rmse=float(rmse))

    def to_dict(self):
        return {name: getattr(self, name) for name in PARAM_NAMES + ("rmse",)}


class FitQuality(str, Enum):
    GOOD = "good"
    POOR = "poor"
    SKIPPED = "skipped"
    OUTLIER = "outlier"


@dataclass(frozen=True)
class RejectionDetail:
    """Why a pixel was not kept as a good fit."""

    reason: FitQuality
    observation_count: int
    rmse: Optional[float] = None
    rmse_threshold: Optional[float] = None
    cluster_distance: Optional[float] = None
    cluster_threshold: Optional[float] = None
    param_z_scores: Optional[Dict[str, float]] = None

    @property
    def human_readable(self):
        if self.reason is FitQuality.SKIPPED:
            return f"Insufficient observations ({self.observation_count})"
        if self.reason is FitQuality.POOR:
            return f"Poor fit (RMSE {_fmt(self.rmse, 4)} > {_fmt(self.rmse_threshold, 4)})"
        if self.reason is FitQuality.OUTLIER:
            return (
                f"Outlier parameters (distance {_fmt(self.cluster_distance, 1)} "
                f"> {_fmt(self.cluster_threshold, 1)})"
            )
        return "Good fit"


def _fmt(value, digits):
    return "?" if value is None else f"{value:.{digits}f}"


@dataclass(frozen=True)
class PixelPhenology:
    """Per-pixel fit result."""

    row: int
    col: int
    params: DLParams
    n_valid_obs: int
    quality: FitQuality
    rejection: Optional[RejectionDetail] = None


@dataclass(frozen=True)
class FieldFit:
    """Field-level ensemble fit: best parameters plus the viable set."""

    best: DLParams
    ensemble: List[DLParams] = field(default_factory=list)
    n_observations: int = 0


def _median(values):
    return float(np.median(values)) if len(values) else math.nan


# Derived quantities reported per parameter
_UNCERTAINTY_EXTRACTORS = (
    ("mn", lambda p: p.mn),
    ("amp", lambda p: p.amplitude),
    ("sos", lambda p: p.sos),
    ("rsp", lambda p: p.rsp),
    ("season", lambda p: p.season_length),
    ("rau", lambda p: p.rau),
)

_MAP_EXTRACTORS = {
    "sos": lambda p: p.sos,
    "eos": lambda p: p.eos,
    "season": lambda p: p.season_length,
    "amp": lambda p: p.amplitude,
    "mn": lambda p: p.mn,
    "mx": lambda p: p.mx,
    "rsp": lambda p: p.rsp,
    "rau": lambda p: p.rau,
    "rmse": lambda p: p.rmse,
}

_REASON_CODES = {
    FitQuality.GOOD: 0.0,
    FitQuality.POOR: 1.0,
    FitQuality.OUTLIER: 2.0,
    FitQuality.SKIPPED: 3.0,
}


@dataclass
class PixelPhenologyResult:
    """Grid of per-pixel results; ``None`` cells lie outside the AOI."""

    width: int
    height: int
    pixels: List[List[Optional[PixelPhenology]]]
    median_fit: DLParams
    compute_time_seconds: float = 0.0

    def iter_pixels(self, quality=None):
        for row in self.pixels:
            for px in row:
                if px is not None and (quality is None or px.quality is quality):
                    yield px

    def count(self, quality):
        return sum(1 for _ in self.iter_pixels(quality))

    @property
    def good_count(self):
        return self.count(FitQuality.GOOD)

    @property
    def poor_count(self):
        return self.count(FitQuality.POOR)

    @property
    def skipped_count(self):
        return self.count(FitQuality.SKIPPED)

    @property
    def outlier_count(self):
        return self.count(FitQuality.OUTLIER)

    def summary(self):
        return {
            "good": self.good_count,
            "poor": self.poor_count,
            "skipped": self.skipped_count,
            "outlier": self.outlier_count,
        }

    def parameter_map(self, name):
        """2D float32 map of one parameter over good pixels; NaN elsewhere."""
        extract = _MAP_EXTRACTORS[name]
        out = np.full((self.height, self.width), np.nan, dtype=np.float32)
        for px in self.iter_pixels(FitQuality.GOOD):
            out[px.row, px.col] = extract(px.params)
        return out

    def parameter_uncertainty(self):
        """(name, median, iqr) per parameter across good pixels; empty below 3 pixels."""
        good = list(self.iter_pixels(FitQuality.GOOD))
        if len(good) < 3:
            return []
        rows = []
        for name, extract in _UNCERTAINTY_EXTRACTORS:
            values = np.sort([extract(px.params) for px in good])
            n = len(values)
            q1 = values[max(0, n // 4)]
            q3 = values[min(n - 1, 3 * n // 4)]
            rows.append((name, _median(values), float(q3 - q1)))
        return rows

    def rejection_reason_map(self):
        """0 good, 1 poor, 2 outlier, 3 skipped, NaN outside the AOI."""
        out = np.full((self.height, self.width), np.nan, dtype=np.float32)
        for px in self.iter_pixels():
            out[px.row, px.col] = _REASON_CODES[px.quality]
        return out

    def good_mask(self):
        mask = np.zeros((self.height, self.width), dtype=bool)
        for px in self.iter_pixels(FitQuality.GOOD):
            mask[px.row, px.col] = True
        return mask

    def filtered_median_vi(self, frames):
        """Median VI per frame over good pixels only (NaN when none remain)."""
        mask = self.good_mask()
        medians = []
        for frame in frames:
            h = min(self.height, frame.height)
            w = min(self.width, frame.width)
            values = frame.vi[:h, :w][mask[:h, :w]]
            values = values[~np.isnan(values)]
            medians.append(_median(values))
        return medians

    def reclassified(self, rmse_threshold):
        """Re-split good/poor by a new RMSE threshold without refitting."""
        pixels = [list(row) for row in self.pixels]
        for px in self.iter_pixels():
            if px.quality not in (FitQuality.GOOD, FitQuality.POOR):
                continue
            quality = FitQuality.GOOD if px.params.rmse < rmse_threshold else FitQuality.POOR
            if quality is px.quality:
                continue
            rejection = None
            if quality is FitQuality.POOR:
                rejection = RejectionDetail(
                    reason=FitQuality.POOR,
                    observation_count=px.n_valid_obs,
                    rmse=px.params.rmse,
                    rmse_threshold=rmse_threshold,
                )
            pixels[px.row][px.col] = replace(px, quality=quality, rejection=rejection)
        return replace(self, pixels=pixels)
