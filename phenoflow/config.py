"""Configuration management for phenoflow."""
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import FrozenSet, Optional

import yaml
from dotenv import load_dotenv

from phenoflow.errors import ConfigError

load_dotenv()

VI_MODES = ("ndvi", "dvi")


@dataclass(frozen=True)
class FetchSettings:
    """Immutable snapshot of fetch settings, captured once per session."""

    max_concurrency: int = 8
    cloud_threshold: float = 100.0
    header_prefix_bytes: int = 131072
    rate_limit_threshold: int = 5
    latency_window: int = 10
    inflight_penalty: float = 0.5
    tie_tolerance: float = 0.2
    tie_margin: float = 0.1
    pause_poll_interval: float = 0.2
    max_region_size: int = 5000
    timeout: float = 30.0
    vi_mode: str = "ndvi"
    cloud_mask: bool = True
    scl_valid_classes: FrozenSet[int] = field(default_factory=lambda: frozenset({4, 5}))
    quantification: float = 10000.0
    enforce_aoi: bool = True

    def validate(self):
        if self.max_concurrency < 2:
            raise ConfigError(f"max_concurrency must be >= 2, got {self.max_concurrency}")
        if not 0 <= self.cloud_threshold <= 100:
            raise ConfigError(f"cloud_threshold must be within [0, 100], got {self.cloud_threshold}")
        if self.header_prefix_bytes < 16:
            raise ConfigError("header_prefix_bytes must hold at least a TIFF header")
        if self.rate_limit_threshold < 1:
            raise ConfigError("rate_limit_threshold must be >= 1")
        if self.latency_window < 1:
            raise ConfigError("latency_window must be >= 1")
        if self.max_region_size < 1:
            raise ConfigError("max_region_size must be >= 1")
        if self.vi_mode not in VI_MODES:
            raise ConfigError(f"Unknown VI mode: {self.vi_mode}")
        if self.quantification <= 0:
            raise ConfigError("quantification must be positive")
        return self

    def with_overrides(self, **changes):
        """Return a validated copy with some fields replaced."""
        return replace(self, **changes).validate()


@dataclass(frozen=True)
class FitSettings:
    """Immutable snapshot of phenology fit settings."""

    field_ensemble_runs: int = 50
    pixel_ensemble_runs: int = 5
    perturbation: float = 0.5
    slope_perturbation: float = 0.1
    max_iter: int = 2000
    rmse_threshold: float = 0.10
    min_observations: int = 4
    min_season_length: float = 50.0
    max_season_length: float = 150.0
    huber_delta: float = 0.10
    season_penalty: float = 0.01
    outlier_threshold: float = 4.0
    spatial_rescue_fraction: float = 0.5
    min_pixel_coverage: float = 0.5
    pixel_workers: Optional[int] = None
    progress_interval: int = 50
    vi_mode: str = "ndvi"

    def validate(self):
        if self.field_ensemble_runs < 1 or self.pixel_ensemble_runs < 1:
            raise ConfigError("ensemble runs must be >= 1")
        if not 0 <= self.perturbation < 1 or not 0 <= self.slope_perturbation < 1:
            raise ConfigError("perturbation fractions must be within [0, 1)")
        if self.max_iter < 1:
            raise ConfigError("max_iter must be >= 1")
        if self.rmse_threshold <= 0:
            raise ConfigError("rmse_threshold must be positive")
        if self.min_observations < 1:
            raise ConfigError("min_observations must be >= 1")
        if self.min_season_length < 0 or self.min_season_length > self.max_season_length:
            raise ConfigError(
                f"season length bounds are inconsistent: "
                f"[{self.min_season_length}, {self.max_season_length}]"
            )
        if self.huber_delta <= 0 or self.season_penalty < 0:
            raise ConfigError("huber_delta must be positive and season_penalty non-negative")
        if self.outlier_threshold <= 0:
            raise ConfigError("outlier_threshold must be positive")
        if not 0 <= self.spatial_rescue_fraction <= 1:
            raise ConfigError("spatial_rescue_fraction must be within [0, 1]")
        if not 0 < self.min_pixel_coverage <= 1:
            raise ConfigError("min_pixel_coverage must be within (0, 1]")
        if self.pixel_workers is not None and self.pixel_workers < 1:
            raise ConfigError("pixel_workers must be >= 1")
        if self.progress_interval < 1:
            raise ConfigError("progress_interval must be >= 1")
        if self.vi_mode not in VI_MODES:
            raise ConfigError(f"Unknown VI mode: {self.vi_mode}")
        return self

    def with_overrides(self, **changes):
        return replace(self, **changes).validate()


class Config:
    """Application configuration loaded from config.yaml and environment variables."""

    def __init__(self, config_path=None):
        if config_path is None:
            config_path = Path(__file__).parent / "config.yaml"

        with open(config_path) as f:
            self._config = yaml.safe_load(f)

        self._load_env_overrides()

    def _load_env_overrides(self):
        """Load environment variable overrides."""
        self.pc_subscription_key = os.getenv("PC_SUBSCRIPTION_KEY")
        self.earthdata_username = os.getenv("EARTHDATA_USERNAME")
        self.earthdata_password = os.getenv("EARTHDATA_PASSWORD")
        self.cdse_username = os.getenv("CDSE_USERNAME")
        self.cdse_password = os.getenv("CDSE_PASSWORD")
        self.cdse_access_key = os.getenv("CDSE_ACCESS_KEY")
        self.cdse_secret_key = os.getenv("CDSE_SECRET_KEY")
        self._log_level_override = os.getenv("PHENOFLOW_LOG_LEVEL")

    @property
    def api_timeout(self):
        return self._config["api"]["timeout"]

    @property
    def api_retry_attempts(self):
        return self._config["api"]["retry_attempts"]

    @property
    def page_limit(self):
        return self._config["api"]["page_limit"]

    @property
    def pagination_delay(self):
        return self._config["api"]["pagination_delay"]

    @property
    def enabled_sources(self):
        return list(self._config["sources"]["enabled"])

    @property
    def max_concurrency(self):
        return self._config["fetch"]["max_concurrency"]

    @property
    def cloud_threshold(self):
        return self._config["fetch"]["cloud_threshold"]

    @property
    def header_prefix_bytes(self):
        return self._config["fetch"]["header_prefix_bytes"]

    @property
    def vi_mode(self):
        return self._config["vi"]["mode"]

    @property
    def scl_valid_classes(self):
        return frozenset(self._config["vi"]["scl_valid_classes"])

    @property
    def log_level(self):
        return self._log_level_override or self._config["logging"]["level"]

    @property
    def log_format(self):
        return self._config["logging"]["format"]

    def fetch_settings(self, **overrides):
        """Capture a validated, immutable fetch snapshot."""
        fetch = self._config["fetch"]
        vi = self._config["vi"]
        settings = FetchSettings(
            max_concurrency=fetch["max_concurrency"],
            cloud_threshold=float(fetch["cloud_threshold"]),
            header_prefix_bytes=fetch["header_prefix_bytes"],
            rate_limit_threshold=fetch["rate_limit_threshold"],
            latency_window=fetch["latency_window"],
            inflight_penalty=float(fetch["inflight_penalty"]),
            tie_tolerance=float(fetch["tie_tolerance"]),
            tie_margin=float(fetch["tie_margin"]),
            pause_poll_interval=float(fetch["pause_poll_interval"]),
            max_region_size=fetch["max_region_size"],
            timeout=float(self.api_timeout),
            vi_mode=vi["mode"],
            cloud_mask=bool(vi["cloud_mask"]),
            scl_valid_classes=frozenset(vi["scl_valid_classes"]),
            quantification=float(vi["quantification"]),
            enforce_aoi=bool(vi["enforce_aoi"]),
        )
        return settings.with_overrides(**overrides)

    def fit_settings(self, **overrides):
        """Capture a validated, immutable fit snapshot."""
        fit = self._config["fit"]
        settings = FitSettings(
            field_ensemble_runs=fit["field_ensemble_runs"],
            pixel_ensemble_runs=fit["pixel_ensemble_runs"],
            perturbation=float(fit["perturbation"]),
            slope_perturbation=float(fit["slope_perturbation"]),
            max_iter=fit["max_iter"],
            rmse_threshold=float(fit["rmse_threshold"]),
            min_observations=fit["min_observations"],
            min_season_length=float(fit["min_season_length"]),
            max_season_length=float(fit["max_season_length"]),
            huber_delta=float(fit["huber_delta"]),
            season_penalty=float(fit["season_penalty"]),
            outlier_threshold=float(fit["outlier_threshold"]),
            spatial_rescue_fraction=float(fit["spatial_rescue_fraction"]),
            min_pixel_coverage=float(fit["min_pixel_coverage"]),
            pixel_workers=fit.get("pixel_workers"),
            progress_interval=fit["progress_interval"],
            vi_mode=self._config["vi"]["mode"],
        )
        return settings.with_overrides(**overrides)


# Global config instance
config = Config()
