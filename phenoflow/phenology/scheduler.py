"""Concurrent per-pixel phenology fitting."""
import logging
import math
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from phenoflow.models.phenology import FitQuality, PixelPhenology, PixelPhenologyResult, RejectionDetail
from phenoflow.phenology.optimizer import pixel_fit
from phenoflow.utils.geometry import coverage_mask

logger = logging.getLogger(__name__)


def default_worker_count():
    """Half the cores, at most two, so the host stays responsive."""
    return max(1, min(2, (os.cpu_count() or 1) // 2))


class _ProgressCounter:
    """Lock-protected completion counter sampled every ``interval`` pixels."""

    def __init__(self, total, interval, callback):
        self.total = total
        self.interval = interval
        self.callback = callback
        self.completed = 0
        self._lock = threading.Lock()

    def increment(self):
        with self._lock:
            self.completed += 1
            completed = self.completed
        if self.callback and (completed % self.interval == 0 or completed == self.total):
            self.callback(completed / self.total)


class PixelFitScheduler:
    """
    Partitions AOI pixels into batches and fits each batch on its own worker.

    Args:
        settings: FitSettings snapshot
        rng: numpy Generator; each batch gets an independent child stream
        progress_callback: Called with the completed fraction
        enforce_aoi: Only fit pixels sufficiently covered by the AOI
    """

    def __init__(self, settings, rng=None, progress_callback=None, enforce_aoi=True):
        self.settings = settings.validate()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.progress_callback = progress_callback
        self.enforce_aoi = enforce_aoi
        self._cancel = threading.Event()

    def cancel(self):
        self._cancel.set()

    @property
    def worker_count(self):
        return self.settings.pixel_workers or default_worker_count()

    def select_pixels(self, frames):
        """(row, col) of every pixel to fit, in row-major order."""
        first = frames[0]
        if self.enforce_aoi:
            mask = coverage_mask(
                first.polygon_norm, first.width, first.height, self.settings.min_pixel_coverage
            )
        else:
            mask = np.ones((first.height, first.width), dtype=bool)
        rows, cols = np.nonzero(mask)
        return list(zip(rows.tolist(), cols.tolist()))

    @staticmethod
    def pixel_series(frames, doys, row, col):
        """Non-NaN (doys, values) for one pixel across frames."""
        values = np.array([
            frame.vi[row, col] if row < frame.height and col < frame.width else np.nan
            for frame in frames
        ], dtype=float)
        valid = ~np.isnan(values)
        return doys[valid], values[valid]

    def _fit_one(self, frames, doys, row, col, field_params, rng):
        settings = self.settings
        t, v = self.pixel_series(frames, doys, row, col)
        if t.size < settings.min_observations:
            return self._skipped(row, col, field_params, t.size)

        fitted = pixel_fit(t, v, field_params, settings, rng)
        if math.isinf(fitted.rmse):
            return self._skipped(row, col, field_params, t.size)

        if fitted.rmse < settings.rmse_threshold:
            return PixelPhenology(row, col, fitted, int(t.size), FitQuality.GOOD)
        return PixelPhenology(
            row, col, fitted, int(t.size), FitQuality.POOR,
            rejection=RejectionDetail(
                reason=FitQuality.POOR,
                observation_count=int(t.size),
                rmse=fitted.rmse,
                rmse_threshold=settings.rmse_threshold,
            ),
        )

    def _skipped(self, row, col, field_params, n_obs):
        return PixelPhenology(
            row, col, field_params.with_rmse(math.inf), int(n_obs), FitQuality.SKIPPED,
            rejection=RejectionDetail(reason=FitQuality.SKIPPED, observation_count=int(n_obs)),
        )

    def _fit_batch(self, frames, doys, batch, field_params, rng, progress):
        results = []
        for row, col in batch:
            if self._cancel.is_set():
                break
            results.append(self._fit_one(frames, doys, row, col, field_params, rng))
            progress.increment()
        return results

    def fit_all(self, frames, field_params):
        """
        Fit every selected pixel.

        Args:
            frames: VIFrames sorted by date, all the same size
            field_params: Converged field-level DLParams used as the prior

        Returns:
            PixelPhenologyResult
        """
        started = time.perf_counter()
        if not frames:
            return PixelPhenologyResult(0, 0, [], field_params)

        width, height = frames[0].width, frames[0].height
        doys = np.array([frame.day_of_year for frame in frames], dtype=float)
        work = self.select_pixels(frames)
        grid = [[None] * width for _ in range(height)]
        if not work:
            return PixelPhenologyResult(width, height, grid, field_params)

        workers = min(self.worker_count, len(work))
        batches = [work[i::workers] for i in range(workers)]
        streams = self.rng.spawn(workers)
        progress = _ProgressCounter(len(work), self.settings.progress_interval, self.progress_callback)
        logger.info("Fitting %d pixels on %d worker(s)", len(work), workers)

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self._fit_batch, frames, doys, batch, field_params, stream, progress)
                for batch, stream in zip(batches, streams)
            ]
            for future in futures:
                for px in future.result():
                    grid[px.row][px.col] = px

        result = PixelPhenologyResult(
            width, height, grid, field_params, compute_time_seconds=time.perf_counter() - started
        )
        logger.info(
            "Per-pixel fit: %d good, %d poor, %d skipped in %.1fs",
            result.good_count, result.poor_count, result.skipped_count,
            result.compute_time_seconds,
        )
        return result
