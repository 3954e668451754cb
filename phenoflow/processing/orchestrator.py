"""Multi-source scene acquisition with latency-aware assignment and failover."""
import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np
import requests

from phenoflow.api.auth import build_asset_auth
from phenoflow.api.stac import CatalogSearchClient
from phenoflow.config import config
from phenoflow.errors import (
    AuthError,
    HttpError,
    MissingTransformError,
    NoScenesError,
    NoSourcesError,
    PhenoflowError,
    RasterError,
    SessionError,
)
from phenoflow.processing.load import SourceLoadTracker
from phenoflow.processing.vi import compute_vi_frame, mask_bounds, upsample_mask_grid
from phenoflow.raster.reader import TiledRasterReader
from phenoflow.utils.dates import missing_date_ranges, parse_date
from phenoflow.utils.geometry import as_polygon, bbox_to_pixels, polygon_to_pixels, utm_epsg_for

logger = logging.getLogger(__name__)

# Errors after which the same scene is tried from another source
FAILOVER_ERRORS = (HttpError, MissingTransformError, AuthError)


class SessionState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    SEARCHING = "searching"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass
class ProbeResult:
    source_id: str
    ok: bool
    search_seconds: float = 0.0
    token_seconds: Optional[float] = None
    error: Optional[str] = None


@dataclass
class ScenePlan:
    """Scenes deduplicated by (date, tile), each with the sources that listed it."""

    keys: List[str] = field(default_factory=list)
    candidates: Dict[str, Dict[str, object]] = field(default_factory=dict)

    def add(self, scene):
        if scene.key not in self.candidates:
            self.keys.append(scene.key)
            self.candidates[scene.key] = {}
        self.candidates[scene.key].setdefault(scene.source_id, scene)

    def sources_for(self, key):
        return list(self.candidates.get(key, {}))

    def scene(self, key, source_id):
        return self.candidates[key][source_id]

    def count_for(self, source_id):
        return sum(1 for key in self.keys if source_id in self.candidates[key])

    def __len__(self):
        return len(self.keys)


@dataclass
class SessionResult:
    """Frames gathered by a session (partial on cancel or error)."""

    frames: list
    state: SessionState
    error: Optional[Exception] = None
    cancelled: bool = False
    scene_count: int = 0
    retry_count: int = 0
    http_error_count: int = 0
    dropped_count: int = 0
    source_stats: Dict[str, tuple] = field(default_factory=dict)

    @property
    def ok(self):
        return self.state is SessionState.DONE


@dataclass
class _Outcome:
    key: str
    source_id: str
    seconds: float
    frame: object = None
    error: Optional[Exception] = None
    is_retry: bool = False


class SourceOrchestrator:
    """
    Runs a fetch session across several imagery sources.

    Dispatch and all aggregation happen on the calling thread; worker threads
    only fetch and decode one scene each.
    """

    def __init__(self, sources, settings=None, session=None, rng=None, progress_callback=None,
                 auths=None, search_clients=None, reader_factory=None):
        """
        Args:
            sources: List of SourceConfig to use
            settings: FetchSettings snapshot (default from config)
            session: requests session shared by catalog and raster clients
            rng: numpy Generator for tie-breaking between sources
            progress_callback: Called with (fraction, message)
            auths: Optional {source_id: AssetAuth}
            search_clients: Optional {source_id: CatalogSearchClient}
            reader_factory: Callable returning a TiledRasterReader per scene
        """
        self.settings = (settings or config.fetch_settings()).validate()
        self.sources = {s.source_id: s for s in sources}
        self.session = session or requests.Session()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.progress_callback = progress_callback

        self.auths = dict(auths or {})
        for sid, source in self.sources.items():
            if sid not in self.auths:
                try:
                    self.auths[sid] = build_asset_auth(source, session=self.session)
                except AuthError as e:
                    logger.warning("%s: %s", source.display_name, e)
        self.clients = dict(search_clients or {})
        for sid, source in self.sources.items():
            if sid not in self.clients and sid in self.auths:
                self.clients[sid] = CatalogSearchClient(source, auth=self.auths[sid], session=self.session)

        self.reader_factory = reader_factory or (
            lambda: TiledRasterReader(
                session=self.session,
                header_prefix_bytes=self.settings.header_prefix_bytes,
                timeout=self.settings.timeout,
            )
        )

        self.state = SessionState.IDLE
        self.active_sources = [sid for sid in self.sources if sid in self.clients]
        self._disabled = set()
        self._cancel = threading.Event()
        self._resume = threading.Event()
        self._resume.set()
        self.tracker = self._new_tracker()

    def _new_tracker(self):
        return SourceLoadTracker(
            window=self.settings.latency_window,
            inflight_penalty=self.settings.inflight_penalty,
            tie_tolerance=self.settings.tie_tolerance,
            tie_margin=self.settings.tie_margin,
        )

    # Control

    def pause(self):
        """Stop dispatching new scenes; running scenes finish."""
        if self.state is SessionState.PROCESSING:
            self._resume.clear()
            logger.info("Fetch paused")

    def resume(self):
        if not self._resume.is_set():
            self._resume.set()
            logger.info("Fetch resumed")

    def cancel(self):
        """Cooperative cancel; in-flight scenes complete and are kept."""
        self._cancel.set()
        self._resume.set()

    @property
    def cancelled(self):
        return self._cancel.is_set()

    @property
    def paused(self):
        return not self._resume.is_set()

    def _wait_if_paused(self):
        while not self._resume.is_set() and not self._cancel.is_set():
            self._resume.wait(self.settings.pause_poll_interval)

    def _report(self, fraction, message):
        if self.progress_callback is not None:
            self.progress_callback(fraction, message)

    def _disable(self, source_id, reason):
        if source_id in self._disabled:
            return
        self._disabled.add(source_id)
        if source_id in self.active_sources:
            self.active_sources.remove(source_id)
        name = self.sources[source_id].display_name if source_id in self.sources else source_id
        logger.warning("%s unavailable, disabled for this session (%s)", name, reason)

    # Phases

    def probe(self, geometry, start_date, end_date):
        """
        Minimal catalog query and token fetch per active source.

        Sources that fail are disabled for the rest of the session.

        Returns:
            List of ProbeResult
        """
        self.state = SessionState.PROBING
        self._report(0.0, f"Probing {len(self.active_sources)} source(s)...")
        geojson = as_polygon(geometry).__geo_interface__

        def probe_one(source_id):
            started = time.perf_counter()
            token_seconds = None
            try:
                self.auths[source_id].probe()
                token_seconds = time.perf_counter() - started
                search_started = time.perf_counter()
                self.clients[source_id].probe(geojson, start_date, end_date)
                return ProbeResult(
                    source_id, True, time.perf_counter() - search_started, token_seconds
                )
            except PhenoflowError as e:
                return ProbeResult(
                    source_id, False, time.perf_counter() - started, token_seconds, str(e)
                )

        sources = list(self.active_sources)
        with ThreadPoolExecutor(max_workers=max(1, len(sources))) as executor:
            results = list(executor.map(probe_one, sources))

        for result in results:
            if result.ok:
                timing = f"search {result.search_seconds * 1000:.0f}ms"
                if result.token_seconds is not None:
                    timing += f", token {result.token_seconds * 1000:.0f}ms"
                logger.info("%s: %s", self.sources[result.source_id].short_name, timing)
            else:
                self._disable(result.source_id, result.error)
        return results

    def search(self, geometry, start_date, end_date):
        """
        Search all active sources in parallel and deduplicate by (date, tile).

        Returns:
            ScenePlan
        """
        self.state = SessionState.SEARCHING
        self._report(0.0, f"Searching {len(self.active_sources)} source(s)...")
        geojson = as_polygon(geometry).__geo_interface__
        sources = list(self.active_sources)

        def search_one(source_id):
            try:
                return self.clients[source_id].search(
                    geojson, start_date, end_date, max_cloud_cover=self.settings.cloud_threshold
                )
            except PhenoflowError as e:
                logger.warning("%s: search failed (%s)", self.sources[source_id].short_name, e)
                return []

        with ThreadPoolExecutor(max_workers=max(1, len(sources))) as executor:
            results = dict(zip(sources, executor.map(search_one, sources)))

        plan = ScenePlan()
        for source_id in sources:
            for scene in results[source_id]:
                plan.add(scene)
        for source_id in sources:
            logger.info(
                "%s: %d scenes available", self.sources[source_id].short_name, plan.count_for(source_id)
            )
        return plan

    def process_scene(self, scene, polygon, reader=None):
        """
        Fetch and decode one scene into a VIFrame.

        Returns None when the scene is skipped (too cloudy, empty or oversized
        window, corrupt bands, no valid pixels). Failover-eligible errors propagate.
        """
        settings = self.settings
        reader = reader or self.reader_factory()
        source = self.sources[scene.source_id]
        auth = self.auths.get(scene.source_id)
        tag = f"{scene.date_str} [{scene.source_id}]"

        if scene.cloud_cover > settings.cloud_threshold:
            logger.warning("%s: %d%% cloud, skipping", tag, int(scene.cloud_cover))
            return None

        red_url, nir_url = scene.href("red"), scene.href("nir")
        if not red_url or not nir_url:
            logger.warning("%s: missing red/nir assets, skipping", tag)
            return None

        transform = scene.transform
        if transform is None:
            try:
                transform = reader.read_geotransform(red_url, auth)
            except HttpError:
                raise
            except RasterError as e:
                raise MissingTransformError(f"{tag}: geotransform read failed ({e})") from e
            if transform is None:
                raise MissingTransformError(f"{tag}: no geotransform in catalog or COG header")
            logger.info("%s: using COG header geotransform", tag)

        epsg = scene.epsg
        if epsg is None:
            centroid = polygon.centroid
            epsg = utm_epsg_for(centroid.x, centroid.y)

        min_col, min_row, max_col, max_row = bbox_to_pixels(polygon, epsg, transform)
        bounds = (max(0, min_col), max(0, min_row), max_col, max_row)
        width, height = bounds[2] - bounds[0], bounds[3] - bounds[1]
        if width <= 0 or height <= 0:
            logger.warning("%s: zero-size crop region, skipping", tag)
            return None
        if width >= settings.max_region_size or height >= settings.max_region_size:
            logger.error("%s: invalid region size %dx%d, skipping", tag, width, height)
            return None

        red = reader.read_region(red_url, bounds, auth)
        nir = reader.read_region(nir_url, bounds, auth)
        if red.shape != (height, width) or nir.shape != (height, width):
            logger.error(
                "%s: band size mismatch red=%s nir=%s expected=%s, skipped",
                tag, red.shape, nir.shape, (height, width),
            )
            return None
        if not red.any() or not nir.any():
            logger.error("%s: band all zeros (corrupt/nodata), skipped", tag)
            return None

        classes = None
        mask_url = scene.href("scl")
        if mask_url:
            scale = source.mask_scale
            try:
                grid = reader.read_region(mask_url, mask_bounds(bounds, scale), auth)
                classes = upsample_mask_grid(grid, bounds, scale)
            except (HttpError, RasterError) as e:
                logger.warning("%s: classification layer unavailable (%s)", tag, e)

        if scene.dn_offset:
            logger.info("%s: applying DN offset %d", tag, int(scene.dn_offset))

        ring = polygon_to_pixels(polygon, epsg, transform, bounds)
        return compute_vi_frame(
            scene, red, nir, classes, ring, bounds, settings, mask_kind=source.mask_kind
        )

    def _run_scene(self, key, scene, polygon, is_retry):
        started = time.perf_counter()
        try:
            frame = self.process_scene(scene, polygon)
            return _Outcome(key, scene.source_id, time.perf_counter() - started, frame=frame,
                            is_retry=is_retry)
        except FAILOVER_ERRORS as e:
            return _Outcome(key, scene.source_id, time.perf_counter() - started, error=e,
                            is_retry=is_retry)
        except RasterError as e:
            logger.error("%s [%s]: %s", scene.date_str, scene.source_id, e)
            return _Outcome(key, scene.source_id, time.perf_counter() - started, is_retry=is_retry)
        except Exception as e:
            logger.exception("%s [%s]: unexpected failure, skipped (%s)", scene.date_str, scene.source_id, e)
            return _Outcome(key, scene.source_id, time.perf_counter() - started, is_retry=is_retry)

    def execute(self, plan, geometry, max_concurrency=None):
        """
        Fetch and decode every planned scene with bounded concurrency.

        Args:
            plan: ScenePlan
            geometry: AOI (GeoJSON dict or shapely geometry, EPSG:4326)
            max_concurrency: Ceiling on concurrent scenes (default from settings)

        Returns:
            SessionResult with frames sorted by date
        """
        self.state = SessionState.PROCESSING
        polygon = as_polygon(geometry)
        max_concurrency = max_concurrency or self.settings.max_concurrency
        current_max = max_concurrency

        stats = {"retries": 0, "http_errors": 0, "forbidden": 0, "dropped": 0, "processed": 0}
        total = len(plan)
        frames = []
        pending = deque(plan.keys)
        retries = deque()
        running = {}

        logger.info(
            "Downloading & processing %d scenes (%d streams, cloud <= %d%%)",
            total, max_concurrency, int(self.settings.cloud_threshold),
        )

        def candidates(key, exclude=None):
            return [
                sid for sid in plan.sources_for(key)
                if sid != exclude and sid not in self._disabled and sid in self.active_sources
            ]

        def handle(outcome):
            nonlocal current_max, total
            stats["processed"] += 1
            error = outcome.error
            self.tracker.finish(outcome.source_id, outcome.seconds, completed=error is None)

            if error is None:
                if outcome.frame is not None:
                    frames.append(outcome.frame)
                else:
                    stats["dropped"] += 1
            else:
                tag = f"{outcome.key} [{outcome.source_id}]"
                if isinstance(error, AuthError):
                    self._disable(outcome.source_id, str(error))
                if isinstance(error, HttpError):
                    stats["http_errors"] += 1
                    if error.code == 403:
                        stats["forbidden"] += 1
                        if stats["forbidden"] == 1:
                            logger.warning("%s 403: access denied, check credentials", outcome.source_id)
                        if stats["forbidden"] % self.settings.rate_limit_threshold == 0:
                            current_max = min(max_concurrency, max(2, current_max // 2))
                            logger.warning(
                                "Rate limiting (%d x 403), reducing to %d streams",
                                stats["forbidden"], current_max,
                            )

                if (not outcome.is_retry and not self.cancelled
                        and candidates(outcome.key, exclude=outcome.source_id)):
                    logger.warning("%s: %s, will retry from alternate", tag, error)
                    retries.append((outcome.key, outcome.source_id))
                    stats["retries"] += 1
                    total += 1
                else:
                    logger.warning("%s: %s, dropped", tag, error)
                    stats["dropped"] += 1

            self._report(
                stats["processed"] / max(1, total),
                f"Reading imagery {stats['processed']}/{total}...",
            )

        def collect():
            done, _ = wait(list(running), return_when=FIRST_COMPLETED)
            for future in done:
                running.pop(future)
                handle(future.result())

        def drain(block_until_below):
            while running and len(running) >= block_until_below:
                collect()

        with ThreadPoolExecutor(max_workers=max_concurrency) as executor:
            while pending or retries or running:
                if not pending and not retries:
                    collect()
                    continue
                if self.cancelled:
                    break
                drain(current_max)
                # Pause or cancel may arrive while draining
                self._wait_if_paused()
                if self.cancelled:
                    break
                if not pending and not retries:
                    continue

                if pending:
                    key, exclude, is_retry = pending.popleft(), None, False
                else:
                    (key, exclude), is_retry = retries.popleft(), True

                choices = candidates(key, exclude)
                if not choices:
                    stats["processed"] += 1
                    stats["dropped"] += 1
                    continue

                source_id = self.tracker.pick(choices, self.rng)
                scene = plan.scene(key, source_id)
                future = executor.submit(self._run_scene, key, scene, polygon, is_retry)
                running[future] = key

            # In-flight work finishes and is kept on cancel
            drain(1)

        frames.sort(key=lambda f: f.date)
        cancelled = self.cancelled
        self.state = SessionState.DONE
        self._log_summary(frames, plan, stats, cancelled)
        return SessionResult(
            frames=frames,
            state=SessionState.DONE,
            cancelled=cancelled,
            scene_count=len(plan),
            retry_count=stats["retries"],
            http_error_count=stats["http_errors"],
            dropped_count=stats["dropped"],
            source_stats=self.tracker.snapshot(),
        )

    def _log_summary(self, frames, plan, stats, cancelled):
        for source_id, (completed, average, _) in sorted(self.tracker.snapshot().items()):
            if completed:
                name = self.sources[source_id].short_name if source_id in self.sources else source_id
                logger.info("%s: %d scenes, avg %.1fs/scene", name, completed, average)
        if stats["http_errors"]:
            logger.warning("HTTP errors: %d total", stats["http_errors"])
        if cancelled:
            logger.warning(
                "Fetch stopped after %d/%d scenes (%d frames kept)",
                stats["processed"], len(plan), len(frames),
            )
            self._report(stats["processed"] / max(1, len(plan)), f"Stopped, {len(frames)} scenes loaded")
            return
        logger.info("Pipeline complete: %d frames from %d scenes", len(frames), len(plan))
        if stats["dropped"]:
            logger.info("Dropped %d scenes (cloud/no valid data/error)", stats["dropped"])
        if frames:
            logger.info("Date range: %s to %s", frames[0].date_str, frames[-1].date_str)
        self._report(1.0, f"Done! {len(frames)} scenes loaded")

    def run(self, geometry, start_date, end_date):
        """
        Probe, search and process a whole session.

        Session-fatal conditions are reported through the returned state,
        never raised.

        Returns:
            SessionResult
        """
        self._cancel.clear()
        self._resume.set()
        self.tracker = self._new_tracker()
        try:
            self.probe(geometry, start_date, end_date)
            if not self.active_sources:
                raise NoSourcesError()
            plan = self.search(geometry, start_date, end_date)
            if not plan:
                raise NoScenesError()
            return self.execute(plan, geometry)
        except SessionError as e:
            self.state = SessionState.ERROR
            logger.error("Pipeline failed: %s", e)
            self._report(0.0, f"Error: {e}")
            return SessionResult(frames=[], state=SessionState.ERROR, error=e)

    def update_date_range(self, frames, geometry, start_date, end_date):
        """
        Keep frames inside the new range and fetch only the uncovered dates.

        Args:
            frames: Frames from a previous session for the same AOI
            geometry: AOI
            start_date: New start (YYYY-MM-DD)
            end_date: New end (YYYY-MM-DD)

        Returns:
            SessionResult holding the merged frames
        """
        start, end = parse_date(start_date), parse_date(end_date)
        kept = [f for f in frames if start <= f.date <= end]
        logger.info("Date update: keeping %d frames, dropped %d", len(kept), len(frames) - len(kept))

        covered_start = min((f.date for f in frames), default=None)
        covered_end = max((f.date for f in frames), default=None)
        ranges = missing_date_ranges(covered_start, covered_end, start, end)
        if not ranges:
            kept.sort(key=lambda f: f.date)
            self.state = SessionState.DONE
            self._report(1.0, f"Date range updated: {len(kept)} frames")
            return SessionResult(frames=kept, state=SessionState.DONE)

        merged = list(kept)
        result = None
        for range_start, range_end in ranges:
            logger.info("Fetching new dates %s..%s", range_start, range_end)
            result = self.run(geometry, range_start, range_end)
            if result.state is SessionState.ERROR and isinstance(result.error, NoScenesError):
                continue
            merged.extend(result.frames)
            if result.state is SessionState.ERROR or result.cancelled:
                break

        seen = set()
        unique = []
        for frame in sorted(merged, key=lambda f: f.date):
            key = (frame.date, frame.scene_id)
            if key not in seen:
                seen.add(key)
                unique.append(frame)

        if result is not None and result.state is SessionState.ERROR and not isinstance(result.error, NoScenesError):
            return SessionResult(frames=unique, state=SessionState.ERROR, error=result.error)
        self.state = SessionState.DONE
        return SessionResult(
            frames=unique,
            state=SessionState.DONE,
            cancelled=bool(result and result.cancelled),
            retry_count=result.retry_count if result else 0,
            http_error_count=result.http_error_count if result else 0,
            dropped_count=result.dropped_count if result else 0,
            source_stats=result.source_stats if result else {},
        )
