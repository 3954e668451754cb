"""Per-scene vegetation-index computation from red/NIR digital numbers."""
import logging
from dataclasses import replace

import numpy as np

from phenoflow.api.sources import DEFAULT_SOURCES, MaskKind
from phenoflow.models.frame import VIFrame
from phenoflow.utils.geometry import pixel_centers_inside

logger = logging.getLogger(__name__)

MAX_REFLECTANCE = 1.5
NODATA_DN = 0
SATURATED_DN = 65535


def mask_bounds(pixel_bounds, scale):
    """Window in a coarser classification grid covering ``pixel_bounds``."""
    if scale == 1:
        return tuple(pixel_bounds)
    min_col, min_row, max_col, max_row = pixel_bounds
    return (
        min_col // scale,
        min_row // scale,
        (max_col + scale - 1) // scale,
        (max_row + scale - 1) // scale,
    )


def upsample_mask_grid(grid, pixel_bounds, scale):
    """
    Nearest-neighbour upsample a classification window onto the band grid.

    Args:
        grid: Window read with ``mask_bounds(pixel_bounds, scale)``
        pixel_bounds: Band window (min_col, min_row, max_col, max_row)
        scale: Band pixels per classification pixel

    Returns:
        uint16 (height, width) array
    """
    min_col, min_row, max_col, max_row = pixel_bounds
    width, height = max_col - min_col, max_row - min_row
    grid_h, grid_w = grid.shape
    if grid_h == 0 or grid_w == 0:
        return np.zeros((height, width), dtype=np.uint16)
    cols = np.arange(min_col, max_col) // scale - min_col // scale
    rows = np.arange(min_row, max_row) // scale - min_row // scale
    cols = np.clip(cols, 0, grid_w - 1)
    rows = np.clip(rows, 0, grid_h - 1)
    return grid[np.ix_(rows, cols)].astype(np.uint16)


def invalid_mask(classes, mask_kind, valid_classes):
    """True where the classification marks a pixel unusable."""
    if mask_kind is MaskKind.FMASK:
        # Fmask bit 1 = cloud, bit 2 = cloud shadow
        return ((classes >> 1) & 0x03) != 0
    return ~np.isin(classes, np.fromiter(valid_classes, dtype=np.int64))


def compute_vi(red, nir, inside, invalid, dn_offset, mode="ndvi", quantification=10000.0):
    """
    Vegetation index over the AOI.

    Args:
        red: uint16 DN grid
        nir: uint16 DN grid
        inside: bool grid, pixel centre inside the AOI
        invalid: bool grid from the classification layer, or None
        dn_offset: Added to DNs before scaling to reflectance
        mode: "ndvi" or "dvi"
        quantification: DN per unit reflectance

    Returns:
        tuple: (vi float32 grid with NaN for invalid, valid count, median VI)
    """
    ok = inside.copy()
    if invalid is not None:
        ok &= ~invalid
    ok &= (red != NODATA_DN) & (nir != NODATA_DN)
    ok &= (red != SATURATED_DN) & (nir != SATURATED_DN)

    red_refl = (red.astype(np.float32) + np.float32(dn_offset)) / np.float32(quantification)
    nir_refl = (nir.astype(np.float32) + np.float32(dn_offset)) / np.float32(quantification)
    ok &= (red_refl >= 0) & (nir_refl >= 0)
    ok &= (red_refl <= MAX_REFLECTANCE) & (nir_refl <= MAX_REFLECTANCE)

    vi = np.full(red.shape, np.nan, dtype=np.float32)
    if mode == "dvi":
        values = nir_refl - red_refl
    else:
        total = nir_refl + red_refl
        ok &= total > 0
        with np.errstate(divide="ignore", invalid="ignore"):
            values = (nir_refl - red_refl) / total
    vi[ok] = values[ok]

    valid = int(ok.sum())
    median = float(np.median(vi[ok])) if valid else 0.0
    return vi, valid, median


def compute_vi_frame(scene, red, nir, classes, ring, pixel_bounds, settings, mask_kind=MaskKind.SCL):
    """
    Build a VIFrame for one scene, or None when no pixel survives masking.

    Args:
        scene: SceneItem
        red: uint16 DN grid
        nir: uint16 DN grid
        classes: Upsampled classification grid or None
        ring: AOI ring in window pixel coordinates
        pixel_bounds: Band window
        settings: FetchSettings snapshot
        mask_kind: How to read ``classes``
    """
    height, width = red.shape
    if settings.enforce_aoi:
        inside = pixel_centers_inside(ring, width, height)
    else:
        inside = np.ones((height, width), dtype=bool)
    poly_count = int(inside.sum())

    invalid = None
    if classes is not None and settings.cloud_mask:
        invalid = invalid_mask(classes, mask_kind, settings.scl_valid_classes)

    vi, valid, median = compute_vi(
        red, nir, inside, invalid, scene.dn_offset, settings.vi_mode, settings.quantification
    )
    tag = f"{scene.date_str} [{scene.source_id}]"
    if valid == 0:
        logger.warning("%s: no valid pixels after masking, dropped", tag)
        return None

    logger.info(
        "%s: %d/%d valid, median %s=%.3f, cloud=%d%%",
        tag, valid, poly_count, settings.vi_mode, median, int(scene.cloud_cover),
    )
    return VIFrame(
        date=scene.acquired.date(),
        vi=vi,
        red=red,
        nir=nir,
        scl=classes,
        polygon_norm=[(c / width, r / height) for c, r in ring],
        dn_offset=scene.dn_offset,
        source_id=scene.source_id,
        median_vi=median,
        valid_pixel_count=valid,
        poly_pixel_count=poly_count,
        cloud_fraction=scene.cloud_cover / 100.0,
        scene_id=scene.scene_id,
        pixel_bounds=tuple(pixel_bounds),
        vi_mode=settings.vi_mode,
    )


def recompute_vi(frames, settings, mode=None):
    """
    Rebuild VI grids from the raw bands kept on each frame.

    Used when the VI mode or classification settings change after fetching.
    Frames left with no valid pixel are dropped.

    Args:
        frames: List of VIFrame
        settings: FetchSettings snapshot
        mode: VI mode override (default ``settings.vi_mode``)

    Returns:
        New list of VIFrame
    """
    mode = mode or settings.vi_mode
    updated = []
    for frame in frames:
        ring = [(x * frame.width, y * frame.height) for x, y in frame.polygon_norm]
        if settings.enforce_aoi:
            inside = pixel_centers_inside(ring, frame.width, frame.height)
        else:
            inside = np.ones(frame.vi.shape, dtype=bool)

        invalid = None
        if frame.scl is not None and settings.cloud_mask:
            source = DEFAULT_SOURCES.get(frame.source_id)
            mask_kind = source.mask_kind if source else MaskKind.SCL
            invalid = invalid_mask(frame.scl, mask_kind, settings.scl_valid_classes)

        vi, valid, median = compute_vi(
            frame.red, frame.nir, inside, invalid, frame.dn_offset, mode, settings.quantification
        )
        if valid == 0:
            logger.warning("%s: no valid pixels after recompute, dropped", frame.date_str)
            continue
        updated.append(replace(
            frame,
            vi=vi,
            median_vi=median,
            valid_pixel_count=valid,
            poly_pixel_count=int(inside.sum()),
            vi_mode=mode,
        ))
    logger.info("Recomputed %s for %d frames", mode, len(updated))
    return updated
