"""Shared utilities for CLI commands."""
from collections import defaultdict

import numpy as np
from rich.console import Console

from phenoflow.api.sources import DEFAULT_SOURCES, enabled_sources
from phenoflow.config import config
from phenoflow.models.frame import VIFrame

# Global console for consistent output
console = Console()


def resolve_sources(source_ids=None):
    """SourceConfigs for the requested ids (default: enabled in config)."""
    return enabled_sources(source_ids or config.enabled_sources)


def source_choices():
    return sorted(DEFAULT_SOURCES)


def save_frames(frames, path):
    """Write frames to one compressed ``.npz`` archive."""
    arrays = {}
    for i, frame in enumerate(frames):
        for name, array in frame.to_arrays().items():
            arrays[f"{i:04d}_{name}"] = array
    np.savez_compressed(path, **arrays)


def load_frames(path):
    """Read frames written by :func:`save_frames`, sorted by date."""
    grouped = defaultdict(dict)
    with np.load(path) as archive:
        for key in archive.files:
            index, name = key.split("_", 1)
            grouped[index][name] = archive[key]
    frames = [VIFrame.from_arrays(grouped[index]) for index in sorted(grouped)]
    return sorted(frames, key=lambda f: f.date)


def print_frame_table(frames):
    """Print one line per frame in consistent format."""
    for frame in frames:
        scene = frame.scene_id or frame.date_str
        console.print(
            f"{scene} {frame.date_str} DOY={frame.day_of_year:03d} "
            f"nValid={frame.valid_pixel_count}/{frame.poly_pixel_count} "
            f"median={frame.median_vi:.3f} [{frame.source_id.upper()}]"
        )


def print_params(label, params):
    console.print(
        f"[bold]{label}:[/bold] mn={params.mn:.3f} mx={params.mx:.3f} "
        f"sos={params.sos:.0f} rsp={params.rsp:.3f} eos={params.eos:.0f} "
        f"rau={params.rau:.3f} rmse={params.rmse:.4f}"
    )
