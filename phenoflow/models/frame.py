"""Data model for per-scene vegetation-index frames."""
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Tuple

import numpy as np


@dataclass
class VIFrame:
    """One vegetation-index observation of the AOI."""

    date: date
    vi: np.ndarray  # float32 (height, width), NaN = invalid
    red: np.ndarray  # uint16 DN
    nir: np.ndarray  # uint16 DN
    scl: Optional[np.ndarray]  # classification grid upsampled to the band grid
    polygon_norm: List[Tuple[float, float]]
    dn_offset: float
    source_id: str
    median_vi: float
    valid_pixel_count: int = 0
    poly_pixel_count: int = 0
    cloud_fraction: float = 0.0
    scene_id: Optional[str] = None
    pixel_bounds: Optional[Tuple[int, int, int, int]] = None
    vi_mode: str = "ndvi"
    extra: dict = field(default_factory=dict, repr=False)

    @property
    def width(self):
        return self.vi.shape[1]

    @property
    def height(self):
        return self.vi.shape[0]

    @property
    def date_str(self):
        return self.date.strftime("%Y-%m-%d")

    @property
    def day_of_year(self):
        return self.date.timetuple().tm_yday

    def to_arrays(self):
        """Flatten to a dict of numpy arrays, e.g. for ``np.savez``."""
        arrays = {
            "vi": self.vi,
            "red": self.red,
            "nir": self.nir,
            "polygon_norm": np.asarray(self.polygon_norm, dtype=float),
            "meta": np.array(
                [self.date_str, self.source_id, self.scene_id or "", self.vi_mode], dtype=str
            ),
            "numbers": np.array(
                [self.dn_offset, self.median_vi, self.valid_pixel_count,
                 self.poly_pixel_count, self.cloud_fraction],
                dtype=float,
            ),
        }
        if self.scl is not None:
            arrays["scl"] = self.scl
        return arrays

    @classmethod
    def from_arrays(cls, arrays):
        """Inverse of :meth:`to_arrays`."""
        date_str, source_id, scene_id, vi_mode = [str(v) for v in arrays["meta"]]
        dn_offset, median_vi, valid, poly, cloud = arrays["numbers"].tolist()
        return cls(
            date=date.fromisoformat(date_str),
            vi=np.asarray(arrays["vi"], dtype=np.float32),
            red=np.asarray(arrays["red"], dtype=np.uint16),
            nir=np.asarray(arrays["nir"], dtype=np.uint16),
            scl=np.asarray(arrays["scl"], dtype=np.uint16) if "scl" in arrays else None,
            polygon_norm=[tuple(p) for p in np.asarray(arrays["polygon_norm"]).tolist()],
            dn_offset=dn_offset,
            source_id=source_id,
            median_vi=median_vi,
            valid_pixel_count=int(valid),
            poly_pixel_count=int(poly),
            cloud_fraction=cloud,
            scene_id=scene_id or None,
            vi_mode=vi_mode,
        )
