"""Data models for catalog scenes."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional, Tuple


@dataclass(frozen=True)
class SceneItem:
    """A normalized catalog scene from one source. Immutable once built."""

    scene_id: str
    source_id: str
    acquired: datetime
    assets: Mapping[str, str]  # logical band name -> href
    transform: Optional[Tuple[float, ...]]  # [scaleX, shearX, originX, shearY, scaleY, originY]
    cloud_cover: float
    dn_offset: float = 0.0
    tile: Optional[str] = None
    epsg: Optional[int] = None
    properties: Mapping[str, object] = field(default_factory=dict, compare=False, repr=False)

    @property
    def date_str(self):
        """Get date as YYYY-MM-DD string."""
        return self.acquired.strftime("%Y-%m-%d")

    @property
    def key(self):
        """Deduplication key shared by the same acquisition across sources."""
        return f"{self.date_str}_{self.tile or ''}"

    def href(self, band):
        return self.assets.get(band)
