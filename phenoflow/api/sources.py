"""Predefined imagery sources and their band mappings."""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict


class AuthKind(str, Enum):
    NONE = "none"
    SAS_TOKEN = "sas_token"  # Microsoft Planetary Computer
    BEARER_TOKEN = "bearer_token"  # CDSE, NASA Earthdata


class MaskKind(str, Enum):
    SCL = "scl"  # Sentinel-2 scene classification classes
    FMASK = "fmask"  # HLS Fmask bit flags


@dataclass(frozen=True)
class BandMapping:
    """Logical band name -> source-specific STAC asset key."""

    red: str
    nir: str
    green: str
    blue: str
    scl: str
    transform_key: str

    def asset_keys(self):
        return {"red": self.red, "nir": self.nir, "green": self.green, "blue": self.blue, "scl": self.scl}


@dataclass(frozen=True)
class SourceConfig:
    """Complete configuration of one data source."""

    source_id: str
    display_name: str
    short_name: str
    search_url: str
    collection: str
    auth_kind: AuthKind
    bands: BandMapping
    mask_kind: MaskKind = MaskKind.SCL
    # Classification grid resolution relative to the red band (2 = half resolution)
    mask_scale: int = 2
    enabled: bool = True
    search_headers: Dict[str, str] = field(default_factory=dict)

    def with_overrides(self, **changes):
        return replace(self, **changes)


AWS = SourceConfig(
    source_id="aws",
    display_name="AWS Earth Search",
    short_name="AWS",
    search_url="https://earth-search.aws.element84.com/v1/search",
    collection="sentinel-2-l2a",
    auth_kind=AuthKind.NONE,
    bands=BandMapping(red="red", nir="nir", green="green", blue="blue", scl="scl", transform_key="red"),
)

PLANETARY = SourceConfig(
    source_id="planetary",
    display_name="Planetary Computer",
    short_name="PC",
    search_url="https://planetarycomputer.microsoft.com/api/stac/v1/search",
    collection="sentinel-2-l2a",
    auth_kind=AuthKind.SAS_TOKEN,
    bands=BandMapping(red="B04", nir="B08", green="B03", blue="B02", scl="SCL", transform_key="B04"),
)

CDSE = SourceConfig(
    source_id="cdse",
    display_name="Copernicus Data Space",
    short_name="CDSE",
    search_url="https://stac.dataspace.copernicus.eu/v1/search",
    collection="sentinel-2-l2a",
    auth_kind=AuthKind.BEARER_TOKEN,
    bands=BandMapping(
        red="B04_10m", nir="B08_10m", green="B03_10m", blue="B02_10m", scl="SCL_20m",
        transform_key="B04_10m",
    ),
    enabled=False,
)

EARTHDATA = SourceConfig(
    source_id="earthdata",
    display_name="NASA Earthdata (HLS)",
    short_name="NASA",
    search_url="https://cmr.earthdata.nasa.gov/stac/LPCLOUD/search",
    collection="HLSS30.v2.0",
    auth_kind=AuthKind.BEARER_TOKEN,
    bands=BandMapping(red="B04", nir="B8A", green="B03", blue="B02", scl="Fmask", transform_key="B04"),
    mask_kind=MaskKind.FMASK,
    mask_scale=1,
    enabled=False,
)

DEFAULT_SOURCES = {s.source_id: s for s in (AWS, PLANETARY, CDSE, EARTHDATA)}


def get_source(source_id):
    """Look up a predefined source by id."""
    try:
        return DEFAULT_SOURCES[source_id]
    except KeyError:
        raise ValueError(
            f"Unknown source '{source_id}'. Available: {', '.join(DEFAULT_SOURCES)}"
        ) from None


def enabled_sources(source_ids):
    """Source configs for the given ids, all marked enabled."""
    return [get_source(sid).with_overrides(enabled=True) for sid in source_ids]
