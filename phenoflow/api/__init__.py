"""Catalog and asset-access clients."""

from phenoflow.api.sources import (
    AuthKind,
    BandMapping,
    DEFAULT_SOURCES,
    MaskKind,
    SourceConfig,
    enabled_sources,
    get_source,
)
from phenoflow.api.auth import (
    AssetAuth,
    BearerTokenAuth,
    NoAuth,
    S3SignerAuth,
    SasTokenAuth,
    build_asset_auth,
)
from phenoflow.api.stac import CatalogSearchClient, extract_mgrs_tile

__all__ = [
    "AuthKind",
    "BandMapping",
    "DEFAULT_SOURCES",
    "MaskKind",
    "SourceConfig",
    "enabled_sources",
    "get_source",
    "AssetAuth",
    "BearerTokenAuth",
    "NoAuth",
    "S3SignerAuth",
    "SasTokenAuth",
    "build_asset_auth",
    "CatalogSearchClient",
    "extract_mgrs_tile",
]
