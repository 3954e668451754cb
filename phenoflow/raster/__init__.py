"""Read-only, range-request aware GeoTIFF access."""

from phenoflow.raster.tiff import ArrayRef, TiffHeader, parse_header, geotransform_from_tags
from phenoflow.raster.codecs import decode_tile, decompress, lzw_decode
from phenoflow.raster.reader import TiledRasterReader

__all__ = [
    "ArrayRef",
    "TiffHeader",
    "parse_header",
    "geotransform_from_tags",
    "decode_tile",
    "decompress",
    "lzw_decode",
    "TiledRasterReader",
]
