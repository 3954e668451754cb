"""Windowed reads of tiled/striped GeoTIFFs over HTTP range requests."""
import logging

import numpy as np
import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from phenoflow.config import config
from phenoflow.errors import HttpError
from phenoflow.raster.codecs import decode_tile
from phenoflow.raster.tiff import geotransform_from_tags, parse_header

logger = logging.getLogger(__name__)


class TiledRasterReader:
    """
    Reads pixel windows from a remote single-band (Big)TIFF.

    Each fetch task owns its reader and all decode buffers.
    """

    def __init__(self, session=None, header_prefix_bytes=None, timeout=None):
        self.session = session or requests.Session()
        self.header_prefix_bytes = header_prefix_bytes or config.header_prefix_bytes
        self.timeout = timeout or config.api_timeout

    @retry(
        stop=stop_after_attempt(config.api_retry_attempts),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        reraise=True,
    )
    def _get(self, url, headers):
        """GET with retry on transport failures only; statuses are handled by the caller."""
        return self.session.get(url, headers=headers, timeout=self.timeout)

    def fetch_range(self, url, offset, length, auth=None):
        """
        Fetch ``length`` bytes at ``offset``.

        Args:
            url: Asset URL
            offset: First byte
            length: Number of bytes
            auth: Optional AssetAuth applied to the request

        Returns:
            bytes (shorter than ``length`` only at end of file)
        """
        headers = {"Range": f"bytes={offset}-{offset + length - 1}"}
        if auth is not None:
            url, headers = auth.authorize(url, headers)

        try:
            response = self._get(url, headers)
        except requests.RequestException as e:
            raise HttpError(0, url=url, reason=str(e)) from e

        if response.status_code == 206:
            return response.content
        if response.status_code == 200:
            # Server ignored Range and sent the whole object
            return response.content[offset:offset + length]
        raise HttpError(response.status_code, url=url)

    def _read_prefix(self, url, auth):
        prefix = self.fetch_range(url, 0, self.header_prefix_bytes, auth)
        return parse_header(prefix), prefix

    def read_header(self, url, auth=None):
        """Parse the TIFF header and first IFD from a fixed-size prefix."""
        header, _ = self._read_prefix(url, auth)
        return header

    def _read_values(self, url, prefix, header, ref, start, stop, auth):
        """Values ``start:stop`` of a tag array, from the prefix when it holds them."""
        first = ref.offset + start * ref.value_size
        nbytes = (stop - start) * ref.value_size
        if first + nbytes <= len(prefix):
            data = prefix[first:first + nbytes]
        else:
            data = self.fetch_range(url, first, nbytes, auth)
        return ref.decode(data, header.little_endian, start, stop)

    def read_geotransform(self, url, auth=None):
        """
        Geotransform from GeoTIFF tags, for catalogs lacking ``proj:transform``.

        Returns:
            Tuple [scaleX, shearX, originX, shearY, scaleY, originY] or None
        """
        header, prefix = self._read_prefix(url, auth)

        def values(ref):
            if ref is None:
                return None
            return self._read_values(url, prefix, header, ref, 0, ref.count, auth)

        return geotransform_from_tags(
            pixel_scale=values(header.pixel_scale),
            tiepoint=values(header.tiepoint),
            transformation=values(header.model_transformation),
        )

    def read_region(self, url, pixel_bounds, auth=None):
        """
        Read a pixel window.

        Args:
            url: Asset URL
            pixel_bounds: (min_col, min_row, max_col, max_row), max exclusive
            auth: Optional AssetAuth

        Returns:
            uint16 array of shape (max_row - min_row, max_col - min_col);
            areas outside the image are zero
        """
        min_col, min_row, max_col, max_row = pixel_bounds
        out_w = max(0, max_col - min_col)
        out_h = max(0, max_row - min_row)
        result = np.zeros((out_h, out_w), dtype=np.uint16)

        header, prefix = self._read_prefix(url, auth)
        logger.debug(
            "COG %s: %dx%d bps=%d comp=%d pred=%d tile=%dx%d",
            url.rsplit("/", 1)[-1].split("?", 1)[0], header.width, header.height,
            header.bits_per_sample, header.compression, header.predictor,
            header.tile_width, header.tile_height,
        )

        # Clip to the image before choosing tiles
        c0, c1 = max(0, min_col), min(header.width, max_col)
        r0, r1 = max(0, min_row), min(header.height, max_row)
        if out_w == 0 or out_h == 0 or c0 >= c1 or r0 >= r1:
            return result

        min_tile_col = c0 // header.tile_width
        max_tile_col = (c1 - 1) // header.tile_width
        min_tile_row = r0 // header.tile_height
        max_tile_row = (r1 - 1) // header.tile_height

        across = header.tiles_across
        first = min_tile_row * across + min_tile_col
        last = min(max_tile_row * across + max_tile_col + 1, header.offsets.count, header.byte_counts.count)
        if first >= last:
            return result
        offsets = self._read_values(url, prefix, header, header.offsets, first, last, auth)
        byte_counts = self._read_values(url, prefix, header, header.byte_counts, first, last, auth)

        for tile_row in range(min_tile_row, max_tile_row + 1):
            for tile_col in range(min_tile_col, max_tile_col + 1):
                index = tile_row * across + tile_col - first
                if index >= len(offsets):
                    continue
                offset, byte_count = offsets[index], byte_counts[index]
                if byte_count <= 0:
                    continue

                rows = header.tile_rows(tile_row)
                payload = self.fetch_range(url, offset, byte_count, auth)
                tile = decode_tile(
                    payload,
                    header.compression,
                    header.predictor,
                    header.tile_width,
                    rows,
                    header.bytes_per_sample,
                    header.little_endian,
                )

                # Overlap of this tile with the clipped window, in global pixels
                tx0 = tile_col * header.tile_width
                ty0 = tile_row * header.tile_height
                gx0, gx1 = max(c0, tx0), min(c1, tx0 + header.tile_width)
                gy0, gy1 = max(r0, ty0), min(r1, ty0 + rows)
                if gx0 >= gx1 or gy0 >= gy1:
                    continue
                result[gy0 - min_row:gy1 - min_row, gx0 - min_col:gx1 - min_col] = \
                    tile[gy0 - ty0:gy1 - ty0, gx0 - tx0:gx1 - tx0]

        return result
