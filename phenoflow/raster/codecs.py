"""Tile decompression and predictor reversal."""
import logging
import zlib

import numpy as np

from phenoflow.errors import DecompressionError, UnsupportedCompressionError
from phenoflow.raster.tiff import (
    COMPRESSION_ADOBE_DEFLATE,
    COMPRESSION_DEFLATE,
    COMPRESSION_LZW,
    COMPRESSION_NONE,
    PREDICTOR_HORIZONTAL,
)

logger = logging.getLogger(__name__)

LZW_CLEAR = 256
LZW_EOI = 257


def decompress(payload, compression, expected_size):
    """
    Decompress a tile payload.

    Args:
        payload: Raw tile bytes as stored in the file
        compression: TIFF compression code
        expected_size: Decoded size implied by tile geometry

    Returns:
        bytes
    """
    if compression == COMPRESSION_NONE:
        return bytes(payload)
    if compression in (COMPRESSION_DEFLATE, COMPRESSION_ADOBE_DEFLATE):
        return inflate(payload, expected_size)
    if compression == COMPRESSION_LZW:
        return lzw_decode(payload)
    raise UnsupportedCompressionError(compression)


def inflate(payload, expected_size):
    """Inflate a zlib-wrapped Deflate stream (not raw Deflate)."""
    try:
        return zlib.decompress(payload)
    except zlib.error as e:
        if len(payload) == expected_size:
            return raw_copy_fallback(payload, expected_size, e)
        logger.error(
            "zlib decompress failed: %s, input=%d bytes, expected=%d",
            e, len(payload), expected_size,
        )
        raise DecompressionError(f"Deflate decompression failed: {e}") from e


def raw_copy_fallback(payload, expected_size, cause):
    """
    Treat an undecodable payload of exactly the decoded size as uncompressed.

    This can mask real corruption, so every use is logged.
    """
    logger.warning(
        "zlib failed (%s) but payload matches expected size %d, treating as uncompressed",
        cause, expected_size,
    )
    return bytes(payload)


def lzw_decode(payload):
    """Decode TIFF-flavoured LZW (MSB-first codes, early change)."""
    data = bytes(payload) + b"\x00\x00\x00"
    total_bits = len(payload) * 8
    out = bytearray()
    table = [bytes([i]) for i in range(256)] + [b"", b""]
    nbits = 9
    bit_pos = 0
    prev = None

    while bit_pos + nbits <= total_bits:
        byte_pos = bit_pos >> 3
        chunk = (data[byte_pos] << 16) | (data[byte_pos + 1] << 8) | data[byte_pos + 2]
        code = (chunk >> (24 - (bit_pos & 7) - nbits)) & ((1 << nbits) - 1)
        bit_pos += nbits

        if code == LZW_CLEAR:
            del table[258:]
            nbits = 9
            prev = None
            continue
        if code == LZW_EOI:
            break

        if prev is None:
            if code >= len(table):
                raise DecompressionError(f"Invalid LZW code {code} after clear")
            entry = table[code]
        elif code < len(table):
            entry = table[code]
            table.append(prev + entry[:1])
        elif code == len(table):
            entry = prev + prev[:1]
            table.append(entry)
        else:
            raise DecompressionError(f"Invalid LZW code {code}")

        out += entry
        prev = entry
        if len(table) + 1 >= (1 << nbits) and nbits < 12:
            nbits += 1

    return bytes(out)


def samples_dtype(bytes_per_sample, little_endian):
    if bytes_per_sample == 1:
        return np.dtype(np.uint8)
    return np.dtype("<u2" if little_endian else ">u2")


def decode_tile(payload, compression, predictor, width, rows, bytes_per_sample, little_endian):
    """
    Decompress a tile and return its samples as a (rows, width) uint16 array.

    8-bit samples widen to 16-bit without scaling.
    """
    expected = width * rows * bytes_per_sample
    raw = decompress(payload, compression, expected)

    if len(raw) < expected:
        raw = raw + bytes(expected - len(raw))
    elif len(raw) > expected:
        raw = raw[:expected]

    samples = np.frombuffer(raw, dtype=samples_dtype(bytes_per_sample, little_endian))
    samples = samples.reshape(rows, width)

    if predictor == PREDICTOR_HORIZONTAL:
        samples = undo_horizontal_predictor(samples)

    return samples.astype(np.uint16)


def undo_horizontal_predictor(samples):
    """Reverse horizontal differencing: wrapping running sum along each row."""
    native = samples.astype(samples.dtype.newbyteorder("="), copy=False)
    return np.cumsum(native, axis=1, dtype=native.dtype)
