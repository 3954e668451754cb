"""TIFF / BigTIFF header and first-IFD parsing from a byte prefix."""
import struct
from dataclasses import dataclass
from typing import Optional

from phenoflow.errors import FormatError

TIFF_MAGIC = 42
BIGTIFF_MAGIC = 43

TAG_IMAGE_WIDTH = 256
TAG_IMAGE_LENGTH = 257
TAG_BITS_PER_SAMPLE = 258
TAG_COMPRESSION = 259
TAG_STRIP_OFFSETS = 273
TAG_SAMPLES_PER_PIXEL = 277
TAG_ROWS_PER_STRIP = 278
TAG_STRIP_BYTE_COUNTS = 279
TAG_PREDICTOR = 317
TAG_TILE_WIDTH = 322
TAG_TILE_LENGTH = 323
TAG_TILE_OFFSETS = 324
TAG_TILE_BYTE_COUNTS = 325
TAG_MODEL_PIXEL_SCALE = 33550
TAG_MODEL_TIEPOINT = 33922
TAG_MODEL_TRANSFORMATION = 34264

COMPRESSION_NONE = 1
COMPRESSION_LZW = 5
COMPRESSION_DEFLATE = 8
COMPRESSION_ADOBE_DEFLATE = 32946

PREDICTOR_NONE = 1
PREDICTOR_HORIZONTAL = 2

# Tag type -> (byte size, struct code)
TYPE_FORMATS = {
    1: (1, "B"),   # BYTE
    2: (1, "B"),   # ASCII
    3: (2, "H"),   # SHORT
    4: (4, "I"),   # LONG
    5: (8, "II"),  # RATIONAL
    6: (1, "b"),   # SBYTE
    7: (1, "B"),   # UNDEFINED
    8: (2, "h"),   # SSHORT
    9: (4, "i"),   # SLONG
    10: (8, "ii"),  # SRATIONAL
    11: (4, "f"),  # FLOAT
    12: (8, "d"),  # DOUBLE
    13: (4, "I"),  # IFD
    16: (8, "Q"),  # LONG8 (BigTIFF)
    17: (8, "q"),  # SLONG8 (BigTIFF)
    18: (8, "Q"),  # IFD8 (BigTIFF)
}


def type_size(tag_type):
    return TYPE_FORMATS.get(tag_type, (4, "I"))[0]


@dataclass(frozen=True)
class ArrayRef:
    """Location of a tag's values: inline in the IFD entry or external."""

    offset: int
    count: int
    tag_type: int

    @property
    def value_size(self):
        return type_size(self.tag_type)

    @property
    def nbytes(self):
        return self.count * self.value_size

    def decode(self, data, little_endian, start=0, stop=None):
        """Decode values ``start:stop`` from bytes beginning at element ``start``."""
        stop = self.count if stop is None else stop
        n = max(0, stop - start)
        code = TYPE_FORMATS.get(self.tag_type, (4, "I"))[1]
        if len(data) < n * self.value_size:
            raise FormatError(
                f"Tag array truncated: {len(data)} bytes for {n} values of {self.value_size} bytes"
            )
        if len(code) == 2:
            # Rationals: numerator/denominator pairs
            raw = struct.unpack(("<" if little_endian else ">") + code[0] * (2 * n), data[: n * 8])
            return [raw[i] / raw[i + 1] if raw[i + 1] else 0.0 for i in range(0, len(raw), 2)]
        fmt = ("<" if little_endian else ">") + code * n
        return list(struct.unpack(fmt, data[: n * self.value_size]))


@dataclass(frozen=True)
class TiffHeader:
    """What a reader needs from the first IFD."""

    big_tiff: bool
    little_endian: bool
    width: int
    height: int
    tile_width: int
    tile_height: int
    bits_per_sample: int
    compression: int
    predictor: int
    offsets: ArrayRef
    byte_counts: ArrayRef
    tiled: bool = True
    pixel_scale: Optional[ArrayRef] = None
    tiepoint: Optional[ArrayRef] = None
    model_transformation: Optional[ArrayRef] = None

    @property
    def bytes_per_sample(self):
        return max(1, self.bits_per_sample // 8)

    @property
    def tiles_across(self):
        return (self.width + self.tile_width - 1) // self.tile_width

    @property
    def tiles_down(self):
        return (self.height + self.tile_height - 1) // self.tile_height

    @property
    def tile_count(self):
        return self.tiles_across * self.tiles_down

    def tile_rows(self, tile_row):
        """Rows actually stored for a tile row; strips may end short."""
        if self.tiled:
            return self.tile_height
        return min(self.tile_height, self.height - tile_row * self.tile_height)

    def tile_nbytes(self, tile_row):
        return self.tile_width * self.tile_rows(tile_row) * self.bytes_per_sample


class _Cursor:
    """Bounds-checked integer reads in a fixed byte order."""

    def __init__(self, data, little_endian):
        self.data = data
        self.prefix = "<" if little_endian else ">"

    def read(self, fmt, offset):
        size = struct.calcsize(self.prefix + fmt)
        if offset < 0 or offset + size > len(self.data):
            raise FormatError(f"Read at {offset} beyond {len(self.data)} header bytes")
        return struct.unpack_from(self.prefix + fmt, self.data, offset)[0]


def parse_header(data):
    """
    Parse byte order, magic and the first IFD.

    Args:
        data: Byte prefix of the file (must contain the first IFD)

    Returns:
        TiffHeader
    """
    if len(data) < 8:
        raise FormatError("Header too short")

    order = bytes(data[:2])
    if order == b"II":
        little_endian = True
    elif order == b"MM":
        little_endian = False
    else:
        raise FormatError(f"Bad byte-order marker {order!r}")

    cur = _Cursor(data, little_endian)
    magic = cur.read("H", 2)
    if magic == BIGTIFF_MAGIC:
        if len(data) < 16:
            raise FormatError("BigTIFF header too short")
        if cur.read("H", 4) != 8:
            raise FormatError("BigTIFF offset size must be 8")
        big_tiff = True
        ifd_offset = cur.read("Q", 8)
    elif magic == TIFF_MAGIC:
        big_tiff = False
        ifd_offset = cur.read("I", 4)
    else:
        raise FormatError(f"Not a TIFF file (magic={magic})")

    if ifd_offset >= len(data):
        raise FormatError(f"IFD offset {ifd_offset} beyond header data")

    if big_tiff:
        entry_count = cur.read("Q", ifd_offset)
        entry_start = ifd_offset + 8
        entry_size = 20
        inline_bytes = 8
    else:
        entry_count = cur.read("H", ifd_offset)
        entry_start = ifd_offset + 2
        entry_size = 12
        inline_bytes = 4

    entries = {}
    for i in range(entry_count):
        pos = entry_start + i * entry_size
        if pos + entry_size > len(data):
            break
        tag = cur.read("H", pos)
        tag_type = cur.read("H", pos + 2)
        if big_tiff:
            count = cur.read("Q", pos + 4)
            value_pos = pos + 12
        else:
            count = cur.read("I", pos + 4)
            value_pos = pos + 8

        if count * type_size(tag_type) <= inline_bytes:
            offset = value_pos
        else:
            offset = cur.read("Q" if big_tiff else "I", value_pos)
        entries[tag] = ArrayRef(offset=offset, count=count, tag_type=tag_type)

    def scalar(tag, default=None):
        ref = entries.get(tag)
        if ref is None or ref.count == 0:
            return default
        end = ref.offset + ref.value_size
        if end > len(data):
            return default
        return int(ref.decode(data[ref.offset:end], little_endian, 0, 1)[0])

    width = scalar(TAG_IMAGE_WIDTH, 0)
    height = scalar(TAG_IMAGE_LENGTH, 0)
    if width <= 0 or height <= 0:
        raise FormatError("Missing image dimensions")

    samples = scalar(TAG_SAMPLES_PER_PIXEL, 1)
    if samples != 1:
        raise FormatError(f"Only single-band images are supported (samples={samples})")

    bits = scalar(TAG_BITS_PER_SAMPLE, 16)
    if bits not in (8, 16):
        raise FormatError(f"Unsupported bits per sample: {bits}")

    predictor = scalar(TAG_PREDICTOR, PREDICTOR_NONE)
    if predictor not in (PREDICTOR_NONE, PREDICTOR_HORIZONTAL):
        raise FormatError(f"Unsupported predictor: {predictor}")

    if TAG_TILE_OFFSETS in entries:
        tiled = True
        tile_width = scalar(TAG_TILE_WIDTH, 512)
        tile_height = scalar(TAG_TILE_LENGTH, 512)
        offsets = entries[TAG_TILE_OFFSETS]
        byte_counts = entries.get(TAG_TILE_BYTE_COUNTS)
    elif TAG_STRIP_OFFSETS in entries:
        tiled = False
        tile_width = width
        tile_height = min(scalar(TAG_ROWS_PER_STRIP, height), height)
        offsets = entries[TAG_STRIP_OFFSETS]
        byte_counts = entries.get(TAG_STRIP_BYTE_COUNTS)
    else:
        raise FormatError("No tile or strip offsets")

    if byte_counts is None:
        raise FormatError("Missing tile/strip byte counts")
    if tile_width <= 0 or tile_height <= 0:
        raise FormatError("Invalid tile dimensions")

    return TiffHeader(
        big_tiff=big_tiff,
        little_endian=little_endian,
        width=width,
        height=height,
        tile_width=tile_width,
        tile_height=tile_height,
        bits_per_sample=bits,
        compression=scalar(TAG_COMPRESSION, COMPRESSION_NONE),
        predictor=predictor,
        offsets=offsets,
        byte_counts=byte_counts,
        tiled=tiled,
        pixel_scale=entries.get(TAG_MODEL_PIXEL_SCALE),
        tiepoint=entries.get(TAG_MODEL_TIEPOINT),
        model_transformation=entries.get(TAG_MODEL_TRANSFORMATION),
    )


def geotransform_from_tags(pixel_scale=None, tiepoint=None, transformation=None):
    """
    Build [scaleX, shearX, originX, shearY, scaleY, originY] from GeoTIFF tags.

    Returns None when the tags are absent or degenerate.
    """
    if transformation is not None and len(transformation) >= 8:
        m = transformation
        return (m[0], m[1], m[3], m[4], m[5], m[7])
    if pixel_scale is None or tiepoint is None:
        return None
    if len(pixel_scale) < 2 or len(tiepoint) < 6:
        return None
    sx, sy = pixel_scale[0], pixel_scale[1]
    if sx == 0 or sy == 0:
        return None
    i, j, _, x, y, _ = tiepoint[:6]
    return (sx, 0.0, x - i * sx, 0.0, -sy, y + j * sy)
