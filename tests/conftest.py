"""Shared fixtures: in-memory TIFF builder, fake range-capable HTTP session, synthetic frames."""
import json
import logging
import math
import struct
import zlib
from datetime import date, datetime, timedelta, timezone

import numpy as np
import pytest

from phenoflow.config import FetchSettings, FitSettings
from phenoflow.models.frame import VIFrame
from phenoflow.models.phenology import DLParams
from phenoflow.processing.vi import compute_vi

TYPE_CODES = {3: ("H", 2), 4: ("I", 4), 12: ("d", 8), 16: ("Q", 8)}


def lzw_encode(data):
    """TIFF LZW encoder (MSB-first, early change) mirroring the reader's decoder."""
    state = {"acc": 0, "nacc": 0, "nbits": 9, "dec_size": 258, "first": True}
    out = bytearray()

    def emit(code):
        state["acc"] = (state["acc"] << state["nbits"]) | code
        state["nacc"] += state["nbits"]
        while state["nacc"] >= 8:
            state["nacc"] -= 8
            out.append((state["acc"] >> state["nacc"]) & 0xFF)
        if code == 256:
            state.update(nbits=9, dec_size=258, first=True)
            return
        if not state["first"]:
            state["dec_size"] += 1
        state["first"] = False
        if state["dec_size"] + 1 >= (1 << state["nbits"]) and state["nbits"] < 12:
            state["nbits"] += 1

    table = {bytes([i]): i for i in range(256)}
    next_code = 258
    emit(256)
    w = b""
    for byte in bytes(data):
        wc = w + bytes([byte])
        if wc in table:
            w = wc
            continue
        emit(table[w])
        table[wc] = next_code
        next_code += 1
        w = bytes([byte])
        if next_code >= 4000:
            emit(256)
            table = {bytes([i]): i for i in range(256)}
            next_code = 258
    if w:
        emit(table[w])
    emit(257)
    if state["nacc"]:
        out.append((state["acc"] << (8 - state["nacc"])) & 0xFF)
    return bytes(out)


def _compress(raw, compression):
    if compression == 1:
        return raw
    if compression in (8, 32946):
        return zlib.compress(raw)
    if compression == 5:
        return lzw_encode(raw)
    raise ValueError(compression)


def build_tiff(data, tile_size=None, rows_per_strip=None, compression=8, predictor=1,
               big_tiff=False, little_endian=True, pixel_scale=None, tiepoint=None,
               empty_tiles=()):
    """
    Encode a single-band 2D uint8/uint16 array as TIFF or BigTIFF bytes.

    Args:
        data: 2D numpy array
        tile_size: (tile_width, tile_height) for a tiled layout, else strips
        rows_per_strip: Strip height (default whole image)
        compression: 1, 5 or 8
        predictor: 1 or 2
        big_tiff: Write BigTIFF
        little_endian: Byte order
        pixel_scale: Optional ModelPixelScale values
        tiepoint: Optional ModelTiepoint values
        empty_tiles: Tile indices written with byte count 0
    """
    bo = "<" if little_endian else ">"
    height, width = data.shape
    bits = data.dtype.itemsize * 8
    file_dtype = data.dtype.newbyteorder(bo)

    tiled = tile_size is not None
    if tiled:
        tw, th = tile_size
    else:
        tw, th = width, rows_per_strip or height
    across = math.ceil(width / tw)
    down = math.ceil(height / th)

    chunks = []
    for tr in range(down):
        for tc in range(across):
            rows = th if tiled else min(th, height - tr * th)
            block = np.zeros((rows, tw), dtype=data.dtype)
            src = data[tr * th:tr * th + rows, tc * tw:(tc + 1) * tw]
            block[:src.shape[0], :src.shape[1]] = src
            if predictor == 2:
                diff = block.copy()
                diff[:, 1:] = block[:, 1:] - block[:, :-1]
                block = diff
            index = tr * across + tc
            if index in empty_tiles:
                chunks.append(b"")
            else:
                chunks.append(_compress(block.astype(file_dtype).tobytes(), compression))

    offset_type = 16 if big_tiff else 4
    tags = [
        (256, 4, [width]),
        (257, 4, [height]),
        (258, 3, [bits]),
        (259, 3, [compression]),
        (277, 3, [1]),
        (317, 3, [predictor]),
    ]
    if tiled:
        tags += [
            (322, 4, [tw]),
            (323, 4, [th]),
            (324, offset_type, [0] * len(chunks)),
            (325, offset_type, [len(c) for c in chunks]),
        ]
        offsets_tag = 324
    else:
        tags += [
            (273, offset_type, [0] * len(chunks)),
            (278, 4, [th]),
            (279, offset_type, [len(c) for c in chunks]),
        ]
        offsets_tag = 273
    if pixel_scale is not None:
        tags.append((33550, 12, list(pixel_scale)))
    if tiepoint is not None:
        tags.append((33922, 12, list(tiepoint)))
    tags.sort()

    header_len = 16 if big_tiff else 8
    entry_len = 20 if big_tiff else 12
    inline = 8 if big_tiff else 4
    ifd_len = (8 + entry_len * len(tags) + 8) if big_tiff else (2 + entry_len * len(tags) + 4)

    # Place external tag values, then tile data
    cursor = header_len + ifd_len
    external = {}
    for tag, tag_type, values in tags:
        size = TYPE_CODES[tag_type][1] * len(values)
        if size > inline:
            external[tag] = cursor
            cursor += size + (size % 2)
    data_start = cursor

    offsets = []
    pos = data_start
    for chunk in chunks:
        offsets.append(pos if chunk else 0)
        pos += len(chunk)
    tags = [(t, ty, offsets if t == offsets_tag else v) for t, ty, v in tags]

    out = bytearray()
    if big_tiff:
        out += (b"II" if little_endian else b"MM") + struct.pack(bo + "HHHQ", 43, 8, 0, header_len)
        out += struct.pack(bo + "Q", len(tags))
    else:
        out += (b"II" if little_endian else b"MM") + struct.pack(bo + "HI", 42, header_len)
        out += struct.pack(bo + "H", len(tags))

    ext_blob = bytearray()
    for tag, tag_type, values in tags:
        code, size = TYPE_CODES[tag_type]
        packed = struct.pack(bo + code * len(values), *values)
        if big_tiff:
            out += struct.pack(bo + "HHQ", tag, tag_type, len(values))
        else:
            out += struct.pack(bo + "HHI", tag, tag_type, len(values))
        if tag in external:
            out += struct.pack(bo + ("Q" if big_tiff else "I"), external[tag])
            ext_blob += packed + b"\x00" * (len(packed) % 2)
        else:
            out += packed + b"\x00" * (inline - len(packed))
    out += struct.pack(bo + ("Q" if big_tiff else "I"), 0)
    out += ext_blob
    assert len(out) == data_start
    for chunk in chunks:
        out += chunk
    return bytes(out)


class FakeResponse:
    def __init__(self, status_code, content=b"", payload=None):
        self.status_code = status_code
        self.content = content
        self._payload = payload
        self.text = content.decode("latin-1") if isinstance(content, bytes) else str(content)

    def json(self):
        if self._payload is None:
            return json.loads(self.content)
        return self._payload


class FakeSession:
    """Serves registered files with Range support and queued JSON responses."""

    def __init__(self, honor_range=True):
        self.files = {}
        self.statuses = {}
        self.routes = {}
        self.honor_range = honor_range
        self.requests = []

    def add_file(self, url, data):
        self.files[url] = data

    def fail(self, url, status_code):
        self.statuses[url] = status_code

    def add_json(self, url, *payloads):
        self.routes.setdefault(url, []).extend(payloads)

    def get(self, url, headers=None, timeout=None):
        headers = headers or {}
        self.requests.append(("GET", url, dict(headers)))
        base = url.split("?", 1)[0]
        if base in self.statuses:
            return FakeResponse(self.statuses[base])
        if base not in self.files:
            return FakeResponse(404)
        data = self.files[base]
        spec = headers.get("Range")
        if spec and self.honor_range:
            start, end = spec.split("=", 1)[1].split("-")
            return FakeResponse(206, data[int(start):int(end) + 1])
        return FakeResponse(200, data)

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if method == "GET" and url in self.files:
            return self.get(url, kwargs.get("headers"))
        if url in self.statuses:
            return FakeResponse(self.statuses[url])
        queue = self.routes.get(url)
        if not queue:
            return FakeResponse(404)
        return FakeResponse(200, payload=queue.pop(0))


class FirstChoiceRng:
    """Stand-in generator that always picks the first eligible candidate."""

    def integers(self, n):
        return 0


@pytest.fixture(autouse=True)
def propagate_package_logs():
    """Keep package records reaching caplog even after the CLI installs its handler."""
    yield
    logger = logging.getLogger("phenoflow")
    logger.handlers.clear()
    logger.propagate = True


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def fetch_settings():
    return FetchSettings(max_concurrency=4, pause_poll_interval=0.01)


@pytest.fixture
def fit_settings():
    return FitSettings()


TRUE_PARAMS = DLParams(mn=0.1, mx=0.7, sos=120.0, rsp=0.08, eos=250.0, rau=0.05)
SYNTHETIC_DOYS = (60, 100, 115, 130, 180, 235, 250, 300)
FULL_SQUARE = [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0), (0.0, 0.0)]


def dn_pair_for(value, red=1000):
    """Red/NIR DNs whose NDVI is ``value``."""
    nir = int(round(red * (1 + value) / (1 - value)))
    return red, nir


def make_frames(params=TRUE_PARAMS, doys=SYNTHETIC_DOYS, size=5, year=2022, source_id="aws"):
    """Frames whose every pixel traces ``params`` through DN pairs."""
    frames = []
    inside = np.ones((size, size), dtype=bool)
    for doy in doys:
        red_dn, nir_dn = dn_pair_for(params.evaluate(doy))
        red = np.full((size, size), red_dn, dtype=np.uint16)
        nir = np.full((size, size), nir_dn, dtype=np.uint16)
        vi, valid, median = compute_vi(red, nir, inside, None, 0.0)
        frames.append(VIFrame(
            date=date(year, 1, 1) + timedelta(days=doy - 1),
            vi=vi,
            red=red,
            nir=nir,
            scl=None,
            polygon_norm=list(FULL_SQUARE),
            dn_offset=0.0,
            source_id=source_id,
            median_vi=median,
            valid_pixel_count=valid,
            poly_pixel_count=valid,
            scene_id=f"S2A_35JPM_{year}{doy:03d}_0_L2A",
        ))
    return frames


@pytest.fixture
def synthetic_frames():
    return make_frames()


def utc(year, month, day):
    return datetime(year, month, day, tzinfo=timezone.utc)
