from __future__ import annotations

import math
import os
import struct
import tempfile
import zlib
from collections.abc import Callable

import pytest

# Keep JSON log files out of the working tree; must run before ama_grid.settings is imported.
os.environ.setdefault("AMA_OUT_DIR", tempfile.mkdtemp(prefix="ama-grid-tests-"))

from ama_grid.png_decode import PNG_SIGNATURE, filter_scanline  # noqa: E402

_BPP = {0: 1, 2: 3, 4: 2, 6: 4}


def _chunk(chunk_type: bytes, payload: bytes) -> bytes:
    crc = zlib.crc32(chunk_type + payload) & 0xFFFFFFFF
    return struct.pack(">I", len(payload)) + chunk_type + payload + struct.pack(">I", crc)


def encode_png(
    width: int,
    height: int,
    pixels: bytes,
    *,
    colour_type: int = 2,
    filters: list[int] | None = None,
    bit_depth: int = 8,
    interlace: int = 0,
    idat_parts: int = 1,
) -> bytes:
    """Encode a PNG with the given per-row filters, splitting IDAT into ``idat_parts`` chunks."""
    bpp = _BPP[colour_type]
    stride = width * bpp
    previous = bytes(stride)
    raw = bytearray()
    for row in range(height):
        line = pixels[row * stride : (row + 1) * stride]
        filter_type = filters[row % len(filters)] if filters else 0
        raw.append(filter_type)
        raw.extend(filter_scanline(filter_type, line, previous, bpp))
        previous = line
    compressed = zlib.compress(bytes(raw))
    step = max(1, math.ceil(len(compressed) / idat_parts))
    idat = b"".join(_chunk(b"IDAT", compressed[i : i + step]) for i in range(0, len(compressed), step))
    header = struct.pack(">IIBBBBB", width, height, bit_depth, colour_type, 0, 0, interlace)
    return PNG_SIGNATURE + _chunk(b"IHDR", header) + idat + _chunk(b"IEND", b"")


def terrarium_rgb(elevation_m: float) -> tuple[int, int, int]:
    value = elevation_m + 32768.0
    whole = math.floor(value)
    return whole // 256, whole % 256, int((value - whole) * 256)


def terrarium_tile(width: int, height: int, elevation_of: Callable[[int, int], float], *, filters: list[int] | None = None) -> bytes:
    pixels = bytearray()
    for row in range(height):
        for col in range(width):
            pixels.extend(terrarium_rgb(elevation_of(row, col)))
    return encode_png(width, height, bytes(pixels), colour_type=2, filters=filters)


@pytest.fixture
def make_png() -> Callable[..., bytes]:
    return encode_png


@pytest.fixture
def make_terrarium_tile() -> Callable[..., bytes]:
    return terrarium_tile
