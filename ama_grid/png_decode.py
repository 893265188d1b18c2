"""Minimal PNG decoder for Terrarium elevation tiles.

Only non-interlaced, 8-bit greyscale / greyscale+alpha / RGB / RGBA images are
supported. Chunks are walked by hand; the IDAT stream goes through zlib and
each scanline is un-filtered against the row above it.
"""

from __future__ import annotations

import struct
import zlib
from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from .errors import FormatError, UnsupportedFormatError

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

FILTER_NONE = 0
FILTER_SUB = 1
FILTER_UP = 2
FILTER_AVERAGE = 3
FILTER_PAETH = 4

# colour type -> bytes per pixel at bit depth 8
_BYTES_PER_PIXEL: dict[int, int] = {
    0: 1,  # greyscale
    2: 3,  # RGB
    4: 2,  # greyscale + alpha
    6: 4,  # RGBA
}

TERRARIUM_OFFSET_M = 32768.0


@dataclass(frozen=True)
class ImageHeader:
    width: int
    height: int
    bit_depth: int
    colour_type: int
    interlace: int


@dataclass(frozen=True)
class DecodedImage:
    width: int
    height: int
    bytes_per_pixel: int
    pixels: bytes


def iter_chunks(data: bytes) -> Iterator[tuple[bytes, bytes]]:
    """Yield ``(type, payload)`` for each chunk after the signature, up to IEND."""
    offset = len(PNG_SIGNATURE)
    total = len(data)
    while offset < total:
        if offset + 8 > total:
            raise FormatError("PNG chunk header truncated", details={"offset": offset})
        (length,) = struct.unpack_from(">I", data, offset)
        chunk_type = bytes(data[offset + 4 : offset + 8])
        start = offset + 8
        end = start + length
        if end > total:
            raise FormatError(
                f"PNG chunk {chunk_type!r} truncated",
                details={"offset": offset, "length": length},
            )
        yield chunk_type, bytes(data[start:end])
        offset = end + 4  # skip CRC
        if chunk_type == b"IEND":
            return


def parse_header(payload: bytes) -> ImageHeader:
    if len(payload) < 13:
        raise FormatError("IHDR chunk too short", details={"length": len(payload)})
    width, height, bit_depth, colour_type, _compression, _filter_method, interlace = struct.unpack(
        ">IIBBBBB", payload[:13]
    )
    return ImageHeader(
        width=width,
        height=height,
        bit_depth=bit_depth,
        colour_type=colour_type,
        interlace=interlace,
    )


def bytes_per_pixel(colour_type: int) -> int:
    try:
        return _BYTES_PER_PIXEL[colour_type]
    except KeyError:
        raise UnsupportedFormatError(
            f"Unsupported colour type: {colour_type}",
            details={"colour_type": colour_type},
        ) from None


def paeth_predictor(a: int, b: int, c: int) -> int:
    p = a + b - c
    pa = abs(p - a)
    pb = abs(p - b)
    pc = abs(p - c)
    if pa <= pb and pa <= pc:
        return a
    if pb <= pc:
        return b
    return c


def unfilter_scanline(filter_type: int, raw: bytes, previous: bytes, bpp: int) -> bytes:
    """Reconstruct one scanline.

    ``previous`` is the already reconstructed row above (all zeros for the first
    row). Left neighbours sit ``bpp`` bytes back so each channel only sees itself.
    """
    if filter_type == FILTER_NONE:
        return bytes(raw)
    if filter_type == FILTER_UP:
        # uint8 addition wraps modulo 256
        return (np.frombuffer(raw, dtype=np.uint8) + np.frombuffer(previous, dtype=np.uint8)).tobytes()
    if filter_type == FILTER_SUB:
        deltas = np.frombuffer(raw, dtype=np.uint8).reshape(-1, bpp)
        return np.cumsum(deltas, axis=0, dtype=np.uint8).tobytes()

    out = bytearray(len(raw))
    if filter_type == FILTER_AVERAGE:
        for i, value in enumerate(raw):
            left = out[i - bpp] if i >= bpp else 0
            out[i] = (value + ((left + previous[i]) >> 1)) & 0xFF
        return bytes(out)
    if filter_type == FILTER_PAETH:
        for i, value in enumerate(raw):
            if i >= bpp:
                left = out[i - bpp]
                upper_left = previous[i - bpp]
            else:
                left = upper_left = 0
            out[i] = (value + paeth_predictor(left, previous[i], upper_left)) & 0xFF
        return bytes(out)
    raise FormatError(f"Unknown scanline filter type: {filter_type}", details={"filter_type": filter_type})


def filter_scanline(filter_type: int, row: bytes, previous: bytes, bpp: int) -> bytes:
    """Inverse of :func:`unfilter_scanline`, used to build fixtures."""
    out = bytearray(len(row))
    for i, value in enumerate(row):
        left = row[i - bpp] if i >= bpp else 0
        up = previous[i]
        upper_left = previous[i - bpp] if i >= bpp else 0
        if filter_type == FILTER_NONE:
            predicted = 0
        elif filter_type == FILTER_SUB:
            predicted = left
        elif filter_type == FILTER_UP:
            predicted = up
        elif filter_type == FILTER_AVERAGE:
            predicted = (left + up) >> 1
        elif filter_type == FILTER_PAETH:
            predicted = paeth_predictor(left, up, upper_left)
        else:
            raise FormatError(f"Unknown scanline filter type: {filter_type}", details={"filter_type": filter_type})
        out[i] = (value - predicted) & 0xFF
    return bytes(out)


def decode_png(data: bytes) -> DecodedImage:
    if data[: len(PNG_SIGNATURE)] != PNG_SIGNATURE:
        raise FormatError("Not a valid PNG: signature mismatch")

    header: ImageHeader | None = None
    idat_chunks: list[bytes] = []
    for chunk_type, payload in iter_chunks(data):
        if chunk_type == b"IHDR":
            header = parse_header(payload)
        elif chunk_type == b"IDAT":
            idat_chunks.append(payload)

    if header is None or header.width == 0 or header.height == 0:
        raise FormatError("No IHDR found")
    bpp = bytes_per_pixel(header.colour_type)
    if header.bit_depth != 8:
        raise UnsupportedFormatError(
            f"Unsupported bit depth: {header.bit_depth}",
            details={"bit_depth": header.bit_depth},
        )
    if header.interlace != 0:
        raise UnsupportedFormatError("Interlaced PNG is not supported", details={"interlace": header.interlace})

    try:
        raw = zlib.decompress(b"".join(idat_chunks))
    except zlib.error as exc:
        raise FormatError(f"IDAT stream failed to inflate: {exc}") from exc

    stride = header.width * bpp
    expected = header.height * (stride + 1)
    if len(raw) < expected:
        raise FormatError(
            "IDAT stream shorter than image geometry",
            details={"expected": expected, "actual": len(raw)},
        )

    pixels = bytearray(header.height * stride)
    previous = bytes(stride)
    for row in range(header.height):
        start = row * (stride + 1)
        line = unfilter_scanline(raw[start], raw[start + 1 : start + 1 + stride], previous, bpp)
        pixels[row * stride : (row + 1) * stride] = line
        previous = line

    return DecodedImage(
        width=header.width,
        height=header.height,
        bytes_per_pixel=bpp,
        pixels=bytes(pixels),
    )


def terrarium_elevation(r: int, g: int, b: int) -> float:
    return r * 256 + g + b / 256 - TERRARIUM_OFFSET_M


def terrarium_elevations(image: DecodedImage) -> np.ndarray:
    """Decode every pixel of a Terrarium tile to metres, shape ``(height, width)``."""
    if image.bytes_per_pixel < 3:
        raise UnsupportedFormatError(
            "Terrarium tiles need red, green and blue channels",
            details={"bytes_per_pixel": image.bytes_per_pixel},
        )
    plane = np.frombuffer(image.pixels, dtype=np.uint8).reshape(
        image.height, image.width, image.bytes_per_pixel
    )
    rgb = plane[..., :3].astype(np.float64)
    return rgb[..., 0] * 256.0 + rgb[..., 1] + rgb[..., 2] / 256.0 - TERRARIUM_OFFSET_M
