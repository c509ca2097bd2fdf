#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
TGA utilities
Header model, palette compaction and run-length encoding for TGA output

Features:
- TGA header building/parsing (18-byte little endian header)
- Palette compaction (unused color table entries removed, indexes remapped)
- RLE packet encoding for 8bpp indexed, 24bpp and 32bpp pixels
- RLE packet replay decoding
"""
import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

TGA_HEADER_FORMAT = '<BBBHHBHHHHBB'
TGA_HEADER_SIZE = struct.calcsize(TGA_HEADER_FORMAT)

MAX_PACKET_COUNT = 127  # packet header holds (pixel count - 1)
RLE_FLAG = 0x80
MAX_PALETTE_ENTRIES = 256

# Identical pixels needed before a literal packet is broken in favour of a
# repeat packet, per pixel size in bytes
BREAK_THRESHOLD = {
    1: 3,
    3: 2,
    4: 2,
}


class OversizeRun(RuntimeError):
    """A packet counter went past 127"""


class TgaImageType(IntEnum):
    """TGA image types"""
    NO_IMAGE = 0
    COLORMAPPED = 1
    TRUECOLOR = 2
    COLORMAPPED_RLE = 9
    TRUECOLOR_RLE = 10

    @property
    def is_rle(self) -> bool:
        return self in (TgaImageType.COLORMAPPED_RLE, TgaImageType.TRUECOLOR_RLE)


class TgaColorMap(IntEnum):
    """TGA color map type"""
    NO_PALETTE = 0
    PALETTED = 1


class TgaImageDescriptor(IntEnum):
    """TGA image descriptor bits"""
    ATTRIB_BITS_0 = 0
    ATTRIB_BITS_8 = 8
    BOTTOM_LEFT = 0x00
    TOP_LEFT = 0x20


@dataclass
class TgaHeader:
    """TGA file header"""
    id_length: int = 0
    color_map_type: TgaColorMap = TgaColorMap.NO_PALETTE
    image_type: TgaImageType = TgaImageType.TRUECOLOR
    cmap_start: int = 0
    cmap_length: int = 0
    cmap_depth: int = 0
    x_offset: int = 0
    y_offset: int = 0
    width: int = 0
    height: int = 0
    pixel_depth: int = 0
    image_descriptor: int = TgaImageDescriptor.ATTRIB_BITS_0 | TgaImageDescriptor.TOP_LEFT

    @property
    def is_top_left(self) -> bool:
        return bool(self.image_descriptor & TgaImageDescriptor.TOP_LEFT)

    def to_bytes(self) -> bytes:
        return struct.pack(
            TGA_HEADER_FORMAT,
            self.id_length,
            self.color_map_type,
            self.image_type,
            self.cmap_start,
            self.cmap_length,
            self.cmap_depth,
            self.x_offset,
            self.y_offset,
            self.width,
            self.height,
            self.pixel_depth,
            self.image_descriptor,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> 'TgaHeader':
        if len(data) < TGA_HEADER_SIZE:
            raise ValueError(f"TGA header needs {TGA_HEADER_SIZE} bytes, got {len(data)}")
        values = struct.unpack(TGA_HEADER_FORMAT, data[:TGA_HEADER_SIZE])
        header = cls(*values)
        header.color_map_type = TgaColorMap(header.color_map_type)
        header.image_type = TgaImageType(header.image_type)
        return header


@dataclass
class TgaImage:
    """A complete TGA image ready to be written"""
    header: TgaHeader = field(default_factory=TgaHeader)
    palette: bytes = b""
    data: bytes = b""

    def to_bytes(self) -> bytes:
        return self.header.to_bytes() + self.palette + self.data


@dataclass
class ShrinkResult:
    """Outcome of compacting and RLE encoding an indexed image"""
    palette: List[bytes] = field(default_factory=list)
    encoded: Optional[bytes] = None

    @property
    def is_rle(self) -> bool:
        return self.encoded is not None


def _packet_header(count: int, is_rle: bool) -> int:
    if count > MAX_PACKET_COUNT:
        raise OversizeRun(f"Packet count {count} exceeds {MAX_PACKET_COUNT}")
    return count | RLE_FLAG if is_rle else count


def encode_rle_packets(pixels: bytes, pixel_size: int) -> bytes:
    """Encode pixels into TGA RLE packets, whatever the resulting size"""
    if pixel_size not in BREAK_THRESHOLD:
        raise ValueError(f"Unsupported pixel size: {pixel_size}")
    if len(pixels) % pixel_size:
        raise ValueError(f"Pixel data size {len(pixels)} is not a multiple of {pixel_size}")

    num_pixels = len(pixels) // pixel_size
    px = [bytes(pixels[k * pixel_size:(k + 1) * pixel_size]) for k in range(num_pixels)]

    # Identical pixels which end a literal packet: the last `retract` of them
    # have already been copied into it, the run restarts with `carried` repeats
    threshold = BREAK_THRESHOLD[pixel_size]
    retract = threshold - 2
    carried = threshold - 1

    dest = bytearray()
    i = 0
    repeats = 0  # pixels after the first one in the current packet

    while i < num_pixels:
        while i + 1 < num_pixels and px[i + 1] == px[i]:
            repeats += 1
            i += 1
            if repeats == MAX_PACKET_COUNT:
                break

        if repeats:
            dest.append(_packet_header(repeats, True))
            dest += px[i]
            i += 1
            repeats = 0
            continue

        # Literal packet; its header is patched once the pixel count is known
        header_pos = len(dest)
        dest.append(0)
        dest += px[i]
        i += 1

        identical = 0
        next_repeats = 0
        while True:
            if i + 1 >= num_pixels:
                # the last pixel, if not copied yet, closes this packet
                if i < num_pixels:
                    dest += px[i]
                    i += 1
                    repeats += 1
                break

            if px[i + 1] == px[i]:
                identical += 1
            else:
                identical = 0

            if identical == threshold - 1:
                if retract:
                    del dest[-pixel_size * retract:]
                    repeats -= retract
                next_repeats = carried
                i += 1
                break

            dest += px[i]
            i += 1
            repeats += 1
            if repeats >= MAX_PACKET_COUNT:
                break

        dest[header_pos] = _packet_header(repeats, False)
        repeats = next_repeats

    return bytes(dest)


def rle_encode(pixels: bytes, pixel_size: int) -> Optional[bytes]:
    """RLE encode pixels; None when the result would not be smaller than the input"""
    if not pixels:
        return b""

    encoded = encode_rle_packets(pixels, pixel_size)
    if len(encoded) >= len(pixels):
        logger.debug(f"RLE not worthwhile: {len(encoded)} encoded bytes for {len(pixels)} raw bytes")
        return None
    return encoded


def rle_encode_8bpp(pixels: bytes) -> Optional[bytes]:
    return rle_encode(pixels, 1)


def rle_encode_24bpp(pixels: bytes) -> Optional[bytes]:
    return rle_encode(pixels, 3)


def rle_encode_32bpp(pixels: bytes) -> Optional[bytes]:
    return rle_encode(pixels, 4)


def rle_decode(data: bytes, pixel_size: int, pixel_count: Optional[int] = None) -> bytes:
    """Replay TGA RLE packets back into raw pixels"""
    out = bytearray()
    limit = None if pixel_count is None else pixel_count * pixel_size
    pos = 0

    while pos < len(data):
        header = data[pos]
        pos += 1
        count = (header & MAX_PACKET_COUNT) + 1

        if header & RLE_FLAG:
            pixel = data[pos:pos + pixel_size]
            if len(pixel) < pixel_size:
                raise ValueError(f"Truncated RLE packet at offset {pos - 1}")
            out += pixel * count
            pos += pixel_size
        else:
            raw = data[pos:pos + count * pixel_size]
            if len(raw) < count * pixel_size:
                raise ValueError(f"Truncated raw packet at offset {pos - 1}")
            out += raw
            pos += count * pixel_size

        if limit is not None and len(out) > limit:
            raise ValueError(f"RLE data decodes past {pixel_count} pixels")

    return bytes(out)


def compact_palette(pixels: bytearray, palette: List[bytes]) -> List[bytes]:
    """Drop unused palette entries and remap pixel indexes, both in place.

    Used entries keep their relative order. Returns the (same) palette list.
    """
    if len(palette) > MAX_PALETTE_ENTRIES:
        raise ValueError(f"Palette has {len(palette)} entries, at most {MAX_PALETTE_ENTRIES} supported")

    used = set(pixels)
    remap = bytearray(MAX_PALETTE_ENTRIES)
    shrunk = []

    for index in range(MAX_PALETTE_ENTRIES):
        if index not in used:
            continue
        if index >= len(palette):
            raise ValueError(f"Pixel index {index} outside palette of {len(palette)} entries")
        remap[index] = len(shrunk)
        shrunk.append(palette[index])

    pixels[:] = pixels.translate(remap)
    palette[:] = shrunk
    return palette


def shrink_8bpp(pixels: bytearray, palette: List[bytes]) -> ShrinkResult:
    """Compact the palette, then RLE encode the remapped indexes.

    The compaction is kept even when RLE is not worthwhile, so the caller can
    store the remapped raw pixels in that case.
    """
    original_size = len(palette)
    compact_palette(pixels, palette)
    logger.debug(f"Palette compacted: {original_size} -> {len(palette)} entries")
    return ShrinkResult(palette, rle_encode(pixels, 1))


def palette_to_tga(palette: Sequence[bytes], depth: int) -> bytes:
    """Convert RGB(A) palette entries to TGA's BGR / BGRA layout"""
    out = bytearray()
    for entry in palette:
        red, green, blue = entry[0], entry[1], entry[2]
        if depth == 24:
            out += bytes((blue, green, red))
        elif depth == 32:
            alpha = entry[3] if len(entry) > 3 else 0xFF
            out += bytes((blue, green, red, alpha))
        else:
            raise ValueError(f"Unsupported palette depth: {depth}")
    return bytes(out)


def swap_red_blue(pixels: bytes, pixel_size: int) -> bytes:
    """RGB(A) <-> BGR(A)"""
    out = bytearray(pixels)
    out[0::pixel_size] = pixels[2::pixel_size]
    out[2::pixel_size] = pixels[0::pixel_size]
    return bytes(out)


def drop_alpha(pixels: bytes) -> bytes:
    """32bpp -> 24bpp, channel order untouched"""
    count = len(pixels) // 4
    out = bytearray(count * 3)
    out[0::3] = pixels[0:count * 4:4]
    out[1::3] = pixels[1:count * 4:4]
    out[2::3] = pixels[2:count * 4:4]
    return bytes(out)


def flip_rows(pixels: bytes, width: int, height: int, pixel_size: int) -> bytes:
    """Reverse the row order of an image"""
    stride = width * pixel_size
    rows = [pixels[y * stride:(y + 1) * stride] for y in range(height)]
    return b"".join(reversed(rows))


def write_tga(path: str, image: TgaImage):
    """Write TGA file"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(image.to_bytes())
