#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RefPack decompression
Decoder for the RefPack (a.k.a. QFS) LZ77 bitstream used by Quake 3 Revolution
LINKFILE entries and other EA-era game assets

Features:
- Trusted fast path mirroring the classic unchecked decoder
- Bounds-checked variant reporting malformed/truncated streams
- Header parsing and signature validation helpers

Stream layout:
  u16 signature (big endian), 0x10FB or 0x11FB
  u24 compressed size          (only when signature & 0x0100)
  u24 decompressed size        (big endian)
  command stream, terminated by a 1-byte stop command

Command layout (first byte, MSB first):
  0DDRRRPP DDDDDDDD                      2-byte command
  10RRRRRR PPDDDDDD DDDDDDDD             3-byte command
  110DRRPP DDDDDDDD DDDDDDDD RRRRRRRR    4-byte command
  111PPPPP                               1-byte literal run / stop command
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

REFPACK_SIGNATURE_LOW = 0xFB
REFPACK_EXTENDED_SIZE_FLAG = 0x0100
STOP_COMMAND_THRESHOLD = 0x70


class RefPackError(ValueError):
    """Base class for RefPack decoding failures"""


class MalformedStream(RefPackError):
    """A command would read or write outside the provided buffers"""


class TruncatedStream(MalformedStream):
    """Input ended in the middle of a header, command or literal run"""


@dataclass
class RefPackHeader:
    """RefPack stream header"""
    signature: int = 0
    compressed_size: Optional[int] = None
    decompressed_size: int = 0
    header_size: int = 0

    @property
    def has_compressed_size(self) -> bool:
        return bool(self.signature & REFPACK_EXTENDED_SIZE_FLAG)


@dataclass
class RefPackCommand:
    """A decoded command: literal run plus optional back-reference"""
    literal_length: int = 0
    distance: int = 0
    ref_length: int = 0
    is_stop: bool = False


@dataclass
class RefPackResult:
    """Output of the checked decoder"""
    data: bytes = b""
    decompressed_size: int = 0
    bytes_read: int = 0


def read_u24_be(data: bytes, offset: int) -> int:
    return (data[offset] << 16) | (data[offset + 1] << 8) | data[offset + 2]


def is_refpack(data: bytes) -> bool:
    """Check for a RefPack signature (0x10FB / 0x11FB)"""
    if data is None or len(data) < 5:
        return False
    return data[1] == REFPACK_SIGNATURE_LOW and data[0] in (0x10, 0x11)


def read_refpack_header(data: bytes) -> RefPackHeader:
    """Read RefPack header"""
    if len(data) < 2:
        raise TruncatedStream("Unexpected end of data while reading RefPack signature")

    header = RefPackHeader()
    header.signature = (data[0] << 8) | data[1]
    offset = 2

    if header.has_compressed_size:
        if len(data) < offset + 3:
            raise TruncatedStream("Unexpected end of data while reading RefPack compressed size")
        header.compressed_size = read_u24_be(data, offset)
        offset += 3

    if len(data) < offset + 3:
        raise TruncatedStream("Unexpected end of data while reading RefPack decompressed size")
    header.decompressed_size = read_u24_be(data, offset)
    header.header_size = offset + 3
    return header


def command_length(byte_0: int) -> int:
    """Number of bytes taken by the command starting with byte_0"""
    if not byte_0 & 0x80:
        return 2
    if not byte_0 & 0x40:
        return 3
    if not byte_0 & 0x20:
        return 4
    return 1


def parse_command(command: bytes) -> RefPackCommand:
    """Decode a single command from its raw bytes"""
    byte_0 = command[0]

    if not byte_0 & 0x80:
        # 2-byte command: 0DDRRRPP DDDDDDDD
        byte_1 = command[1]
        return RefPackCommand(
            literal_length=byte_0 & 0x03,
            distance=((byte_0 & 0x60) << 3) + byte_1 + 1,
            ref_length=((byte_0 >> 2) & 0x07) + 3,
        )

    if not byte_0 & 0x40:
        # 3-byte command: 10RRRRRR PPDDDDDD DDDDDDDD
        byte_1, byte_2 = command[1], command[2]
        return RefPackCommand(
            literal_length=byte_1 >> 6,
            distance=((byte_1 & 0x3F) << 8) + byte_2 + 1,
            ref_length=(byte_0 & 0x3F) + 4,
        )

    if not byte_0 & 0x20:
        # 4-byte command: 110DRRPP DDDDDDDD DDDDDDDD RRRRRRRR
        byte_1, byte_2, byte_3 = command[1], command[2], command[3]
        return RefPackCommand(
            literal_length=byte_0 & 0x03,
            distance=((byte_0 & 0x10) << 12) + (byte_1 << 8) + byte_2 + 1,
            ref_length=((byte_0 & 0x0C) << 6) + byte_3 + 5,
        )

    # 1-byte command: 111PPPPP
    literal_length = (byte_0 & 0x1F) * 4 + 4
    if literal_length <= STOP_COMMAND_THRESHOLD:
        return RefPackCommand(literal_length=literal_length)
    return RefPackCommand(literal_length=byte_0 & 0x03, is_stop=True)


def refpack_decompress_unsafe(indata: Optional[bytes], outdata: Optional[bytearray]) -> Tuple[int, int]:
    """Decompress a trusted RefPack stream into outdata.

    Returns (decompressed size declared in the header, bytes read from indata),
    or (0, 0) when indata is None; outdata is left untouched in that case.

    No bounds checking is done on either buffer. Only call this on data whose
    container has already been validated (see is_refpack()); malformed input
    ends in an IndexError at best and in silently wrong output (negative
    indices wrap around) at worst. Use refpack_decompress() otherwise.
    """
    if indata is None:
        return 0, 0

    in_pos = 2
    signature = (indata[0] << 8) | indata[1]
    if signature & REFPACK_EXTENDED_SIZE_FLAG:
        in_pos += 3  # skip over the compressed size field

    decompressed_size = read_u24_be(indata, in_pos)
    in_pos += 3

    out_pos = 0
    while True:
        size = command_length(indata[in_pos])
        command = parse_command(indata[in_pos:in_pos + size])
        in_pos += size

        for _ in range(command.literal_length):
            outdata[out_pos] = indata[in_pos]
            out_pos += 1
            in_pos += 1

        if command.is_stop:
            break

        # Byte by byte: the source may overlap the bytes being written
        ref_pos = out_pos - command.distance
        for _ in range(command.ref_length):
            outdata[out_pos] = outdata[ref_pos]
            out_pos += 1
            ref_pos += 1

    return decompressed_size, in_pos


def refpack_decompress(indata: Optional[bytes], outdata: Optional[bytearray] = None) -> RefPackResult:
    """Decompress a RefPack stream, validating every buffer access.

    outdata, when given, must hold at least the declared decompressed size;
    otherwise a buffer of that size is allocated.
    Raises TruncatedStream / MalformedStream on bad input.
    """
    if indata is None:
        return RefPackResult()

    header = read_refpack_header(indata)
    limit = header.decompressed_size
    logger.debug(f"RefPack: signature=0x{header.signature:04X}, compressed_size={header.compressed_size}, "
                 f"decompressed_size={limit}")

    if outdata is None:
        outdata = bytearray(limit)
    elif len(outdata) < limit:
        raise MalformedStream(f"Output buffer too small: {len(outdata)} bytes for {limit} declared")

    in_len = len(indata)
    in_pos = header.header_size
    out_pos = 0

    while True:
        if in_pos >= in_len:
            raise TruncatedStream(f"Unexpected end of data at offset {in_pos}: command expected")

        size = command_length(indata[in_pos])
        if in_pos + size > in_len:
            raise TruncatedStream(f"Unexpected end of data at offset {in_pos}: {size}-byte command cut short")
        command = parse_command(indata[in_pos:in_pos + size])
        in_pos += size

        literal_length = command.literal_length
        if in_pos + literal_length > in_len:
            raise TruncatedStream(f"Unexpected end of data at offset {in_pos}: "
                                  f"{literal_length} literal bytes expected, {in_len - in_pos} left")
        if out_pos + literal_length > limit:
            raise MalformedStream(f"Literal run at offset {in_pos} overflows the declared size ({limit} bytes)")

        outdata[out_pos:out_pos + literal_length] = indata[in_pos:in_pos + literal_length]
        out_pos += literal_length
        in_pos += literal_length

        if command.is_stop:
            break

        ref_pos = out_pos - command.distance
        if ref_pos < 0:
            raise MalformedStream(f"Back-reference at offset {in_pos} points {command.distance} bytes back "
                                  f"with only {out_pos} bytes written")
        if out_pos + command.ref_length > limit:
            raise MalformedStream(f"Back-reference at offset {in_pos} overflows the declared size ({limit} bytes)")

        for _ in range(command.ref_length):
            outdata[out_pos] = outdata[ref_pos]
            out_pos += 1
            ref_pos += 1

    if out_pos != limit:
        raise MalformedStream(f"Stream produced {out_pos} bytes, header declares {limit}")

    return RefPackResult(bytes(outdata[:limit]), limit, in_pos)
