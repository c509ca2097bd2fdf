#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Quake 3 Revolution SSH to TGA Converter
Converts SHPS (.ssh) texture containers to TGA images

Features:
- Paletted 4bpp/8bpp and truecolor 24bpp/32bpp images
- Shrink mode: unused palette entries removed, alpha channel dropped when
  fully opaque, RLE encoding whenever it saves space
- As-is mode: images written without removing/altering anything
- Truecolor upside-down mode: everything converted to truecolor with
  bottom-top row order (Quake 3 Arena only accepts bottom-top TGAs)
- Optional PNG export
"""
import argparse
import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import BinaryIO, List, Optional

from PIL import Image

from asset_utils import ExtractionStats, configure_logging
from tga_utils import (
    TgaColorMap,
    TgaHeader,
    TgaImage,
    TgaImageDescriptor,
    TgaImageType,
    drop_alpha,
    flip_rows,
    palette_to_tga,
    rle_encode,
    shrink_8bpp,
    swap_red_blue,
    write_tga,
)

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)

SSH_MAGIC = b"SHPS"

MAIN_HEADER_FORMAT = '<4sII4s'
RES_ENTRY_FORMAT = '<4sI'
RES_HEADER_FORMAT = '<IHHIHBB'
PALETTE_HEADER_FORMAT = '<IHHHHI'

RES_HEADER_SIZE = struct.calcsize(RES_HEADER_FORMAT)
PALETTE_HEADER_SIZE = struct.calcsize(PALETTE_HEADER_FORMAT)

PALETTE_ENTRY_SIZE = 4
MAX_PALETTE_ENTRIES = 256
EMPTY_PALETTE_ENTRY = b'\x00\x00\x00\x00'

TOP_LEFT = TgaImageDescriptor.TOP_LEFT
BOTTOM_LEFT = TgaImageDescriptor.BOTTOM_LEFT
ATTRIB_BITS_0 = TgaImageDescriptor.ATTRIB_BITS_0
ATTRIB_BITS_8 = TgaImageDescriptor.ATTRIB_BITS_8


class SshFormatError(ValueError):
    pass


class SshImgType(IntEnum):
    """SSH image types"""
    PALETTED_4BPP = 1
    PALETTED_8BPP = 2
    TRUECOLOR_24BPP = 4
    TRUECOLOR_32BPP = 5

    @property
    def is_paletted(self) -> bool:
        return self in (SshImgType.PALETTED_4BPP, SshImgType.PALETTED_8BPP)

    @property
    def bytes_per_pixel(self) -> int:
        if self == SshImgType.TRUECOLOR_24BPP:
            return 3
        if self == SshImgType.TRUECOLOR_32BPP:
            return 4
        return 1


class OutFormat(IntEnum):
    """TGA output modes"""
    SHRINK = 0
    AS_IS = 1
    TRUECOLOR_UPSIDE_DOWN = 2

    @classmethod
    def from_string(cls, format_str: str) -> 'OutFormat':
        format_map = {
            'shrink': cls.SHRINK,
            'as-is': cls.AS_IS,
            'asis': cls.AS_IS,
            'truecolor-upside-down': cls.TRUECOLOR_UPSIDE_DOWN,
        }
        try:
            return format_map[format_str.lower()]
        except KeyError:
            raise ValueError(f"Unsupported output format: {format_str}") from None


@dataclass
class SshMainHeader:
    """SSH main header"""
    magic: bytes = b""
    ssh_size: int = 0
    num_resources: int = 0
    file_name1: bytes = b""


@dataclass
class SshResourceHeader:
    """SSH resource (image) header"""
    img_type: int = 0
    next_hdr_offset: int = 0
    width: int = 0
    height: int = 0
    num_mipmaps: int = 0


@dataclass
class SshPaletteHeader:
    """SSH palette header, present for paletted images only"""
    next_hdr_offset: int = 0
    pal_width: int = 0
    pal_height: int = 0
    pal_num_entries: int = 0


@dataclass
class SshImage:
    """A parsed SSH file"""
    path: str = ""
    main_header: SshMainHeader = field(default_factory=SshMainHeader)
    res_header: SshResourceHeader = field(default_factory=SshResourceHeader)
    img_type: SshImgType = SshImgType.PALETTED_8BPP
    img_data: bytes = b""
    palette_header: Optional[SshPaletteHeader] = None
    palette: List[bytes] = field(default_factory=list)  # RGBA entries as read

    @property
    def width(self) -> int:
        return self.res_header.width

    @property
    def height(self) -> int:
        return self.res_header.height

    @property
    def full_palette(self) -> List[bytes]:
        """Palette padded to 256 entries"""
        padding = MAX_PALETTE_ENTRIES - len(self.palette)
        return self.palette + [EMPTY_PALETTE_ENTRY] * max(padding, 0)


def _read_struct(reader: BinaryIO, fmt: str, what: str) -> tuple:
    size = struct.calcsize(fmt)
    data = reader.read(size)
    if len(data) < size:
        raise SshFormatError(f"Unexpected end of file while reading {what}")
    return struct.unpack(fmt, data)


def expected_data_size(img_type: SshImgType, width: int, height: int) -> int:
    """Pixel data size computed from the image dimensions"""
    num_pixels = width * height
    if img_type == SshImgType.PALETTED_4BPP:
        return (num_pixels + 1) // 2
    return num_pixels * img_type.bytes_per_pixel


def read_ssh(reader: BinaryIO, path: str = "") -> SshImage:
    """Read SSH image from binary reader"""
    image = SshImage(path=path)
    image.main_header = SshMainHeader(*_read_struct(reader, MAIN_HEADER_FORMAT, "main header"))
    if image.main_header.magic != SSH_MAGIC:
        raise SshFormatError(f"{path} isn't a valid SSH file")

    if image.main_header.num_resources > 1:
        logger.warning(f"Warning: {path} contains more than one image "
                       f"({image.main_header.num_resources} images reported in the header)")

    _name, data_offset = _read_struct(reader, RES_ENTRY_FORMAT, "resource entry")
    reader.seek(data_offset)

    packed, width, height, _unk1, _unk2, _unk3, mipmaps = _read_struct(reader, RES_HEADER_FORMAT, "image header")
    try:
        image.img_type = SshImgType(packed & 0xFF)
    except ValueError:
        raise SshFormatError(f"{path}'s image type is unknown ({packed & 0xFF})") from None

    image.res_header = SshResourceHeader(packed & 0xFF, packed >> 8, width, height, mipmaps >> 4)

    # A zero offset means the image data runs to the end of the file
    if image.res_header.next_hdr_offset == 0:
        img_data_size = expected_data_size(image.img_type, width, height)
    else:
        img_data_size = image.res_header.next_hdr_offset - RES_HEADER_SIZE

    image.img_data = reader.read(img_data_size)
    if len(image.img_data) < img_data_size:
        raise SshFormatError(f"Unexpected end of file while reading image data "
                             f"(expected {img_data_size}, got {len(image.img_data)})")

    if image.img_type.is_paletted:
        pal_packed, pal_width, pal_height, pal_entries, _unk2, _unk3 = _read_struct(
            reader, PALETTE_HEADER_FORMAT, "palette header")
        image.palette_header = SshPaletteHeader(pal_packed >> 8, pal_width, pal_height, pal_entries)

        # Sometimes more entries are stored than reported; read them all
        if image.palette_header.next_hdr_offset == 0:
            palette_size = image.main_header.ssh_size - reader.tell()
            palette_size = min(palette_size, MAX_PALETTE_ENTRIES * PALETTE_ENTRY_SIZE)
        else:
            palette_size = image.palette_header.next_hdr_offset - PALETTE_HEADER_SIZE

        num_entries = min(max(palette_size, 0) // PALETTE_ENTRY_SIZE, MAX_PALETTE_ENTRIES)
        raw = reader.read(num_entries * PALETTE_ENTRY_SIZE)
        image.palette = [raw[k:k + PALETTE_ENTRY_SIZE] for k in range(0, len(raw) - 3, PALETTE_ENTRY_SIZE)]

    logger.debug(f"SSH: type={image.img_type.name}, {width}x{height}, data={len(image.img_data)} bytes, "
                 f"palette={len(image.palette)} entries")
    return image


def read_ssh_file(path: str) -> SshImage:
    with open(path, 'rb') as f:
        return read_ssh(f, str(path))


def expand_4bpp(data: bytes) -> bytes:
    """4bpp -> 8bpp, low nibble first"""
    out = bytearray(len(data) * 2)
    out[0::2] = bytes(value & 0x0F for value in data)
    out[1::2] = bytes(value >> 4 for value in data)
    return bytes(out)


def palette_fix(palette: List[bytes]) -> List[bytes]:
    """Swap entries 8-15 with 16-23 in every block of 32 (8bpp palettes only)"""
    fixed = list(palette)
    for base in range(8, len(fixed), 32):
        if base + 16 > len(fixed):
            break
        fixed[base:base + 8], fixed[base + 8:base + 16] = fixed[base + 8:base + 16], fixed[base:base + 8]
    return fixed


def image_pixels(image: SshImage) -> bytes:
    """Pixel data of the main image: palette indexes or RGB(A) pixels"""
    needed = image.width * image.height * image.img_type.bytes_per_pixel
    data = image.img_data
    if image.img_type == SshImgType.PALETTED_4BPP:
        data = expand_4bpp(data)
    if len(data) < needed:
        raise SshFormatError(f"Image data too short: {len(data)} bytes for {image.width}x{image.height}")
    return data[:needed]


def image_palette(image: SshImage) -> List[bytes]:
    if image.img_type == SshImgType.PALETTED_8BPP:
        return palette_fix(image.full_palette)
    return image.full_palette


def is_palette_opaque(palette: List[bytes]) -> bool:
    return all(entry[3] == 0xFF for entry in palette)


def is_pixels_opaque(pixels: bytes) -> bool:
    alpha = pixels[3::4]
    return alpha == b'\xff' * len(alpha)


def convert_shrink(image: SshImage) -> TgaImage:
    """Smallest TGA representation of the image"""
    header = TgaHeader(width=image.width, height=image.height)
    pixels = image_pixels(image)

    if image.img_type.is_paletted:
        indexes = bytearray(pixels)
        read_palette = image_palette(image)
        # padding entries don't count
        opaque = is_palette_opaque(image.palette)

        header.color_map_type = TgaColorMap.PALETTED
        header.pixel_depth = 8
        header.cmap_depth = 24 if opaque else 32
        header.image_descriptor = (ATTRIB_BITS_0 if opaque else ATTRIB_BITS_8) | TOP_LEFT

        result = shrink_8bpp(indexes, read_palette)
        header.cmap_length = len(result.palette)
        palette = palette_to_tga(result.palette, header.cmap_depth)

        if result.is_rle:
            header.image_type = TgaImageType.COLORMAPPED_RLE
            return TgaImage(header, palette, result.encoded)
        header.image_type = TgaImageType.COLORMAPPED
        return TgaImage(header, palette, bytes(indexes))

    if image.img_type == SshImgType.TRUECOLOR_32BPP and not is_pixels_opaque(pixels):
        pixel_size = 4
        data = swap_red_blue(pixels, 4)
        header.image_descriptor = ATTRIB_BITS_8 | TOP_LEFT
    else:
        pixel_size = 3
        if image.img_type == SshImgType.TRUECOLOR_32BPP:
            pixels = drop_alpha(pixels)
        data = swap_red_blue(pixels, 3)
        header.image_descriptor = ATTRIB_BITS_0 | TOP_LEFT

    header.pixel_depth = pixel_size * 8
    encoded = rle_encode(data, pixel_size)
    if encoded is None:
        header.image_type = TgaImageType.TRUECOLOR
        return TgaImage(header, b"", data)
    header.image_type = TgaImageType.TRUECOLOR_RLE
    return TgaImage(header, b"", encoded)


def convert_as_is(image: SshImage) -> TgaImage:
    """TGA with the same pixel layout as the SSH image"""
    header = TgaHeader(width=image.width, height=image.height, image_type=TgaImageType.TRUECOLOR)
    pixels = image_pixels(image)

    if image.img_type.is_paletted:
        num_entries = image.palette_header.pal_num_entries or len(image.palette)
        num_entries = min(num_entries, MAX_PALETTE_ENTRIES)
        header.color_map_type = TgaColorMap.PALETTED
        header.image_type = TgaImageType.COLORMAPPED
        header.pixel_depth = 8
        header.cmap_depth = 32
        header.cmap_length = num_entries
        header.image_descriptor = ATTRIB_BITS_8 | TOP_LEFT
        palette = palette_to_tga(image_palette(image)[:num_entries], 32)
        return TgaImage(header, palette, pixels)

    pixel_size = image.img_type.bytes_per_pixel
    header.pixel_depth = pixel_size * 8
    header.image_descriptor = (ATTRIB_BITS_8 if pixel_size == 4 else ATTRIB_BITS_0) | TOP_LEFT
    return TgaImage(header, b"", swap_red_blue(pixels, pixel_size))


def convert_truecolor_upside_down(image: SshImage) -> TgaImage:
    """Truecolor TGA with bottom-top row order"""
    header = TgaHeader(width=image.width, height=image.height, image_type=TgaImageType.TRUECOLOR)
    pixels = image_pixels(image)

    if image.img_type.is_paletted:
        tga_palette = [palette_to_tga([entry], 32) for entry in image_palette(image)]
        data = b"".join(tga_palette[index] for index in pixels)
        pixel_size = 4
    else:
        pixel_size = image.img_type.bytes_per_pixel
        data = swap_red_blue(pixels, pixel_size)

    header.pixel_depth = pixel_size * 8
    header.image_descriptor = (ATTRIB_BITS_8 if pixel_size == 4 else ATTRIB_BITS_0) | BOTTOM_LEFT
    return TgaImage(header, b"", flip_rows(data, image.width, image.height, pixel_size))


def ssh_to_tga(image: SshImage, out_format: OutFormat = OutFormat.SHRINK) -> TgaImage:
    """Convert a parsed SSH image to TGA"""
    if out_format == OutFormat.SHRINK:
        return convert_shrink(image)
    elif out_format == OutFormat.AS_IS:
        return convert_as_is(image)
    elif out_format == OutFormat.TRUECOLOR_UPSIDE_DOWN:
        return convert_truecolor_upside_down(image)
    else:
        raise ValueError(f"Unsupported output format: {out_format}")


def image_to_pil(image: SshImage) -> Image.Image:
    """Build a Pillow image (RGB or RGBA) from the SSH pixel data"""
    pixels = image_pixels(image)
    size = (image.width, image.height)
    if image.img_type.is_paletted:
        palette = image_palette(image)
        rgba = b"".join(palette[index] for index in pixels)
        return Image.frombytes('RGBA', size, rgba)
    if image.img_type == SshImgType.TRUECOLOR_24BPP:
        return Image.frombytes('RGB', size, pixels)
    return Image.frombytes('RGBA', size, pixels)


def save_as_png(image: SshImage, output_path: str):
    """Save SSH image as PNG"""
    image_to_pil(image).save(output_path, 'PNG')


def tga_output_path(ssh_path: str) -> Path:
    """Same path with the extension replaced (or appended) by .tga"""
    return Path(ssh_path).with_suffix('.tga')


def convert_ssh_file(ssh_path: str, out_format: OutFormat = OutFormat.SHRINK,
                     overwrite: bool = False, png: bool = False) -> Optional[Path]:
    """Convert a SSH file to TGA (and PNG if requested); returns the TGA path"""
    output_path = tga_output_path(ssh_path)
    if not overwrite and output_path.exists():
        logger.info(f"* Skipping, already exists: {output_path}")
        return None

    image = read_ssh_file(ssh_path)
    tga = ssh_to_tga(image, out_format)
    write_tga(str(output_path), tga)
    logger.info(f"* Converted: {ssh_path} -> {output_path.name} ({tga.header.image_type.name}, "
                f"{len(tga.data)} bytes of pixel data)")

    if png:
        png_path = output_path.with_suffix('.png')
        save_as_png(image, str(png_path))
        logger.debug(f"PNG saved: {png_path}")

    return output_path


def collect_ssh_files(inputs: List[str], recursive: bool = False) -> List[Path]:
    """Expand files and directories into the list of SSH files to convert"""
    files = []
    for item in inputs:
        path = Path(item)
        if path.is_dir():
            pattern = "**/*.ssh" if recursive else "*.ssh"
            files.extend(sorted(p for p in path.glob(pattern) if p.is_file()))
        else:
            files.append(path)
    return files


def add_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('input', nargs='+', help='SSH files or directories')
    parser.add_argument('-m', '--mode', default='shrink',
                        choices=['shrink', 'as-is', 'truecolor-upside-down'],
                        help='Output format (default: shrink)')
    parser.add_argument('-r', '--recursive', action='store_true', help='Recursive search in subdirectories')
    parser.add_argument('--png', action='store_true', help='Also save a PNG copy of each image')
    parser.add_argument('--overwrite', action='store_true', help='Overwrite existing files')
    parser.add_argument('--debug', action='store_true', help='Verbose output')


def run(args: argparse.Namespace) -> ExtractionStats:
    """Convert every SSH file named on the command line"""
    out_format = OutFormat.from_string(args.mode)
    stats = ExtractionStats()

    for ssh_path in collect_ssh_files(args.input, getattr(args, 'recursive', False)):
        stats.add_total()
        try:
            convert_ssh_file(str(ssh_path), out_format, args.overwrite, args.png)
            stats.add_success()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to convert {ssh_path}: {e}")
            stats.add_failed()

    stats.print_summary("Conversion Summary")
    return stats


def main():
    """Main function"""
    parser = argparse.ArgumentParser(
        description='Quake 3 Revolution SSH to TGA image converter',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Output modes:
  shrink                 Remove unused palette entries, drop the alpha channel
                         when fully opaque, apply RLE encoding (default)
  as-is                  Save paletted images as paletted and truecolor images
                         as truecolor, without removing/altering anything
  truecolor-upside-down  Convert paletted images to truecolor and store rows
                         bottom to top

Examples:
  %(prog)s texture.ssh
  %(prog)s -m as-is ./textures -r
  %(prog)s --png --overwrite *.ssh
        """
    )
    add_arguments(parser)
    args = parser.parse_args()
    configure_logging(args.debug)

    try:
        run(args)
    except KeyboardInterrupt:
        logger.info("\nOperation cancelled by user")


if __name__ == '__main__':
    main()
