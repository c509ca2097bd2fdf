#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Quake 3 Revolution Toolkit - Unified asset tool
Extracts LINKFILE archives and SDT sound banks, converts SSH textures to TGA
and decompresses raw RefPack blobs
"""
import argparse
import logging
import sys
from pathlib import Path

import linkfile_extractor
import sdt_extractor
import ssh2tga
from asset_utils import ExtractionStats, configure_logging, read_file, write_file
from refpack import is_refpack, read_refpack_header, refpack_decompress, refpack_decompress_unsafe

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)


def refpack_output_path(input_path: str) -> Path:
    return Path(input_path).with_suffix('.dec')


def decompress_refpack_file(input_path: str, output_path: str = None, unchecked: bool = False,
                            overwrite: bool = False) -> Path:
    """Decompress a file holding a single RefPack stream"""
    target = Path(output_path) if output_path else refpack_output_path(input_path)
    if not overwrite and target.exists():
        logger.info(f"* Skipping, already exists: {target}")
        return target

    data = read_file(input_path)
    if not is_refpack(data):
        raise ValueError(f"{input_path} doesn't start with a RefPack signature")

    if unchecked:
        outdata = bytearray(read_refpack_header(data).decompressed_size)
        size, bytes_read = refpack_decompress_unsafe(data, outdata)
        output = bytes(outdata[:size])
    else:
        result = refpack_decompress(data)
        output, bytes_read = result.data, result.bytes_read

    if bytes_read != len(data):
        logger.warning(f"Warning: {len(data) - bytes_read} trailing bytes after the RefPack stream")
    write_file(str(target), output)
    logger.info(f"* Decompressed: {input_path} -> {target} ({bytes_read} -> {len(output)} bytes)")
    return target


def run_refpack(args: argparse.Namespace) -> ExtractionStats:
    stats = ExtractionStats()
    stats.add_total()
    try:
        decompress_refpack_file(args.input, args.output, args.unchecked, args.overwrite)
        stats.add_success()
    except (OSError, ValueError, IndexError) as e:
        logger.error(f"Failed to decompress {args.input}: {e}")
        stats.add_failed()
    stats.print_summary("Decompression Summary")
    return stats


def describe_file(input_path: str):
    """Log what kind of Q3R asset a file is, with its main header fields"""
    data = read_file(input_path)

    if linkfile_extractor.is_linkfile(data):
        reader = linkfile_extractor.LinkfileReader(data)
        entries = list(reader.walk())
        compressed = sum(1 for entry in entries if entry.descriptor.is_compressed)
        logger.info(f"LINKFILE archive: {input_path}")
        logger.info(f"Entries: {len(entries)} ({compressed} RefPack compressed)")
        for entry in entries:
            descriptor = entry.descriptor
            logger.info(f"  {entry.path} ({descriptor.data_size} bytes stored, "
                        f"{descriptor.uncompr_data_size} bytes uncompressed)")
        return

    if data[:4] == ssh2tga.SSH_MAGIC:
        image = ssh2tga.read_ssh_file(input_path)
        logger.info(f"SSH image: {input_path}")
        logger.info(f"Type: {image.img_type.name}")
        logger.info(f"Dimensions: {image.width}x{image.height}")
        logger.info(f"Mipmaps: {image.res_header.num_mipmaps}")
        if image.img_type.is_paletted:
            logger.info(f"Palette entries: {len(image.palette)} "
                        f"({image.palette_header.pal_num_entries} reported)")
        return

    if is_refpack(data):
        header = read_refpack_header(data)
        logger.info(f"RefPack stream: {input_path}")
        logger.info(f"Signature: 0x{header.signature:04X}")
        if header.compressed_size is not None:
            logger.info(f"Compressed size: {header.compressed_size}")
        logger.info(f"Decompressed size: {header.decompressed_size}")
        return

    if sdt_extractor.detect_sdt_type(data) is not None:
        sdt_type, entries = sdt_extractor.read_sdt_entries(data)
        logger.info(f"SDT sound bank: {input_path}")
        logger.info(f"Type: {sdt_type.name}")
        logger.info(f"Entries: {len(entries)}")
        for entry in entries:
            logger.info(f"  {entry.name} (format 0x{entry.snd_format:04X}, "
                        f"{entry.sample_rate} Hz, {entry.data_size} bytes)")
        return

    raise ValueError(f"Unrecognized file format: {input_path}")


def main():
    """Main function"""
    parser = argparse.ArgumentParser(
        description='Quake 3 Revolution Toolkit - Unified asset tool',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Supported operations:
  linkfile  - Extract LINKFILE.LNK with its directory tree
  sdt       - Extract SDT sound banks to VAG/MP2 files
  ssh2tga   - Convert SSH textures to TGA images
  refpack   - Decompress a raw RefPack stream
  info      - Display file information

Examples:
  %(prog)s linkfile LINKFILE.LNK -o ./output
  %(prog)s sdt ./sound -r
  %(prog)s ssh2tga -m truecolor-upside-down ./textures -r
  %(prog)s refpack blob.bin -o blob.dec
  %(prog)s info LINKFILE.LNK
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    linkfile_parser = subparsers.add_parser('linkfile', help='Extract LINKFILE archives')
    linkfile_extractor.add_arguments(linkfile_parser)

    sdt_parser = subparsers.add_parser('sdt', help='Extract SDT sound banks')
    sdt_extractor.add_arguments(sdt_parser)

    ssh_parser = subparsers.add_parser('ssh2tga', help='Convert SSH images to TGA')
    ssh2tga.add_arguments(ssh_parser)

    refpack_parser = subparsers.add_parser('refpack', help='Decompress a raw RefPack stream')
    refpack_parser.add_argument('input', help='File holding a RefPack stream')
    refpack_parser.add_argument('-o', '--output', help='Output file (default: input with .dec extension)')
    refpack_parser.add_argument('--unchecked', action='store_true',
                                help='Use the trusted decoder (no bounds checking)')
    refpack_parser.add_argument('--overwrite', action='store_true', help='Overwrite existing output file')
    refpack_parser.add_argument('--debug', action='store_true', help='Verbose output')

    info_parser = subparsers.add_parser('info', help='Display file information')
    info_parser.add_argument('input', help='Path to file')
    info_parser.add_argument('--debug', action='store_true', help='Verbose output')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    configure_logging(args.debug)

    try:
        if args.command == 'linkfile':
            stats = linkfile_extractor.run(args)
        elif args.command == 'sdt':
            stats = sdt_extractor.run(args)
        elif args.command == 'ssh2tga':
            stats = ssh2tga.run(args)
        elif args.command == 'refpack':
            stats = run_refpack(args)
        else:
            describe_file(args.input)
            return
    except KeyboardInterrupt:
        logger.info("\nOperation cancelled by user")
        return
    except (OSError, ValueError) as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    if stats.failed:
        sys.exit(1)


if __name__ == '__main__':
    main()
