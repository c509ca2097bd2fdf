#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Quake 3 Revolution SDT Extractor
Extracts sound banks (.SDT) into VAG / MP2 files

Features:
- Both SDT archive layouts (per-entry headers, packed header array)
- VAG header generation for PS2 ADPCM entries
- MP2 entries saved as-is
- Extraction statistics

SDT layouts:
  type 1 (0x0000): header, offsets -> [entry header + data] per entry
  type 2 (0x3039): header, offsets -> data, then an array of entry headers
"""
import argparse
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import List, Optional, Tuple

from asset_utils import ExtractionStats, configure_logging, read_file, safe_relative_path, write_file

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)

SDT_HEADER_FORMAT = '<HH'
SDT_ENTRY_FORMAT = '<II16sHHIII'
VAG_HEADER_FORMAT = '>4sIIII12s16s'

SDT_HEADER_SIZE = struct.calcsize(SDT_HEADER_FORMAT)
SDT_ENTRY_SIZE = struct.calcsize(SDT_ENTRY_FORMAT)  # 0x28, also stored in each entry header
OFFSET_SIZE = 4

VAG_MAGIC = b"VAGp"


class SdtFormatError(ValueError):
    pass


class SdtType(IntEnum):
    """SDT archive layouts"""
    TYPE_1 = 0x0000
    TYPE_2 = 0x3039


class SoundFormat(IntEnum):
    """Sound format field values"""
    VAG = 0x8010
    MP2 = 0x2410
    MP2_2 = 0x2510

    @property
    def extension(self) -> str:
        return '.vag' if self == SoundFormat.VAG else '.mp2'


@dataclass
class SdtEntry:
    """SDT entry header plus its sound data"""
    header_size: int = 0
    data_size: int = 0
    file_name: bytes = b""
    sample_rate: int = 0
    snd_format: int = 0
    unk1: int = 0
    unk2: int = 0
    unk3: int = 0
    data: bytes = b""

    @property
    def name(self) -> str:
        return self.file_name.split(b'\x00', 1)[0].decode('latin-1')

    @property
    def sound_format(self) -> SoundFormat:
        try:
            return SoundFormat(self.snd_format)
        except ValueError:
            raise SdtFormatError(f"Unknown sound format for entry {self.name} "
                                 f"(field value: 0x{self.snd_format:04X})") from None

    @property
    def output_name(self) -> str:
        """Entry name cut at its extension (or at 16 chars), with the right extension"""
        stem = self.name.split('.', 1)[0]
        return stem + self.sound_format.extension


def _unpack(fmt: str, data: bytes, offset: int, what: str) -> tuple:
    if offset + struct.calcsize(fmt) > len(data):
        raise SdtFormatError(f"{what} at 0x{offset:08X} lies past end of file")
    return struct.unpack_from(fmt, data, offset)


def detect_sdt_type(data: bytes) -> Optional[SdtType]:
    """Return the archive layout, or None if data isn't an SDT archive.

    Every entry header is 0x28 bytes long and says so in its first field,
    which is what the first entry's header gets checked against.
    """
    if len(data) < SDT_HEADER_SIZE + OFFSET_SIZE:
        return None
    num_files, sdt_type = struct.unpack_from(SDT_HEADER_FORMAT, data, 0)
    if num_files == 0:
        return None

    if sdt_type == SdtType.TYPE_1:
        (first_offset,) = struct.unpack_from('<I', data, SDT_HEADER_SIZE)
        header_offset = first_offset
    elif sdt_type == SdtType.TYPE_2:
        header_offset = SDT_HEADER_SIZE + num_files * OFFSET_SIZE
    else:
        return None

    if header_offset + 4 > len(data):
        return None
    (header_size,) = struct.unpack_from('<I', data, header_offset)
    if header_size != SDT_ENTRY_SIZE:
        return None
    return SdtType(sdt_type)


def _read_entry_header(data: bytes, offset: int) -> SdtEntry:
    return SdtEntry(*_unpack(SDT_ENTRY_FORMAT, data, offset, "Entry header"))


def _read_entry_data(data: bytes, entry: SdtEntry, offset: int) -> bytes:
    end = offset + entry.data_size
    if end > len(data):
        raise SdtFormatError(f"Sound data of {entry.name} lies past end of file")
    return data[offset:end]


def read_sdt_entries(data: bytes) -> Tuple[SdtType, List[SdtEntry]]:
    """Read all entries of an SDT archive"""
    sdt_type = detect_sdt_type(data)
    if sdt_type is None:
        raise SdtFormatError("Doesn't appear to be a valid SDT file")

    num_files, _ = struct.unpack_from(SDT_HEADER_FORMAT, data, 0)
    offsets = list(_unpack(f'<{num_files}I', data, SDT_HEADER_SIZE, "Offset table"))
    entries = []

    if sdt_type == SdtType.TYPE_1:
        for offset in offsets:
            entry = _read_entry_header(data, offset)
            entry.data = _read_entry_data(data, entry, offset + SDT_ENTRY_SIZE)
            entries.append(entry)
    else:
        headers_offset = SDT_HEADER_SIZE + num_files * OFFSET_SIZE
        for i, offset in enumerate(offsets):
            entry = _read_entry_header(data, headers_offset + i * SDT_ENTRY_SIZE)
            entry.data = _read_entry_data(data, entry, offset)
            entries.append(entry)

    return sdt_type, entries


def build_vag_header(entry: SdtEntry) -> bytes:
    """VAG header (big endian) for an ADPCM entry"""
    return struct.pack(
        VAG_HEADER_FORMAT,
        VAG_MAGIC,
        0,                  # version
        0,                  # reserved
        entry.data_size,
        entry.sample_rate,
        b"",                # reserved
        entry.file_name.split(b"\x00", 1)[0],
    )


def entry_file_bytes(entry: SdtEntry) -> bytes:
    if entry.sound_format == SoundFormat.VAG:
        return build_vag_header(entry) + entry.data
    return entry.data


def default_output_dir(sdt_path: str) -> Path:
    path = Path(sdt_path)
    return path.parent / f"{path.stem}_extracted"


def extract_sdt_file(sdt_path: str, output_dir: Optional[str] = None, overwrite: bool = False,
                     stats: ExtractionStats = None) -> Path:
    """Extract a single SDT archive; an unknown sound format aborts the archive"""
    logger.info(f"\n### Extracting sound bank: {sdt_path}")
    sdt_type, entries = read_sdt_entries(read_file(sdt_path))
    logger.debug(f"SDT type: {sdt_type.name}, {len(entries)} entries")

    output_path = Path(output_dir) if output_dir else default_output_dir(sdt_path)
    output_path.mkdir(parents=True, exist_ok=True)

    for entry in entries:
        # failures are counted by the caller, which also sees archive-level errors
        target = output_path / safe_relative_path(entry.output_name)

        if not overwrite and target.exists():
            logger.info(f"* Skipping, already exists: {target}")
        else:
            logger.info(f"* Extracting: {entry.name} -> {target.name} ({entry.sample_rate} Hz)")
            write_file(str(target), entry_file_bytes(entry))
        if stats:
            stats.add_total()
            stats.add_success()

    return output_path


def add_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('input', nargs='+', help='SDT files or directories')
    parser.add_argument('-o', '--output', help='Output directory (default: <name>_extracted next to each archive)')
    parser.add_argument('-r', '--recursive', action='store_true', help='Recursive search in subdirectories')
    parser.add_argument('--overwrite', action='store_true', help='Overwrite existing files')
    parser.add_argument('--debug', action='store_true', help='Verbose output')


def collect_sdt_files(inputs: List[str], recursive: bool = False) -> List[Path]:
    files = []
    for item in inputs:
        path = Path(item)
        if path.is_dir():
            pattern = "**/*" if recursive else "*"
            files.extend(sorted(p for p in path.glob(pattern) if p.is_file() and p.suffix.lower() == '.sdt'))
        else:
            files.append(path)
    return files


def run(args: argparse.Namespace) -> ExtractionStats:
    stats = ExtractionStats()
    sdt_files = collect_sdt_files(args.input, getattr(args, 'recursive', False))

    for sdt_path in sdt_files:
        output_dir = None
        if args.output:
            output_dir = str(Path(args.output) / sdt_path.stem) if len(sdt_files) > 1 else args.output
        try:
            extract_sdt_file(str(sdt_path), output_dir, args.overwrite, stats)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to extract {sdt_path}: {e}")
            stats.add_total()
            stats.add_failed()

    stats.print_summary()
    return stats


def main():
    """Main function"""
    parser = argparse.ArgumentParser(
        description='Quake 3 Revolution SDT extractor',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s MUSIC.SDT SOUNDS.SDT
  %(prog)s ./sound -r -o ./output
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
