#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Quake 3 Revolution LINKFILE Extractor
Extracts the LINKFILE.LNK archive with its full directory tree

Features:
- Recursive directory tree extraction
- RefPack decompression of compressed entries (checked or trusted decoder)
- Consumed-size verification against the archive's file descriptors
- Extraction statistics
"""
import argparse
import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from asset_utils import ExtractionStats, configure_logging, read_c_string, read_file, safe_relative_path, write_file
from refpack import RefPackError, is_refpack, refpack_decompress, refpack_decompress_unsafe, read_refpack_header

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)

LINKFILE_MAGIC = 0x4C4E4B46  # "FKNL" on disk

HEADER_FORMAT = '<II'
ARCHIVE_DESCRIPTOR_FORMAT = '<IIII'
DIR_DESCRIPTOR_FORMAT = '<IIII'
FILE_DESCRIPTOR_FORMAT = '<IIII'
SUBDIR_DESCRIPTOR_FORMAT = '<II'

HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
FILE_DESCRIPTOR_SIZE = struct.calcsize(FILE_DESCRIPTOR_FORMAT)
SUBDIR_DESCRIPTOR_SIZE = struct.calcsize(SUBDIR_DESCRIPTOR_FORMAT)

OUTPUT_DIR_NAME = "LINKFILE_extracted"


class LinkfileFormatError(ValueError):
    pass


@dataclass
class ArchiveDescriptor:
    """Archive-wide offsets"""
    data_block_offset: int = 0
    unk: int = 0
    file_names_block_offset: int = 0
    root_dir_descr_offset: int = 0


@dataclass
class DirDescriptor:
    """A directory: its files and subdirectories"""
    file_descr_offset: int = 0
    subdir_descr_offset: int = 0
    file_descr_count: int = 0
    subdir_descr_count: int = 0


@dataclass
class FileDescriptor:
    """A file entry"""
    file_name_offset: int = 0
    data_offset: int = 0
    data_size: int = 0
    uncompr_data_size: int = 0

    @property
    def is_compressed(self) -> bool:
        return self.data_size != self.uncompr_data_size


@dataclass
class SubDirDescriptor:
    """A subdirectory entry"""
    subdir_name_offset: int = 0
    subdir_descr_offset: int = 0


@dataclass
class LinkfileEntry:
    """A file found while walking the archive"""
    path: str = ""
    descriptor: FileDescriptor = field(default_factory=FileDescriptor)


def _unpack(fmt: str, data: bytes, offset: int, what: str) -> tuple:
    size = struct.calcsize(fmt)
    if offset + size > len(data):
        raise LinkfileFormatError(f"{what} at 0x{offset:08X} lies past end of archive")
    return struct.unpack_from(fmt, data, offset)


def is_linkfile(data: bytes) -> bool:
    """Check LINKFILE signature"""
    if len(data) < HEADER_SIZE:
        return False
    magic, filler = struct.unpack_from(HEADER_FORMAT, data, 0)
    return magic == LINKFILE_MAGIC and filler == 0


class LinkfileReader:
    """Reader for LINKFILE archives loaded in memory"""

    def __init__(self, data: bytes):
        if not is_linkfile(data):
            raise LinkfileFormatError("Not a Quake 3 Revolution LINKFILE archive")
        self.data = data
        self.archive = ArchiveDescriptor(*_unpack(ARCHIVE_DESCRIPTOR_FORMAT, data, HEADER_SIZE, "Archive descriptor"))

    def read_dir(self, offset: int) -> DirDescriptor:
        return DirDescriptor(*_unpack(DIR_DESCRIPTOR_FORMAT, self.data, offset, "Directory descriptor"))

    def read_files(self, directory: DirDescriptor) -> List[FileDescriptor]:
        return [
            FileDescriptor(*_unpack(FILE_DESCRIPTOR_FORMAT, self.data,
                                    directory.file_descr_offset + i * FILE_DESCRIPTOR_SIZE, "File descriptor"))
            for i in range(directory.file_descr_count)
        ]

    def read_subdirs(self, directory: DirDescriptor) -> List[SubDirDescriptor]:
        return [
            SubDirDescriptor(*_unpack(SUBDIR_DESCRIPTOR_FORMAT, self.data,
                                      directory.subdir_descr_offset + i * SUBDIR_DESCRIPTOR_SIZE,
                                      "Subdirectory descriptor"))
            for i in range(directory.subdir_descr_count)
        ]

    def name_at(self, offset: int) -> str:
        return read_c_string(self.data, offset)

    def walk(self) -> Iterator[LinkfileEntry]:
        """Yield every file entry, depth first, with its archive path"""
        visited: Set[int] = set()
        stack: List[Tuple[int, str]] = [(self.archive.root_dir_descr_offset, "")]

        while stack:
            dir_offset, prefix = stack.pop()
            if dir_offset in visited:
                raise LinkfileFormatError(f"Directory descriptor 0x{dir_offset:08X} referenced twice")
            visited.add(dir_offset)

            directory = self.read_dir(dir_offset)
            for descriptor in self.read_files(directory):
                yield LinkfileEntry(prefix + self.name_at(descriptor.file_name_offset), descriptor)

            # reversed so subdirectories come out in archive order
            for subdir in reversed(self.read_subdirs(directory)):
                name = self.name_at(subdir.subdir_name_offset)
                stack.append((subdir.subdir_descr_offset, f"{prefix}{name}/"))

    def entry_bytes(self, descriptor: FileDescriptor) -> bytes:
        end = descriptor.data_offset + descriptor.data_size
        if end > len(self.data):
            raise LinkfileFormatError(f"Entry data at 0x{descriptor.data_offset:08X} lies past end of archive")
        return self.data[descriptor.data_offset:end]


def decompress_entry(reader: LinkfileReader, entry: LinkfileEntry, unchecked: bool = False) -> bytes:
    """Return the entry's contents, RefPack-decompressed if needed"""
    descriptor = entry.descriptor
    if not descriptor.is_compressed:
        return reader.entry_bytes(descriptor)

    if unchecked:
        # the trusted decoder reads straight from the archive, past the stored size if told to
        compressed = memoryview(reader.data)[descriptor.data_offset:]
        if not is_refpack(compressed):
            raise RefPackError(f"{entry.path}: missing RefPack signature")
        declared = read_refpack_header(compressed).decompressed_size
        outdata = bytearray(declared)
        uncompr_size, bytes_read = refpack_decompress_unsafe(compressed, outdata)
        data = bytes(outdata[:uncompr_size])
    else:
        result = refpack_decompress(reader.entry_bytes(descriptor))
        uncompr_size, bytes_read, data = result.decompressed_size, result.bytes_read, result.data

    if bytes_read != descriptor.data_size or uncompr_size != descriptor.uncompr_data_size:
        logger.warning(
            f"\nWARNING: # of processed bytes mismatch for {entry.path}\n"
            f"\tCompressed size reported in header:\t\t0x{descriptor.data_size:08X}\n"
            f"\tActual # of compressed bytes processed:\t\t0x{bytes_read:08X}\n"
            f"\tUncompressed size reported in header:\t\t0x{descriptor.uncompr_data_size:08X}\n"
            f"\tUncompressed size reported in RefPack's header:\t0x{uncompr_size:08X}\n"
            f"Saving it anyway (using size reported in RefPack's header)...\n"
        )
    return data


def default_output_dir(linkfile_path: str) -> Path:
    return Path(linkfile_path).parent / OUTPUT_DIR_NAME


def extract_linkfile(linkfile_path: str, output_dir: Optional[str] = None, options: argparse.Namespace = None,
                     stats: ExtractionStats = None) -> Path:
    """Extract a LINKFILE archive; returns the output directory"""
    overwrite = bool(getattr(options, 'overwrite', False))
    unchecked = bool(getattr(options, 'unchecked', False))

    logger.info(f"\n### Extracting archive: {linkfile_path}")
    reader = LinkfileReader(read_file(linkfile_path))
    output_path = Path(output_dir) if output_dir else default_output_dir(linkfile_path)
    output_path.mkdir(parents=True, exist_ok=True)

    for entry in reader.walk():
        if stats:
            stats.add_total()
        try:
            target = output_path / safe_relative_path(entry.path)
            if not overwrite and target.exists():
                logger.info(f"* Skipping, already exists: {target}")
                if stats:
                    stats.add_success()
                continue

            kind = "RefPack" if entry.descriptor.is_compressed else "stored"
            logger.info(f"* Extracting: {entry.path} ({kind}, {entry.descriptor.data_size} bytes)")
            write_file(str(target), decompress_entry(reader, entry, unchecked))
            if stats:
                stats.add_success()
        except (OSError, ValueError, IndexError) as e:
            logger.error(f"Failed to extract {entry.path}: {e}")
            if stats:
                stats.add_failed()

    return output_path


def add_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('input', help='Path to LINKFILE.LNK')
    parser.add_argument('-o', '--output', help=f'Output directory (default: {OUTPUT_DIR_NAME} next to the archive)')
    parser.add_argument('--unchecked', action='store_true',
                        help='Use the trusted RefPack decoder (no bounds checking)')
    parser.add_argument('--overwrite', action='store_true', help='Overwrite existing files')
    parser.add_argument('--debug', action='store_true', help='Verbose output')


def run(args: argparse.Namespace) -> ExtractionStats:
    stats = ExtractionStats()
    try:
        extract_linkfile(args.input, args.output, args, stats)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to extract {args.input}: {e}")
        stats.add_total()
        stats.add_failed()
    stats.print_summary()
    return stats


def main():
    """Main function"""
    parser = argparse.ArgumentParser(
        description='Quake 3 Revolution LINKFILE extractor',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s LINKFILE.LNK
  %(prog)s LINKFILE.LNK -o ./output --overwrite
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
