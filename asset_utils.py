#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared helpers for the Q3R asset tools
"""
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class ExtractionStats:
    """Statistics for extraction/conversion process"""
    total: int = 0
    success: int = 0
    failed: int = 0

    def add_total(self):
        self.total += 1

    def add_success(self):
        self.success += 1

    def add_failed(self):
        self.failed += 1

    def print_summary(self, title: str = "Extraction Summary"):
        logger.info(f"\n### {title} ###")
        logger.info(f"Total files: {self.total}")
        logger.info(f"Successfully processed: {self.success}")
        logger.info(f"Failed: {self.failed}")


def read_file(file_path: str) -> bytes:
    """Read file bytes"""
    if not Path(file_path).is_file():
        raise FileNotFoundError(f"File not found or not a regular file: {file_path}")
    with open(file_path, "rb") as f:
        return f.read()


def write_file(file_path: str, data: bytes):
    """Write file bytes with automatic directory creation"""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, "wb") as f:
        f.write(data)


def read_c_string(data: bytes, offset: int, max_length: int = -1) -> str:
    """Read null-terminated string at offset"""
    if offset >= len(data):
        raise ValueError(f"String offset 0x{offset:08X} past end of data")
    end = data.find(b'\x00', offset)
    if end == -1:
        end = len(data)
    if max_length > 0:
        end = min(end, offset + max_length)
    return data[offset:end].decode('latin-1')


def safe_relative_path(name: str) -> Path:
    """Turn an archive entry name into a path that stays inside the output directory"""
    parts = [part for part in name.replace('\\', '/').split('/') if part not in ('', '.', '..')]
    if not parts:
        raise ValueError(f"Invalid entry name: {name!r}")
    return Path(*parts)


def configure_logging(debug: bool = False):
    """Raise the root logger to DEBUG when requested"""
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
