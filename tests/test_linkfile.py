import argparse
import logging
import struct

import pytest

from asset_utils import ExtractionStats
from linkfile_extractor import (
    LinkfileFormatError,
    LinkfileReader,
    default_output_dir,
    extract_linkfile,
    is_linkfile,
)

# "ABCD", then 2 literals "EF" and a 4-byte copy from 4 back
COMPRESSED = b"\x10\xfb\x00\x00\x0a" + b"\xe0ABCD" + b"\x80\x80\x03EF" + b"\xfc"
DECOMPRESSED = b"ABCDEFCDEF"


def build_linkfile(tree):
    """Archive from {"files": [(name, stored, uncompressed_size)], "dirs": [(name, subtree)]}"""
    dirs = []  # (tree, offset) in layout order

    def layout(node, offset):
        dirs.append(node)
        node["_offset"] = offset
        offset += 16
        node["_files_offset"] = offset
        offset += 16 * len(node.get("files", []))
        node["_subdirs_offset"] = offset
        offset += 8 * len(node.get("dirs", []))
        for _name, sub in node.get("dirs", []):
            offset = layout(sub, offset)
        return offset

    names_offset = layout(tree, 24)
    names = bytearray()
    name_offsets = {}

    def add_name(name):
        name_offsets[name] = names_offset + len(names)
        names.extend(name.encode("latin-1") + b"\x00")

    for node in dirs:
        for name, _stored, _size in node.get("files", []):
            add_name(name)
        for name, _sub in node.get("dirs", []):
            add_name(name)

    data_offset = names_offset + len(names)
    blob = bytearray()
    body = bytearray()
    for node in dirs:
        files = node.get("files", [])
        subdirs = node.get("dirs", [])
        body += struct.pack('<IIII', node["_files_offset"], node["_subdirs_offset"], len(files), len(subdirs))
        for name, stored, size in files:
            body += struct.pack('<IIII', name_offsets[name], data_offset + len(blob), len(stored), size)
            blob += stored
        for name, sub in subdirs:
            body += struct.pack('<II', name_offsets[name], sub.get("_target", sub["_offset"]))

    header = struct.pack('<II', 0x4C4E4B46, 0) + struct.pack('<IIII', data_offset, 0, names_offset, 24)
    return header + bytes(body) + bytes(names) + bytes(blob)


def sample_tree():
    return {
        "files": [("readme.txt", b"hello linkfile", 14)],
        "dirs": [("data", {"files": [("level.bin", COMPRESSED, len(DECOMPRESSED))]})],
    }


def test_magic():
    raw = build_linkfile(sample_tree())
    assert raw[:4] == b"FKNL"
    assert is_linkfile(raw)
    assert not is_linkfile(b"FKNL")
    assert not is_linkfile(b"FKNL\x01\x00\x00\x00")
    with pytest.raises(LinkfileFormatError):
        LinkfileReader(b"PK\x03\x04" + raw[4:])


def test_walk_order_and_paths():
    reader = LinkfileReader(build_linkfile({
        "files": [("a.txt", b"a", 1)],
        "dirs": [
            ("one", {"files": [("b.txt", b"b", 1)], "dirs": [("deep", {"files": [("c.txt", b"c", 1)]})]}),
            ("two", {"files": [("d.txt", b"d", 1)]}),
        ],
    }))
    assert [entry.path for entry in reader.walk()] == ["a.txt", "one/b.txt", "one/deep/c.txt", "two/d.txt"]


def test_extract_stored_and_compressed(tmp_path):
    archive = tmp_path / "LINKFILE.LNK"
    archive.write_bytes(build_linkfile(sample_tree()))
    stats = ExtractionStats()

    output = extract_linkfile(str(archive), stats=stats)

    assert output == tmp_path / "LINKFILE_extracted"
    assert (output / "readme.txt").read_bytes() == b"hello linkfile"
    assert (output / "data" / "level.bin").read_bytes() == DECOMPRESSED
    assert (stats.total, stats.success, stats.failed) == (2, 2, 0)


def test_unchecked_decoder_gives_same_output(tmp_path):
    archive = tmp_path / "LINKFILE.LNK"
    archive.write_bytes(build_linkfile(sample_tree()))
    options = argparse.Namespace(overwrite=False, unchecked=True)

    output = extract_linkfile(str(archive), str(tmp_path / "out"), options)

    assert (output / "data" / "level.bin").read_bytes() == DECOMPRESSED


def test_size_mismatch_is_saved_with_warning(tmp_path, caplog):
    tree = {"files": [("padded.bin", COMPRESSED + b"\x00\x00", len(DECOMPRESSED))]}
    archive = tmp_path / "LINKFILE.LNK"
    archive.write_bytes(build_linkfile(tree))
    caplog.set_level(logging.WARNING)

    output = extract_linkfile(str(archive))

    assert (output / "padded.bin").read_bytes() == DECOMPRESSED
    assert "mismatch" in caplog.text


def test_corrupt_entry_does_not_stop_extraction(tmp_path):
    tree = {"files": [
        ("broken.bin", COMPRESSED[:8], len(DECOMPRESSED)),
        ("fine.txt", b"still here", 10),
    ]}
    archive = tmp_path / "LINKFILE.LNK"
    archive.write_bytes(build_linkfile(tree))
    stats = ExtractionStats()

    output = extract_linkfile(str(archive), stats=stats)

    assert not (output / "broken.bin").exists()
    assert (output / "fine.txt").read_bytes() == b"still here"
    assert (stats.total, stats.success, stats.failed) == (2, 1, 1)


def test_existing_files_are_skipped(tmp_path):
    archive = tmp_path / "LINKFILE.LNK"
    archive.write_bytes(build_linkfile(sample_tree()))
    output = tmp_path / "out"
    (output).mkdir()
    (output / "readme.txt").write_bytes(b"keep me")

    extract_linkfile(str(archive), str(output))
    assert (output / "readme.txt").read_bytes() == b"keep me"

    extract_linkfile(str(archive), str(output), argparse.Namespace(overwrite=True, unchecked=False))
    assert (output / "readme.txt").read_bytes() == b"hello linkfile"


def test_entry_names_cannot_escape_output(tmp_path):
    archive = tmp_path / "LINKFILE.LNK"
    archive.write_bytes(build_linkfile({"files": [("../../evil.txt", b"x", 1)]}))

    output = extract_linkfile(str(archive), str(tmp_path / "out"))

    assert (output / "evil.txt").read_bytes() == b"x"
    assert not (tmp_path.parent / "evil.txt").exists()


def test_directory_cycle_is_rejected():
    root = {"files": [("a.txt", b"a", 1)]}
    root["dirs"] = [("loop", {"_target": 24})]
    reader = LinkfileReader(build_linkfile(root))
    with pytest.raises(LinkfileFormatError):
        list(reader.walk())


def test_default_output_dir(tmp_path):
    assert default_output_dir(str(tmp_path / "LINKFILE.LNK")) == tmp_path / "LINKFILE_extracted"
