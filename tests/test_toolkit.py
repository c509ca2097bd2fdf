import logging
import struct
import sys

import pytest

import q3r_toolkit
from q3r_toolkit import decompress_refpack_file, describe_file

STREAM = b"\x10\xfb\x00\x00\x06" + b"\x09\x00X" + b"\xfc"


def test_decompress_refpack_file(tmp_path):
    blob = tmp_path / "blob.bin"
    blob.write_bytes(STREAM)

    target = decompress_refpack_file(str(blob))

    assert target == tmp_path / "blob.dec"
    assert target.read_bytes() == b"XXXXXX"


def test_decompress_refpack_file_unchecked(tmp_path):
    blob = tmp_path / "blob.bin"
    blob.write_bytes(STREAM)

    target = decompress_refpack_file(str(blob), str(tmp_path / "out.raw"), unchecked=True)

    assert target.read_bytes() == b"XXXXXX"


def test_decompress_rejects_non_refpack(tmp_path):
    blob = tmp_path / "blob.bin"
    blob.write_bytes(b"plain old data")
    with pytest.raises(ValueError):
        decompress_refpack_file(str(blob))


def test_describe_refpack(tmp_path, caplog):
    blob = tmp_path / "blob.bin"
    blob.write_bytes(STREAM)
    caplog.set_level(logging.INFO)

    describe_file(str(blob))

    assert "RefPack stream" in caplog.text
    assert "Decompressed size: 6" in caplog.text


def test_describe_sdt(tmp_path, caplog):
    header = struct.pack('<II16sHHIII', 0x28, 2, b"hit.vag", 22050, 0x8010, 0, 0, 0)
    sdt = tmp_path / "FX.SDT"
    sdt.write_bytes(struct.pack('<HHI', 1, 0, 8) + header + b"\x00\x00")
    caplog.set_level(logging.INFO)

    describe_file(str(sdt))

    assert "SDT sound bank" in caplog.text
    assert "hit.vag" in caplog.text


def test_describe_unknown(tmp_path):
    junk = tmp_path / "junk.bin"
    junk.write_bytes(b"\x00" * 32)
    with pytest.raises(ValueError):
        describe_file(str(junk))


def test_main_refpack_subcommand(tmp_path, monkeypatch):
    blob = tmp_path / "blob.bin"
    blob.write_bytes(STREAM)
    monkeypatch.setattr(sys, "argv", ["q3r-toolkit", "refpack", str(blob), "-o", str(tmp_path / "x.out")])

    q3r_toolkit.main()

    assert (tmp_path / "x.out").read_bytes() == b"XXXXXX"


def test_main_exits_on_failure(tmp_path, monkeypatch):
    blob = tmp_path / "blob.bin"
    blob.write_bytes(b"nope")
    monkeypatch.setattr(sys, "argv", ["q3r-toolkit", "refpack", str(blob)])

    with pytest.raises(SystemExit):
        q3r_toolkit.main()
