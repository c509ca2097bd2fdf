import argparse
import struct

import pytest

from asset_utils import ExtractionStats
from sdt_extractor import (
    SdtFormatError,
    SdtType,
    build_vag_header,
    default_output_dir,
    detect_sdt_type,
    extract_sdt_file,
    read_sdt_entries,
    run,
)

VAG = 0x8010
MP2 = 0x2410
MP2_2 = 0x2510

ENTRIES = [
    (b"engine.vag", 22050, VAG, b"\x11" * 32),
    (b"music", 44100, MP2, b"\xff\xfd" + b"\x22" * 14),
]


def entry_header(name, rate, fmt, data):
    return struct.pack('<II16sHHIII', 0x28, len(data), name, rate, fmt, 0, 0, 0)


def build_type1(entries):
    offsets = []
    body = bytearray()
    base = 4 + 4 * len(entries)
    for name, rate, fmt, data in entries:
        offsets.append(base + len(body))
        body += entry_header(name, rate, fmt, data) + data
    return struct.pack('<HH', len(entries), 0) + struct.pack(f'<{len(entries)}I', *offsets) + bytes(body)


def build_type2(entries):
    base = 4 + 4 * len(entries) + 40 * len(entries)
    offsets = []
    headers = bytearray()
    blob = bytearray()
    for name, rate, fmt, data in entries:
        offsets.append(base + len(blob))
        headers += entry_header(name, rate, fmt, data)
        blob += data
    return (struct.pack('<HH', len(entries), 0x3039) + struct.pack(f'<{len(entries)}I', *offsets)
            + bytes(headers) + bytes(blob))


def check_extracted(output):
    vag = (output / "engine.vag").read_bytes()
    magic, version, reserved, size, rate, reserved2, name = struct.unpack('>4sIIII12s16s', vag[:48])
    assert (magic, version, reserved, size, rate) == (b"VAGp", 0, 0, 32, 22050)
    assert reserved2 == b"\x00" * 12
    assert name == b"engine.vag".ljust(16, b"\x00")
    assert vag[48:] == b"\x11" * 32

    assert (output / "music.mp2").read_bytes() == b"\xff\xfd" + b"\x22" * 14


def test_detect_type():
    assert detect_sdt_type(build_type1(ENTRIES)) == SdtType.TYPE_1
    assert detect_sdt_type(build_type2(ENTRIES)) == SdtType.TYPE_2
    assert detect_sdt_type(b"") is None
    assert detect_sdt_type(b"\x00\x00\x00\x00\x00\x00\x00\x00") is None
    assert detect_sdt_type(struct.pack('<HHI', 1, 0x1234, 8) + b"\x28\x00\x00\x00") is None
    assert detect_sdt_type(struct.pack('<HHI', 1, 0, 8) + b"\x30\x00\x00\x00") is None
    assert detect_sdt_type(struct.pack('<HHI', 1, 0, 4000)) is None


def test_read_entries():
    sdt_type, entries = read_sdt_entries(build_type2(ENTRIES))
    assert sdt_type == SdtType.TYPE_2
    assert [entry.name for entry in entries] == ["engine.vag", "music"]
    assert [entry.output_name for entry in entries] == ["engine.vag", "music.mp2"]
    assert entries[0].sample_rate == 22050
    assert entries[1].data == ENTRIES[1][3]


def test_read_rejects_garbage():
    with pytest.raises(SdtFormatError):
        read_sdt_entries(b"RIFF....WAVEfmt ")


def test_data_past_end_of_file():
    raw = build_type1(ENTRIES)
    with pytest.raises(SdtFormatError):
        read_sdt_entries(raw[:-4])


def test_extract_type1(tmp_path):
    sdt_path = tmp_path / "SOUNDS.SDT"
    sdt_path.write_bytes(build_type1(ENTRIES))
    stats = ExtractionStats()

    output = extract_sdt_file(str(sdt_path), stats=stats)

    assert output == tmp_path / "SOUNDS_extracted"
    check_extracted(output)
    assert (stats.total, stats.success, stats.failed) == (2, 2, 0)


def test_extract_type2(tmp_path):
    sdt_path = tmp_path / "MUSIC.SDT"
    sdt_path.write_bytes(build_type2(ENTRIES))

    output = extract_sdt_file(str(sdt_path), str(tmp_path / "out"))

    assert output == tmp_path / "out"
    check_extracted(output)


def test_name_uses_all_sixteen_characters(tmp_path):
    sdt_path = tmp_path / "LONG.SDT"
    sdt_path.write_bytes(build_type1([(b"abcdefghijklmnop", 32000, MP2_2, b"\x01\x02")]))

    output = extract_sdt_file(str(sdt_path))

    assert (output / "abcdefghijklmnop.mp2").read_bytes() == b"\x01\x02"


def test_unknown_format_aborts_archive(tmp_path):
    entries = ENTRIES[:1] + [(b"odd.wav", 11025, 0x1234, b"\x00" * 4)] + ENTRIES[1:]
    sdt_path = tmp_path / "BAD.SDT"
    sdt_path.write_bytes(build_type1(entries))
    stats = ExtractionStats()

    with pytest.raises(SdtFormatError):
        extract_sdt_file(str(sdt_path), stats=stats)

    output = tmp_path / "BAD_extracted"
    assert (output / "engine.vag").exists()
    assert not (output / "music.mp2").exists()
    assert (stats.total, stats.success, stats.failed) == (1, 1, 0)


def test_run_counts_aborted_archive_once(tmp_path):
    entries = ENTRIES[:1] + [(b"odd.wav", 11025, 0x1234, b"\x00" * 4)]
    (tmp_path / "BAD.SDT").write_bytes(build_type1(entries))
    args = argparse.Namespace(input=[str(tmp_path)], output=None, recursive=False, overwrite=False)

    stats = run(args)

    assert (stats.total, stats.success, stats.failed) == (2, 1, 1)


def test_build_vag_header_length():
    _, entries = read_sdt_entries(build_type1(ENTRIES))
    assert len(build_vag_header(entries[0])) == 48


def test_default_output_dir(tmp_path):
    assert default_output_dir(str(tmp_path / "VOICE.SDT")) == tmp_path / "VOICE_extracted"


def test_run_keeps_going_after_bad_archive(tmp_path):
    (tmp_path / "A.SDT").write_bytes(build_type1(ENTRIES))
    (tmp_path / "B.SDT").write_bytes(b"\x00" * 16)
    args = argparse.Namespace(input=[str(tmp_path)], output=None, recursive=False, overwrite=False)

    stats = run(args)

    check_extracted(tmp_path / "A_extracted")
    assert (stats.total, stats.success, stats.failed) == (3, 2, 1)


def test_run_counts_unreadable_archives(tmp_path):
    (tmp_path / "GARBAGE.SDT").write_bytes(b"\x01\x00\x99\x99garbage")
    args = argparse.Namespace(input=[str(tmp_path / "GARBAGE.SDT"), str(tmp_path / "MISSING.SDT")],
                              output=None, recursive=False, overwrite=False)

    stats = run(args)

    assert (stats.total, stats.success, stats.failed) == (2, 0, 2)


def test_entry_names_cannot_escape_output(tmp_path):
    sdt_path = tmp_path / "EVIL.SDT"
    sdt_path.write_bytes(build_type1([(b"/tmp/sdt_escape.", 22050, VAG, b"\x00" * 4)]))
    output = tmp_path / "out"

    extract_sdt_file(str(sdt_path), str(output))

    assert (output / "tmp" / "sdt_escape.vag").read_bytes()[48:] == b"\x00" * 4
    assert [p for p in tmp_path.rglob("*.vag")] == [output / "tmp" / "sdt_escape.vag"]


def test_vag_name_is_nul_padded_after_terminator():
    header = entry_header(b"hit\x00leftover1234", 22050, VAG, b"\x00" * 4)
    _, entries = read_sdt_entries(struct.pack('<HHI', 1, 0, 8) + header + b"\x00" * 4)

    vag_header = build_vag_header(entries[0])

    assert vag_header[32:48] == b"hit" + b"\x00" * 13
    assert entries[0].output_name == "hit.vag"
