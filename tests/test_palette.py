import pytest

from tga_utils import compact_palette, shrink_8bpp


def gray_palette(count):
    return [bytes((i, i, i, 0xFF)) for i in range(count)]


def test_compaction_keeps_used_entries_in_order():
    expected = gray_palette(256)
    palette = gray_palette(256)
    pixels = bytearray([9, 0, 5, 9, 5])

    shrunk = compact_palette(pixels, palette)

    assert shrunk is palette
    assert palette == [expected[0], expected[5], expected[9]]
    assert pixels == bytearray([2, 0, 1, 2, 1])


def test_compaction_is_idempotent():
    palette = gray_palette(256)
    pixels = bytearray([200, 17, 17, 3])
    compact_palette(pixels, palette)
    first_palette, first_pixels = list(palette), bytes(pixels)

    compact_palette(pixels, palette)

    assert palette == first_palette
    assert bytes(pixels) == first_pixels


def test_every_index_fits_the_compacted_palette():
    palette = gray_palette(256)
    pixels = bytearray(range(0, 256, 7))
    compact_palette(pixels, palette)
    assert max(pixels) < len(palette)
    assert len(palette) == len(range(0, 256, 7))


def test_index_outside_palette():
    with pytest.raises(ValueError):
        compact_palette(bytearray([0, 3]), gray_palette(2))


def test_palette_too_large():
    with pytest.raises(ValueError):
        compact_palette(bytearray([0]), gray_palette(257))


def test_empty_pixels():
    pixels = bytearray()
    palette = gray_palette(8)
    assert compact_palette(pixels, palette) == []
    assert pixels == bytearray()


def test_shrink_keeps_compaction_when_rle_rejected():
    expected = gray_palette(16)
    pixels = bytearray([0, 5, 9])
    result = shrink_8bpp(pixels, gray_palette(16))
    assert not result.is_rle
    assert result.encoded is None
    assert result.palette == [expected[0], expected[5], expected[9]]
    assert pixels == bytearray([0, 1, 2])


def test_shrink_with_runs():
    expected = gray_palette(16)
    pixels = bytearray([7] * 50)
    result = shrink_8bpp(pixels, gray_palette(16))
    assert result.is_rle
    assert result.encoded == b"\xb1\x00"
    assert result.palette == [expected[7]]
