import struct

import pytest
from hypothesis import given, strategies as st

from kmemsim.multiboot2 import (
    MemoryMapEntry,
    MultibootError,
    Tag,
    TagNotFound,
    best_available_region,
    build_info,
    find_tag,
    format_hex_range,
    format_hex_u64,
    memory_map_report,
    parse_memory_map,
)

QEMU_LIKE = [
    MemoryMapEntry(0x0, 0x9FC00, 1),
    MemoryMapEntry(0x100000, 0x7DE0000, 1),
    MemoryMapEntry(0xFFFC0000, 0x40000, 2),
]


def test_build_info_header_records_total_size():
    data = build_info(QEMU_LIKE)
    assert struct.unpack_from("<I", data, 0)[0] == len(data)
    assert len(data) % 8 == 0


def test_find_mmap_tag():
    tag = find_tag(build_info(QEMU_LIKE), 6)
    assert tag.type == 6
    assert tag.offset == 8
    assert tag.size == 16 + 24 * len(QEMU_LIKE)


def test_parse_round_trip():
    mmap = parse_memory_map(find_tag(build_info(QEMU_LIKE, entry_version=0), 6))
    assert mmap.entries == tuple(QEMU_LIKE)
    assert mmap.entry_size == 24
    assert mmap.entry_version == 0


def test_parse_with_larger_entries():
    entries = [(0x100000, 0x400000, 1), (0x800000, 0x1000, 3)]
    mmap = parse_memory_map(find_tag(build_info(entries, entry_size=32), 6))
    assert mmap.entry_size == 32
    assert mmap.entries == tuple(MemoryMapEntry(*e) for e in entries)


def test_missing_tag():
    with pytest.raises(TagNotFound):
        find_tag(build_info(QEMU_LIKE), 4)


def test_too_short_info_is_invalid():
    with pytest.raises(MultibootError):
        find_tag(b"\x08\0\0\0\0\0\0\0", 6)


def test_corrupt_tag_size_is_invalid_not_missing():
    data = struct.pack("<IIII", 16, 0, 5, 4)
    with pytest.raises(MultibootError) as info:
        find_tag(data, 6)
    assert not isinstance(info.value, TagNotFound)


def test_invalid_entry_size():
    tag = Tag(type=6, size=16, offset=8, data=struct.pack("<IIII", 6, 16, 16, 0))
    with pytest.raises(MultibootError, match="invalid entry size"):
        parse_memory_map(tag)


def test_build_info_rejects_small_entries():
    with pytest.raises(ValueError):
        build_info(QEMU_LIKE, entry_size=16)


def test_best_region_picks_largest_above_one_mib():
    best = best_available_region(QEMU_LIKE)
    assert best.start == 0x100000
    assert best.end == QEMU_LIKE[1].end


def test_low_memory_only_gives_none():
    assert best_available_region([MemoryMapEntry(0, 0x9FC00, 1)]) is None


def test_region_straddling_one_mib_is_clamped():
    entry = MemoryMapEntry(0x80000, 0x200000, 1)
    best = best_available_region([entry])
    assert best.start == 0x100000
    assert best.end == 0x80000 + 0x200000


def test_reserved_and_overflowing_regions_are_ignored():
    entries = [MemoryMapEntry(0x100000, 0x400000, 2), MemoryMapEntry(0x200000, (1 << 64) - 1, 1)]
    assert best_available_region(entries) is None


def test_first_region_wins_ties():
    a = MemoryMapEntry(0x200000, 0x100000, 1)
    b = MemoryMapEntry(0x800000, 0x100000, 1)
    assert best_available_region([a, b]).start == a.addr


def test_format_hex_u64_pads_low_word():
    assert format_hex_u64(0x100000) == "0x000100000"


@given(st.integers(min_value=0, max_value=(1 << 64) - 1))
def test_format_hex_u64_round_trip(value):
    text = format_hex_u64(value)
    assert text.startswith("0x")
    assert int(text, 16) == value


def test_format_hex_range_32bit():
    assert format_hex_range(0x100000, 0x7EE0000) == "0x100000 - 0x7ee0000"


def test_format_hex_range_64bit_uses_split_form():
    start, end = 0x100000000, 0x200000000
    left, right = format_hex_range(start, end).split(" - ")
    assert left == format_hex_u64(start)
    assert right == format_hex_u64(end)


def test_report_structure():
    report = memory_map_report(build_info(QEMU_LIKE))
    lines = report.splitlines()
    assert len(lines) == len(QEMU_LIKE) + 2
    assert lines[0].startswith("MB2 Memory Map (tag_size=")
    for line, entry in zip(lines[1:], QEMU_LIKE):
        assert line.endswith(f"type={entry.type}")
        assert f"base={format_hex_u64(entry.addr)}" in line
    best = best_available_region(QEMU_LIKE)
    assert lines[-1].startswith("Available RAM: " + format_hex_range(best.start, best.end))


def test_report_rounds_summary_up_to_mib():
    report = memory_map_report(build_info([MemoryMapEntry(0x100000, 0x7DE0000, 1)]))
    assert report.endswith("(126MB)\n")


def test_report_without_info():
    assert memory_map_report(b"") == "mmap: no multiboot2 info\n"


def test_report_without_mmap_tag():
    data = struct.pack("<IIII", 16, 0, 0, 8)
    assert memory_map_report(data) == "mmap: Multiboot2 tag type 6 (Memory Map) not found\n"


def test_report_invalid_info():
    data = struct.pack("<IIII", 8, 0, 0, 8)
    assert memory_map_report(data) == "mmap: invalid multiboot2 info\n"


def test_report_no_available_ram():
    report = memory_map_report(build_info([MemoryMapEntry(0x100000, 0x100000, 2)]))
    assert report.endswith("mmap: no available RAM regions found\n")