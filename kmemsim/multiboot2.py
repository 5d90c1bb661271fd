"""Multiboot2 information parsing and the memory-map report."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable, Optional, Union

TAG_TYPE_END = 0
TAG_TYPE_MMAP = 6
MEMORY_AVAILABLE = 1
ENTRY_SIZE = 24
MMAP_HEADER_SIZE = 16
UINT64_MAX = (1 << 64) - 1
_ONE_MIB = 0x100000


class MultibootError(Exception):
    """The Multiboot2 information is malformed."""


class TagNotFound(MultibootError):
    """The requested tag is not present."""


def _align8(n: int) -> int:
    return (n + 7) & ~7


def _add_sat(a: int, b: int) -> int:
    return min(a + b, UINT64_MAX)


def _round_up_mib(nbytes: int) -> int:
    return (((nbytes + _ONE_MIB - 1) & UINT64_MAX) >> 20) & 0xFFFFFFFF


@dataclass(frozen=True)
class Tag:
    """One tag: its type, declared size, offset in the info and raw bytes."""

    type: int
    size: int
    offset: int
    data: bytes


@dataclass(frozen=True)
class MemoryMapEntry:
    """A firmware memory-map region."""

    addr: int
    length: int
    type: int = MEMORY_AVAILABLE

    @property
    def end(self) -> int:
        """Exclusive end address, saturated at 2**64 - 1."""
        return _add_sat(self.addr, self.length)

    @property
    def is_available(self) -> bool:
        return self.type == MEMORY_AVAILABLE


@dataclass(frozen=True)
class MemoryMapTag:
    """The decoded memory-map tag."""

    size: int
    entry_size: int
    entry_version: int
    entries: tuple


@dataclass(frozen=True)
class AvailableRegion:
    """The largest usable RAM range found."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def mib(self) -> int:
        """Size in MiB, rounded up."""
        return _round_up_mib(self.size)


EntryLike = Union[MemoryMapEntry, tuple]


def build_info(entries: Iterable[EntryLike], entry_size: int = ENTRY_SIZE,
               entry_version: int = 0) -> bytes:
    """Encode a Multiboot2 information block holding one memory-map tag."""
    if entry_size < ENTRY_SIZE:
        raise ValueError(f"entry_size must be at least {ENTRY_SIZE}")
    items = [e if isinstance(e, MemoryMapEntry) else MemoryMapEntry(*e) for e in entries]
    for e in items:
        if not (0 <= e.addr <= UINT64_MAX and 0 <= e.length <= UINT64_MAX
                and 0 <= e.type <= 0xFFFFFFFF):
            raise ValueError(f"entry out of range: {e}")
    body = b"".join(
        struct.pack("<QQII", e.addr, e.length, e.type, 0).ljust(entry_size, b"\0")
        for e in items
    )
    tag = struct.pack("<IIII", TAG_TYPE_MMAP, MMAP_HEADER_SIZE + len(body),
                      entry_size, entry_version) + body
    tag = tag.ljust(_align8(len(tag)), b"\0")
    end_tag = struct.pack("<II", TAG_TYPE_END, 8)
    total = 8 + len(tag) + len(end_tag)
    return struct.pack("<II", total, 0) + tag + end_tag


def find_tag(data: bytes, want_type: int) -> Tag:
    """Return the first tag of want_type; raise TagNotFound or MultibootError."""
    if data is None or len(data) < 16:
        raise MultibootError("invalid multiboot2 info")
    (total,) = struct.unpack_from("<I", data, 0)
    if total < 16 or total > len(data):
        raise MultibootError("invalid multiboot2 info")
    pos = 8
    while pos + 8 <= total:
        tag_type, size = struct.unpack_from("<II", data, pos)
        if tag_type == TAG_TYPE_END and size == 8:
            break
        if size < 8 or pos + size > total:
            raise MultibootError("invalid multiboot2 info")
        if tag_type == want_type:
            return Tag(tag_type, size, pos, bytes(data[pos:pos + size]))
        pos += _align8(size)
    raise TagNotFound(f"Multiboot2 tag type {want_type} not found")


def parse_memory_map(tag: Tag) -> MemoryMapTag:
    """Decode the entries of a memory-map tag."""
    if tag.size < MMAP_HEADER_SIZE or len(tag.data) < tag.size:
        raise MultibootError("invalid mmap tag size")
    _, _, entry_size, version = struct.unpack_from("<IIII", tag.data, 0)
    if entry_size < ENTRY_SIZE:
        raise MultibootError("invalid entry size")
    entries = tuple(
        MemoryMapEntry(*struct.unpack_from("<QQI", tag.data, off))
        for off in range(MMAP_HEADER_SIZE, tag.size - entry_size + 1, entry_size)
    )
    return MemoryMapTag(tag.size, entry_size, version, entries)


def best_available_region(entries: Iterable[MemoryMapEntry]) -> Optional[AvailableRegion]:
    """Largest available region at or above 1 MiB, or None; first wins ties."""
    best: Optional[AvailableRegion] = None
    for e in entries:
        if not e.is_available:
            continue
        end = e.end
        if end == UINT64_MAX or end <= e.addr:
            continue
        start = max(e.addr, _ONE_MIB)
        if end <= start:
            continue
        if best is None or end - start > best.size:
            best = AvailableRegion(start, end)
    return best


def format_hex_u64(value: int) -> str:
    """Format as 0x<high word><low word as 8 digits>."""
    return f"0x{value >> 32:x}{value & 0xFFFFFFFF:08x}"


def format_hex_range(start: int, end: int) -> str:
    """Format a range compactly when both ends fit in 32 bits."""
    if start >> 32 == 0 and end >> 32 == 0:
        return f"0x{start:x} - 0x{end:x}"
    return f"{format_hex_u64(start)} - {format_hex_u64(end)}"


def memory_map_report(data: Optional[bytes]) -> str:
    """Human-readable dump of the memory map plus the usable-RAM summary."""
    if not data:
        return "mmap: no multiboot2 info\n"
    try:
        tag = find_tag(data, TAG_TYPE_MMAP)
    except TagNotFound:
        return "mmap: Multiboot2 tag type 6 (Memory Map) not found\n"
    except MultibootError:
        return "mmap: invalid multiboot2 info\n"
    try:
        mmap = parse_memory_map(tag)
    except MultibootError as exc:
        return f"mmap: {exc}\n"

    lines = [
        f"MB2 Memory Map (tag_size={mmap.size}, entry_size={mmap.entry_size}, "
        f"version={mmap.entry_version})"
    ]
    for e in mmap.entries:
        lines.append(
            f"  base={format_hex_u64(e.addr)}  end={format_hex_u64(e.end)}"
            f"  len={format_hex_u64(e.length)} ({_round_up_mib(e.length)}MB)  type={e.type}"
        )
    best = best_available_region(mmap.entries)
    if best is None:
        lines.append("mmap: no available RAM regions found")
    else:
        lines.append(f"Available RAM: {format_hex_range(best.start, best.end)} ({best.mib}MB)")
    return "\n".join(lines) + "\n"