"""Address-space layout, build-time configuration and simulated physical RAM."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

PAGE_SIZE = 4096
ENTRIES_PER_PT = 1024
ENTRIES_PER_PD = 1024
ADDRESS_MASK = 0xFFFFFFFF
ONE_MIB = 0x100000

# Kernel direct map: virt = phys + KERNEL_VIRT_OFFSET.
KERNEL_VIRT_OFFSET = 0xC0000000

# Virtual window reserved for the kernel heap.
KHEAP_START = 0xE0000000
KHEAP_MAX_SIZE = 256 * 1024 * 1024
KHEAP_END = KHEAP_START + KHEAP_MAX_SIZE

PTE_PRESENT = 0x001
PTE_WRITABLE = 0x002
PTE_USER = 0x004

PDE_PRESENT = 0x001
PDE_WRITABLE = 0x002
PDE_USER = 0x004

FLAGS_MASK = 0xFFF
FRAME_MASK = ADDRESS_MASK & ~FLAGS_MASK


class PmmBackendKind(enum.IntEnum):
    """Physical page allocator algorithms."""

    BITMAP = 0
    BUDDY = 1


class HeapBackendKind(enum.IntEnum):
    """Kernel heap allocator algorithms."""

    FIRST_FIT = 0
    SLAB = 1


@dataclass(frozen=True)
class KernelConfig:
    """Tunable kernel options, gathered in one place."""

    pmm_backend: PmmBackendKind = PmmBackendKind.BITMAP
    heap_backend: HeapBackendKind = HeapBackendKind.FIRST_FIT
    heap_initial_pages: int = 16

    def __post_init__(self) -> None:
        if self.heap_initial_pages <= 0:
            raise ValueError("heap_initial_pages must be positive")


def phys_to_virt(paddr: int) -> int:
    """Translate a physical address into the kernel direct map."""
    return (paddr + KERNEL_VIRT_OFFSET) & ADDRESS_MASK


def virt_to_phys(vaddr: int) -> int:
    """Translate a direct-map virtual address back to physical."""
    return (vaddr - KERNEL_VIRT_OFFSET) & ADDRESS_MASK


def pd_index(virt: int) -> int:
    """Page-directory index: bits 31..22 of a virtual address."""
    return (virt >> 22) & 0x3FF


def pt_index(virt: int) -> int:
    """Page-table index: bits 21..12 of a virtual address."""
    return (virt >> 12) & 0x3FF


def _check_alignment(alignment: int) -> None:
    if alignment <= 0 or alignment & (alignment - 1):
        raise ValueError(f"alignment must be a positive power of two, got {alignment}")


def align_up(value: int, alignment: int) -> int:
    """Round value up to a multiple of a power-of-two alignment."""
    _check_alignment(alignment)
    return (value + alignment - 1) & ~(alignment - 1)


def align_down(value: int, alignment: int) -> int:
    """Round value down to a multiple of a power-of-two alignment."""
    _check_alignment(alignment)
    return value & ~(alignment - 1)


class PhysicalMemory:
    """Sparse, zero-initialised byte-addressable physical RAM."""

    def __init__(self, size: int = 1 << 32) -> None:
        if size <= 0:
            raise ValueError("memory size must be positive")
        self.size = size
        self._pages: dict[int, bytearray] = {}

    def _check(self, addr: int, size: int) -> None:
        if size < 0:
            raise ValueError("size must not be negative")
        if addr < 0 or addr + size > self.size:
            raise IndexError(f"physical access 0x{addr:x}+{size} outside memory")

    def _chunks(self, addr: int, size: int):
        while size > 0:
            page = addr & ~(PAGE_SIZE - 1)
            offset = addr - page
            count = min(size, PAGE_SIZE - offset)
            yield page, offset, count
            addr += count
            size -= count

    def read(self, addr: int, size: int) -> bytes:
        """Return size bytes starting at addr."""
        self._check(addr, size)
        out = bytearray()
        for page, offset, count in self._chunks(addr, size):
            frame = self._pages.get(page)
            out += frame[offset:offset + count] if frame is not None else bytes(count)
        return bytes(out)

    def write(self, addr: int, data: bytes) -> None:
        """Store data starting at addr."""
        view = memoryview(bytes(data))
        self._check(addr, len(view))
        pos = 0
        for page, offset, count in self._chunks(addr, len(view)):
            frame = self._pages.setdefault(page, bytearray(PAGE_SIZE))
            frame[offset:offset + count] = view[pos:pos + count]
            pos += count

    def read_u32(self, addr: int) -> int:
        """Read a little-endian 32-bit word."""
        return struct.unpack("<I", self.read(addr, 4))[0]

    def write_u32(self, addr: int, value: int) -> None:
        """Write a little-endian 32-bit word."""
        if not 0 <= value <= ADDRESS_MASK:
            raise ValueError(f"value 0x{value:x} does not fit in 32 bits")
        self.write(addr, struct.pack("<I", value))

    def zero_page(self, addr: int) -> None:
        """Clear the page-aligned 4 KiB page at addr."""
        if addr & (PAGE_SIZE - 1):
            raise ValueError(f"address 0x{addr:x} is not page aligned")
        self._check(addr, PAGE_SIZE)
        self._pages.pop(addr, None)