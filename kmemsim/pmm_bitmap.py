"""Bitmap physical page allocator: one bit per 4 KiB page, kept per RAM region."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Optional

from .layout import ADDRESS_MASK, ONE_MIB, PAGE_SIZE, align_down, align_up, phys_to_virt
from .multiboot2 import (
    TAG_TYPE_MMAP,
    UINT64_MAX,
    MultibootError,
    find_tag,
    parse_memory_map,
)
from .pmm import BootContext, PmmBackend, PmmError

log = logging.getLogger(__name__)

MAX_REGIONS = 32
SELFTEST_PAGES = 4
_FOUR_GIB = 1 << 32
_LAYOUT_ATTEMPTS = 4


def _page_up(value: int) -> int:
    # 32-bit wrap-around, as the hardware address arithmetic does.
    return align_up(value, PAGE_SIZE) & ADDRESS_MASK


def _page_down(value: int) -> int:
    return align_down(value, PAGE_SIZE)


def _overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return min(a_end, b_end) > max(a_start, b_start)


@dataclass(frozen=True)
class RegionLayout:
    """Where a usable RAM range is managed and where its bitmap lives."""

    usable_start: int
    usable_end: int
    managed_start: int
    managed_end: int
    pages: int
    bitmap_bytes: int
    bitmap_storage_bytes: int
    bitmap_pages: int


def compute_region_layout(usable_start: int, usable_end: int,
                          kernel_start: int, kernel_end: int,
                          mb2_start: int, mb2_end: int) -> Optional[RegionLayout]:
    """Lay out a region, keeping its bitmap clear of the kernel and boot info.

    Returns None when the range is too small to be worth managing.
    """
    if usable_end <= usable_start:
        return None

    managed_start = usable_start
    managed_end = usable_end

    for _ in range(_LAYOUT_ATTEMPTS):
        if _overlap(managed_start, managed_end, kernel_start, kernel_end):
            managed_start = max(managed_start, _page_up(kernel_end))

        managed_start = _page_up(managed_start)
        managed_end = _page_down(managed_end)
        if managed_end <= (managed_start + PAGE_SIZE) & ADDRESS_MASK:
            return None

        pages = (managed_end - managed_start) // PAGE_SIZE
        if pages < 8:
            return None

        bitmap_bytes = (pages + 7) // 8
        storage = _page_up(bitmap_bytes)
        bitmap_pages = storage // PAGE_SIZE
        if bitmap_pages >= pages:
            return None

        bitmap_end = (managed_start + storage) & ADDRESS_MASK
        if mb2_end > mb2_start and _overlap(managed_start, bitmap_end, mb2_start, mb2_end):
            managed_start = _page_up(mb2_end)
            continue

        return RegionLayout(
            usable_start=usable_start,
            usable_end=usable_end,
            managed_start=managed_start,
            managed_end=managed_end,
            pages=pages,
            bitmap_bytes=bitmap_bytes,
            bitmap_storage_bytes=storage,
            bitmap_pages=bitmap_pages,
        )
    return None


@dataclass
class BitmapRegion:
    """One managed RAM range; bit set means used or reserved."""

    base: int
    pages: int
    bitmap_pages: int
    bitmap: bytearray = field(repr=False)
    free: int = 0

    @classmethod
    def from_layout(cls, layout: RegionLayout) -> "BitmapRegion":
        """Create a region whose only used pages are the bitmap's own storage."""
        region = cls(
            base=layout.managed_start,
            pages=layout.pages,
            bitmap_pages=layout.bitmap_pages,
            bitmap=bytearray(b"\xff") * layout.bitmap_storage_bytes,
        )
        for idx in range(region.bitmap_pages, region.pages):
            region.clear(idx)
        region.free = region.pages - region.bitmap_pages
        return region

    @property
    def bitmap_bytes(self) -> int:
        return (self.pages + 7) // 8

    @property
    def end(self) -> int:
        return self.base + self.pages * PAGE_SIZE

    def contains(self, addr: int) -> bool:
        return self.pages > 0 and self.base <= addr < self.end

    def index_of(self, addr: int) -> int:
        return (addr - self.base) // PAGE_SIZE

    def addr_of(self, idx: int) -> int:
        return self.base + idx * PAGE_SIZE

    def test(self, idx: int) -> bool:
        return bool(self.bitmap[idx >> 3] & (1 << (idx & 7)))

    def set(self, idx: int) -> None:
        self.bitmap[idx >> 3] |= 1 << (idx & 7)

    def clear(self, idx: int) -> None:
        self.bitmap[idx >> 3] &= ~(1 << (idx & 7)) & 0xFF

    def find_free(self) -> Optional[int]:
        """Lowest free page index, or None."""
        for byte_no, value in enumerate(self.bitmap[:self.bitmap_bytes]):
            if value == 0xFF:
                continue
            for bit in range(8):
                idx = (byte_no << 3) + bit
                if idx >= self.pages:
                    return None
                if not value & (1 << bit):
                    return idx
        return None

    def count_free(self) -> int:
        return sum(1 for idx in range(self.pages) if not self.test(idx))


class BitmapBackend(PmmBackend):
    """Physical page allocator using one bitmap per usable RAM region."""

    name = "bitmap"

    def __init__(self) -> None:
        self._memory = None
        self._reset()

    def _reset(self) -> None:
        self._regions: list[BitmapRegion] = []
        self._rr = 0
        self._total_pages = 0
        self._total_free = 0
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def regions(self) -> tuple:
        return tuple(self._regions)

    # ------------------------------------------------------------------ init

    def init(self, boot: BootContext) -> None:
        self._reset()
        self._memory = boot.memory

        if boot.mb2_info is None:
            log.warning("[pmm] no multiboot2 info; PMM disabled")
            return

        try:
            tag = find_tag(boot.mb2_bytes(), TAG_TYPE_MMAP)
        except MultibootError:
            log.warning("[pmm] multiboot2 mmap tag not found; PMM disabled")
            return
        try:
            mmap = parse_memory_map(tag)
        except MultibootError:
            log.warning("[pmm] invalid multiboot2 mmap tag; PMM disabled")
            return

        mb2_start = boot.mb2_info
        mb2_size = boot.mb2_size()
        mb2_end = (mb2_start + mb2_size) & ADDRESS_MASK

        added = 0
        for entry in mmap.entries:
            if not entry.is_available:
                continue
            end64 = entry.end
            if end64 == UINT64_MAX or end64 <= entry.addr:
                continue
            if entry.addr >= _FOUR_GIB:
                continue
            start = entry.addr
            end = ADDRESS_MASK if end64 >= _FOUR_GIB else end64
            if end <= ONE_MIB:
                continue
            start = max(start, ONE_MIB)
            if end <= start:
                continue

            if not self._add_region(start, end, boot.kernel_phys_start,
                                    boot.kernel_phys_end, mb2_start, mb2_end):
                if len(self._regions) >= MAX_REGIONS:
                    log.warning("[pmm] WARN: region cap reached (%u), ignore remaining mmap",
                                MAX_REGIONS)
                    break
                continue
            added += 1

        if not added or not self._regions:
            log.warning("[pmm] cannot build PMM regions (no usable region / too small)")
            return

        self._ready = True
        self._recompute_totals()
        if boot.kernel_phys_end > boot.kernel_phys_start:
            self._mark_used_range(boot.kernel_phys_start, boot.kernel_phys_end)
        self._mark_used_range(mb2_start, mb2_start + mb2_size)
        self._resync_free_count()
        try:
            tested = self.selftest()
        except PmmError as exc:
            log.error("[pmm] selftest: FAIL (%s)", exc)
        else:
            if tested:
                log.info("[pmm] selftest: OK (%u pages)", tested)
        log.info("%s", self.summary())

    def _add_region(self, usable_start: int, usable_end: int, kernel_start: int,
                    kernel_end: int, mb2_start: int, mb2_end: int) -> bool:
        if len(self._regions) >= MAX_REGIONS:
            return False
        layout = compute_region_layout(usable_start, usable_end, kernel_start,
                                       kernel_end, mb2_start, mb2_end)
        if layout is None:
            return False
        self._regions.append(BitmapRegion.from_layout(layout))
        return True

    def _recompute_totals(self) -> None:
        self._total_pages = sum(r.pages for r in self._regions)
        self._total_free = sum(r.free for r in self._regions)

    def _resync_free_count(self) -> None:
        for region in self._regions:
            region.free = region.count_free()
        self._total_free = sum(r.free for r in self._regions)

    def _mark_used(self, addr: int) -> None:
        addr = _page_down(addr)
        for region in self._regions:
            if not region.contains(addr):
                continue
            idx = region.index_of(addr)
            if not region.test(idx):
                region.set(idx)
                if region.free > 0:
                    region.free -= 1
                    if self._total_free > 0:
                        self._total_free -= 1
            return

    def _mark_used_range(self, start: int, end: int) -> None:
        if not self._ready or end <= start:
            return
        for addr in range(_page_down(start), _page_up(end), PAGE_SIZE):
            self._mark_used(addr)

    # ------------------------------------------------------------ allocation

    def alloc_page(self) -> int:
        if (not self._ready or not self._regions or self._total_pages == 0
                or self._total_free == 0):
            raise MemoryError("out of physical pages")

        count = len(self._regions)
        for off in range(count):
            ri = (self._rr + off) % count
            region = self._regions[ri]
            if region.free == 0:
                continue
            idx = region.find_free()
            if idx is None:
                continue
            region.set(idx)
            region.free -= 1
            if self._total_free > 0:
                self._total_free -= 1
            self._rr = ri
            return region.addr_of(idx)

        # The cached counters claimed free pages that the bitmaps do not have.
        self._resync_free_count()
        raise MemoryError("out of physical pages")

    def free_page(self, page: int) -> None:
        if not self._ready or not page:
            return
        if page & (PAGE_SIZE - 1):
            raise PmmError(f"free: unaligned addr=0x{page:08x}")
        for region in self._regions:
            if not region.contains(page):
                continue
            idx = region.index_of(page)
            if not region.test(idx):
                raise PmmError(f"free: double free addr=0x{page:08x}")
            region.clear(idx)
            region.free += 1
            self._total_free += 1
            return
        raise PmmError(f"free: out of range addr=0x{page:08x}")

    # --------------------------------------------------------------- queries

    def total_pages(self) -> int:
        return self._total_pages if self._ready else 0

    def free_pages(self) -> int:
        return self._total_free if self._ready else 0

    def managed_base(self) -> int:
        if not self._ready or not self._regions:
            return 0
        bases = [r.base for r in self._regions[1:] if r.base != 0]
        return min([self._regions[0].base, *bases])

    def _locate(self, page_index: int) -> tuple:
        if not self._ready:
            raise IndexError("physical memory manager is not initialised")
        if page_index >= 0:
            first = 0
            for region in self._regions:
                if page_index < first + region.pages:
                    return region, page_index - first
                first += region.pages
        raise IndexError(f"page index {page_index} out of range")

    def page_addr(self, page_index: int) -> int:
        region, local = self._locate(page_index)
        return region.addr_of(local)

    def page_is_used(self, page_index: int) -> bool:
        region, local = self._locate(page_index)
        return region.test(local)

    # ------------------------------------------------------------ diagnostics

    def selftest(self) -> int:
        """Allocate, write, verify and free a few pages.

        Returns the number of pages exercised, 0 when skipped; raises
        PmmError when a check fails.
        """
        if not self._ready or not self._regions or self._total_pages == 0:
            return 0
        free_before = self._total_free
        if free_before < SELFTEST_PAGES:
            log.info("[pmm] selftest: skip (free=%u)", free_before)
            return 0

        pages: list[int] = []

        def release() -> None:
            for page in pages:
                self.free_page(page)

        try:
            for _ in range(SELFTEST_PAGES):
                pages.append(self.alloc_page())
        except MemoryError:
            release()
            raise PmmError(f"alloc {len(pages)}/{SELFTEST_PAGES}") from None

        if self._total_free != free_before - SELFTEST_PAGES:
            release()
            raise PmmError("free counter mismatch after alloc")

        for i, page in enumerate(pages):
            pattern = (0xC0FFEE00 ^ (i * 0x11111111)) & ADDRESS_MASK
            chunk = struct.pack("<I", pattern) * (PAGE_SIZE // 4)
            self._memory.write(page, chunk)
            if self._memory.read(page, PAGE_SIZE) != chunk:
                release()
                raise PmmError("pattern verify")

        release()
        if self._total_free != free_before:
            raise PmmError("free counter mismatch after free")
        return SELFTEST_PAGES

    def summary(self) -> str:
        """Human-readable description of the regions and counters."""
        lines = [f"[pmm] regions    : {len(self._regions)}"]
        for i, region in enumerate(self._regions):
            lines.append(f"[pmm] r{i} managed : 0x{region.base:08x} - 0x{region.end:08x} "
                         f"({region.pages} pages)")
            lines.append(f"[pmm] r{i} bitmap  : 0x{phys_to_virt(region.base):08x} "
                         f"({region.bitmap_bytes} bytes, {region.bitmap_pages} pages)")
            lines.append(f"[pmm] r{i} free    : {region.free}")
        lines.append(f"[pmm] total pages: {self._total_pages}")
        lines.append(f"[pmm] free pages : {self._total_free}")
        return "\n".join(lines)