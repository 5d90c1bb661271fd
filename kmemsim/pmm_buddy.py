"""Buddy-system physical page allocator over the largest usable RAM region."""

from __future__ import annotations

import logging
from typing import Optional

from .layout import ADDRESS_MASK, ONE_MIB, PAGE_SIZE, align_down, align_up
from .multiboot2 import TAG_TYPE_MMAP, UINT64_MAX, MultibootError, find_tag, parse_memory_map
from .pmm import BootContext, PmmBackend, PmmError

log = logging.getLogger(__name__)

MAX_ORDER = 10
MIN_REGION_PAGES = 32
MIN_MANAGED_PAGES = 16
# Per-page metadata on the 32-bit target: two list pointers, order, flag, padding.
PAGE_INFO_SIZE = 12
SELFTEST_PAGES = 2
_FOUR_GIB = 1 << 32


def _page_up(value: int) -> int:
    return align_up(value, PAGE_SIZE) & ADDRESS_MASK


class BuddyBackend(PmmBackend):
    """Physical page allocator keeping free blocks of 2**order pages per order."""

    name = "buddy"

    def __init__(self) -> None:
        self._memory = None
        self._reset()

    def _reset(self) -> None:
        self._ready = False
        self._base = 0
        self._total = 0
        self._total_free = 0
        self._order = bytearray()
        self._is_free = bytearray()
        # Insertion-ordered dicts: append at the tail, take from the head.
        self._free_lists: list[dict[int, None]] = [{} for _ in range(MAX_ORDER + 1)]
        self._free_count = [0] * (MAX_ORDER + 1)
        self._metadata: tuple = (0, 0)

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def metadata_range(self) -> tuple:
        """Physical (start, end) of the per-page metadata area."""
        return self._metadata

    # ------------------------------------------------------------ free lists

    def _add_free(self, idx: int, order: int) -> None:
        self._order[idx] = order
        self._is_free[idx] = 1
        self._free_lists[order][idx] = None
        self._free_count[order] += 1
        self._total_free += 1 << order

    def _remove_free(self, idx: int, order: int) -> None:
        del self._free_lists[order][idx]
        self._is_free[idx] = 0
        self._free_count[order] -= 1
        self._total_free -= 1 << order

    def _alloc_block(self, order: int) -> int:
        for cur in range(order, MAX_ORDER + 1):
            if self._free_lists[cur]:
                break
        else:
            raise MemoryError("out of physical pages")

        free_list = self._free_lists[cur]
        idx = next(iter(free_list))
        del free_list[idx]
        self._is_free[idx] = 0
        self._free_count[cur] -= 1
        self._total_free -= 1 << cur

        while cur > order:
            cur -= 1
            self._add_free(idx + (1 << cur), cur)

        self._order[idx] = order
        return idx

    def _free_block(self, idx: int, order: int) -> None:
        while order < MAX_ORDER:
            buddy = idx ^ (1 << order)
            if buddy >= self._total:
                break
            if not self._is_free[buddy] or self._order[buddy] != order:
                break
            self._remove_free(buddy, order)
            idx &= ~(1 << order)
            order += 1
        self._add_free(idx, order)

    # ------------------------------------------------------------------ init

    def init(self, boot: BootContext) -> None:
        self._reset()
        self._memory = boot.memory

        if boot.mb2_info is None:
            log.warning("[pmm-buddy] no multiboot2 info; disabled")
            return
        try:
            tag = find_tag(boot.mb2_bytes(), TAG_TYPE_MMAP)
        except MultibootError:
            log.warning("[pmm-buddy] mmap tag not found; disabled")
            return
        try:
            mmap = parse_memory_map(tag)
        except MultibootError:
            log.warning("[pmm-buddy] invalid mmap tag; disabled")
            return

        best = self._largest_region(mmap.entries)
        if best is None:
            log.warning("[pmm-buddy] no usable region large enough; disabled")
            return
        best_start, best_end = best
        log.info("[pmm-buddy] best region: 0x%08x - 0x%08x (%u KiB)",
                 best_start, best_end, (best_end - best_start) // 1024)

        k_end_phys = _page_up(boot.kernel_phys_end)
        mb2_end_p = _page_up(boot.mb2_info + boot.mb2_size())

        safe_start = best_start
        if safe_start < k_end_phys <= best_end:
            safe_start = k_end_phys
        if safe_start < mb2_end_p <= best_end:
            safe_start = mb2_end_p

        region_start = _page_up(safe_start)
        region_end = align_down(best_end, PAGE_SIZE)
        region_pages = max(0, region_end - region_start) // PAGE_SIZE

        info_pages = align_up(region_pages * PAGE_INFO_SIZE, PAGE_SIZE) // PAGE_SIZE
        if info_pages >= region_pages:
            log.warning("[pmm-buddy] region too small for metadata; disabled")
            return

        metadata_end = region_start + info_pages * PAGE_SIZE
        managed_pages = (region_end - metadata_end) // PAGE_SIZE
        if managed_pages < MIN_MANAGED_PAGES:
            log.warning("[pmm-buddy] too few pages (%u); disabled", managed_pages)
            return

        for page in range(region_start, metadata_end, PAGE_SIZE):
            self._memory.zero_page(page)

        self._base = metadata_end
        self._total = managed_pages
        self._order = bytearray(managed_pages)
        self._is_free = bytearray(managed_pages)
        self._metadata = (region_start, metadata_end)

        idx = 0
        while idx < managed_pages:
            order = next(
                (o for o in range(MAX_ORDER, 0, -1)
                 if idx & ((1 << o) - 1) == 0 and idx + (1 << o) <= managed_pages),
                0,
            )
            self._add_free(idx, order)
            idx += 1 << order

        self._ready = True

        if k_end_phys > metadata_end:
            log.warning("[pmm-buddy] WARNING: kernel overlaps managed zone!")
        if mb2_end_p > metadata_end:
            log.warning("[pmm-buddy] WARNING: mb2 info overlaps managed zone!")

        log.info("[pmm-buddy] zone: 0x%08x - 0x%08x (%u pages, %u KiB)",
                 metadata_end, region_end, managed_pages, managed_pages * 4)
        log.info("[pmm-buddy] metadata: 0x%08x - 0x%08x (%u pages, %u B/page)",
                 region_start, metadata_end, info_pages, PAGE_INFO_SIZE)
        log.info("[pmm-buddy] free: %u pages (%u KiB)",
                 self._total_free, self._total_free * 4)
        for order in range(MAX_ORDER, -1, -1):
            if self._free_count[order]:
                log.info("[pmm-buddy]   order %2u (%4u KiB): %u blocks",
                         order, (1 << order) * 4, self._free_count[order])

        try:
            self.selftest()
        except PmmError as exc:
            log.error("[pmm-buddy] selftest: FAIL (%s)", exc)
        else:
            log.info("[pmm-buddy] selftest: OK")

    @staticmethod
    def _largest_region(entries) -> Optional[tuple]:
        best_start = best_end = 0
        for entry in entries:
            if not entry.is_available:
                continue
            start64 = entry.addr
            end64 = (entry.addr + entry.length) & UINT64_MAX
            if start64 >= _FOUR_GIB:
                continue
            start = start64
            end = ADDRESS_MASK if end64 >= _FOUR_GIB else end64
            if end <= ONE_MIB:
                continue
            start = max(start, ONE_MIB)
            if end <= start:
                continue
            if end - start > best_end - best_start:
                best_start, best_end = start, end
        if best_end <= best_start or best_end - best_start < MIN_REGION_PAGES * PAGE_SIZE:
            return None
        return best_start, best_end

    # ------------------------------------------------------------ allocation

    def alloc_page(self) -> int:
        if not self._ready or self._total_free == 0:
            raise MemoryError("out of physical pages")
        return self._base + self._alloc_block(0) * PAGE_SIZE

    def free_page(self, page: int) -> None:
        if not self._ready or not page:
            return
        if page & (PAGE_SIZE - 1):
            raise PmmError(f"free: unaligned 0x{page:08x}")
        if page < self._base:
            raise PmmError(f"free: below managed base 0x{page:08x}")
        idx = (page - self._base) // PAGE_SIZE
        if idx >= self._total:
            raise PmmError(f"free: out of range 0x{page:08x}")
        if self._is_free[idx]:
            raise PmmError(f"free: double free 0x{page:08x}")
        self._free_block(idx, self._order[idx])

    # --------------------------------------------------------------- queries

    def total_pages(self) -> int:
        return self._total if self._ready else 0

    def free_pages(self) -> int:
        return self._total_free if self._ready else 0

    def managed_base(self) -> int:
        return self._base if self._ready else 0

    def _check_index(self, page_index: int) -> None:
        if not self._ready:
            raise IndexError("physical memory manager is not initialised")
        if not 0 <= page_index < self._total:
            raise IndexError(f"page index {page_index} out of range")

    def page_addr(self, page_index: int) -> int:
        self._check_index(page_index)
        return self._base + page_index * PAGE_SIZE

    def page_is_used(self, page_index: int) -> bool:
        self._check_index(page_index)
        return not self._is_free[page_index]

    def order_counts(self) -> tuple:
        """Number of free blocks at each order, from 0 to MAX_ORDER."""
        return tuple(self._free_count)

    # ------------------------------------------------------------ diagnostics

    def selftest(self) -> int:
        """Allocate and free two pages, checking the free counter.

        Returns the number of pages exercised, 0 when not initialised;
        raises PmmError when a check fails.
        """
        if not self._ready:
            return 0
        free_before = self._total_free
        pages: list[int] = []
        try:
            for _ in range(SELFTEST_PAGES):
                pages.append(self.alloc_page())
        except MemoryError:
            pass
        if len(pages) != SELFTEST_PAGES or pages[0] == pages[1]:
            for page in pages:
                self.free_page(page)
            raise PmmError("alloc")

        ok = self._total_free == free_before - SELFTEST_PAGES
        for page in pages:
            self.free_page(page)
        ok = ok and self._total_free == free_before
        if not ok:
            raise PmmError("free counter mismatch")
        log.debug("[pmm-buddy] selftest pages p1=0x%08x p2=0x%08x", pages[0], pages[1])
        return SELFTEST_PAGES