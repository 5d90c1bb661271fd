"""Slab heap backend: per-size caches of one-page slabs with a free-slot bitmap."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .kmalloc import HeapBackend, HeapError, HeapStats
from .layout import KHEAP_END, KHEAP_START, PAGE_SIZE, PTE_PRESENT, PTE_WRITABLE
from .vmm import VmmError

log = logging.getLogger(__name__)

CACHE_SIZES = (32, 64, 128, 256, 512, 1024, 2048)
# Header at the start of every slab page, rounded to 8 bytes (32-bit layout).
SLAB_HDR_SIZE = 40
MAX_OBJECTS = 128


def find_cache(size: int) -> Optional[int]:
    """Index of the smallest cache holding size bytes, or None if too large."""
    return next((i for i, obj_size in enumerate(CACHE_SIZES) if size <= obj_size), None)


@dataclass(eq=False)
class SlabHeader:
    """One page of equally sized objects; bitmap bit set means the slot is free."""

    page: int
    cache_idx: int
    obj_size: int
    capacity: int
    free_count: int = field(init=False)
    free_bitmap: int = field(init=False)

    def __post_init__(self) -> None:
        self.free_count = self.capacity
        self.free_bitmap = (1 << self.capacity) - 1

    def take(self) -> int:
        """Claim the lowest free slot."""
        if not self.free_bitmap:
            raise MemoryError("slab has no free slot")
        slot = (self.free_bitmap & -self.free_bitmap).bit_length() - 1
        self.free_bitmap &= ~(1 << slot)
        self.free_count -= 1
        return slot

    def is_free(self, slot: int) -> bool:
        return bool(self.free_bitmap >> slot & 1)

    def give(self, slot: int) -> None:
        """Return a slot to the slab."""
        self.free_bitmap |= 1 << slot
        self.free_count += 1

    def object_addr(self, slot: int) -> int:
        return self.page + SLAB_HDR_SIZE + slot * self.obj_size


@dataclass
class SlabCache:
    """Slabs of one object size: those with free slots and those that are full."""

    obj_size: int
    partial: list = field(default_factory=list)
    full: list = field(default_factory=list)


class SlabHeap(HeapBackend):
    """Heap backend serving requests of up to 2048 bytes from fixed-size slabs.

    Slab pages are carved from the heap window page by page; once the
    pre-mapped part is used up, new pages come from ``pmm`` and are mapped
    through ``vmm``.
    """

    name = "slab"

    def __init__(self, pmm=None, vmm=None) -> None:
        self._pmm = pmm
        self._vmm = vmm
        self._brk = 0
        self._committed = 0
        self._ready = False
        self._caches = [SlabCache(size) for size in CACHE_SIZES]
        self._slabs: dict[int, SlabHeader] = {}

    @property
    def caches(self) -> tuple:
        return tuple(self._caches)

    @property
    def brk(self) -> int:
        """Next unused virtual page of the heap window."""
        return self._brk

    def init(self, start: int, size: int) -> None:
        self._brk = start
        self._committed = start + size
        self._caches = [SlabCache(obj_size) for obj_size in CACHE_SIZES]
        self._slabs = {}
        self._ready = True

    def _get_page(self) -> int:
        if self._brk >= KHEAP_END:
            raise MemoryError("heap limit reached")
        virt = self._brk
        if self._brk >= self._committed:
            if self._pmm is None or self._vmm is None:
                raise MemoryError("heap exhausted and no page source available")
            phys = self._pmm.alloc_page()
            try:
                self._vmm.map_page(virt, phys, PTE_PRESENT | PTE_WRITABLE)
            except (MemoryError, VmmError) as exc:
                self._pmm.free_page(phys)
                raise MemoryError(f"vmm_map_page failed at 0x{virt:08x}") from exc
            self._committed += PAGE_SIZE
        self._brk += PAGE_SIZE
        return virt

    def _create(self, cache_idx: int) -> SlabHeader:
        page = self._get_page()
        obj_size = CACHE_SIZES[cache_idx]
        capacity = min((PAGE_SIZE - SLAB_HDR_SIZE) // obj_size, MAX_OBJECTS)
        slab = SlabHeader(page, cache_idx, obj_size, capacity)
        self._slabs[page] = slab
        return slab

    def alloc(self, size: int) -> int:
        if not self._ready:
            raise HeapError("slab heap is not initialised")
        if size <= 0:
            raise ValueError("allocation size must be positive")
        ci = find_cache(size)
        if ci is None:
            raise MemoryError(f"size {size} exceeds max cache {CACHE_SIZES[-1]}")

        cache = self._caches[ci]
        if not cache.partial:
            cache.partial.append(self._create(ci))
        slab = cache.partial[0]
        slot = slab.take()
        if slab.free_count == 0:
            cache.partial.pop(0)
            cache.full.insert(0, slab)
        return slab.object_addr(slot)

    def free(self, ptr: Optional[int]) -> None:
        if not ptr:
            return
        page = ptr & ~(PAGE_SIZE - 1)
        slab = self._slabs.get(page)
        if slab is None:
            raise HeapError(f"invalid free 0x{ptr:08x} (not a slab page)")
        offset = ptr - page - SLAB_HDR_SIZE
        slot = offset // slab.obj_size
        if offset < 0 or slot >= slab.capacity:
            raise HeapError(f"invalid free 0x{ptr:08x} (slot={slot} >= cap={slab.capacity})")
        if slab.is_free(slot):
            raise HeapError(f"double free 0x{ptr:08x}")

        was_full = slab.free_count == 0
        slab.give(slot)
        if was_full:
            cache = self._caches[slab.cache_idx]
            cache.full.remove(slab)
            cache.partial.insert(0, slab)

    def stats(self) -> HeapStats:
        alloc_count = used = free_count = free_bytes = 0
        for cache in self._caches:
            for slab in cache.partial:
                in_use = slab.capacity - slab.free_count
                alloc_count += in_use
                used += in_use * slab.obj_size
                free_count += slab.free_count
                free_bytes += slab.free_count * slab.obj_size
            for slab in cache.full:
                alloc_count += slab.capacity
                used += slab.capacity * slab.obj_size
        return HeapStats(
            heap_size=self._brk - KHEAP_START if self._brk > KHEAP_START else 0,
            used_bytes=used,
            free_bytes=free_bytes,
            alloc_count=alloc_count,
            free_count=free_count,
        )