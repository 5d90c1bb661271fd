"""Two-level 32-bit page tables with identity and high-half kernel mappings."""

from __future__ import annotations

import logging
from typing import Optional

from .layout import (
    ADDRESS_MASK,
    ENTRIES_PER_PD,
    ENTRIES_PER_PT,
    FLAGS_MASK,
    FRAME_MASK,
    KERNEL_VIRT_OFFSET,
    PAGE_SIZE,
    PDE_PRESENT,
    PDE_WRITABLE,
    PTE_PRESENT,
    PTE_WRITABLE,
    align_up,
    pd_index,
    pt_index,
)
from .pmm import BootContext

log = logging.getLogger(__name__)

MIN_MAP = 16 * 1024 * 1024
MAX_MAP = 0x40000000
ALLOC_ALIGN = 0x400000


class VmmError(Exception):
    """Invalid use of the virtual memory manager."""


class VirtualMemoryManager:
    """Kernel page directory whose page tables live in simulated physical RAM.

    Page tables are taken from the physical page allocator ``pmm`` and
    written into ``boot.memory``; the directory itself is kernel static data.
    """

    def __init__(self, pmm, boot: BootContext) -> None:
        self._pmm = pmm
        self._memory = boot.memory
        self._kernel_phys_end = boot.kernel_phys_end
        self._pd = [0] * ENTRIES_PER_PD
        self._ready = False
        self._next_vaddr = 0
        self.map_end = 0
        self.tlb_flushes = 0
        self.cr3_loads = 0

    @property
    def next_vaddr(self) -> int:
        """Start of the next alloc_pages range, 0 before init."""
        return self._next_vaddr

    # -------------------------------------------------------------- helpers

    def _ensure_page_table(self, pdi: int) -> int:
        pde = self._pd[pdi]
        if pde & PDE_PRESENT:
            return pde & FRAME_MASK
        try:
            pt_phys = self._pmm.alloc_page()
        except MemoryError:
            log.error("[vmm] FATAL: cannot alloc page table for PD[%u]", pdi)
            raise
        self._memory.zero_page(pt_phys)
        self._pd[pdi] = pt_phys | PDE_PRESENT | PDE_WRITABLE
        return pt_phys

    def _pte_addr(self, virt: int) -> Optional[int]:
        pde = self._pd[pd_index(virt)]
        if not pde & PDE_PRESENT:
            return None
        return (pde & FRAME_MASK) + pt_index(virt) * 4

    def _invalidate(self) -> None:
        if self._ready:
            self.tlb_flushes += 1

    # ------------------------------------------------------------- mapping

    def map_page(self, virt: int, phys: int, flags: int) -> None:
        """Map the virtual page virt to the physical page phys.

        Raises VmmError for unaligned addresses and MemoryError when no page
        is left for a new page table.
        """
        if (virt & FLAGS_MASK) or (phys & FLAGS_MASK):
            raise VmmError(f"map: unaligned virt=0x{virt:08x} phys=0x{phys:08x}")
        if not (0 <= virt <= ADDRESS_MASK and 0 <= phys <= ADDRESS_MASK):
            raise VmmError(f"map: address out of range virt=0x{virt:x} phys=0x{phys:x}")
        pt_phys = self._ensure_page_table(pd_index(virt))
        self._memory.write_u32(pt_phys + pt_index(virt) * 4,
                               (phys & FRAME_MASK) | (flags & FLAGS_MASK))
        self._invalidate()

    def unmap_page(self, virt: int) -> None:
        """Remove the mapping of virt; the physical page is not freed."""
        if virt & FLAGS_MASK:
            return
        addr = self._pte_addr(virt)
        if addr is None:
            return
        self._memory.write_u32(addr, 0)
        self._invalidate()

    def init(self) -> None:
        """Build identity and high-half mappings for all managed RAM."""
        log.info("[vmm] init: replacing boot PSE with 4KiB page tables...")
        self._ready = False
        self._pd = [0] * ENTRIES_PER_PD

        map_end = max(self._kernel_phys_end, MIN_MAP)
        pmm_end = self._pmm.managed_base() + self._pmm.total_pages() * PAGE_SIZE
        map_end = min(max(map_end, pmm_end), MAX_MAP)
        map_end = align_up(map_end, PAGE_SIZE)
        log.info("[vmm] mapping phys 0x00000000 - 0x%08x", map_end)

        flags = PTE_PRESENT | PTE_WRITABLE
        for addr in range(0, map_end, PAGE_SIZE):
            try:
                self.map_page(addr, addr, flags)
            except MemoryError as exc:
                raise VmmError(f"identity map failed at 0x{addr:08x}") from exc
            high = addr + KERNEL_VIRT_OFFSET
            try:
                self.map_page(high, addr, flags)
            except MemoryError as exc:
                raise VmmError(f"high-half map failed at 0x{high:08x}") from exc

        pages_mapped = map_end // PAGE_SIZE
        tables = (pages_mapped + ENTRIES_PER_PT - 1) // ENTRIES_PER_PT * 2
        self.cr3_loads += 1
        self._ready = True
        self.map_end = map_end

        log.info("[vmm] 4KiB paging active! mapped %u KiB (%u pages, %u page tables)",
                 map_end // 1024, pages_mapped * 2, tables)
        log.info("[vmm] identity:  0x00000000 - 0x%08x", map_end)
        log.info("[vmm] high-half: 0x%08x - 0x%08x",
                 KERNEL_VIRT_OFFSET, KERNEL_VIRT_OFFSET + map_end)

        self._next_vaddr = align_up(KERNEL_VIRT_OFFSET + map_end, ALLOC_ALIGN)
        log.info("[vmm] alloc area: 0x%08x - 0xFFFFFFFF", self._next_vaddr)

    def unmap_identity(self) -> int:
        """Drop every low (user-space) directory entry; return how many."""
        if not self._ready:
            return 0
        cleared = 0
        for i in range(pd_index(KERNEL_VIRT_OFFSET)):
            if self._pd[i] & PDE_PRESENT:
                self._pd[i] = 0
                cleared += 1
        self.cr3_loads += 1
        log.info("[vmm] identity mapping removed (%u PDEs cleared)", cleared)
        return cleared

    # ------------------------------------------------------------- queries

    def is_ready(self) -> bool:
        return self._ready

    def _check_query(self, virt: int) -> None:
        if not self._ready:
            raise VmmError("virtual memory manager is not initialised")
        if virt & FLAGS_MASK:
            raise VmmError(f"unaligned address 0x{virt:08x}")

    def is_mapped(self, virt: int) -> bool:
        """Whether the page at virt is present."""
        self._check_query(virt)
        addr = self._pte_addr(virt)
        return addr is not None and bool(self._memory.read_u32(addr) & PTE_PRESENT)

    def get_physical(self, virt: int) -> Optional[int]:
        """Physical page mapped at virt, or None when unmapped."""
        self._check_query(virt)
        addr = self._pte_addr(virt)
        if addr is None:
            return None
        pte = self._memory.read_u32(addr)
        if not pte & PTE_PRESENT:
            return None
        return pte & FRAME_MASK

    def get_pde(self, pd_idx: int) -> int:
        """Raw directory entry; 0 before init."""
        if not 0 <= pd_idx < ENTRIES_PER_PD:
            raise IndexError(f"page directory index {pd_idx} out of range")
        return self._pd[pd_idx] if self._ready else 0

    def get_pte(self, virt: int) -> int:
        """Raw table entry for virt; 0 when absent or before init."""
        if not self._ready:
            return 0
        addr = self._pte_addr(virt)
        return self._memory.read_u32(addr) if addr is not None else 0

    # ----------------------------------------------------- page allocation

    def alloc_pages(self, count: int) -> int:
        """Map count fresh physical pages at consecutive virtual addresses.

        The virtual range is never reused. On failure every page already
        mapped is released and MemoryError is raised.
        """
        if count <= 0:
            raise ValueError("count must be positive")
        if not self._ready or not self._next_vaddr:
            raise VmmError("virtual memory manager is not initialised")

        start = self._next_vaddr
        total = count * PAGE_SIZE
        if total > ADDRESS_MASK - start:
            raise MemoryError("virtual address space exhausted")
        self._next_vaddr = start + total

        flags = PTE_PRESENT | PTE_WRITABLE
        try:
            for virt in range(start, start + total, PAGE_SIZE):
                phys = self._pmm.alloc_page()
                try:
                    self.map_page(virt, phys, flags)
                except MemoryError:
                    self._pmm.free_page(phys)
                    raise
        except MemoryError:
            self._release(start, count)
            raise
        return start

    def _release(self, start: int, count: int) -> None:
        for virt in range(start, start + count * PAGE_SIZE, PAGE_SIZE):
            phys = self.get_physical(virt)
            if phys is not None:
                self._pmm.free_page(phys)
                self.unmap_page(virt)

    def free_pages(self, vaddr: int, count: int) -> None:
        """Free the physical pages behind a range from alloc_pages and unmap it."""
        if not vaddr or count <= 0 or not self._ready:
            return
        for virt in range(vaddr, vaddr + count * PAGE_SIZE, PAGE_SIZE):
            phys = self.get_physical(virt)
            if phys is not None:
                self._pmm.free_page(phys)
            self.unmap_page(virt)