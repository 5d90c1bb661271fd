"""Boot information and the interface every physical page allocator provides."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Optional

from .layout import PhysicalMemory


class PmmError(Exception):
    """Invalid use of the physical memory manager (bad or double free)."""


@dataclass
class BootContext:
    """What the boot loader hands over: RAM, the Multiboot2 info and kernel bounds."""

    memory: PhysicalMemory
    mb2_info: Optional[int] = None
    kernel_phys_start: int = 0x00100000
    kernel_phys_end: int = 0x00100000

    def mb2_size(self) -> int:
        """Total size of the Multiboot2 information block."""
        if self.mb2_info is None:
            raise PmmError("no multiboot2 info")
        return self.memory.read_u32(self.mb2_info)

    def mb2_bytes(self) -> bytes:
        """The raw Multiboot2 information block."""
        return self.memory.read(self.mb2_info, self.mb2_size())


class PmmBackend(abc.ABC):
    """A physical page allocator.

    Addresses are physical. ``alloc_page`` raises MemoryError when nothing is
    free; ``free_page`` ignores page 0 and raises PmmError for unaligned,
    out-of-range or double frees. Queries on an uninitialised backend report
    zero pages; ``page_addr`` and ``page_is_used`` raise IndexError for an
    index they do not manage.
    """

    name: str

    @abc.abstractmethod
    def init(self, boot: BootContext) -> None:
        """Build the allocator from the boot memory map."""

    @abc.abstractmethod
    def alloc_page(self) -> int:
        """Allocate one 4 KiB page and return its physical address."""

    @abc.abstractmethod
    def free_page(self, page: int) -> None:
        """Return a page obtained from alloc_page."""

    @abc.abstractmethod
    def total_pages(self) -> int:
        """Number of pages managed."""

    @abc.abstractmethod
    def free_pages(self) -> int:
        """Number of pages currently free."""

    @abc.abstractmethod
    def managed_base(self) -> int:
        """Lowest managed physical address, 0 when uninitialised."""

    @abc.abstractmethod
    def page_addr(self, page_index: int) -> int:
        """Physical address of a global page index."""

    @abc.abstractmethod
    def page_is_used(self, page_index: int) -> bool:
        """Whether the page at a global index is allocated."""