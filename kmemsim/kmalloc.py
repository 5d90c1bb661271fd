"""Kernel heap front end: maps the initial heap and forwards to a pluggable backend."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Optional

from .layout import (
    KHEAP_MAX_SIZE,
    KHEAP_START,
    PAGE_SIZE,
    PTE_PRESENT,
    PTE_WRITABLE,
    KernelConfig,
)
from .vmm import VmmError

log = logging.getLogger(__name__)


class HeapError(Exception):
    """The kernel heap is unavailable or was misused."""


@dataclass(frozen=True)
class HeapStats:
    """Snapshot of heap usage."""

    heap_size: int = 0
    used_bytes: int = 0
    free_bytes: int = 0
    alloc_count: int = 0
    free_count: int = 0


class HeapBackend(abc.ABC):
    """A byte-granular allocator working inside the kernel heap window.

    ``alloc`` raises ValueError for a non-positive size and MemoryError when
    the request cannot be met; ``free`` ignores a null pointer.
    """

    name: str

    @abc.abstractmethod
    def init(self, start: int, size: int) -> None:
        """Take over the already mapped range [start, start + size)."""

    @abc.abstractmethod
    def alloc(self, size: int) -> int:
        """Allocate at least size bytes, 8-byte aligned; return the address."""

    @abc.abstractmethod
    def free(self, ptr: Optional[int]) -> None:
        """Release a block returned by alloc."""

    @abc.abstractmethod
    def stats(self) -> HeapStats:
        """Current usage figures."""


class KernelHeap:
    """The kernel heap: maps its first pages, then delegates to a backend."""

    def __init__(self, pmm, vmm, config: Optional[KernelConfig] = None,
                 backend: Optional[HeapBackend] = None) -> None:
        self._pmm = pmm
        self._vmm = vmm
        self._config = config if config is not None else KernelConfig()
        self._backend = backend

    @property
    def backend(self) -> Optional[HeapBackend]:
        return self._backend

    def register_backend(self, backend: HeapBackend) -> None:
        """Select the backend used from now on."""
        self._backend = backend

    def backend_name(self) -> Optional[str]:
        """Name of the current backend, or None when none is registered."""
        return self._backend.name if self._backend is not None else None

    def init(self) -> None:
        """Map the initial heap pages at KHEAP_START and start the backend."""
        if self._backend is None:
            raise HeapError("no backend registered, heap unavailable")
        log.info("[kmalloc] backend: %s", self._backend.name)

        pages = self._config.heap_initial_pages
        initial_size = pages * PAGE_SIZE
        flags = PTE_PRESENT | PTE_WRITABLE

        for i in range(pages):
            virt = KHEAP_START + i * PAGE_SIZE
            try:
                phys = self._pmm.alloc_page()
            except MemoryError as exc:
                raise HeapError(f"PMM OOM at page {i}") from exc
            try:
                self._vmm.map_page(virt, phys, flags)
            except (MemoryError, VmmError) as exc:
                self._pmm.free_page(phys)
                raise HeapError(f"map failed at 0x{virt:08x}") from exc

        self._backend.init(KHEAP_START, initial_size)
        log.info("[kmalloc] heap at 0x%08x, initial %u KiB, max %u MiB",
                 KHEAP_START, initial_size // 1024, KHEAP_MAX_SIZE // (1024 * 1024))

    def kmalloc(self, size: int) -> int:
        """Allocate size bytes from the heap."""
        if self._backend is None:
            raise MemoryError("no heap backend registered")
        return self._backend.alloc(size)

    def kfree(self, ptr: Optional[int]) -> None:
        """Free a block; ignored when no backend is registered."""
        if self._backend is None:
            return
        self._backend.free(ptr)

    def stats(self) -> HeapStats:
        """Usage figures of the current backend."""
        if self._backend is None:
            raise HeapError("no backend registered, heap unavailable")
        return self._backend.stats()