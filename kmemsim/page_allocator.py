"""Front end of the physical memory manager: forwards to a pluggable backend."""

from __future__ import annotations

import logging
from typing import Optional

from .layout import PmmBackendKind
from .pmm import BootContext, PmmBackend
from .pmm_bitmap import BitmapBackend
from .pmm_buddy import BuddyBackend

log = logging.getLogger(__name__)


def make_backend(kind: PmmBackendKind) -> PmmBackend:
    """Create a fresh, uninitialised backend of the given kind."""
    kind = PmmBackendKind(kind)
    if kind is PmmBackendKind.BITMAP:
        return BitmapBackend()
    return BuddyBackend()


class PhysicalMemoryManager:
    """Physical page allocator that delegates every call to its backend.

    Without a registered backend the manager holds no pages: allocation raises
    MemoryError, frees are ignored and page lookups raise IndexError.
    ``init`` falls back to the bitmap backend when none was registered.
    """

    def __init__(self, backend: Optional[PmmBackend] = None) -> None:
        self._backend = backend

    @property
    def backend(self) -> Optional[PmmBackend]:
        return self._backend

    def register_backend(self, backend: PmmBackend) -> None:
        """Select the backend used from now on."""
        self._backend = backend

    def backend_name(self) -> Optional[str]:
        """Name of the current backend, or None when none is registered."""
        return self._backend.name if self._backend is not None else None

    def init(self, boot: BootContext) -> None:
        """Initialise the backend, choosing the bitmap one if none is set."""
        if self._backend is None:
            self._backend = make_backend(PmmBackendKind.BITMAP)
        log.info("[pmm] backend: %s", self._backend.name)
        self._backend.init(boot)

    def alloc_page(self) -> int:
        if self._backend is None:
            raise MemoryError("no physical memory backend registered")
        return self._backend.alloc_page()

    def free_page(self, page: int) -> None:
        if self._backend is None:
            return
        self._backend.free_page(page)

    def total_pages(self) -> int:
        return self._backend.total_pages() if self._backend is not None else 0

    def free_pages(self) -> int:
        return self._backend.free_pages() if self._backend is not None else 0

    def managed_base(self) -> int:
        return self._backend.managed_base() if self._backend is not None else 0

    def page_addr(self, page_index: int) -> int:
        if self._backend is None:
            raise IndexError("no physical memory backend registered")
        return self._backend.page_addr(page_index)

    def page_is_used(self, page_index: int) -> bool:
        if self._backend is None:
            raise IndexError("no physical memory backend registered")
        return self._backend.page_is_used(page_index)