"""Simulated 32-bit kernel memory management: Multiboot2 memory maps, bitmap and buddy page allocators, paging and a slab kernel heap."""

__version__ = "0.1.0"

__all__ = [
    "layout",
    "multiboot2",
    "pmm",
    "pmm_bitmap",
    "pmm_buddy",
    "page_allocator",
    "vmm",
    "kmalloc",
    "heap_slab",
]