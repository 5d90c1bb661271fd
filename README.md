# kmemsim

`kmemsim` simulates the memory subsystem of a small 32-bit x86 kernel in plain
Python, against a sparse simulated physical RAM. It is meant for studying and
testing allocator algorithms without booting a machine. It has no runtime
dependencies.

## Modules

- `kmemsim.layout` — address-space constants (4 KiB pages, the kernel direct
  map at `0xC0000000`, the heap window at `0xE0000000`–`0xF0000000`, PTE/PDE
  flags), `phys_to_virt` / `virt_to_phys`, `pd_index` / `pt_index`,
  `align_up` / `align_down`, the `KernelConfig` dataclass with the
  `PmmBackendKind` and `HeapBackendKind` enums, and `PhysicalMemory`, a
  zero-initialised byte-addressable RAM with `read`, `write`, `read_u32`,
  `write_u32` and `zero_page`.
- `kmemsim.multiboot2` — `build_info` encodes a Multiboot2 information block
  holding one memory-map tag; `find_tag` and `parse_memory_map` read one back;
  `best_available_region` picks the largest usable region at or above 1 MiB;
  `memory_map_report` returns the human-readable dump and summary.
- `kmemsim.pmm` — `BootContext` (RAM, address of the Multiboot2 info, kernel
  image bounds) and the abstract `PmmBackend` interface.
- `kmemsim.pmm_bitmap` — `BitmapBackend`, one bitmap per usable RAM region (up
  to 32), with `compute_region_layout`, `selftest` and `summary`.
- `kmemsim.pmm_buddy` — `BuddyBackend`, a buddy system with orders 0 to 10 over
  the largest usable region, with `order_counts` and `selftest`.
- `kmemsim.page_allocator` — `PhysicalMemoryManager` forwards every call to
  its registered backend and falls back to the bitmap backend in `init` when
  none is registered; `make_backend(kind)` creates a backend from a
  `PmmBackendKind`.
- `kmemsim.vmm` — `VirtualMemoryManager`: two-level page tables stored in the
  simulated RAM, identity and high-half mappings built by `init`,
  `map_page` / `unmap_page` / `unmap_identity`, lookups (`is_mapped`,
  `get_physical`, `get_pde`, `get_pte`) and page-granular
  `alloc_pages` / `free_pages` from a bump allocator whose virtual range is
  never reused.
- `kmemsim.kmalloc` — `KernelHeap` maps the initial heap pages
  (`KernelConfig.heap_initial_pages`, 16 by default) and forwards `kmalloc`,
  `kfree` and `stats` to a `HeapBackend`; usage is reported as `HeapStats`.
- `kmemsim.heap_slab` — `SlabHeap`, caches of 32 to 2048 bytes built from
  one-page slabs; once the pre-mapped pages are used it takes more from the
  page allocator and maps them through the VMM. `find_cache` gives the cache
  index for a size.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from kmemsim.heap_slab import SlabHeap
from kmemsim.kmalloc import KernelHeap
from kmemsim.layout import PhysicalMemory
from kmemsim.multiboot2 import MemoryMapEntry, build_info, memory_map_report
from kmemsim.page_allocator import PhysicalMemoryManager
from kmemsim.pmm import BootContext
from kmemsim.pmm_buddy import BuddyBackend
from kmemsim.vmm import VirtualMemoryManager

info = build_info([
    MemoryMapEntry(addr=0x0, length=0x9FC00, type=1),
    MemoryMapEntry(addr=0x100000, length=0xF00000, type=1),
])
print(memory_map_report(info))

memory = PhysicalMemory()
memory.write(0x10000, info)
boot = BootContext(memory=memory, mb2_info=0x10000,
                   kernel_phys_start=0x100000, kernel_phys_end=0x200000)

pmm = PhysicalMemoryManager()
pmm.register_backend(BuddyBackend())
pmm.init(boot)

vmm = VirtualMemoryManager(pmm, boot)
vmm.init()

heap = KernelHeap(pmm, vmm)
heap.register_backend(SlabHeap(pmm, vmm))
heap.init()
ptr = heap.kmalloc(50)      # served by the 64-byte cache
heap.kfree(ptr)
print(heap.stats())
```

Progress and diagnostics are written through the standard `logging` module
under the `kmemsim.*` logger names.

## Errors

- `MultibootError` / `TagNotFound` for a malformed information block or a
  missing tag.
- `PmmError` for an unaligned, out-of-range or double page free, and for a
  failed self-test. `alloc_page` raises `MemoryError` when no page is free;
  `page_addr` / `page_is_used` raise `IndexError` for an index not managed.
- `VmmError` for an unaligned mapping, a query before `init`, or a failed
  mapping during `init`. Running out of pages raises `MemoryError`.
- `HeapError` when no heap backend is registered, when the slab heap is used
  before `init`, and for an invalid or double free. A request larger than
  2048 bytes, or one that cannot be backed by a page, raises `MemoryError`;
  a size of zero or less raises `ValueError`.

## What it does not do

- There is no command-line tool or interactive shell; the package is used as a
  library.
- `SlabHeap` is the only heap backend. `HeapBackendKind.FIRST_FIT` exists in
  `KernelConfig`, but the package has no first-fit backend, and `KernelHeap`
  does not pick a backend by itself: one must be registered before `init`.
- Nothing touches real hardware: CR3 loads and TLB flushes are only counted
  (`VirtualMemoryManager.cr3_loads`, `tlb_flushes`).