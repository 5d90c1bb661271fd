import pytest
from hypothesis import given, settings, strategies as st

from kmemsim.layout import PAGE_SIZE, PhysicalMemory
from kmemsim.multiboot2 import build_info
from kmemsim.pmm import BootContext, PmmError
from kmemsim.pmm_buddy import MAX_ORDER, BuddyBackend

MB2_ADDR = 0x10000


def make_backend(entries, kernel=(0x100000, 0x100000)):
    memory = PhysicalMemory()
    memory.write(MB2_ADDR, build_info(entries))
    boot = BootContext(memory, MB2_ADDR, kernel[0], kernel[1])
    backend = BuddyBackend()
    backend.init(boot)
    return backend


def small_backend():
    return make_backend([(0, 0x9FC00, 1), (0x100000, 0x200000, 1)])


def large_backend():
    return make_backend([(0, 0x9FC00, 1), (0x100000, 0x7F00000, 1)],
                        kernel=(0x100000, 0x200000))


def pages_in_counts(backend):
    return sum(count << order for order, count in enumerate(backend.order_counts()))


def test_uninitialised_backend_reports_nothing():
    backend = BuddyBackend()
    assert backend.total_pages() == 0
    assert backend.free_pages() == 0
    assert backend.managed_base() == 0
    with pytest.raises(MemoryError):
        backend.alloc_page()
    with pytest.raises(IndexError):
        backend.page_addr(0)
    with pytest.raises(IndexError):
        backend.page_is_used(0)


def test_free_on_uninitialised_backend_is_ignored():
    backend = BuddyBackend()
    backend.free_page(0x1000)
    assert backend.free_pages() == 0


def test_no_multiboot_info_disables():
    backend = BuddyBackend()
    backend.init(BootContext(PhysicalMemory(), None))
    assert not backend.ready
    assert backend.total_pages() == 0


def test_region_too_small_disables():
    backend = make_backend([(0x100000, 31 * PAGE_SIZE, 1)])
    assert not backend.ready
    assert backend.total_pages() == 0


def test_regions_above_4gib_and_reserved_are_ignored():
    backend = make_backend([(0x100000000, 0x10000000, 1), (0x100000, 0x1000000, 2)])
    assert not backend.ready
    with pytest.raises(MemoryError):
        backend.alloc_page()


def test_init_counts_and_layout():
    backend = large_backend()
    assert backend.ready
    assert backend.free_pages() == backend.total_pages()
    assert pages_in_counts(backend) == backend.free_pages()
    base = backend.managed_base()
    assert base % PAGE_SIZE == 0
    assert base >= 0x200000
    assert base + backend.total_pages() * PAGE_SIZE == 0x8000000
    meta_start, meta_end = backend.metadata_range
    assert meta_start == 0x200000
    assert meta_end == base


def test_largest_region_wins():
    backend = make_backend([(0x100000, 0x100000, 1), (0x1000000, 0x400000, 1)])
    assert 0x1000000 <= backend.managed_base() < 0x1400000
    assert backend.managed_base() + backend.total_pages() * PAGE_SIZE == 0x1400000


def test_blocks_use_largest_orders():
    backend = large_backend()
    counts = backend.order_counts()
    assert len(counts) == MAX_ORDER + 1
    assert counts[MAX_ORDER] >= 1
    assert all(count <= 1 for count in counts[:MAX_ORDER])


def test_alloc_returns_managed_aligned_page():
    backend = small_backend()
    page = backend.alloc_page()
    base = backend.managed_base()
    assert page % PAGE_SIZE == 0
    assert base <= page < base + backend.total_pages() * PAGE_SIZE
    assert backend.page_is_used((page - base) // PAGE_SIZE)
    assert backend.free_pages() == backend.total_pages() - 1


def test_alloc_free_restores_counts():
    backend = small_backend()
    before = backend.order_counts()
    pages = [backend.alloc_page() for _ in range(5)]
    assert len(set(pages)) == 5
    for page in pages:
        backend.free_page(page)
    assert backend.free_pages() == backend.total_pages()
    assert backend.order_counts() == before


def test_exhaustion_raises_memory_error():
    backend = small_backend()
    pages = [backend.alloc_page() for _ in range(backend.total_pages())]
    assert len(set(pages)) == backend.total_pages()
    assert backend.free_pages() == 0
    with pytest.raises(MemoryError):
        backend.alloc_page()
    for page in pages:
        backend.free_page(page)
    assert pages_in_counts(backend) == backend.total_pages()


def test_double_free_raises():
    backend = small_backend()
    page = backend.alloc_page()
    other = backend.alloc_page()
    backend.free_page(page)
    with pytest.raises(PmmError, match="double free"):
        backend.free_page(page)
    backend.free_page(other)
    assert backend.free_pages() == backend.total_pages()


def test_invalid_frees_raise():
    backend = small_backend()
    base = backend.managed_base()
    with pytest.raises(PmmError, match="unaligned"):
        backend.free_page(base + 1)
    with pytest.raises(PmmError, match="below managed base"):
        backend.free_page(base - PAGE_SIZE)
    with pytest.raises(PmmError, match="out of range"):
        backend.free_page(base + backend.total_pages() * PAGE_SIZE)


def test_free_zero_is_ignored():
    backend = small_backend()
    backend.free_page(0)
    assert backend.free_pages() == backend.total_pages()


def test_page_addr_and_bounds():
    backend = small_backend()
    assert backend.page_addr(0) == backend.managed_base()
    last = backend.total_pages() - 1
    assert backend.page_addr(last) == backend.managed_base() + last * PAGE_SIZE
    with pytest.raises(IndexError):
        backend.page_addr(backend.total_pages())
    with pytest.raises(IndexError):
        backend.page_is_used(-1)


def test_first_block_head_is_free():
    backend = small_backend()
    assert backend.page_is_used(0) is False


def test_selftest_leaves_counts_unchanged():
    backend = small_backend()
    before = backend.free_pages()
    assert backend.selftest() == 2
    assert backend.free_pages() == before


def test_selftest_uninitialised_returns_zero():
    assert BuddyBackend().selftest() == 0


@settings(max_examples=40, deadline=None)
@given(st.lists(st.tuples(st.booleans(), st.integers(min_value=0, max_value=1000)),
                max_size=80))
def test_random_alloc_free_keeps_invariants(ops):
    backend = small_backend()
    initial = backend.order_counts()
    held = []
    for do_alloc, pick in ops:
        if do_alloc or not held:
            page = backend.alloc_page()
            assert page not in held
            held.append(page)
        else:
            backend.free_page(held.pop(pick % len(held)))
        assert backend.free_pages() == backend.total_pages() - len(held)
        assert pages_in_counts(backend) == backend.free_pages()
    for page in held:
        backend.free_page(page)
    assert backend.order_counts() == initial