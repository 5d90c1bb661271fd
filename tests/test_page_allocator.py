import pytest

from kmemsim.layout import PAGE_SIZE, PhysicalMemory, PmmBackendKind
from kmemsim.multiboot2 import build_info
from kmemsim.page_allocator import PhysicalMemoryManager, make_backend
from kmemsim.pmm import BootContext, PmmError
from kmemsim.pmm_bitmap import BitmapBackend
from kmemsim.pmm_buddy import BuddyBackend

MB2_ADDR = 0x10000


def make_boot() -> BootContext:
    memory = PhysicalMemory()
    info = build_info([(0, 0x9FC00, 1), (0x100000, 0x700000, 1), (0xFFFC0000, 0x40000, 2)])
    memory.write(MB2_ADDR, info)
    return BootContext(memory, mb2_info=MB2_ADDR,
                       kernel_phys_start=0x100000, kernel_phys_end=0x180000)


@pytest.fixture(params=[PmmBackendKind.BITMAP, PmmBackendKind.BUDDY])
def manager(request):
    pmm = PhysicalMemoryManager()
    pmm.register_backend(make_backend(request.param))
    pmm.init(make_boot())
    return pmm


def test_make_backend_kinds():
    assert isinstance(make_backend(PmmBackendKind.BITMAP), BitmapBackend)
    assert isinstance(make_backend(PmmBackendKind.BUDDY), BuddyBackend)
    assert make_backend(0).name == "bitmap"
    assert make_backend(1).name == "buddy"


def test_make_backend_rejects_unknown_kind():
    with pytest.raises(ValueError):
        make_backend(7)


def test_backend_name_none_before_registration():
    assert PhysicalMemoryManager().backend_name() is None


def test_init_defaults_to_bitmap():
    pmm = PhysicalMemoryManager()
    pmm.init(make_boot())
    assert pmm.backend_name() == "bitmap"
    assert pmm.total_pages() > 0


def test_registered_backend_is_used():
    backend = BuddyBackend()
    pmm = PhysicalMemoryManager()
    pmm.register_backend(backend)
    pmm.init(make_boot())
    assert pmm.backend_name() == "buddy"
    assert pmm.backend is backend
    assert pmm.total_pages() == backend.total_pages()
    assert pmm.free_pages() == backend.free_pages()


def test_without_backend_nothing_is_available():
    pmm = PhysicalMemoryManager()
    with pytest.raises(MemoryError):
        pmm.alloc_page()
    pmm.free_page(0x200000)
    assert pmm.total_pages() == 0
    assert pmm.free_pages() == 0
    assert pmm.managed_base() == 0


def test_without_backend_lookups_raise():
    pmm = PhysicalMemoryManager()
    with pytest.raises(IndexError):
        pmm.page_addr(0)
    with pytest.raises(IndexError):
        pmm.page_is_used(0)


def test_alloc_free_round_trip(manager):
    before = manager.free_pages()
    page = manager.alloc_page()
    assert page % PAGE_SIZE == 0
    assert manager.free_pages() == before - 1
    idx = (page - manager.managed_base()) // PAGE_SIZE
    assert manager.page_addr(idx) == page
    assert manager.page_is_used(idx) is True
    manager.free_page(page)
    assert manager.free_pages() == before
    assert manager.page_is_used(idx) is False


def test_allocations_are_distinct(manager):
    pages = [manager.alloc_page() for _ in range(20)]
    assert len(set(pages)) == 20
    assert all(p >= manager.managed_base() for p in pages)


def test_double_free_raises(manager):
    page = manager.alloc_page()
    manager.free_page(page)
    with pytest.raises(PmmError):
        manager.free_page(page)


def test_managed_base_is_first_page(manager):
    assert manager.managed_base() == manager.page_addr(0)
    assert manager.managed_base() >= 0x180000


def test_page_index_out_of_range(manager):
    with pytest.raises(IndexError):
        manager.page_addr(manager.total_pages() + 10)


def test_exhaustion_raises_memory_error(manager):
    count = manager.free_pages()
    pages = [manager.alloc_page() for _ in range(count)]
    assert manager.free_pages() == 0
    with pytest.raises(MemoryError):
        manager.alloc_page()
    for page in pages:
        manager.free_page(page)
    assert manager.free_pages() == count