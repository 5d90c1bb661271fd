import pytest

from kmemsim.layout import PAGE_SIZE, PhysicalMemory
from kmemsim.multiboot2 import build_info
from kmemsim.pmm import BootContext, PmmBackend, PmmError

INFO_ADDR = 0x10000


def make_boot():
    mem = PhysicalMemory()
    info = build_info([(0x100000, 0x400000, 1)])
    mem.write(INFO_ADDR, info)
    return BootContext(memory=mem, mb2_info=INFO_ADDR), info


class _StackBackend(PmmBackend):
    name = "stack"

    def init(self, boot):
        self.info_size = boot.mb2_size()
        self._free = [0x200000 + i * PAGE_SIZE for i in range(4)]
        self._all = list(self._free)

    def alloc_page(self):
        if not self._free:
            raise MemoryError("out of pages")
        return self._free.pop()

    def free_page(self, page):
        self._free.append(page)

    def total_pages(self):
        return len(self._all)

    def free_pages(self):
        return len(self._free)

    def managed_base(self):
        return self._all[0]

    def page_addr(self, page_index):
        return self._all[page_index]

    def page_is_used(self, page_index):
        return self._all[page_index] not in self._free


def test_mb2_size_reads_header():
    boot, info = make_boot()
    assert boot.mb2_size() == len(info)


def test_mb2_bytes_returns_whole_block():
    boot, info = make_boot()
    assert boot.mb2_bytes() == info


def test_missing_info_raises():
    boot = BootContext(memory=PhysicalMemory())
    with pytest.raises(PmmError):
        boot.mb2_size()
    with pytest.raises(PmmError):
        boot.mb2_bytes()


def test_kernel_bounds_default_to_one_mib():
    boot = BootContext(memory=PhysicalMemory())
    assert boot.kernel_phys_start == 0x00100000
    assert boot.kernel_phys_end >= boot.kernel_phys_start


def test_backend_is_abstract():
    with pytest.raises(TypeError):
        PmmBackend()


def test_incomplete_backend_cannot_be_created():
    class Partial(PmmBackend):
        name = "partial"

        def init(self, boot):
            self.info_size = boot.mb2_size()

    with pytest.raises(TypeError):
        Partial()

    class Completed(Partial, _StackBackend):
        pass

    boot, info = make_boot()
    backend = Completed()
    backend.init(boot)
    assert backend.name == "partial"
    assert backend.info_size == len(info)


def test_complete_backend_receives_boot_context():
    boot, info = make_boot()
    backend = _StackBackend()
    backend.init(boot)
    assert backend.info_size == len(info)
    page = backend.alloc_page()
    assert backend.free_pages() == backend.total_pages() - 1
    backend.free_page(page)
    assert backend.free_pages() == backend.total_pages()