[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kmemsim"
version = "0.1.0"
description = "A simulated 32-bit kernel memory subsystem: Multiboot2 memory maps, bitmap and buddy page allocators, two-level paging and a slab heap."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kernel",
    "memory",
    "paging",
    "buddy allocator",
    "slab allocator",
    "bitmap allocator",
    "multiboot2",
    "simulation",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System Kernels",
    "Topic :: Education",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["kmemsim"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
