[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "initrdtools"
version = "0.1.0"
description = "Tools to inspect, extract, build and populate initramfs images"
requires-python = ">=3.10"
keywords = ["initrd", "initramfs", "cpio", "bootconfig", "kernel-modules"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Boot",
    "Topic :: System :: Archiving",
]
dependencies = [
    "zstandard",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
initrd-ls = "initrdtools.ls:main"
initrd-extract = "initrdtools.extract:main"
gen-init-cpio = "initrdtools.gen_init_cpio:main"
initrd-put = "initrdtools.put:main"
initrd-scanmod = "initrdtools.scanmod:main"

[tool.hatch.build.targets.wheel]
packages = ["initrdtools"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
