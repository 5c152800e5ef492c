"""Reading the metadata of Linux kernel module files."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field

from .decompress import DecompressError, gunzip, unlzma, unzstd

ELF_MAGIC = b"\x7fELF"
SHT_SYMTAB = 2
SHT_NOBITS = 8
SHN_UNDEF = 0
KSYMTAB_PREFIX = "__ksymtab_"

_ELF_HEADER = {1: "HHIIIIIHHHHHH", 2: "HHIQQQIHHHHHH"}
_ELF_SECTION = {1: "IIIIIIIIII", 2: "IIQQQQIIQQ"}
_ELF_SYMBOL = {1: "IIIBBH", 2: "IBBHQQ"}
_SYMBOL_SHNDX = {1: 5, 2: 3}
_SHN_XINDEX = 0xFFFF

_COMPRESSED = (
    (b"\x1f\x8b", gunzip),
    (b"\xfd7zXZ", unlzma),
    (b"\x28\xb5\x2f\xfd", unzstd),
)


@dataclass
class ModuleInfo:
    """What a kernel module file declares about itself."""

    path: str
    name: str
    info: list[tuple[str, str | None]] = field(default_factory=list)
    symbols: list[str] = field(default_factory=list)
    dependency_symbols: list[str] = field(default_factory=list)


@dataclass
class _Section:
    name: str
    type: int
    data: bytes
    link: int
    entsize: int


@dataclass
class _Elf:
    order: str
    elf_class: int
    sections: list[_Section]

    def section(self, name: str) -> _Section | None:
        return next((s for s in self.sections if s.name == name), None)


def is_kernel_modname(filename: str | os.PathLike[str]) -> bool:
    """Tell whether filename looks like a kernel module (.ko, .ko.gz, .ko.xz)."""
    name = os.fspath(filename)
    if len(name) < 3:
        return False
    if name.endswith(".ko"):
        return True
    if len(name) <= 6:
        return False
    return name.endswith((".ko.gz", ".ko.xz"))


def _module_name(path: str) -> str:
    return os.path.basename(path).split(".", 1)[0].replace("-", "_")


def _cstring(table: bytes, offset: int) -> str:
    if offset >= len(table):
        return ""
    end = table.find(b"\0", offset)
    if end < 0:
        end = len(table)
    return table[offset:end].decode("utf-8", "surrogateescape")


def _parse_elf(data: bytes) -> _Elf:
    if len(data) < 16 or data[:4] != ELF_MAGIC:
        raise ValueError("not an ELF file")
    elf_class, encoding = data[4], data[5]
    if elf_class not in _ELF_HEADER or encoding not in (1, 2):
        raise ValueError("unsupported ELF class or data encoding")
    order = "<" if encoding == 1 else ">"

    header = struct.unpack_from(order + _ELF_HEADER[elf_class], data, 16)
    shoff, shentsize, shnum, shstrndx = header[5], header[10], header[11], header[12]
    if shoff == 0:
        return _Elf(order, elf_class, [])

    entry = struct.Struct(order + _ELF_SECTION[elf_class])
    if shentsize < entry.size:
        raise ValueError("bad section header size")

    def raw(index: int) -> tuple[int, ...]:
        return entry.unpack_from(data, shoff + index * shentsize)

    if shnum == 0:
        shnum = raw(0)[5]
    if shstrndx == _SHN_XINDEX:
        shstrndx = raw(0)[6]
    headers = [raw(index) for index in range(shnum)]

    def contents(hdr: tuple[int, ...]) -> bytes:
        if hdr[1] == SHT_NOBITS:
            return b""
        offset, size = hdr[4], hdr[5]
        if offset + size > len(data):
            raise ValueError("section lies outside the file")
        return data[offset:offset + size]

    names = contents(headers[shstrndx]) if 0 < shstrndx < shnum else b""
    sections = [
        _Section(_cstring(names, hdr[0]), hdr[1], contents(hdr), hdr[6], hdr[9])
        for hdr in headers
    ]
    return _Elf(order, elf_class, sections)


def _symtab(elf: _Elf) -> list[tuple[str, int]]:
    symtab = next((s for s in elf.sections if s.type == SHT_SYMTAB), None)
    if symtab is None:
        return []
    strtab = elf.sections[symtab.link].data if symtab.link < len(elf.sections) else b""
    fmt = struct.Struct(elf.order + _ELF_SYMBOL[elf.elf_class])
    step = max(symtab.entsize, fmt.size)
    shndx_at = _SYMBOL_SHNDX[elf.elf_class]
    symbols = []
    # Entry 0 is the reserved null symbol.
    for offset in range(step, len(symtab.data) - fmt.size + 1, step):
        fields = fmt.unpack_from(symtab.data, offset)
        symbols.append((_cstring(strtab, fields[0]), fields[shndx_at]))
    return symbols


def _strings(data: bytes) -> list[str]:
    return [s.decode("utf-8", "surrogateescape") for s in data.split(b"\0") if s]


def _info(elf: _Elf) -> list[tuple[str, str | None]]:
    section = elf.section(".modinfo")
    if section is None:
        return []
    pairs: list[tuple[str, str | None]] = []
    for item in _strings(section.data):
        key, sep, value = item.partition("=")
        pairs.append((key, value if sep else None))
    return pairs


def _exported(elf: _Elf, symtab: list[tuple[str, int]]) -> list[str]:
    section = elf.section("__ksymtab_strings")
    if section is not None:
        return _strings(section.data)
    return [name[len(KSYMTAB_PREFIX):] for name, _ in symtab
            if name.startswith(KSYMTAB_PREFIX)]


def _decompress(data: bytes, path: str) -> bytes:
    if data.startswith(ELF_MAGIC):
        return data
    for magic, decompressor in _COMPRESSED:
        if data.startswith(magic):
            try:
                return decompressor(data)[0]
            except DecompressError as exc:
                raise ValueError(f"{path}: {exc}") from exc
    raise ValueError(f"{path}: not a kernel module")


def read_module(path: str | os.PathLike[str]) -> ModuleInfo:
    """Read a kernel module, compressed or not, and return its metadata.

    Raises OSError if the file cannot be read and ValueError if it is not
    a usable ELF object.
    """
    path = os.path.abspath(os.fspath(path))
    with open(path, "rb") as f:
        data = f.read()
    data = _decompress(data, path)
    try:
        elf = _parse_elf(data)
        symtab = _symtab(elf)
    except struct.error as exc:
        raise ValueError(f"{path}: truncated ELF file") from exc

    return ModuleInfo(
        path=path,
        name=_module_name(path),
        info=_info(elf),
        symbols=_exported(elf, symtab),
        dependency_symbols=[name for name, shndx in symtab
                            if shndx == SHN_UNDEF and name],
    )