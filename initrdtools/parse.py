"""Splitting an initramfs image into its cpio archives and bootconfig."""

from __future__ import annotations

from .cpio import CpioArchive, CpioType, read_cpio
from .decompress import DecompressError, decompress_method

BOOTCONFIG_MAGIC = b"#BOOTCONFIG\n"
# Grub may align the initrd size to 4 bytes, so the magic can sit up to
# three bytes before the end of the image.
_BOOTCONFIG_SLACK = 4
_BOOTCONFIG_HEADER = 8


class ParseError(Exception):
    """Raised when an initramfs image cannot be split into parts."""


def _find_bootconfig_magic(data: bytes) -> int | None:
    last = len(data) - len(BOOTCONFIG_MAGIC)
    for pos in range(last, last - _BOOTCONFIG_SLACK, -1):
        if pos < 0:
            return None
        if data[pos:pos + len(BOOTCONFIG_MAGIC)] == BOOTCONFIG_MAGIC:
            return pos
    return None


def _split_bootconfig(data: bytes) -> tuple[bytes, CpioArchive | None]:
    pos = _find_bootconfig_magic(data)
    if pos is None:
        return data, None

    header = pos - _BOOTCONFIG_HEADER
    if header < 0:
        raise ParseError("bootconfig header is truncated")
    size = int.from_bytes(data[header:header + 4], "little")
    if size > len(data):
        raise ParseError(
            f"bootconfig size {size} is greater than initrd size {len(data)}"
        )
    start = header - size
    if start < 0:
        raise ParseError(f"bootconfig size {size} does not fit in the initrd")

    bootconfig = CpioArchive(
        type=CpioType.BOOTCONFIG,
        compress=None,
        raw=data[start:start + size],
        size=size,
    )
    return data[:start], bootconfig


def _read_parts(data: bytes, compress: str | None, parts: list[CpioArchive]) -> None:
    offset = 0
    while offset < len(data):
        rest = data[offset:]
        name, decompressor = decompress_method(rest)
        if decompressor is not None:
            try:
                unpacked, consumed = decompressor(rest)
            except DecompressError as exc:
                raise ParseError(f"{name} decompressor failed: {exc}") from exc
            if consumed <= 0:
                raise ParseError(f"{name} decompressor consumed no input")
            _read_parts(unpacked, name, parts)
            offset += consumed
            continue

        headers, used = read_cpio(rest)
        parts.append(
            CpioArchive(
                type=CpioType.ARCHIVE,
                compress=compress,
                raw=rest,
                size=len(rest),
                headers=headers,
            )
        )
        offset += used


def read_stream(data: bytes, compress: str | None = "raw") -> list[CpioArchive]:
    """Return every part of an initramfs image in the order found.

    Compressed streams are unpacked and searched recursively. A bootconfig
    block appended to the image is reported as the last part.
    """
    data = bytes(data)
    data, bootconfig = _split_bootconfig(data)
    parts: list[CpioArchive] = []
    _read_parts(data, compress, parts)
    if bootconfig is not None:
        parts.append(bootconfig)
    return parts