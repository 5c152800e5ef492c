"""Detection and decompression of compressed initramfs streams."""

from __future__ import annotations

import bz2
import io
import lzma
import zlib
from collections.abc import Callable

import zstandard


class DecompressError(Exception):
    """Raised when a compressed stream cannot be decoded."""


Decompressor = Callable[[bytes], "tuple[bytes, int]"]


def _finish(obj, data: bytes, what: str) -> tuple[bytes, int]:
    if not obj.eof:
        raise DecompressError(f"{what}: unexpected end of compressed stream")
    return data, 0


def gunzip(data: bytes) -> tuple[bytes, int]:
    """Decode one gzip or zlib stream; return output and bytes consumed."""
    decoder = zlib.decompressobj(zlib.MAX_WBITS | 32)
    try:
        out = decoder.decompress(data)
    except zlib.error as exc:
        raise DecompressError(f"gzip: {exc}") from exc
    if not decoder.eof:
        raise DecompressError("gzip: unexpected end of compressed stream")
    return out, len(data) - len(decoder.unused_data)


def bunzip2(data: bytes) -> tuple[bytes, int]:
    """Decode one bzip2 stream; return output and bytes consumed."""
    decoder = bz2.BZ2Decompressor()
    try:
        out = decoder.decompress(data)
    except (OSError, ValueError) as exc:
        raise DecompressError(f"bzip2: {exc}") from exc
    if not decoder.eof:
        raise DecompressError("bzip2: unexpected end of compressed stream")
    return out, len(data) - len(decoder.unused_data)


def unlzma(data: bytes) -> tuple[bytes, int]:
    """Decode one xz stream; return output and bytes consumed."""
    decoder = lzma.LZMADecompressor(format=lzma.FORMAT_XZ)
    try:
        out = decoder.decompress(data)
    except lzma.LZMAError as exc:
        raise DecompressError(f"xz: {exc}") from exc
    if not decoder.eof:
        raise DecompressError("xz: unexpected end of compressed stream")
    return out, len(data) - len(decoder.unused_data)


def unzstd(data: bytes) -> tuple[bytes, int]:
    """Decode all zstd frames in the input; the whole input is consumed."""
    reader = zstandard.ZstdDecompressor().stream_reader(
        io.BytesIO(data), read_across_frames=True
    )
    try:
        with reader:
            out = reader.read()
    except zstandard.ZstdError as exc:
        raise DecompressError(f"zstd: {exc}") from exc
    return out, len(data)


_FORMATS: tuple[tuple[bytes, str, Decompressor | None], ...] = (
    (b"\x1f\x8b", "gzip", gunzip),
    (b"\x1f\x9e", "gzip", gunzip),
    (b"\x42\x5a", "bzip2", bunzip2),
    (b"\x5d\x00", "lzma", None),
    (b"\xfd\x37", "xz", unlzma),
    (b"\x28\xb5", "zstd", unzstd),
    (b"\x89\x4c", "lzo", None),
    (b"\x02\x21", "lz4", None),
)


def decompress_method(data: bytes) -> tuple[str | None, Decompressor | None]:
    """Identify the compression of data by its magic.

    Returns the format name (None if unknown) and its decompressor (None if
    the format is unknown or not supported).
    """
    if len(data) < 2:
        return None, None
    magic = bytes(data[:2])
    for format_magic, name, decompressor in _FORMATS:
        if magic == format_magic:
            if decompressor is None:
                print(f"Decompression of '{name}' is not supported")
            return name, decompressor
    return None, None