"""Reading and writing of cpio archives in the "newc" format."""

from __future__ import annotations

import enum
import re
import stat
from dataclasses import dataclass, field
from typing import BinaryIO

HEADER_SIZE = 110
MAGIC_NEWC = b"070701"
MAGIC_CRC = b"070702"
MAGIC_OLD = b"070707"
TRAILER = "TRAILER!!!"
BLOCK_SIZE = 512

_MINORBITS = 20
_MINORMASK = (1 << _MINORBITS) - 1
_UINT32 = 0xFFFFFFFF
_HEX_FIELD = re.compile(rb"[ \t\n\v\f\r]*([0-9A-Fa-f]*)")

# File types whose entries carry no body in the archive.
_NO_BODY_TYPES = frozenset(
    {stat.S_IFBLK, stat.S_IFCHR, stat.S_IFDIR, stat.S_IFIFO, stat.S_IFSOCK}
)


class CpioError(Exception):
    """Raised when an archive cannot be read or an entry cannot be written."""


class CpioType(enum.IntEnum):
    """Kind of a part found inside an initramfs image."""

    UNKNOWN = 0
    ARCHIVE = 1
    BOOTCONFIG = 2


def encode_dev(major: int, minor: int) -> int:
    """Encode a device number the way the kernel's new_encode_dev does."""
    dev = (major << _MINORBITS) | minor
    mi = dev & _MINORMASK
    ma = (dev >> _MINORBITS) & _UINT32
    return ((mi & 0xFF) | (ma << 8) | ((mi & ~0xFF) << 12)) & _UINT32


def _name_align(length: int) -> int:
    return ((length + 1) & ~3) + 2


def _parse_hex(chunk: bytes) -> int:
    digits = _HEX_FIELD.match(chunk).group(1)
    return int(digits, 16) if digits else 0


@dataclass
class CpioHeader:
    """One entry of a cpio archive."""

    name: str = ""
    mode: int = 0
    ino: int = 0
    uid: int = 0
    gid: int = 0
    nlink: int = 0
    mtime: int = 0
    major: int = 0
    minor: int = 0
    rmajor: int = 0
    rminor: int = 0
    body: bytes = b""

    @property
    def name_bytes(self) -> bytes:
        return self.name.encode("utf-8", "surrogateescape")

    @property
    def name_len(self) -> int:
        """Length of the name including its terminating NUL."""
        return len(self.name_bytes) + 1

    @property
    def body_len(self) -> int:
        return len(self.body)

    @property
    def rdev(self) -> int:
        return encode_dev(self.rmajor, self.rminor)

    @property
    def file_type(self) -> int:
        return stat.S_IFMT(self.mode)


@dataclass
class CpioArchive:
    """A part of an initramfs: a cpio archive or a bootconfig block."""

    type: CpioType
    compress: str | None
    raw: bytes
    size: int
    headers: list[CpioHeader] = field(default_factory=list)


def read_cpio(data: bytes) -> tuple[list[CpioHeader], int]:
    """Parse entries up to the trailer.

    Returns the entries (without the trailer) and the number of bytes the
    archive occupies, padded to a 512-byte block after the trailer.
    """
    view = memoryview(data)
    size = len(view)
    headers: list[CpioHeader] = []
    offset = 0
    trailer = TRAILER.encode()

    while offset < size:
        if size < len(MAGIC_NEWC) + HEADER_SIZE:
            raise CpioError("archive less than header")

        magic = bytes(view[offset:offset + len(MAGIC_NEWC)])
        if magic == MAGIC_OLD:
            raise CpioError("incorrect cpio method used: use -H newc option")
        if magic != MAGIC_NEWC:
            raise CpioError("no cpio magic")
        if offset + HEADER_SIZE > size:
            raise CpioError("truncated cpio header")

        start = offset + len(MAGIC_NEWC)
        fields = [
            _parse_hex(bytes(view[start + 8 * i:start + 8 * (i + 1)]))
            for i in range(12)
        ]
        (ino, mode, uid, gid, nlink, mtime, body_len,
         major, minor, rmajor, rminor, name_len) = fields

        name_start = offset + HEADER_SIZE
        raw_name = bytes(view[name_start:name_start + name_len])
        body_start = name_start + _name_align(name_len)
        body_end = body_start + body_len
        if body_end > size:
            raise CpioError("truncated cpio entry")

        offset = (body_end + 3) & ~3

        if bytes(view[name_start:name_start + len(trailer)]) == trailer:
            offset = -(-offset // BLOCK_SIZE) * BLOCK_SIZE
            break

        headers.append(
            CpioHeader(
                name=raw_name.split(b"\0", 1)[0].decode("utf-8", "surrogateescape"),
                mode=mode,
                ino=ino,
                uid=uid,
                gid=gid,
                nlink=nlink,
                mtime=mtime,
                major=major,
                minor=minor,
                rmajor=rmajor,
                rminor=rminor,
                body=bytes(view[body_start:body_end]),
            )
        )

    return headers, offset


class CpioWriter:
    """Writes "newc" cpio entries to a binary stream, tracking the offset."""

    def __init__(self, output: BinaryIO) -> None:
        self.output = output
        self.offset = 0

    def _put(self, data: bytes) -> None:
        self.output.write(data)
        self.offset += len(data)

    def _push_header(self, values: list[int]) -> None:
        for value in values:
            if not 0 <= value <= _UINT32:
                raise CpioError(f"value {value} does not fit in a cpio header field")
        self._put(MAGIC_NEWC + "".join(f"{v:08X}" for v in values).encode("ascii"))

    def _push_string(self, name: bytes) -> None:
        self._put(name + b"\0")

    def _push_rest(self, name: bytes) -> None:
        self._push_string(name)
        self._put(b"\0" * (-(len(name) + 1 + HEADER_SIZE) % 4))

    def _push_pad(self) -> None:
        self._put(b"\0" * (-self.offset % 4))

    def write(self, header: CpioHeader) -> int:
        """Write one entry and return the new offset."""
        self._push_header([
            header.ino, header.mode, header.uid, header.gid, header.nlink,
            header.mtime, header.body_len, header.major, header.minor,
            header.rmajor, header.rminor, header.name_len, 0,
        ])
        if header.file_type in _NO_BODY_TYPES:
            self._push_rest(header.name_bytes)
            return self.offset

        self._push_string(header.name_bytes)
        self._push_pad()
        if header.body:
            self._put(header.body)
            self._push_pad()
        return self.offset

    def write_trailer(self) -> int:
        """Write the trailer entry and pad to a 512-byte block."""
        name = TRAILER.encode()
        self._push_header([0, 0, 0, 0, 1, 0, 0, 0, 0, 0, 0, len(name) + 1, 0])
        self._push_rest(name)
        self._put(b"\0" * (-self.offset % BLOCK_SIZE))
        return self.offset