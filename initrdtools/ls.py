"""Listing of initramfs contents in a format similar to ls."""

from __future__ import annotations

import argparse
import enum
import stat
import sys
import time
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

from .cpio import CpioArchive, CpioError, CpioHeader, CpioType
from .decompress import DecompressError
from .parse import ParseError, read_stream

_VERSION = "1.0.0"

_TYPE_CHARS = {
    stat.S_IFBLK: "b",
    stat.S_IFCHR: "c",
    stat.S_IFDIR: "d",
    stat.S_IFIFO: "p",
    stat.S_IFLNK: "l",
    stat.S_IFSOCK: "s",
    stat.S_IFREG: "-",
}


class ShowFlags(enum.IntFlag):
    """Options that change what the listing shows."""

    COMPRESSION = 1 << 1
    NAME_ONLY = 1 << 2
    NO_MTIME = 1 << 3
    BRIEF = 1 << 4


def _isset(mode: int, mask: int) -> bool:
    return mode & mask == mask


def _exec_char(mode: int, special: int, execute: int, special_char: str) -> str:
    if _isset(mode, special):
        return special_char
    return "x" if _isset(mode, execute) else "-"


def mode_string(mode: int) -> str:
    """Render a file mode as the ten-character ls permission string."""
    sticky = "t" if stat.S_ISDIR(mode) else "T"
    return "".join([
        _TYPE_CHARS.get(stat.S_IFMT(mode), "?"),
        "r" if _isset(mode, stat.S_IRUSR) else "-",
        "w" if _isset(mode, stat.S_IWUSR) else "-",
        _exec_char(mode, stat.S_ISUID, stat.S_IXUSR, "S"),
        "r" if _isset(mode, stat.S_IRGRP) else "-",
        "w" if _isset(mode, stat.S_IWGRP) else "-",
        _exec_char(mode, stat.S_ISGID, stat.S_IXGRP, "S"),
        "r" if _isset(mode, stat.S_IROTH) else "-",
        "w" if _isset(mode, stat.S_IWOTH) else "-",
        _exec_char(mode, stat.S_ISVTX, stat.S_IXOTH, sticky),
    ])


def _dev_major(dev: int) -> int:
    return ((dev >> 8) & 0xFFF) | ((dev >> 32) & ~0xFFF)


def _dev_minor(dev: int) -> int:
    return (dev & 0xFF) | ((dev >> 12) & ~0xFF)


def _is_device(mode: int) -> bool:
    return stat.S_ISCHR(mode) or stat.S_ISBLK(mode)


class HeaderFormatter:
    """Formats entries as ls -l lines with columns sized to fit all entries."""

    def __init__(self, show_mtime: bool = True) -> None:
        self.show_mtime = show_mtime
        self.nlinks_width = 1
        self.size_width = 1
        self.uid_width = 1
        self.gid_width = 1
        self.major_width = 1
        self.minor_width = 1

    def preformat(self, header: CpioHeader) -> None:
        """Widen the columns so that header fits."""
        self.nlinks_width = max(self.nlinks_width, len(str(header.nlink)))
        self.uid_width = max(self.uid_width, len(str(header.uid)))
        self.gid_width = max(self.gid_width, len(str(header.gid)))
        if _is_device(header.mode):
            self.major_width = max(self.major_width, len(str(_dev_major(header.rdev))))
            self.minor_width = max(self.minor_width, len(str(_dev_minor(header.rdev))))
            self.size_width = max(self.size_width, self.major_width + self.minor_width + 1)
        else:
            self.size_width = max(self.size_width, len(str(header.body_len)))

    def format(self, header: CpioHeader) -> str:
        """Return the listing line for header, without a newline."""
        mtime = ""
        if self.show_mtime:
            mtime = time.strftime("%b %d %H:%M:%S %Y ", time.localtime(header.mtime))

        if _is_device(header.mode):
            major_width = self.size_width - self.major_width - self.minor_width
            size = (f"{str(_dev_major(header.rdev)).rjust(major_width)},"
                    f"{str(_dev_minor(header.rdev)).rjust(self.minor_width)}")
        else:
            size = str(header.body_len).rjust(self.size_width)

        line = (
            f"{mode_string(header.mode)}"
            f" {str(header.nlink).rjust(self.nlinks_width)}"
            f" {str(header.uid).rjust(self.uid_width)}"
            f" {str(header.gid).rjust(self.gid_width)}"
            f" {size} {mtime}{header.name}"
        )
        if stat.S_ISLNK(header.mode):
            target = header.body.split(b"\0", 1)[0].decode("utf-8", "surrogateescape")
            line += f" -> {target}"
        return line


def _describe(part: CpioArchive) -> str:
    if part.type == CpioType.ARCHIVE:
        prefix = "" if part.compress == "raw" else f"{part.compress} compressed "
        return f"{prefix}cpio archive"
    if part.type == CpioType.BOOTCONFIG:
        return "bootconfig"
    return "unknown"


def list_initrd(parts: Sequence[CpioArchive], flags: ShowFlags = ShowFlags(0),
                out: TextIO | None = None) -> None:
    """Write the listing of the parts of an initramfs to out."""
    out = sys.stdout if out is None else out
    formatter = HeaderFormatter(show_mtime=not flags & ShowFlags.NO_MTIME)
    compress_width = 3

    if not flags & ShowFlags.BRIEF:
        for part in parts:
            if part.type != CpioType.ARCHIVE:
                continue
            if flags & ShowFlags.COMPRESSION:
                compress_width = max(compress_width, len(part.compress or ""))
            for header in part.headers:
                formatter.preformat(header)

    number_width = len(str(len(parts)))
    number = 1
    for part in parts:
        if flags & ShowFlags.BRIEF:
            out.write(f"{number}\t{_describe(part)}, size {part.size} bytes\n")
            number += 1
            continue
        if part.type != CpioType.ARCHIVE:
            continue
        prefix = f"{str(number).rjust(number_width)} "
        if flags & ShowFlags.COMPRESSION:
            prefix += f"{(part.compress or '').rjust(compress_width)} "
        for header in part.headers:
            body = header.name if flags & ShowFlags.NAME_ONLY else formatter.format(header)
            out.write(f"{prefix}{body}\n")
        number += 1


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: {message}\n")


def _build_parser() -> _Parser:
    parser = _Parser(
        prog="initrd-ls",
        description=(
            "Displays initramfs contents in a format similar to ls command. "
            "If initramfs contains more than one cpio archive, all of them "
            "are shown. Compressed archives are looked inside."
        ),
    )
    parser.add_argument("--no-mtime", action="count", default=0,
                        help="hide modification time")
    parser.add_argument("-b", "--brief", action="count", default=0,
                        help="show only brief information about archive parts")
    parser.add_argument("-n", "--name", action="count", default=0,
                        help="show only filenames")
    parser.add_argument("-C", "--compression", action="count", default=0,
                        help="show compression method for each archive")
    parser.add_argument("-V", "--version", action="version",
                        version=f"%(prog)s version {_VERSION}")
    parser.add_argument("initrd", nargs="*")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    prog = parser.prog

    def fail(message: str) -> int:
        print(f"{prog}: {message}", file=sys.stderr)
        return 1

    flags = ShowFlags(0)
    for count, flag in (
        (args.no_mtime, ShowFlags.NO_MTIME),
        (args.brief, ShowFlags.BRIEF),
        (args.name, ShowFlags.NAME_ONLY),
        (args.compression, ShowFlags.COMPRESSION),
    ):
        if count % 2:
            flags |= flag

    if not args.initrd:
        return fail("ERROR: Missing initrd file")

    path = Path(args.initrd[0])
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        return fail(f"ERROR: initrd does not exist: {path}")
    except OSError as exc:
        return fail(f"ERROR: open: {path}: {exc.strerror}")

    try:
        parts = read_stream(data, "raw")
    except (ParseError, CpioError, DecompressError) as exc:
        return fail(str(exc))

    list_initrd(parts, flags, sys.stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())