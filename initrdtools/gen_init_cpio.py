"""Build an initramfs cpio archive from a textual list of entries."""

from __future__ import annotations

import argparse
import os
import re
import stat
import sys
import time
from collections.abc import Iterable, Mapping, Sequence
from typing import BinaryIO

from .cpio import CpioError, CpioHeader, CpioWriter

_FIRST_INO = 721
_UINT32 = 0xFFFFFFFF
_TIMESTAMP = re.compile(r"[ \t\n\v\f\r]*[+-]?[0-9]+")

_GENERIC_TYPES = {
    "dir": stat.S_IFDIR,
    "pipe": stat.S_IFIFO,
    "sock": stat.S_IFSOCK,
}

_USAGE = """\
Usage:
\t{prog} [-t <timestamp>] <cpio_list>

<cpio_list> is a file containing newline separated entries that
describe the files to be included in the initramfs archive:

# a comment
file <name> <location> <mode> <uid> <gid> [<hard links>]
dir <name> <mode> <uid> <gid>
nod <name> <mode> <uid> <gid> <dev_type> <maj> <min>
slink <name> <target> <mode> <uid> <gid>
pipe <name> <mode> <uid> <gid>
sock <name> <mode> <uid> <gid>

<name>       name of the file/dir/nod/etc in the archive
<location>   location of the file in the current filesystem
             expands shell variables quoted with ${{}}
<target>     link target
<mode>       mode/permissions of the file
<uid>        user id (0=root)
<gid>        group id (0=root)
<dev_type>   device type (b=block, c=character)
<maj>        major number of nod
<min>        minor number of nod
<hard links> space separated list of other links to file

example:
# A simple initramfs
dir /dev 0755 0 0
nod /dev/console 0600 0 0 c 5 1
dir /root 0700 0 0
dir /sbin 0755 0 0
file /sbin/kinit /usr/src/klibc/kinit/kinit 0755 0 0

<timestamp> is time in seconds since Epoch that will be used
as mtime for symlinks, special files and directories. The default
is to use the current time for these entries.
"""


class CpioListError(Exception):
    """Raised when an entry of the list cannot be turned into an archive entry."""


def replace_env(location: str, environ: Mapping[str, str] | None = None) -> str:
    """Expand every ${NAME} in location; unknown names expand to nothing."""
    env = os.environ if environ is None else environ
    while True:
        start = location.find("${")
        if start < 0:
            return location
        end = location.find("}", start + 2)
        if end < 0:
            return location
        name = location[start + 2:end]
        location = location[:start] + env.get(name, "") + location[end + 1:]


def _strip_root(name: str) -> str:
    return name[1:] if name.startswith("/") else name


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


class CpioListWriter:
    """Writes archive entries described by list lines to a binary stream."""

    def __init__(self, output: BinaryIO, default_mtime: int | None = None) -> None:
        self._writer = CpioWriter(output)
        self.default_mtime = int(time.time()) if default_mtime is None else int(default_mtime)
        self.ino = _FIRST_INO

    @property
    def offset(self) -> int:
        return self._writer.offset

    def _emit(self, header: CpioHeader) -> None:
        try:
            self._writer.write(header)
        except CpioError as exc:
            raise CpioListError(f"{header.name}: {exc}") from exc

    def _take_ino(self) -> int:
        ino = self.ino
        self.ino += 1
        return ino

    def mkslink(self, name: str, target: str, mode: int, uid: int, gid: int) -> None:
        """Add a symbolic link entry."""
        self._emit(CpioHeader(
            name=_strip_root(name), mode=stat.S_IFLNK | mode, ino=self._take_ino(),
            uid=uid, gid=gid, nlink=1, mtime=self.default_mtime,
            major=3, minor=1, body=_encode(target) + b"\0",
        ))

    def mkgeneric(self, name: str, mode: int, uid: int, gid: int) -> None:
        """Add a directory, pipe or socket entry; mode carries the file type."""
        self._emit(CpioHeader(
            name=_strip_root(name), mode=mode, ino=self._take_ino(),
            uid=uid, gid=gid, nlink=2, mtime=self.default_mtime,
            major=3, minor=1,
        ))

    def mknod(self, name: str, mode: int, uid: int, gid: int, dev_type: str,
              major: int, minor: int) -> None:
        """Add a block ('b') or character device entry."""
        mode |= stat.S_IFBLK if dev_type == "b" else stat.S_IFCHR
        self._emit(CpioHeader(
            name=_strip_root(name), mode=mode, ino=self._take_ino(),
            uid=uid, gid=gid, nlink=1, mtime=self.default_mtime,
            major=3, minor=1, rmajor=major, rminor=minor,
        ))

    def mkfile(self, names: Sequence[str], location: str, mode: int,
               uid: int, gid: int) -> None:
        """Add a regular file under every name; the data goes on the last link."""
        if not names:
            raise CpioListError("a file entry needs at least one name")
        try:
            with open(location, "rb") as source:
                info = os.fstat(source.fileno())
                data = source.read()
        except OSError as exc:
            raise CpioListError(
                f"File {location} could not be opened for reading"
            ) from exc

        nlinks = len(names)
        for number, name in enumerate(names, start=1):
            self._emit(CpioHeader(
                name=_strip_root(name), mode=stat.S_IFREG | mode, ino=self.ino,
                uid=uid, gid=gid, nlink=nlinks, mtime=int(info.st_mtime),
                major=3, minor=1, body=data if number == nlinks else b"",
            ))
        self.ino += 1

    def handle_line(self, kind: str, args: str) -> bool:
        """Add the entry described by one list line.

        Returns False if kind is not a known entry type.
        """
        handler = {
            "file": self._file_line,
            "nod": self._nod_line,
            "slink": self._slink_line,
        }.get(kind)
        fields = args.split()
        try:
            if handler is not None:
                handler(fields)
            elif kind in _GENERIC_TYPES:
                self._generic_line(fields, _GENERIC_TYPES[kind])
            else:
                return False
        except (ValueError, IndexError) as exc:
            raise CpioListError(f"Unrecognized {kind} format '{args}'") from exc
        return True

    def _file_line(self, fields: list[str]) -> None:
        name, location, mode, uid, gid = fields[:5]
        if len(fields) < 5:
            raise ValueError("too few fields")
        self.mkfile([name, *fields[5:]], replace_env(location),
                    _octal(mode), _decimal(uid), _decimal(gid))

    def _generic_line(self, fields: list[str], file_type: int) -> None:
        if len(fields) < 4:
            raise ValueError("too few fields")
        name, mode, uid, gid = fields[:4]
        self.mkgeneric(name, _octal(mode) | file_type, _decimal(uid), _decimal(gid))

    def _nod_line(self, fields: list[str]) -> None:
        if len(fields) < 7:
            raise ValueError("too few fields")
        name, mode, uid, gid, dev_type, major, minor = fields[:7]
        if len(dev_type) != 1:
            raise ValueError("bad device type")
        self.mknod(name, _octal(mode), _decimal(uid), _decimal(gid), dev_type,
                   _decimal(major), _decimal(minor))

    def _slink_line(self, fields: list[str]) -> None:
        if len(fields) < 5:
            raise ValueError("too few fields")
        name, target, mode, uid, gid = fields[:5]
        self.mkslink(name, target, _octal(mode), _decimal(uid), _decimal(gid))

    def trailer(self) -> int:
        """Write the trailer and return the total size of the archive."""
        return self._writer.write_trailer()


def _octal(text: str) -> int:
    return int(text, 8) & _UINT32


def _decimal(text: str) -> int:
    return int(text, 10) & _UINT32


def generate(lines: Iterable[str], output: BinaryIO,
             default_mtime: int | None = None) -> int:
    """Write the archive described by the list lines to output.

    Entries that fail are reported together in a CpioListError once every
    line has been read; the trailer is then left out. Returns the archive size.
    """
    writer = CpioListWriter(output, default_mtime)
    errors: list[str] = []

    for line_nr, line in enumerate(lines, start=1):
        if line.startswith("#"):
            continue

        stripped = line.lstrip(" \t")
        if not stripped:
            errors.append(
                "ERROR: incorrect format, could not locate file type "
                f"line {line_nr}: '{line}'"
            )
            break

        kind = re.split(r"[ \t]", stripped, maxsplit=1)[0]
        if kind.startswith("\n"):
            continue
        if kind == line:
            continue

        rest = stripped[len(kind) + 1:].lstrip("\n")
        args = rest.split("\n", 1)[0]
        if not args:
            errors.append(
                f"ERROR: incorrect format, newline required line {line_nr}: '{kind}'"
            )
            continue

        try:
            known = writer.handle_line(kind, args)
        except CpioListError as exc:
            errors.append(f"{exc} line {line_nr}")
            continue
        if not known:
            print(f"unknown file type line {line_nr}: '{kind}'", file=sys.stderr)

    if errors:
        raise CpioListError("\n".join(errors))
    return writer.trailer()


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        sys.stderr.write(_USAGE.format(prog=self.prog))
        self.exit(1)


def main(argv: list[str] | None = None) -> int:
    parser = _Parser(prog="gen_init_cpio", add_help=False)
    parser.add_argument("-t", dest="timestamp")
    parser.add_argument("-h", dest="help", action="store_true")
    parser.add_argument("cpio_list", nargs="*")
    args = parser.parse_args(argv)
    usage = _USAGE.format(prog=parser.prog)

    if args.help:
        sys.stderr.write(usage)
        return 0

    default_mtime = int(time.time())
    if args.timestamp is not None:
        if not _TIMESTAMP.fullmatch(args.timestamp):
            sys.stderr.write(f"Invalid timestamp: {args.timestamp}\n")
            sys.stderr.write(usage)
            return 1
        default_mtime = int(args.timestamp.strip())

    if len(args.cpio_list) != 1:
        sys.stderr.write(usage)
        return 1

    filename = args.cpio_list[0]
    try:
        source = sys.stdin.buffer if filename == "-" else open(filename, "rb")
    except OSError as exc:
        sys.stderr.write(f"ERROR: unable to open '{filename}': {exc.strerror}\n\n")
        sys.stderr.write(usage)
        return 1

    output = sys.stdout.buffer
    try:
        lines = (raw.decode("utf-8", "surrogateescape") for raw in source)
        generate(lines, output, default_mtime)
    except CpioListError as exc:
        print(exc, file=sys.stderr)
        return 1
    finally:
        output.flush()
        if source is not sys.stdin.buffer:
            source.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())