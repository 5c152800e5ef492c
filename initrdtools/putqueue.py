"""Collecting files to copy into an initramfs together with their dependencies."""

from __future__ import annotations

import errno
import logging
import os
import re
import stat as statmod
import struct
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from typing import BinaryIO

_log = logging.getLogger(__name__)

PATH_MAX = 4096
LINE_MAX = 2048
MAXSYMLINKS = 40
SHT_DYNAMIC = 6
ELF_MAGIC = b"\x7fELF"

_SPACE_BYTES = b" \t\n\v\f\r"
_SPACE_CHARS = " \t\n\v\f\r"
_NON_SPACE = re.compile(rb"[^ \t\n\v\f\r]*")

_ELF_HEADER = {1: "HHIIIIIHHHHHH", 2: "HHIQQQIHHHHHH"}
_ELF_SECTION = {1: "IIIIIIII", 2: "IIQQQQII"}
_SHN_XINDEX = 0xFFFF


@dataclass(eq=False)
class FileEntry:
    """A file queued for copying: where it comes from and where it goes."""

    src: str
    dst: str = ""
    stat: os.stat_result | None = None
    symlink: str | None = None
    recursive: bool = False
    installed: bool = False

    @property
    def mode(self) -> int:
        return self.stat.st_mode if self.stat is not None else 0

    @property
    def file_type(self) -> int:
        return statmod.S_IFMT(self.mode)


def suffix_requires_dir_check(end: str) -> bool:
    """Tell whether appending end to a name requires it to be a directory.

    end must be empty or start with a slash.
    """
    i, n = 0, len(end)
    while i < n and end[i] == "/":
        while i < n and end[i] == "/":
            i += 1
        if i == n:
            return True
        char = end[i]
        i += 1
        if char != ".":
            return False
        if i == n or (end[i] == "." and (i + 1 == n or end[i + 1] == "/")):
            return True
    return False


def _dir_check(path: str) -> bool:
    try:
        os.stat(path + "/./")
    except OSError as exc:
        return exc.errno == errno.EOVERFLOW
    return True


def _read_exact(f: BinaryIO, offset: int, size: int) -> bytes:
    f.seek(offset)
    data = f.read(size)
    if len(data) != size:
        raise ValueError("truncated ELF file")
    return data


def _has_dynamic_section(f: BinaryIO) -> bool:
    ident = _read_exact(f, 0, 16)
    if ident[:4] != ELF_MAGIC:
        return False
    elf_class, encoding = ident[4], ident[5]
    if elf_class not in _ELF_HEADER or encoding not in (1, 2):
        return False
    order = "<" if encoding == 1 else ">"

    header = struct.Struct(order + _ELF_HEADER[elf_class])
    fields = header.unpack(_read_exact(f, 16, header.size))
    shoff, shentsize, shnum = fields[5], fields[10], fields[11]
    if shoff == 0:
        return False

    section = struct.Struct(order + _ELF_SECTION[elf_class])
    if shentsize < section.size:
        return False

    def read_section(index: int) -> tuple[int, ...]:
        return section.unpack(_read_exact(f, shoff + index * shentsize, section.size))

    if shnum == 0:
        shnum = read_section(0)[5]
    return any(read_section(index)[1] == SHT_DYNAMIC for index in range(1, shnum))


def is_dynamic_elf(path: str | os.PathLike[str]) -> bool:
    """Tell whether path is an ELF file with a dynamic section."""
    try:
        with open(path, "rb") as f:
            return _has_dynamic_section(f)
    except (OSError, ValueError, struct.error):
        return False


def parse_ldd_output(text: str) -> list[str]:
    """Return the absolute library paths listed in ldd output."""
    libraries = []
    for line in text.split("\n"):
        cut = line.find("(0x")
        if cut < 0:
            continue
        line = line[:cut].rstrip(_SPACE_CHARS)
        arrow = line.find(" => ")
        if arrow >= 0:
            line = line[arrow + 4:]
        line = line.lstrip(_SPACE_CHARS)
        if line.startswith("/"):
            libraries.append(line)
    return libraries


def shebang_interpreter(data: bytes) -> str | None:
    """Return the interpreter named by a "#!" line, or None without one."""
    data = bytes(data[:LINE_MAX - 1]).split(b"\0", 1)[0]
    if not data.startswith(b"#!"):
        return None
    rest = data[2:].lstrip(_SPACE_BYTES)
    return _NON_SPACE.match(rest).group(0).decode("utf-8", "surrogateescape")


def _parent(rname: str) -> str:
    if len(rname) <= 1:
        return rname
    cut = rname.rfind("/", 0, len(rname) - 1)
    return rname[:cut + 1]


class Collector:
    """Gathers files, the directories above them, symlink targets,
    script interpreters and shared libraries they need."""

    def __init__(self, excludes: Iterable[str] = (), prefix: str | None = None,
                 verbose: int = 0) -> None:
        self.excludes: list[re.Pattern[str]] = []
        for pattern in excludes:
            if not pattern:
                continue
            try:
                self.excludes.append(re.compile(pattern, re.MULTILINE))
            except re.error as exc:
                raise ValueError(f"bad regexp: {pattern}") from exc
        self.prefix = prefix or None
        self.verbose = verbose
        self.files: dict[str, FileEntry] = {}
        self._pending: list[FileEntry] = []

    def _excluded(self, path: str) -> bool:
        return any(pattern.search(path) for pattern in self.excludes)

    def _enqueue(self, path: str, recursive: bool = False,
                 info: os.stat_result | None = None) -> FileEntry | None:
        if self._excluded(path):
            if self.verbose > 1:
                _log.info("exclude path: %s", path)
            return None
        entry = FileEntry(src=path, stat=info, recursive=recursive)
        if self.verbose > 1:
            _log.info("add to list: %s", path)
        self._pending.append(entry)
        return entry

    def enqueue(self, path: str, recursive: bool = False) -> FileEntry | None:
        """Queue path as it is; return None if an exclude pattern matches it."""
        return self._enqueue(path, recursive)

    def _enqueue_parent(self, path: str) -> None:
        if self.prefix is not None and path == self.prefix:
            return
        cut = path.rfind("/")
        if cut <= 0:
            return
        self._enqueue(path[:cut])

    def _walk(self, top: str) -> Iterable[str]:
        yield top

        def report(exc: OSError) -> None:
            _log.warning("walk: %s: %s", exc.filename, exc.strerror)

        for root, dirs, files in os.walk(top, onerror=report):
            for name in (*dirs, *files):
                yield os.path.join(root, name)

    def _enqueue_directory(self, path: str) -> None:
        if self.verbose:
            _log.info("processing: %s", path)
        for item in self._walk(path):
            if item in self.files:
                continue
            try:
                info = os.lstat(item)
            except OSError as exc:
                _log.warning("lstat: %s: %s", item, exc.strerror)
                continue
            self._enqueue(item, info=info)

    def canonicalize(self, name: str, recursive: bool = False) -> FileEntry | None:
        """Resolve name to a canonical path, queueing every symlink passed.

        The resolved path is queued too and its entry returned; None is
        returned if a component cannot be resolved or the path is excluded.
        """
        if not name:
            raise ValueError("cannot canonicalize an empty path")

        rname = "/" if name.startswith("/") else os.getcwd()
        rest = name
        links = 0
        while rest:
            rest = rest.lstrip("/")
            component, sep, tail = rest.partition("/")
            end = sep + tail
            if not component:
                break
            if component == ".":
                rest = end
                continue
            if component == "..":
                rname = _parent(rname)
                rest = end
                continue

            rname = rname + component if rname.endswith("/") else f"{rname}/{component}"
            try:
                target = os.readlink(rname)
            except OSError as exc:
                if suffix_requires_dir_check(end):
                    usable = _dir_check(rname)
                else:
                    usable = exc.errno == errno.EINVAL
                if not usable:
                    _log.warning("unable to process component of path: %s: %s",
                                 rname, exc.strerror)
                    return None
                rest = end
                continue

            links += 1
            if links > MAXSYMLINKS:
                _log.warning("unable to process component of path: %s: %s",
                             rname, os.strerror(errno.ELOOP))
                return None
            if self.verbose > 1:
                _log.info("symlink '%s' points to '%s'", rname, target)
            self._enqueue(rname)

            if len(end) + len(target) >= PATH_MAX + 1:
                raise OSError(errno.ENAMETOOLONG, f"bad path '{name}'")
            rest = target + end
            rname = "/" if target.startswith("/") else _parent(rname)

        if len(rname) > 1 and rname.endswith("/"):
            rname = rname[:-1]
        if self.verbose > 0:
            _log.info("symlink '%s' points to '%s'", name, rname)

        entry = self._enqueue(rname)
        if entry is not None:
            entry.recursive = recursive
        return entry

    def _scan_shared_libraries(self, path: str) -> bool:
        try:
            proc = subprocess.run(["ldd", path], stdout=subprocess.PIPE,
                                  stderr=subprocess.STDOUT, check=False)
        except OSError as exc:
            _log.warning("ldd: %s: %s", path, exc.strerror)
            return False
        for library in parse_ldd_output(proc.stdout.decode("utf-8", "surrogateescape")):
            if self.verbose > 1:
                _log.info("shared object '%s' depends on '%s'", path, library)
            if library not in self.files:
                self._enqueue(library)
        return True

    def _scan_regular_file(self, path: str) -> bool:
        flags = os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_CLOEXEC", 0)
        try:
            fd = os.open(path, flags)
        except OSError as exc:
            _log.warning("open: %s: %s", path, exc.strerror)
            return exc.errno in (errno.EACCES, errno.EPERM)
        try:
            try:
                head = os.pread(fd, LINE_MAX, 0)[:LINE_MAX - 1]
            except OSError as exc:
                _log.warning("read: %s: %s", path, exc.strerror)
                return False

            if head.startswith(b"#!") and os.access(path, os.X_OK):
                interpreter = shebang_interpreter(head)
                if self.verbose > 1:
                    _log.info("shell script '%s' uses the '%s' interpreter",
                              path, interpreter)
                if interpreter and interpreter not in self.files:
                    self._enqueue(interpreter)
                return True

            if head.startswith(ELF_MAGIC) and is_dynamic_elf(path):
                return self._scan_shared_libraries(path)
            return True
        finally:
            os.close(fd)

    def process(self, entry: FileEntry) -> None:
        """Queue what an accepted entry depends on."""
        if entry.src not in self.files:
            return
        if entry.stat is None:
            entry.stat = os.lstat(entry.src)

        self._enqueue_parent(entry.src)
        mode = entry.stat.st_mode

        if statmod.S_ISDIR(mode):
            if entry.recursive:
                self._enqueue_directory(entry.src)
            return

        if statmod.S_ISLNK(mode):
            try:
                entry.symlink = os.readlink(entry.src)
            except OSError as exc:
                _log.warning("readlink: %s: %s", entry.src, exc.strerror)
            self.canonicalize(entry.src, False)
            return

        if statmod.S_ISREG(mode) and not self._scan_regular_file(entry.src):
            _log.warning("failed to read regular file: %s", entry.src)

    def _destination(self, src: str) -> str:
        prefix = self.prefix
        if not prefix:
            return src
        n = len(prefix)
        if len(src) > n and src[n] == "/" and src[:n - 1] == prefix[:n - 1]:
            return src[n:]
        if src == prefix:
            return ""
        return src

    def run(self, destdir: str | os.PathLike[str], force: bool = False) -> list[FileEntry]:
        """Process the queue until it is empty and return the files sorted by path.

        Without force, files that already exist in destdir (other than
        directories) are left out.
        """
        destdir = os.fspath(destdir)
        while self._pending:
            batch, self._pending = self._pending, []
            for entry in reversed(batch):
                entry.dst = self._destination(entry.src)

                if not force:
                    try:
                        existing = os.lstat(destdir + entry.dst)
                    except FileNotFoundError:
                        pass
                    else:
                        if not statmod.S_ISDIR(existing.st_mode):
                            if self.verbose > 1:
                                _log.info("'%s' is already in the destdir", entry.src)
                            continue

                if entry.src in self.files:
                    if self.verbose > 1:
                        _log.info("'%s' has already been processed so skip it", entry.src)
                    continue

                self.files[entry.src] = entry
                self.process(entry)

        return sorted(self.files.values(), key=lambda e: os.fsencode(e.src))