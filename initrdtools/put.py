"""Copying collected files into a destination directory."""

from __future__ import annotations

import argparse
import errno
import logging
import os
import shutil
import socket
import stat as statmod
import sys
from collections.abc import Callable, Iterable, Sequence

from .putqueue import Collector, FileEntry

_log = logging.getLogger(__name__)

_VERSION = "1.0.0"

EX_USAGE = 64
EX_NOINPUT = 66
EX_OSERR = 71
EX_CANTCREAT = 73
EX_IOERR = 74

_SOCKADDR_UN_SIZE = 110

_TYPE_CHARS = {
    statmod.S_IFBLK: "b",
    statmod.S_IFCHR: "c",
    statmod.S_IFDIR: "d",
    statmod.S_IFIFO: "p",
    statmod.S_IFLNK: "l",
    statmod.S_IFREG: "f",
    statmod.S_IFSOCK: "s",
}

_TYPE_NAMES = {
    statmod.S_IFBLK: "block device",
    statmod.S_IFCHR: "character device",
    statmod.S_IFDIR: "directory",
    statmod.S_IFIFO: "FIFO/pipe",
    statmod.S_IFLNK: "symlink",
    statmod.S_IFREG: "regular file",
    statmod.S_IFSOCK: "socket",
}


class InstallError(Exception):
    """Raised when files cannot be placed into the destination directory."""

    def __init__(self, message: str, status: int = 1,
                 entries: Sequence[FileEntry] = ()) -> None:
        super().__init__(message)
        self.status = status
        self.entries = list(entries)


def format_entry(entry: FileEntry, destdir: str) -> str:
    """Return the log line for entry: type, source, destination and link target."""
    kind = _TYPE_CHARS.get(entry.file_type, "?")
    return f"{kind}\t{entry.src}\t{destdir}{entry.dst}\t{entry.symlink or ''}\n"


def _mksock(path: str) -> None:
    if len(os.fsencode(path)) >= _SOCKADDR_UN_SIZE:
        raise OSError(errno.EINVAL, os.strerror(errno.EINVAL), path)
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.bind(path)


def _remove(path: str) -> None:
    try:
        os.unlink(path)
    except IsADirectoryError:
        os.rmdir(path)
    except PermissionError:
        if not os.path.isdir(path) or os.path.islink(path):
            raise
        os.rmdir(path)


class Installer:
    """Creates entries under a destination directory, keeping their types and modes."""

    def __init__(self, destdir: str | os.PathLike[str], force: bool = False,
                 verbose: int = 0) -> None:
        self.destdir = os.fspath(destdir)
        self.force = force
        self.verbose = verbose
        self.installed = 0

    def path_for(self, entry: FileEntry) -> str:
        return self.destdir + entry.dst

    def _make(self, action: Callable[[], object], what: str, path: str) -> str | None:
        """Run action; return the operation name, or None if the parent is missing."""
        try:
            action()
        except FileExistsError:
            return "skip"
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise InstallError(f"{what}: {path}: {exc.strerror}", EX_CANTCREAT) from exc
        return "install"

    def _copy(self, entry: FileEntry, path: str) -> str | None:
        mode = statmod.S_IMODE(entry.mode)
        try:
            dfd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise InstallError(f"creat: {path}: {exc.strerror}", EX_CANTCREAT) from exc

        with os.fdopen(dfd, "wb") as target:
            try:
                source = open(entry.src, "rb")
            except OSError as exc:
                raise InstallError(f"open: {entry.src}: {exc.strerror}", EX_NOINPUT) from exc
            with source:
                try:
                    shutil.copyfileobj(source, target)
                except OSError as exc:
                    raise InstallError(
                        f"copy: {entry.src} -> {entry.dst}: {exc.strerror}", EX_IOERR
                    ) from exc
        return "install"

    def install(self, entry: FileEntry) -> bool:
        """Create entry in the destination.

        Returns True once the entry is in place (created or already there) and
        False if its parent directory does not exist yet.
        """
        if entry.installed:
            return True

        ftype = entry.file_type
        kind = _TYPE_NAMES.get(ftype, "unknown")
        path = self.path_for(entry)
        mode = entry.mode

        if self.force and ftype != statmod.S_IFDIR:
            try:
                _remove(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise InstallError(f"remove: {path}: {exc.strerror}") from exc

        if ftype == statmod.S_IFDIR:
            op = self._make(lambda: os.mkdir(path, 0o755), "mkdir", path)
        elif ftype in (statmod.S_IFBLK, statmod.S_IFCHR):
            rdev = entry.stat.st_rdev if entry.stat is not None else 0
            op = self._make(lambda: os.mknod(path, mode, rdev), "mknod", path)
        elif ftype == statmod.S_IFLNK:
            op = self._make(lambda: os.symlink(entry.symlink or "", path), "symlink", path)
        elif ftype == statmod.S_IFIFO:
            op = self._make(lambda: os.mkfifo(path, statmod.S_IMODE(mode)), "mkfifo", path)
        elif ftype == statmod.S_IFSOCK:
            op = self._make(lambda: _mksock(path), "mksock", path)
        elif ftype == statmod.S_IFREG:
            op = "skip" if os.access(path, os.X_OK) else self._copy(entry, path)
        else:
            raise InstallError(f"not implemented (mode={mode:o}): {entry.dst}")

        if op is None:
            return False
        if self.verbose:
            _log.info("%s (%s): %s", op, kind, path)
        entry.installed = True
        self.installed += 1
        return True

    def apply_permissions(self, entry: FileEntry) -> None:
        """Give the installed entry the owner, group and mode of its source."""
        path = self.path_for(entry)
        info = entry.stat
        if info is None:
            raise InstallError(f"no file information for {entry.src}")
        try:
            os.lchown(path, info.st_uid, info.st_gid)
        except OSError as exc:
            if exc.errno != errno.EPERM or self.verbose > 2:
                _log.warning("unable to change owner and group to uid=%d and gid=%d of `%s': %s",
                             info.st_uid, info.st_gid, path, exc.strerror)
            if exc.errno != errno.EPERM:
                raise InstallError(f"lchown: {path}: {exc.strerror}") from exc

        if not statmod.S_ISLNK(info.st_mode):
            try:
                os.chmod(path, statmod.S_IMODE(info.st_mode))
            except OSError as exc:
                raise InstallError(
                    f"change file mode of `{path}' to {statmod.S_IMODE(info.st_mode):o}: "
                    f"{exc.strerror}"
                ) from exc

    def install_all(self, entries: Sequence[FileEntry]) -> None:
        """Install entries, repeating passes while any progress is made."""
        while True:
            before = self.installed
            for entry in entries:
                self.install(entry)
            if before == self.installed:
                break
        missing = [entry for entry in entries if not entry.installed]
        if missing:
            raise InstallError("unable to create the files listed above", entries=missing)


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        sys.stderr.write(f"{self.prog}: {message}\n")
        sys.stderr.write(f"Try '{self.prog} --help' for more information.\n")
        self.exit(EX_USAGE)


def _build_parser() -> _Parser:
    parser = _Parser(
        prog="initrd-put",
        usage="%(prog)s [<options>] <destdir> file-or-directory [...]",
        description=(
            "Copy files and directories along with their dependencies into a "
            "destination directory. Symbolic links and binary dependencies are "
            "followed and copied too."
        ),
    )
    parser.add_argument("-n", "--dry-run", action="store_true", help="do nothing")
    parser.add_argument("-e", "--exclude", action="append", default=[], metavar="REGEXP",
                        help="exclude files matching REGEXP")
    parser.add_argument("-f", "--force", action="store_true",
                        help="overwrite destination file if exists")
    parser.add_argument("-l", "--log", metavar="FILE", help="write log about what was copied")
    parser.add_argument("-r", "--remove-prefix", metavar="PATH", help="ignore prefix in path")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="print a message for each action")
    parser.add_argument("-V", "--version", action="version",
                        version=f"%(prog)s version {_VERSION}")
    parser.add_argument("paths", nargs="*")
    return parser


def _write_entries(entries: Iterable[FileEntry], destdir: str, out) -> None:
    for entry in entries:
        out.write(format_entry(entry, destdir))


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    prog = parser.prog
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format=f"{prog}: %(message)s")

    def fail(message: str, status: int = 1) -> int:
        print(f"{prog}: {message}", file=sys.stderr)
        return status

    if not args.paths:
        return fail("more arguments required", EX_USAGE)
    destdir_arg, *paths = args.paths
    try:
        destdir = os.path.realpath(destdir_arg, strict=True)
    except OSError:
        return fail(f"bad destination directory: {destdir_arg}", EX_USAGE)
    if not paths:
        return fail("more arguments required", EX_USAGE)

    try:
        collector = Collector(args.exclude, args.remove_prefix, args.verbose)
    except ValueError:
        return fail("bad regexp", EX_USAGE)

    try:
        for path in paths:
            collector.canonicalize(path, True)
        entries = collector.run(destdir, args.force)
    except (OSError, ValueError) as exc:
        return fail(str(exc))

    if args.dry_run:
        _write_entries(entries, destdir, sys.stdout)
    else:
        installer = Installer(destdir, args.force, args.verbose)
        old_umask = os.umask(0)
        try:
            installer.install_all(entries)
            for entry in entries:
                installer.apply_permissions(entry)
        except InstallError as exc:
            if exc.entries:
                _write_entries(entries, destdir, sys.stdout)
                sys.stdout.flush()
            return fail(str(exc), exc.status)
        finally:
            os.umask(old_umask)

    if args.log:
        try:
            with open(args.log, "a", encoding="utf-8", errors="surrogateescape") as log:
                _write_entries(entries, destdir, log)
        except OSError as exc:
            return fail(f"open: {args.log}: {exc.strerror}", EX_CANTCREAT)
    return 0


if __name__ == "__main__":
    sys.exit(main())