"""Finding kernel modules that satisfy rule files."""

from __future__ import annotations

import argparse
import logging
import os
import stat
import sys
from collections.abc import Iterator, Sequence
from typing import TextIO

from .modinfo import ModuleInfo, is_kernel_modname, read_module
from .rules import (
    HAS_INFO,
    HAS_PATHS,
    HAS_SYMBOLS,
    Ruleset,
    RulesError,
    match_filename,
    match_values,
    parse_rules,
)

_log = logging.getLogger(__name__)

_VERSION = "1.0.0"


def _report(module: ModuleInfo, what: str, matched: bool) -> None:
    _log.debug("%s: %s %s", module.path, what, "matches" if matched else "does not match")


def _symbol_pairs(symbols: Sequence[str]) -> list[tuple[None, str]]:
    return [(None, symbol) for symbol in symbols]


def module_matches(module: ModuleInfo, ruleset: Ruleset) -> int:
    """Return the ruleset flags whose rules the module satisfies.

    The module is selected by the ruleset when the result equals its flags.
    """
    result = 0
    _log.debug("%s: checking module against the ruleset patterns from %s ...",
               module.path, ruleset.filename)

    if ruleset.flags & HAS_PATHS:
        matched = match_filename(module.path, ruleset.paths)
        if matched:
            result |= HAS_PATHS
        _report(module, "path", matched)

    if ruleset.flags & HAS_INFO and module.info:
        matched = match_values(module.info, ruleset.info, True)
        if matched:
            result |= HAS_INFO
        _report(module, "the module information", matched)

    if ruleset.flags & HAS_SYMBOLS:
        for symbols in (module.symbols, module.dependency_symbols):
            if result & HAS_SYMBOLS or not symbols:
                continue
            matched = match_values(_symbol_pairs(symbols), ruleset.symbols, False)
            if matched:
                result |= HAS_SYMBOLS
            _report(module, "symbols", matched)

    return result


def _is_candidate(path: str, info: os.stat_result) -> bool:
    if stat.S_ISREG(info.st_mode):
        return True
    # Symbolic links are taken only when they are not broken.
    return stat.S_ISLNK(info.st_mode) and os.path.exists(path)


def _walk(directory: str) -> Iterator[str]:
    with os.scandir(directory) as it:
        entries = [(entry, entry.stat(follow_symlinks=False)) for entry in it]
    # Files come before directories; each group is ordered by name.
    entries.sort(key=lambda item: (stat.S_ISDIR(item[1].st_mode), os.fsencode(item[0].name)))
    for entry, info in entries:
        if stat.S_ISDIR(info.st_mode):
            yield from _walk(entry.path)
        elif _is_candidate(entry.path, info) and is_kernel_modname(entry.name):
            yield entry.path


def iter_module_paths(kerneldir: str | os.PathLike[str]) -> Iterator[str]:
    """Yield the paths of kernel modules under kerneldir without following links.

    Raises OSError if a directory cannot be read.
    """
    top = os.fspath(kerneldir)
    info = os.lstat(top)
    if stat.S_ISDIR(info.st_mode):
        yield from _walk(top)
    elif _is_candidate(top, info) and is_kernel_modname(os.path.basename(top)):
        yield top


def find_modules(kerneldir: str | os.PathLike[str], rulesets: Sequence[Ruleset],
                 out: TextIO | None = None) -> list[str]:
    """Write the path of every module selected by a ruleset to out.

    Rulesets are tried in order until one of them matches a module at least
    in part. Returns the paths written.
    """
    out = sys.stdout if out is None else out
    selected: list[str] = []
    if not rulesets:
        return selected

    for path in iter_module_paths(kerneldir):
        try:
            module = read_module(path)
        except (OSError, ValueError) as exc:
            _log.warning("%s: %s", path, exc)
            continue
        for ruleset in rulesets:
            found = module_matches(module, ruleset)
            if found == ruleset.flags:
                out.write(f"{module.path}\n")
                selected.append(module.path)
            if found:
                break
    return selected


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        sys.stderr.write(f"{self.prog}: {message}\n")
        self.print_help(sys.stdout)
        self.exit(1)


def _build_parser() -> _Parser:
    parser = _Parser(
        prog="initrd-scanmod",
        usage="%(prog)s [options] [--] rules-file [rules-file ...]",
        description="Print the kernel modules that satisfy the rules files.",
    )
    parser.add_argument("-k", "--set-version", dest="kversion", metavar="VERSION",
                        help="use VERSION instead of `uname -r`")
    parser.add_argument("-b", "--base-dir", dest="basedir", metavar="DIR",
                        help="use DIR as filesystem root for /lib/modules")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="print a message for each action")
    parser.add_argument("-V", "--version", action="version",
                        version=f"%(prog)s version {_VERSION}")
    parser.add_argument("rules", nargs="*", metavar="rules-file")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    prog = parser.prog

    level = logging.WARNING
    if args.verbose > 1:
        level = logging.DEBUG
    elif args.verbose:
        level = logging.INFO
    logging.basicConfig(level=level, format=f"{prog}: %(message)s")

    if not args.rules:
        print(f"{prog}: rules file required", file=sys.stderr)
        parser.print_help(sys.stdout)
        return 1

    basedir = args.basedir or ""
    kversion = args.kversion or os.uname().release
    kerneldir = f"{basedir}/lib/modules/{kversion}"
    _log.info("kernel directory: %s", kerneldir)

    try:
        rulesets = parse_rules(args.rules)
        find_modules(kerneldir, rulesets, sys.stdout)
    except RulesError as exc:
        print(f"{prog}: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"{prog}: {exc.filename}: {exc.strerror}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())