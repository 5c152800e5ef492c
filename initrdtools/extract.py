"""Extract the cpio archives of an initramfs into a single archive."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO

from .cpio import CpioArchive, CpioError, CpioType, CpioWriter
from .decompress import DecompressError
from .parse import ParseError, read_stream

_VERSION = "1.0.0"


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: {message}\n")


def extract(parts: Iterable[CpioArchive], output: BinaryIO, archive_number: int = 0) -> int:
    """Write the entries of the archive parts to output as one cpio archive.

    Parts are numbered from 1, bootconfig blocks included; with a non-zero
    archive_number only that part is written. Returns the bytes written.
    """
    writer = CpioWriter(output)
    for number, part in enumerate(parts, start=1):
        if part.type != CpioType.ARCHIVE:
            continue
        if not archive_number or number == archive_number:
            for header in part.headers:
                writer.write(header)
    return writer.write_trailer()


def _build_parser() -> _Parser:
    parser = _Parser(
        prog="initrd-extract",
        description="Extracts part of initramfs",
    )
    parser.add_argument("-a", "--archive", metavar="NUM",
                        help="extract only specified initramfs")
    parser.add_argument("-o", "--output", metavar="FILE",
                        help="write output to FILE instead of stdout")
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

    archive_number = 0
    if args.archive is not None:
        value = args.archive
        if not value.isdigit() or int(value) <= 0:
            return fail(f'invalid value for "archive" option: {value}')
        archive_number = int(value)

    if not args.initrd:
        return fail("Missing initrd file")

    path = Path(args.initrd[0])
    try:
        data = path.read_bytes()
    except OSError as exc:
        return fail(f"ERROR: open: {path}: {exc.strerror}")

    try:
        parts = read_stream(data, "raw")
    except (ParseError, CpioError, DecompressError) as exc:
        return fail(str(exc))

    if args.output is None:
        extract(parts, sys.stdout.buffer, archive_number)
        sys.stdout.buffer.flush()
        return 0

    try:
        with open(args.output, "wb") as output:
            extract(parts, output, archive_number)
    except OSError as exc:
        return fail(f"ERROR: fopen: {args.output}: {exc.strerror}")
    return 0


if __name__ == "__main__":
    sys.exit(main())