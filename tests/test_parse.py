import bz2
import gzip
import io
import lzma

import pytest
import zstandard

from initrdtools.cpio import CpioError, CpioHeader, CpioType, CpioWriter
from initrdtools.parse import ParseError, read_stream

FILE = CpioHeader(name="etc/hello", mode=0o100644, ino=1, nlink=1, mtime=1000, body=b"hello")
DIR = CpioHeader(name="etc", mode=0o40755, ino=2, nlink=2, mtime=1000)


def make_cpio(entries):
    buf = io.BytesIO()
    writer = CpioWriter(buf)
    for entry in entries:
        writer.write(entry)
    writer.write_trailer()
    return buf.getvalue()


def bootconfig_block(body, size=None, tail=b""):
    size = len(body) if size is None else size
    return body + size.to_bytes(4, "little") + (0).to_bytes(4, "little") + b"#BOOTCONFIG\n" + tail


def test_plain_archive():
    image = make_cpio([DIR, FILE])
    parts = read_stream(image)
    assert len(parts) == 1
    part = parts[0]
    assert part.type == CpioType.ARCHIVE
    assert part.compress == "raw"
    assert [h.name for h in part.headers] == ["etc", "etc/hello"]
    assert part.headers[1].body == b"hello"
    assert part.size == len(image)


@pytest.mark.parametrize(
    "name, compressor",
    [
        ("gzip", gzip.compress),
        ("bzip2", bz2.compress),
        ("xz", lambda d: lzma.compress(d, format=lzma.FORMAT_XZ)),
        ("zstd", lambda d: zstandard.ZstdCompressor().compress(d)),
    ],
)
def test_compressed_archive(name, compressor):
    parts = read_stream(compressor(make_cpio([FILE])))
    assert [p.compress for p in parts] == [name]
    assert parts[0].headers[0].name == FILE.name
    assert parts[0].headers[0].body == FILE.body


def test_concatenated_parts_keep_order():
    image = make_cpio([DIR]) + gzip.compress(make_cpio([FILE]))
    parts = read_stream(image)
    assert [p.compress for p in parts] == ["raw", "gzip"]
    assert [[h.name for h in p.headers] for p in parts] == [["etc"], ["etc/hello"]]


def test_nested_compressed_stream():
    inner = make_cpio([DIR]) + gzip.compress(make_cpio([FILE]))
    parts = read_stream(gzip.compress(inner))
    assert [p.compress for p in parts] == ["gzip", "gzip"]
    assert [p.headers[0].name for p in parts] == ["etc", "etc/hello"]


def test_bootconfig_is_split_off():
    archive = make_cpio([FILE])
    body = b"kernel.param = 1\n"
    parts = read_stream(archive + bootconfig_block(body))
    assert [p.type for p in parts] == [CpioType.ARCHIVE, CpioType.BOOTCONFIG]
    assert parts[0].size == len(archive)
    assert parts[1].raw == body
    assert parts[1].size == len(body)
    assert parts[1].compress is None


def test_bootconfig_with_alignment_padding():
    archive = make_cpio([FILE])
    body = b"abc\n"
    parts = read_stream(archive + bootconfig_block(body, tail=b"\0\0\0"))
    assert parts[-1].type == CpioType.BOOTCONFIG
    assert parts[-1].raw == body


def test_bootconfig_size_too_large():
    image = make_cpio([FILE]) + bootconfig_block(b"", size=10**6)
    with pytest.raises(ParseError):
        read_stream(image)


def test_garbage_is_rejected():
    with pytest.raises(CpioError):
        read_stream(b"x" * 200)


def test_short_data_is_rejected():
    with pytest.raises(CpioError):
        read_stream(b"abc")


def test_truncated_gzip_raises_parse_error():
    data = gzip.compress(make_cpio([FILE]))
    with pytest.raises(ParseError):
        read_stream(data[:20])


def test_unsupported_compression_reported(capsys):
    with pytest.raises(CpioError):
        read_stream(b"\x5d\x00" + b"\0" * 200)
    assert "not supported" in capsys.readouterr().out