import io
import os
import stat

import pytest

from initrdtools.cpio import read_cpio
from initrdtools.gen_init_cpio import (
    CpioListError,
    CpioListWriter,
    generate,
    main,
    replace_env,
)


@pytest.fixture
def payload(tmp_path):
    path = tmp_path / "kinit"
    path.write_bytes(b"#!/bin/sh\necho hi\n")
    return path


def _archive(lines, mtime=0):
    out = io.BytesIO()
    size = generate(lines, out, mtime)
    return out.getvalue(), size


def test_generate_round_trip(payload):
    lines = [
        "# A simple initramfs\n",
        "dir /dev 0755 0 0\n",
        "nod /dev/console 0600 0 0 c 5 1\n",
        "slink /bin/sh busybox 0777 0 0\n",
        "file /sbin/kinit " + str(payload) + " 0755 0 0\n",
    ]
    data, size = _archive(lines, mtime=1000)
    assert len(data) == size
    assert size % 512 == 0
    assert data.startswith(b"070701")

    headers, used = read_cpio(data)
    assert used == size
    assert [h.name for h in headers] == ["dev", "dev/console", "bin/sh", "sbin/kinit"]
    assert [h.ino for h in headers] == [721, 722, 723, 724]

    dev, console, link, kinit = headers
    assert stat.S_ISDIR(dev.mode) and stat.S_IMODE(dev.mode) == 0o755
    assert dev.nlink == 2
    assert dev.mtime == 1000

    assert stat.S_ISCHR(console.mode)
    assert (console.rmajor, console.rminor) == (5, 1)

    assert stat.S_ISLNK(link.mode)
    assert link.body == b"busybox\0"

    assert stat.S_ISREG(kinit.mode)
    assert kinit.body == payload.read_bytes()
    assert kinit.mtime == int(os.stat(payload).st_mtime)


def test_hard_links_share_inode_and_data_on_last(payload):
    data, _ = _archive(["file /bin/a " + str(payload) + " 0755 0 0 /bin/b /bin/c\n"])
    headers, _ = read_cpio(data)
    assert [h.name for h in headers] == ["bin/a", "bin/b", "bin/c"]
    assert {h.ino for h in headers} == {721}
    assert all(h.nlink == 3 for h in headers)
    assert [h.body for h in headers] == [b"", b"", payload.read_bytes()]


def test_block_device_and_pipe_and_socket():
    data, _ = _archive(
        [
            "nod /dev/sda 0660 0 6 b 8 0\n",
            "pipe /run/fifo 0644 0 0\n",
            "sock /run/sock 0644 0 0\n",
        ]
    )
    headers, _ = read_cpio(data)
    assert stat.S_ISBLK(headers[0].mode)
    assert headers[0].gid == 6
    assert stat.S_ISFIFO(headers[1].mode)
    assert stat.S_ISSOCK(headers[2].mode)


def test_comments_and_blank_lines_are_skipped():
    data, _ = _archive(["# comment\n", "\n", "dir /etc 0755 0 0\n"])
    headers, _ = read_cpio(data)
    assert [h.name for h in headers] == ["etc"]


def test_bad_line_raises_and_omits_trailer():
    out = io.BytesIO()
    with pytest.raises(CpioListError, match="line 2"):
        generate(["dir /etc 0755 0 0\n", "dir /var 0755\n"], out, 0)
    assert b"TRAILER!!!" not in out.getvalue()
    headers, _ = read_cpio(out.getvalue())
    assert [h.name for h in headers] == ["etc"]


def test_unknown_type_is_reported_but_not_fatal(capsys):
    data, _ = _archive(["weird /x 0755 0 0\n", "dir /y 0755 0 0\n"])
    headers, _ = read_cpio(data)
    assert [h.name for h in headers] == ["y"]
    assert "unknown file type line 1" in capsys.readouterr().err


def test_missing_file_raises(tmp_path):
    writer = CpioListWriter(io.BytesIO(), 0)
    with pytest.raises(CpioListError, match="could not be opened"):
        writer.mkfile(["a"], str(tmp_path / "missing"), 0o644, 0, 0)


def test_handle_line_unknown_kind_returns_false():
    writer = CpioListWriter(io.BytesIO(), 0)
    assert writer.handle_line("bogus", "a b c") is False
    assert writer.handle_line("dir", "/a 0755 0 0") is True
    assert writer.ino == 722


def test_handle_line_bad_mode():
    writer = CpioListWriter(io.BytesIO(), 0)
    with pytest.raises(CpioListError, match="Unrecognized"):
        writer.handle_line("dir", "/a 0999 0 0")


def test_replace_env():
    env = {"KDIR": "/usr/src"}
    assert replace_env("${KDIR}/kinit", env) == "/usr/src/kinit"
    assert replace_env("${NOPE}/kinit", env) == "/kinit"
    assert replace_env("${KDIR/kinit", env) == "${KDIR/kinit"
    assert replace_env("plain", env) == "plain"


def test_main_writes_archive(tmp_path, capsysbinary):
    listing = tmp_path / "list"
    listing.write_text("dir /dev 0755 0 0\n")
    assert main(["-t", "0", str(listing)]) == 0
    out = capsysbinary.readouterr().out
    headers, used = read_cpio(out)
    assert used == len(out)
    assert [(h.name, h.mtime) for h in headers] == [("dev", 0)]


def test_main_invalid_timestamp(tmp_path):
    listing = tmp_path / "list"
    listing.write_text("dir /dev 0755 0 0\n")
    assert main(["-t", "12x", str(listing)]) == 1


def test_main_usage_errors(tmp_path):
    assert main([]) == 1
    assert main([str(tmp_path / "missing")]) == 1
    assert main(["-h"]) == 0