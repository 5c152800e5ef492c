import gzip
import io
import stat
import time

from initrdtools.cpio import CpioHeader, CpioWriter
from initrdtools.ls import HeaderFormatter, ShowFlags, list_initrd, main, mode_string
from initrdtools.parse import read_stream

FILE = CpioHeader(name="etc/hello", mode=0o100644, ino=1, nlink=1, mtime=1000, body=b"hello")
DIR = CpioHeader(name="etc", mode=0o40755, ino=2, nlink=2, mtime=1000)


def make_cpio(entries):
    buf = io.BytesIO()
    writer = CpioWriter(buf)
    for entry in entries:
        writer.write(entry)
    writer.write_trailer()
    return buf.getvalue()


def make_image():
    return make_cpio([DIR]) + gzip.compress(make_cpio([FILE]))


def test_mode_string_regular_and_dir():
    assert mode_string(0o100644) == "-rw-r--r--"
    assert mode_string(0o40755) == "drwxr-xr-x"


def test_mode_string_setuid_shows_capital_s():
    assert mode_string(0o104755) == "-rwSr-xr-x"


def test_mode_string_sticky():
    assert mode_string(stat.S_IFDIR | 0o1777)[-1] == "t"
    assert mode_string(stat.S_IFREG | 0o1777)[-1] == "T"
    assert mode_string(0o177)[0] == "?"
    assert all(len(mode_string(m)) == 10 for m in (0o100644, 0o20600, 0o140777))


def test_format_fields_without_mtime():
    formatter = HeaderFormatter(show_mtime=False)
    formatter.preformat(FILE)
    assert formatter.format(FILE).split() == [
        mode_string(FILE.mode), "1", "0", "0", str(len(FILE.body)), FILE.name,
    ]


def test_columns_are_aligned():
    big = CpioHeader(name="etc/large", mode=0o100644, nlink=1, body=b"x" * 12345)
    formatter = HeaderFormatter(show_mtime=False)
    formatter.preformat(FILE)
    formatter.preformat(big)
    first, second = formatter.format(FILE), formatter.format(big)
    assert len(first) == len(second)
    assert first.index("etc/") == second.index("etc/")


def test_device_shows_major_minor():
    dev = CpioHeader(name="dev/console", mode=stat.S_IFCHR | 0o600, nlink=1, rmajor=5, rminor=1)
    formatter = HeaderFormatter(show_mtime=False)
    formatter.preformat(dev)
    line = formatter.format(dev)
    assert line.startswith("c")
    assert "5,1" in line
    assert line.endswith("dev/console")


def test_symlink_shows_target():
    link = CpioHeader(name="bin/sh", mode=stat.S_IFLNK | 0o777, nlink=1, body=b"busybox")
    formatter = HeaderFormatter(show_mtime=False)
    formatter.preformat(link)
    assert formatter.format(link).endswith("bin/sh -> busybox")


def test_mtime_is_shown():
    mtime = 86400 * 365 * 30
    header = CpioHeader(name="f", mode=0o100644, nlink=1, mtime=mtime)
    line = HeaderFormatter(show_mtime=True).format(header)
    assert str(time.localtime(mtime).tm_year) in line
    assert str(time.localtime(mtime).tm_year) not in HeaderFormatter(show_mtime=False).format(header)


def test_list_names_only():
    out = io.StringIO()
    list_initrd(read_stream(make_image()), ShowFlags.NAME_ONLY, out)
    assert out.getvalue().splitlines() == ["1 etc", "2 etc/hello"]


def test_list_with_compression():
    out = io.StringIO()
    list_initrd(read_stream(make_image()), ShowFlags.NAME_ONLY | ShowFlags.COMPRESSION, out)
    lines = [line.split() for line in out.getvalue().splitlines()]
    assert lines == [["1", "raw", "etc"], ["2", "gzip", "etc/hello"]]


def test_list_brief_with_bootconfig():
    body = b"a = b\n"
    archive = make_cpio([FILE])
    image = archive + body + len(body).to_bytes(4, "little") + bytes(4) + b"#BOOTCONFIG\n"
    out = io.StringIO()
    list_initrd(read_stream(image), ShowFlags.BRIEF, out)
    assert out.getvalue().splitlines() == [
        f"1\tcpio archive, size {len(archive)} bytes",
        f"2\tbootconfig, size {len(body)} bytes",
    ]


def test_list_brief_compressed():
    out = io.StringIO()
    list_initrd(read_stream(make_image()), ShowFlags.BRIEF, out)
    lines = out.getvalue().splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("2\tgzip compressed cpio archive, size ")


def test_main_lists_file(tmp_path, capsys):
    image = tmp_path / "initrd.img"
    image.write_bytes(make_image())
    assert main(["--no-mtime", str(image)]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert lines[1].endswith("etc/hello")
    assert mode_string(FILE.mode) in lines[1]


def test_main_repeated_flag_toggles_off(tmp_path, capsys):
    image = tmp_path / "initrd.img"
    image.write_bytes(make_image())
    assert main(["-n", "-n", "--no-mtime", str(image)]) == 0
    out = capsys.readouterr().out
    assert mode_string(DIR.mode) in out


def test_main_missing_initrd(tmp_path, capsys):
    assert main([str(tmp_path / "absent.img")]) == 1
    assert "does not exist" in capsys.readouterr().err
    assert main([]) == 1