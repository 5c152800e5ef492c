import os
import struct
from pathlib import Path

import pytest

from initrdtools.putqueue import (
    Collector,
    FileEntry,
    is_dynamic_elf,
    parse_ldd_output,
    shebang_interpreter,
    suffix_requires_dir_check,
)


def _elf(section_types, elf_class=2, order="<"):
    ident = b"\x7fELF" + bytes([elf_class, 1 if order == "<" else 2, 1]) + b"\0" * 9
    if elf_class == 2:
        hdr_fmt, ehsize, sec_fmt = "HHIQQQIHHHHHH", 64, "IIQQQQIIQQ"
    else:
        hdr_fmt, ehsize, sec_fmt = "HHIIIIIHHHHHH", 52, "IIIIIIIIII"
    secsize = struct.calcsize(order + sec_fmt)
    shnum = len(section_types) + 1
    header = struct.pack(order + hdr_fmt, 3, 62, 1, 0, 0, ehsize, 0, ehsize,
                         0, 0, secsize, shnum, 0)
    sections = struct.pack(order + sec_fmt, *([0] * 10))
    for sh_type in section_types:
        sections += struct.pack(order + sec_fmt, 0, sh_type, *([0] * 8))
    return ident + header + sections


@pytest.fixture
def base(tmp_path):
    root = Path(os.path.realpath(tmp_path))
    (root / "dest").mkdir()
    return root


def _srcs(entries):
    return [entry.src for entry in entries]


@pytest.mark.parametrize("end, expected", [
    ("", False),
    ("/", True),
    ("//", True),
    ("/x", False),
    ("/.", True),
    ("/..", True),
    ("/../x", True),
    ("/./x", False),
    ("/.x", False),
])
def test_suffix_requires_dir_check(end, expected):
    assert suffix_requires_dir_check(end) is expected


def test_parse_ldd_output_keeps_absolute_paths():
    text = (
        "\tlinux-vdso.so.1 (0x00007ffd5a1e5000)\n"
        "\tlibc.so.6 => /lib64/libc.so.6 (0x00007f0000000000)\n"
        "\t/lib64/ld-linux-x86-64.so.2 (0x00007f0000100000)\n"
        "\tlibmissing.so => not found\n"
    )
    assert parse_ldd_output(text) == ["/lib64/libc.so.6", "/lib64/ld-linux-x86-64.so.2"]


def test_parse_ldd_output_ignores_non_dynamic_message():
    assert parse_ldd_output("\tnot a dynamic executable\n") == []


def test_shebang_interpreter():
    assert shebang_interpreter(b"#!/bin/sh -e\necho\n") == "/bin/sh"
    assert shebang_interpreter(b"#!  /usr/bin/env python\n") == "/usr/bin/env"
    assert shebang_interpreter(b"\x7fELF") is None


def test_is_dynamic_elf(base):
    dynamic = base / "dyn"
    dynamic.write_bytes(_elf([1, 6]))
    static = base / "static"
    static.write_bytes(_elf([1, 3]))
    text = base / "text"
    text.write_bytes(b"hello world, not an elf file at all")
    assert is_dynamic_elf(dynamic) is True
    assert is_dynamic_elf(static) is False
    assert is_dynamic_elf(text) is False
    assert is_dynamic_elf(base / "missing") is False


def test_is_dynamic_elf_32bit_big_endian(base):
    path = base / "dyn32"
    path.write_bytes(_elf([6], elf_class=1, order=">"))
    assert is_dynamic_elf(path) is True


def test_bad_exclude_pattern_raises():
    with pytest.raises(ValueError):
        Collector(excludes=["("])


def test_enqueue_respects_excludes():
    collector = Collector(excludes=["", r"\.log$"])
    assert collector.enqueue("/var/app.log") is None
    entry = collector.enqueue("/var/app.conf")
    assert entry.src == "/var/app.conf"


def test_empty_name_raises():
    with pytest.raises(ValueError):
        Collector().canonicalize("")


def test_canonicalize_follows_symlink(base):
    (base / "real").mkdir()
    (base / "real" / "file.txt").write_text("data")
    (base / "link").symlink_to("real")

    collector = Collector()
    entry = collector.canonicalize(str(base / "link" / "file.txt"), True)
    assert entry.src == str(base / "real" / "file.txt")
    assert entry.recursive is True

    result = collector.run(base / "dest")
    by_src = {e.src: e for e in result}
    assert str(base / "link") in by_src
    assert by_src[str(base / "link")].symlink == "real"
    assert str(base / "real") in by_src
    assert str(base / "real" / "file.txt") in by_src
    assert str(base) in by_src
    assert _srcs(result) == sorted(_srcs(result), key=os.fsencode)
    assert all(e.dst == e.src for e in result)


def test_canonicalize_relative_and_dotdot(base, monkeypatch):
    (base / "real").mkdir()
    (base / "real" / "file.txt").write_text("data")
    monkeypatch.chdir(base)
    target = str(base / "real" / "file.txt")
    assert Collector().canonicalize("real/file.txt").src == target
    assert Collector().canonicalize("real/../real/./file.txt").src == target
    assert Collector().canonicalize(str(base / "real") + "/").src == str(base / "real")


def test_canonicalize_missing_component(base):
    assert Collector().canonicalize(str(base / "missing" / "x")) is None


def test_canonicalize_symlink_loop(base):
    (base / "a").symlink_to("b")
    (base / "b").symlink_to("a")
    assert Collector().canonicalize(str(base / "a")) is None


def test_recursive_directory_with_excludes(base):
    tree = base / "tree"
    (tree / "sub").mkdir(parents=True)
    (tree / "a.txt").write_text("a")
    (tree / "sub" / "b.log").write_text("b")

    collector = Collector(excludes=[r"\.log$"])
    collector.canonicalize(str(tree), True)
    srcs = _srcs(collector.run(base / "dest"))
    assert str(tree / "a.txt") in srcs
    assert str(tree / "sub") in srcs
    assert str(tree / "sub" / "b.log") not in srcs


def test_prefix_strips_destination(base):
    root = base / "root"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "conf").write_text("x")

    collector = Collector(prefix=str(root))
    collector.canonicalize(str(root / "etc" / "conf"))
    result = collector.run(base / "dest")
    assert {e.src: e.dst for e in result} == {
        str(root): "",
        str(root / "etc"): "/etc",
        str(root / "etc" / "conf"): "/etc/conf",
    }


def test_existing_destination_file_is_skipped_unless_forced(base):
    src = base / "src.txt"
    src.write_text("x")
    existing = Path(str(base / "dest") + str(src))
    existing.parent.mkdir(parents=True)
    existing.write_text("old")

    kept = Collector()
    kept.canonicalize(str(src))
    assert str(src) not in _srcs(kept.run(base / "dest"))

    forced = Collector()
    forced.canonicalize(str(src))
    assert str(src) in _srcs(forced.run(base / "dest", force=True))


def test_script_interpreter_is_collected(base):
    interp = base / "interp"
    interp.write_text("plain text\n")
    interp.chmod(0o644)
    script = base / "script"
    script.write_text(f"#!{interp} -x\necho\n")
    script.chmod(0o755)

    collector = Collector()
    collector.canonicalize(str(script))
    srcs = _srcs(collector.run(base / "dest"))
    assert str(script) in srcs
    assert str(interp) in srcs


def test_process_ignores_unaccepted_entry(base):
    collector = Collector()
    entry = FileEntry(src=str(base))
    collector.process(entry)
    assert entry.stat is None
    assert collector.files == {}
    assert entry.mode == 0