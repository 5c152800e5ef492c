# initrdtools

Command-line tools and a Python library for working with Linux initramfs
images:

- `initrd-ls` lists what an initramfs image holds, in a layout close to `ls -l`.
  It looks inside gzip, bzip2, xz and zstd compressed parts, and reports a
  bootconfig block appended at the end of the image.
- `initrd-extract` joins the cpio archives of an image, or one chosen part,
  into a single uncompressed newc cpio archive.
- `gen-init-cpio` builds a newc cpio archive from a text list of entries.
- `initrd-put` copies files and directories into a destination tree together
  with what they need: parent directories, symlink targets, script
  interpreters and shared libraries.
- `initrd-scanmod` prints the kernel modules that satisfy rule files.

## Installation

    pip install initrdtools

## Listing an image

    initrd-ls /boot/initrd.img
    initrd-ls --brief /boot/initrd.img
    initrd-ls --name --compression /boot/initrd.img
    initrd-ls --no-mtime /boot/initrd.img

Options: `-b/--brief` shows one line per part with its kind, compression and
size; `-n/--name` shows only file names; `-C/--compression` adds the
compression method of each archive; `--no-mtime` hides modification times.
Every entry line starts with the number of the archive it belongs to.

## Extracting archives

    initrd-extract -o all.cpio /boot/initrd.img
    initrd-extract --archive=2 --output=second.cpio /boot/initrd.img

Parts are numbered from 1 in the order they appear in the image; a bootconfig
block counts as a part but has no entries. Without `-o` the archive is
written to standard output.

## Building an archive from a list

    gen-init-cpio -t 0 list.txt > image.cpio

The list holds one entry per line:

    # a comment
    file <name> <location> <mode> <uid> <gid> [<hard links>]
    dir <name> <mode> <uid> <gid>
    nod <name> <mode> <uid> <gid> <dev_type> <maj> <min>
    slink <name> <target> <mode> <uid> <gid>
    pipe <name> <mode> <uid> <gid>
    sock <name> <mode> <uid> <gid>

`<mode>` is octal; `<dev_type>` is `b` for block or `c` for character devices.
`${VAR}` in a location is replaced by the value of the environment variable.
`-t` sets the modification time used for everything except regular files;
by default it is the current time. Use `-` as the list file to read it from
standard input. If any entry fails, the errors are reported and the command
exits with status 1 without writing the trailer.

## Copying files with their dependencies

    initrd-put /tmp/root /bin/sh /etc/passwd
    initrd-put --dry-run /tmp/root /usr/lib/udev
    initrd-put -r /opt/sysroot -e '\.pyc$' /tmp/root /opt/sysroot/usr/bin

The first argument is the destination directory, which must exist. Options:
`-n/--dry-run` only prints what would be copied, `-e/--exclude=REGEXP`
(Python regular expression, may be repeated), `-f/--force` replaces existing
files, `-l/--log=FILE` appends a list of the copied entries to `FILE`,
`-r/--remove-prefix=PATH` strips `PATH` from destination paths,
`-v/--verbose` (may be repeated). Shared libraries are found by running the
system's `ldd`.

## Finding kernel modules

    initrd-scanmod -k 6.1.0 rules.txt

Modules are searched under `/lib/modules/<version>`; `-b DIR` uses `DIR` as
the root instead of `/`, and without `-k` the running kernel's release is
used. Files ending in `.ko`, `.ko.gz` and `.ko.xz` are read.

A rule file holds one rule per line: a keyword followed by a regular
expression. A `not-` prefix on the keyword inverts the rule. Keywords are
`alias`, `author`, `depends`, `description`, `filename`, `firmware`,
`license`, `name` and `symbol`. Lines starting with `#` are comments.

## Library use

    from initrdtools.parse import read_stream
    from initrdtools.ls import HeaderFormatter

    with open("/boot/initrd.img", "rb") as fh:
        parts = read_stream(fh.read(), "raw")

    formatter = HeaderFormatter(show_mtime=False)
    for part in parts:
        for header in part.headers:
            formatter.preformat(header)
    for part in parts:
        for header in part.headers:
            print(formatter.format(header))

Other modules:

- `initrdtools.cpio`: `read_cpio`, `CpioWriter`, `CpioHeader`, `CpioArchive`.
- `initrdtools.decompress`: `decompress_method`, `gunzip`, `bunzip2`,
  `unlzma`, `unzstd`.
- `initrdtools.extract`: `extract`; `initrdtools.ls`: `list_initrd`,
  `mode_string`, `ShowFlags`.
- `initrdtools.gen_init_cpio`: `generate`, `CpioListWriter`, `replace_env`.
- `initrdtools.putqueue`: `Collector`, `FileEntry`; `initrdtools.put`:
  `Installer`, `format_entry`.
- `initrdtools.modinfo`: `read_module`, `is_kernel_modname`;
  `initrdtools.rules`: `parse_rules`, `parse_ruleset`, `match_filename`,
  `match_values`; `initrdtools.scanmod`: `find_modules`, `module_matches`,
  `iter_module_paths`.

## What it does not do

- Parts compressed with legacy lzma, lzo or lz4 are recognised but not
  decompressed; a message says so and the part is then treated as raw data.
- `initrd-extract` writes a cpio archive; it does not unpack files onto the
  filesystem.
- There is no command that builds a complete initramfs image or resolves
  kernel module dependencies.

## Running the tests

    pip install initrdtools[test]
    pytest