# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# PACKAGER - RPM ENCODER
# -----------------------------------------------------------------------------
# Responsibility: Writes an RPM v3 binary package without rpmbuild:
#
#   lead (96 bytes)
#   signature header  region 62: SIZE, MD5, SHA1, SHA256, PAYLOADSIZE
#   main header       region 63: package tags and the file list
#   payload           cpio (newc) archive, gzip compressed
#
# Header layout: magic, index count, data length, 16-byte index entries
# sorted by tag, then the data store. Every entry's data lies at an offset
# aligned for its type and after the previous entry's data; the region
# trailer closes the data store.
# -----------------------------------------------------------------------------

import hashlib
import posixpath
import shutil
import socket
import struct
import tempfile
from typing import BinaryIO

from pkgforge.core.conditions import Dependency, parse_dependency
from pkgforge.core.os_info import rpm_arch
from pkgforge.core.packager.archive import Entry, build_timestamp, gzip_writer

LEAD_MAGIC = b"\xed\xab\xee\xdb"
HEADER_MAGIC = b"\x8e\xad\xe8\x01\x00\x00\x00\x00"
RPM_VERSION = "4.18.0"

# Data types
NULL, CHAR, INT8, INT16, INT32, INT64, STRING, BIN, STRING_ARRAY, I18NSTRING = range(10)
_ALIGNMENT = {INT16: 2, INT32: 4, INT64: 8}

# Region tags
HEADERSIGNATURES = 62
HEADERIMMUTABLE = 63
HEADERI18NTABLE = 100

# Signature tags
SIG_SHA1 = 269
SIG_SHA256 = 273
SIG_SIZE = 1000
SIG_MD5 = 1004
SIG_PAYLOADSIZE = 1007

# Main header tags
NAME = 1000
VERSION = 1001
RELEASE = 1002
SUMMARY = 1004
DESCRIPTION = 1005
BUILDTIME = 1006
BUILDHOST = 1007
SIZE = 1009
LICENSE = 1014
GROUP = 1016
URL = 1020
OS = 1021
ARCH = 1022
FILESIZES = 1028
FILEMODES = 1030
FILERDEVS = 1033
FILEMTIMES = 1034
FILEDIGESTS = 1035
FILELINKTOS = 1036
FILEFLAGS = 1037
FILEUSERNAME = 1039
FILEGROUPNAME = 1040
SOURCERPM = 1044
FILEVERIFYFLAGS = 1045
PROVIDENAME = 1047
REQUIREFLAGS = 1048
REQUIRENAME = 1049
REQUIREVERSION = 1050
CONFLICTFLAGS = 1053
CONFLICTNAME = 1054
CONFLICTVERSION = 1055
RPMVERSION = 1064
FILEDEVICES = 1095
FILEINODES = 1096
FILELANGS = 1097
PROVIDEFLAGS = 1112
PROVIDEVERSION = 1113
DIRINDEXES = 1116
BASENAMES = 1117
DIRNAMES = 1118
PAYLOADFORMAT = 1124
PAYLOADCOMPRESSOR = 1125
PAYLOADFLAGS = 1126
FILEDIGESTALGO = 5011

DIGEST_ALGO_SHA256 = 8

# Dependency flags
SENSE_LESS = 1 << 1
SENSE_GREATER = 1 << 2
SENSE_EQUAL = 1 << 3
SENSE_RPMLIB = 1 << 24
_SENSE = {
    "<": SENSE_LESS,
    "<<": SENSE_LESS,
    ">": SENSE_GREATER,
    ">>": SENSE_GREATER,
    "=": SENSE_EQUAL,
    "<=": SENSE_LESS | SENSE_EQUAL,
    ">=": SENSE_GREATER | SENSE_EQUAL,
}

RPMLIB_REQUIRES = [
    ("rpmlib(CompressedFileNames)", "3.0.4-1"),
    ("rpmlib(FileDigests)", "4.6.0-1"),
    ("rpmlib(PayloadFilesHavePrefix)", "4.0-1"),
]

CPIO_MAGIC = "070701"
CPIO_TRAILER = "TRAILER!!!"


def rpm_name(name: str, version: str, release: str, arch: str) -> str:
    return f"{name}-{version}-{release}.{rpm_arch(arch)}.rpm"


# =============================================================================
# HEADER ENCODING
# =============================================================================


class Header:
    """Collects tag values and encodes them as an RPM header structure."""

    def __init__(self) -> None:
        self._entries: dict[int, tuple[int, int, bytes]] = {}

    def __contains__(self, tag: int) -> bool:
        return tag in self._entries

    def _put(self, tag: int, type_: int, count: int, data: bytes) -> None:
        self._entries[tag] = (type_, count, data)

    def string(self, tag: int, value: str | None) -> None:
        if value:
            self._put(tag, STRING, 1, value.encode("utf-8") + b"\0")

    def i18n(self, tag: int, value: str | None) -> None:
        if value:
            self._put(tag, I18NSTRING, 1, value.encode("utf-8") + b"\0")

    def strings(self, tag: int, values: list[str]) -> None:
        if values:
            self._put(tag, STRING_ARRAY, len(values), b"".join(v.encode("utf-8") + b"\0" for v in values))

    def int32(self, tag: int, values: list[int]) -> None:
        if values:
            self._put(tag, INT32, len(values), b"".join(struct.pack(">I", v & 0xFFFFFFFF) for v in values))

    def int16(self, tag: int, values: list[int]) -> None:
        if values:
            self._put(tag, INT16, len(values), b"".join(struct.pack(">H", v & 0xFFFF) for v in values))

    def binary(self, tag: int, value: bytes) -> None:
        self._put(tag, BIN, len(value), value)

    def encode(self, region_tag: int) -> bytes:
        index = []
        store = bytearray()
        for tag in sorted(self._entries):
            type_, count, data = self._entries[tag]
            align = _ALIGNMENT.get(type_, 1)
            store.extend(b"\0" * (-len(store) % align))
            index.append(struct.pack(">IIiI", tag, type_, len(store), count))
            store.extend(data)

        entry_count = len(index) + 1
        trailer_offset = len(store)
        store.extend(struct.pack(">IIiI", region_tag, BIN, -entry_count * 16, 16))
        region = struct.pack(">IIiI", region_tag, BIN, trailer_offset, 16)
        return HEADER_MAGIC + struct.pack(">II", entry_count, len(store)) + region + b"".join(index) + bytes(store)


def lead(name: str) -> bytes:
    """The 96-byte legacy lead of a binary package."""
    return struct.pack(
        ">4sBBhh66shh16s",
        LEAD_MAGIC,
        3,
        0,
        0,  # binary package
        1,
        name.encode("utf-8")[:65],
        1,  # linux
        5,  # header-style signature
        b"",
    )


# =============================================================================
# PAYLOAD
# =============================================================================


def _cpio_header(name: str, ino: int, mode: int, nlink: int, mtime: int, size: int) -> bytes:
    encoded = name.encode("utf-8") + b"\0"
    fields = [ino, mode, 0, 0, nlink, mtime, size, 0, 0, 0, 0, len(encoded), 0]
    header = (CPIO_MAGIC + "".join(f"{v:08X}" for v in fields)).encode("ascii") + encoded
    return header + b"\0" * (-len(header) % 4)


def payload_entries(entries: list[Entry]) -> list[Entry]:
    """Files, symlinks and empty directories; parent directories stay unowned."""
    parents = {posixpath.dirname(e.path) for e in entries}
    return [e for e in entries if not e.is_dir or e.path not in parents]


def write_cpio(out: BinaryIO, entries: list[Entry]) -> int:
    """
    Write a newc cpio archive of `entries`.

    Returns:
        Number of uncompressed bytes written.
    """
    written = 0
    for ino, entry in enumerate(entries, start=1):
        file_type = 0o040000 if entry.is_dir else 0o120000 if entry.is_symlink else 0o100000
        header = _cpio_header(
            "./" + entry.path, ino, file_type | entry.mode, 2 if entry.is_dir else 1, entry.mtime, entry.size
        )
        out.write(header)
        written += len(header)
        if entry.is_file:
            with open(entry.source, "rb") as f:
                shutil.copyfileobj(f, out)
        elif entry.is_symlink:
            out.write(entry.linkname.encode("utf-8"))
        padding = b"\0" * (-entry.size % 4)
        out.write(padding)
        written += entry.size + len(padding)

    trailer = _cpio_header(CPIO_TRAILER, 0, 0, 1, 0, 0)
    out.write(trailer)
    return written + len(trailer)


# =============================================================================
# PACKAGE
# =============================================================================


def _sha256_file(entry: Entry) -> str:
    digest = hashlib.sha256()
    with open(entry.source, "rb") as f:
        for chunk in iter(lambda: f.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _dependency_tags(header: Header, name_tag: int, flags_tag: int, version_tag: int, deps: list[Dependency]) -> None:
    header.strings(name_tag, [d.name for d in deps])
    header.int32(flags_tag, [_SENSE.get(d.op, 0) if d.op and d.version else 0 for d in deps])
    if deps:
        header.strings(version_tag, [d.version if d.op and d.version else "" for d in deps])


def main_header(info, entries: list[Entry], buildtime: int) -> bytes:
    """Encode the immutable main header for `entries`."""
    arch = rpm_arch(info.arch)
    evr = f"{info.version}-{info.revision}"
    files = payload_entries(entries)

    header = Header()
    header.strings(HEADERI18NTABLE, ["C"])
    header.string(NAME, info.name)
    header.string(VERSION, info.version)
    header.string(RELEASE, info.revision)
    summary = (info.description or info.name).strip().splitlines()[0]
    header.i18n(SUMMARY, summary)
    header.i18n(DESCRIPTION, info.description or info.name)
    header.int32(BUILDTIME, [buildtime])
    header.string(BUILDHOST, socket.gethostname() or "localhost")
    header.int32(SIZE, [sum(e.size for e in files if e.is_file)])
    header.string(LICENSE, info.license or "unknown")
    header.i18n(GROUP, info.group or "Unspecified")
    header.string(URL, info.url)
    header.string(OS, "linux")
    header.string(ARCH, arch)

    header.int32(FILESIZES, [e.size for e in files])
    header.int16(FILEMODES, [(0o040000 if e.is_dir else 0o120000 if e.is_symlink else 0o100000) | e.mode for e in files])
    header.int16(FILERDEVS, [0 for _ in files])
    header.int32(FILEMTIMES, [e.mtime for e in files])
    header.strings(FILEDIGESTS, [_sha256_file(e) if e.is_file else "" for e in files])
    header.strings(FILELINKTOS, [e.linkname if e.is_symlink else "" for e in files])
    header.int32(FILEFLAGS, [0 for _ in files])
    header.strings(FILEUSERNAME, ["root" for _ in files])
    header.strings(FILEGROUPNAME, ["root" for _ in files])
    header.string(SOURCERPM, f"{info.name}-{evr}.src.rpm")
    header.int32(FILEVERIFYFLAGS, [-1 for _ in files])

    provides = [Dependency(info.name, "=", evr)] + [parse_dependency(p) for p in info.provides]
    _dependency_tags(header, PROVIDENAME, PROVIDEFLAGS, PROVIDEVERSION, provides)

    requires = list(info.depends) + [Dependency(name, "<=", version) for name, version in RPMLIB_REQUIRES]
    header.strings(REQUIRENAME, [d.name for d in requires])
    header.int32(
        REQUIREFLAGS,
        [
            (_SENSE.get(d.op, 0) if d.op and d.version else 0) | (SENSE_RPMLIB if d.name.startswith("rpmlib(") else 0)
            for d in requires
        ],
    )
    header.strings(REQUIREVERSION, [d.version if d.op and d.version else "" for d in requires])

    conflicts = [parse_dependency(c) for c in info.conflicts]
    _dependency_tags(header, CONFLICTNAME, CONFLICTFLAGS, CONFLICTVERSION, conflicts)

    header.string(RPMVERSION, RPM_VERSION)
    header.int32(FILEDEVICES, [1 for _ in files])
    header.int32(FILEINODES, list(range(1, len(files) + 1)))
    header.strings(FILELANGS, ["" for _ in files])

    dirnames: list[str] = []
    dirindexes: list[int] = []
    basenames: list[str] = []
    for entry in files:
        dirname, basename = posixpath.split("/" + entry.path)
        dirname = dirname.rstrip("/") + "/"
        if dirname not in dirnames:
            dirnames.append(dirname)
        dirindexes.append(dirnames.index(dirname))
        basenames.append(basename)
    header.int32(DIRINDEXES, dirindexes)
    header.strings(BASENAMES, basenames)
    header.strings(DIRNAMES, dirnames)

    header.string(PAYLOADFORMAT, "cpio")
    header.string(PAYLOADCOMPRESSOR, "gzip")
    header.string(PAYLOADFLAGS, "9")
    if files:
        header.int32(FILEDIGESTALGO, [DIGEST_ALGO_SHA256])
    return header.encode(HEADERIMMUTABLE)


def signature_header(header: bytes, payload: BinaryIO, payload_size: int, uncompressed_size: int) -> bytes:
    """Encode the signature header, padded to an 8-byte boundary."""
    md5 = hashlib.md5(header)
    payload.seek(0)
    for chunk in iter(lambda: payload.read(64 * 1024), b""):
        md5.update(chunk)
    payload.seek(0)

    signature = Header()
    signature.string(SIG_SHA1, hashlib.sha1(header).hexdigest())
    signature.string(SIG_SHA256, hashlib.sha256(header).hexdigest())
    signature.int32(SIG_SIZE, [len(header) + payload_size])
    signature.binary(SIG_MD5, md5.digest())
    signature.int32(SIG_PAYLOADSIZE, [uncompressed_size])
    encoded = signature.encode(HEADERSIGNATURES)
    return encoded + b"\0" * (-len(encoded) % 8)


def write_rpm(out: BinaryIO, info, entries: list[Entry]) -> None:
    """
    Write a complete .rpm to `out`.

    Args:
        out: Binary file object.
        info: PackageInfo of the package.
        entries: Payload entries from collect_entries.
    """
    buildtime = build_timestamp(entries)
    header = main_header(info, entries, buildtime)

    with tempfile.SpooledTemporaryFile(max_size=32 * 1024 * 1024) as payload:
        with gzip_writer(payload) as gz:
            uncompressed = write_cpio(gz, payload_entries(entries))
        payload_size = payload.tell()

        out.write(lead(f"{info.name}-{info.version}-{info.revision}"))
        out.write(signature_header(header, payload, payload_size, uncompressed))
        out.write(header)
        shutil.copyfileobj(payload, out)
