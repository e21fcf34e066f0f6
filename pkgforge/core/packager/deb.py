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
# PACKAGER - DEB ENCODER
# -----------------------------------------------------------------------------
# Responsibility: Writes a Debian binary package:
#
#   ar archive
#   ├── debian-binary    "2.0\n"
#   ├── control.tar.gz   ./control, ./md5sums
#   └── data.tar.gz      the payload, rooted at ./
#
# Output depends only on the payload and the package metadata.
# -----------------------------------------------------------------------------

import hashlib
import io
import math
import shutil
import tarfile
import tempfile
from typing import BinaryIO

from pkgforge.core.conditions import Dependency, parse_dependency
from pkgforge.core.os_info import deb_arch
from pkgforge.core.packager.archive import Entry, add_bytes, build_timestamp, gzip_writer, write_tar_gz

AR_MAGIC = b"!<arch>\n"
DEBIAN_BINARY = b"2.0\n"
DEFAULT_MAINTAINER = "Unknown <unknown@localhost>"
_DEB_OPERATORS = {"<": "<<", ">": ">>", "=": "=", "<=": "<=", ">=": ">=", "<<": "<<", ">>": ">>"}


def deb_name(name: str, version: str, revision: str, arch: str) -> str:
    return f"{name}_{version}-{revision}_{deb_arch(arch)}.deb"


def render_dependency(dependency: Dependency) -> str:
    if dependency.op and dependency.version:
        return f"{dependency.name} ({_DEB_OPERATORS[dependency.op]} {dependency.version})"
    return dependency.name


def _description(summary: str, name: str) -> str:
    lines = (summary or name).strip().splitlines() or [name]
    rendered = [lines[0]]
    for line in lines[1:]:
        rendered.append(f" {line}" if line.strip() else " .")
    return "\n".join(rendered)


def control_file(info, entries: list[Entry]) -> str:
    """Render the DEBIAN/control file of a package."""
    installed_kib = math.ceil(sum(e.size for e in entries if e.is_file) / 1024)
    fields = [
        ("Package", info.name),
        ("Version", f"{info.version}-{info.revision}"),
        ("Architecture", deb_arch(info.arch)),
        ("Maintainer", info.maintainer or DEFAULT_MAINTAINER),
        ("Installed-Size", str(installed_kib)),
        ("Depends", ", ".join(render_dependency(d) for d in info.depends)),
        ("Provides", ", ".join(render_dependency(parse_dependency(p)) for p in info.provides)),
        ("Conflicts", ", ".join(render_dependency(parse_dependency(c)) for c in info.conflicts)),
        ("Section", info.section),
        ("Priority", info.priority),
        ("Homepage", info.url or ""),
        ("Description", _description(info.description, info.name)),
    ]
    return "".join(f"{key}: {value}\n" for key, value in fields if value)


def md5sums(entries: list[Entry]) -> str:
    lines = []
    for entry in entries:
        if not entry.is_file:
            continue
        digest = hashlib.md5()
        with open(entry.source, "rb") as f:
            for chunk in iter(lambda: f.read(64 * 1024), b""):
                digest.update(chunk)
        lines.append(f"{digest.hexdigest()}  {entry.path}\n")
    return "".join(lines)


def _control_tar_gz(info, entries: list[Entry]) -> bytes:
    mtime = build_timestamp(entries)
    buffer = io.BytesIO()
    with gzip_writer(buffer) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tar:
            root = tarfile.TarInfo("./")
            root.type = tarfile.DIRTYPE
            root.mode = 0o755
            root.mtime = mtime
            root.uname = root.gname = "root"
            tar.addfile(root)
            add_bytes(tar, "./control", control_file(info, entries).encode("utf-8"), mtime)
            add_bytes(tar, "./md5sums", md5sums(entries).encode("utf-8"), mtime)
    return buffer.getvalue()


def _ar_header(name: str, size: int, mtime: int) -> bytes:
    header = f"{name:<16}{mtime:<12}{0:<6}{0:<6}{'100644':<8}{size:<10}`\n"
    return header.encode("ascii")


def _ar_member(out: BinaryIO, name: str, source: BinaryIO, size: int, mtime: int) -> None:
    out.write(_ar_header(name, size, mtime))
    shutil.copyfileobj(source, out)
    if size % 2:
        out.write(b"\n")


def write_deb(out: BinaryIO, info, entries: list[Entry]) -> None:
    """
    Write a complete .deb to `out`.

    Args:
        out: Binary file object.
        info: PackageInfo of the package.
        entries: Payload entries from collect_entries.
    """
    mtime = build_timestamp(entries)
    control = _control_tar_gz(info, entries)

    with tempfile.SpooledTemporaryFile(max_size=32 * 1024 * 1024) as data:
        write_tar_gz(data, entries, prefix="./")
        data_size = data.tell()
        data.seek(0)

        out.write(AR_MAGIC)
        _ar_member(out, "debian-binary", io.BytesIO(DEBIAN_BINARY), len(DEBIAN_BINARY), mtime)
        _ar_member(out, "control.tar.gz", io.BytesIO(control), len(control), mtime)
        _ar_member(out, "data.tar.gz", data, data_size, mtime)
