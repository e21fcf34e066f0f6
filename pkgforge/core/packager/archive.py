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
# PACKAGER - FILE TREE & DETERMINISTIC ARCHIVES
# -----------------------------------------------------------------------------
# Responsibility: Walks an extracted output directory and writes tar/gzip
# streams from it that depend only on the tree's contents.
#
# - Entries are sorted lexicographically by relative path
# - Owners are root:root, gzip headers carry mtime 0
# - Timestamps come from the files, clamped to SOURCE_DATE_EPOCH when set
# -----------------------------------------------------------------------------

import fnmatch
import gzip
import io
import os
import stat
import tarfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from rich.console import Console

console = Console()

FILE = "file"
DIRECTORY = "dir"
SYMLINK = "symlink"


@dataclass(frozen=True)
class Entry:
    """One filesystem object of the package payload."""

    path: str  # relative, posix, no leading "./"
    source: Path
    kind: str
    mode: int
    size: int
    mtime: int
    linkname: str = ""

    @property
    def is_file(self) -> bool:
        return self.kind == FILE

    @property
    def is_dir(self) -> bool:
        return self.kind == DIRECTORY

    @property
    def is_symlink(self) -> bool:
        return self.kind == SYMLINK


def _clamp(mtime: float) -> int:
    epoch = os.environ.get("SOURCE_DATE_EPOCH")
    value = int(mtime)
    if epoch and epoch.isdigit():
        return min(value, int(epoch))
    return value


def _excluded(path: str, patterns: list[str]) -> bool:
    parts = path.split("/")
    candidates = ["/".join(parts[: i + 1]) for i in range(len(parts))]
    return any(fnmatch.fnmatchcase(c, p) for p in patterns for c in candidates)


def _clean_patterns(exclude: Iterable[str]) -> list[str]:
    patterns = []
    for pattern in exclude:
        pattern = pattern.strip()
        if not pattern:
            continue
        if pattern.startswith("/"):
            console.print(f"[yellow][PACKAGER] Ignoring absolute exclude path {pattern}[/yellow]")
            continue
        patterns.append(pattern.removeprefix("./").rstrip("/"))
    return patterns


def collect_entries(root: Path, exclude: Iterable[str] = ()) -> list[Entry]:
    """
    List every file, directory and symlink below `root`.

    Args:
        root: The extracted output directory.
        exclude: Glob patterns relative to `root`; a matching directory
            excludes everything below it.

    Returns:
        Entries sorted by relative path.
    """
    root = Path(root)
    patterns = _clean_patterns(exclude)
    entries: list[Entry] = []

    for current, dirs, files in os.walk(root):
        for name in sorted(dirs + files):
            full = Path(current) / name
            rel = full.relative_to(root).as_posix()
            if _excluded(rel, patterns):
                continue
            st = os.lstat(full)
            mode = stat.S_IMODE(st.st_mode)
            if stat.S_ISLNK(st.st_mode):
                target = os.readlink(full)
                entries.append(Entry(rel, full, SYMLINK, mode, len(target), _clamp(st.st_mtime), target))
            elif stat.S_ISDIR(st.st_mode):
                entries.append(Entry(rel, full, DIRECTORY, mode, 0, _clamp(st.st_mtime)))
            elif stat.S_ISREG(st.st_mode):
                entries.append(Entry(rel, full, FILE, mode, st.st_size, _clamp(st.st_mtime)))
            else:
                console.print(f"[yellow][PACKAGER] Skipping special file {rel}[/yellow]")
        # prune excluded directories
        dirs[:] = [d for d in dirs if not _excluded((Path(current) / d).relative_to(root).as_posix(), patterns)]

    entries.sort(key=lambda e: e.path)
    return entries


def build_timestamp(entries: list[Entry]) -> int:
    """Newest mtime of the payload, used wherever a format wants a date."""
    epoch = os.environ.get("SOURCE_DATE_EPOCH")
    if epoch and epoch.isdigit():
        return int(epoch)
    return max((e.mtime for e in entries), default=0)


def _tarinfo(name: str, entry: Entry) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.mode = entry.mode
    info.mtime = entry.mtime
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    if entry.is_dir:
        info.type = tarfile.DIRTYPE
    elif entry.is_symlink:
        info.type = tarfile.SYMTYPE
        info.linkname = entry.linkname
    else:
        info.size = entry.size
    return info


def write_tar(fileobj: BinaryIO, entries: list[Entry], prefix: str = "", root_mtime: int | None = None) -> None:
    """
    Write `entries` as an uncompressed GNU tar stream.

    With `prefix="./"` a leading "./" directory member is written first,
    the layout dpkg expects in data.tar.
    """
    with tarfile.open(fileobj=fileobj, mode="w", format=tarfile.GNU_FORMAT) as tar:
        if prefix:
            info = tarfile.TarInfo(prefix)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            info.mtime = build_timestamp(entries) if root_mtime is None else root_mtime
            info.uname = info.gname = "root"
            tar.addfile(info)
        for entry in entries:
            info = _tarinfo(prefix + entry.path, entry)
            if entry.is_file:
                with open(entry.source, "rb") as f:
                    tar.addfile(info, f)
            else:
                tar.addfile(info)


def add_bytes(tar: tarfile.TarFile, name: str, data: bytes, mtime: int, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    info.mtime = mtime
    info.uname = info.gname = "root"
    tar.addfile(info, io.BytesIO(data))


def gzip_writer(fileobj: BinaryIO) -> gzip.GzipFile:
    """A gzip stream with an empty file name and zero mtime in its header."""
    return gzip.GzipFile(filename="", mode="wb", fileobj=fileobj, mtime=0, compresslevel=9)


def write_tar_gz(fileobj: BinaryIO, entries: list[Entry], prefix: str = "") -> None:
    with gzip_writer(fileobj) as gz:
        write_tar(gz, entries, prefix=prefix)


def tarball_name(name: str, version: str, revision: str, arch: str) -> str:
    return f"{name}-{version}-{revision}.{arch}.tar.gz"
