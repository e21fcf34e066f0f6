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
# ARTIFACT STORE
# -----------------------------------------------------------------------------
# Responsibility: Places finished packages in the output tree
#
#   <output_dir>/<os>/<os_version>/<arch>/<file>
#
# Files are written to a temporary name in the destination directory and
# renamed into place, so a rebuild replaces the previous artifact atomically.
# -----------------------------------------------------------------------------

import hashlib
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from rich.console import Console

from pkgforge.domain.models import BuildTarget

console = Console()

HASH_CHUNK_SIZE = 64 * 1024
UNKNOWN_VERSION = "unknown"


@dataclass(frozen=True)
class ArtifactKey:
    """Identity of an artifact: where it runs and what format it is."""

    os: str
    os_version: str
    arch: str
    target: BuildTarget

    @property
    def relative_dir(self) -> Path:
        return Path(self.os or "unknown") / (self.os_version or UNKNOWN_VERSION) / self.arch


@dataclass(frozen=True)
class Artifact:
    """A package file written to the output tree."""

    key: ArtifactKey
    path: Path
    sha256: str
    size: int


def compute_file_hash(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


class ArtifactStore:
    """Writes artifacts under `root`, keyed by OS, OS version and arch."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, key: ArtifactKey, filename: str) -> Path:
        return self.root / key.relative_dir / filename

    def write(self, key: ArtifactKey, filename: str, writer: Callable[[BinaryIO], None]) -> Artifact:
        """
        Atomically write an artifact.

        Args:
            key: Artifact identity.
            filename: Final file name.
            writer: Callable that writes the file contents to a binary file object.

        Returns:
            The written Artifact.
        """
        final = self.path_for(key, filename)
        final.parent.mkdir(parents=True, exist_ok=True)

        tmp = tempfile.NamedTemporaryFile(
            mode="wb", dir=final.parent, prefix=f".{filename}.", suffix=".tmp", delete=False
        )
        try:
            with tmp:
                writer(tmp)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.chmod(tmp.name, 0o644)
            os.replace(tmp.name, final)
        except BaseException:
            Path(tmp.name).unlink(missing_ok=True)
            raise

        artifact = Artifact(key=key, path=final, sha256=compute_file_hash(final), size=final.stat().st_size)
        console.print(f"[green][PACKAGER] Wrote {final} ({artifact.size} bytes)[/green]")
        return artifact
