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
# PACKAGER
# -----------------------------------------------------------------------------
# Responsibility: Assembles an extracted job output directory into a package
# of the job's format and hands it to the Artifact Store.
#
# Formats: deb (deb.py), rpm (rpm.py), gzip tarball (archive.py).
# A packaging failure never touches the output directory, so packaging can
# be retried without rebuilding.
# -----------------------------------------------------------------------------

import struct
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console

from pkgforge.core.artifacts import Artifact, ArtifactKey, ArtifactStore
from pkgforge.core.conditions import Dependency, ImageContext, flatten_entries
from pkgforge.core.os_info import deb_arch, normalize_arch, rpm_arch
from pkgforge.core.packager.archive import collect_entries, tarball_name, write_tar_gz
from pkgforge.core.packager.deb import deb_name, write_deb
from pkgforge.core.packager.rpm import rpm_name, write_rpm
from pkgforge.domain.models import BuildTarget, Recipe

console = Console()


class PackagingFailed(Exception):
    """Raised when an output directory cannot be turned into a package."""

    def __init__(self, message: str, output_dir: Path | None = None) -> None:
        super().__init__(message)
        self.output_dir = output_dir


@dataclass
class PackageInfo:
    """Everything an encoder needs to know about the package it writes."""

    name: str
    version: str
    revision: str = "1"
    arch: str = "x86_64"
    description: str = ""
    license: str = ""
    url: str | None = None
    maintainer: str | None = None
    section: str = "misc"
    priority: str = "optional"
    group: str = "Unspecified"
    depends: list[Dependency] = field(default_factory=list)
    provides: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    os_name: str = "unknown"
    os_version: str = ""

    @classmethod
    def from_recipe(cls, recipe: Recipe, image: ImageContext, os_version: str = "") -> "PackageInfo":
        """Package metadata of `recipe` as built on `image`; depends are resolved for that image."""
        metadata = recipe.metadata
        return cls(
            name=metadata.name,
            version=metadata.version,
            revision=metadata.revision,
            arch=normalize_arch(image.arch),
            description=metadata.description,
            license=metadata.license,
            url=metadata.url,
            maintainer=metadata.maintainer,
            section=metadata.section,
            priority=metadata.priority,
            group=metadata.group,
            depends=flatten_entries(metadata.depends, image),
            provides=list(metadata.provides),
            conflicts=list(metadata.conflicts),
            exclude=list(metadata.exclude),
            os_name=image.os or "unknown",
            os_version=os_version,
        )

    def artifact_key(self, target: BuildTarget) -> ArtifactKey:
        arch = {BuildTarget.DEB: deb_arch, BuildTarget.RPM: rpm_arch}.get(target, normalize_arch)(self.arch)
        return ArtifactKey(os=self.os_name, os_version=self.os_version, arch=arch, target=target)


def package_filename(info: PackageInfo, target: BuildTarget) -> str:
    if target is BuildTarget.DEB:
        return deb_name(info.name, info.version, info.revision, info.arch)
    if target is BuildTarget.RPM:
        return rpm_name(info.name, info.version, info.revision, info.arch)
    return tarball_name(info.name, info.version, info.revision, normalize_arch(info.arch))


def package(output_dir: Path, info: PackageInfo, target: BuildTarget, store: ArtifactStore) -> Artifact:
    """
    Package `output_dir` as `target` and store the result.

    Args:
        output_dir: Extracted job output on the host.
        info: Package metadata.
        target: Package format.
        store: Artifact store receiving the file.

    Returns:
        The written Artifact.

    Raises:
        PackagingFailed: If the directory is missing or encoding fails.
    """
    output_dir = Path(output_dir)
    if not output_dir.is_dir():
        raise PackagingFailed(f"Output directory {output_dir} does not exist", output_dir)

    filename = package_filename(info, target)
    console.print(f"[cyan][PACKAGER] Packaging {filename} ({target.value})[/cyan]")

    try:
        entries = collect_entries(output_dir, info.exclude)

        def writer(f):
            if target is BuildTarget.DEB:
                write_deb(f, info, entries)
            elif target is BuildTarget.RPM:
                write_rpm(f, info, entries)
            else:
                write_tar_gz(f, entries)

        return store.write(info.artifact_key(target), filename, writer)
    except (OSError, ValueError, struct.error) as e:
        console.print(f"[red][PACKAGER] Packaging {filename} failed: {e}[/red]")
        raise PackagingFailed(f"Packaging {filename} failed: {e}", output_dir) from e


__all__ = ["PackageInfo", "PackagingFailed", "package", "package_filename"]
