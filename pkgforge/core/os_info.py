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
# OS IDENTITY
# -----------------------------------------------------------------------------
# Responsibility: Knows which distributions exist, which package manager each
# one uses, which package format it installs natively, and how every format
# spells an architecture.
#
# The OS name is the `ID` field of /etc/os-release (debian, ubuntu, rocky...).
# -----------------------------------------------------------------------------

import re
import shlex
from dataclasses import dataclass
from enum import Enum

from pkgforge.domain.models import BuildTarget


class PackageManager(str, Enum):
    APT = "apt-get"
    DNF = "dnf"
    YUM = "yum"
    PACMAN = "pacman"
    APK = "apk"
    ZYPPER = "zypper"


OS_PACKAGE_MANAGERS: dict[str, PackageManager] = {
    "debian": PackageManager.APT,
    "ubuntu": PackageManager.APT,
    "linuxmint": PackageManager.APT,
    "raspbian": PackageManager.APT,
    "pop": PackageManager.APT,
    "fedora": PackageManager.DNF,
    "centos": PackageManager.DNF,
    "rhel": PackageManager.DNF,
    "rocky": PackageManager.DNF,
    "almalinux": PackageManager.DNF,
    "ol": PackageManager.DNF,
    "amzn": PackageManager.YUM,
    "arch": PackageManager.PACMAN,
    "manjaro": PackageManager.PACMAN,
    "alpine": PackageManager.APK,
    "opensuse": PackageManager.ZYPPER,
    "opensuse-leap": PackageManager.ZYPPER,
    "opensuse-tumbleweed": PackageManager.ZYPPER,
    "sles": PackageManager.ZYPPER,
}

# Names the Condition Resolver treats as OS scopes rather than image names
KNOWN_OS_NAMES = frozenset(OS_PACKAGE_MANAGERS)

# RHEL-family releases older than 8 only ship yum
_YUM_ONLY_BEFORE = {"centos": 8, "rhel": 8, "ol": 8}

_NATIVE_TARGETS = {
    PackageManager.APT: BuildTarget.DEB,
    PackageManager.DNF: BuildTarget.RPM,
    PackageManager.YUM: BuildTarget.RPM,
    PackageManager.ZYPPER: BuildTarget.RPM,
}

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86-64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "armv8": "aarch64",
    "i386": "i686",
    "x86": "i686",
    "armhf": "armv7hl",
    "armv7": "armv7hl",
    "armv7l": "armv7hl",
    "ppc64el": "ppc64le",
    "all": "noarch",
    "any": "noarch",
}

_DEB_ARCHES = {
    "x86_64": "amd64",
    "aarch64": "arm64",
    "i686": "i386",
    "armv7hl": "armhf",
    "ppc64le": "ppc64el",
    "noarch": "all",
}


def normalize_arch(arch: str | None) -> str:
    """Canonical (RPM-style) architecture name; empty means noarch."""
    if not arch:
        return "noarch"
    arch = arch.strip().lower()
    return _ARCH_ALIASES.get(arch, arch)


def deb_arch(arch: str | None) -> str:
    arch = normalize_arch(arch)
    return _DEB_ARCHES.get(arch, arch)


def rpm_arch(arch: str | None) -> str:
    return normalize_arch(arch)


@dataclass(frozen=True)
class OsInfo:
    """Identity of the operating system inside an image."""

    name: str
    version: str = ""

    @property
    def major_version(self) -> int | None:
        match = re.match(r"\d+", self.version or "")
        return int(match.group()) if match else None

    @property
    def package_manager(self) -> PackageManager | None:
        manager = OS_PACKAGE_MANAGERS.get(self.name)
        if manager is PackageManager.DNF and self.name in _YUM_ONLY_BEFORE:
            major = self.major_version
            if major is not None and major < _YUM_ONLY_BEFORE[self.name]:
                return PackageManager.YUM
        return manager

    @property
    def default_target(self) -> BuildTarget:
        manager = self.package_manager
        return _NATIVE_TARGETS.get(manager, BuildTarget.GZIP) if manager else BuildTarget.GZIP


def parse_os_release(text: str) -> OsInfo:
    """
    Parse the contents of /etc/os-release.

    Returns:
        OsInfo with `ID` as name and `VERSION_ID` as version ("" if missing).
    """
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip("\"'")
    return OsInfo(name=values.get("ID", "unknown").lower(), version=values.get("VERSION_ID", ""))


def install_command(manager: PackageManager, packages: list[str]) -> str:
    """
    Build the non-interactive command installing `packages`.

    Repository metadata is refreshed first where the manager needs it.
    """
    names = " ".join(shlex.quote(p) for p in packages)
    if manager is PackageManager.APT:
        return f"apt-get -y update && apt-get -y install --no-install-recommends {names}"
    if manager in (PackageManager.DNF, PackageManager.YUM):
        return f"{manager.value} -y install {names}"
    if manager is PackageManager.PACMAN:
        return f"pacman -Sy --noconfirm --needed {names}"
    if manager is PackageManager.APK:
        return f"apk add --no-cache {names}"
    if manager is PackageManager.ZYPPER:
        return f"zypper --non-interactive refresh && zypper --non-interactive install {names}"
    raise ValueError(f"Unsupported package manager: {manager}")
