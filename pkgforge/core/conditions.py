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
# CONDITION RESOLVER
# -----------------------------------------------------------------------------
# Responsibility: Evaluates the scopes recipes attach to steps and dependency
# lists against the image a job runs on.
#
# Scope grammar:
#   all              -> Unconditional
#   <name>+<arch>    -> ScopedByOSArch (name is an image name or an OS name)
#   <known OS name>  -> ScopedByOS     (debian, rocky, alpine, ...)
#   anything else    -> ScopedByImage
#
# Every matching scope contributes (union semantics). Scopes naming images
# that are not part of the run simply never match.
# -----------------------------------------------------------------------------

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from pkgforge.core.os_info import KNOWN_OS_NAMES, normalize_arch

ALL_SCOPE = "all"


@dataclass(frozen=True)
class Unconditional:
    pass


@dataclass(frozen=True)
class ScopedByImage:
    image: str


@dataclass(frozen=True)
class ScopedByOS:
    os: str


@dataclass(frozen=True)
class ScopedByOSArch:
    name: str
    arch: str


Scope = Unconditional | ScopedByImage | ScopedByOS | ScopedByOSArch


@dataclass(frozen=True)
class ImageContext:
    """What a scope is evaluated against: one image of one job."""

    image: str
    os: str | None = None
    arch: str = "x86_64"


@dataclass(frozen=True)
class Dependency:
    """A package name with an optional version constraint (`openssl >= 1.1`)."""

    name: str
    op: str | None = None
    version: str | None = None

    def __str__(self) -> str:
        if self.op and self.version:
            return f"{self.name} {self.op} {self.version}"
        return self.name


_DEPENDENCY_RE = re.compile(
    r"^(?P<name>[A-Za-z0-9@_+][A-Za-z0-9@_+.:/-]*)"
    r"(?:\s*\(?\s*(?P<op><<|>>|<=|>=|==|=|<|>)\s*(?P<version>[^\s()<>=][^\s)]*)\s*\)?)?$"
)


def parse_dependency(entry: str) -> Dependency:
    """
    Parse a dependency entry.

    Accepts `name`, `name >= 1.0` and the Debian spelling `name (>= 1.0)`.

    Raises:
        ValueError: If the entry is not a valid dependency.
    """
    match = _DEPENDENCY_RE.match(entry.strip())
    if not match:
        raise ValueError(f"Invalid dependency: {entry!r}")
    op = match.group("op")
    if op == "==":
        op = "="
    return Dependency(name=match.group("name"), op=op, version=match.group("version"))


def parse_scope(name: str) -> Scope:
    name = name.strip()
    if name == ALL_SCOPE:
        return Unconditional()
    if "+" in name:
        base, _, arch = name.rpartition("+")
        if base and arch:
            return ScopedByOSArch(name=base, arch=normalize_arch(arch))
    if name.lower() in KNOWN_OS_NAMES:
        return ScopedByOS(os=name.lower())
    return ScopedByImage(image=name)


def parse_filter(names: Iterable[str] | None) -> tuple[Scope, ...]:
    return tuple(parse_scope(n) for n in names or ())


def scope_matches(scope: Scope, image: ImageContext) -> bool:
    """Does a single scope apply to `image`?"""
    if isinstance(scope, Unconditional):
        return True
    if isinstance(scope, ScopedByImage):
        return scope.image == image.image
    if isinstance(scope, ScopedByOS):
        return image.os is not None and scope.os == image.os
    if isinstance(scope, ScopedByOSArch):
        name_matches = scope.name == image.image or (image.os is not None and scope.name == image.os)
        return name_matches and scope.arch == normalize_arch(image.arch)
    raise TypeError(f"Unknown scope: {scope!r}")


def resolve(expr: Iterable[Scope | str] | None, image: ImageContext) -> bool:
    """
    Evaluate a step filter.

    Args:
        expr: Scopes (or raw scope names) the step is restricted to.
        image: The image the job runs on.

    Returns:
        True if the filter is empty or any scope matches.
    """
    scopes = [parse_scope(s) if isinstance(s, str) else s for s in expr or ()]
    if not scopes:
        return True
    return any(scope_matches(scope, image) for scope in scopes)


def flatten_entries(expr: Mapping[str, Iterable[str]] | None, image: ImageContext) -> list[Dependency]:
    """
    Resolve a dependency expression into an ordered, de-duplicated list.

    `all` entries come first, then scoped entries in declaration order. A
    package named twice keeps its first occurrence.
    """
    if not expr:
        return []

    ordered_keys = sorted(expr, key=lambda k: k.strip() != ALL_SCOPE)
    seen: set[str] = set()
    result: list[Dependency] = []
    for key in ordered_keys:
        if not scope_matches(parse_scope(key), image):
            continue
        for entry in expr[key] or ():
            dependency = parse_dependency(str(entry))
            if dependency.name in seen:
                continue
            seen.add(dependency.name)
            result.append(dependency)
    return result


def flatten(expr: Mapping[str, Iterable[str]] | None, image: ImageContext) -> set[str]:
    """Flat dependency set of `expr` for `image` (one entry per package name)."""
    return {str(d) for d in flatten_entries(expr, image)}
