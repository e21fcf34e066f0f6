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
# IMAGE REGISTRY
# -----------------------------------------------------------------------------
# Responsibility: Turns an image build context (a directory with a Dockerfile)
# into a runnable image reference, building it at most once per content
# fingerprint.
#
# Cache rules:
# - Rebuild when there is no cached state, when the context fingerprint
#   changed, or when the cached image vanished from the runtime
# - Concurrent requests for the same image share one in-flight build
# - A failed build is never cached; each later job retries it
#
# The cache survives between runs in a JSON state file (ImagesState).
# -----------------------------------------------------------------------------

import hashlib
import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError
from rich.console import Console

from pkgforge.core.os_info import OsInfo, parse_os_release
from pkgforge.domain.models import ImageConfig
from pkgforge.infra.docker_client import ContainerDriver, ContainerDriverError

console = Console()

DOCKERFILE = "Dockerfile"
IMAGE_TAG = "latest"
IMAGE_PREFIX = "pkgforge"


class ImageBuildFailed(Exception):
    """Raised when an image cannot be built. Fatal to every job on that image."""

    def __init__(self, image: str, reason: str) -> None:
        super().__init__(f"Failed to build image '{image}': {reason}")
        self.image = image
        self.reason = reason


class ImageNotFound(Exception):
    """Raised when a job names an image that has no build context."""

    pass


@dataclass(frozen=True)
class Image:
    """A build context on disk plus what configuration declares about it."""

    name: str
    path: Path
    os: str | None = None
    os_version: str | None = None
    arch: str | None = None

    @property
    def dockerfile(self) -> Path:
        return self.path / DOCKERFILE

    def fingerprint(self) -> str:
        """
        SHA-256 over every file of the build context.

        Relative paths are hashed in sorted order together with the file
        contents, so renames and edits both change the result while
        timestamps never do.
        """
        digest = hashlib.sha256()
        files = []
        for root, dirs, names in os.walk(self.path):
            dirs.sort()
            for name in names:
                files.append(Path(root) / name)
        for file in sorted(files, key=lambda p: p.relative_to(self.path).as_posix()):
            digest.update(file.relative_to(self.path).as_posix().encode("utf-8"))
            digest.update(b"\0")
            if file.is_symlink():
                digest.update(os.readlink(file).encode("utf-8"))
            else:
                digest.update(file.read_bytes())
            digest.update(b"\0")
        return digest.hexdigest()


class ImageState(BaseModel):
    """A built image as remembered between runs."""

    id: str
    image: str
    tag: str = IMAGE_TAG
    fingerprint: str
    os: str = "unknown"
    os_version: str = ""
    built_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ref(self) -> str:
        return f"{self.image}:{self.tag}"

    @property
    def os_info(self) -> OsInfo:
        return OsInfo(name=self.os, version=self.os_version)


class ImagesState:
    """
    Persistent image cache, keyed by image name.

    Thread-safe. `save` only touches the file when something changed.
    """

    def __init__(self, path: Path, images: dict[str, ImageState] | None = None) -> None:
        self.path = Path(path)
        self._images: dict[str, ImageState] = dict(images or {})
        self._lock = threading.Lock()
        self._dirty = False

    @classmethod
    def load(cls, path: Path) -> "ImagesState":
        """Load the state file; a missing or unreadable file yields an empty cache."""
        path = Path(path)
        if not path.exists():
            return cls(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            images = {name: ImageState.model_validate(data) for name, data in raw.get("images", {}).items()}
        except (OSError, ValueError, ValidationError) as e:
            console.print(f"[yellow][IMAGES] Ignoring unreadable state file {path}: {e}[/yellow]")
            return cls(path)
        return cls(path, images)

    def get(self, name: str) -> ImageState | None:
        with self._lock:
            return self._images.get(name)

    def update(self, name: str, state: ImageState) -> None:
        with self._lock:
            self._images[name] = state
            self._dirty = True

    def save(self) -> bool:
        """
        Write the cache to disk if it changed.

        Returns:
            True if the file was written.
        """
        with self._lock:
            if not self._dirty:
                return False
            payload = {"images": {name: s.model_dump(mode="json") for name, s in sorted(self._images.items())}}
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
            self._dirty = False
        console.print(f"[dim][IMAGES] State saved: {self.path}[/dim]")
        return True


class ImageRegistry:
    """
    Owns the image cache and is the only place images get built.

    Args:
        driver: Container driver used for building and inspecting images.
        images_dir: Directory holding one build context per image.
        state: Persistent cache.
        declared: Image declarations from the configuration file.

    A failed build is remembered per (name, fingerprint) for the lifetime
    of the registry, so every job waiting on that image fails with it.
    """

    def __init__(
        self,
        driver: ContainerDriver,
        images_dir: Path,
        state: ImagesState,
        declared: list[ImageConfig] | None = None,
    ) -> None:
        self._driver = driver
        self._images_dir = Path(images_dir)
        self._state = state
        self._declared = {c.name: c for c in declared or []}
        self._failures: dict[str, tuple[str, ImageBuildFailed]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._images: dict[str, Image] | None = None

    @staticmethod
    def discover(images_dir: Path) -> list[str]:
        """Names of every subdirectory of `images_dir` containing a Dockerfile."""
        images_dir = Path(images_dir)
        if not images_dir.is_dir():
            return []
        return sorted(p.name for p in images_dir.iterdir() if p.is_dir() and (p / DOCKERFILE).is_file())

    @property
    def images(self) -> dict[str, Image]:
        if self._images is None:
            found = {}
            for name in self.discover(self._images_dir):
                config = self._declared.get(name)
                found[name] = Image(
                    name=name,
                    path=self._images_dir / name,
                    os=config.os if config else None,
                    os_version=config.os_version if config else None,
                    arch=config.arch if config else None,
                )
            self._images = found
            console.print(f"[cyan][IMAGES] Found {len(found)} image(s) in {self._images_dir}[/cyan]")
        return self._images

    def names(self) -> list[str]:
        return list(self.images)

    def get(self, name: str) -> Image:
        try:
            return self.images[name]
        except KeyError:
            raise ImageNotFound(f"Image '{name}' not found in {self._images_dir}") from None

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def ensure_built(self, name: str) -> ImageState:
        """
        Return a usable image for `name`, building it if needed.

        Raises:
            ImageNotFound: If there is no build context for `name`.
            ImageBuildFailed: If the build (or OS detection) fails.
        """
        image = self.get(name)
        with self._lock_for(name):
            fingerprint = image.fingerprint()
            failed = self._failures.get(name)
            if failed is not None and failed[0] == fingerprint:
                raise failed[1]
            cached = self._state.get(name)
            if cached is not None and cached.fingerprint == fingerprint:
                if self._exists(cached):
                    console.print(f"[dim][IMAGES] Using cached image {name} ({cached.id[:19]})[/dim]")
                    return cached
                console.print(f"[yellow][IMAGES] Cached image {name} missing from runtime, rebuilding[/yellow]")
            elif cached is not None:
                console.print(f"[yellow][IMAGES] Build context of {name} changed, rebuilding[/yellow]")

            try:
                state = self._build(image, fingerprint)
            except ImageBuildFailed as e:
                self._failures[name] = (fingerprint, e)
                raise
            self._failures.pop(name, None)
            self._state.update(name, state)
            return state

    def _exists(self, state: ImageState) -> bool:
        try:
            return self._driver.image_exists(state.id)
        except ContainerDriverError as e:
            console.print(f"[yellow][IMAGES] Cannot inspect {state.ref}: {e}[/yellow]")
            return False

    def _build(self, image: Image, fingerprint: str) -> ImageState:
        tag = f"{IMAGE_PREFIX}-{image.name}".lower()
        console.print(f"[cyan][IMAGES] Building image {image.name}...[/cyan]")
        try:
            image_id = self._driver.build_image(image.path, f"{tag}:{IMAGE_TAG}")
            os_info = self._detect_os(image, image_id)
        except ContainerDriverError as e:
            console.print(f"[red][IMAGES] Build of {image.name} failed: {e}[/red]")
            raise ImageBuildFailed(image.name, str(e)) from e

        console.print(
            f"[green][IMAGES] Built {image.name} ({image_id[:19]}, {os_info.name} {os_info.version})[/green]"
        )
        return ImageState(
            id=image_id,
            image=tag,
            tag=IMAGE_TAG,
            fingerprint=fingerprint,
            os=os_info.name,
            os_version=os_info.version,
        )

    def _detect_os(self, image: Image, image_id: str) -> OsInfo:
        if image.os:
            return OsInfo(name=image.os.lower(), version=image.os_version or "")
        output = self._driver.run_oneshot(image_id, "cat /etc/os-release")
        return parse_os_release(output)
