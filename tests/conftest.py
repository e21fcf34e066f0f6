"""
Pytest configuration and fixtures for pkgforge tests.
"""

import io
import os
import tarfile
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from pkgforge.core.images import ImageRegistry, ImagesState
from pkgforge.core.recipes import parse_recipe
from pkgforge.domain.models import ImageConfig
from pkgforge.infra.docker_client import ContainerNotFound, ContainerRuntimeError, ExecResult

OS_RELEASES = {
    "debian": 'PRETTY_NAME="Debian GNU/Linux 10 (buster)"\nID=debian\nVERSION_ID="10"\n',
    "centos": 'NAME="CentOS Linux"\nID="centos"\nVERSION_ID="8"\n',
}


class FakeDriver:
    """
    In-memory stand-in for ContainerDriver.

    Records every call. Exec exit codes are scripted with `fail_on`
    (substring -> exit code); `exec_hook` runs inside every exec and may
    block to simulate a long step.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.built: list[str] = []
        self.images: set[str] = set()
        self.created: list[str] = []
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.removed: list[str] = []
        self.execs: list[dict] = []
        self.uploads: list[tuple[str, str, bytes]] = []
        self.cleanups: list[tuple[str, str]] = []
        self.fail_on: dict[str, int] = {}
        self.fail_build: set[str] = set()
        self.build_delay = 0.0
        self.exec_hook = None
        self.output_files: dict[str, bytes] = {"usr/bin/tool": b"#!/bin/sh\necho tool\n"}
        self.os_release = OS_RELEASES["debian"]
        self._counter = 0

    def _next(self, prefix: str) -> str:
        with self.lock:
            self._counter += 1
            return f"{prefix}{self._counter:012d}"

    def build_image(self, context: Path, tag: str) -> str:
        if self.build_delay:
            threading.Event().wait(self.build_delay)
        if Path(context).name in self.fail_build:
            raise ContainerRuntimeError(f"build image {tag}: RUN failed")
        image_id = self._next("sha256:")
        with self.lock:
            self.built.append(tag)
            self.images.add(image_id)
        return image_id

    def image_exists(self, ref: str) -> bool:
        return ref in self.images

    def run_oneshot(self, image: str, command: str) -> str:
        return self.os_release

    def create(self, image_ref, working_dir, env=None, labels=None, name=None) -> str:
        if image_ref not in self.images:
            raise ContainerNotFound(f"no such image: {image_ref}")
        container_id = self._next("c")
        with self.lock:
            self.created.append(container_id)
        return container_id

    def start(self, container_id: str) -> None:
        with self.lock:
            self.started.append(container_id)

    def stop(self, container_id: str) -> None:
        with self.lock:
            self.stopped.append(container_id)

    def remove(self, container_id: str) -> None:
        with self.lock:
            self.removed.append(container_id)

    def cleanup(self, label: str, value: str) -> int:
        with self.lock:
            self.cleanups.append((label, value))
        return 0

    def exec(self, container_id, command, env=None, cwd=None, shell="/bin/sh", user=None) -> ExecResult:
        with self.lock:
            self.execs.append(
                {"container": container_id, "command": command, "env": dict(env or {}), "cwd": cwd, "shell": shell}
            )
        if self.exec_hook is not None:
            self.exec_hook(container_id, command)
        for needle, code in self.fail_on.items():
            if needle in command:
                return ExecResult(exit_code=code, output=f"{needle} failed\n".encode())
        return ExecResult(exit_code=0, output=b"ok\n")

    def copy_out(self, container_id: str, path: str):
        root = Path(path).name
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(root)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
            for name, data in self.output_files.items():
                info = tarfile.TarInfo(f"{root}/{name}")
                info.size = len(data)
                info.mode = 0o755
                tar.addfile(info, io.BytesIO(data))
        data = buffer.getvalue()
        return iter([data[:512], data[512:]])

    def copy_in(self, container_id: str, path: str, tar_data: bytes) -> None:
        with self.lock:
            self.uploads.append((container_id, path, tar_data))

    def commands(self) -> list[str]:
        with self.lock:
            return [e["command"] for e in self.execs]


@pytest.fixture
def fake_driver():
    """Recording fake of the container driver."""
    return FakeDriver()


@pytest.fixture
def mock_docker_client():
    """Mock Docker SDK client for testing the real driver."""
    client = MagicMock()
    client.ping.return_value = True
    client.api.create_container.return_value = {"Id": "abc123def456789"}
    client.api.exec_create.return_value = {"Id": "exec-1"}
    client.api.exec_start.return_value = iter([b"line one\n", b"line two\n"])
    client.api.exec_inspect.return_value = {"Running": False, "ExitCode": 0}
    return client


@pytest.fixture
def images_dir(tmp_path):
    """Build contexts for debian10 and centos8."""
    root = tmp_path / "images"
    for name, base in (("debian10", "debian:10"), ("centos8", "centos:8")):
        (root / name).mkdir(parents=True)
        (root / name / "Dockerfile").write_text(f"FROM {base}\n")
    return root


@pytest.fixture
def image_configs():
    return [
        ImageConfig(name="debian10", os="debian", os_version="10"),
        ImageConfig(name="centos8", os="centos", os_version="8"),
    ]


@pytest.fixture
def registry(fake_driver, images_dir, image_configs, tmp_path):
    state = ImagesState(tmp_path / "state" / "images.json")
    return ImageRegistry(fake_driver, images_dir, state, image_configs)


def make_recipe(**overrides):
    """A minimal valid recipe; top-level keys and metadata fields can be overridden."""
    metadata = {"name": "tool", "version": "1.0", "images": ["debian10", "centos8"]}
    metadata.update(overrides.pop("metadata", {}))
    data = {"metadata": metadata, "build": {"steps": [{"cmd": "make"}]}}
    data.update(overrides)
    return parse_recipe(data)


@pytest.fixture
def recipe_factory():
    return make_recipe


@pytest.fixture
def payload_tree(tmp_path):
    """An extracted output directory with fixed timestamps."""
    root = tmp_path / "out"
    (root / "usr" / "bin").mkdir(parents=True)
    (root / "usr" / "share" / "doc" / "tool").mkdir(parents=True)
    (root / "var" / "lib" / "tool").mkdir(parents=True)
    (root / "usr" / "bin" / "tool").write_bytes(b"#!/bin/sh\necho tool\n")
    (root / "usr" / "bin" / "tool").chmod(0o755)
    (root / "usr" / "share" / "doc" / "tool" / "README").write_text("tool docs\n")
    (root / "usr" / "bin" / "tool-alias").symlink_to("tool")
    for path in sorted(root.rglob("*"), reverse=True):
        os.utime(path, (1_700_000_000, 1_700_000_000), follow_symlinks=False)
    return root
