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
# CONTAINER DRIVER
# -----------------------------------------------------------------------------
# Responsibility: A thin wrapper around the Docker SDK that speaks in
# container ids and translates SDK failures into three errors:
# - RuntimeUnreachable: the daemon cannot be contacted
# - ContainerNotFound: unknown container or image
# - ContainerRuntimeError: any other API failure
#
# A non-zero exit code of an exec is NOT an error here. It is returned to
# the caller, which decides whether the job failed.
#
# This is part of the Infrastructure layer - it provides low-level Docker
# access to the Image Registry and Build Jobs without exposing SDK details.
# -----------------------------------------------------------------------------

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import docker
import requests
from docker import DockerClient
from docker.errors import APIError, ContainerError, DockerException, NotFound
from rich.console import Console
from rich.markup import escape

console = Console()

KEEPALIVE_COMMAND = "sleep infinity"
DEFAULT_SHELL = "/bin/sh"
# Characters Docker accepts in container names: [a-zA-Z0-9][a-zA-Z0-9_.-]
_NAME_CHARS = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_.-")


class ContainerDriverError(Exception):
    """Base class of every container runtime failure."""

    pass


class RuntimeUnreachable(ContainerDriverError):
    """Raised when the Docker daemon cannot be contacted."""

    pass


class ContainerNotFound(ContainerDriverError):
    """Raised when a container or image does not exist."""

    pass


class ContainerRuntimeError(ContainerDriverError):
    """Raised when the daemon rejects or fails a request."""

    pass


@dataclass
class ExecResult:
    """Exit code and combined stdout/stderr of one exec."""

    exit_code: int
    output: bytes = b""

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


def fix_name(name: str) -> str:
    """Drop characters Docker does not allow in container names."""
    return "".join(c for c in name if c in _NAME_CHARS).lstrip("_.-") or "pkgforge"


@contextmanager
def _translate(action: str):
    try:
        yield
    except NotFound as e:
        raise ContainerNotFound(f"{action}: {e.explanation or e}") from e
    except APIError as e:
        raise ContainerRuntimeError(f"{action}: {e.explanation or e}") from e
    except requests.exceptions.ConnectionError as e:
        raise RuntimeUnreachable(f"{action}: Docker daemon unreachable ({e})") from e
    except DockerException as e:
        raise ContainerRuntimeError(f"{action}: {e}") from e


class ContainerDriver:
    """
    Docker SDK wrapper used by every Build Job.

    Connects to `base_url` (unix socket, tcp:// or http(s)://) or, without
    one, to whatever DOCKER_HOST / the local socket points at.
    """

    def __init__(
        self,
        base_url: str | None = None,
        quiet: bool = False,
        client: DockerClient | None = None,
    ) -> None:
        """
        Initialize the driver.

        Args:
            base_url: Docker endpoint, None for the environment default.
            quiet: Suppress streamed build and exec output.
            client: Pre-built client (tests).

        Raises:
            RuntimeUnreachable: If the daemon does not answer a ping.
        """
        self._quiet = quiet
        self._client = client if client is not None else self._connect(base_url)

    def _connect(self, base_url: str | None) -> DockerClient:
        try:
            if base_url:
                client = docker.DockerClient(base_url=base_url)
            else:
                client = docker.from_env()
            client.ping()
        except (DockerException, requests.exceptions.ConnectionError) as e:
            console.print(f"[red][DOCKER] Engine unavailable: {escape(str(e))}[/red]")
            raise RuntimeUnreachable(f"Docker daemon unreachable at {base_url or 'default'}: {e}") from e

        console.print(f"[green][DOCKER] Connected to {base_url or 'local Docker'}[/green]")
        return client

    @property
    def api(self):
        return self._client.api

    # =========================================================================
    # IMAGES
    # =========================================================================

    def build_image(self, context: Path, tag: str) -> str:
        """
        Build an image from a Dockerfile directory.

        Returns:
            The id of the built image.

        Raises:
            ContainerRuntimeError: If the build reports an error.
        """
        image_id: str | None = None
        with _translate(f"build image {tag}"):
            for chunk in self.api.build(path=str(context), tag=tag, rm=True, forcerm=True, decode=True):
                if "error" in chunk:
                    raise ContainerRuntimeError(f"build image {tag}: {chunk['error'].strip()}")
                if "stream" in chunk and not self._quiet:
                    line = chunk["stream"].rstrip()
                    if line:
                        console.print(f"[dim][DOCKER] {escape(line)}[/dim]")
                aux = chunk.get("aux")
                if isinstance(aux, dict) and aux.get("ID"):
                    image_id = aux["ID"]

        if image_id is None:
            raise ContainerRuntimeError(f"build image {tag}: stream ended before image id was received")
        return image_id

    def image_exists(self, ref: str) -> bool:
        try:
            with _translate(f"inspect image {ref}"):
                self.api.inspect_image(ref)
            return True
        except ContainerNotFound:
            return False

    def run_oneshot(self, image: str, command: str) -> str:
        """Run `command` in a throwaway container and return its stdout."""
        with _translate(f"run {image}"):
            try:
                out = self._client.containers.run(
                    image,
                    command=[command],
                    entrypoint=[DEFAULT_SHELL, "-c"],
                    remove=True,
                    stdout=True,
                    stderr=False,
                )
            except ContainerError as e:
                raise ContainerRuntimeError(f"run {image}: exit code {e.exit_status}") from e
        return out.decode("utf-8", errors="replace") if isinstance(out, bytes) else str(out)

    # =========================================================================
    # CONTAINER LIFECYCLE
    # =========================================================================

    def create(
        self,
        image_ref: str,
        working_dir: str,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
        name: str | None = None,
    ) -> str:
        """Create a keep-alive container and return its id."""
        with _translate(f"create container from {image_ref}"):
            response = self.api.create_container(
                image=image_ref,
                command=[KEEPALIVE_COMMAND],
                entrypoint=[DEFAULT_SHELL, "-c"],
                working_dir=working_dir,
                environment=env or {},
                labels=labels or {},
                name=fix_name(name) if name else None,
                detach=True,
            )
        container_id = response["Id"]
        console.print(f"[cyan][DOCKER] Created container {container_id[:12]}[/cyan]")
        return container_id

    def start(self, container_id: str) -> None:
        with _translate(f"start container {container_id[:12]}"):
            self.api.start(container_id)

    def stop(self, container_id: str) -> None:
        """Kill the container. Stopping an already stopped container is fine."""
        try:
            with _translate(f"stop container {container_id[:12]}"):
                self.api.kill(container_id)
        except ContainerRuntimeError as e:
            if "is not running" not in str(e):
                raise

    def remove(self, container_id: str) -> None:
        with _translate(f"remove container {container_id[:12]}"):
            self.api.remove_container(container_id, force=True, v=True)
        console.print(f"[cyan][DOCKER] Removed container {container_id[:12]}[/cyan]")

    def cleanup(self, label: str, value: str) -> int:
        """
        Force-remove every container carrying `label=value`.

        Returns:
            Number of containers removed.
        """
        removed = 0
        with _translate(f"cleanup {label}={value}"):
            for info in self.api.containers(all=True, filters={"label": f"{label}={value}"}):
                self.api.remove_container(info["Id"], force=True, v=True)
                removed += 1
        if removed:
            console.print(f"[yellow][DOCKER] Pruned {removed} leftover container(s)[/yellow]")
        return removed

    # =========================================================================
    # EXECUTION AND FILE TRANSFER
    # =========================================================================

    def exec(
        self,
        container_id: str,
        command: str,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        shell: str = DEFAULT_SHELL,
        user: str | None = None,
    ) -> ExecResult:
        """
        Run `command` through `shell -c` inside a running container.

        Output is streamed to the console as it arrives (unless quiet) and
        returned combined with the exit code.
        """
        action = f"exec in {container_id[:12]}"
        chunks: list[bytes] = []
        with _translate(action):
            exec_id = self.api.exec_create(
                container_id,
                cmd=[shell, "-c", command],
                environment=env or {},
                workdir=cwd,
                user=user or "",
                stdout=True,
                stderr=True,
            )["Id"]
            for chunk in self.api.exec_start(exec_id, stream=True):
                chunks.append(chunk)
                if not self._quiet:
                    for line in chunk.decode("utf-8", errors="replace").splitlines():
                        console.print(f"[dim]  {escape(line)}[/dim]")
            info = self.api.exec_inspect(exec_id)
            while info.get("Running"):
                time.sleep(0.05)
                info = self.api.exec_inspect(exec_id)

        exit_code = info.get("ExitCode")
        return ExecResult(exit_code=-1 if exit_code is None else int(exit_code), output=b"".join(chunks))

    def copy_out(self, container_id: str, path: str) -> Iterator[bytes]:
        """Stream `path` out of the container as a tar archive."""
        with _translate(f"copy {path} from {container_id[:12]}"):
            stream, _stat = self.api.get_archive(container_id, path)
        return self._guarded(stream, f"copy {path} from {container_id[:12]}")

    def copy_in(self, container_id: str, path: str, tar_data: bytes) -> None:
        """Extract an in-memory tar archive into `path` inside the container."""
        with _translate(f"copy into {path} of {container_id[:12]}"):
            ok = self.api.put_archive(container_id, path, tar_data)
        if not ok:
            raise ContainerRuntimeError(f"copy into {path} of {container_id[:12]}: rejected by daemon")

    @staticmethod
    def _guarded(stream: Iterator[bytes], action: str) -> Iterator[bytes]:
        with _translate(action):
            yield from stream
