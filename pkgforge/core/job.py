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
# BUILD JOB - STATE MACHINE & JOB RECORDER
# -----------------------------------------------------------------------------
# Responsibility: Runs one recipe on one image inside a dedicated container
# and leaves the extracted output directory on the host.
#
# Phases, strictly in order:
#   Provisioning -> InstallingDeps -> FetchingSource -> Configuring
#   -> Building -> Installing -> ExtractingOutput -> Succeeded
#
# Guarantees:
# - The container is stopped and removed on every exit path
# - The shared cancel flag is checked before every container call
# - Every transition and exec lands in <work_dir>/<job_id>/job.json
# -----------------------------------------------------------------------------

import io
import json
import shlex
import shutil
import string
import tarfile
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from pkgforge.core.conditions import Dependency, ImageContext, flatten_entries, resolve
from pkgforge.core.images import ImageBuildFailed, ImageNotFound, ImageRegistry, ImageState
from pkgforge.core.os_info import OsInfo, install_command, normalize_arch
from pkgforge.core.recipes import ImageTarget
from pkgforge.domain.models import BuildTarget, JobState, Patch, Phase, Recipe
from pkgforge.infra.docker_client import ContainerDriver, ContainerDriverError, ExecResult, fix_name

console = Console()

SESSION_LABEL = "pkgforge.session"
JOB_LABEL = "pkgforge.job"
RECORD_FILE = "job.json"
SPOOL_LIMIT = 64 * 1024 * 1024
OUTPUT_TAIL = 4000

UNPACK_SCRIPT = """for file in *; do
  case "$file" in
    *.tar|*.tar.*|*.tgz|*.tbz|*.tbz2|*.txz|*.tlz|*.tz) tar -xf "$file" -C {dest} ;;
    *.zip) unzip -o "$file" -d {dest} ;;
    *) cp -rv "$file" {dest} ;;
  esac
done"""


# =============================================================================
# ERRORS
# =============================================================================


class JobFailure(Exception):
    """
    A job-terminal failure.

    Carries the phase it happened in and, for step failures, the index of
    the step and its exit code.
    """

    def __init__(
        self,
        message: str,
        phase: JobState,
        step_index: int | None = None,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.step_index = step_index
        self.exit_code = exit_code
        self.output = output


class DependencyInstallFailed(JobFailure):
    pass


class SourceFetchFailed(JobFailure):
    pass


class StepFailed(JobFailure):
    pass


class PatchFailed(JobFailure):
    pass


class ExtractionFailed(JobFailure):
    pass


class JobCancelled(Exception):
    """Raised at a checkpoint once the cancel flag is set."""

    def __init__(self, phase: JobState) -> None:
        super().__init__(f"Cancelled during {phase.value}")
        self.phase = phase


# =============================================================================
# RESULT & RECORDER
# =============================================================================


@dataclass
class JobResult:
    """Terminal outcome of a Build Job."""

    job_id: str
    recipe: str
    image: str
    target: BuildTarget
    state: JobState
    output_dir: Path | None = None
    phase: JobState | None = None
    step_index: int | None = None
    exit_code: int | None = None
    error: str | None = None
    duration: float = 0.0
    os_name: str = "unknown"
    os_version: str = ""
    arch: str = "x86_64"

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.SUCCEEDED

    def describe(self) -> str:
        if self.succeeded:
            return f"output in {self.output_dir}"
        if self.state is JobState.CANCELLED:
            return "cancelled"
        parts = [f"failed in {self.phase.value if self.phase else 'unknown phase'}"]
        if self.step_index is not None:
            parts.append(f"step {self.step_index}")
        if self.exit_code is not None:
            parts.append(f"exit code {self.exit_code}")
        if self.error:
            parts.append(self.error)
        return ", ".join(parts)


@dataclass
class RecordEntry:
    timestamp: str
    event: str
    details: str | None = None


@dataclass
class ExecRecord:
    state: JobState
    command: str
    exit_code: int | None = None


class JobRecorder:
    """
    Per-job evidence log.

    Every transition and exec is kept in memory and written to job.json
    once the job reaches a terminal state, pass or fail.
    """

    def __init__(self, job_id: str, folder: Path) -> None:
        self.job_id = job_id
        self.folder = Path(folder)
        self.events: list[RecordEntry] = []
        self.execs: list[ExecRecord] = []
        self._lock = threading.Lock()

    def log(self, event: str, details: str | None = None) -> None:
        entry = RecordEntry(timestamp=datetime.now(timezone.utc).isoformat(), event=event, details=details)
        with self._lock:
            self.events.append(entry)

    def record_exec(self, state: JobState, command: str) -> ExecRecord:
        record = ExecRecord(state=state, command=command)
        with self._lock:
            self.execs.append(record)
        return record

    def execs_in(self, state: JobState) -> list[ExecRecord]:
        with self._lock:
            return [e for e in self.execs if e.state is state]

    def finalize(self, result: JobResult) -> Path:
        """Write job.json and return its path."""
        self.folder.mkdir(parents=True, exist_ok=True)
        path = self.folder / RECORD_FILE
        summary = {key: _plain(value) for key, value in asdict(result).items()}
        with self._lock:
            payload = {
                "job_id": self.job_id,
                "result": summary,
                "events": [asdict(e) for e in self.events],
                "execs": [
                    {"state": e.state.value, "command": e.command, "exit_code": e.exit_code} for e in self.execs
                ],
            }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        return path


# =============================================================================
# BUILD JOB
# =============================================================================


def _plain(value):
    if isinstance(value, (JobState, BuildTarget)):
        return value.value
    if isinstance(value, Path):
        return str(value)
    return value


def _tail(text: str) -> str:
    return text[-OUTPUT_TAIL:]


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def _url_basename(url: str) -> str:
    name = url.split("?", 1)[0].split("#", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    return name or "download"


def _default_tools(recipe: Recipe, patches: list[Patch]) -> list[str]:
    """Tools the job itself needs to fetch, unpack and patch the recipe's sources."""
    metadata = recipe.metadata
    tools = []
    if metadata.git:
        tools.append("git")
    elif metadata.source:
        if _is_url(metadata.source):
            tools.append("curl")
        tools.extend(["tar", "gzip"])
    if patches:
        if "curl" not in tools and any(_is_url(p.patch) for p in patches):
            tools.append("curl")
        tools.append("patch")
    return tools


class BuildJob:
    """
    One (recipe, image, format) build.

    Args:
        recipe: The recipe to build.
        target: Image and package format this job produces.
        registry: Image registry providing the built image.
        driver: Container driver.
        work_dir: Host directory for job records and extracted output.
        session_id: Label value shared by every container of the session.
        cancel_event: Shared cancellation flag.
        arch: Architecture override declared for the image.
    """

    def __init__(
        self,
        recipe: Recipe,
        target: ImageTarget,
        registry: ImageRegistry,
        driver: ContainerDriver,
        work_dir: Path,
        session_id: str = "",
        cancel_event: threading.Event | None = None,
        arch: str | None = None,
    ) -> None:
        self.recipe = recipe
        self.image = target.image
        self.target = target.target
        self.arch = normalize_arch(arch or recipe.metadata.arch)
        self._registry = registry
        self._driver = driver
        self._session_id = session_id
        self._cancel = cancel_event if cancel_event is not None else threading.Event()

        stamp = int(time.time())
        self.id = fix_name(f"pkgforge-{recipe.name}-{self.image}-{stamp}-{uuid.uuid4().hex[:6]}")
        self.bld_dir = f"/tmp/{recipe.name}-build-{stamp}"
        self.out_dir = f"/tmp/{recipe.name}-out-{stamp}"
        self.tmp_dir = f"/tmp/{recipe.name}-tmp-{stamp}"
        self.host_dir = Path(work_dir) / self.id
        self.host_out_dir = self.host_dir / "out"

        self.recorder = JobRecorder(self.id, self.host_dir)
        self._state = JobState.PENDING
        self._os = OsInfo(name="unknown")
        self._env: dict[str, str] = {}
        self._container_id: str | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def os_info(self) -> OsInfo:
        return self._os

    @property
    def context(self) -> ImageContext:
        return ImageContext(image=self.image, os=self._os.name, arch=self.arch)

    @property
    def env(self) -> dict[str, str]:
        return dict(self._env)

    def _tag(self) -> str:
        return f"[JOB {self.recipe.name}@{self.image}]"

    def _set_state(self, state: JobState) -> None:
        self._state = state
        self.recorder.log("STATE", state.value)

    def _checkpoint(self) -> None:
        if self._cancel.is_set():
            raise JobCancelled(self._state)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def cancel(self) -> None:
        """
        Request cancellation from another thread.

        Sets the cancel flag and stops the running container so that a
        blocked exec returns.
        """
        self._cancel.set()
        with self._lock:
            container_id = self._container_id
        if container_id is None:
            return
        self.recorder.log("CANCEL_REQUESTED", container_id[:12])
        try:
            self._driver.stop(container_id)
        except ContainerDriverError as e:
            console.print(f"[yellow]{self._tag()} Stop on cancel failed: {escape(str(e))}[/yellow]")

    def cancelled_result(self) -> JobResult:
        """Result for a job that never started because the run was cancelled."""
        self._set_state(JobState.CANCELLED)
        result = self._result(JobState.CANCELLED, phase=JobState.PENDING)
        self.recorder.finalize(result)
        return result

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self) -> JobResult:
        """
        Run every phase and return the terminal result.

        Job failures never propagate; they are turned into a Failed result.
        """
        started = time.monotonic()
        console.print(f"[cyan]{self._tag()} Starting ({self.target.value}, {self.arch})[/cyan]")
        self.recorder.log("JOB_STARTED", f"{self.recipe.name} on {self.image}")

        try:
            self._set_state(JobState.PROVISIONING)
            self._checkpoint()
            image_state = self._registry.ensure_built(self.image)
            self._os = image_state.os_info
            self._env = self._build_env()

            with self._container(image_state) as container_id:
                self._provision(container_id)
                self._install_deps(container_id)
                self._fetch_source(container_id)
                self._apply_patches(container_id)
                self._run_phase(container_id, JobState.CONFIGURING, self.recipe.configure, self.bld_dir)
                self._run_phase(container_id, JobState.BUILDING, self.recipe.build, self.bld_dir)
                self._run_phase(container_id, JobState.INSTALLING, self.recipe.install, self.out_dir)
                self._extract(container_id)

            result = self._result(JobState.SUCCEEDED, output_dir=self.host_out_dir)
            console.print(f"[green]{self._tag()} Succeeded[/green]")

        except JobCancelled as e:
            result = self._result(JobState.CANCELLED, phase=e.phase)

        except JobFailure as e:
            if self._cancel.is_set():
                result = self._result(JobState.CANCELLED, phase=e.phase)
            else:
                result = self._result(
                    JobState.FAILED,
                    phase=e.phase,
                    step_index=e.step_index,
                    exit_code=e.exit_code,
                    error=str(e),
                )
                if e.output:
                    self.recorder.log("FAILURE_OUTPUT", e.output)

        except (ImageBuildFailed, ImageNotFound) as e:
            result = self._result(JobState.FAILED, phase=JobState.PROVISIONING, error=str(e))

        except ContainerDriverError as e:
            if self._cancel.is_set():
                result = self._result(JobState.CANCELLED, phase=self._state)
            else:
                result = self._result(JobState.FAILED, phase=self._state, error=str(e))

        result.duration = time.monotonic() - started
        if result.state is JobState.CANCELLED:
            console.print(f"[yellow]{self._tag()} Cancelled during {result.phase.value}[/yellow]")
        elif result.state is JobState.FAILED:
            console.print(f"[red]{self._tag()} {escape(result.describe())}[/red]")

        self._set_state(result.state)
        self.recorder.log("JOB_FINISHED", result.state.value)
        self.recorder.finalize(result)
        return result

    def _result(self, state: JobState, **kwargs) -> JobResult:
        return JobResult(
            job_id=self.id,
            recipe=self.recipe.name,
            image=self.image,
            target=self.target,
            state=state,
            os_name=self._os.name,
            os_version=self._os.version,
            arch=self.arch,
            **kwargs,
        )

    def _build_env(self) -> dict[str, str]:
        env = dict(self.recipe.env)
        env.update(
            {
                "PKGFORGE_OS": self._os.name,
                "PKGFORGE_OS_VERSION": self._os.version,
                "PKGFORGE_BLD_DIR": self.bld_dir,
                "PKGFORGE_OUT_DIR": self.out_dir,
                "PKGFORGE_ARCH": self.arch,
                "PKGFORGE_TARGET": self.target.value,
            }
        )
        return env

    def _render(self, value: str) -> str:
        return string.Template(value).safe_substitute(self._env)

    # =========================================================================
    # CONTAINER
    # =========================================================================

    @contextmanager
    def _container(self, image_state: ImageState):
        self._checkpoint()
        container_id = self._driver.create(
            image_state.id,
            working_dir=self.bld_dir,
            env=self._env,
            labels={SESSION_LABEL: self._session_id, JOB_LABEL: self.id},
            name=self.id,
        )
        with self._lock:
            self._container_id = container_id
        self.recorder.log("CONTAINER_CREATED", container_id[:12])
        try:
            self._checkpoint()
            self._driver.start(container_id)
            yield container_id
        finally:
            with self._lock:
                self._container_id = None
            self._teardown(container_id)

    def _teardown(self, container_id: str) -> None:
        try:
            self._driver.stop(container_id)
        except ContainerDriverError as e:
            console.print(f"[yellow]{self._tag()} Stop failed: {escape(str(e))}[/yellow]")
        try:
            self._driver.remove(container_id)
            self.recorder.log("CONTAINER_REMOVED", container_id[:12])
        except ContainerDriverError as e:
            console.print(f"[red]{self._tag()} Could not remove container {container_id[:12]}: {escape(str(e))}[/red]")
            self.recorder.log("CONTAINER_REMOVE_FAILED", str(e))

    def _exec(
        self,
        container_id: str,
        command: str,
        cwd: str | None = None,
        shell: str = "/bin/sh",
        extra_env: dict[str, str] | None = None,
    ) -> ExecResult:
        self._checkpoint()
        record = self.recorder.record_exec(self._state, command)
        env = self._env if not extra_env else {**self._env, **extra_env}
        result = self._driver.exec(container_id, command, env=env, cwd=cwd, shell=shell)
        record.exit_code = result.exit_code
        return result

    # =========================================================================
    # PHASES
    # =========================================================================

    def _provision(self, container_id: str) -> None:
        dirs = f"{self.bld_dir} {self.out_dir} {self.tmp_dir}"
        result = self._exec(container_id, f"mkdir -p {dirs}", cwd="/")
        if result.exit_code != 0:
            raise JobFailure(
                "Could not create build directories",
                phase=JobState.PROVISIONING,
                exit_code=result.exit_code,
                output=_tail(result.text),
            )

    def _dependencies(self) -> list[Dependency]:
        deps = flatten_entries(self.recipe.metadata.build_depends, self.context)
        if not self.recipe.metadata.skip_default_deps:
            names = {d.name for d in deps}
            tools = _default_tools(self.recipe, self._patches())
            deps.extend(Dependency(name=tool) for tool in tools if tool not in names)
        return deps

    def _patches(self) -> list[Patch]:
        context = self.context
        return [p for p in self.recipe.metadata.patches if resolve(p.images, context)]

    def _install_deps(self, container_id: str) -> None:
        self._set_state(JobState.INSTALLING_DEPS)
        deps = self._dependencies()
        if not deps:
            return

        manager = self._os.package_manager
        if manager is None:
            declared = flatten_entries(self.recipe.metadata.build_depends, self.context)
            if declared:
                raise DependencyInstallFailed(
                    f"No package manager known for OS '{self._os.name}'", phase=JobState.INSTALLING_DEPS
                )
            console.print(
                f"[yellow]{self._tag()} No package manager for '{self._os.name}', "
                f"assuming {', '.join(d.name for d in deps)} present[/yellow]"
            )
            return

        names = [d.name for d in deps]
        console.print(f"[cyan]{self._tag()} Installing {len(names)} package(s) with {manager.value}[/cyan]")
        result = self._exec(
            container_id,
            install_command(manager, names),
            cwd="/",
            extra_env={"DEBIAN_FRONTEND": "noninteractive"},
        )
        if result.exit_code != 0:
            raise DependencyInstallFailed(
                f"Dependency installation failed with exit code {result.exit_code}",
                phase=JobState.INSTALLING_DEPS,
                exit_code=result.exit_code,
                output=_tail(result.text),
            )

    def _fetch_source(self, container_id: str) -> None:
        metadata = self.recipe.metadata
        if not metadata.git and not metadata.source:
            return
        self._set_state(JobState.FETCHING_SOURCE)

        if metadata.git:
            git = metadata.git
            command = (
                f"git clone -j 8 --single-branch --branch {shlex.quote(self._render(git.branch))} "
                f"--recurse-submodules -- {shlex.quote(self._render(git.url))} {self.bld_dir}"
            )
            console.print(f"[cyan]{self._tag()} Cloning {git.url} ({git.branch})[/cyan]")
            self._checked(container_id, command, cwd="/")
            return

        source = self._render(metadata.source)
        if _is_url(source):
            console.print(f"[cyan]{self._tag()} Downloading {source}[/cyan]")
            self._download(container_id, source, _url_basename(source), self.tmp_dir)
        else:
            path = self._local_file(source)
            console.print(f"[cyan]{self._tag()} Uploading {path}[/cyan]")
            if path.is_dir():
                self._upload(container_id, path, self.bld_dir)
                return
            self._upload(container_id, path, self.tmp_dir)

        self._checked(container_id, UNPACK_SCRIPT.format(dest=self.bld_dir), cwd=self.tmp_dir)

    def _apply_patches(self, container_id: str) -> None:
        patches = self._patches()
        if not patches:
            return
        if self._state is not JobState.FETCHING_SOURCE:
            self._set_state(JobState.FETCHING_SOURCE)

        patch_dir = f"{self.tmp_dir}/patches"
        self._checked(container_id, f"mkdir -p {patch_dir}", cwd="/")

        for index, item in enumerate(patches):
            source = self._render(item.patch)
            if _is_url(source):
                name = f"{index:03d}-{_url_basename(source)}"
                self._download(container_id, source, name, patch_dir)
            else:
                path = self._local_file(source)
                name = f"{index:03d}-{path.name}"
                self._upload(container_id, path, patch_dir, arcname=name)

            console.print(f"[cyan]{self._tag()} Applying patch {source} (-p{item.strip})[/cyan]")
            result = self._exec(
                container_id, f"patch -p{item.strip} < {shlex.quote(f'{patch_dir}/{name}')}", cwd=self.bld_dir
            )
            if result.exit_code != 0:
                raise PatchFailed(
                    f"Patch {source} did not apply (exit code {result.exit_code})",
                    phase=JobState.FETCHING_SOURCE,
                    step_index=index,
                    exit_code=result.exit_code,
                    output=_tail(result.text),
                )
            self.recorder.log("PATCH_APPLIED", source)

    def _local_file(self, source: str) -> Path:
        path = Path(source)
        if not path.is_absolute() and self.recipe.recipe_dir is not None:
            path = self.recipe.recipe_dir / path
        if not path.exists():
            raise SourceFetchFailed(f"Source {path} does not exist", phase=JobState.FETCHING_SOURCE)
        return path

    def _download(self, container_id: str, url: str, name: str, dest: str) -> None:
        self._checked(container_id, f"curl -fL -o {shlex.quote(name)} {shlex.quote(url)}", cwd=dest)

    def _checked(self, container_id: str, command: str, cwd: str) -> None:
        result = self._exec(container_id, command, cwd=cwd)
        if result.exit_code != 0:
            raise SourceFetchFailed(
                f"Fetching sources failed with exit code {result.exit_code}",
                phase=JobState.FETCHING_SOURCE,
                exit_code=result.exit_code,
                output=_tail(result.text),
            )

    def _upload(self, container_id: str, path: Path, dest: str, arcname: str | None = None) -> None:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            if path.is_dir():
                for child in sorted(path.iterdir()):
                    tar.add(child, arcname=child.name)
            else:
                tar.add(path, arcname=arcname or path.name)
        self._checkpoint()
        try:
            self._driver.copy_in(container_id, dest, buffer.getvalue())
        except ContainerDriverError as e:
            raise SourceFetchFailed(f"Uploading {path} failed: {e}", phase=JobState.FETCHING_SOURCE) from e
        self.recorder.log("SOURCE_UPLOADED", str(path))

    def _run_phase(self, container_id: str, state: JobState, phase: Phase | None, default_dir: str) -> None:
        if phase is None:
            return
        self._set_state(state)
        cwd = self._render(phase.working_dir) if phase.working_dir else default_dir
        context = self.context

        for index, step in enumerate(phase.steps):
            if not resolve(step.images, context) or not step.runs_for(self.target):
                self.recorder.log("STEP_SKIPPED", f"{state.value}[{index}]")
                continue
            console.print(f"[cyan]{self._tag()} {state.value} [{index}] $ {escape(step.cmd)}[/cyan]")
            result = self._exec(container_id, step.cmd, cwd=cwd, shell=phase.shell)
            if result.exit_code != 0:
                raise StepFailed(
                    f"Step {index} of {state.value} exited with {result.exit_code}",
                    phase=state,
                    step_index=index,
                    exit_code=result.exit_code,
                    output=_tail(result.text),
                )

    def _extract(self, container_id: str) -> None:
        self._set_state(JobState.EXTRACTING_OUTPUT)
        self._checkpoint()

        if self.host_out_dir.exists():
            shutil.rmtree(self.host_out_dir)
        self.host_out_dir.mkdir(parents=True)

        try:
            with tempfile.SpooledTemporaryFile(max_size=SPOOL_LIMIT) as buffer:
                for chunk in self._driver.copy_out(container_id, self.out_dir):
                    buffer.write(chunk)
                buffer.seek(0)
                with tarfile.open(fileobj=buffer, mode="r:") as tar:
                    members = list(self._strip_root(tar))
                    tar.extractall(self.host_out_dir, members=members, filter="tar")
        except ContainerDriverError as e:
            raise ExtractionFailed(f"Copying output failed: {e}", phase=JobState.EXTRACTING_OUTPUT) from e
        except (tarfile.TarError, OSError) as e:
            raise ExtractionFailed(f"Unpacking output failed: {e}", phase=JobState.EXTRACTING_OUTPUT) from e

        count = sum(1 for _ in self.host_out_dir.rglob("*"))
        self.recorder.log("OUTPUT_EXTRACTED", f"{count} entries")
        if count == 0:
            console.print(f"[yellow]{self._tag()} Output directory is empty[/yellow]")

    @staticmethod
    def _strip_root(tar: tarfile.TarFile):
        """Drop the leading output-directory component from every member."""
        for member in tar.getmembers():
            _, _, rest = member.name.lstrip("./").partition("/")
            if not rest:
                continue
            member.name = rest
            if member.islnk():
                _, _, member.linkname = member.linkname.lstrip("./").partition("/")
            yield member
