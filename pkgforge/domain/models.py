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
# DOMAIN MODELS - BUILD RECIPES
# -----------------------------------------------------------------------------
# These Pydantic models define a build recipe: package metadata, environment
# and the configure/build/install phases executed inside a container.
#
# Invalid recipes are rejected here, before any Docker operation begins.
# Condition scopes (image/OS/arch filters) are kept as plain strings; the
# Condition Resolver turns them into typed scopes when a job evaluates them.
# -----------------------------------------------------------------------------

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BuildTarget(str, Enum):
    """
    Package formats an image can produce.

    Each target maps to one encoder in the packager and one file extension.
    """

    DEB = "deb"
    RPM = "rpm"
    GZIP = "gzip"

    @property
    def extension(self) -> str:
        return {"deb": ".deb", "rpm": ".rpm", "gzip": ".tar.gz"}[self.value]


class JobState(str, Enum):
    """States of the Build Job state machine."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    INSTALLING_DEPS = "installing_deps"
    FETCHING_SOURCE = "fetching_source"
    CONFIGURING = "configuring"
    BUILDING = "building"
    INSTALLING = "installing"
    EXTRACTING_OUTPUT = "extracting_output"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


def _as_list(value):
    if value is None:
        return []
    return [value] if isinstance(value, str) else value


class Step(BaseModel):
    """
    A single shell command of a phase.

    `images` restricts the step to image names, OS names or `<name>+<arch>`
    compounds. An empty list means the step runs everywhere. The `deb`,
    `rpm` and `gzip` flags additionally restrict it to jobs producing that
    format; with no flag set every format runs it.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    cmd: str = Field(..., min_length=1, description="Shell command run with the phase shell")
    images: list[str] = Field(default_factory=list, description="Scopes this step is limited to")
    deb: bool = False
    rpm: bool = False
    gzip: bool = False

    @field_validator("images", mode="before")
    @classmethod
    def _single_image(cls, value):
        return _as_list(value)

    def runs_for(self, target: BuildTarget) -> bool:
        flags = {BuildTarget.DEB: self.deb, BuildTarget.RPM: self.rpm, BuildTarget.GZIP: self.gzip}
        if not any(flags.values()):
            return True
        return flags[target]


class Phase(BaseModel):
    """An ordered list of steps plus the shell and working directory they share."""

    steps: list[Step] = Field(default_factory=list)
    working_dir: str | None = Field(
        None, description="Working directory inside the container, may reference $PKGFORGE_* vars"
    )
    shell: str = Field("/bin/sh", min_length=1)


class GitSource(BaseModel):
    """Git repository cloned into the build directory before configure."""

    url: str = Field(..., min_length=1)
    branch: str = "master"


class Patch(BaseModel):
    """
    A patch applied in the build directory once the sources are in place.

    `patch` is an http(s) URL, an absolute path or a path relative to the
    recipe directory. `strip` is the `-p` level passed to patch(1).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    patch: str = Field(..., min_length=1)
    strip: int = Field(0, ge=0)
    images: list[str] = Field(default_factory=list, description="Scopes this patch is limited to")

    @field_validator("images", mode="before")
    @classmethod
    def _single_image(cls, value):
        return _as_list(value)


class ImageSelector(BaseModel):
    """An image named by a recipe, optionally pinned to a package format."""

    name: str = Field(..., min_length=1)
    target: BuildTarget | None = None


class ImageConfig(BaseModel):
    """
    An image as declared in the configuration file.

    `os`/`os_version` skip OS detection; `arch` overrides the recipe
    architecture for jobs on this image.
    """

    name: str = Field(..., min_length=1)
    target: BuildTarget | None = None
    os: str | None = None
    os_version: str | None = None
    arch: str | None = None

    @field_validator("os_version", mode="before")
    @classmethod
    def _version_to_str(cls, value):
        return None if value is None else str(value)


DependencyExpression = dict[str, list[str]]


class Metadata(BaseModel):
    """
    Package metadata of a recipe.

    Fields:
    - name/version/revision/arch: identity of the produced package
    - depends/build_depends: dependency expressions keyed by scope (`all`,
      an image name, an OS name or `<name>+<arch>`)
    - images/all_images: image-selection policy
    - source/git: where the sources come from (optional)
    - patches: applied to the sources before configure, filtered per image
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(
        ...,
        min_length=1,
        max_length=128,
        pattern=r"^[a-zA-Z0-9][a-zA-Z0-9+._-]*$",
        description="Package name",
    )
    # no "-": it separates version and revision in both deb and rpm
    version: str = Field(..., pattern=r"^[0-9][A-Za-z0-9.+~_]*$", description="Upstream version")
    revision: str = Field("1", pattern=r"^[A-Za-z0-9.+~_]+$", description="Package revision / RPM release")
    description: str = ""
    license: str = ""
    arch: str = "x86_64"
    url: str | None = None
    maintainer: str | None = None
    section: str = "misc"
    priority: str = "optional"
    group: str = "Unspecified"

    source: str | None = None
    git: GitSource | None = None
    patches: list[Patch] = Field(default_factory=list)

    provides: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    depends: DependencyExpression = Field(default_factory=dict)
    build_depends: DependencyExpression = Field(default_factory=dict)
    exclude: list[str] = Field(default_factory=list)

    images: list[ImageSelector] = Field(default_factory=list)
    all_images: bool = False
    skip_default_deps: bool = False

    @field_validator("version", "revision", mode="before")
    @classmethod
    def _number_to_str(cls, value):
        # YAML reads `version: 1.0` as a float
        return value if value is None or isinstance(value, str) else str(value)

    @field_validator("git", mode="before")
    @classmethod
    def _git_from_url(cls, value):
        if isinstance(value, str):
            return {"url": value}
        return value

    @field_validator("patches", mode="before")
    @classmethod
    def _patch_paths(cls, value):
        return [{"patch": item} if isinstance(item, str) else item for item in _as_list(value)]

    @field_validator("depends", "build_depends", mode="before")
    @classmethod
    def _list_means_all(cls, value):
        if value is None:
            return {}
        if isinstance(value, list):
            return {"all": value}
        return value

    @field_validator("images", mode="before")
    @classmethod
    def _image_names(cls, value):
        if value is None:
            return []
        return [{"name": item} if isinstance(item, str) else item for item in value]

    @model_validator(mode="after")
    def _single_source(self):
        if self.source and self.git:
            raise ValueError("only one of `source` and `git` may be set")
        return self


class Recipe(BaseModel):
    """
    The complete build manifest for one package.

    `configure` and `install` are optional and skipped entirely when absent;
    `build` is mandatory and must contain at least one step.
    """

    metadata: Metadata
    env: dict[str, str] = Field(default_factory=dict)
    configure: Phase | None = None
    build: Phase
    install: Phase | None = None
    recipe_dir: Path | None = Field(None, exclude=True)

    @field_validator("env", mode="before")
    @classmethod
    def _env_values_to_str(cls, value):
        if value is None:
            return {}
        return {str(k): "" if v is None else str(v) for k, v in dict(value).items()}

    @field_validator("build")
    @classmethod
    def _build_has_steps(cls, value: Phase) -> Phase:
        if not value.steps:
            raise ValueError("build phase must contain at least one step")
        return value

    @property
    def name(self) -> str:
        return self.metadata.name
