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
# CORE LAYER
# -----------------------------------------------------------------------------
# Build orchestration:
# - Recipes & Condition Resolver: what to build, where, with which packages
# - Image Registry: cached image builds
# - Build Job & Scheduler: container lifecycle, bounded concurrency
# - Packager & Artifact Store: deb / rpm / gzip output
# - Build Session: ties the above together for one run
# -----------------------------------------------------------------------------

from .artifacts import Artifact, ArtifactKey, ArtifactStore
from .conditions import ImageContext, flatten, resolve
from .images import ImageBuildFailed, ImageRegistry, ImagesState
from .job import BuildJob, DependencyInstallFailed, ExtractionFailed, JobResult, StepFailed
from .packager import PackageInfo, PackagingFailed, package
from .recipes import RecipeInvalid, RecipeLoader, load_recipe, parse_recipe, resolve_targets
from .scheduler import Scheduler, SchedulerReport
from .session import BuildSession, SessionReport

__all__ = [
    "Artifact", "ArtifactKey", "ArtifactStore",
    "ImageContext", "flatten", "resolve",
    "ImageBuildFailed", "ImageRegistry", "ImagesState",
    "BuildJob", "DependencyInstallFailed", "ExtractionFailed", "JobResult", "StepFailed",
    "PackageInfo", "PackagingFailed", "package",
    "RecipeInvalid", "RecipeLoader", "load_recipe", "parse_recipe", "resolve_targets",
    "Scheduler", "SchedulerReport",
    "BuildSession", "SessionReport",
]
