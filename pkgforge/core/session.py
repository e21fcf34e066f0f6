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
# BUILD SESSION
# -----------------------------------------------------------------------------
# Responsibility: One `pkgforge build` invocation, end to end:
#
#   1. Load recipes and resolve their (image, format) pairs
#   2. Run every Build Job through the Scheduler
#   3. Package each successful job's output into the Artifact Store
#   4. Persist the image cache and prune leftover containers
#
# Every container created by the session carries the session id label so
# that interrupted runs leave nothing behind.
# -----------------------------------------------------------------------------

import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from rich.console import Console
from rich.markup import escape

from pkgforge.config import Settings
from pkgforge.core.artifacts import Artifact, ArtifactStore
from pkgforge.core.conditions import ImageContext
from pkgforge.core.images import ImageRegistry, ImagesState
from pkgforge.core.job import SESSION_LABEL, BuildJob, JobResult
from pkgforge.core.packager import PackageInfo, PackagingFailed, package
from pkgforge.core.recipes import RecipeInvalid, RecipeLoader, resolve_targets
from pkgforge.core.scheduler import Scheduler, SchedulerReport
from pkgforge.domain.models import Recipe
from pkgforge.infra.docker_client import ContainerDriver, ContainerDriverError

console = Console()


@dataclass
class PackagingError:
    result: JobResult
    error: str


@dataclass
class SessionReport:
    """Outcome of a session: job results, artifacts by job id and packaging failures."""

    jobs: SchedulerReport = field(default_factory=SchedulerReport)
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    packaging_errors: list[PackagingError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.jobs.ok and not self.packaging_errors and not self.cancelled


class BuildSession:
    """
    Orchestrates recipes x images for one run.

    Args:
        settings: Effective configuration.
        driver: Container driver; connected from `settings.docker` when omitted.
    """

    def __init__(self, settings: Settings, driver: ContainerDriver | None = None) -> None:
        self.settings = settings
        self.session_id = uuid.uuid4().hex[:12]
        self._cancel = threading.Event()

        self.driver = driver if driver is not None else ContainerDriver(settings.docker, quiet=settings.quiet)
        self.images_state = ImagesState.load(settings.state_file)
        self.registry = ImageRegistry(self.driver, settings.images_dir, self.images_state, settings.images)
        self.loader = RecipeLoader(settings.recipes_dir)
        self.store = ArtifactStore(settings.output_dir)
        self.scheduler = Scheduler(settings.max_jobs, cancel_event=self._cancel)
        self._recipes: dict[str, Recipe] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Cancel the session; safe to call from a signal handler."""
        self.scheduler.cancel()

    # =========================================================================
    # PLANNING
    # =========================================================================

    def load_recipes(self, names: Iterable[str] | None = None) -> list[Recipe]:
        """
        Load the named recipes, or every recipe when `names` is None.

        Raises:
            RecipeInvalid: If any recipe fails to load.
        """
        recipes = self.loader.load_all() if names is None else [self.loader.load(n) for n in names]
        for recipe in recipes:
            self._recipes[recipe.name] = recipe
        return recipes

    def plan(self, recipes: list[Recipe], images: Iterable[str] | None = None) -> list[BuildJob]:
        """
        Turn recipes into Build Jobs.

        Raises:
            RecipeInvalid: If a recipe does not resolve to any image.
        """
        known = self.registry.names()
        configs = self.settings.image_configs()
        selected = list(images) if images is not None else None

        jobs: list[BuildJob] = []
        for recipe in recipes:
            self._recipes[recipe.name] = recipe
            targets = resolve_targets(recipe, known, configs, selected)
            if not targets:
                console.print(f"[yellow][SESSION] {recipe.name}: no selected image to build on[/yellow]")
                continue
            for target in targets:
                config = configs.get(target.image)
                jobs.append(
                    BuildJob(
                        recipe,
                        target,
                        self.registry,
                        self.driver,
                        self.settings.work_dir,
                        session_id=self.session_id,
                        cancel_event=self._cancel,
                        arch=config.arch if config else None,
                    )
                )
        console.print(f"[cyan][SESSION] Planned {len(jobs)} job(s) from {len(recipes)} recipe(s)[/cyan]")
        return jobs

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self, recipe_names: Iterable[str] | None = None, images: Iterable[str] | None = None) -> SessionReport:
        """
        Load, plan, build and package.

        Raises:
            RecipeInvalid: Before anything is scheduled, if a recipe is invalid.
        """
        recipes = self.load_recipes(recipe_names)
        if not recipes:
            raise RecipeInvalid(f"no recipes found in {self.settings.recipes_dir}")
        jobs = self.plan(recipes, images)
        return self.run_jobs(jobs)

    def run_jobs(self, jobs: list[BuildJob]) -> SessionReport:
        report = SessionReport()
        try:
            report.jobs = self.scheduler.run(jobs)
            for result in report.jobs.succeeded:
                if self.cancelled:
                    break
                self._package(result, report)
        finally:
            report.cancelled = self.cancelled
            self._finish()
        return report

    def _package(self, result: JobResult, report: SessionReport) -> None:
        recipe = self._recipes[result.recipe]
        image = ImageContext(image=result.image, os=result.os_name, arch=result.arch)
        try:
            info = PackageInfo.from_recipe(recipe, image, os_version=result.os_version)
            report.artifacts[result.job_id] = package(result.output_dir, info, result.target, self.store)
        except (PackagingFailed, ValueError) as e:
            console.print(f"[red][SESSION] {result.job_id}: {escape(str(e))}[/red]")
            report.packaging_errors.append(PackagingError(result=result, error=str(e)))

    def _finish(self) -> None:
        try:
            self.images_state.save()
        except OSError as e:
            console.print(f"[yellow][SESSION] Could not save image state: {e}[/yellow]")
        try:
            self.driver.cleanup(SESSION_LABEL, self.session_id)
        except ContainerDriverError as e:
            console.print(f"[yellow][SESSION] Container cleanup failed: {escape(str(e))}[/yellow]")
