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
# COMMAND LINE
# -----------------------------------------------------------------------------
# Responsibility: `pkgforge build` and friends. Parses flags, builds the
# Settings, runs a BuildSession and prints the summary table.
#
# SIGINT/SIGTERM cancel the running session; the exit code is 0 only when
# every job and every package succeeded.
# -----------------------------------------------------------------------------

import signal
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from pkgforge import __version__
from pkgforge.config import ConfigError, Settings, load_settings
from pkgforge.core.images import ImageRegistry
from pkgforge.core.recipes import RecipeInvalid, RecipeLoader
from pkgforge.core.session import BuildSession, SessionReport
from pkgforge.domain.models import JobState
from pkgforge.infra.docker_client import RuntimeUnreachable

app = typer.Typer(
    name="pkgforge",
    help="Build DEB, RPM and gzip packages from recipes inside Docker containers",
    no_args_is_help=True,
)
console = Console()

_STATE_STYLE = {
    JobState.SUCCEEDED: "green",
    JobState.FAILED: "red",
    JobState.CANCELLED: "yellow",
}


def version_callback(value: bool) -> None:
    if value:
        console.print(f"pkgforge version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-V", help="Show version and exit", callback=version_callback, is_eager=True),
    ] = None,
) -> None:
    """pkgforge - recipe-driven multi-distro package builder."""


def _settings(config: Path | None, docker: str | None, jobs: int | None, quiet: bool) -> Settings:
    try:
        settings = load_settings(config)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=2) from e
    updates = {}
    if docker:
        updates["docker"] = docker
    if jobs is not None:
        if jobs < 1:
            console.print("[red]Error: --jobs must be at least 1[/red]")
            raise typer.Exit(code=2)
        updates["max_jobs"] = jobs
    if quiet:
        updates["quiet"] = True
    return settings.model_copy(update=updates)


def render_report(report: SessionReport) -> Table:
    table = Table(title="Build summary")
    table.add_column("Recipe")
    table.add_column("Image")
    table.add_column("Format")
    table.add_column("State")
    table.add_column("Duration", justify="right")
    table.add_column("Details")

    failed_packaging = {p.result.job_id: p.error for p in report.packaging_errors}
    for result in report.jobs.results:
        style = _STATE_STYLE.get(result.state, "white")
        details = result.describe()
        if result.job_id in failed_packaging:
            details = f"packaging failed: {failed_packaging[result.job_id]}"
            style = "red"
        elif result.succeeded:
            artifact = report.artifacts.get(result.job_id)
            details = str(artifact.path) if artifact else details
        table.add_row(
            result.recipe,
            result.image,
            result.target.value,
            f"[{style}]{result.state.value}[/{style}]",
            f"{result.duration:.1f}s",
            details,
        )
    return table


@app.command()
def build(
    recipes: Annotated[list[str] | None, typer.Argument(help="Recipes to build")] = None,
    all_recipes: Annotated[bool, typer.Option("--all", "-a", help="Build every recipe")] = False,
    images: Annotated[
        str | None, typer.Option("--images", "-i", help="Comma separated images to restrict the build to")
    ] = None,
    jobs: Annotated[int | None, typer.Option("--jobs", "-j", help="Maximum concurrent jobs")] = None,
    docker: Annotated[str | None, typer.Option("--docker", "-d", help="Docker endpoint URI")] = None,
    config: Annotated[Path | None, typer.Option("--config", "-c", help="Path to pkgforge.yml")] = None,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Hide build and command output")] = False,
) -> None:
    """Build packages for the given recipes."""
    if not recipes and not all_recipes:
        console.print("[red]Error: name at least one recipe or pass --all[/red]")
        raise typer.Exit(code=2)

    settings = _settings(config, docker, jobs, quiet)
    selected = [name.strip() for name in images.split(",") if name.strip()] if images else None

    try:
        session = BuildSession(settings)
    except RuntimeUnreachable as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e

    def _interrupt(signum, _frame):
        console.print(f"[yellow]Received {signal.Signals(signum).name}, cancelling...[/yellow]")
        session.cancel()

    previous = {sig: signal.signal(sig, _interrupt) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = session.run(None if all_recipes else recipes, selected)
    except RecipeInvalid as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    console.print(render_report(report))
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("list")
def list_(
    what: Annotated[str, typer.Argument(help="recipes or images")] = "recipes",
    config: Annotated[Path | None, typer.Option("--config", "-c", help="Path to pkgforge.yml")] = None,
) -> None:
    """List available recipes or images."""
    settings = _settings(config, None, None, False)
    if what == "recipes":
        names = RecipeLoader(settings.recipes_dir).names()
    elif what == "images":
        names = ImageRegistry.discover(settings.images_dir)
    else:
        console.print(f"[red]Error: unknown listing '{what}', expected recipes or images[/red]")
        raise typer.Exit(code=2)
    for name in names:
        console.print(name)


if __name__ == "__main__":
    app()
