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
# RECIPE LOADER
# -----------------------------------------------------------------------------
# Responsibility: Reads recipe YAML documents, validates them into Recipe
# models and decides which (image, package format) pairs a recipe builds.
#
# A recipe that resolves to zero images is rejected here, before any
# container work is scheduled.
# -----------------------------------------------------------------------------

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError
from rich.console import Console

from pkgforge.core.conditions import parse_dependency
from pkgforge.core.os_info import KNOWN_OS_NAMES, OsInfo
from pkgforge.domain.models import BuildTarget, ImageConfig, Recipe

console = Console()

RECIPE_FILES = ("recipe.yml", "recipe.yaml")


class RecipeInvalid(Exception):
    """Raised when a recipe document cannot be turned into a buildable recipe."""

    def __init__(self, message: str, recipe: str | None = None) -> None:
        super().__init__(f"{recipe}: {message}" if recipe else message)
        self.recipe = recipe


@dataclass(frozen=True)
class ImageTarget:
    """One image a recipe builds on, and the format it produces there."""

    image: str
    target: BuildTarget


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"])
        parts.append(f"{loc}: {item['msg']}" if loc else item["msg"])
    return "; ".join(parts)


def _check_dependencies(recipe: Recipe) -> None:
    metadata = recipe.metadata
    for field_name, expr in (("depends", metadata.depends), ("build_depends", metadata.build_depends)):
        for scope, entries in expr.items():
            for entry in entries or ():
                try:
                    parse_dependency(str(entry))
                except ValueError as e:
                    raise RecipeInvalid(f"metadata.{field_name}.{scope}: {e}", recipe=recipe.name) from e
    for field_name, entries in (("provides", metadata.provides), ("conflicts", metadata.conflicts)):
        for entry in entries:
            try:
                parse_dependency(entry)
            except ValueError as e:
                raise RecipeInvalid(f"metadata.{field_name}: {e}", recipe=recipe.name) from e


def parse_recipe(data, recipe_dir: Path | None = None) -> Recipe:
    """
    Validate a decoded recipe document.

    Args:
        data: The parsed YAML mapping.
        recipe_dir: Directory the recipe was read from.

    Raises:
        RecipeInvalid: If the document is malformed.
    """
    if not isinstance(data, dict):
        raise RecipeInvalid("recipe document must be a mapping")
    name = None
    if isinstance(data.get("metadata"), dict):
        name = data["metadata"].get("name")
    try:
        recipe = Recipe.model_validate(data)
    except ValidationError as e:
        raise RecipeInvalid(_describe(e), recipe=name) from e
    _check_dependencies(recipe)
    if recipe_dir is not None:
        recipe.recipe_dir = Path(recipe_dir)
    return recipe


def load_recipe(path: Path) -> Recipe:
    """Read and validate one recipe file."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise RecipeInvalid(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise RecipeInvalid(f"malformed YAML in {path}: {e}") from e
    return parse_recipe(data, recipe_dir=path.parent)


class RecipeLoader:
    """Finds recipes laid out as `<recipes_dir>/<name>/recipe.yml`."""

    def __init__(self, recipes_dir: Path) -> None:
        self.recipes_dir = Path(recipes_dir)

    def _recipe_file(self, name: str) -> Path | None:
        for filename in RECIPE_FILES:
            candidate = self.recipes_dir / name / filename
            if candidate.is_file():
                return candidate
        return None

    def names(self) -> list[str]:
        if not self.recipes_dir.is_dir():
            return []
        return sorted(p.name for p in self.recipes_dir.iterdir() if p.is_dir() and self._recipe_file(p.name))

    def load(self, name: str) -> Recipe:
        path = self._recipe_file(name)
        if path is None:
            raise RecipeInvalid(f"no recipe.yml found in {self.recipes_dir / name}", recipe=name)
        recipe = load_recipe(path)
        console.print(f"[cyan][RECIPE] Loaded {recipe.name} {recipe.metadata.version}[/cyan]")
        return recipe

    def load_all(self) -> list[Recipe]:
        return [self.load(name) for name in self.names()]


def default_target(config: ImageConfig | None) -> BuildTarget | None:
    """Format implied by an image's declared OS, None if it declares none."""
    if config is None or not config.os:
        return None
    os_name = config.os.lower()
    if os_name not in KNOWN_OS_NAMES:
        return None
    return OsInfo(name=os_name, version=config.os_version or "").default_target


def resolve_targets(
    recipe: Recipe,
    known_images: Iterable[str],
    configs: dict[str, ImageConfig] | None = None,
    selected: Iterable[str] | None = None,
) -> list[ImageTarget]:
    """
    Decide which images a recipe builds on.

    Target format per image: the recipe's tag, else the image's configured
    target, else the default of its declared OS, else gzip.

    Args:
        recipe: The recipe.
        known_images: Names of every image available in this run.
        configs: Image declarations from the configuration file.
        selected: Operator-chosen subset of images (None for all).

    Raises:
        RecipeInvalid: If a listed image is unknown or nothing is left to build.
    """
    known = list(known_images)
    configs = configs or {}
    metadata = recipe.metadata

    if metadata.all_images:
        chosen: list[tuple[str, BuildTarget | None]] = [(name, None) for name in known]
    else:
        unknown = [s.name for s in metadata.images if s.name not in known]
        if unknown:
            raise RecipeInvalid(f"unknown image(s): {', '.join(unknown)}", recipe=recipe.name)
        chosen = [(s.name, s.target) for s in metadata.images]

    if selected is not None:
        wanted = set(selected)
        names = {name for name, _ in chosen}
        for name in sorted(wanted - names):
            console.print(f"[yellow][RECIPE] {recipe.name} does not build on image {name}, skipping[/yellow]")
        chosen = [(name, tag) for name, tag in chosen if name in wanted]
        if not chosen:
            return []

    targets: list[ImageTarget] = []
    seen: set[tuple[str, BuildTarget]] = set()
    for name, tag in chosen:
        config = configs.get(name)
        target = tag or (config.target if config else None) or default_target(config) or BuildTarget.GZIP
        if (name, target) in seen:
            continue
        seen.add((name, target))
        targets.append(ImageTarget(image=name, target=target))

    if not targets:
        raise RecipeInvalid("recipe does not resolve to any image", recipe=recipe.name)
    return targets
