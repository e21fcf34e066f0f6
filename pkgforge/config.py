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
# CONFIGURATION
# -----------------------------------------------------------------------------
# Responsibility: Loads pkgforge.yml into a validated Settings model.
#
# Precedence (highest first): CLI flags, environment (.env is loaded first),
# pkgforge.yml, built-in defaults. A missing file means defaults.
#
# Environment overrides: DOCKER_HOST, PKGFORGE_JOBS, PKGFORGE_OUTPUT_DIR
# -----------------------------------------------------------------------------

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from rich.console import Console

from pkgforge.domain.models import ImageConfig

console = Console()

CONFIG_FILE = "pkgforge.yml"


class ConfigError(Exception):
    """Raised when the configuration file or an override is invalid."""

    pass


class Settings(BaseModel):
    """
    Effective configuration of a run.

    Relative directories are resolved against the directory holding the
    configuration file.
    """

    recipes_dir: Path = Path("recipes")
    images_dir: Path = Path("images")
    output_dir: Path = Path("output")
    work_dir: Path = Path(".pkgforge/work")
    state_file: Path = Path(".pkgforge/images.json")
    docker: str | None = None
    max_jobs: int = Field(4, ge=1)
    quiet: bool = False
    images: list[ImageConfig] = Field(default_factory=list)

    def resolve_paths(self, base: Path) -> "Settings":
        updates = {}
        for name in ("recipes_dir", "images_dir", "output_dir", "work_dir", "state_file"):
            value = getattr(self, name)
            if not value.is_absolute():
                updates[name] = (base / value).resolve()
        return self.model_copy(update=updates)

    def image_configs(self) -> dict[str, ImageConfig]:
        return {c.name: c for c in self.images}


def _env_overrides() -> dict:
    overrides: dict = {}
    if os.getenv("DOCKER_HOST"):
        overrides["docker"] = os.environ["DOCKER_HOST"]
    if os.getenv("PKGFORGE_JOBS"):
        try:
            overrides["max_jobs"] = int(os.environ["PKGFORGE_JOBS"])
        except ValueError:
            raise ConfigError(f"PKGFORGE_JOBS must be an integer, got {os.environ['PKGFORGE_JOBS']!r}") from None
    if os.getenv("PKGFORGE_OUTPUT_DIR"):
        overrides["output_dir"] = os.environ["PKGFORGE_OUTPUT_DIR"]
    return overrides


def load_settings(path: Path | None = None, env_file: Path | None = None) -> Settings:
    """
    Load settings from a YAML file plus environment overrides.

    Args:
        path: Configuration file, defaults to ./pkgforge.yml.
        env_file: .env file to load, defaults to the one next to the config.

    Raises:
        ConfigError: If the file cannot be parsed or fails validation.
    """
    path = Path(path) if path else Path.cwd() / CONFIG_FILE
    base = path.parent
    load_dotenv(env_file or base / ".env")

    data: dict = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
        console.print(f"[green][CONFIG] Loaded {path}[/green]")
    else:
        console.print(f"[yellow][CONFIG] {path} not found, using defaults[/yellow]")

    data.update(_env_overrides())
    try:
        settings = Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
    return settings.resolve_paths(base)
