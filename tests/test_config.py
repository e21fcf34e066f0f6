# =============================================================================
# PKGFORGE CONFIGURATION TESTS
# =============================================================================
# Tests for pkgforge.yml loading, defaults and environment overrides.
# =============================================================================

from pathlib import Path

import pytest

from pkgforge.config import ConfigError, Settings, load_settings
from pkgforge.domain.models import BuildTarget

ENV_VARS = ("DOCKER_HOST", "PKGFORGE_JOBS", "PKGFORGE_OUTPUT_DIR")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # set then delete so that values loaded from .env files are undone too
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


class TestDefaults:
    """Test behaviour without a configuration file."""

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "pkgforge.yml")
        assert settings.max_jobs == 4
        assert settings.docker is None
        assert settings.recipes_dir == (tmp_path / "recipes").resolve()
        assert settings.output_dir == (tmp_path / "output").resolve()
        assert settings.images == []

    def test_settings_reject_zero_jobs(self):
        with pytest.raises(ValueError):
            Settings(max_jobs=0)


class TestConfigFile:
    """Test YAML loading."""

    def test_values_loaded(self, tmp_path):
        (tmp_path / "pkgforge.yml").write_text(
            "recipes_dir: pkgs\n"
            "output_dir: /srv/packages\n"
            "max_jobs: 8\n"
            "docker: unix:///var/run/docker.sock\n"
            "images:\n"
            "  - name: debian12\n"
            "    os: debian\n"
            "    os_version: 12\n"
            "  - name: alpine\n"
            "    target: gzip\n"
        )
        settings = load_settings(tmp_path / "pkgforge.yml")

        assert settings.recipes_dir == (tmp_path / "pkgs").resolve()
        assert settings.output_dir == Path("/srv/packages")
        assert settings.max_jobs == 8
        assert settings.docker == "unix:///var/run/docker.sock"
        configs = settings.image_configs()
        assert configs["debian12"].os_version == "12"
        assert configs["alpine"].target is BuildTarget.GZIP

    def test_empty_file(self, tmp_path):
        (tmp_path / "pkgforge.yml").write_text("")
        assert load_settings(tmp_path / "pkgforge.yml").max_jobs == 4

    def test_invalid_value(self, tmp_path):
        (tmp_path / "pkgforge.yml").write_text("max_jobs: 0\n")
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "pkgforge.yml")

    def test_not_a_mapping(self, tmp_path):
        (tmp_path / "pkgforge.yml").write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "pkgforge.yml")

    def test_broken_yaml(self, tmp_path):
        (tmp_path / "pkgforge.yml").write_text("images: [unclosed\n")
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "pkgforge.yml")


class TestEnvironmentOverrides:
    """Test environment and .env overrides."""

    def test_env_beats_file(self, tmp_path, monkeypatch):
        (tmp_path / "pkgforge.yml").write_text("max_jobs: 2\n")
        monkeypatch.setenv("PKGFORGE_JOBS", "6")
        monkeypatch.setenv("DOCKER_HOST", "tcp://builder:2375")
        settings = load_settings(tmp_path / "pkgforge.yml")
        assert settings.max_jobs == 6
        assert settings.docker == "tcp://builder:2375"

    def test_dotenv_loaded(self, tmp_path):
        (tmp_path / ".env").write_text("PKGFORGE_OUTPUT_DIR=dist\n")
        settings = load_settings(tmp_path / "pkgforge.yml")
        assert settings.output_dir == (tmp_path / "dist").resolve()

    def test_non_integer_jobs(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PKGFORGE_JOBS", "many")
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "pkgforge.yml")
