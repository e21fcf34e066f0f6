# =============================================================================
# PKGFORGE DOMAIN MODEL TESTS
# =============================================================================
# Tests for the recipe Pydantic models.
# =============================================================================

import pytest
from pydantic import ValidationError

from pkgforge.domain.models import BuildTarget, ImageConfig, JobState, Metadata, Patch, Recipe, Step


def _recipe(**overrides):
    data = {"metadata": {"name": "tool", "version": "1.0"}, "build": {"steps": [{"cmd": "make"}]}}
    data.update(overrides)
    return Recipe.model_validate(data)


class TestBuildTarget:
    """Test BuildTarget enum."""

    def test_values(self):
        assert BuildTarget("deb") is BuildTarget.DEB
        assert BuildTarget("rpm") is BuildTarget.RPM
        assert BuildTarget("gzip") is BuildTarget.GZIP

    def test_extension(self):
        assert BuildTarget.GZIP.extension == ".tar.gz"
        assert BuildTarget.DEB.extension == ".deb"

    def test_unknown_target_rejected(self):
        with pytest.raises(ValueError):
            BuildTarget("msi")


class TestJobState:
    """Test JobState terminal flags."""

    def test_terminal_states(self):
        assert JobState.SUCCEEDED.is_terminal
        assert JobState.FAILED.is_terminal
        assert JobState.CANCELLED.is_terminal

    def test_non_terminal_states(self):
        for state in (JobState.PENDING, JobState.BUILDING, JobState.EXTRACTING_OUTPUT):
            assert not state.is_terminal


class TestStep:
    """Test Step model."""

    def test_unconditional_by_default(self):
        step = Step(cmd="make")
        assert step.images == []
        assert step.runs_for(BuildTarget.DEB)
        assert step.runs_for(BuildTarget.GZIP)

    def test_single_image_string(self):
        assert Step(cmd="make", images="centos8").images == ["centos8"]

    def test_target_flags(self):
        step = Step(cmd="make", deb=True, rpm=True)
        assert step.runs_for(BuildTarget.DEB)
        assert step.runs_for(BuildTarget.RPM)
        assert not step.runs_for(BuildTarget.GZIP)

    def test_empty_command_rejected(self):
        with pytest.raises(ValidationError):
            Step(cmd="   ")


class TestPatch:
    """Test Patch entries."""

    def test_defaults(self):
        patch = Patch(patch="fix.patch")
        assert patch.strip == 0
        assert patch.images == []

    def test_single_image_string(self):
        assert Patch(patch="fix.patch", images="debian10").images == ["debian10"]

    def test_negative_strip_rejected(self):
        with pytest.raises(ValidationError):
            Patch(patch="fix.patch", strip=-1)

    def test_empty_path_rejected(self):
        with pytest.raises(ValidationError):
            Patch(patch="  ")


class TestMetadata:
    """Test Metadata coercions and validation."""

    def test_numeric_version_becomes_string(self):
        metadata = Metadata(name="tool", version=1.5, revision=2)
        assert metadata.version == "1.5"
        assert metadata.revision == "2"

    def test_plain_dependency_list_means_all(self):
        metadata = Metadata(name="tool", version="1", build_depends=["gcc", "make"])
        assert metadata.build_depends == {"all": ["gcc", "make"]}

    def test_git_url_string(self):
        metadata = Metadata(name="tool", version="1", git="https://example.com/tool.git")
        assert metadata.git.url == "https://example.com/tool.git"
        assert metadata.git.branch == "master"

    def test_patch_path_shorthand(self):
        metadata = Metadata(name="tool", version="1", patches=["fix.patch", {"patch": "more.patch", "strip": 1}])
        assert [p.patch for p in metadata.patches] == ["fix.patch", "more.patch"]
        assert [p.strip for p in metadata.patches] == [0, 1]

    def test_image_names_and_selectors(self):
        metadata = Metadata(name="tool", version="1", images=["debian10", {"name": "centos8", "target": "rpm"}])
        assert metadata.images[0].name == "debian10"
        assert metadata.images[0].target is None
        assert metadata.images[1].target is BuildTarget.RPM

    def test_source_and_git_exclusive(self):
        with pytest.raises(ValidationError):
            Metadata(name="tool", version="1", source="tool.tar.gz", git="https://example.com/tool.git")

    def test_invalid_name(self):
        with pytest.raises(ValidationError):
            Metadata(name="-tool", version="1")

    def test_empty_version(self):
        with pytest.raises(ValidationError):
            Metadata(name="tool", version="")

    @pytest.mark.parametrize("version", ["1.0-beta", "v1.0", "1.0 rc1", "1:2.0"])
    def test_version_rejected_by_package_formats(self, version):
        with pytest.raises(ValidationError):
            Metadata(name="tool", version=version)

    @pytest.mark.parametrize("version", ["1.0", "2.4.1+dfsg", "1.0~rc1", "20240101"])
    def test_version_accepted(self, version):
        assert Metadata(name="tool", version=version).version == version

    def test_revision_without_dash(self):
        with pytest.raises(ValidationError):
            Metadata(name="tool", version="1.0", revision="1-2")


class TestRecipe:
    """Test Recipe model."""

    def test_minimal_recipe(self):
        recipe = _recipe()
        assert recipe.name == "tool"
        assert recipe.configure is None
        assert recipe.install is None
        assert recipe.build.shell == "/bin/sh"

    def test_build_phase_required(self):
        with pytest.raises(ValidationError):
            Recipe.model_validate({"metadata": {"name": "tool", "version": "1"}})

    def test_empty_build_phase_rejected(self):
        with pytest.raises(ValidationError):
            _recipe(build={"steps": []})

    def test_env_values_stringified(self):
        recipe = _recipe(env={"JOBS": 4, "DEBUG": None})
        assert recipe.env == {"JOBS": "4", "DEBUG": ""}

    def test_recipe_dir_not_serialized(self, tmp_path):
        recipe = _recipe()
        recipe.recipe_dir = tmp_path
        assert "recipe_dir" not in recipe.model_dump()


class TestImageConfig:
    """Test ImageConfig model."""

    def test_numeric_os_version(self):
        assert ImageConfig(name="debian10", os="debian", os_version=10).os_version == "10"
