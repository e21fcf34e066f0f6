# -----------------------------------------------------------------------------
# DOMAIN LAYER
# -----------------------------------------------------------------------------
# Contains the recipe models (Pydantic) shared by the Condition Resolver,
# the Build Job and the Packager.
# -----------------------------------------------------------------------------

from .models import (
    BuildTarget,
    GitSource,
    ImageConfig,
    ImageSelector,
    JobState,
    Metadata,
    Patch,
    Phase,
    Recipe,
    Step,
)

__all__ = [
    "BuildTarget",
    "GitSource",
    "ImageConfig",
    "ImageSelector",
    "JobState",
    "Metadata",
    "Patch",
    "Phase",
    "Recipe",
    "Step",
]
