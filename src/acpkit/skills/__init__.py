"""Managed skill library and its distribution into engine directories."""

from acpkit.skills.distributor import (
    MANIFEST_FILENAME,
    PROVENANCE_MARKER,
    DistributionResult,
    EngineSkill,
    SkillDistributor,
    detect_global_skills,
    should_distribute,
)
from acpkit.skills.library import (
    SKILL_METADATA_FILENAME,
    ManagedSkill,
    SkillLibrary,
    read_skill_metadata,
    write_skill_metadata,
)

__all__ = [
    "MANIFEST_FILENAME",
    "PROVENANCE_MARKER",
    "SKILL_METADATA_FILENAME",
    "DistributionResult",
    "EngineSkill",
    "ManagedSkill",
    "SkillDistributor",
    "SkillLibrary",
    "detect_global_skills",
    "read_skill_metadata",
    "should_distribute",
    "write_skill_metadata",
]
