"""
The managed skill library.

Skills live flat under one root directory, one folder per skill:

```
~/.acpkit/skills/
├── cron/
│   ├── SKILL.md
│   └── .acpkit-skill.json      {"managedBy": "acpkit", "builtin": true, ...}
├── pptx/
│   ├── SKILL.md
│   └── scripts/build.py
└── _builtin/                   legacy location, builtin by definition
    └── docs/SKILL.md
```

A folder counts as a skill only if it has a ``SKILL.md``. The metadata file
marks builtin skills; folders without it are optional.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from acpkit.logging import get_logger

logger = get_logger("skills.library")

MANAGED_BY = "acpkit"
SKILL_FILENAME = "SKILL.md"
SKILL_METADATA_FILENAME = ".acpkit-skill.json"
LEGACY_BUILTIN_DIR = "_builtin"

FRONTMATTER_PATTERN = re.compile(
    r"^---\s*\n(.*?)\n---\s*\n",
    re.DOTALL,
)


@dataclass
class SkillMetadata:
    builtin: bool
    source_dir: str | None = None


@dataclass
class ManagedSkill:
    """A skill in the managed library."""

    name: str
    path: Path
    builtin: bool = False
    description: str = ""
    legacy: bool = False  # Found under _builtin/


def read_skill_metadata(skill_dir: Path) -> SkillMetadata | None:
    """Read ``.acpkit-skill.json`` from a skill folder; ``None`` if absent or invalid."""
    metadata_path = Path(skill_dir) / SKILL_METADATA_FILENAME
    try:
        if not metadata_path.is_file():
            return None
        data = json.loads(metadata_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    if data.get("managedBy") != MANAGED_BY or not isinstance(data.get("builtin"), bool):
        return None
    return SkillMetadata(builtin=data["builtin"], source_dir=data.get("sourceDir"))


def write_skill_metadata(skill_dir: Path, builtin: bool) -> bool:
    """Write ``.acpkit-skill.json`` into a skill folder. Returns False on failure."""
    data = {"managedBy": MANAGED_BY, "builtin": builtin, "sourceDir": str(skill_dir)}
    try:
        (Path(skill_dir) / SKILL_METADATA_FILENAME).write_text(
            json.dumps(data, indent=2), encoding="utf-8"
        )
    except OSError as e:
        logger.warning("Failed to write skill metadata to %s: %s", skill_dir, e)
        return False
    return True


def parse_frontmatter(content: str) -> dict[str, Any]:
    """Return the YAML frontmatter of a ``SKILL.md`` as a dict (empty if none)."""
    match = FRONTMATTER_PATTERN.match(content)
    if not match:
        return {}
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return {}
    return data if isinstance(data, dict) else {}


class SkillLibrary:
    """Read-only view over the managed skill root."""

    def __init__(self, skills_dir: Path | str) -> None:
        self.skills_dir = Path(skills_dir).expanduser()

    @property
    def legacy_builtin_dir(self) -> Path:
        return self.skills_dir / LEGACY_BUILTIN_DIR

    def discover(self) -> tuple[list[str], list[str]]:
        """
        Classify the library into ``(builtins, optional)`` skill names.

        Skills under the legacy ``_builtin/`` folder are builtin unless a
        top-level skill of the same name exists.
        """
        builtins: list[str] = []
        optional: list[str] = []
        if not self.skills_dir.is_dir():
            return builtins, optional

        try:
            entries = sorted(self.skills_dir.iterdir(), key=lambda p: p.name)
        except OSError as e:
            logger.warning("Failed to discover skills in %s: %s", self.skills_dir, e)
            entries = []

        for entry in entries:
            if not entry.is_dir():
                continue
            if entry.name == LEGACY_BUILTIN_DIR or entry.name.startswith("."):
                continue
            if not (entry / SKILL_FILENAME).exists():
                continue
            metadata = read_skill_metadata(entry)
            if metadata is not None and metadata.builtin:
                builtins.append(entry.name)
            else:
                optional.append(entry.name)

        legacy = self.legacy_builtin_dir
        if legacy.is_dir():
            try:
                for entry in sorted(legacy.iterdir(), key=lambda p: p.name):
                    if not entry.is_dir() or not (entry / SKILL_FILENAME).exists():
                        continue
                    if entry.name not in builtins and entry.name not in optional:
                        builtins.append(entry.name)
            except OSError as e:
                logger.warning("Failed to discover legacy builtin skills: %s", e)

        return builtins, optional

    def resolve_source(self, name: str) -> Path:
        """Folder a skill is copied from: flat location first, then ``_builtin/``."""
        flat = self.skills_dir / name
        if flat.exists():
            return flat
        legacy = self.legacy_builtin_dir / name
        if legacy.exists():
            return legacy
        return flat

    def list_skills(self) -> list[ManagedSkill]:
        builtins, optional = self.discover()
        skills = []
        for name in builtins + optional:
            path = self.resolve_source(name)
            description = ""
            try:
                frontmatter = parse_frontmatter((path / SKILL_FILENAME).read_text(encoding="utf-8"))
                description = str(frontmatter.get("description") or "")
            except OSError:
                pass
            skills.append(
                ManagedSkill(
                    name=name,
                    path=path,
                    builtin=name in builtins,
                    description=description,
                    legacy=path.parent == self.legacy_builtin_dir,
                )
            )
        return skills

    def contains(self, path: Path | str) -> bool:
        """Whether ``path`` lies inside the library root."""
        root = os.path.normpath(os.path.abspath(self.skills_dir))
        candidate = os.path.normpath(os.path.abspath(path))
        return candidate == root or candidate.startswith(root + os.sep)
