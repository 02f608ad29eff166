"""Filesystem builders shared by the skill tests."""

from __future__ import annotations

import json
from pathlib import Path
from textwrap import dedent


def write_skill(root: Path, name: str, description: str = "", body: str = "") -> Path:
    """Create ``root/name/SKILL.md`` with YAML frontmatter."""
    skill_dir = root / name
    skill_dir.mkdir(parents=True, exist_ok=True)
    (skill_dir / "SKILL.md").write_text(
        dedent(f"""\
        ---
        name: {name}
        description: {description or name + " skill"}
        ---
        # {name}
        """)
        + body
    )
    return skill_dir


def mark_builtin(skill_dir: Path, builtin: bool = True) -> None:
    (skill_dir / ".acpkit-skill.json").write_text(
        json.dumps({"managedBy": "acpkit", "builtin": builtin})
    )
