"""
Skill distribution into engine discovery directories.

Each engine scans a directory in the workspace for skills
(``.claude/skills``, ``.agents/skills``, ``.gemini/skills``). The distributor
copies the managed library there and keeps it current, without touching
anything the engine or the user put there themselves.

Ownership of a target entry needs two pieces of evidence: the directory's
manifest lists it, and the copy carries a provenance marker file. A stale
manifest alone never causes a deletion.
"""

from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from acpkit.logging import get_logger
from acpkit.skills.library import MANAGED_BY, SKILL_FILENAME, SkillLibrary

logger = get_logger("skills.distributor")

MANIFEST_FILENAME = ".acpkit-manifest.json"
PROVENANCE_MARKER = ".acpkit-managed"
PROVENANCE_CONTENT = "managed-by-acpkit\n"

SCRIPT_PATTERN = re.compile(r"\.(py|js|sh)$", re.IGNORECASE)
SCRIPT_SCAN_DEPTH = 3
SCRIPT_HINT_PREFIX = "[Skill scripts directory:"
HINT_FRONTMATTER_PATTERN = re.compile(r"^---\s*\n[\s\S]*?\n---\s*\n")

# Workspace-relative discovery directory per engine family
ENGINE_SKILL_DIRS: dict[str, tuple[str, ...]] = {
    "claude": (".claude", "skills"),
    "codex": (".agents", "skills"),
    "gemini": (".gemini", "skills"),
}

# Home-level engine directories, read-only
GLOBAL_SKILL_DIRS: dict[str, tuple[str, ...]] = {
    "claude": (".claude", "skills"),
    "gemini": (".gemini", "skills"),
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class DistributionResult:
    """Outcome of reconciling one target directory."""

    target_dir: Path
    distributed: list[str] = field(default_factory=list)  # In place after this pass
    copied: list[str] = field(default_factory=list)  # Newly copied or refreshed
    skipped: list[str] = field(default_factory=list)  # Not ours, left alone
    removed: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class EngineSkill:
    """A skill present in an engine directory that this package does not manage."""

    name: str
    engine: str
    path: Path
    has_skill_md: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def should_distribute(name: str, builtin: bool, enabled: list[str] | None = None) -> bool:
    """
    Whether a skill belongs in a target directory.

    Builtins always do. ``enabled`` of ``None`` or ``[]`` means every skill;
    otherwise only the listed optional skills are distributed.
    """
    if builtin:
        return True
    if not enabled:
        return True
    return name in enabled


def read_manifest(target_dir: Path) -> list[str] | None:
    """Skill names listed in a target's manifest, or ``None`` if there is no valid one."""
    manifest_path = Path(target_dir) / MANIFEST_FILENAME
    try:
        if not manifest_path.is_file():
            return None
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("managedBy") != MANAGED_BY:
        return None
    skills = data.get("skills")
    if not isinstance(skills, list):
        return None
    return [s for s in skills if isinstance(s, str)]


def write_manifest(target_dir: Path, skills: list[str]) -> bool:
    data = {"managedBy": MANAGED_BY, "skills": skills}
    try:
        (Path(target_dir) / MANIFEST_FILENAME).write_text(
            json.dumps(data, indent=2), encoding="utf-8"
        )
    except OSError as e:
        logger.warning("Failed to write manifest to %s: %s", target_dir, e)
        return False
    return True


def has_provenance_marker(skill_dir: Path) -> bool:
    try:
        return (Path(skill_dir) / PROVENANCE_MARKER).exists()
    except OSError:
        return False


def write_provenance_marker(skill_dir: Path) -> bool:
    try:
        (Path(skill_dir) / PROVENANCE_MARKER).write_text(PROVENANCE_CONTENT, encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to write provenance marker in %s: %s", skill_dir, e)
        return False
    return True


def is_managed_symlink(entry_path: Path, library: SkillLibrary) -> bool:
    """A symlink pointing into the managed library (the old distribution mode)."""
    entry_path = Path(entry_path)
    try:
        if not entry_path.is_symlink():
            return False
        target = os.readlink(entry_path)
    except OSError:
        return False
    if not os.path.isabs(target):
        target = os.path.join(os.path.dirname(entry_path), target)
    return library.contains(target)


def is_managed_copy(name: str, manifest: list[str] | None, target_path: Path) -> bool:
    """Listed in the manifest and carrying the provenance marker."""
    if not manifest or name not in manifest:
        return False
    return has_provenance_marker(target_path)


def needs_update(source_path: Path, target_path: Path) -> bool:
    """Whether the source ``SKILL.md`` is newer than the deployed one."""
    try:
        target_md = Path(target_path) / SKILL_FILENAME
        if not target_md.exists():
            return True
        source_mtime = (Path(source_path) / SKILL_FILENAME).stat().st_mtime_ns
        return source_mtime > target_md.stat().st_mtime_ns
    except OSError:
        return True


def has_script_files(directory: Path, depth: int = 0) -> bool:
    """Whether a skill folder contains ``.py``/``.js``/``.sh`` files, ignoring hidden entries."""
    if depth > SCRIPT_SCAN_DEPTH:
        return False
    try:
        entries = list(os.scandir(directory))
    except OSError:
        return False
    for entry in entries:
        if entry.name.startswith("."):
            continue
        try:
            is_dir = entry.is_dir()
        except OSError:
            continue
        if not is_dir and SCRIPT_PATTERN.search(entry.name):
            return True
        if is_dir and has_script_files(Path(entry.path), depth + 1):
            return True
    return False


def inject_skill_path(skill_dir: Path) -> bool:
    """
    Tell the engine where a deployed skill's scripts live.

    Adds ``[Skill scripts directory: <abs path>]`` to the deployed
    ``SKILL.md`` right after its YAML frontmatter (or at the top when there is
    none) so frontmatter parsers keep working. Only done for skills that ship
    scripts, and never twice. Returns True if the file was changed.
    """
    skill_dir = Path(skill_dir)
    skill_md = skill_dir / SKILL_FILENAME
    try:
        if not skill_md.exists() or not has_script_files(skill_dir):
            return False
        content = skill_md.read_text(encoding="utf-8")
        if SCRIPT_HINT_PREFIX in content:
            return False
        hint = f"\n{SCRIPT_HINT_PREFIX} {skill_dir.absolute()}]\n"
        match = HINT_FRONTMATTER_PATTERN.match(content)
        if match:
            end = match.end()
            updated = content[:end] + hint + content[end:]
        else:
            updated = hint + "\n" + content
        skill_md.write_text(updated, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to inject script path into %s: %s", skill_md, e)
        return False
    return True


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    else:
        shutil.rmtree(path)


# ---------------------------------------------------------------------------
# Distributor
# ---------------------------------------------------------------------------


class SkillDistributor:
    """
    Reconciles engine discovery directories against a ``SkillLibrary``.

    Not safe to run twice concurrently on the same target directory.

    Usage:
        distributor = SkillDistributor(SkillLibrary("~/.acpkit/skills"))
        result = distributor.distribute_for_claude("/repo", enabled=["pptx"])
    """

    def __init__(self, library: SkillLibrary) -> None:
        self.library = library

    # -- reconciliation -----------------------------------------------------

    def distribute_to_dir(
        self, target_dir: Path | str, enabled: list[str] | None = None
    ) -> DistributionResult:
        target_dir = Path(target_dir)
        result = DistributionResult(target_dir=target_dir)

        builtins, optional = self.library.discover()
        desired: list[str] = []
        for name in builtins:
            if should_distribute(name, True, enabled):
                desired.append(name)
        for name in optional:
            if should_distribute(name, False, enabled):
                desired.append(name)

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cannot create skills directory %s: %s", target_dir, e)
            result.errors["*"] = str(e)
            return result

        # Ownership evidence only, never trusted alone
        manifest = read_manifest(target_dir)

        for name in desired:
            source = self.library.resolve_source(name)
            try:
                placed = self._distribute_entry(name, source, target_dir / name, manifest, result)
            except OSError as e:
                logger.warning("Failed to distribute skill '%s' to %s: %s", name, target_dir, e)
                result.errors[name] = str(e)
                continue
            if placed:
                result.distributed.append(name)

        self._cleanup(target_dir, set(desired), manifest, result)
        write_manifest(target_dir, result.distributed)

        if result.copied:
            logger.info("Distributed %d skills to %s", len(result.copied), target_dir)
        return result

    def _distribute_entry(
        self,
        name: str,
        source: Path,
        target: Path,
        manifest: list[str] | None,
        result: DistributionResult,
    ) -> bool:
        if os.path.lexists(target):
            if is_managed_symlink(target, self.library):
                # Symlinks from older releases become copies
                target.unlink()
            elif is_managed_copy(name, manifest, target):
                if not needs_update(source, target):
                    return True
                shutil.rmtree(target)
            else:
                logger.info(
                    "Skipped '%s': already exists in %s (engine-managed)", name, target.parent
                )
                result.skipped.append(name)
                return False

        try:
            shutil.copytree(source, target, symlinks=True)
        except (OSError, shutil.Error) as e:
            logger.warning("Copy failed for '%s': %s", name, e)
            result.errors[name] = str(e)
            if os.path.lexists(target) and not has_provenance_marker(target):
                shutil.rmtree(target, ignore_errors=True)
            return False

        write_provenance_marker(target)
        inject_skill_path(target)
        result.copied.append(name)
        return True

    def _cleanup(
        self,
        target_dir: Path,
        desired: set[str],
        manifest: list[str] | None,
        result: DistributionResult,
    ) -> None:
        try:
            entries = sorted(target_dir.iterdir(), key=lambda p: p.name)
        except OSError as e:
            logger.warning("Failed to clean up stale entries in %s: %s", target_dir, e)
            return

        for entry in entries:
            if entry.name == MANIFEST_FILENAME or entry.name in desired:
                continue
            if is_managed_symlink(entry, self.library):
                kind = "symlink"
            elif is_managed_copy(entry.name, manifest, entry):
                kind = "copy"
            else:
                continue
            try:
                _remove_tree(entry)
            except OSError as e:
                logger.warning("Failed to remove stale %s '%s': %s", kind, entry.name, e)
                result.errors[entry.name] = str(e)
                continue
            logger.info("Removed stale %s: %s", kind, entry.name)
            result.removed.append(entry.name)

    # -- per-engine entry points ----------------------------------------------

    def distribute_for(
        self, engine: str, workspace: Path | str, enabled: list[str] | None = None
    ) -> DistributionResult | None:
        """
        Reconcile the discovery directory of ``engine`` inside ``workspace``.

        Returns ``None`` for engines without a discovery directory. Failures
        are logged, never raised.
        """
        parts = ENGINE_SKILL_DIRS.get(engine)
        if parts is None:
            return None
        target_dir = Path(workspace).joinpath(*parts)
        try:
            return self.distribute_to_dir(target_dir, enabled)
        except Exception as e:
            logger.error("Failed to distribute skills for %s: %s", engine, e)
            result = DistributionResult(target_dir=target_dir)
            result.errors["*"] = str(e)
            return result

    def distribute_for_claude(
        self, workspace: Path | str, enabled: list[str] | None = None
    ) -> DistributionResult | None:
        return self.distribute_for("claude", workspace, enabled)

    def distribute_for_codex(
        self, workspace: Path | str, enabled: list[str] | None = None
    ) -> DistributionResult | None:
        return self.distribute_for("codex", workspace, enabled)

    def distribute_for_gemini(
        self, workspace: Path | str, enabled: list[str] | None = None
    ) -> DistributionResult | None:
        return self.distribute_for("gemini", workspace, enabled)

    def compute_gemini_disabled_skills(self, enabled: list[str] | None) -> list[str] | None:
        """
        Turn an enabled-list into the disabled-list Gemini's own loader expects.

        Builtins are never disabled. Returns ``None`` when nothing needs
        filtering.
        """
        if not enabled:
            return None
        _, optional = self.library.discover()
        disabled = [name for name in optional if name not in enabled]
        return disabled or None

    # -- read-only queries ------------------------------------------------------

    def detect_engine_native_skills(self, workspace: Path | str) -> list[EngineSkill]:
        """Entries in the workspace's engine directories that were not placed here."""
        results: list[EngineSkill] = []
        for engine, parts in ENGINE_SKILL_DIRS.items():
            directory = Path(workspace).joinpath(*parts)
            if not directory.is_dir():
                continue
            try:
                entries = sorted(directory.iterdir(), key=lambda p: p.name)
            except OSError:
                continue
            manifest = read_manifest(directory)
            for entry in entries:
                if entry.name == MANIFEST_FILENAME or entry.name.startswith("."):
                    continue
                if is_managed_symlink(entry, self.library):
                    continue
                if is_managed_copy(entry.name, manifest, entry):
                    continue
                results.append(
                    EngineSkill(
                        name=entry.name,
                        engine=engine,
                        path=entry,
                        has_skill_md=(entry / SKILL_FILENAME).exists(),
                    )
                )
        return results


def detect_global_skills(home: Path | str | None = None) -> list[EngineSkill]:
    """Skill folders installed in the user's home-level engine directories."""
    home = Path(home) if home is not None else Path.home()
    results: list[EngineSkill] = []
    for engine, parts in GLOBAL_SKILL_DIRS.items():
        directory = home.joinpath(*parts)
        if not directory.is_dir():
            continue
        try:
            entries = sorted(directory.iterdir(), key=lambda p: p.name)
        except OSError:
            continue
        for entry in entries:
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            results.append(
                EngineSkill(
                    name=entry.name,
                    engine=engine,
                    path=entry,
                    has_skill_md=(entry / SKILL_FILENAME).exists(),
                )
            )
    return results
