"""Shared pytest fixtures for acpkit tests."""

from __future__ import annotations

from pathlib import Path

import pytest
from helpers import mark_builtin, write_skill

from acpkit.busy import BusyGuard
from acpkit.config import AgentsConfig
from acpkit.skills import SkillDistributor, SkillLibrary


@pytest.fixture
def skills_dir(tmp_path: Path) -> Path:
    """A managed library with two builtin and two optional skills."""
    root = tmp_path / "library"
    root.mkdir()
    mark_builtin(write_skill(root, "cron", "Schedule tasks"))
    mark_builtin(write_skill(root, "office", "Office documents"))
    write_skill(root, "pdf", "Read PDFs")
    write_skill(root, "xlsx", "Spreadsheets")
    return root


@pytest.fixture
def library(skills_dir: Path) -> SkillLibrary:
    return SkillLibrary(skills_dir)


@pytest.fixture
def distributor(library: SkillLibrary) -> SkillDistributor:
    return SkillDistributor(library)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def config(skills_dir: Path) -> AgentsConfig:
    """Config with short lifecycle timings."""
    return AgentsConfig(
        skills_dir=skills_dir,
        grace_period_seconds=0.05,
        hard_timeout_seconds=0.2,
    )


@pytest.fixture
def busy() -> BusyGuard:
    return BusyGuard()
