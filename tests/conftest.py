"""Pytest configuration and shared fixtures."""

import shutil
import tempfile
from pathlib import Path

import pytest

from skill_manager.config import SkillsConfig


@pytest.fixture
def temp_home():
    """Temporary skills home directory."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def config(temp_home):
    """Config rooted in a temporary home with external scanners disabled."""
    return SkillsConfig(
        home_dir=str(temp_home),
        external_scanners_enabled=False,
        lock_timeout_seconds=5.0,
    )


def write_skill(
    base_dir: Path,
    name: str,
    *,
    description: str = "A test skill",
    body: str = "# Usage\n\nDo the thing.\n",
    extra_frontmatter: str = "",
    files: dict[str, str | bytes] | None = None,
) -> Path:
    """Create a skill directory with SKILL.md and optional extra files."""
    skill_dir = base_dir / name
    skill_dir.mkdir(parents=True, exist_ok=True)
    (skill_dir / "SKILL.md").write_text(
        f"---\nname: {name}\ndescription: {description}\n{extra_frontmatter}---\n{body}",
        encoding="utf-8",
    )
    for rel, content in (files or {}).items():
        p = skill_dir / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            p.write_bytes(content)
        else:
            p.write_text(content, encoding="utf-8")
    return skill_dir


@pytest.fixture
def make_skill(temp_home):
    """Factory creating skills under <temp_home>/src."""
    src_root = temp_home / "src"

    def _make(name: str, **kwargs) -> Path:
        return write_skill(src_root, name, **kwargs)

    return _make


@pytest.fixture
def skill_writer():
    """The write_skill helper, for tests that lay out multi-skill trees."""
    return write_skill
