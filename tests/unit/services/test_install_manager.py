"""Unit tests for atomic install / uninstall."""

import errno
import os
from unittest.mock import patch

import pytest

from skill_manager.enums import Assistant
from skill_manager.errors import (
    AlreadyExistsError,
    InstallIoError,
    InstallNotFoundError,
    RegistryError,
)
from skill_manager.models.domain import LocalPathSource
from skill_manager.services.frontmatter import read_manifest
from skill_manager.services.install_manager import InstallManager, tree_fingerprint
from skill_manager.services.registry import Registry
from skill_manager.services.source_resolver import StagedSkill


@pytest.fixture
def registry(config):
    return Registry(config, Assistant.CODEX)


@pytest.fixture
def manager(registry):
    return InstallManager(registry)


def _staged(skill_dir):
    return StagedSkill(
        staging_dir=skill_dir.parent,
        root=skill_dir,
        source=LocalPathSource(path=skill_dir),
    )


class TestFingerprint:
    def test_stable_and_content_sensitive(self, make_skill):
        skill = make_skill("fp", files={"a.txt": "one", "sub/b.txt": "two"})

        expected_size = sum(p.stat().st_size for p in skill.rglob("*") if p.is_file())
        size, first = tree_fingerprint(skill)
        _, second = tree_fingerprint(skill)
        (skill / "a.txt").write_text("changed", encoding="utf-8")
        _, third = tree_fingerprint(skill)

        assert first == second
        assert first != third
        assert size == expected_size

    def test_symlinks_are_not_followed(self, make_skill, temp_home):
        outside = temp_home / "outside.txt"
        outside.write_text("x" * 1000, encoding="utf-8")
        skill = make_skill("linked")
        (skill / "link").symlink_to(outside)

        size, _ = tree_fingerprint(skill)

        assert size == (skill / "SKILL.md").stat().st_size


class TestInstall:
    def test_install_moves_tree_and_records(self, manager, registry, make_skill):
        skill = make_skill("pdf-tools", description="PDF helpers", files={"run.py": "print(1)\n"})
        expected_size, expected_hash = tree_fingerprint(skill)

        record = manager.install(_staged(skill), read_manifest(skill))

        target = registry.skills_root / "pdf-tools"
        assert (target / "SKILL.md").is_file()
        assert (target / "run.py").is_file()
        assert not skill.exists()
        assert record.install_path == str(target)
        assert record.size_bytes == expected_size
        assert record.content_hash == expected_hash
        assert record.description == "PDF helpers"
        assert record.usage_count == 0
        assert record.source == LocalPathSource(path=skill).describe()
        assert registry.require("pdf-tools") == record

    def test_existing_record_untouched(self, manager, registry, make_skill, skill_writer, temp_home):
        first = make_skill("dup", body="original\n")
        manager.install(_staged(first), read_manifest(first))
        original = registry.require("dup")

        second = skill_writer(temp_home / "other", "dup", body="replacement\n")
        with pytest.raises(AlreadyExistsError):
            manager.install(_staged(second), read_manifest(second))

        assert registry.require("dup") == original
        assert "original" in (registry.skills_root / "dup" / "SKILL.md").read_text(encoding="utf-8")
        assert second.is_dir()

    def test_untracked_directory_conflict(self, manager, registry, make_skill):
        (registry.skills_root / "manual").mkdir(parents=True)
        (registry.skills_root / "manual" / "keep.txt").write_text("mine", encoding="utf-8")
        skill = make_skill("manual")

        with pytest.raises(AlreadyExistsError, match="not tracked"):
            manager.install(_staged(skill), read_manifest(skill))

        assert (registry.skills_root / "manual" / "keep.txt").read_text(encoding="utf-8") == "mine"
        assert registry.get("manual") is None

    def test_registry_write_failure_removes_directory(self, manager, registry, make_skill):
        skill = make_skill("flaky")

        with patch.object(Registry, "_write", side_effect=RegistryError("disk full")):
            with pytest.raises(RegistryError):
                manager.install(_staged(skill), read_manifest(skill))

        assert not (registry.skills_root / "flaky").exists()
        assert registry.get("flaky") is None

    def test_cross_device_copy(self, manager, registry, make_skill):
        skill = make_skill("remote", files={"data/x.txt": "x"})
        real_rename = os.rename
        calls = []

        def rename(src, dst):
            calls.append((str(src), str(dst)))
            if len(calls) == 1:
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_rename(src, dst)

        with patch("os.rename", side_effect=rename):
            manager.install(_staged(skill), read_manifest(skill))

        target = registry.skills_root / "remote"
        assert (target / "data" / "x.txt").read_text(encoding="utf-8") == "x"
        assert len(calls) == 2
        assert os.path.basename(calls[1][0]).startswith(".remote.tmp-")
        assert [p.name for p in registry.skills_root.iterdir()] == ["remote"]

    def test_other_rename_errors_are_install_errors(self, manager, registry, make_skill):
        skill = make_skill("denied")

        with patch("os.rename", side_effect=PermissionError(errno.EACCES, "denied")):
            with pytest.raises(InstallIoError):
                manager.install(_staged(skill), read_manifest(skill))

        assert registry.get("denied") is None


class TestUninstall:
    def test_round_trip_restores_listing(self, manager, registry, make_skill):
        keep = make_skill("keep")
        manager.install(_staged(keep), read_manifest(keep))
        before = registry.list()

        temp = make_skill("temp")
        manager.install(_staged(temp), read_manifest(temp))
        removed = manager.uninstall("temp")

        assert removed.name == "temp"
        assert registry.list() == before
        assert not (registry.skills_root / "temp").exists()

    def test_not_installed(self, manager):
        with pytest.raises(InstallNotFoundError):
            manager.uninstall("ghost")

    def test_missing_directory_drops_record(self, manager, registry, make_skill):
        skill = make_skill("orphan")
        manager.install(_staged(skill), read_manifest(skill))
        (registry.skills_root / "orphan" / "SKILL.md").unlink()
        (registry.skills_root / "orphan").rmdir()

        manager.uninstall("orphan")

        assert registry.get("orphan") is None

    def test_refuses_paths_outside_root(self, manager, registry, make_skill, temp_home):
        skill = make_skill("moved")
        record = manager.install(_staged(skill), read_manifest(skill))
        elsewhere = temp_home / "elsewhere" / "moved"
        elsewhere.mkdir(parents=True)
        registry.upsert(record.model_copy(update={"install_path": str(elsewhere)}))

        with pytest.raises(InstallIoError):
            manager.uninstall("moved")

        assert elsewhere.is_dir()
        assert registry.get("moved") is not None

    def test_removal_failure_keeps_record(self, manager, registry, make_skill):
        skill = make_skill("stuck")
        manager.install(_staged(skill), read_manifest(skill))

        with patch("shutil.rmtree", side_effect=PermissionError("busy")):
            with pytest.raises(InstallIoError):
                manager.uninstall("stuck")

        assert registry.get("stuck") is not None
        assert (registry.skills_root / "stuck").is_dir()
