"""Atomic install / uninstall of skill directories.

A skill directory appears under the assistant's skills root all at once:
either by renaming the staged tree into place (same filesystem) or by
copying it to a hidden sibling and renaming that. The registry record is
written in the same registry transaction, after the directory is in place;
if that write fails the directory is removed again.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import shutil
import uuid
from pathlib import Path

from skill_manager.errors import (
    AlreadyExistsError,
    InstallIoError,
    InstallNotFoundError,
)
from skill_manager.models.domain import InstalledSkill, SkillManifest
from skill_manager.services.registry import Registry, utc_now
from skill_manager.services.source_resolver import StagedSkill

logger = logging.getLogger(__name__)

_HASH_CHUNK = 1024 * 1024


def tree_fingerprint(root: Path) -> tuple[int, str]:
    """Return (total size of regular files, sha256 over paths and contents).

    Entries are visited in sorted relative-path order so the hash is stable.
    Symlinks contribute their target string, never the file they point to.
    """
    h = hashlib.sha256()
    total = 0
    for p in sorted(root.rglob("*"), key=lambda x: x.relative_to(root).as_posix()):
        rel = p.relative_to(root).as_posix()
        if p.is_symlink():
            h.update(b"L\0" + rel.encode("utf-8") + b"\0" + os.readlink(p).encode("utf-8") + b"\0")
            continue
        if p.is_dir():
            h.update(b"D\0" + rel.encode("utf-8") + b"\0")
            continue
        if not p.is_file():
            continue
        total += p.stat().st_size
        h.update(b"F\0" + rel.encode("utf-8") + b"\0")
        with p.open("rb") as f:
            while True:
                chunk = f.read(_HASH_CHUNK)
                if not chunk:
                    break
                h.update(chunk)
        h.update(b"\0")
    return total, h.hexdigest()


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


class InstallManager:
    """Move staged skills into place and keep the registry in step."""

    def __init__(self, registry: Registry) -> None:
        self.registry = registry

    def install(
        self,
        staged: StagedSkill,
        manifest: SkillManifest,
    ) -> InstalledSkill:
        """Install a validated, scanned skill.

        Args:
            staged: The staged tree (its root is moved, not copied, when possible).
            manifest: Parsed manifest; its name becomes the directory name.

        Returns:
            The new registry record.

        Raises:
            AlreadyExistsError: A record or an untracked directory already
                uses the name. Nothing is overwritten.
            InstallIoError: The tree could not be placed.
        """
        name = manifest.name
        target = self.registry.install_path_for(name)
        assistant = self.registry.assistant.value
        placed = False

        try:
            with self.registry.transaction() as state:
                if name in state.records:
                    raise AlreadyExistsError(f"skill '{name}' is already installed for {assistant}")
                if target.exists() or target.is_symlink():
                    raise AlreadyExistsError(
                        f"directory {target} already exists but is not tracked in the registry; "
                        "remove it manually to install this skill"
                    )

                self._place(staged.root, target)
                placed = True

                size, content_hash = tree_fingerprint(target)
                record = InstalledSkill(
                    name=name,
                    assistant=self.registry.assistant,
                    install_path=str(target),
                    size_bytes=size,
                    installed_at=utc_now(),
                    usage_count=0,
                    content_hash=content_hash,
                    description=manifest.description,
                    version=manifest.version,
                    source=staged.source.describe(),
                )
                state.records[name] = record
        except BaseException:
            if placed:
                logger.warning("Rolling back install of %s: removing %s", name, target)
                shutil.rmtree(target, ignore_errors=True)
            raise

        logger.info("Installed skill %s for %s at %s", name, assistant, target)
        return record

    def uninstall(self, name: str) -> InstalledSkill:
        """Remove an installed skill's directory, then its record.

        Raises:
            InstallNotFoundError: No record for the name.
            InstallIoError: The directory could not be removed (record kept).
        """
        assistant = self.registry.assistant.value
        with self.registry.transaction() as state:
            record = state.records.get(name)
            if record is None:
                raise InstallNotFoundError(f"skill '{name}' is not installed for {assistant}")

            path = Path(record.install_path)
            self._check_inside_root(path)
            if path.exists() or path.is_symlink():
                try:
                    _remove_tree(path)
                except OSError as e:
                    raise InstallIoError(f"failed to remove {path}: {e}") from e
            else:
                logger.warning("Skill directory %s is already gone; dropping record", path)

            del state.records[name]

        logger.info("Removed skill %s for %s", name, assistant)
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_inside_root(self, path: Path) -> None:
        root = self.registry.skills_root.resolve()
        resolved = path.parent.resolve() / path.name
        if resolved.parent != root:
            raise InstallIoError(f"refusing to remove {path}: not directly under {root}")

    def _place(self, src: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(src, target)
            logger.debug("Renamed %s to %s", src, target)
            return
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise InstallIoError(f"failed to move skill into {target}: {e}") from e

        # Different filesystem: copy next to the target, then rename.
        tmp = target.parent / f".{target.name}.tmp-{uuid.uuid4().hex[:8]}"
        try:
            shutil.copytree(src, tmp, symlinks=True)
            os.rename(tmp, target)
        except BaseException as e:
            shutil.rmtree(tmp, ignore_errors=True)
            if isinstance(e, (OSError, shutil.Error)):
                raise InstallIoError(f"failed to copy skill into {target}: {e}") from e
            raise
        logger.debug("Copied %s to %s", src, target)
