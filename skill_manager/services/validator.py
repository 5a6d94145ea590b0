"""Skill structure validation.

Checks a skill root against the Agent-Skills layout: a SKILL.md file with
YAML frontmatter declaring at least `name` and `description`, a name that is
safe to use as a directory, and no paths escaping the skill root.

All checks run and accumulate into a single ValidationResult so one report
lists every problem. Validation never raises for a malformed skill; only a
missing root directory is an error.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from skill_manager.models.domain import ValidationResult, Violation
from skill_manager.services.frontmatter import (
    MANIFEST_FILE_NAME,
    FrontmatterError,
    manifest_from_frontmatter,
    parse_skill_frontmatter,
)

logger = logging.getLogger(__name__)

NAME_MAX_LENGTH = 64
NAME_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
DESCRIPTION_MAX_LENGTH = 1024

# frontmatter key -> max length
OPTIONAL_FIELD_LIMITS: dict[str, int] = {
    "license": 256,
    "compatibility": 500,
    "allowed-tools": 2048,
}


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


class SpecValidator:
    """Validate skill roots. Stateless; safe to share."""

    def validate(self, root: Path, *, directory_name: str | None = None) -> ValidationResult:
        """Validate the skill rooted at `root`.

        Args:
            root: Directory expected to contain SKILL.md.
            directory_name: When given (validating a skill in place), the
                manifest name must equal it.

        Returns:
            ValidationResult listing every violation and warning.

        Raises:
            FileNotFoundError: If root does not exist.
        """
        root = Path(root)
        if not root.exists():
            raise FileNotFoundError(f"path does not exist: {root}")

        result = ValidationResult()

        if not root.is_dir():
            result.violations.append(Violation(field="path", message=f"skill path must be a directory: {root}"))
            return result

        self._check_manifest(root, result, directory_name)
        self._check_containment(root, result)

        logger.debug(
            "Validated %s: %d violation(s), %d warning(s)",
            root,
            len(result.violations),
            len(result.warnings),
        )
        return result

    # ------------------------------------------------------------------
    # Manifest checks
    # ------------------------------------------------------------------

    def _check_manifest(self, root: Path, result: ValidationResult, directory_name: str | None) -> None:
        manifest_path = root / MANIFEST_FILE_NAME
        if not manifest_path.is_file():
            result.violations.append(Violation(field=MANIFEST_FILE_NAME, message="SKILL.md is missing"))
            return

        try:
            content = manifest_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            result.violations.append(Violation(field=MANIFEST_FILE_NAME, message=f"cannot read SKILL.md: {e}"))
            return

        try:
            data = parse_skill_frontmatter(content)
        except FrontmatterError as e:
            result.violations.append(Violation(field=MANIFEST_FILE_NAME, message=str(e)))
            return

        for key in ("name", "description"):
            if key in data and data[key] is not None and not isinstance(data[key], str):
                result.violations.append(Violation(field=key, message=f"{key} must be a string"))

        manifest = manifest_from_frontmatter(data)
        self._check_name(manifest.name, result, directory_name)
        self._check_description(manifest.description, result)

        for key, limit in OPTIONAL_FIELD_LIMITS.items():
            if key not in data:
                continue
            value = data[key]
            text = value if isinstance(value, str) else ("" if value is None else str(value))
            if not text.strip():
                result.warnings.append(Violation(field=key, message=f"{key} should not be empty"))
            elif len(text) > limit:
                result.violations.append(Violation(field=key, message=f"{key} must be <= {limit} characters"))

        if manifest.metadata is not None:
            for key, value in manifest.metadata.items():
                if not key.strip() or not value.strip():
                    result.warnings.append(Violation(field="metadata", message="metadata entries should not be empty"))
                    break

    def _check_name(self, name: str, result: ValidationResult, directory_name: str | None) -> None:
        if not name:
            result.violations.append(Violation(field="name", message="name is required"))
            return

        if len(name) > NAME_MAX_LENGTH:
            result.violations.append(
                Violation(field="name", message=f"name must be <= {NAME_MAX_LENGTH} characters")
            )

        if not NAME_PATTERN.match(name):
            if "--" in name:
                result.violations.append(
                    Violation(field="name", message="name must not contain consecutive hyphens")
                )
            else:
                result.violations.append(
                    Violation(field="name", message="name must be lowercase alphanumeric with hyphens")
                )

        if directory_name is not None and directory_name != name:
            result.violations.append(
                Violation(
                    field="name",
                    message=f"name '{name}' must match the skill directory name '{directory_name}'",
                )
            )

    def _check_description(self, description: str, result: ValidationResult) -> None:
        if not description:
            result.violations.append(Violation(field="description", message="description is required"))
            return

        if len(description) > DESCRIPTION_MAX_LENGTH:
            result.violations.append(
                Violation(
                    field="description",
                    message=f"description must be <= {DESCRIPTION_MAX_LENGTH} characters",
                )
            )

    # ------------------------------------------------------------------
    # Path containment
    # ------------------------------------------------------------------

    def _check_containment(self, root: Path, result: ValidationResult) -> None:
        resolved_root = root.resolve()

        for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
            dirnames.sort()
            for name in sorted(dirnames + filenames):
                entry = Path(dirpath) / name
                rel = entry.relative_to(root).as_posix()

                if name == "..":
                    result.violations.append(Violation(field="path", message=f"path escapes skill root: {rel}"))
                    continue

                if entry.is_symlink():
                    target = Path(os.path.realpath(entry))
                    if not _is_within(target, resolved_root):
                        result.violations.append(
                            Violation(field="path", message=f"symlink escapes skill root: {rel}")
                        )
