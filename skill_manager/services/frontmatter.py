"""Split SKILL.md into YAML frontmatter and body and parse it into a SkillManifest."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from skill_manager.models.domain import SkillManifest

MANIFEST_FILE_NAME = "SKILL.md"

_KNOWN_KEYS = {
    "name",
    "description",
    "version",
    "license",
    "compatibility",
    "metadata",
    "allowed-tools",
    "capabilities",
}


class FrontmatterError(ValueError):
    """Raised when SKILL.md frontmatter is missing or not a YAML mapping."""


def _normalize_leading_tabs(raw: str) -> str:
    """YAML forbids tab indentation; some SKILL.md files use leading tabs."""
    normalized_lines: list[str] = []
    for ln in raw.splitlines():
        if ln.startswith("\t"):
            prefix_tabs = len(ln) - len(ln.lstrip("\t"))
            normalized_lines.append(("  " * prefix_tabs) + ln.lstrip("\t"))
        else:
            normalized_lines.append(ln)
    return "\n".join(normalized_lines)


def split_frontmatter(content: str) -> tuple[str, str]:
    """Split SKILL.md content into (frontmatter yaml, markdown body)."""

    lines = content.lstrip("\ufeff").splitlines()
    if not lines or lines[0].strip() != "---":
        raise FrontmatterError("SKILL.md must start with YAML frontmatter (---)")

    yaml_lines: list[str] = []
    for idx, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            return "\n".join(yaml_lines), "\n".join(lines[idx + 1 :])
        yaml_lines.append(line)

    raise FrontmatterError("SKILL.md frontmatter is not terminated (---)")


def parse_skill_frontmatter(content: str) -> dict[str, Any]:
    """Parse YAML frontmatter from SKILL.md content.

    Supports nested YAML (e.g. metadata). Raises FrontmatterError when the
    block is missing, empty, not valid YAML or not a mapping.
    """

    raw, _body = split_frontmatter(content)
    if not raw.strip():
        raise FrontmatterError("SKILL.md frontmatter is empty")

    try:
        data = yaml.safe_load(_normalize_leading_tabs(raw))
    except yaml.YAMLError as e:
        raise FrontmatterError(f"invalid frontmatter: {e}") from e

    if not isinstance(data, dict):
        raise FrontmatterError("SKILL.md frontmatter must be a YAML mapping")
    return data


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, bool)):
        return str(value)
    return None


def _coerce_capabilities(value: Any) -> tuple[str, ...]:
    """Accept a space/comma separated string or a list of strings."""
    if value is None:
        return ()
    if isinstance(value, str):
        parts = value.replace(",", " ").split()
        return tuple(p for p in parts if p)
    if isinstance(value, list):
        return tuple(str(v).strip() for v in value if str(v).strip())
    return ()


def manifest_from_frontmatter(data: Mapping[str, Any]) -> SkillManifest:
    """Build an immutable SkillManifest from parsed frontmatter."""

    metadata_raw = data.get("metadata")
    metadata: dict[str, str] | None = None
    if isinstance(metadata_raw, Mapping):
        metadata = {str(k): "" if v is None else str(v) for k, v in metadata_raw.items()}

    capabilities = _coerce_capabilities(data.get("allowed-tools"))
    if not capabilities:
        capabilities = _coerce_capabilities(data.get("capabilities"))

    return SkillManifest(
        name=(_as_text(data.get("name")) or "").strip(),
        description=(_as_text(data.get("description")) or "").strip(),
        version=_as_text(data.get("version")),
        capabilities=capabilities,
        license=_as_text(data.get("license")),
        compatibility=_as_text(data.get("compatibility")),
        metadata=metadata,
        extra={str(k): v for k, v in data.items() if k not in _KNOWN_KEYS},
    )


def read_manifest(root: Path) -> SkillManifest:
    """Read and parse <root>/SKILL.md."""
    content = (root / MANIFEST_FILE_NAME).read_text(encoding="utf-8")
    return manifest_from_frontmatter(parse_skill_frontmatter(content))
