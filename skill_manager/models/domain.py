"""Pydantic domain models.

These models flow between the resolver, validator, scanner, install manager
and registry. Registry records are persisted with camelCase keys and keep
any unknown fields found on disk so older and newer versions can share a
document.
"""

from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from skill_manager.enums import ArchiveFormat, Assistant, FindingKind, Severity
from skill_manager.models.base import FrozenModel, JsonModel
from skill_manager.observability.redaction import redact_url


class LocalPathSource(FrozenModel):
    """A skill directory on the local filesystem."""

    kind: Literal["local_path"] = "local_path"
    path: Path

    def describe(self) -> str:
        return str(self.path)


class GitUrlSource(FrozenModel):
    """A git repository cloned at its default branch."""

    kind: Literal["git_url"] = "git_url"
    url: str

    def describe(self) -> str:
        return redact_url(self.url)


class ArchiveUrlSource(FrozenModel):
    """An archive downloaded over HTTP(S) and extracted."""

    kind: Literal["archive_url"] = "archive_url"
    url: str
    format: ArchiveFormat

    def describe(self) -> str:
        return redact_url(self.url)


SkillSource = Annotated[
    Union[LocalPathSource, GitUrlSource, ArchiveUrlSource],
    Field(discriminator="kind"),
]


class SkillManifest(FrozenModel):
    """Parsed SKILL.md frontmatter.

    Unknown frontmatter keys are kept in `extra` rather than rejected.
    """

    name: str
    description: str
    version: str | None = None
    capabilities: tuple[str, ...] = ()
    license: str | None = None
    compatibility: str | None = None
    metadata: dict[str, str] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Violation(FrozenModel):
    """A single manifest problem, tied to the field it concerns."""

    field: str
    message: str


class ValidationResult(JsonModel):
    """Outcome of validating a skill root.

    `violations` block installation; `warnings` are reported only.
    """

    violations: list[Violation] = Field(default_factory=list)
    warnings: list[Violation] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations


class ScanFinding(FrozenModel):
    """One reported result of a security scan."""

    kind: FindingKind
    severity: Severity
    relative_path: str
    line_or_offset: int = 0
    detail: str
    rule_id: str = ""

    @property
    def sort_key(self) -> tuple[str, int, str, str]:
        return (self.relative_path, self.line_or_offset, self.kind.value, self.rule_id)

    @property
    def dedupe_key(self) -> tuple[str, str, int]:
        return (self.kind.value, self.relative_path, self.line_or_offset)


class ScanReport(JsonModel):
    """Ordered findings for a skill root plus non-finding diagnostics."""

    root: str
    findings: list[ScanFinding] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)
    external_tools_run: list[str] = Field(default_factory=list)

    @property
    def max_severity(self) -> Severity | None:
        if not self.findings:
            return None
        return max((f.severity for f in self.findings), key=lambda s: s.rank)

    def blocks(self, threshold: Severity) -> bool:
        """True if any finding meets or exceeds the block threshold."""
        top = self.max_severity
        return top is not None and top.at_least(threshold)


class InstalledSkill(JsonModel):
    """Registry record for an installed skill.

    Keyed by (assistant, name). Extra fields present on disk are preserved.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    name: str
    assistant: Assistant
    install_path: str
    size_bytes: int = Field(ge=0)
    installed_at: datetime
    usage_count: int = Field(default=0, ge=0)
    content_hash: str
    description: str = ""
    version: str | None = None
    source: str | None = None
    last_used_at: datetime | None = None


class RegistryStats(JsonModel):
    """Aggregate view over one assistant's registry."""

    assistant: Assistant
    count: int = 0
    total_size_bytes: int = 0
    total_usage: int = 0
    usage: dict[str, int] = Field(default_factory=dict)
    sizes: dict[str, int] = Field(default_factory=dict)


class ReconcileReport(JsonModel):
    """What a registry reconciliation pass changed or noticed."""

    dropped: list[str] = Field(default_factory=list)
    untracked: list[str] = Field(default_factory=list)


class AddResult(JsonModel):
    """Outcome of a successful add pipeline run."""

    installed: InstalledSkill
    validation: ValidationResult
    scan: ScanReport


class SkillDetails(JsonModel):
    """Registry record plus the installed manifest, for `show`."""

    record: InstalledSkill
    manifest: SkillManifest | None = None
