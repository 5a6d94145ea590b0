"""Per-assistant registry of installed skills.

The registry is a single JSON document per assistant:

    <data_dir>/registry/<assistant>.json
    {"version": 1, "assistant": "codex", "skills": [{...}, ...]}

Mutations run inside `transaction()`, which holds an exclusive file lock on
`<assistant>.lock` and replaces the document atomically on commit. Readers
never lock: they always see either the previous or the next complete
document. Unknown top-level and per-record fields survive a rewrite.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from skill_manager.config import SkillsConfig, validate_skill_name_for_path
from skill_manager.enums import Assistant
from skill_manager.errors import (
    AlreadyExistsError,
    RegistryCorruptError,
    RegistryError,
    RegistryNotFoundError,
)
from skill_manager.models.domain import InstalledSkill, ReconcileReport, RegistryStats
from skill_manager.services.file_lock import exclusive_lock
from skill_manager.services.frontmatter import MANIFEST_FILE_NAME

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RegistryState:
    """In-memory view of one registry document.

    `records` is keyed by skill name; `extra` holds unknown top-level keys.
    """

    assistant: Assistant
    records: dict[str, InstalledSkill] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    version: int = REGISTRY_VERSION

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = dict(self.extra)
        doc["version"] = self.version
        doc["assistant"] = self.assistant.value
        doc["skills"] = [self.records[name].to_document() for name in sorted(self.records)]
        return doc


class Registry:
    """Persisted registry for one assistant."""

    def __init__(self, config: SkillsConfig, assistant: Assistant) -> None:
        """Initialize the registry handle.

        Args:
            config: Configuration (registry dir, skills root, lock timeout).
            assistant: Assistant whose registry this handle manages.
        """
        self.config = config
        self.assistant = assistant
        self.path = config.registry_dir / f"{assistant.value}.json"
        self.lock_path = config.registry_dir / f"{assistant.value}.lock"
        self.skills_root = config.skills_root_for(assistant)

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------

    def load(self) -> RegistryState:
        """Read the current document. A missing file is an empty registry.

        Raises:
            RegistryCorruptError: The document is unparseable or malformed.
        """
        if not self.path.exists():
            return RegistryState(assistant=self.assistant)

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise RegistryError(f"cannot read registry {self.path}: {e}") from e

        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as e:
            raise RegistryCorruptError(f"registry {self.path} is not valid JSON: {e}") from e

        if not isinstance(doc, dict):
            raise RegistryCorruptError(f"registry {self.path} must be a JSON object")

        skills = doc.get("skills", [])
        if not isinstance(skills, list):
            raise RegistryCorruptError(f"registry {self.path}: 'skills' must be a list")

        version = doc.get("version", REGISTRY_VERSION)
        if not isinstance(version, int):
            raise RegistryCorruptError(f"registry {self.path}: 'version' must be an integer")

        records: dict[str, InstalledSkill] = {}
        for entry in skills:
            if not isinstance(entry, dict):
                raise RegistryCorruptError(f"registry {self.path}: skill records must be objects")
            try:
                record = InstalledSkill.model_validate(entry)
            except ValidationError as e:
                raise RegistryCorruptError(f"registry {self.path}: invalid skill record: {e}") from e
            if record.name in records:
                raise RegistryCorruptError(f"registry {self.path}: duplicate skill '{record.name}'")
            records[record.name] = record

        extra = {k: v for k, v in doc.items() if k not in ("version", "assistant", "skills")}
        return RegistryState(assistant=self.assistant, records=records, extra=extra, version=version)

    def _write(self, state: RegistryState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.to_document(), ensure_ascii=False, indent=2, sort_keys=False)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise RegistryError(f"cannot write registry {self.path}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[RegistryState]:
        """Lock, load, yield the state for mutation, then commit.

        The document is only rewritten when the block exits normally.
        """
        with exclusive_lock(self.lock_path, self.config.lock_timeout_seconds):
            state = self.load()
            yield state
            self._write(state)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, record: InstalledSkill) -> InstalledSkill:
        """Add a new record.

        Raises:
            AlreadyExistsError: A record with the same name exists.
        """
        with self.transaction() as state:
            if record.name in state.records:
                raise AlreadyExistsError(
                    f"skill '{record.name}' is already installed for {self.assistant.value}"
                )
            state.records[record.name] = record
        logger.info("Registered skill %s for %s", record.name, self.assistant.value)
        return record

    def upsert(self, record: InstalledSkill) -> InstalledSkill:
        """Insert or replace a record, keeping unknown fields of the old one."""
        with self.transaction() as state:
            existing = state.records.get(record.name)
            if existing is not None and existing.model_extra:
                merged = {**existing.model_extra, **record.to_document()}
                record = InstalledSkill.model_validate(merged)
            state.records[record.name] = record
        return record

    def delete(self, name: str) -> InstalledSkill:
        """Remove a record.

        Raises:
            RegistryNotFoundError: No record with that name.
        """
        with self.transaction() as state:
            record = state.records.pop(name, None)
            if record is None:
                raise RegistryNotFoundError(
                    f"skill '{name}' is not installed for {self.assistant.value}"
                )
        logger.info("Unregistered skill %s for %s", name, self.assistant.value)
        return record

    def increment_usage(self, name: str) -> InstalledSkill:
        """Atomically add one to a skill's usage count.

        Raises:
            RegistryNotFoundError: No record with that name.
        """
        with self.transaction() as state:
            record = state.records.get(name)
            if record is None:
                raise RegistryNotFoundError(
                    f"skill '{name}' is not installed for {self.assistant.value}"
                )
            updated = record.model_copy(
                update={"usage_count": record.usage_count + 1, "last_used_at": utc_now()}
            )
            state.records[name] = updated
        logger.debug("Usage of %s is now %d", name, updated.usage_count)
        return updated

    def reconcile(self) -> ReconcileReport:
        """Drop records whose directory is gone; report untracked directories.

        Untracked directories are never touched.
        """
        report = ReconcileReport()
        current = self.load()
        missing = [name for name, r in current.records.items() if not Path(r.install_path).is_dir()]

        if missing:
            with self.transaction() as state:
                for name in missing:
                    record = state.records.get(name)
                    if record is not None and not Path(record.install_path).is_dir():
                        del state.records[name]
                        report.dropped.append(name)
            for name in report.dropped:
                logger.warning(
                    "Dropped registry record for %s: directory is missing", name
                )

        tracked = set(current.records)
        if self.skills_root.is_dir():
            for child in sorted(self.skills_root.iterdir()):
                if child.name.startswith("."):
                    continue
                if child.is_dir() and child.name not in tracked:
                    report.untracked.append(child.name)
        if report.untracked:
            logger.info(
                "Untracked skill directories under %s: %s",
                self.skills_root,
                ", ".join(report.untracked),
            )
        return report

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, name: str) -> InstalledSkill | None:
        return self.load().records.get(name)

    def require(self, name: str) -> InstalledSkill:
        record = self.get(name)
        if record is None:
            raise RegistryNotFoundError(f"skill '{name}' is not installed for {self.assistant.value}")
        return record

    def list(self) -> list[InstalledSkill]:
        """All records ordered by name."""
        state = self.load()
        return [state.records[name] for name in sorted(state.records)]

    def search(self, query: str, *, include_content: bool = False) -> list[InstalledSkill]:
        """Case-insensitive substring search over name and description.

        With include_content, the installed SKILL.md is searched as well.
        """
        needle = (query or "").strip().lower()
        if not needle:
            return self.list()

        matches: list[InstalledSkill] = []
        for record in self.list():
            if needle in record.name.lower() or needle in record.description.lower():
                matches.append(record)
                continue
            if include_content and needle in self._manifest_text(record).lower():
                matches.append(record)
        return matches

    def stats(self) -> RegistryStats:
        records = self.list()
        return RegistryStats(
            assistant=self.assistant,
            count=len(records),
            total_size_bytes=sum(r.size_bytes for r in records),
            total_usage=sum(r.usage_count for r in records),
            usage={r.name: r.usage_count for r in records},
            sizes={r.name: r.size_bytes for r in records},
        )

    def install_path_for(self, name: str) -> Path:
        """Where a skill with this name lives under the assistant's skills root."""
        return self.skills_root / validate_skill_name_for_path(name)

    @staticmethod
    def _manifest_text(record: InstalledSkill) -> str:
        try:
            return (Path(record.install_path) / MANIFEST_FILE_NAME).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return ""
