"""Skill manager facade.

Wires the resolver, validator, scanner, install manager and registry into
the operations the command layer exposes: add, remove, list, show, stats,
search, mark-used, scan and validate.

Expected outcomes of the pipeline stages are data (ValidationResult,
ScanReport). `add` turns the ones that abort it into exceptions carrying an
exit code so the command layer can handle every failure the same way.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from skill_manager.config import SkillsConfig
from skill_manager.enums import Assistant
from skill_manager.errors import (
    AlreadyExistsError,
    InstallNotFoundError,
    RegistryNotFoundError,
    ScanBlockedError,
    SkillValidationError,
    SourceNotFoundError,
    UserAbortError,
)
from skill_manager.models.domain import (
    AddResult,
    InstalledSkill,
    RegistryStats,
    ScanReport,
    SkillDetails,
    ValidationResult,
)
from skill_manager.services.external_scanners import ExternalScanners
from skill_manager.services.frontmatter import FrontmatterError, read_manifest
from skill_manager.services.install_manager import InstallManager
from skill_manager.services.registry import Registry
from skill_manager.services.scanner import SecurityScanner
from skill_manager.services.source_resolver import SourceResolver, parse_source
from skill_manager.services.validator import SpecValidator

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]


class SkillManager:
    """Entry point for all skill operations of one invocation."""

    def __init__(
        self,
        config: SkillsConfig,
        *,
        confirm: ConfirmCallback | None = None,
        resolver: SourceResolver | None = None,
        validator: SpecValidator | None = None,
        scanner: SecurityScanner | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Loaded configuration.
            confirm: Asked before installing or removing unless `yes` is
                passed. Receives a prompt and returns True to proceed.
            resolver: Override for the source resolver.
            validator: Override for the validator.
            scanner: Override for the scanner. By default external tools
                are probed once here.
        """
        self.config = config
        self.confirm = confirm
        self.resolver = resolver or SourceResolver(config)
        self.validator = validator or SpecValidator()
        self.scanner = scanner or SecurityScanner(config, external=ExternalScanners(config))
        self._registries: dict[Assistant, Registry] = {}

    # ------------------------------------------------------------------
    # Registry handles
    # ------------------------------------------------------------------

    def registry(self, assistant: Assistant) -> Registry:
        """Registry handle for an assistant, reconciled on first use."""
        registry = self._registries.get(assistant)
        if registry is None:
            registry = Registry(self.config, assistant)
            registry.reconcile()
            self._registries[assistant] = registry
        return registry

    def _assistants_for_query(self, explicit: Assistant | str | None) -> list[Assistant]:
        if explicit:
            return [self.config.resolve_assistant(explicit)]
        if self.config.default_assistant is not None:
            return [self.config.default_assistant]
        logger.warning("No default assistant set; using all assistants")
        return list(Assistant)

    def _confirmed(self, prompt: str, yes: bool) -> bool:
        if yes:
            return True
        if self.confirm is None:
            return False
        return bool(self.confirm(prompt))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def add(
        self,
        source: str,
        assistant: Assistant | str | None = None,
        *,
        skill: str | None = None,
        yes: bool = False,
    ) -> AddResult:
        """Acquire, validate, scan and install a skill.

        Args:
            source: Local path, git URL or archive URL.
            assistant: Target assistant (default from config).
            skill: Optional selector for a skill inside a multi-skill source.
            yes: Skip the confirmation gate.

        Returns:
            AddResult with the new record and the stage reports.

        Raises:
            SourceError: Acquisition failed (nothing scanned).
            SkillValidationError: The manifest has violations (nothing scanned).
            ScanBlockedError: A finding met the block threshold.
            UserAbortError: Confirmation was declined.
            InstallError: Conflict or filesystem failure.
        """
        target = self.config.resolve_assistant(assistant)
        parsed = parse_source(source)
        registry = self.registry(target)

        with self.resolver.staging() as staging_dir:
            staged = self.resolver.resolve(parsed, staging_dir, subpath=skill)

            validation = self.validator.validate(staged.root)
            for warning in validation.warnings:
                logger.warning("%s: %s", warning.field, warning.message)
            if not validation.ok:
                raise SkillValidationError(validation)

            manifest = read_manifest(staged.root)
            if registry.get(manifest.name) is not None:
                raise AlreadyExistsError(
                    f"skill '{manifest.name}' is already installed for {target.value}"
                )

            report = self.scanner.scan(staged.root)
            for finding in report.findings:
                logger.warning(
                    "[%s] %s %s:%d %s",
                    finding.severity.value,
                    finding.kind.value,
                    finding.relative_path,
                    finding.line_or_offset,
                    finding.detail,
                )
            if report.blocks(self.config.block_severity):
                raise ScanBlockedError(report, self.config.block_severity.value)

            logger.warning(
                "Skill usage is at your own risk. Verify and trust the source before installing."
            )
            if not self._confirmed(f"Install {manifest.name} for {target.value}?", yes):
                raise UserAbortError("installation cancelled")

            installed = InstallManager(registry).install(staged, manifest)

        return AddResult(installed=installed, validation=validation, scan=report)

    def remove(self, name: str, assistant: Assistant | str | None = None, *, yes: bool = False) -> InstalledSkill:
        """Uninstall a skill and drop its record."""
        target = self.config.resolve_assistant(assistant)
        registry = self.registry(target)
        if registry.get(name) is None:
            raise InstallNotFoundError(f"skill '{name}' is not installed for {target.value}")

        if not self._confirmed(f"Remove {name} for {target.value}?", yes):
            raise UserAbortError("remove cancelled")

        return InstallManager(registry).uninstall(name)

    # ------------------------------------------------------------------
    # Registry queries
    # ------------------------------------------------------------------

    def list(self, assistant: Assistant | str | None = None) -> dict[Assistant, list[InstalledSkill]]:
        return {a: self.registry(a).list() for a in self._assistants_for_query(assistant)}

    def show(self, name: str, assistant: Assistant | str | None = None) -> list[SkillDetails]:
        """Records (and installed manifests) for `name`.

        Without an explicit assistant every assistant is searched.
        """
        assistants = [self.config.resolve_assistant(assistant)] if assistant else list(Assistant)

        details: list[SkillDetails] = []
        for a in assistants:
            record = self.registry(a).get(name)
            if record is None:
                continue
            try:
                manifest = read_manifest(Path(record.install_path))
            except (OSError, UnicodeDecodeError, FrontmatterError) as e:
                logger.warning("Cannot read manifest for %s: %s", name, e)
                manifest = None
            details.append(SkillDetails(record=record, manifest=manifest))

        if not details:
            raise RegistryNotFoundError(f"skill '{name}' not found")
        return details

    def stats(self, assistant: Assistant | str | None = None) -> list[RegistryStats]:
        return [self.registry(a).stats() for a in self._assistants_for_query(assistant)]

    def search(
        self,
        query: str,
        assistant: Assistant | str | None = None,
        *,
        include_content: bool = False,
    ) -> list[InstalledSkill]:
        matches: list[InstalledSkill] = []
        for a in self._assistants_for_query(assistant):
            matches.extend(self.registry(a).search(query, include_content=include_content))
        return matches

    def mark_used(self, name: str, assistant: Assistant | str | None = None) -> InstalledSkill:
        target = self.config.resolve_assistant(assistant)
        return self.registry(target).increment_usage(name)

    # ------------------------------------------------------------------
    # Standalone checks
    # ------------------------------------------------------------------

    def scan(self, path: str | Path) -> ScanReport:
        root = Path(path).expanduser()
        if not root.is_dir():
            raise SourceNotFoundError(f"not a directory: {root}")
        return self.scanner.scan(root)

    def validate(self, path: str | Path) -> ValidationResult:
        """Validate a skill directory in place; its name must match the manifest."""
        root = Path(path).expanduser()
        if not root.exists():
            raise SourceNotFoundError(f"path does not exist: {root}")
        return self.validator.validate(root, directory_name=root.resolve().name)
