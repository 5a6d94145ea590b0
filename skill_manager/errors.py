"""Exception taxonomy for the skill pipeline.

Each exception carries the process exit code the command layer should use.
Expected business outcomes (validation violations, scan findings) are data
returned by the validator and scanner; the facade wraps them into
SkillValidationError / ScanBlockedError only when they abort an `add`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from skill_manager.enums import ExitCode

if TYPE_CHECKING:
    from skill_manager.models.domain import ScanReport, ValidationResult


class SkillManagerError(Exception):
    """Base class for all errors raised by skill_manager."""

    exit_code: ExitCode = ExitCode.GENERAL_ERROR


class NoAssistantSelectedError(SkillManagerError):
    """Raised when no assistant was given and no default is configured."""


class UserAbortError(SkillManagerError):
    """Raised when the user declines the confirmation gate."""

    exit_code = ExitCode.USER_ABORT


# ---------------------------------------------------------------------------
# Source resolution
# ---------------------------------------------------------------------------


class SourceError(SkillManagerError):
    """Raised when a skill source cannot be turned into a staged tree."""

    exit_code = ExitCode.SOURCE_ERROR


class SourceNotFoundError(SourceError):
    """The local path does not exist or is not a directory."""


class SourceTooLargeError(SourceError):
    """The source exceeds a configured size limit."""


class FetchFailedError(SourceError):
    """A network or git operation failed."""


class SourceTimeoutError(SourceError):
    """A network or git operation exceeded its timeout."""


class UnsafeArchiveError(SourceError):
    """An archive entry would escape the extraction root."""


class UnsupportedSourceError(SourceError):
    """The source string or archive suffix is not supported."""


class AmbiguousRootError(SourceError):
    """More than one directory in the tree contains a manifest."""


class ManifestMissingError(SourceError):
    """No manifest file was found in the tree."""


# ---------------------------------------------------------------------------
# Validation / scanning
# ---------------------------------------------------------------------------


class SkillValidationError(SkillManagerError):
    """Raised by the add pipeline when the manifest has violations."""

    exit_code = ExitCode.VALIDATION_FAILED

    def __init__(self, result: ValidationResult) -> None:
        self.result = result
        details = "; ".join(f"{v.field}: {v.message}" for v in result.violations)
        super().__init__(f"validation failed: {details}")


class ScanError(SkillManagerError):
    """Scanner infrastructure failure (not a finding)."""


class ScanBlockedError(SkillManagerError):
    """Raised by the add pipeline when findings meet the block threshold."""

    exit_code = ExitCode.BLOCKED_BY_SCAN

    def __init__(self, report: ScanReport, threshold: str) -> None:
        self.report = report
        self.threshold = threshold
        super().__init__(
            f"security scan blocked installation: {len(report.findings)} finding(s), "
            f"maximum severity {report.max_severity} (threshold {threshold})"
        )


# ---------------------------------------------------------------------------
# Install / registry
# ---------------------------------------------------------------------------


class InstallError(SkillManagerError):
    """Raised when installing or uninstalling a skill fails."""

    exit_code = ExitCode.INSTALL_ERROR


class AlreadyExistsError(InstallError):
    """A skill with this name is already installed for the assistant."""


class InstallIoError(InstallError):
    """A filesystem operation failed during install or uninstall."""


class InstallNotFoundError(InstallError):
    """The skill is not installed for the assistant."""


class RegistryError(SkillManagerError):
    """Raised when the registry document cannot be read or written."""

    exit_code = ExitCode.INSTALL_ERROR


class RegistryCorruptError(RegistryError):
    """The registry document is unreadable or structurally invalid."""


class RegistryLockedError(RegistryError):
    """The registry lock could not be acquired before the timeout."""


class RegistryNotFoundError(RegistryError):
    """No registry record exists for the skill."""


def exit_code_for(exc: BaseException) -> ExitCode:
    """Map an exception to the process exit code."""
    if isinstance(exc, SkillManagerError):
        return exc.exit_code
    if isinstance(exc, KeyboardInterrupt):
        return ExitCode.USER_ABORT
    return ExitCode.GENERAL_ERROR
