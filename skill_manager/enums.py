"""StrEnum definitions for type-safe constants."""

from enum import IntEnum, StrEnum


class Assistant(StrEnum):
    """Supported AI coding assistants."""

    CODEX = "codex"
    CLAUDECODE = "claudecode"
    OPENCODE = "opencode"

    @classmethod
    def parse(cls, value: str) -> "Assistant":
        """Parse an assistant name, accepting the common spellings."""
        aliases = {
            "codex": cls.CODEX,
            "claudecode": cls.CLAUDECODE,
            "claude-code": cls.CLAUDECODE,
            "claude_code": cls.CLAUDECODE,
            "opencode": cls.OPENCODE,
            "open-code": cls.OPENCODE,
            "open_code": cls.OPENCODE,
        }
        key = (value or "").strip().lower()
        if key not in aliases:
            raise ValueError(
                f"unknown assistant '{value}'. Use codex, claudecode, or opencode."
            )
        return aliases[key]


class ArchiveFormat(StrEnum):
    """Archive formats accepted for archive URLs."""

    ZIP = "zip"
    TAR = "tar"
    TAR_GZ = "tar.gz"
    TGZ = "tgz"

    @classmethod
    def from_url(cls, url: str) -> "ArchiveFormat | None":
        """Detect the archive format from a URL suffix (query/fragment ignored)."""
        path = url.split("#", 1)[0].split("?", 1)[0].lower()
        if path.endswith(".zip"):
            return cls.ZIP
        if path.endswith(".tar.gz"):
            return cls.TAR_GZ
        if path.endswith(".tgz"):
            return cls.TGZ
        if path.endswith(".tar"):
            return cls.TAR
        return None

    @property
    def is_gzipped(self) -> bool:
        return self in (ArchiveFormat.TAR_GZ, ArchiveFormat.TGZ)


class FindingKind(StrEnum):
    """Classes of security scan findings."""

    SECRET = "secret"
    RISKY_COMMAND = "risky_command"
    BINARY_ARTIFACT = "binary_artifact"
    EXTERNAL_TOOL_HIT = "external_tool_hit"


class Severity(StrEnum):
    """Finding severity levels, ordered low < medium < high."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class ExitCode(IntEnum):
    """Process exit codes for the command layer."""

    OK = 0
    GENERAL_ERROR = 1
    VALIDATION_FAILED = 2
    BLOCKED_BY_SCAN = 3
    SOURCE_ERROR = 4
    INSTALL_ERROR = 5
    USER_ABORT = 6
