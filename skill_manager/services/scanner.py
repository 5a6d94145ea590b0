"""Static security scanner for skill trees.

Stages (all run; there is no early exit):
  1. Secret detection on every text file (regex rules + entropy heuristic)
  2. Risky shell command detection on script files
  3. Binary artifact detection on every file (magic bytes)
  4. Optional external tools (trivy, clamscan)

Per-file work fans out over a thread pool. Findings are deduplicated and
sorted afterwards, so the report is identical for any worker count. The
scanner never modifies the tree it scans.
"""

from __future__ import annotations

import logging
import math
import os
import re
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import yaml
from pydantic import Field, ValidationError

from skill_manager.config import SkillsConfig
from skill_manager.enums import FindingKind, Severity
from skill_manager.errors import ScanError
from skill_manager.models.base import JsonModel
from skill_manager.models.domain import ScanFinding, ScanReport
from skill_manager.observability.redaction import mask_span, redact_text
from skill_manager.services.external_scanners import ExternalScanners

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset({".git"})

SCRIPT_EXTENSIONS = frozenset(
    {".sh", ".bash", ".zsh", ".fish", ".ps1", ".bat", ".cmd", ".py", ".js", ".ts", ".mjs", ".cjs", ".rb", ".pl"}
)

ENTROPY_TOKEN_RE = re.compile(r"[A-Za-z0-9+/=_-]{32,}")
ENTROPY_THRESHOLD = 4.5
ENTROPY_RULE_ID = "high_entropy_string"

_DETAIL_MAX_CHARS = 160
_HEADER_BYTES = 64
_PE_OFFSET_FIELD = slice(0x3C, 0x40)

# (magic, label)
BINARY_MAGIC: list[tuple[bytes, str]] = [
    (b"\x7fELF", "ELF executable"),
    (b"\xfe\xed\xfa\xce", "Mach-O executable (32-bit)"),
    (b"\xce\xfa\xed\xfe", "Mach-O executable (32-bit)"),
    (b"\xfe\xed\xfa\xcf", "Mach-O executable (64-bit)"),
    (b"\xcf\xfa\xed\xfe", "Mach-O executable (64-bit)"),
    (b"\xca\xfe\xba\xbe", "Mach-O universal binary or Java class"),
    (b"\x00asm", "WebAssembly module"),
]

# (rule_id, pattern, severity, description)
SECRET_RULES: list[tuple[str, str, Severity, str]] = [
    ("aws_access_key", r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b", Severity.HIGH, "AWS access key id"),
    ("github_token", r"\bgh[pousr]_[A-Za-z0-9_]{20,}", Severity.HIGH, "GitHub token"),
    ("slack_token", r"\bxox[baprs]-[A-Za-z0-9-]{10,}", Severity.HIGH, "Slack token"),
    (
        "private_key",
        r"-----BEGIN (?:RSA |OPENSSH |EC |DSA |PGP |ENCRYPTED )?PRIVATE KEY(?: BLOCK)?-----",
        Severity.HIGH,
        "Private key",
    ),
    ("openai_key", r"\bsk-(?:proj-)?[A-Za-z0-9_-]{20,}", Severity.HIGH, "OpenAI-style API key"),
    (
        "generic_api_key",
        r"""(?i)\b[a-z_]*(?:api[_-]?key|secret[_-]?key|access[_-]?token|auth[_-]?token)['"]?\s*[:=]\s*['"][A-Za-z0-9+/=_\-]{16,}['"]""",
        Severity.HIGH,
        "Hardcoded API key or token",
    ),
]

RISKY_COMMAND_RULES: list[tuple[str, str, Severity, str]] = [
    (
        "rm_rf_root",
        r"\brm\s+(?:-[a-zA-Z]*(?:[rR][a-zA-Z]*f|f[a-zA-Z]*[rR])[a-zA-Z]*|-[rR]\s+-f|-f\s+-[rR])\s+"
        r"(?:--no-preserve-root\s+)?(?:/|~/?|\$HOME/?|\$\{HOME\}/?)\*?(?=$|[\s;&|)\"'])",
        Severity.HIGH,
        "Recursive force delete of root or home directory",
    ),
    (
        "pipe_to_shell",
        r"\b(?:curl|wget)\b[^|\n]*\|\s*(?:sudo\s+)?(?:ba|z|da|k)?sh\b",
        Severity.HIGH,
        "Remote script piped to a shell",
    ),
    (
        "pipe_to_iex",
        r"(?i)\b(?:iwr|irm|invoke-webrequest|invoke-restmethod)\b[^|\n]*\|\s*(?:iex|invoke-expression)\b",
        Severity.HIGH,
        "Remote script piped to Invoke-Expression",
    ),
    (
        "privilege_escalation",
        r"(?:^|[;&|(`])\s*(?:sudo|doas)\s+\S|\bsu\s+(?:-\s+)?-c\b",
        Severity.MEDIUM,
        "Privilege escalation",
    ),
    (
        "chmod_777",
        r"\bchmod\s+(?:-[a-zA-Z]+\s+)*0?777\b",
        Severity.MEDIUM,
        "World-writable permissions (chmod 777)",
    ),
    (
        "tls_verification_disabled",
        r"\bcurl\b.*\s(?:-[a-zA-Z]*k[a-zA-Z]*|--insecure)\b"
        r"|--no-check-certificate\b"
        r"|(?i:sslVerify)\s*=?\s*false\b"
        r"|--trusted-host\b"
        r"|strict-ssl\s*=?\s*false\b"
        r"|\bverify\s*=\s*False\b",
        Severity.MEDIUM,
        "TLS certificate verification disabled",
    ),
]


@dataclass(frozen=True)
class Rule:
    rule_id: str
    pattern: re.Pattern[str]
    severity: Severity
    description: str


class CustomRule(JsonModel):
    id: str = Field(min_length=1)
    pattern: str = Field(min_length=1)
    severity: Severity = Severity.MEDIUM
    description: str = ""


class CustomRulesFile(JsonModel):
    secrets: list[CustomRule] = Field(default_factory=list)
    risky_commands: list[CustomRule] = Field(default_factory=list)


def _compile(rules: list[tuple[str, str, Severity, str]]) -> list[Rule]:
    return [Rule(rid, re.compile(p), sev, desc) for rid, p, sev, desc in rules]


def load_custom_rules(path: str | Path) -> tuple[list[Rule], list[Rule]]:
    """Load extra (secret, risky command) rules from a YAML file.

    Raises:
        ScanError: The file is unreadable, not valid YAML, malformed, or
            contains an invalid regex.
    """
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, UnicodeDecodeError) as e:
        raise ScanError(f"cannot read scan rules file {p}: {e}") from e
    except yaml.YAMLError as e:
        raise ScanError(f"invalid YAML in scan rules file {p}: {e}") from e

    if not isinstance(raw, dict):
        raise ScanError(f"scan rules file {p} must contain a mapping")

    try:
        parsed = CustomRulesFile.model_validate(raw)
    except ValidationError as e:
        raise ScanError(f"invalid scan rules file {p}: {e}") from e

    def build(items: list[CustomRule]) -> list[Rule]:
        out: list[Rule] = []
        for item in items:
            try:
                pattern = re.compile(item.pattern)
            except re.error as e:
                raise ScanError(f"invalid pattern for rule '{item.id}' in {p}: {e}") from e
            out.append(Rule(item.id, pattern, item.severity, item.description or item.id))
        return out

    return build(parsed.secrets), build(parsed.risky_commands)


def shannon_entropy(s: str) -> float:
    """Bits per character."""
    if not s:
        return 0.0
    counts = Counter(s)
    length = len(s)
    return -sum((c / length) * math.log2(c / length) for c in counts.values())


def _magic_label(head: bytes, f: BinaryIO) -> str | None:
    """Label for a known executable header, or None.

    "MZ" alone is common at the start of text, so it only counts with a PE
    signature at e_lfanew or a DOS header that is actually binary.
    """
    for magic, label in BINARY_MAGIC:
        if head.startswith(magic):
            return label

    if not head.startswith(b"MZ"):
        return None
    if len(head) >= _HEADER_BYTES:
        f.seek(int.from_bytes(head[_PE_OFFSET_FIELD], "little"))
        if f.read(4) == b"PE\x00\x00":
            return "PE executable"
    if b"\x00" in head:
        return "DOS executable"
    return None


def _mask_spans(line: str, spans: list[tuple[int, int]]) -> str:
    merged: list[tuple[int, int]] = []
    for start, end in sorted(spans):
        if merged and start < merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    for start, end in reversed(merged):
        line = mask_span(line, start, end)
    return line


def _excerpt(line: str, spans: list[tuple[int, int]]) -> str:
    text = redact_text(_mask_spans(line, spans).strip(), max_chars=0)
    if len(text) > _DETAIL_MAX_CHARS:
        text = text[:_DETAIL_MAX_CHARS] + "…"
    return text


def dedupe_and_sort(findings: list[ScanFinding]) -> list[ScanFinding]:
    """One finding per (kind, path, line), highest severity kept, then sorted.

    Equal severities keep the lowest rule id.
    """
    best: dict[tuple[str, str, int], ScanFinding] = {}
    for f in sorted(findings, key=lambda f: f.sort_key):
        current = best.get(f.dedupe_key)
        if current is None or f.severity.rank > current.severity.rank:
            best[f.dedupe_key] = f
    return sorted(best.values(), key=lambda f: f.sort_key)


class SecurityScanner:
    """Scan a skill tree and produce an ordered ScanReport."""

    def __init__(self, config: SkillsConfig, external: ExternalScanners | None = None) -> None:
        """Initialize the scanner.

        Args:
            config: Configuration (workers, file size cap, custom rules path).
            external: Optional external tool runner, probed once by the caller.
        """
        self.config = config
        self.external = external
        self._secret_rules = _compile(SECRET_RULES)
        self._command_rules = _compile(RISKY_COMMAND_RULES)
        self._custom_loaded = False

    def _ensure_custom_rules(self) -> None:
        if self._custom_loaded:
            return
        if self.config.scan_rules_path:
            secrets, commands = load_custom_rules(self.config.scan_rules_path)
            self._secret_rules = self._secret_rules + secrets
            self._command_rules = self._command_rules + commands
            logger.info(
                "Loaded %d custom secret rule(s) and %d custom command rule(s) from %s",
                len(secrets),
                len(commands),
                self.config.scan_rules_path,
            )
        self._custom_loaded = True

    def scan(self, root: Path) -> ScanReport:
        """Scan every file under root.

        Raises:
            ScanError: root is not a directory or the custom rules are invalid.
        """
        root = Path(root)
        if not root.is_dir():
            raise ScanError(f"scan root is not a directory: {root}")
        self._ensure_custom_rules()

        files, diagnostics = self._collect_files(root)

        workers = max(1, self.config.scan_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="skill-scan") as pool:
            results = list(pool.map(lambda p: self._scan_file(root, p), files))

        findings: list[ScanFinding] = []
        for file_findings, file_diagnostics in results:
            findings.extend(file_findings)
            diagnostics.extend(file_diagnostics)

        tools_run: list[str] = []
        if self.external is not None:
            outcome = self.external.run(root)
            findings.extend(outcome.findings)
            diagnostics.extend(outcome.diagnostics)
            tools_run = outcome.tools_run

        report = ScanReport(
            root=str(root),
            findings=dedupe_and_sort(findings),
            diagnostics=diagnostics,
            external_tools_run=tools_run,
        )
        logger.info(
            "Scanned %d file(s) under %s: %d finding(s), max severity %s",
            len(files),
            root,
            len(report.findings),
            report.max_severity.value if report.max_severity else "none",
        )
        return report

    # ------------------------------------------------------------------
    # File collection
    # ------------------------------------------------------------------

    def _collect_files(self, root: Path) -> tuple[list[Path], list[str]]:
        files: list[Path] = []
        diagnostics: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for d in dirnames:
                if (Path(dirpath) / d).is_symlink():
                    diagnostics.append(f"skipped symlink: {(Path(dirpath) / d).relative_to(root).as_posix()}")
            for fname in sorted(filenames):
                p = Path(dirpath) / fname
                if p.is_symlink():
                    diagnostics.append(f"skipped symlink: {p.relative_to(root).as_posix()}")
                    continue
                files.append(p)
        return sorted(files), diagnostics

    # ------------------------------------------------------------------
    # Per-file stages
    # ------------------------------------------------------------------

    def _scan_file(self, root: Path, path: Path) -> tuple[list[ScanFinding], list[str]]:
        rel = path.relative_to(root).as_posix()
        findings: list[ScanFinding] = []
        diagnostics: list[str] = []

        try:
            size = path.stat().st_size
            with path.open("rb") as f:
                head = f.read(_HEADER_BYTES)
                label = _magic_label(head, f)
        except OSError as e:
            diagnostics.append(f"unreadable file {rel}: {e}")
            return findings, diagnostics

        binary = self._scan_binary(rel, label)
        if binary is not None:
            findings.append(binary)

        if size > self.config.max_scan_file_bytes:
            diagnostics.append(f"skipped oversized file {rel} ({size} bytes)")
            return findings, diagnostics

        try:
            data = path.read_bytes()
        except OSError as e:
            diagnostics.append(f"unreadable file {rel}: {e}")
            return findings, diagnostics

        if b"\x00" in data:
            return findings, diagnostics
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return findings, diagnostics

        lines = text.splitlines()
        findings.extend(self._scan_secrets(rel, lines))
        if path.suffix.lower() in SCRIPT_EXTENSIONS or text.startswith("#!"):
            findings.extend(self._scan_commands(rel, lines))
        return findings, diagnostics

    @staticmethod
    def _scan_binary(rel: str, label: str | None) -> ScanFinding | None:
        if label is None:
            return None
        return ScanFinding(
            kind=FindingKind.BINARY_ARTIFACT,
            severity=Severity.MEDIUM,
            relative_path=rel,
            line_or_offset=0,
            detail=f"{label} detected",
            rule_id="binary_magic",
        )

    def _scan_secrets(self, rel: str, lines: list[str]) -> list[ScanFinding]:
        findings: list[ScanFinding] = []
        for lineno, line in enumerate(lines, start=1):
            hits: list[tuple[Rule, tuple[int, int]]] = []
            for rule in self._secret_rules:
                m = rule.pattern.search(line)
                if m:
                    hits.append((rule, m.span()))

            entropy_spans: list[tuple[int, int]] = []
            for m in ENTROPY_TOKEN_RE.finditer(line):
                start, end = m.span()
                if any(s < end and start < e for _, (s, e) in hits):
                    continue
                if shannon_entropy(m.group(0)) >= ENTROPY_THRESHOLD:
                    entropy_spans.append((start, end))

            if not hits and not entropy_spans:
                continue

            spans = [span for _, span in hits] + entropy_spans
            excerpt = _excerpt(line, spans)
            for rule, _span in hits:
                findings.append(
                    ScanFinding(
                        kind=FindingKind.SECRET,
                        severity=rule.severity,
                        relative_path=rel,
                        line_or_offset=lineno,
                        detail=f"{rule.description}: {excerpt}",
                        rule_id=rule.rule_id,
                    )
                )
            if entropy_spans:
                findings.append(
                    ScanFinding(
                        kind=FindingKind.SECRET,
                        severity=Severity.MEDIUM,
                        relative_path=rel,
                        line_or_offset=lineno,
                        detail=f"High-entropy string: {excerpt}",
                        rule_id=ENTROPY_RULE_ID,
                    )
                )
        return findings

    def _scan_commands(self, rel: str, lines: list[str]) -> list[ScanFinding]:
        findings: list[ScanFinding] = []
        for lineno, line in enumerate(lines, start=1):
            for rule in self._command_rules:
                if rule.pattern.search(line):
                    findings.append(
                        ScanFinding(
                            kind=FindingKind.RISKY_COMMAND,
                            severity=rule.severity,
                            relative_path=rel,
                            line_or_offset=lineno,
                            detail=f"{rule.description}: {_excerpt(line, [])}",
                            rule_id=rule.rule_id,
                        )
                    )
        return findings
