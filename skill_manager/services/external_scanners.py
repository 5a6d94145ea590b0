"""Optional external scanners (trivy, clamscan).

Both tools are opaque subprocesses. A missing binary, a timeout, an OS
error or an unexpected exit code means the tool simply did not run; that is
recorded as a diagnostic and never becomes a scan failure.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from skill_manager.config import SkillsConfig
from skill_manager.enums import FindingKind, Severity
from skill_manager.models.domain import ScanFinding
from skill_manager.observability.redaction import redact_text

logger = logging.getLogger(__name__)

TRIVY = "trivy"
CLAMSCAN = "clamscan"

_TRIVY_SEVERITY = {
    "CRITICAL": Severity.HIGH,
    "HIGH": Severity.HIGH,
    "MEDIUM": Severity.MEDIUM,
}


@dataclass
class ExternalScanOutcome:
    findings: list[ScanFinding] = field(default_factory=list)
    tools_run: list[str] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)


def _relative(root: Path, raw: str) -> str:
    p = Path(raw)
    if p.is_absolute():
        try:
            return p.resolve().relative_to(root.resolve()).as_posix()
        except (ValueError, OSError):
            return p.as_posix()
    return p.as_posix()


def parse_trivy_output(stdout: str) -> list[ScanFinding]:
    """Turn `trivy fs --format json` output into findings.

    Unparseable output still yields a single finding: trivy exited 1, so it
    found something.
    """
    try:
        data = json.loads(stdout or "")
    except json.JSONDecodeError:
        data = None

    if not isinstance(data, dict):
        return [
            ScanFinding(
                kind=FindingKind.EXTERNAL_TOOL_HIT,
                severity=Severity.HIGH,
                relative_path=".",
                detail="trivy reported findings (output could not be parsed)",
                rule_id=TRIVY,
            )
        ]

    findings: list[ScanFinding] = []
    for result in data.get("Results") or []:
        if not isinstance(result, dict):
            continue
        target = str(result.get("Target") or ".")
        for key, id_field in (
            ("Vulnerabilities", "VulnerabilityID"),
            ("Secrets", "RuleID"),
            ("Misconfigurations", "ID"),
        ):
            for item in result.get(key) or []:
                if not isinstance(item, dict):
                    continue
                findings.append(_trivy_finding(target, item, id_field))
    return findings


def _trivy_finding(target: str, item: dict[str, Any], id_field: str) -> ScanFinding:
    severity = _TRIVY_SEVERITY.get(str(item.get("Severity", "")).upper(), Severity.LOW)
    rule = str(item.get(id_field) or "unknown")
    title = str(item.get("Title") or item.get("PkgName") or rule)
    line = item.get("StartLine") if isinstance(item.get("StartLine"), int) else 0
    return ScanFinding(
        kind=FindingKind.EXTERNAL_TOOL_HIT,
        severity=severity,
        relative_path=target,
        line_or_offset=max(line, 0),
        detail=redact_text(f"trivy: {title}", max_chars=300),
        rule_id=f"{TRIVY}:{rule}",
    )


def parse_clamscan_output(stdout: str, root: Path) -> list[ScanFinding]:
    """One finding per `<path>: <signature> FOUND` line."""
    findings: list[ScanFinding] = []
    for line in (stdout or "").splitlines():
        line = line.strip()
        if not line.endswith(" FOUND"):
            continue
        path_part, sep, signature = line[: -len(" FOUND")].rpartition(": ")
        if not sep:
            continue
        findings.append(
            ScanFinding(
                kind=FindingKind.EXTERNAL_TOOL_HIT,
                severity=Severity.HIGH,
                relative_path=_relative(root, path_part),
                detail=f"clamscan: {signature.strip()}",
                rule_id=f"{CLAMSCAN}:{signature.strip()}",
            )
        )
    return findings


class ExternalScanners:
    """Probe for trivy / clamscan once and run whichever are installed."""

    def __init__(self, config: SkillsConfig) -> None:
        self.timeout = config.external_scanner_timeout_seconds
        self.tools: dict[str, str] = {}
        if not config.external_scanners_enabled:
            return

        for name, configured in ((TRIVY, config.trivy_path), (CLAMSCAN, config.clamscan_path)):
            path = configured or shutil.which(name)
            if path:
                self.tools[name] = path
        logger.debug("External scanners available: %s", sorted(self.tools) or "none")

    def run(self, root: Path) -> ExternalScanOutcome:
        outcome = ExternalScanOutcome()
        for name in (TRIVY, CLAMSCAN):
            binary = self.tools.get(name)
            if binary is None:
                outcome.diagnostics.append(f"{name} not run: not installed")
                continue

            if name == TRIVY:
                cmd = [binary, "fs", "--quiet", "--exit-code", "1", "--format", "json", str(root)]
            else:
                cmd = [binary, "-r", "--no-summary", "--infected", str(root)]

            proc = self._invoke(name, cmd, outcome)
            if proc is None:
                continue

            if proc.returncode == 0:
                outcome.tools_run.append(name)
            elif proc.returncode == 1:
                outcome.tools_run.append(name)
                if name == TRIVY:
                    outcome.findings.extend(parse_trivy_output(proc.stdout))
                else:
                    outcome.findings.extend(parse_clamscan_output(proc.stdout, root))
            else:
                stderr = redact_text((proc.stderr or "").strip(), max_chars=500)
                outcome.diagnostics.append(f"{name} not run: exit code {proc.returncode} {stderr}".rstrip())
                logger.warning("%s exited with %s", name, proc.returncode)
        return outcome

    def _invoke(self, name: str, cmd: list[str], outcome: ExternalScanOutcome) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            outcome.diagnostics.append(f"{name} not run: timed out after {self.timeout}s")
            logger.warning("%s timed out after %ss", name, self.timeout)
        except OSError as e:
            outcome.diagnostics.append(f"{name} not run: {e}")
            logger.warning("%s failed to start: %s", name, e)
        return None
