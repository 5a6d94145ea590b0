"""Skill pipeline services package."""

from .external_scanners import ExternalScanners
from .install_manager import InstallManager
from .registry import Registry
from .scanner import SecurityScanner
from .skill_manager import SkillManager
from .source_resolver import SourceResolver, StagedSkill, parse_source
from .validator import SpecValidator

__all__ = [
    "ExternalScanners",
    "InstallManager",
    "Registry",
    "SecurityScanner",
    "SkillManager",
    "SourceResolver",
    "SpecValidator",
    "StagedSkill",
    "parse_source",
]
