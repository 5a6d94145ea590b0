"""Configuration with YAML file and env variable support.

Load order (later overrides earlier):
1. ~/.skills/config.yaml - persisted user configuration
2. Environment variables - runtime overrides (prefix SKILLS_)

The custom scan rules file is read from SKILLS_SCAN_RULES.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from skill_manager.enums import Assistant, Severity
from skill_manager.errors import NoAssistantSelectedError

logger = logging.getLogger(__name__)

SKILLS_HOME_DIR_NAME = ".skills"
SKILLS_DATA_DIR_NAME = "data"
CONFIG_FILE_NAME = "config.yaml"

ENV_PREFIX = "SKILLS_"
SCAN_RULES_ENV_VAR = "SKILLS_SCAN_RULES"

MIB = 1024 * 1024


def default_home_dir() -> Path:
    return Path.home() / SKILLS_HOME_DIR_NAME


def default_config_path() -> Path:
    return default_home_dir() / CONFIG_FILE_NAME


def validate_skill_name_for_path(name: str) -> str:
    """Validate a skill name before it is joined onto a filesystem path.

    The validator enforces the full naming rules; this is the minimal check
    that keeps a misbehaving caller from escaping the skills root.
    """

    n = (name or "").strip()
    if not n:
        raise ValueError("skill name is required")
    if "/" in n or "\\" in n:
        raise ValueError("skill name must not contain path separators")
    if n in (".", "..") or ".." in n:
        raise ValueError("skill name must not contain traversal segments")
    return n


class SkillsConfig(BaseSettings):
    """Skill manager configuration.

    Prefix: SKILLS_ (e.g., SKILLS_DEFAULT_ASSISTANT=codex)
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Locations
    home_dir: str = Field(default_factory=lambda: str(default_home_dir()))
    data_dir: str | None = Field(
        default=None,
        description="Registry, lock and staging area. Defaults to <home_dir>/data.",
    )
    skills_base_dir: str | None = Field(
        default=None,
        description="Parent of per-assistant skills roots. Defaults to data_dir.",
    )
    skills_roots: dict[Assistant, str] = Field(
        default_factory=dict,
        description="Per-assistant skills root overrides.",
    )

    default_assistant: Assistant | None = Field(default=None)

    # Scanning
    block_severity: Severity = Field(
        default=Severity.HIGH,
        description="Findings at or above this severity block installation.",
    )
    scan_workers: int = Field(default=4, ge=1)
    max_scan_file_bytes: int = Field(default=10 * MIB)
    scan_rules_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("scan_rules_path", SCAN_RULES_ENV_VAR),
        description="YAML file with additional secret / risky-command rules.",
    )
    external_scanners_enabled: bool = Field(default=True)
    trivy_path: str | None = Field(default=None)
    clamscan_path: str | None = Field(default=None)
    external_scanner_timeout_seconds: int = Field(default=300)

    # Acquisition limits
    git_timeout_seconds: int = Field(default=120)
    download_timeout_seconds: int = Field(default=60)
    max_local_bytes: int = Field(default=50 * MIB)
    max_download_bytes: int = Field(default=200 * MIB)
    max_extracted_bytes: int = Field(default=512 * MIB)
    max_archive_entries: int = Field(default=5_000)

    # Registry
    lock_timeout_seconds: float = Field(default=10.0)

    log_level: str = Field(default="INFO")

    def model_post_init(self, __context) -> None:  # type: ignore[override]
        """Expand user-relative paths and derive defaults from home_dir."""
        home = Path(self.home_dir).expanduser()
        self.home_dir = str(home)

        data = Path(self.data_dir).expanduser() if self.data_dir else home / SKILLS_DATA_DIR_NAME
        self.data_dir = str(data)

        base = Path(self.skills_base_dir).expanduser() if self.skills_base_dir else data
        self.skills_base_dir = str(base)

        self.skills_roots = {
            assistant: str(Path(root).expanduser()) for assistant, root in self.skills_roots.items()
        }

        if self.scan_rules_path:
            self.scan_rules_path = str(Path(self.scan_rules_path).expanduser())

    # ------------------------------------------------------------------
    # Derived locations
    # ------------------------------------------------------------------

    def skills_root_for(self, assistant: Assistant) -> Path:
        """Directory that holds the installed skills of one assistant."""
        override = self.skills_roots.get(assistant)
        if override:
            return Path(override)
        return Path(self.skills_base_dir) / assistant.value

    @property
    def registry_dir(self) -> Path:
        return Path(self.data_dir) / "registry"

    @property
    def staging_root(self) -> Path:
        """Staging parent; lives under data_dir so installs can rename in place."""
        return Path(self.data_dir) / "staging"

    def resolve_assistant(self, explicit: Assistant | str | None = None) -> Assistant:
        """Pick the assistant for a command: explicit, else the configured default."""
        if explicit:
            return explicit if isinstance(explicit, Assistant) else Assistant.parse(explicit)

        if self.default_assistant is not None:
            logger.warning("Using default assistant %s", self.default_assistant.value)
            return self.default_assistant

        raise NoAssistantSelectedError(
            "no assistant selected. Set default_assistant in the config or pass an assistant."
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    def from_yaml_file(cls, config_path: str | Path | None = None) -> "SkillsConfig":
        """Load config from YAML with env var overrides.

        A missing file yields defaults. Keys whose SKILLS_* env var is set are
        dropped from the file data so the environment wins.
        """

        path = Path(config_path).expanduser() if config_path else default_config_path()

        config_data: dict[str, Any] = {}
        if path.exists():
            with path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"config file {path} must contain a mapping")
            config_data = loaded

        keys_to_remove = []
        for key in config_data:
            env_key = f"{ENV_PREFIX}{str(key).upper()}"
            if env_key in os.environ:
                keys_to_remove.append(key)
        if "scan_rules_path" in config_data and SCAN_RULES_ENV_VAR in os.environ:
            keys_to_remove.append("scan_rules_path")

        for key in keys_to_remove:
            config_data.pop(key, None)

        return cls(**config_data)

    def save_yaml(self, config_path: str | Path | None = None) -> Path:
        """Persist the user-settable subset of the configuration."""
        path = Path(config_path).expanduser() if config_path else default_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "default_assistant": self.default_assistant.value if self.default_assistant else None,
            "skills_base_dir": self.skills_base_dir,
            "skills_roots": {a.value: root for a, root in self.skills_roots.items()},
        }
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
        return path
