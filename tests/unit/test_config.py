"""Unit tests for SkillsConfig loading and derived locations."""

from pathlib import Path

import pytest

from skill_manager.config import SkillsConfig, validate_skill_name_for_path
from skill_manager.enums import Assistant, Severity
from skill_manager.errors import NoAssistantSelectedError


class TestDerivedLocations:
    def test_data_dir_defaults_under_home(self, temp_home):
        config = SkillsConfig(home_dir=str(temp_home))

        assert Path(config.data_dir) == temp_home / "data"
        assert config.registry_dir == temp_home / "data" / "registry"
        assert config.staging_root == temp_home / "data" / "staging"

    def test_skills_root_defaults_to_base_dir_per_assistant(self, temp_home):
        config = SkillsConfig(home_dir=str(temp_home), skills_base_dir=str(temp_home / "installed"))

        assert config.skills_root_for(Assistant.CODEX) == temp_home / "installed" / "codex"
        assert config.skills_root_for(Assistant.OPENCODE) == temp_home / "installed" / "opencode"

    def test_skills_root_override_wins(self, temp_home):
        override = temp_home / "claude-skills"
        config = SkillsConfig(
            home_dir=str(temp_home),
            skills_roots={"claudecode": str(override)},
        )

        assert config.skills_root_for(Assistant.CLAUDECODE) == override
        assert config.skills_root_for(Assistant.CODEX) == Path(config.skills_base_dir) / "codex"

    def test_defaults(self, temp_home):
        config = SkillsConfig(home_dir=str(temp_home))

        assert config.block_severity == Severity.HIGH
        assert config.scan_workers == 4
        assert config.max_archive_entries == 5000
        assert config.lock_timeout_seconds == 10.0


class TestAssistantResolution:
    def test_explicit_assistant_wins(self, config):
        assert config.resolve_assistant("claude-code") == Assistant.CLAUDECODE

    def test_default_assistant_used(self, temp_home):
        config = SkillsConfig(home_dir=str(temp_home), default_assistant="opencode")
        assert config.resolve_assistant(None) == Assistant.OPENCODE

    def test_no_assistant_raises(self, config):
        with pytest.raises(NoAssistantSelectedError):
            config.resolve_assistant(None)


class TestYamlLoading:
    def test_missing_file_yields_defaults(self, temp_home):
        config = SkillsConfig.from_yaml_file(temp_home / "nope.yaml")
        assert config.default_assistant is None

    def test_file_values_loaded(self, temp_home):
        path = temp_home / "config.yaml"
        path.write_text(
            f"home_dir: {temp_home}\ndefault_assistant: codex\nscan_workers: 2\n",
            encoding="utf-8",
        )

        config = SkillsConfig.from_yaml_file(path)

        assert config.default_assistant == Assistant.CODEX
        assert config.scan_workers == 2

    def test_env_overrides_file(self, temp_home, monkeypatch):
        path = temp_home / "config.yaml"
        path.write_text(f"home_dir: {temp_home}\ndefault_assistant: codex\n", encoding="utf-8")
        monkeypatch.setenv("SKILLS_DEFAULT_ASSISTANT", "opencode")

        config = SkillsConfig.from_yaml_file(path)

        assert config.default_assistant == Assistant.OPENCODE

    def test_scan_rules_env_var(self, temp_home, monkeypatch):
        rules = temp_home / "rules.yaml"
        monkeypatch.setenv("SKILLS_SCAN_RULES", str(rules))

        config = SkillsConfig(home_dir=str(temp_home))

        assert config.scan_rules_path == str(rules)

    def test_non_mapping_file_rejected(self, temp_home):
        path = temp_home / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ValueError):
            SkillsConfig.from_yaml_file(path)

    def test_save_then_load_round_trip(self, temp_home):
        config = SkillsConfig(home_dir=str(temp_home), default_assistant="codex")
        path = config.save_yaml(temp_home / "saved.yaml")

        loaded = SkillsConfig.from_yaml_file(path)

        assert loaded.default_assistant == Assistant.CODEX
        assert loaded.skills_base_dir == config.skills_base_dir


class TestSkillNameForPath:
    @pytest.mark.parametrize("name", ["", "  ", "a/b", "a\\b", "..", "a..b"])
    def test_rejects_unsafe_names(self, name):
        with pytest.raises(ValueError):
            validate_skill_name_for_path(name)

    def test_accepts_plain_name(self):
        assert validate_skill_name_for_path(" pdf-tools ") == "pdf-tools"
