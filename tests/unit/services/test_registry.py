"""Unit tests for the per-assistant registry."""

import json
import threading
from datetime import datetime, timezone

import pytest

from skill_manager.enums import Assistant
from skill_manager.errors import (
    AlreadyExistsError,
    RegistryCorruptError,
    RegistryNotFoundError,
)
from skill_manager.models.domain import InstalledSkill
from skill_manager.services.registry import Registry


@pytest.fixture
def registry(config):
    return Registry(config, Assistant.CODEX)


def _record(registry, name, *, size=10, description="", create_dir=True):
    path = registry.install_path_for(name)
    if create_dir:
        path.mkdir(parents=True, exist_ok=True)
    return InstalledSkill(
        name=name,
        assistant=registry.assistant,
        install_path=str(path),
        size_bytes=size,
        installed_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        content_hash="0" * 64,
        description=description,
    )


class TestDocument:
    def test_missing_file_is_empty(self, registry):
        assert registry.list() == []
        assert not registry.path.exists()

    def test_insert_persists_camel_case(self, registry):
        registry.insert(_record(registry, "pdf-tools", size=42))

        doc = json.loads(registry.path.read_text(encoding="utf-8"))
        assert doc["version"] == 1
        assert doc["assistant"] == "codex"
        assert doc["skills"][0]["name"] == "pdf-tools"
        assert doc["skills"][0]["sizeBytes"] == 42
        assert doc["skills"][0]["usageCount"] == 0

    def test_list_is_sorted_by_name(self, registry):
        for name in ("zeta", "alpha", "mid"):
            registry.insert(_record(registry, name))

        assert [r.name for r in registry.list()] == ["alpha", "mid", "zeta"]

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            "[]",
            '{"skills": {}}',
            '{"version": "one", "skills": []}',
            '{"skills": ["x"]}',
            '{"skills": [{"name": "a"}]}',
        ],
    )
    def test_corrupt_documents(self, registry, content):
        registry.path.parent.mkdir(parents=True, exist_ok=True)
        registry.path.write_text(content, encoding="utf-8")

        with pytest.raises(RegistryCorruptError):
            registry.load()

    def test_duplicate_names_are_corrupt(self, registry):
        rec = _record(registry, "dup").to_document()
        registry.path.parent.mkdir(parents=True, exist_ok=True)
        registry.path.write_text(json.dumps({"skills": [rec, rec]}), encoding="utf-8")

        with pytest.raises(RegistryCorruptError, match="duplicate"):
            registry.load()

    def test_unknown_fields_survive_rewrite(self, registry):
        rec = _record(registry, "keeper").to_document()
        rec["pinnedBy"] = "ops"
        registry.path.parent.mkdir(parents=True, exist_ok=True)
        registry.path.write_text(
            json.dumps({"version": 1, "assistant": "codex", "owner": "team-a", "skills": [rec]}),
            encoding="utf-8",
        )

        registry.insert(_record(registry, "other"))

        doc = json.loads(registry.path.read_text(encoding="utf-8"))
        assert doc["owner"] == "team-a"
        keeper = next(s for s in doc["skills"] if s["name"] == "keeper")
        assert keeper["pinnedBy"] == "ops"

    def test_upsert_keeps_unknown_fields(self, registry):
        rec = _record(registry, "keeper").to_document()
        rec["pinnedBy"] = "ops"
        registry.path.parent.mkdir(parents=True, exist_ok=True)
        registry.path.write_text(json.dumps({"skills": [rec]}), encoding="utf-8")

        registry.upsert(_record(registry, "keeper", description="new"))

        doc = json.loads(registry.path.read_text(encoding="utf-8"))
        assert doc["skills"][0]["pinnedBy"] == "ops"
        assert doc["skills"][0]["description"] == "new"

    def test_failed_transaction_does_not_write(self, registry):
        registry.insert(_record(registry, "one"))
        before = registry.path.read_text(encoding="utf-8")

        with pytest.raises(RuntimeError):
            with registry.transaction() as state:
                state.records.clear()
                raise RuntimeError("abort")

        assert registry.path.read_text(encoding="utf-8") == before


class TestMutations:
    def test_insert_duplicate_rejected(self, registry):
        registry.insert(_record(registry, "pdf-tools"))

        with pytest.raises(AlreadyExistsError):
            registry.insert(_record(registry, "pdf-tools"))

    def test_delete(self, registry):
        registry.insert(_record(registry, "gone"))

        removed = registry.delete("gone")

        assert removed.name == "gone"
        assert registry.get("gone") is None
        with pytest.raises(RegistryNotFoundError):
            registry.delete("gone")

    def test_increment_usage(self, registry):
        registry.insert(_record(registry, "used"))

        registry.increment_usage("used")
        updated = registry.increment_usage("used")

        assert updated.usage_count == 2
        assert updated.last_used_at is not None
        assert registry.require("used").usage_count == 2

    def test_increment_usage_unknown(self, registry):
        with pytest.raises(RegistryNotFoundError):
            registry.increment_usage("nope")

    def test_concurrent_increments_are_not_lost(self, config):
        setup = Registry(config, Assistant.CODEX)
        setup.insert(_record(setup, "busy"))
        errors = []

        def bump():
            try:
                for _ in range(5):
                    Registry(config, Assistant.CODEX).increment_usage("busy")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert Registry(config, Assistant.CODEX).require("busy").usage_count == 40

    def test_assistants_are_isolated(self, config):
        codex = Registry(config, Assistant.CODEX)
        opencode = Registry(config, Assistant.OPENCODE)

        codex.insert(_record(codex, "shared"))

        assert opencode.get("shared") is None
        opencode.insert(_record(opencode, "shared"))
        assert codex.require("shared").assistant == Assistant.CODEX


class TestQueries:
    def test_search_name_and_description(self, registry):
        registry.insert(_record(registry, "pdf-tools", description="Work with PDF files"))
        registry.insert(_record(registry, "csv-kit", description="Spreadsheet helpers"))

        assert [r.name for r in registry.search("PDF")] == ["pdf-tools"]
        assert [r.name for r in registry.search("spread")] == ["csv-kit"]
        assert [r.name for r in registry.search("")] == ["csv-kit", "pdf-tools"]
        assert registry.search("nothing") == []

    def test_search_content(self, registry):
        rec = _record(registry, "deep")
        (registry.install_path_for("deep") / "SKILL.md").write_text(
            "---\nname: deep\ndescription: x\n---\nMentions kubernetes.\n", encoding="utf-8"
        )
        registry.insert(rec)

        assert registry.search("kubernetes") == []
        assert [r.name for r in registry.search("kubernetes", include_content=True)] == ["deep"]

    def test_stats(self, registry):
        registry.insert(_record(registry, "a", size=100))
        registry.insert(_record(registry, "b", size=250))
        registry.increment_usage("a")

        stats = registry.stats()

        assert stats.count == 2
        assert stats.total_size_bytes == 350
        assert stats.total_usage == 1
        assert stats.usage == {"a": 1, "b": 0}
        assert stats.sizes == {"a": 100, "b": 250}

    def test_install_path_rejects_traversal(self, registry):
        with pytest.raises(ValueError):
            registry.install_path_for("../escape")


class TestReconcile:
    def test_drops_missing_and_reports_untracked(self, registry):
        registry.insert(_record(registry, "present"))
        registry.insert(_record(registry, "vanished", create_dir=False))
        (registry.skills_root / "stray").mkdir()
        (registry.skills_root / ".hidden").mkdir()

        report = registry.reconcile()

        assert report.dropped == ["vanished"]
        assert report.untracked == ["stray"]
        assert [r.name for r in registry.list()] == ["present"]
        assert (registry.skills_root / "stray").is_dir()

    def test_clean_registry_is_not_rewritten(self, registry):
        registry.insert(_record(registry, "present"))
        mtime = registry.path.stat().st_mtime_ns

        report = registry.reconcile()

        assert report.dropped == []
        assert registry.path.stat().st_mtime_ns == mtime
