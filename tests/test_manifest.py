"""
Tests for the manifest — upsert/remove, export, markers, locking.
"""

import json
import stat
from pathlib import Path

import pytest

from labrat.core.errors import GeneralError, InvalidInput, LockFailed
from labrat.core.persistence.locks import LockManager
from labrat.core.persistence.manifest import Manifest


class TestBasics:
    def test_empty_manifest(self, manifest: Manifest):
        assert not manifest.exists()
        assert manifest.list_modules() == []
        assert manifest.export() == {}
        assert manifest.has_module("tmux") is False
        assert manifest.get_version("tmux") is None

    def test_upsert_export_remove(self, manifest: Manifest):
        manifest.upsert_module("tmux", "3.5a", False)
        exported = manifest.export()
        assert exported["modules"]["tmux"]["version"] == "3.5a"
        assert exported["modules"]["tmux"]["shell_integration"] is False

        assert manifest.remove_module("tmux") is True
        assert manifest.has_module("tmux") is False
        assert manifest.remove_module("tmux") is False

    def test_document_schema(self, manifest: Manifest):
        manifest.upsert_module("fzf", "0.54.0", True)
        data = json.loads(manifest.path.read_text())
        assert set(data) == {
            "version", "created_at", "updated_at", "labrat_version", "modules", "shell_integration",
        }
        assert set(data["modules"]["fzf"]) == {
            "version", "installed_at", "updated_at", "shell_integration",
        }
        assert data["shell_integration"]["hooks_installed"] == []
        assert data["shell_integration"]["original_backups"] is False

    def test_file_mode(self, manifest: Manifest):
        manifest.upsert_module("fzf", "1")
        assert stat.S_IMODE(manifest.path.stat().st_mode) == 0o644

    def test_upsert_is_idempotent(self, manifest: Manifest):
        manifest.upsert_module("bat", "0.24", False)
        first = manifest.get_entry("bat")
        manifest.upsert_module("bat", "0.24", False)
        second = manifest.get_entry("bat")

        assert manifest.list_modules() == ["bat"]
        assert manifest.get_version("bat") == "0.24"
        assert second.installed_at == first.installed_at
        assert second.updated_at == first.updated_at

    def test_update_keeps_installed_at(self, manifest: Manifest):
        manifest.upsert_module("bat", "0.24")
        installed_at = manifest.get_entry("bat").installed_at
        manifest.upsert_module("bat", "0.25")
        entry = manifest.get_entry("bat")
        assert entry.version == "0.25"
        assert entry.installed_at == installed_at

    def test_empty_version_becomes_unknown(self, manifest: Manifest):
        manifest.upsert_module("eza", "")
        assert manifest.get_version("eza") == "unknown"

    @pytest.mark.parametrize("name", ["", "a/b", ".hidden"])
    def test_invalid_names(self, manifest: Manifest, name: str):
        with pytest.raises(InvalidInput):
            manifest.upsert_module(name, "1")

    def test_list_is_sorted(self, manifest: Manifest):
        for name in ("zsh", "atuin", "mosh"):
            manifest.upsert_module(name, "1")
        assert manifest.list_modules() == ["atuin", "mosh", "zsh"]


class TestVerifyAndShow:
    def test_verify_missing(self, manifest: Manifest):
        assert manifest.verify() is False

    def test_verify_valid(self, manifest: Manifest):
        manifest.init()
        assert manifest.verify() is True

    def test_verify_corrupt(self, manifest: Manifest):
        manifest.path.parent.mkdir(parents=True)
        manifest.path.write_text("{not json")
        assert manifest.verify() is False
        with pytest.raises(GeneralError):
            manifest.load()

    def test_verify_invalid_utf8(self, manifest: Manifest):
        manifest.path.parent.mkdir(parents=True)
        manifest.path.write_bytes(b'{"version": "1.0", "x": "\xff"}')
        assert manifest.verify() is False
        with pytest.raises(GeneralError, match="UTF-8"):
            manifest.export()
        with pytest.raises(GeneralError):
            manifest.upsert_module("base", "1.0")

    def test_verify_schema_violation(self, manifest: Manifest):
        manifest.path.parent.mkdir(parents=True)
        manifest.path.write_text(json.dumps({"modules": {"x": {"version": ["not", "a", "string"]}}}))
        assert manifest.verify() is False

    def test_show(self, manifest: Manifest):
        assert manifest.show()["exists"] is False
        manifest.upsert_module("tmux", "3.5a", True)
        summary = manifest.show()
        assert summary["exists"] is True
        assert summary["module_count"] == 1
        assert summary["modules"][0]["name"] == "tmux"
        assert summary["modules"][0]["shell_integration"] is True

    def test_clear(self, manifest: Manifest):
        manifest.upsert_module("tmux", "1")
        manifest.clear()
        assert not manifest.exists()
        # Markers survive a clear
        assert manifest.marker_version("tmux") == "1"


class TestShellState:
    def test_hooks_deduped(self, manifest: Manifest):
        assert manifest.set_hooks_installed(["bash", "zsh", "bash"]) == ["bash", "zsh"]
        assert manifest.load().shell_integration.hooks_installed == ["bash", "zsh"]

    def test_unknown_shell(self, manifest: Manifest):
        with pytest.raises(InvalidInput):
            manifest.set_hooks_installed(["tcsh"])

    def test_backups_done(self, manifest: Manifest):
        manifest.set_backups_done()
        state = manifest.load().shell_integration
        assert state.original_backups is True
        assert state.backup_date


class TestMarkers:
    def test_markers_written_through(self, manifest: Manifest):
        manifest.upsert_module("tmux", "3.5a")
        assert (manifest.markers_dir / "tmux").read_text().strip() == "3.5a"
        manifest.remove_module("tmux")
        assert not (manifest.markers_dir / "tmux").exists()

    def test_legacy_markers_imported_once(self, manifest: Manifest):
        manifest.markers_dir.mkdir(parents=True)
        (manifest.markers_dir / "htop").write_text("3.3.0\n")
        (manifest.markers_dir / "bat").write_text("")

        manifest.init()

        assert manifest.list_modules() == ["bat", "htop"]
        assert manifest.get_version("htop") == "3.3.0"
        assert manifest.get_version("bat") == "unknown"

        # A marker appearing later is not read back as truth
        (manifest.markers_dir / "ghost").write_text("1\n")
        assert not manifest.has_module("ghost")

    def test_check_and_sync(self, manifest: Manifest):
        manifest.upsert_module("tmux", "3.5a")
        manifest.upsert_module("fzf", "0.54")
        (manifest.markers_dir / "fzf").write_text("0.1\n")
        (manifest.markers_dir / "tmux").unlink()
        (manifest.markers_dir / "orphan").write_text("1\n")

        drift = manifest.check_markers()
        assert drift == {"missing": ["tmux"], "orphaned": ["orphan"], "mismatched": ["fzf"]}

        manifest.sync_markers()
        assert manifest.check_markers() == {"missing": [], "orphaned": [], "mismatched": []}
        assert manifest.marker_version("fzf") == "0.54"
        assert not (manifest.markers_dir / "orphan").exists()

    def test_sync_without_manifest_keeps_markers(self, manifest: Manifest):
        manifest.markers_dir.mkdir(parents=True)
        (manifest.markers_dir / "htop").write_text("3.3.0\n")
        manifest.sync_markers()
        assert manifest.exists()
        assert manifest.marker_version("htop") == "3.3.0"
        assert manifest.has_module("htop")


class TestLocking:
    def test_mutation_times_out_when_lock_held(self, settings, store, tmp_path: Path):
        holder = LockManager()
        m = Manifest(
            path=settings.manifest_path,
            lock_path=settings.lock_path,
            markers_dir=settings.markers_dir,
            store=store,
            locks=LockManager(poll_interval=0.01),
            lock_timeout=0.1,
        )
        with holder.locked(settings.lock_path):
            with pytest.raises(LockFailed):
                m.upsert_module("tmux", "1")
        assert not m.exists()

        m.upsert_module("tmux", "1")
        assert m.has_module("tmux")

    def test_two_managers_do_not_lose_updates(self, settings, store):
        a = Manifest.from_settings(settings, store, LockManager())
        b = Manifest.from_settings(settings, store, LockManager())
        a.upsert_module("one", "1")
        b.upsert_module("two", "2")
        a.upsert_module("three", "3")
        assert a.list_modules() == ["one", "three", "two"]
