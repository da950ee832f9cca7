"""
Tests for shell integration — snippets, aggregators, hooks, backups.
"""

import os
import stat
from pathlib import Path

import pytest

from labrat.core.errors import InvalidInput
from labrat.core.persistence.file_ops import AtomicFileStore
from labrat.core.persistence.locks import LockManager
from labrat.core.persistence.manifest import Manifest
from labrat.core.persistence.transaction import TransactionLog
from labrat.core.services.shell_integration import (
    HOOK_HEADER,
    HOOK_MARKER,
    ShellIntegrationRegistry,
    insert_hook,
    render_snippet,
    strip_hook,
)

BASHRC_WITH_GUARD = """\
# ~/.bashrc
case $- in
    *i*) ;;
      *) return;;
esac

alias ll='ls -l'
"""


@pytest.fixture
def registry(settings, store: AtomicFileStore, locks: LockManager, manifest: Manifest):
    return ShellIntegrationRegistry(settings, store, locks, manifest, environ={})


class TestRendering:
    def test_bash_snippet_guard(self):
        text = render_snippet("neovim", "bash", init="export EDITOR=nvim", description="editor", command="nvim")
        assert text.startswith("#!/usr/bin/env bash\n# LabRat module: neovim - editor\n")
        assert "Auto-generated" in text
        assert "if command -v nvim &>/dev/null; then\n    export EDITOR=nvim\nfi" in text

    def test_zsh_snippet_guard(self):
        text = render_snippet("zoxide", "zsh", init='eval "$(zoxide init zsh)"')
        assert "if (( $+commands[zoxide] )); then" in text

    def test_fish_snippet_guard(self):
        text = render_snippet("zoxide", "fish", init="zoxide init fish | source")
        assert "if command -q zoxide\n    zoxide init fish | source\nend" in text
        assert not text.startswith("#!")

    def test_functions_unguarded(self):
        text = render_snippet("fzf", "bash", functions="fcd() { cd \"$(fd -t d | fzf)\"; }")
        assert "# Helper functions\nfcd()" in text
        assert "# Initialization" not in text

    def test_unknown_shell(self):
        with pytest.raises(InvalidInput):
            render_snippet("x", "tcsh", init="x")

    def test_unsafe_command_rejected(self):
        with pytest.raises(InvalidInput):
            render_snippet("x", "bash", init="x", command="x; rm -rf ~")

    def test_bash_hook_after_esac(self):
        out = insert_hook("bash", BASHRC_WITH_GUARD, "HOOK")
        lines = out.splitlines()
        esac = lines.index("esac")
        assert lines[esac + 2] == HOOK_HEADER
        assert lines[esac + 3] == "HOOK"
        assert lines.index("alias ll='ls -l'") > esac + 3

    def test_hook_prepended_without_guard(self):
        out = insert_hook("zsh", "export A=1\n", "HOOK")
        assert out.splitlines()[:2] == [HOOK_HEADER, "HOOK"]
        assert out.endswith("export A=1\n")

    def test_strip_hook(self):
        content = insert_hook("zsh", "export A=1\n", f"source x  {HOOK_MARKER}")
        assert HOOK_MARKER not in strip_hook(content)
        assert "export A=1" in strip_hook(content)


class TestRegistration:
    def test_register_list_unregister(self, registry: ShellIntegrationRegistry):
        path = registry.register("tmux", "bash", init="alias t=tmux")
        assert path == registry.snippet_path("tmux", "bash")
        assert path.name == "tmux.sh"
        assert stat.S_IMODE(path.stat().st_mode) == 0o755
        registry.register("tmux", "zsh", functions="t() { tmux; }")
        registry.register("fzf", "fish", init="fzf --fish | source")

        assert registry.list_registered() == ["fzf", "tmux"]
        assert registry.shells_for("tmux") == ["bash", "zsh"]
        assert registry.is_registered("fzf")

        assert registry.unregister("tmux") == ["bash", "zsh"]
        assert registry.list_registered() == ["fzf"]
        assert registry.unregister("tmux") == []

    def test_empty_bodies_write_nothing(self, registry: ShellIntegrationRegistry):
        assert registry.register("tmux", "bash", init="  ", functions="") is None
        assert registry.list_registered() == []

    def test_invalid_module_name(self, registry: ShellIntegrationRegistry):
        with pytest.raises(InvalidInput):
            registry.register("../evil", "bash", init="x")

    def test_registration_rolls_back(self, settings, store, locks):
        tx = TransactionLog(store)
        reg = ShellIntegrationRegistry(settings, store, locks, transaction=tx, environ={})
        reg.register("tmux", "bash", init="old")
        before = reg.snippet_path("tmux", "bash").read_text()

        tx.begin("install:tmux")
        reg.register("tmux", "bash", init="new")
        reg.register("tmux", "zsh", init="new")
        tx.rollback()

        assert reg.snippet_path("tmux", "bash").read_text() == before
        assert not reg.snippet_path("tmux", "zsh").exists()


class TestMainConfigs:
    def test_aggregators_and_legacy_link(self, registry: ShellIntegrationRegistry):
        paths = registry.generate_all_main_configs()
        assert [p.name for p in paths] == ["bashrc.sh", "zshrc.sh", "config.fish"]

        bash = registry.main_config_path("bash").read_text()
        assert str(registry.snippets_dir("bash")) in bash
        assert "*.sh" in bash
        assert "*.zsh(N)" in registry.main_config_path("zsh").read_text()

        legacy = registry.config_dir / "shellrc.sh"
        assert legacy.is_symlink()
        assert Path(os.readlink(legacy)) == registry.main_config_path("bash")

    def test_regeneration_is_stable(self, registry: ShellIntegrationRegistry):
        registry.generate_all_main_configs()
        first = registry.main_config_path("zsh").read_text()
        registry.register("tmux", "zsh", init="x")
        registry.generate_all_main_configs()
        assert registry.main_config_path("zsh").read_text() == first


class TestHooks:
    def test_install_hook_idempotent(self, registry: ShellIntegrationRegistry):
        rc = registry.hook_rc_path("bash")
        rc.write_text(BASHRC_WITH_GUARD)
        rc.chmod(0o600)

        assert registry.install_hook("bash") is True
        assert registry.install_hook("bash") is False

        content = rc.read_text()
        assert content.count(HOOK_MARKER) == 1
        assert str(registry.main_config_path("bash")) in content
        assert stat.S_IMODE(rc.stat().st_mode) == 0o600
        assert registry.has_hook("bash")

    def test_install_creates_missing_rc(self, registry: ShellIntegrationRegistry):
        assert registry.install_hook("zsh") is True
        assert registry.hook_rc_path("zsh").is_file()

    def test_fish_rc_location(self, registry: ShellIntegrationRegistry, settings):
        assert registry.hook_rc_path("fish") == settings.home / ".config" / "fish" / "config.fish"
        registry.install_hook("fish")
        assert 'source "' in registry.hook_rc_path("fish").read_text()

    def test_remove_hook(self, registry: ShellIntegrationRegistry):
        rc = registry.hook_rc_path("bash")
        rc.write_text(BASHRC_WITH_GUARD)
        registry.install_hook("bash")

        assert registry.remove_hook("bash") is True
        assert registry.remove_hook("bash") is False
        assert HOOK_MARKER not in rc.read_text()
        assert "alias ll='ls -l'" in rc.read_text()

    def test_non_utf8_rc_round_trips(self, registry: ShellIntegrationRegistry):
        rc = registry.hook_rc_path("bash")
        original = b"# caf\xe9 alias\nalias ll='ls -l'\n"
        rc.write_bytes(original)

        assert registry.install_hook("bash") is True
        assert registry.has_hook("bash")
        assert b"# caf\xe9 alias\n" in rc.read_bytes()

        assert registry.remove_hook("bash") is True
        assert original in rc.read_bytes()
        assert HOOK_MARKER.encode() not in rc.read_bytes()

    def test_remove_hook_missing_rc(self, registry: ShellIntegrationRegistry):
        assert registry.remove_hook("zsh") is False


class TestSetupTeardown:
    def test_setup_records_in_manifest(self, registry: ShellIntegrationRegistry, manifest: Manifest):
        rc = registry.hook_rc_path("bash")
        rc.write_text(BASHRC_WITH_GUARD)

        result = registry.setup()

        assert result["hooks_added"] == ["bash"]
        assert result["original_backups"] == ["bashrc"]
        assert (registry.original_backups_dir / "bashrc").read_text() == BASHRC_WITH_GUARD
        state = manifest.load().shell_integration
        assert state.hooks_installed == ["bash"]
        assert state.original_backups is True

    def test_setup_explicit_shells(self, registry: ShellIntegrationRegistry):
        result = registry.setup(["zsh"])
        assert result["hooks_present"] == ["zsh"]

    def test_original_backup_never_overwritten(self, registry: ShellIntegrationRegistry):
        rc = registry.hook_rc_path("bash")
        rc.write_text("first\n")
        registry.setup()
        rc.write_text("second\n")
        registry.setup()
        assert (registry.original_backups_dir / "bashrc").read_text() == "first\n"

    def test_teardown(self, registry: ShellIntegrationRegistry, manifest: Manifest):
        registry.hook_rc_path("bash").write_text(BASHRC_WITH_GUARD)
        registry.setup()
        registry.register("tmux", "bash", init="x")

        result = registry.teardown()

        assert result["hooks_removed"] == ["bash"]
        assert registry.list_registered() == []
        assert not registry.main_config_path("bash").exists()
        assert not (registry.config_dir / "shellrc.sh").is_symlink()
        assert manifest.load().shell_integration.hooks_installed == []

    def test_restore_to_original(self, registry: ShellIntegrationRegistry):
        rc = registry.hook_rc_path("bash")
        rc.write_text(BASHRC_WITH_GUARD)
        registry.setup()
        rc.write_text(rc.read_text() + "alias extra=1\n")

        result = registry.restore_to_original()

        assert result["restored"] == ["bashrc"]
        assert rc.read_text() == BASHRC_WITH_GUARD

    def test_status(self, registry: ShellIntegrationRegistry):
        registry.hook_rc_path("bash").write_text("")
        registry.setup(["bash"])
        registry.register("tmux", "zsh", init="x")

        status = registry.status()

        assert status["config_dir_exists"] is True
        assert status["hooks"] == {"bash": "installed", "zsh": "missing", "fish": "missing"}
        assert status["modules"] == {"tmux": ["zsh"]}
        assert status["main_configs"]["fish"] is True

    def test_detect_shells(self, settings, store, locks):
        reg = ShellIntegrationRegistry(settings, store, locks, environ={"SHELL": "/usr/bin/zsh"})
        assert reg.detect_shells() == ["zsh"]
        reg.hook_rc_path("bash").write_text("")
        assert reg.detect_shells() == ["bash", "zsh"]
