"""
Shell integration — per-module snippets, aggregator configs, rc hooks.

Layout under ``<config_dir>/labrat``::

    bashrc.sh  zshrc.sh  config.fish     aggregators, sourced by rc files
    shellrc.sh -> bashrc.sh              legacy name
    modules/bash/<module>.sh
    modules/zsh/<module>.zsh
    modules/fish/<module>.fish

The snippet directories *are* the registry: an aggregator globs its
directory each time a shell starts, so registering or unregistering a
module never touches the aggregator, and "which modules are registered"
is simply "which files exist".  No install date or other metadata is
kept here; the manifest holds that.

User rc files (``~/.bashrc``, ``~/.zshrc``, fish ``config.fish``) are
shared with everything else on the machine, so hook edits go through
the global lock and an atomic rewrite.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Any, Mapping

from labrat.core.config.loader import Settings
from labrat.core.errors import InvalidInput, from_os_error
from labrat.core.models.manifest import SHELL_KINDS
from labrat.core.models.module import COMMAND_PATTERN
from labrat.core.models.receipt import ShellSnippetSpec
from labrat.core.persistence.file_ops import (
    PERM_CONFIG_FILE,
    PERM_SCRIPT,
    AtomicFileStore,
)
from labrat.core.persistence.locks import LockManager
from labrat.core.persistence.manifest import Manifest
from labrat.core.persistence.transaction import TransactionLog

logger = logging.getLogger(__name__)

HOOK_MARKER = "# LabRat shell integration"
HOOK_HEADER = "# LabRat: Load shell configuration"

_SNIPPET_EXT = {"bash": "sh", "zsh": "zsh", "fish": "fish"}
_MAIN_CONFIG = {"bash": "bashrc.sh", "zsh": "zshrc.sh", "fish": "config.fish"}
LEGACY_MAIN_CONFIG = "shellrc.sh"

# rc files are user-owned and may hold non-UTF-8 bytes; they must round-trip unchanged.
RC_ERRORS = "surrogateescape"

# Backup name -> path relative to $HOME
RC_FILES: dict[str, str] = {
    "bashrc": ".bashrc",
    "zshrc": ".zshrc",
    "profile": ".profile",
    "bash_profile": ".bash_profile",
    "config.fish": ".config/fish/config.fish",
}
_HOOK_RC = {"bash": "bashrc", "zsh": "zshrc", "fish": "config.fish"}


def _check_shell(shell: str) -> str:
    if shell not in SHELL_KINDS:
        raise InvalidInput(f"Unknown shell type: {shell}")
    return shell


# ── Content rendering ───────────────────────────────────────────


def render_snippet(
    module: str,
    shell: str,
    init: str = "",
    functions: str = "",
    description: str = "",
    command: str | None = None,
) -> str:
    """Snippet file content for one (module, shell) pair.

    The init block only runs when ``command`` (default: the module name)
    is on ``PATH``, so a snippet left behind by a removed tool is inert.
    """
    _check_shell(shell)
    binary = command or module
    if not COMMAND_PATTERN.fullmatch(binary):
        raise InvalidInput(f"Unsafe command name for shell guard: {binary!r}")
    header = f"LabRat module: {module}"
    if description:
        header += f" - {description}"

    lines: list[str] = []
    if shell == "bash":
        lines.append("#!/usr/bin/env bash")
    elif shell == "zsh":
        lines.append("#!/usr/bin/env zsh")
    lines += [f"# {header}", "# Auto-generated - do not edit directly", ""]

    if init.strip():
        lines.append("# Initialization")
        if shell == "bash":
            lines.append(f"if command -v {binary} &>/dev/null; then")
        elif shell == "zsh":
            lines.append(f"if (( $+commands[{binary}] )); then")
        else:
            lines.append(f"if command -q {binary}")
        lines += [f"    {line}" if line else "" for line in init.strip("\n").splitlines()]
        lines += ["end" if shell == "fish" else "fi", ""]

    if functions.strip():
        lines.append("# Helper functions")
        lines += functions.strip("\n").splitlines()

    return "\n".join(lines).rstrip("\n") + "\n"


def render_main_config(shell: str, snippets_dir: Path) -> str:
    """Aggregator content.  The glob runs at shell startup."""
    _check_shell(shell)
    if shell == "fish":
        return (
            "#\n"
            "# LabRat Shell Configuration (Fish)\n"
            "# Auto-generated by LabRat installer - do not edit directly\n"
            "#\n"
            "\n"
            "if test -d \"$HOME/.local/bin\"\n"
            "    if not contains \"$HOME/.local/bin\" $PATH\n"
            "        set -gx PATH \"$HOME/.local/bin\" $PATH\n"
            "    end\n"
            "end\n"
            "\n"
            f"set -l labrat_fish_modules \"{snippets_dir}\"\n"
            "if test -d \"$labrat_fish_modules\"\n"
            "    for module_file in $labrat_fish_modules/*.fish\n"
            "        if test -f \"$module_file\"\n"
            "            source \"$module_file\"\n"
            "        end\n"
            "    end\n"
            "end\n"
        )

    title = "Bash" if shell == "bash" else "Zsh"
    var = f"LABRAT_{shell.upper()}_MODULES"
    glob = f'"${var}"/*.sh' if shell == "bash" else f'"${var}"/*.zsh(N)'
    return (
        f"#!/usr/bin/env {shell}\n"
        "#\n"
        f"# LabRat Shell Configuration ({title})\n"
        "# Auto-generated by LabRat installer - do not edit directly\n"
        "#\n"
        "\n"
        "if [[ -d \"$HOME/.local/bin\" ]] && [[ \":$PATH:\" != *\":$HOME/.local/bin:\"* ]]; then\n"
        "    export PATH=\"$HOME/.local/bin:$PATH\"\n"
        "fi\n"
        "\n"
        f"{var}=\"{snippets_dir}\"\n"
        f"if [[ -d \"${var}\" ]]; then\n"
        f"    for module_file in {glob}; do\n"
        "        if [[ -f \"$module_file\" ]]; then\n"
        "            source \"$module_file\"\n"
        "        fi\n"
        "    done\n"
        "    unset module_file\n"
        "fi\n"
        f"unset {var}\n"
    )


def hook_line(shell: str, main_config: Path) -> str:
    if shell == "fish":
        return f'source "{main_config}"  {HOOK_MARKER}'
    return f'[[ -f "{main_config}" ]] && source "{main_config}"  {HOOK_MARKER}'


def insert_hook(shell: str, content: str, line: str) -> str:
    """Return ``content`` with the hook block added.

    Bash gets the block right after the first ``esac`` (the end of the
    usual interactive-shell guard) when there is one; otherwise, and for
    zsh and fish, it is prepended.
    """
    block = [HOOK_HEADER, line]
    lines = content.splitlines()

    if shell == "bash":
        for i, existing in enumerate(lines):
            if existing.strip() == "esac":
                new = lines[: i + 1] + [""] + block + [""] + lines[i + 1:]
                return "\n".join(new) + "\n"

    new = block + [""] + lines
    return "\n".join(new).rstrip("\n") + "\n"


def strip_hook(content: str) -> str:
    kept = [
        line for line in content.splitlines()
        if HOOK_MARKER not in line and HOOK_HEADER not in line
    ]
    return "\n".join(kept) + "\n" if kept else ""


def _encode_rc(content: str) -> bytes:
    return content.encode("utf-8", errors=RC_ERRORS)


# ── Registry ────────────────────────────────────────────────────


class ShellIntegrationRegistry:
    """Manage snippet files, aggregators, hooks and rc backups.

    Args:
        settings: Resolved paths.
        store: File store for every write.
        locks: Lock manager; rc-file edits use ``settings.lock_path``.
        manifest: Optional; ``setup``/``teardown`` record hook state in it.
        transaction: Optional; snippet writes are recorded in it so a
            failed install can roll them back.
    """

    def __init__(
        self,
        settings: Settings,
        store: AtomicFileStore,
        locks: LockManager,
        manifest: Manifest | None = None,
        transaction: TransactionLog | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self._settings = settings
        self._store = store
        self._locks = locks
        self._manifest = manifest
        self._tx = transaction
        self._environ = os.environ if environ is None else environ

    # ── Paths ───────────────────────────────────────────────────

    @property
    def config_dir(self) -> Path:
        return self._settings.shell_config_dir

    @property
    def snippets_root(self) -> Path:
        return self.config_dir / "modules"

    def snippets_dir(self, shell: str) -> Path:
        return self.snippets_root / _check_shell(shell)

    def snippet_path(self, module: str, shell: str) -> Path:
        return self.snippets_dir(shell) / f"{module}.{_SNIPPET_EXT[shell]}"

    def main_config_path(self, shell: str) -> Path:
        return self.config_dir / _MAIN_CONFIG[_check_shell(shell)]

    def rc_path(self, name: str) -> Path:
        return self._settings.home / RC_FILES[name]

    def hook_rc_path(self, shell: str) -> Path:
        return self.rc_path(_HOOK_RC[_check_shell(shell)])

    @property
    def original_backups_dir(self) -> Path:
        return self._settings.shell_backups_dir / "original"

    @property
    def current_backups_dir(self) -> Path:
        return self._settings.shell_backups_dir / "current"

    def ensure_dirs(self) -> None:
        self._store.ensure_dir(self.config_dir)
        for shell in SHELL_KINDS:
            self._store.ensure_dir(self.snippets_dir(shell))
        self._store.ensure_private_dir(self._settings.shell_backups_dir)
        self._store.ensure_private_dir(self.original_backups_dir)
        self._store.ensure_private_dir(self.current_backups_dir)

    # ── Snippet registration ────────────────────────────────────

    def register(
        self,
        module: str,
        shell: str,
        init: str = "",
        functions: str = "",
        description: str = "",
        command: str | None = None,
    ) -> Path | None:
        """Write the snippet for one shell.  Returns ``None`` when both bodies are empty."""
        _validate_module(module)
        _check_shell(shell)
        if not init.strip() and not functions.strip():
            return None

        path = self.snippet_path(module, shell)
        self._store.ensure_dir(path.parent)
        if self._tx is not None:
            self._tx.record("file", path, original=path)
        content = render_snippet(module, shell, init, functions, description, command)
        self._store.atomic_write(path, content, PERM_SCRIPT)
        logger.debug("Created %s module snippet: %s", shell, path)
        return path

    def register_all(
        self,
        module: str,
        snippets: Mapping[str, ShellSnippetSpec],
        description: str = "",
        command: str | None = None,
    ) -> list[str]:
        """Register every non-empty snippet; returns the shells written."""
        written = []
        for shell, snippet in snippets.items():
            if self.register(module, shell, snippet.init, snippet.functions, description, command):
                written.append(shell)
        if written:
            logger.info("Registered shell module: %s (%s)", module, ", ".join(written))
        return written

    def unregister(self, module: str) -> list[str]:
        """Delete the module's snippets.  Returns the shells that had one."""
        _validate_module(module)
        removed = []
        for shell in SHELL_KINDS:
            path = self.snippet_path(module, shell)
            if not path.is_file():
                continue
            try:
                path.unlink()
            except OSError as e:
                raise from_os_error(e, f"Cannot remove snippet {path}", str(path)) from e
            removed.append(shell)

        if removed:
            logger.info("Unregistered shell module: %s", module)
        else:
            logger.debug("No shell integration found for module: %s", module)
        return removed

    def list_registered(self) -> list[str]:
        modules: set[str] = set()
        for shell in SHELL_KINDS:
            directory = self.snippets_dir(shell)
            if not directory.is_dir():
                continue
            suffix = "." + _SNIPPET_EXT[shell]
            modules.update(
                p.name[: -len(suffix)] for p in directory.iterdir()
                if p.is_file() and p.name.endswith(suffix)
            )
        return sorted(modules)

    def shells_for(self, module: str) -> list[str]:
        return [s for s in SHELL_KINDS if self.snippet_path(module, s).is_file()]

    def is_registered(self, module: str) -> bool:
        return bool(self.shells_for(module))

    # ── Aggregators ─────────────────────────────────────────────

    def generate_main_config(self, shell: str) -> Path:
        path = self.main_config_path(shell)
        self._store.ensure_dir(self.snippets_dir(shell))
        self._store.atomic_write(path, render_main_config(shell, self.snippets_dir(shell)), PERM_SCRIPT)
        logger.debug("Generated %s main config: %s", shell, path)
        return path

    def generate_all_main_configs(self) -> list[Path]:
        paths = [self.generate_main_config(shell) for shell in SHELL_KINDS]
        legacy = self.config_dir / LEGACY_MAIN_CONFIG
        bash_main = self.main_config_path("bash")
        if legacy.is_symlink() and Path(os.readlink(legacy)) != bash_main:
            legacy.unlink()
        if not legacy.exists() and not legacy.is_symlink():
            self._store.safe_symlink(bash_main, legacy)
        return paths

    # ── Hooks ───────────────────────────────────────────────────

    def has_hook(self, shell: str) -> bool:
        rc = self.hook_rc_path(shell)
        if not rc.is_file():
            return False
        return HOOK_MARKER in self._read_rc(rc)[0]

    def install_hook(self, shell: str) -> bool:
        """Add the source line to the shell's rc file.  Returns False if already present."""
        rc = self.hook_rc_path(shell)
        line = hook_line(shell, self.main_config_path(shell))

        with self._locks.locked(self._settings.lock_path, self._settings.lock_timeout):
            content, mode = self._read_rc(rc)
            if HOOK_MARKER in content:
                logger.debug("LabRat hook already present in %s", rc)
                return False
            if not rc.exists():
                logger.info("Created %s", rc)
            self._store.atomic_write(rc, _encode_rc(insert_hook(shell, content, line)), mode)

        logger.info("Installed LabRat hook in %s", rc)
        return True

    def remove_hook(self, shell: str) -> bool:
        """Drop hook lines from the rc file.  Returns whether anything changed."""
        rc = self.hook_rc_path(shell)
        with self._locks.locked(self._settings.lock_path, self._settings.lock_timeout):
            if not rc.is_file():
                return False
            content, mode = self._read_rc(rc)
            if HOOK_MARKER not in content and HOOK_HEADER not in content:
                return False
            self._store.atomic_write(rc, _encode_rc(strip_hook(content)), mode)

        logger.info("Removed LabRat hook from %s", rc)
        return True

    def _read_rc(self, rc: Path) -> tuple[str, int]:
        if not rc.exists():
            return "", PERM_CONFIG_FILE
        try:
            return rc.read_text(encoding="utf-8", errors=RC_ERRORS), stat.S_IMODE(rc.stat().st_mode)
        except OSError as e:
            raise from_os_error(e, f"Cannot read {rc}", str(rc)) from e

    # ── Backups ─────────────────────────────────────────────────

    def backup_original_configs(self) -> list[str]:
        """Copy each rc file once.  Existing original backups are never replaced."""
        self._store.ensure_private_dir(self.original_backups_dir)
        saved = []
        for name in RC_FILES:
            source = self.rc_path(name)
            target = self.original_backups_dir / name
            if source.is_file() and not target.exists():
                self._store.safe_copy(source, target)
                saved.append(name)
                logger.debug("Backed up original %s", source)
        if saved:
            logger.info("Backed up %d original shell config(s) to %s", len(saved), self.original_backups_dir)
        return saved

    def backup_current_configs(self) -> list[str]:
        """Snapshot each rc file, replacing the previous snapshot."""
        self._store.ensure_private_dir(self.current_backups_dir)
        saved = []
        for name in RC_FILES:
            source = self.rc_path(name)
            if source.is_file():
                self._store.safe_copy(source, self.current_backups_dir / name)
                saved.append(name)
        logger.debug("Current shell configs backed up to %s", self.current_backups_dir)
        return saved

    def restore_original_configs(self) -> list[str]:
        restored = []
        with self._locks.locked(self._settings.lock_path, self._settings.lock_timeout):
            for name in RC_FILES:
                backup = self.original_backups_dir / name
                if not backup.is_file():
                    continue
                self._store.restore_backup(backup, self.rc_path(name))
                restored.append(name)
                logger.info("Restored original %s", self.rc_path(name))
        if not restored:
            logger.warning("No original backups found to restore")
        return restored

    # ── Setup / teardown ────────────────────────────────────────

    def detect_shells(self) -> list[str]:
        """Shells whose rc file exists (or which ``$SHELL`` names).

        Fish additionally needs the binary and an existing config.fish.
        """
        login_shell = self._environ.get("SHELL", "")
        shells = []
        if self.rc_path("bashrc").is_file() or "bash" in login_shell:
            shells.append("bash")
        if self.rc_path("zshrc").is_file() or "zsh" in login_shell:
            shells.append("zsh")
        if shutil.which("fish") and self.rc_path("config.fish").is_file():
            shells.append("fish")
        return shells

    def setup(self, shells: list[str] | None = None) -> dict[str, Any]:
        """Dirs, one-time backups, aggregators and hooks.

        Hooked shells and the backup flag are recorded in the manifest
        when one was supplied.
        """
        self.ensure_dirs()
        originals = self.backup_original_configs()
        self.generate_all_main_configs()

        targets = [_check_shell(s) for s in shells] if shells is not None else self.detect_shells()
        installed = [s for s in targets if self.install_hook(s)]
        self.backup_current_configs()

        hooked = [s for s in SHELL_KINDS if self.has_hook(s)]
        if self._manifest is not None:
            self._manifest.set_hooks_installed(hooked)
            if originals or any(self.original_backups_dir.iterdir()):
                doc = self._manifest.load()
                if not doc.shell_integration.original_backups:
                    self._manifest.set_backups_done()

        logger.info("Shell integration configured: %s", self.config_dir)
        return {
            "config_dir": str(self.config_dir),
            "hooks_added": installed,
            "hooks_present": hooked,
            "original_backups": originals,
        }

    def teardown(self) -> dict[str, Any]:
        """Remove hooks, every snippet and the aggregators."""
        removed_hooks = [s for s in SHELL_KINDS if self.remove_hook(s)]

        if self.snippets_root.exists():
            try:
                shutil.rmtree(self.snippets_root)
            except OSError as e:
                raise from_os_error(e, "Cannot remove snippet directory", str(self.snippets_root)) from e

        for path in [self.main_config_path(s) for s in SHELL_KINDS] + [self.config_dir / LEGACY_MAIN_CONFIG]:
            if path.exists() or path.is_symlink():
                path.unlink()

        if self._manifest is not None:
            self._manifest.set_hooks_installed([])

        logger.info("Shell integration removed")
        return {"hooks_removed": removed_hooks}

    def restore_to_original(self) -> dict[str, Any]:
        """Teardown, then put the original rc files back."""
        result = self.teardown()
        result["restored"] = self.restore_original_configs()
        return result

    def status(self) -> dict[str, Any]:
        def _non_empty(directory: Path) -> bool:
            return directory.is_dir() and any(directory.iterdir())

        hooks: dict[str, str] = {}
        for shell in SHELL_KINDS:
            rc = self.hook_rc_path(shell)
            if not rc.is_file():
                hooks[shell] = "missing"
            else:
                hooks[shell] = "installed" if self.has_hook(shell) else "absent"

        return {
            "config_dir": str(self.config_dir),
            "config_dir_exists": self.config_dir.is_dir(),
            "main_configs": {s: self.main_config_path(s).is_file() for s in SHELL_KINDS},
            "hooks": hooks,
            "modules": {m: self.shells_for(m) for m in self.list_registered()},
            "backups": {
                "original": _non_empty(self.original_backups_dir),
                "current": _non_empty(self.current_backups_dir),
            },
        }


def _validate_module(module: str) -> None:
    if not module or "/" in module or module.startswith("."):
        raise InvalidInput(f"Invalid module name: {module!r}")

