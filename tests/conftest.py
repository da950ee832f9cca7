"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from labrat.core.config.loader import Settings
from labrat.core.models.module import ModuleSpec
from labrat.core.persistence.file_ops import AtomicFileStore
from labrat.core.persistence.locks import LockManager
from labrat.core.persistence.manifest import Manifest
from labrat.core.services.dependencies import DependencyGraph


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted at a throwaway home directory."""
    home = tmp_path / "home"
    home.mkdir()
    return Settings.for_home(home, lock_timeout=1.0)


@pytest.fixture
def store(settings: Settings) -> AtomicFileStore:
    return AtomicFileStore(settings.backups_dir, temp_dir=settings.cache_dir)


@pytest.fixture
def locks() -> LockManager:
    return LockManager(default_timeout=1.0, poll_interval=0.01)


@pytest.fixture
def manifest(settings: Settings, store: AtomicFileStore, locks: LockManager) -> Manifest:
    return Manifest.from_settings(settings, store, locks)


@pytest.fixture
def graph() -> DependencyGraph:
    """A small catalog with one dependency chain and one conflict."""
    return DependencyGraph({
        "base": ModuleSpec(name="base", category="utils"),
        "lib": ModuleSpec(name="lib", category="utils", requires=["base"]),
        "app": ModuleSpec(name="app", category="utils", requires=["lib"], recommends=["extra"]),
        "extra": ModuleSpec(name="extra", category="utils"),
        "vim": ModuleSpec(name="vim", category="editors", conflicts=["emacs"]),
        "emacs": ModuleSpec(name="emacs", category="editors"),
        "shelly": ModuleSpec(name="shelly", category="shell", command="shy"),
    })


@pytest.fixture
def cli_env(tmp_path: Path) -> dict[str, str]:
    """Environment for CliRunner so the CLI never touches the real home."""
    home = tmp_path / "clihome"
    home.mkdir()
    return {
        "HOME": str(home),
        "LABRAT_CONFIG_DIR": str(home / ".config"),
        "LABRAT_DATA_DIR": str(home / ".local" / "share" / "labrat"),
        "LABRAT_CACHE_DIR": str(home / ".cache" / "labrat"),
        "LABRAT_LOG_LEVEL": "",
        "LABRAT_LOG_FILE": "",
        "SHELL": "/bin/bash",
    }
