"""
Tests for settings resolution — defaults, environment, settings.yml.
"""

import textwrap
from pathlib import Path

import pytest

from labrat.core.config.loader import Settings, load_settings
from labrat.core.errors import ConfigError


class TestDefaults:
    def test_for_home(self, tmp_path: Path):
        s = Settings.for_home(tmp_path)
        assert s.config_dir == tmp_path / ".config"
        assert s.data_dir == tmp_path / ".local" / "share" / "labrat"
        assert s.cache_dir == tmp_path / ".cache" / "labrat"
        assert s.modules_dir == s.data_dir / "modules"
        assert s.lock_timeout == 10.0

    def test_derived_paths_follow_data_dir(self, tmp_path: Path):
        s = Settings.for_home(tmp_path, data_dir=tmp_path / "d")
        assert s.manifest_path == tmp_path / "d" / "manifest.json"
        assert s.lock_path == tmp_path / "d" / "labrat.lock"
        assert s.markers_dir == tmp_path / "d" / "installed"
        assert s.backups_dir == tmp_path / "d" / "backups"
        assert s.audit_path == tmp_path / "d" / "audit.ndjson"

    def test_shell_config_dir(self, tmp_path: Path):
        s = Settings.for_home(tmp_path)
        assert s.shell_config_dir == tmp_path / ".config" / "labrat"
        assert s.catalog_path == s.shell_config_dir / "catalog.yml"

    def test_invalid_value(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            Settings.for_home(tmp_path, lock_timeout=-1)


class TestLoadSettings:
    def test_env_overrides(self, tmp_path: Path):
        env = {
            "HOME": str(tmp_path),
            "LABRAT_DATA_DIR": str(tmp_path / "data"),
            "LABRAT_LOCK_TIMEOUT": "2.5",
        }
        s = load_settings(env=env)
        assert s.home == tmp_path
        assert s.data_dir == tmp_path / "data"
        assert s.lock_timeout == 2.5

    def test_settings_file(self, tmp_path: Path):
        cfg = tmp_path / ".config" / "labrat"
        cfg.mkdir(parents=True)
        (cfg / "settings.yml").write_text(textwrap.dedent("""\
            lock_timeout: 3
            backup_retention_days: 14
            cache_dir: /var/tmp/labrat-cache
        """))
        s = load_settings(env={"HOME": str(tmp_path)})
        assert s.lock_timeout == 3.0
        assert s.backup_retention_days == 14
        assert s.cache_dir == Path("/var/tmp/labrat-cache")

    def test_precedence(self, tmp_path: Path):
        cfg = tmp_path / ".config" / "labrat"
        cfg.mkdir(parents=True)
        (cfg / "settings.yml").write_text("lock_timeout: 3\n")
        env = {"HOME": str(tmp_path), "LABRAT_LOCK_TIMEOUT": "4"}

        assert load_settings(env=env).lock_timeout == 4.0
        assert load_settings(env=env, lock_timeout=5).lock_timeout == 5.0

    def test_file_found_under_env_config_dir(self, tmp_path: Path):
        cfg = tmp_path / "elsewhere" / "labrat"
        cfg.mkdir(parents=True)
        (cfg / "settings.yml").write_text("lock_timeout: 7\n")
        env = {"HOME": str(tmp_path), "LABRAT_CONFIG_DIR": str(tmp_path / "elsewhere")}
        assert load_settings(env=env).lock_timeout == 7.0

    def test_invalid_yaml(self, tmp_path: Path):
        cfg = tmp_path / ".config" / "labrat"
        cfg.mkdir(parents=True)
        (cfg / "settings.yml").write_text("lock_timeout: [unclosed\n")
        with pytest.raises(ConfigError):
            load_settings(env={"HOME": str(tmp_path)})

    def test_non_mapping(self, tmp_path: Path):
        cfg = tmp_path / ".config" / "labrat"
        cfg.mkdir(parents=True)
        (cfg / "settings.yml").write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_settings(env={"HOME": str(tmp_path)})

    def test_empty_file(self, tmp_path: Path):
        cfg = tmp_path / ".config" / "labrat"
        cfg.mkdir(parents=True)
        (cfg / "settings.yml").write_text("")
        assert load_settings(env={"HOME": str(tmp_path)}).lock_timeout == 10.0
