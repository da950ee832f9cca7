"""
Settings loader — resolves every path the installer touches.

Precedence (highest first):
    explicit keyword  >  LABRAT_* / HOME env vars  >  settings.yml  >  defaults

The optional settings file lives at ``<config_dir>/labrat/settings.yml``
and is a flat YAML mapping of the same field names.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError

from labrat.core.errors import ConfigError

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.yml"
DEFAULT_LOCK_TIMEOUT = 10.0

# env var → field name
_ENV_FIELDS = {
    "LABRAT_CONFIG_DIR": "config_dir",
    "LABRAT_DATA_DIR": "data_dir",
    "LABRAT_CACHE_DIR": "cache_dir",
    "LABRAT_MODULES_DIR": "modules_dir",
    "LABRAT_LOCK_TIMEOUT": "lock_timeout",
}


class Settings(BaseModel):
    """Resolved installer settings.

    Only the base directories are stored; everything else is derived so
    that overriding ``data_dir`` moves the manifest, lock, markers and
    backups together.
    """

    home: Path
    config_dir: Path
    data_dir: Path
    cache_dir: Path
    modules_dir: Path
    lock_timeout: float = Field(default=DEFAULT_LOCK_TIMEOUT, gt=0)
    backup_retention_days: int = Field(default=7, ge=0)
    labrat_version: str = "dev"

    # ── Data directory ───────────────────────────────────────────

    @property
    def manifest_path(self) -> Path:
        return self.data_dir / "manifest.json"

    @property
    def lock_path(self) -> Path:
        return self.data_dir / "labrat.lock"

    @property
    def markers_dir(self) -> Path:
        return self.data_dir / "installed"

    @property
    def backups_dir(self) -> Path:
        return self.data_dir / "backups"

    @property
    def shell_backups_dir(self) -> Path:
        return self.data_dir / "shell_backups"

    @property
    def audit_path(self) -> Path:
        return self.data_dir / "audit.ndjson"

    # ── Config directory ─────────────────────────────────────────

    @property
    def shell_config_dir(self) -> Path:
        return self.config_dir / "labrat"

    @property
    def settings_path(self) -> Path:
        return self.shell_config_dir / SETTINGS_FILE

    @property
    def catalog_path(self) -> Path:
        """User catalog merged over the packaged one."""
        return self.shell_config_dir / "catalog.yml"

    @classmethod
    def for_home(cls, home: Path, **overrides: Any) -> Settings:
        """Build settings rooted at ``home`` using the XDG-style defaults."""
        home = Path(home)
        values: dict[str, Any] = {
            "home": home,
            "config_dir": home / ".config",
            "data_dir": home / ".local" / "share" / "labrat",
            "cache_dir": home / ".cache" / "labrat",
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        values.setdefault("modules_dir", Path(values["data_dir"]) / "modules")
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {e}") from e


def _read_settings_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}

    logger.debug("Loading settings from %s", path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def load_settings(
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> Settings:
    """Resolve settings from keyword overrides, the environment and settings.yml.

    Args:
        env: Environment mapping (default: ``os.environ``).
        **overrides: Explicit field values; ``None`` values are ignored.

    Raises:
        ConfigError: If the settings file or any value is invalid.
    """
    env = os.environ if env is None else env

    home = overrides.pop("home", None) or env.get("HOME") or str(Path.home())

    from_env: dict[str, Any] = {}
    for var, field_name in _ENV_FIELDS.items():
        value = env.get(var)
        if value:
            from_env[field_name] = value

    explicit = {k: v for k, v in overrides.items() if v is not None}

    # The settings file location depends on config_dir, so resolve that first.
    base = Settings.for_home(Path(home), **{**from_env, **explicit})
    from_file = _read_settings_file(base.settings_path)
    from_file.pop("home", None)

    merged = {**from_file, **from_env, **explicit}
    settings = Settings.for_home(Path(home), **merged)
    logger.debug(
        "Settings resolved: data_dir=%s config_dir=%s",
        settings.data_dir, settings.config_dir,
    )
    return settings
