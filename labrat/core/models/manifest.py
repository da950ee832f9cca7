"""
Manifest document — the durable record of installed state.

Serialized to ``<data_dir>/manifest.json``::

    {
      "version": "1.0",
      "created_at": "...",
      "updated_at": "...",
      "labrat_version": "dev",
      "modules": {
        "tmux": {"version": "3.5a", "installed_at": "...",
                 "updated_at": "...", "shell_integration": false}
      },
      "shell_integration": {"hooks_installed": ["bash"], "original_backups": true}
    }

The document is only ever mutated through ``persistence.manifest.Manifest``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

MANIFEST_SCHEMA_VERSION = "1.0"

ShellKind = Literal["bash", "zsh", "fish"]
SHELL_KINDS: tuple[str, ...] = ("bash", "zsh", "fish")


def now_iso() -> str:
    """Current local time as an ISO-8601 string with offset, second precision."""
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


class ManifestEntry(BaseModel):
    """One installed module.  The name is the key in ``modules``."""

    name: str = Field(default="", exclude=True)
    version: str = "unknown"
    installed_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    shell_integration: bool = False


class ShellIntegrationState(BaseModel):
    """Global shell-hook bookkeeping."""

    hooks_installed: list[ShellKind] = Field(default_factory=list)
    original_backups: bool = False
    backup_date: str | None = None


class ManifestDocument(BaseModel):
    """Root manifest model."""

    version: str = MANIFEST_SCHEMA_VERSION
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    labrat_version: str = "dev"
    modules: dict[str, ManifestEntry] = Field(default_factory=dict)
    shell_integration: ShellIntegrationState = Field(default_factory=ShellIntegrationState)

    @model_validator(mode="after")
    def _fill_entry_names(self) -> ManifestDocument:
        for key, entry in self.modules.items():
            entry.name = key
        return self

    def touch(self) -> None:
        """Bump ``updated_at``, never moving it backwards."""
        stamp = now_iso()
        if _parse(stamp) >= _parse(self.updated_at):
            self.updated_at = stamp

    def to_json_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        if data["shell_integration"].get("backup_date") is None:
            data["shell_integration"].pop("backup_date", None)
        return data


def _parse(stamp: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(stamp)
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
