"""
ModuleSpec — a statically declared, installable capability.

Specs come from the packaged catalog (``core/data/catalog.yml``).
They are never created or destroyed at runtime, only referenced by name.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator

CATEGORIES = (
    "terminal",
    "shell",
    "editors",
    "fonts",
    "utils",
    "monitoring",
    "network",
    "productivity",
    "security",
)

# Names that can sit unquoted in a shell `command -v` guard.
COMMAND_PATTERN = re.compile(r"[A-Za-z0-9._+-]+")


class ModuleSpec(BaseModel):
    """Catalog entry for one module."""

    name: str
    category: str = "utils"
    description: str = ""
    command: str = ""                                     # binary checked by shell snippets
    requires: list[str] = Field(default_factory=list)     # hard deps, installed first
    recommends: list[str] = Field(default_factory=list)   # soft deps, advisory only
    conflicts: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("module name must not be empty")
        return v.strip()

    @field_validator("command")
    @classmethod
    def _command_is_plain(cls, v: str) -> str:
        if v and not COMMAND_PATTERN.fullmatch(v):
            raise ValueError(f"command must match {COMMAND_PATTERN.pattern}: {v!r}")
        return v

    @field_validator("requires", "recommends", "conflicts", mode="before")
    @classmethod
    def _split_csv(cls, v: object) -> object:
        # Catalog files may use "a,b" or "a b" shorthands.
        if isinstance(v, str):
            return [p for p in v.replace(",", " ").split() if p]
        if v is None:
            return []
        return v

    @property
    def binary(self) -> str:
        """Command name used by the ``command -v`` guard in shell snippets."""
        return self.command or self.name
