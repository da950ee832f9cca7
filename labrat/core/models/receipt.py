"""
Install receipts — the contract between the orchestrator and installers.

Installers receive an ``InstallContext`` and return an ``InstallReceipt``.
They never raise: failures are captured in the receipt with
``status="failed"``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ShellSnippetSpec(BaseModel):
    """Shell integration a module wants registered for one shell kind."""

    init: str = ""
    functions: str = ""

    @property
    def empty(self) -> bool:
        return not self.init.strip() and not self.functions.strip()


class InstallReceipt(BaseModel):
    """Result of one install/uninstall call."""

    installer: str
    module: str
    operation: Literal["install", "uninstall"] = "install"
    status: Literal["ok", "skipped", "failed"] = "ok"

    version: str = "unknown"
    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    output: str = ""
    error: str | None = None

    # Snippets keyed by shell kind ("bash", "zsh", "fish").
    shell: dict[str, ShellSnippetSpec] = Field(default_factory=dict)
    shell_description: str = ""

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def has_shell_integration(self) -> bool:
        return any(not s.empty for s in self.shell.values())

    @classmethod
    def success(
        cls,
        installer: str,
        module: str,
        version: str = "unknown",
        **kwargs: Any,
    ) -> InstallReceipt:
        return cls(installer=installer, module=module, status="ok", version=version, **kwargs)

    @classmethod
    def failure(
        cls,
        installer: str,
        module: str,
        error: str,
        **kwargs: Any,
    ) -> InstallReceipt:
        return cls(installer=installer, module=module, status="failed", error=error, **kwargs)

    @classmethod
    def skip(
        cls,
        installer: str,
        module: str,
        reason: str = "",
        **kwargs: Any,
    ) -> InstallReceipt:
        return cls(installer=installer, module=module, status="skipped", output=reason, **kwargs)
