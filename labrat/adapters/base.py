"""
Installer base — the contract between the orchestrator and per-tool installers.

The orchestrator only talks to installers through this interface, never
directly to package managers, download helpers or install scripts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from labrat.core.config.loader import Settings
from labrat.core.models.module import ModuleSpec
from labrat.core.models.receipt import InstallReceipt
from labrat.core.persistence.file_ops import AtomicFileStore
from labrat.core.persistence.transaction import TransactionLog


class InstallContext(BaseModel):
    """Everything an installer needs for one module.

    Files the installer writes should go through ``store`` and be
    recorded in ``transaction`` so a failed install can be rolled back.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    module: ModuleSpec
    settings: Settings
    store: AtomicFileStore
    transaction: TransactionLog | None = None
    dry_run: bool = False
    force: bool = False
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.module.name


class ModuleInstaller(ABC):
    """Abstract base class for module installers.

    Installers perform external side effects and return receipts.
    They NEVER raise exceptions — failures are captured in the receipt.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Installer identifier (e.g. 'script', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the underlying tooling exists.  Fast, never raises."""

    def validate(self, context: InstallContext) -> tuple[bool, str]:
        """Whether ``context.module`` can be handled at all.

        Returns:
            (is_valid, error_message). error_message is empty if valid.
        """
        return True, ""

    @abstractmethod
    def install(self, context: InstallContext) -> InstallReceipt:
        """Install (or reinstall) the module."""

    @abstractmethod
    def uninstall(self, context: InstallContext) -> InstallReceipt:
        """Remove the module's files.  Snippets and manifest are not its job."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
