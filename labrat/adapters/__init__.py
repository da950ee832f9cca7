"""Adapters — installers for the external per-tool install capability.

Public re-exports for convenient access.
"""

from labrat.adapters.base import InstallContext, ModuleInstaller
from labrat.adapters.mock import MockInstaller
from labrat.adapters.shell.command import ScriptInstaller

__all__ = [
    "InstallContext",
    "MockInstaller",
    "ModuleInstaller",
    "ScriptInstaller",
]
