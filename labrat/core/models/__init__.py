"""
Domain models — Pydantic types for the installer core.

All models are re-exported here for convenient access:

    from labrat.core.models import ModuleSpec, ManifestDocument, InstallReceipt
"""

from labrat.core.models.manifest import (
    MANIFEST_SCHEMA_VERSION,
    SHELL_KINDS,
    ManifestDocument,
    ManifestEntry,
    ShellIntegrationState,
    ShellKind,
)
from labrat.core.models.module import CATEGORIES, ModuleSpec
from labrat.core.models.receipt import InstallReceipt, ShellSnippetSpec

__all__ = [
    "CATEGORIES",
    # receipt.py
    "InstallReceipt",
    # manifest.py
    "MANIFEST_SCHEMA_VERSION",
    "ManifestDocument",
    "ManifestEntry",
    # module.py
    "ModuleSpec",
    "SHELL_KINDS",
    "ShellIntegrationState",
    "ShellKind",
    "ShellSnippetSpec",
]
