"""
Status use case — catalog listing, module info, dependency trees and
the installed-state summary.

Read-only: nothing here takes the lock or writes a file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from labrat.core.config.loader import Settings, load_settings
from labrat.core.errors import E_SUCCESS, InvalidInput, LabratError
from labrat.core.persistence.audit import AuditWriter
from labrat.core.persistence.file_ops import AtomicFileStore
from labrat.core.persistence.locks import LockManager
from labrat.core.persistence.manifest import Manifest
from labrat.core.services.dependencies import DependencyGraph
from labrat.core.services.shell_integration import ShellIntegrationRegistry


@dataclass
class ModuleListResult:
    """Catalog entries, optionally filtered."""

    modules: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    exit_code: int = E_SUCCESS

    @property
    def installed_count(self) -> int:
        return sum(1 for m in self.modules if m["installed"])

    def by_category(self) -> dict[str, list[dict[str, Any]]]:
        grouped: dict[str, list[dict[str, Any]]] = {}
        for m in self.modules:
            grouped.setdefault(m["category"], []).append(m)
        return dict(sorted(grouped.items()))

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {
            "total": len(self.modules),
            "installed": self.installed_count,
            "modules": self.modules,
        }


@dataclass
class ModuleInfoResult:
    info: dict[str, Any] = field(default_factory=dict)
    tree: dict[str, Any] | None = None
    error: str | None = None
    exit_code: int = E_SUCCESS

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        result = dict(self.info)
        if self.tree is not None:
            result["tree"] = self.tree
        return result


@dataclass
class StatusResult:
    """Installed state: manifest summary, shell integration, last run."""

    manifest: dict[str, Any] = field(default_factory=dict)
    shell: dict[str, Any] = field(default_factory=dict)
    catalog_size: int = 0
    last_operation: dict[str, Any] | None = None
    error: str | None = None
    exit_code: int = E_SUCCESS

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {
            "manifest": self.manifest,
            "shell": self.shell,
            "catalog_size": self.catalog_size,
            "last_operation": self.last_operation,
        }


def _manifest(settings: Settings) -> Manifest:
    return Manifest.from_settings(settings)


def list_modules(
    category: str | None = None,
    installed_only: bool = False,
    settings: Settings | None = None,
) -> ModuleListResult:
    """List catalog modules with their installed state."""
    try:
        settings = settings or load_settings()
        graph = DependencyGraph.from_catalog(settings.catalog_path)
        manifest = _manifest(settings)
        doc = manifest.load()
    except LabratError as e:
        return ModuleListResult(error=e.message, exit_code=e.code)

    modules = []
    for name in graph.names():
        spec = graph.get(name)
        assert spec is not None
        if category and spec.category != category:
            continue
        entry = doc.modules.get(name)
        if installed_only and entry is None:
            continue
        modules.append({
            "name": name,
            "category": spec.category,
            "description": spec.description,
            "installed": entry is not None,
            "version": entry.version if entry else None,
        })
    return ModuleListResult(modules=modules)


def get_module_info(name: str, settings: Settings | None = None) -> ModuleInfoResult:
    """Catalog entry plus installed state for one module."""
    try:
        settings = settings or load_settings()
        graph = DependencyGraph.from_catalog(settings.catalog_path)
        if name not in graph:
            raise InvalidInput(f"Unknown module: {name}")
        manifest = _manifest(settings)
        info = graph.module_info(name, manifest.has_module, manifest.get_version)
        info["dependents"] = graph.dependents(name, manifest.list_modules())
    except LabratError as e:
        return ModuleInfoResult(error=e.message, exit_code=e.code)
    return ModuleInfoResult(info=info)


def get_dependency_tree(name: str, settings: Settings | None = None) -> ModuleInfoResult:
    """Nested required-dependency view for one module."""
    try:
        settings = settings or load_settings()
        graph = DependencyGraph.from_catalog(settings.catalog_path)
        if name not in graph:
            raise InvalidInput(f"Unknown module: {name}")
        manifest = _manifest(settings)
        tree = graph.dependency_tree(name, manifest.has_module)
        order = graph.resolve_order([name])
    except LabratError as e:
        return ModuleInfoResult(error=e.message, exit_code=e.code)
    return ModuleInfoResult(info={"name": name, "install_order": order}, tree=tree)


def get_status(settings: Settings | None = None) -> StatusResult:
    """Aggregate manifest, shell integration and the latest audit entry."""
    try:
        settings = settings or load_settings()
        store = AtomicFileStore(settings.backups_dir)
        locks = LockManager(settings.lock_timeout)
        manifest = Manifest.from_settings(settings, store, locks)
        shell = ShellIntegrationRegistry(settings, store, locks, manifest)
        graph = DependencyGraph.from_catalog(settings.catalog_path)
        result = StatusResult(
            manifest=manifest.show(),
            shell=shell.status(),
            catalog_size=len(graph.names()),
        )
    except LabratError as e:
        return StatusResult(error=e.message, exit_code=e.code)

    recent = AuditWriter(settings.audit_path).read_recent(1)
    if recent:
        result.last_operation = recent[-1].model_dump(mode="json")
    return result
