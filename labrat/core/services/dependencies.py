"""
Dependency graph — ordering and validation over the module catalog.

The graph only knows module *names* and their declared relationships.
Questions about installed state are answered by callables the caller
passes in (usually ``Manifest.has_module``), so nothing here touches
the filesystem.

Relationship kinds:
    requires    hard, installed first, reflected in ``resolve_order``
    recommends  soft, never ordered, only suggested
    conflicts   symmetric for validation purposes
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from labrat.core.config.catalog_loader import load_catalog
from labrat.core.errors import CyclicDependency
from labrat.core.models.module import ModuleSpec

logger = logging.getLogger(__name__)

IsInstalled = Callable[[str], bool]


@dataclass(frozen=True)
class UnmetDependency:
    module: str
    dependency: str

    def __str__(self) -> str:
        return f"{self.module} requires {self.dependency} (not installed and not requested)"


def _command_exists(name: str) -> bool:
    return shutil.which(name) is not None


class DependencyGraph:
    """Static relationships between catalog modules."""

    def __init__(self, specs: Mapping[str, ModuleSpec]):
        self._specs = dict(specs)

    @classmethod
    def from_catalog(cls, extra_path: Path | None = None) -> DependencyGraph:
        return cls(load_catalog(extra_path))

    # ── Lookup ──────────────────────────────────────────────────

    @property
    def specs(self) -> dict[str, ModuleSpec]:
        return dict(self._specs)

    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, module: str) -> ModuleSpec | None:
        return self._specs.get(module)

    def __contains__(self, module: object) -> bool:
        return module in self._specs

    def unknown(self, modules: Iterable[str]) -> list[str]:
        """Names not present in the catalog, in input order."""
        return [m for m in dict.fromkeys(modules) if m not in self._specs]

    def direct_deps(self, module: str) -> list[str]:
        spec = self._specs.get(module)
        return list(spec.requires) if spec else []

    def soft_deps(self, module: str) -> list[str]:
        spec = self._specs.get(module)
        return list(spec.recommends) if spec else []

    def conflicts(self, module: str) -> list[str]:
        spec = self._specs.get(module)
        return list(spec.conflicts) if spec else []

    # ── Ordering ────────────────────────────────────────────────

    def resolve_order(self, modules: Iterable[str], strict: bool = True) -> list[str]:
        """Dependency-first install order for ``modules`` and their requirements.

        Output is deduplicated and keeps first-seen order across the
        input.  Soft dependencies never appear.

        Args:
            strict: Raise ``CyclicDependency`` on a cycle.  With
                ``strict=False`` a module already being expanded is
                treated as having no further deps, so the cycle is
                silently cut.
        """
        resolved: list[str] = []
        if strict:
            done: set[str] = set()
            for module in modules:
                self._visit_strict(module, done, [], resolved)
        else:
            seen: set[str] = set()
            for module in modules:
                self._visit_lenient(module, seen, resolved)
        return resolved

    def _visit_strict(self, module: str, done: set[str], stack: list[str], out: list[str]) -> None:
        if module in done:
            return
        if module in stack:
            cycle = stack[stack.index(module):] + [module]
            logger.error("Dependency cycle: %s", " -> ".join(cycle))
            raise CyclicDependency(cycle)

        stack.append(module)
        for dep in self.direct_deps(module):
            self._visit_strict(dep, done, stack, out)
        stack.pop()

        done.add(module)
        out.append(module)

    def _visit_lenient(self, module: str, seen: set[str], out: list[str]) -> None:
        if module in seen:
            return
        seen.add(module)
        for dep in self.direct_deps(module):
            if dep not in out:
                self._visit_lenient(dep, seen, out)
        if module not in out:
            out.append(module)

    def reverse_order(self, modules: Iterable[str], strict: bool = True) -> list[str]:
        """``resolve_order`` reversed: dependents before their dependencies."""
        return list(reversed(self.resolve_order(modules, strict=strict)))

    def auto_add_dependencies(self, modules: Iterable[str]) -> list[str]:
        """The requested modules plus everything they require, in install order."""
        requested = list(modules)
        ordered = self.resolve_order(requested)
        added = [m for m in ordered if m not in requested]
        if added:
            logger.info("Adding required dependencies: %s", ", ".join(added))
        return ordered

    # ── Validation ──────────────────────────────────────────────

    def validate_conflicts(self, modules: Iterable[str]) -> list[tuple[str, str]]:
        """Every conflicting pair inside ``modules`` (declared on either side)."""
        members = list(dict.fromkeys(modules))
        present = set(members)
        pairs: list[tuple[str, str]] = []
        for module in members:
            for other in self.conflicts(module):
                if other == module or other not in present:
                    continue
                if (module, other) in pairs or (other, module) in pairs:
                    continue
                pairs.append((module, other))
        for a, b in pairs:
            logger.error("%s conflicts with %s", a, b)
        return pairs

    def validate_dependencies(
        self,
        modules: Iterable[str],
        is_installed: IsInstalled,
    ) -> list[UnmetDependency]:
        """Required deps that are neither installed nor in ``modules``."""
        members = list(dict.fromkeys(modules))
        requested = set(members)
        unmet = [
            UnmetDependency(module, dep)
            for module in members
            for dep in self.direct_deps(module)
            if dep not in requested and not is_installed(dep)
        ]
        for item in unmet:
            logger.error("%s", item)
        return unmet

    def suggest_soft_deps(
        self,
        module: str,
        is_installed: IsInstalled,
        is_available: Callable[[str], bool] = _command_exists,
    ) -> list[str]:
        """Soft deps neither installed nor already present on ``PATH``.

        ``is_available`` receives the dependency's check command
        (``ripgrep`` is checked as ``rg``).  Advisory only.
        """
        suggestions = []
        for dep in self.soft_deps(module):
            spec = self._specs.get(dep)
            binary = spec.binary if spec else dep
            if not is_installed(dep) and not is_available(binary):
                suggestions.append(dep)
        return suggestions

    # ── Reverse lookups / views ─────────────────────────────────

    def dependents(self, module: str, installed: Iterable[str]) -> list[str]:
        """Installed modules that directly require ``module``."""
        return [m for m in installed if m != module and module in self.direct_deps(m)]

    def dependency_tree(self, module: str, is_installed: IsInstalled | None = None) -> dict[str, Any]:
        """Nested ``{"name", "installed", "requires": [...]}`` view of hard deps.

        A module that reappears on its own path is shown once more with
        ``"cycle": True`` and not expanded further.
        """
        check = is_installed or (lambda _name: False)

        def build(name: str, path: tuple[str, ...]) -> dict[str, Any]:
            node: dict[str, Any] = {"name": name, "installed": check(name), "requires": []}
            if name in path:
                node["cycle"] = True
                return node
            node["requires"] = [build(dep, path + (name,)) for dep in self.direct_deps(name)]
            return node

        return build(module, ())

    def module_info(
        self,
        module: str,
        is_installed: IsInstalled | None = None,
        version_of: Callable[[str], str | None] | None = None,
    ) -> dict[str, Any]:
        spec = self._specs.get(module)
        installed = bool(is_installed and is_installed(module))
        return {
            "name": module,
            "known": spec is not None,
            "category": spec.category if spec else None,
            "description": spec.description if spec and spec.description else "No description",
            "command": spec.binary if spec else module,
            "installed": installed,
            "version": version_of(module) if installed and version_of else None,
            "requires": self.direct_deps(module),
            "recommends": self.soft_deps(module),
            "conflicts": self.conflicts(module),
        }
