"""
Mock installer — test double for every module.

Used by ``labrat --mock`` and the test suite to exercise the
orchestrator without running install scripts.  Succeeds by default;
failures, versions, shell snippets and files to write can be set per
module.
"""

from __future__ import annotations

from pathlib import Path

from labrat.adapters.base import InstallContext, ModuleInstaller
from labrat.core.errors import LabratError
from labrat.core.models.receipt import InstallReceipt, ShellSnippetSpec
from labrat.core.persistence.file_ops import PERM_CONFIG_FILE


class MockInstaller(ModuleInstaller):
    """In-memory installer.

    ``call_log`` holds ``(operation, module)`` tuples in call order.
    """

    def __init__(
        self,
        installer_name: str = "mock",
        available: bool = True,
        default_version: str = "1.0.0-mock",
    ):
        self._name = installer_name
        self._available = available
        self._default_version = default_version
        self._versions: dict[str, str] = {}
        self._failures: dict[str, str] = {}
        self._uninstall_failures: dict[str, str] = {}
        self._snippets: dict[str, dict[str, ShellSnippetSpec]] = {}
        self._files: dict[str, dict[Path, str]] = {}
        self._call_log: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[tuple[str, str]]:
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def installed_modules(self) -> list[str]:
        """Modules whose install was called, in order."""
        return [m for op, m in self._call_log if op == "install"]

    def is_available(self) -> bool:
        return self._available

    def set_version(self, module: str, version: str) -> None:
        self._versions[module] = version

    def set_failure(self, module: str, error: str = "Mock failure") -> None:
        """Make ``install`` fail (after writing any configured files)."""
        self._failures[module] = error

    def set_uninstall_failure(self, module: str, error: str = "Mock failure") -> None:
        self._uninstall_failures[module] = error

    def set_snippet(self, module: str, shell: str, init: str = "", functions: str = "") -> None:
        self._snippets.setdefault(module, {})[shell] = ShellSnippetSpec(init=init, functions=functions)

    def set_files(self, module: str, files: dict[Path, str]) -> None:
        """Files ``install`` writes (and records in the transaction)."""
        self._files[module] = {Path(p): c for p, c in files.items()}

    def install(self, context: InstallContext) -> InstallReceipt:
        module = context.name
        self._call_log.append(("install", module))

        if context.dry_run:
            return InstallReceipt.skip(self._name, module, "[mock] dry run")

        try:
            for path, content in self._files.get(module, {}).items():
                if context.transaction is not None:
                    context.transaction.record("file", path, original=path)
                context.store.atomic_write(path, content, PERM_CONFIG_FILE)
        except LabratError as e:
            return InstallReceipt.failure(self._name, module, e.message)

        if module in self._failures:
            return InstallReceipt.failure(self._name, module, self._failures[module])

        return InstallReceipt.success(
            self._name,
            module,
            version=self._versions.get(module, self._default_version),
            output="[mock] installed",
            shell=dict(self._snippets.get(module, {})),
            shell_description=context.module.description,
            metadata={"mock": True},
        )

    def uninstall(self, context: InstallContext) -> InstallReceipt:
        module = context.name
        self._call_log.append(("uninstall", module))

        if module in self._uninstall_failures:
            return InstallReceipt.failure(
                self._name, module, self._uninstall_failures[module], operation="uninstall",
            )
        return InstallReceipt.success(
            self._name, module, output="[mock] uninstalled", operation="uninstall",
            metadata={"mock": True},
        )

    def reset(self) -> None:
        """Clear call log and every configured response."""
        self._call_log.clear()
        self._versions.clear()
        self._failures.clear()
        self._uninstall_failures.clear()
        self._snippets.clear()
        self._files.clear()
