"""
Install use case — install, uninstall or update a set of modules.

The vertical slice from user intent to audited execution: resolve
settings, load the catalog, build the orchestrator with the real (or
mock) installer, run, and wrap the outcome for the CLI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from labrat.adapters.base import ModuleInstaller
from labrat.adapters.mock import MockInstaller
from labrat.adapters.shell.command import ScriptInstaller
from labrat.core.config.loader import Settings, load_settings
from labrat.core.engine.orchestrator import Orchestrator, RunReport
from labrat.core.errors import E_GENERAL, E_MODULE_FAILED, E_SUCCESS, LabratError

logger = logging.getLogger(__name__)


@dataclass
class InstallResult:
    """Result of an install/uninstall/update request."""

    operation: str = "install"
    report: RunReport | None = None
    error: str | None = None
    error_kind: str | None = None
    exit_code: int = E_SUCCESS

    @property
    def ok(self) -> bool:
        return self.error is None and (self.report is None or self.report.all_ok)

    def to_dict(self) -> dict:
        result: dict = {"operation": self.operation}
        if self.error:
            result["error"] = self.error
            result["error_kind"] = self.error_kind
            return result
        if self.report:
            result["report"] = self.report.to_dict()
        return result


def build_orchestrator(
    settings: Settings | None = None,
    mock: bool = False,
    installer: ModuleInstaller | None = None,
) -> Orchestrator:
    """Wire an orchestrator from settings.

    ``installer`` wins over ``mock``; without either, module scripts
    under ``settings.modules_dir`` are used.
    """
    settings = settings or load_settings()
    if installer is None:
        installer = MockInstaller() if mock else ScriptInstaller()
    return Orchestrator(settings, installer)


def _run(
    operation: str,
    orchestrator: Orchestrator | None,
    mock: bool,
    call: Callable[[Orchestrator], RunReport],
) -> InstallResult:
    result = InstallResult(operation=operation)
    try:
        result.report = call(orchestrator or build_orchestrator(mock=mock))
    except LabratError as e:
        logger.error("%s aborted: %s", operation.capitalize(), e.message)
        result.error = e.message
        result.error_kind = e.kind
        result.exit_code = e.code
        return result

    if not result.report.all_ok:
        result.exit_code = E_GENERAL if result.report.succeeded else E_MODULE_FAILED
    return result


def run_install(
    modules: Iterable[str],
    with_deps: bool = True,
    force: bool = False,
    dry_run: bool = False,
    orchestrator: Orchestrator | None = None,
    mock: bool = False,
) -> InstallResult:
    targets = list(modules)
    return _run(
        "install", orchestrator, mock,
        lambda orch: orch.install(targets, with_deps=with_deps, force=force, dry_run=dry_run),
    )


def run_uninstall(
    modules: Iterable[str],
    dry_run: bool = False,
    orchestrator: Orchestrator | None = None,
    mock: bool = False,
) -> InstallResult:
    targets = list(modules)
    return _run("uninstall", orchestrator, mock, lambda orch: orch.uninstall(targets, dry_run=dry_run))


def run_update(
    modules: Iterable[str] | None = None,
    dry_run: bool = False,
    orchestrator: Orchestrator | None = None,
    mock: bool = False,
) -> InstallResult:
    targets = list(modules) if modules else None
    return _run("update", orchestrator, mock, lambda orch: orch.update(targets, dry_run=dry_run))
