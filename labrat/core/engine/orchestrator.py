"""
Orchestrator — the install/uninstall/update loop.

Flow for ``install``::

    request → validate names + conflicts → resolve order
            → per module: begin transaction → installer → register snippets
                          → manifest upsert (+ marker) → commit
                          (rollback on any failure, then continue)
            → RunReport + audit entry

Failures are isolated per module: one failed install is recorded and
the loop moves on, except that a module whose required dependency
failed in the same run is failed without calling its installer.

Only invalid requests (unknown names, conflicts, unmet dependencies,
dependency cycles) raise; everything after validation is reported.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, TypeVar

from labrat.adapters.base import InstallContext, ModuleInstaller
from labrat.core.config.loader import Settings
from labrat.core.errors import InvalidInput, LabratError, LockFailed
from labrat.core.models.module import ModuleSpec
from labrat.core.models.receipt import InstallReceipt
from labrat.core.persistence.audit import AuditEntry, AuditWriter
from labrat.core.persistence.file_ops import AtomicFileStore
from labrat.core.persistence.locks import LockManager
from labrat.core.persistence.manifest import Manifest
from labrat.core.persistence.transaction import TransactionLog
from labrat.core.services.dependencies import DependencyGraph
from labrat.core.services.shell_integration import ShellIntegrationRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_RETRIES = 3
DEFAULT_RETRY_BACKOFF = 0.5


@dataclass
class ModuleOutcome:
    """What happened to one module in a run."""

    module: str
    receipt: InstallReceipt
    auto_added: bool = False
    rolled_back: bool = False
    rollback_failures: list[str] = field(default_factory=list)
    shells: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.receipt.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "status": self.status,
            "version": self.receipt.version,
            "error": self.receipt.error,
            "auto_added": self.auto_added,
            "rolled_back": self.rolled_back,
            "rollback_failures": self.rollback_failures,
            "shells": self.shells,
            "warnings": self.warnings,
            "receipt": self.receipt.model_dump(mode="json"),
        }


@dataclass
class RunReport:
    """Result of one orchestrator run."""

    operation_id: str = ""
    operation: str = "install"
    requested: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)
    outcomes: list[ModuleOutcome] = field(default_factory=list)
    suggestions: dict[str, list[str]] = field(default_factory=dict)
    dry_run: bool = False
    duration_ms: int = 0

    @property
    def receipts(self) -> list[InstallReceipt]:
        return [o.receipt for o in self.outcomes]

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.receipt.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.receipt.failed)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "skipped")

    @property
    def failed_modules(self) -> list[str]:
        return [o.module for o in self.outcomes if o.receipt.failed]

    @property
    def succeeded_modules(self) -> list[str]:
        return [o.module for o in self.outcomes if o.receipt.ok]

    @property
    def all_ok(self) -> bool:
        return self.failed == 0

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "ok"
        if self.succeeded > 0:
            return "partial"
        return "failed"

    def outcome(self, module: str) -> ModuleOutcome | None:
        for o in self.outcomes:
            if o.module == module:
                return o
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation": self.operation,
            "status": self.status,
            "dry_run": self.dry_run,
            "requested": self.requested,
            "order": self.order,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "failed_modules": self.failed_modules,
            "suggestions": self.suggestions,
            "duration_ms": self.duration_ms,
            "modules": [o.to_dict() for o in self.outcomes],
        }


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"


class Orchestrator:
    """Ties the graph, transactions, manifest and shell registry together.

    Args:
        settings: Resolved paths.
        installer: The external install capability.
        graph: Module relationships (default: packaged + user catalog).
        lock_retries: Attempts at a manifest write before giving up on
            ``LockFailed``.
        retry_backoff: First retry delay in seconds; doubles each retry.
    """

    def __init__(
        self,
        settings: Settings,
        installer: ModuleInstaller,
        graph: DependencyGraph | None = None,
        store: AtomicFileStore | None = None,
        locks: LockManager | None = None,
        manifest: Manifest | None = None,
        audit: AuditWriter | None = None,
        lock_retries: int = DEFAULT_LOCK_RETRIES,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.installer = installer
        self.graph = graph or DependencyGraph.from_catalog(settings.catalog_path)
        self.store = store or AtomicFileStore(settings.backups_dir)
        self.locks = locks or LockManager(settings.lock_timeout)
        self.manifest = manifest or Manifest.from_settings(settings, self.store, self.locks)
        self.audit = audit or AuditWriter(settings.audit_path)
        self.transactions = TransactionLog(self.store)
        self.shell = ShellIntegrationRegistry(
            settings, self.store, self.locks, self.manifest, transaction=self.transactions,
        )
        self._lock_retries = max(1, lock_retries)
        self._retry_backoff = retry_backoff
        self._sleep = sleep

    # ── Planning ────────────────────────────────────────────────

    def plan_install(self, modules: Iterable[str], with_deps: bool = True) -> list[str]:
        """Validate a request and return the install order.

        Raises:
            InvalidInput: Empty request, unknown modules, conflicts, or
                (``with_deps=False``) unmet dependencies.
            CyclicDependency: The required-dependency graph loops.
        """
        requested = list(dict.fromkeys(modules))
        if not requested:
            raise InvalidInput("No modules requested")

        unknown = self.graph.unknown(requested)
        if unknown:
            raise InvalidInput(f"Unknown module(s): {', '.join(unknown)}")

        order = self.graph.resolve_order(requested)
        if not with_deps:
            unmet = self.graph.validate_dependencies(requested, self.manifest.has_module)
            if unmet:
                raise InvalidInput("; ".join(str(u) for u in unmet))
            order = [m for m in order if m in requested]

        unknown_deps = self.graph.unknown(order)
        if unknown_deps:
            raise InvalidInput(f"Unknown required module(s): {', '.join(unknown_deps)}")

        installed = self.manifest.list_modules()
        pairs = [
            pair for pair in self.graph.validate_conflicts(order + installed)
            if pair[0] in order or pair[1] in order
        ]
        if pairs:
            raise InvalidInput(
                "Conflicting modules: " + ", ".join(f"{a} conflicts with {b}" for a, b in pairs),
            )
        return order

    # ── Operations ──────────────────────────────────────────────

    def install(
        self,
        modules: Iterable[str],
        with_deps: bool = True,
        force: bool = False,
        dry_run: bool = False,
    ) -> RunReport:
        return self._install_run("install", list(modules), with_deps, force, dry_run)

    def update(self, modules: Iterable[str] | None = None, dry_run: bool = False) -> RunReport:
        """Reinstall installed modules (all of them when ``modules`` is None).

        Installed modules missing from the catalog (legacy markers, a
        dropped user-catalog entry) are skipped without blocking the rest.
        """
        targets = list(modules) if modules is not None else self.manifest.list_modules()
        installed = set(self.manifest.list_modules())
        uncatalogued = set(self.graph.unknown([m for m in targets if m in installed]))

        passed_over: list[ModuleOutcome] = []
        for name in targets:
            if name not in installed:
                passed_over.append(self._not_installed(name))
            elif name in uncatalogued:
                logger.warning("Cannot update %s: not in the module catalog", name)
                passed_over.append(ModuleOutcome(
                    module=name,
                    receipt=InstallReceipt.skip(
                        self.installer.name, name, "not in catalog",
                        version=self.manifest.get_version(name) or "unknown",
                    ),
                ))
        present = [m for m in targets if m in installed and m not in uncatalogued]

        if not present:
            report = RunReport(
                operation_id=generate_operation_id(), operation="update",
                requested=targets, dry_run=dry_run,
            )
            report.outcomes = passed_over
            self._finish(report)
            return report
        return self._install_run("update", present, True, True, dry_run, passed_over=passed_over)

    def uninstall(self, modules: Iterable[str], dry_run: bool = False) -> RunReport:
        """Remove installed modules, dependents first.

        Snippets are unregistered before the installer runs, so no shell
        ever sources integration for a half-removed tool.
        """
        start = time.monotonic()
        requested = list(dict.fromkeys(modules))
        if not requested:
            raise InvalidInput("No modules requested")

        installed = set(self.manifest.list_modules())
        order = [
            m for m in self.graph.reverse_order(requested, strict=False)
            if m in requested
        ]
        report = RunReport(
            operation_id=generate_operation_id(),
            operation="uninstall",
            requested=requested,
            order=order,
            dry_run=dry_run,
        )

        removed: set[str] = set()
        for name in order:
            if name not in installed:
                report.outcomes.append(ModuleOutcome(
                    module=name,
                    receipt=InstallReceipt.skip(
                        self.installer.name, name, "not installed", operation="uninstall",
                    ),
                ))
                continue

            outcome = self._uninstall_one(name, installed - removed, dry_run)
            report.outcomes.append(outcome)
            if outcome.receipt.ok:
                removed.add(name)

        report.duration_ms = int((time.monotonic() - start) * 1000)
        self._log_summary(report)
        self._finish(report)
        return report

    # ── Install internals ───────────────────────────────────────

    def _install_run(
        self,
        operation: str,
        requested: list[str],
        with_deps: bool,
        force: bool,
        dry_run: bool,
        passed_over: list[ModuleOutcome] | None = None,
    ) -> RunReport:
        start = time.monotonic()
        requested = list(dict.fromkeys(requested))
        order = self.plan_install(requested, with_deps=with_deps)

        report = RunReport(
            operation_id=generate_operation_id(),
            operation=operation,
            requested=requested,
            order=order,
            dry_run=dry_run,
        )
        logger.info("%s order: %s", operation.capitalize(), " ".join(order))

        installed = set(self.manifest.list_modules())
        failed: set[str] = set()

        for name in order:
            spec = self.graph.get(name)
            assert spec is not None  # plan_install rejected unknown names
            auto_added = name not in requested

            if name in installed and not (force and not auto_added):
                report.outcomes.append(ModuleOutcome(
                    module=name,
                    receipt=InstallReceipt.skip(
                        self.installer.name, name, "already installed",
                        version=self.manifest.get_version(name) or "unknown",
                    ),
                    auto_added=auto_added,
                ))
                continue

            blocked = [d for d in self.graph.direct_deps(name) if d in failed]
            if blocked:
                logger.error("Skipping %s: required dependency failed: %s", name, ", ".join(blocked))
                report.outcomes.append(ModuleOutcome(
                    module=name,
                    receipt=InstallReceipt.failure(
                        self.installer.name, name,
                        f"Required dependency failed: {', '.join(blocked)}",
                    ),
                    auto_added=auto_added,
                ))
                failed.add(name)
                continue

            outcome = self._install_one(spec, force, dry_run)
            outcome.auto_added = auto_added
            report.outcomes.append(outcome)
            if outcome.receipt.failed:
                failed.add(name)
            elif outcome.receipt.ok:
                suggestions = self.graph.suggest_soft_deps(name, self.manifest.has_module)
                if suggestions:
                    report.suggestions[name] = suggestions
                    logger.info("Optional: %s works better with: %s", name, " ".join(suggestions))

        report.outcomes.extend(passed_over or [])
        report.duration_ms = int((time.monotonic() - start) * 1000)
        self._log_summary(report)
        self._finish(report)
        return report

    def _install_one(self, spec: ModuleSpec, force: bool, dry_run: bool) -> ModuleOutcome:
        name = spec.name
        tx = self.transactions
        tx.begin(f"install:{name}")

        context = InstallContext(
            module=spec,
            settings=self.settings,
            store=self.store,
            transaction=tx,
            dry_run=dry_run,
            force=force,
        )
        receipt = self._call_installer(self.installer.install, context)
        outcome = ModuleOutcome(module=name, receipt=receipt)

        if not receipt.ok:
            if receipt.failed:
                logger.error("✗ %s: %s", name, receipt.error)
                self._rollback(outcome)
            else:
                tx.commit()
            return outcome

        try:
            outcome.shells = self.shell.register_all(
                name, receipt.shell, receipt.shell_description or spec.description,
                command=spec.command or None,
            )
            has_shell = bool(outcome.shells) or self.shell.is_registered(name)
            self._retrying(self.manifest.upsert_module, name, receipt.version, has_shell)
        except LabratError as e:
            logger.error("✗ %s: %s", name, e.message)
            outcome.receipt = receipt.model_copy(update={"status": "failed", "error": e.message})
            self._rollback(outcome)
            return outcome

        tx.commit()
        logger.info("✓ %s (v%s)", name, receipt.version)
        return outcome

    def _rollback(self, outcome: ModuleOutcome) -> None:
        outcome.rollback_failures = self.transactions.rollback()
        outcome.rolled_back = True

    # ── Uninstall internals ─────────────────────────────────────

    def _uninstall_one(self, name: str, still_installed: set[str], dry_run: bool) -> ModuleOutcome:
        spec = self.graph.get(name) or ModuleSpec(name=name)
        warnings = []
        dependents = self.graph.dependents(name, sorted(still_installed - {name}))
        if dependents:
            message = f"{name} is required by: {', '.join(dependents)}"
            logger.warning("%s; uninstalling may break these modules", message)
            warnings.append(message)

        if dry_run:
            return ModuleOutcome(
                module=name,
                receipt=InstallReceipt.skip(
                    self.installer.name, name, f"[dry-run] would uninstall {name}",
                    operation="uninstall",
                ),
                warnings=warnings,
            )

        outcome = ModuleOutcome(
            module=name,
            receipt=InstallReceipt.failure(self.installer.name, name, "not run", operation="uninstall"),
            warnings=warnings,
        )
        try:
            outcome.shells = self.shell.unregister(name)
        except LabratError as e:
            outcome.receipt = InstallReceipt.failure(
                self.installer.name, name, e.message, operation="uninstall",
            )
            return outcome

        context = InstallContext(module=spec, settings=self.settings, store=self.store)
        receipt = self._call_installer(self.installer.uninstall, context, operation="uninstall")
        outcome.receipt = receipt

        try:
            if receipt.failed:
                logger.error("✗ %s: %s", name, receipt.error)
                # Still installed, but its snippets are gone
                version = self.manifest.get_version(name) or "unknown"
                self._retrying(self.manifest.upsert_module, name, version, False)
            else:
                self._retrying(self.manifest.remove_module, name)
                logger.info("✓ %s removed", name)
        except LabratError as e:
            logger.error("✗ %s: %s", name, e.message)
            outcome.receipt = receipt.model_copy(update={"status": "failed", "error": e.message})
        return outcome

    # ── Helpers ─────────────────────────────────────────────────

    def _not_installed(self, name: str) -> ModuleOutcome:
        return ModuleOutcome(
            module=name,
            receipt=InstallReceipt.skip(self.installer.name, name, "not installed"),
        )

    def _call_installer(
        self,
        method: Callable[[InstallContext], InstallReceipt],
        context: InstallContext,
        operation: str = "install",
    ) -> InstallReceipt:
        start = time.monotonic()
        valid, error = self.installer.validate(context)
        if not valid:
            return InstallReceipt.failure(
                self.installer.name, context.name, f"Validation failed: {error}", operation=operation,
            )
        try:
            receipt = method(context)
        except Exception as e:
            # Installers should never raise
            logger.error("Installer %s raised for %s: %s", self.installer.name, context.name, e)
            receipt = InstallReceipt.failure(
                self.installer.name, context.name, f"Unexpected error: {e}", operation=operation,
            )
        if not receipt.duration_ms:
            receipt.duration_ms = int((time.monotonic() - start) * 1000)
        return receipt

    def _retrying(self, fn: Callable[..., T], *args: Any) -> T:
        """Call ``fn``, retrying ``LockFailed`` with exponential backoff."""
        delay = self._retry_backoff
        for attempt in range(1, self._lock_retries + 1):
            try:
                return fn(*args)
            except LockFailed:
                if attempt == self._lock_retries:
                    logger.error("Lock still held after %d attempts, giving up", attempt)
                    raise
                logger.warning(
                    "Lock busy (attempt %d/%d), retrying in %.2fs",
                    attempt, self._lock_retries, delay,
                )
                self._sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    def _log_summary(self, report: RunReport) -> None:
        logger.info(
            "%s %s: %d succeeded, %d failed, %d skipped",
            report.operation, report.status, report.succeeded, report.failed, report.skipped,
        )
        if report.failed_modules:
            logger.warning("Failed modules: %s", ", ".join(report.failed_modules))

    def _finish(self, report: RunReport) -> None:
        self._write_audit(report)
        if not report.dry_run:
            self._prune_backups()

    def _prune_backups(self) -> int:
        """Drop transaction backups older than the retention window."""
        removed = self.store.cleanup_old_files(
            self.settings.backups_dir, "*.bak", self.settings.backup_retention_days,
        )
        if removed:
            logger.info("Pruned %d backup(s) older than %d days", removed, self.settings.backup_retention_days)
        return removed

    def _write_audit(self, report: RunReport) -> None:
        errors = [
            f"{o.module}: {o.receipt.error}" for o in report.outcomes
            if o.receipt.failed and o.receipt.error
        ]
        self.audit.write(AuditEntry(
            operation_id=report.operation_id,
            operation_type=report.operation,
            modules_requested=report.requested,
            modules_affected=report.succeeded_modules,
            status=report.status,
            modules_total=report.total,
            modules_succeeded=report.succeeded,
            modules_failed=report.failed,
            modules_skipped=report.skipped,
            duration_ms=report.duration_ms,
            errors=errors,
            context={"dry_run": report.dry_run, "installer": self.installer.name},
        ))
