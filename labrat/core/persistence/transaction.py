"""
Transaction log — in-memory record of one logical multi-file operation.

Usage::

    tx = TransactionLog(store)
    tx.begin("install:tmux")
    tx.record("file", conf, original=conf)   # backs up conf if present
    store.atomic_write(conf, new_text)
    ...
    tx.commit()      # or tx.rollback()

Nothing here is persisted.  A process that dies mid-transaction leaves
its recorded changes in place; the manifest is written last, so such a
module simply does not show up as installed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from labrat.core.errors import LabratError, TransactionError
from labrat.core.persistence.file_ops import AtomicFileStore

logger = logging.getLogger(__name__)

ChangeKind = Literal["file", "dir", "symlink", "marker"]
CHANGE_KINDS: tuple[str, ...] = ("file", "dir", "symlink", "marker")

NestedPolicy = Literal["raise", "commit"]


@dataclass
class Change:
    kind: str
    path: Path


@dataclass
class Backup:
    path: Path
    backup_path: Path


@dataclass
class Transaction:
    name: str
    changes: list[Change] = field(default_factory=list)
    backups: list[Backup] = field(default_factory=list)

    def backed_up(self, path: Path) -> bool:
        return any(b.path == path for b in self.backups)


class TransactionLog:
    """At most one active transaction at a time.

    Args:
        store: Used to take and restore backups.
        on_nested: What ``begin`` does while a transaction is active.
            ``"raise"`` (default) raises ``TransactionError``;
            ``"commit"`` silently commits the active one first.
    """

    def __init__(self, store: AtomicFileStore, on_nested: NestedPolicy = "raise"):
        if on_nested not in ("raise", "commit"):
            raise TransactionError(f"Unknown nested-transaction policy: {on_nested}")
        self._store = store
        self._on_nested = on_nested
        self._active: Transaction | None = None

    @property
    def current(self) -> Transaction | None:
        return self._active

    def is_active(self) -> bool:
        return self._active is not None

    def begin(self, name: str) -> Transaction:
        if self._active is not None:
            if self._on_nested == "raise":
                raise TransactionError(
                    f"Cannot begin '{name}': transaction '{self._active.name}' is still active",
                )
            logger.warning(
                "Transaction '%s' still active, committing before '%s'",
                self._active.name, name,
            )
            self.commit()

        self._active = Transaction(name=name)
        logger.debug("Transaction started: %s", name)
        return self._active

    def record(
        self,
        kind: str,
        path: Path | str,
        original: Path | str | None = None,
    ) -> None:
        """Record a change to undo on rollback.

        No-op without an active transaction.  When ``original`` names an
        existing file it is backed up now; rollback copies the backup
        back over ``path`` instead of deleting it.
        """
        tx = self._active
        if tx is None:
            return
        if kind not in CHANGE_KINDS:
            raise TransactionError(f"Unknown change kind: {kind}")

        target = Path(path)
        tx.changes.append(Change(kind=kind, path=target))

        if original is not None and not tx.backed_up(target):
            backup = self._store.backup_file(original)
            if backup is not None:
                tx.backups.append(Backup(path=target, backup_path=backup))
                logger.debug("Transaction %s: backed up %s -> %s", tx.name, original, backup)

        logger.debug("Transaction %s: recorded %s %s", tx.name, kind, target)

    def commit(self) -> None:
        if self._active is None:
            return
        logger.debug(
            "Transaction committed: %s (%d changes)",
            self._active.name, len(self._active.changes),
        )
        self._active = None

    def rollback(self) -> list[str]:
        """Undo the active transaction, best-effort.

        Backups are restored first, then un-backed-up changes are deleted
        newest first.  Failures are logged and collected, never raised.

        Returns:
            Failure messages (empty when everything was undone).
        """
        tx = self._active
        if tx is None:
            return []
        self._active = None

        logger.info("Rolling back transaction: %s", tx.name)
        failures: list[str] = []

        for backup in tx.backups:
            try:
                self._store.restore_backup(backup.backup_path, backup.path)
                logger.debug("Restored: %s", backup.path)
            except LabratError as e:
                logger.warning("Rollback: cannot restore %s: %s", backup.path, e.message)
                failures.append(f"restore {backup.path}: {e.message}")

        restored = {b.path for b in tx.backups}
        for change in reversed(tx.changes):
            if change.path in restored:
                continue
            try:
                _remove(change)
            except OSError as e:
                logger.warning("Rollback: cannot remove %s %s: %s", change.kind, change.path, e)
                failures.append(f"remove {change.path}: {e}")

        logger.info(
            "Rollback of %s complete (%d failure(s))", tx.name, len(failures),
        )
        return failures


def _remove(change: Change) -> None:
    path = change.path
    if change.kind == "dir":
        # rmdir only: a directory holding files nobody recorded stays put
        if path.is_dir() and not path.is_symlink():
            path.rmdir()
        return
    if path.is_symlink() or path.exists():
        path.unlink()
