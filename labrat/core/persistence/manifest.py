"""
Manifest persistence — the durable record of installed modules.

Every mutation runs the same critical section::

    acquire lock → read (or create) → mutate → bump updated_at
                 → atomic write → legacy markers → release lock

so a reader never sees a half-written document and two installer
processes cannot lose each other's updates.  Reads take no lock: the
rename in ``atomic_write`` already guarantees a complete document.

Legacy markers (``<data>/installed/<module>`` holding the version) are a
write-through copy of ``modules``.  They are only read back once, to
seed a brand-new manifest on a machine that predates it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from labrat.core.config.loader import Settings
from labrat.core.errors import GeneralError, InvalidInput, from_os_error
from labrat.core.models.manifest import (
    SHELL_KINDS,
    ManifestDocument,
    ManifestEntry,
    now_iso,
)
from labrat.core.persistence.file_ops import (
    PERM_CONFIG_FILE,
    AtomicFileStore,
)
from labrat.core.persistence.locks import LockManager

logger = logging.getLogger(__name__)


class Manifest:
    """Read and mutate ``manifest.json`` under the global lock.

    Args:
        path: The manifest file.
        lock_path: Shared lock file (also guards rc-file edits).
        markers_dir: Legacy marker directory.
        store: File store used for every write.
        locks: Lock manager used for every mutation.
        lock_timeout: Seconds to wait for the lock (``None``: manager default).
        labrat_version: Stamped into newly created documents.
    """

    def __init__(
        self,
        path: Path,
        lock_path: Path,
        markers_dir: Path,
        store: AtomicFileStore,
        locks: LockManager,
        lock_timeout: float | None = None,
        labrat_version: str = "dev",
    ):
        self.path = Path(path)
        self.lock_path = Path(lock_path)
        self.markers_dir = Path(markers_dir)
        self._store = store
        self._locks = locks
        self._lock_timeout = lock_timeout
        self._labrat_version = labrat_version

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: AtomicFileStore | None = None,
        locks: LockManager | None = None,
    ) -> Manifest:
        return cls(
            path=settings.manifest_path,
            lock_path=settings.lock_path,
            markers_dir=settings.markers_dir,
            store=store or AtomicFileStore(settings.backups_dir),
            locks=locks or LockManager(settings.lock_timeout),
            lock_timeout=settings.lock_timeout,
            labrat_version=settings.labrat_version,
        )

    # ── Reading ─────────────────────────────────────────────────

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> ManifestDocument:
        """Current document, or an unsaved empty one if none exists yet.

        Raises:
            GeneralError: The file exists but is not a valid manifest.
        """
        doc = self._read()
        if doc is None:
            return ManifestDocument(labrat_version=self._labrat_version)
        return doc

    def has_module(self, name: str) -> bool:
        return name in self.load().modules

    def get_version(self, name: str) -> str | None:
        entry = self.load().modules.get(name)
        return entry.version if entry else None

    def get_entry(self, name: str) -> ManifestEntry | None:
        return self.load().modules.get(name)

    def list_modules(self) -> list[str]:
        return sorted(self.load().modules)

    def export(self) -> dict[str, Any]:
        """The raw on-disk document (``{}`` when there is none)."""
        if not self.path.is_file():
            return {}
        try:
            return json.loads(self._read_raw())
        except json.JSONDecodeError as e:
            raise GeneralError(f"Manifest is not valid JSON: {e}", path=str(self.path)) from e

    def verify(self) -> bool:
        """Whether the manifest exists, parses, and matches the schema."""
        if not self.path.is_file():
            logger.warning("Manifest file not found: %s", self.path)
            return False
        try:
            self._read()
        except GeneralError as e:
            logger.error("Manifest is invalid: %s", e.message)
            return False
        logger.debug("Manifest is valid: %s", self.path)
        return True

    def show(self) -> dict[str, Any]:
        """Summary used by ``labrat manifest show``."""
        if not self.path.is_file():
            return {"path": str(self.path), "exists": False, "modules": []}

        doc = self.load()
        return {
            "path": str(self.path),
            "exists": True,
            "version": doc.version,
            "labrat_version": doc.labrat_version,
            "created_at": doc.created_at,
            "updated_at": doc.updated_at,
            "module_count": len(doc.modules),
            "modules": [
                {
                    "name": name,
                    "version": entry.version,
                    "installed_at": entry.installed_at,
                    "updated_at": entry.updated_at,
                    "shell_integration": entry.shell_integration,
                }
                for name, entry in sorted(doc.modules.items())
            ],
            "shell_integration": doc.shell_integration.model_dump(mode="json"),
        }

    # ── Mutations ───────────────────────────────────────────────

    def init(self) -> ManifestDocument:
        """Create the manifest if absent (seeding it from legacy markers)."""
        with self._locked():
            doc = self._read()
            if doc is not None:
                return doc
            doc = self._create()
            self._write(doc)
            return doc

    def upsert_module(self, name: str, version: str = "unknown", shell_integration: bool = False) -> ManifestEntry:
        """Add or update one module entry, then its legacy marker.

        ``installed_at`` survives re-upserts; the entry's ``updated_at``
        only moves when the version or shell flag actually changes.
        """
        _require_name(name)
        version = version or "unknown"

        with self._locked():
            doc = self._read_or_create()
            entry = doc.modules.get(name)
            if entry is None:
                stamp = now_iso()
                entry = ManifestEntry(
                    name=name,
                    version=version,
                    installed_at=stamp,
                    updated_at=stamp,
                    shell_integration=shell_integration,
                )
                doc.modules[name] = entry
            elif entry.version != version or entry.shell_integration != shell_integration:
                entry.version = version
                entry.shell_integration = shell_integration
                entry.updated_at = now_iso()

            doc.touch()
            self._write(doc)
            self._write_marker(name, version)

        logger.debug("Manifest: upserted module %s (v%s)", name, version)
        return entry

    def remove_module(self, name: str) -> bool:
        """Drop a module entry and its marker.  Returns whether it was present."""
        _require_name(name)
        with self._locked():
            doc = self._read_or_create()
            present = doc.modules.pop(name, None) is not None
            doc.touch()
            self._write(doc)
            self._remove_marker(name)

        logger.debug("Manifest: removed module %s", name)
        return present

    def set_hooks_installed(self, shells: Iterable[str]) -> list[str]:
        hooks: list[str] = []
        for shell in shells:
            if shell not in SHELL_KINDS:
                raise InvalidInput(f"Unknown shell kind: {shell}")
            if shell not in hooks:
                hooks.append(shell)

        with self._locked():
            doc = self._read_or_create()
            doc.shell_integration.hooks_installed = hooks
            doc.touch()
            self._write(doc)

        logger.debug("Manifest: hooks installed for %s", ", ".join(hooks) or "none")
        return hooks

    def set_backups_done(self) -> None:
        with self._locked():
            doc = self._read_or_create()
            doc.shell_integration.original_backups = True
            doc.shell_integration.backup_date = now_iso()
            doc.touch()
            self._write(doc)

    def clear(self) -> None:
        """Delete the manifest file.  Markers are left alone."""
        with self._locked():
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                raise from_os_error(e, "Cannot remove manifest", str(self.path)) from e
        logger.debug("Manifest cleared")

    # ── Legacy markers ──────────────────────────────────────────

    def marker_version(self, name: str) -> str | None:
        marker = self.markers_dir / name
        if not marker.is_file():
            return None
        return marker.read_text(encoding="utf-8").strip() or "unknown"

    def check_markers(self) -> dict[str, list[str]]:
        """Compare markers against the manifest.

        Returns a dict with ``missing`` (in manifest, no marker),
        ``orphaned`` (marker, not in manifest) and ``mismatched``
        (versions differ).  All empty means they agree.
        """
        return self._drift(self.load())

    def sync_markers(self) -> dict[str, list[str]]:
        """Rewrite markers from the manifest and delete orphans.

        Without a manifest, one is created from the markers first, so
        syncing never deletes the only record of an install.
        """
        with self._locked():
            doc = self._read()
            if doc is None:
                doc = self._create()
                self._write(doc)
            drift = self._drift(doc)
            for name in drift["missing"] + drift["mismatched"]:
                self._write_marker(name, doc.modules[name].version)
            for name in drift["orphaned"]:
                self._remove_marker(name)

        if any(drift.values()):
            logger.info(
                "Markers synced: %d written, %d removed",
                len(drift["missing"]) + len(drift["mismatched"]), len(drift["orphaned"]),
            )
        return drift

    # ── Internals ───────────────────────────────────────────────

    def _locked(self):
        return self._locks.locked(self.lock_path, self._lock_timeout)

    def _read_raw(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise GeneralError(f"Manifest is not valid UTF-8: {e}", path=str(self.path)) from e
        except OSError as e:
            raise from_os_error(e, "Cannot read manifest", str(self.path)) from e

    def _read(self) -> ManifestDocument | None:
        if not self.path.is_file():
            return None
        raw = self._read_raw()
        try:
            return ManifestDocument.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            raise GeneralError(f"Manifest is not valid JSON: {e}", path=str(self.path)) from e
        except ValidationError as e:
            raise GeneralError(f"Manifest does not match schema: {e}", path=str(self.path)) from e

    def _read_or_create(self) -> ManifestDocument:
        doc = self._read()
        return doc if doc is not None else self._create()

    def _create(self) -> ManifestDocument:
        doc = ManifestDocument(labrat_version=self._labrat_version)
        imported = 0
        for name in sorted(self._marker_names()):
            doc.modules[name] = ManifestEntry(
                name=name, version=self.marker_version(name) or "unknown",
            )
            imported += 1
        if imported:
            logger.info("Imported %d legacy marker(s) into new manifest", imported)
        logger.debug("Created new manifest: %s", self.path)
        return doc

    def _write(self, doc: ManifestDocument) -> None:
        content = json.dumps(doc.to_json_dict(), indent=2, ensure_ascii=False) + "\n"
        self._store.atomic_write(self.path, content, PERM_CONFIG_FILE)

    def _drift(self, doc: ManifestDocument) -> dict[str, list[str]]:
        markers = self._marker_names()
        missing = sorted(n for n in doc.modules if n not in markers)
        orphaned = sorted(n for n in markers if n not in doc.modules)
        mismatched = sorted(
            n for n, entry in doc.modules.items()
            if n in markers and self.marker_version(n) != entry.version
        )
        return {"missing": missing, "orphaned": orphaned, "mismatched": mismatched}

    def _marker_names(self) -> set[str]:
        if not self.markers_dir.is_dir():
            return set()
        return {
            p.name for p in self.markers_dir.iterdir()
            if p.is_file() and not p.name.startswith(".")
        }

    def _write_marker(self, name: str, version: str) -> None:
        self._store.ensure_dir(self.markers_dir)
        self._store.atomic_write(self.markers_dir / name, f"{version}\n", PERM_CONFIG_FILE)

    def _remove_marker(self, name: str) -> None:
        try:
            (self.markers_dir / name).unlink(missing_ok=True)
        except OSError as e:
            raise from_os_error(e, f"Cannot remove marker for {name}", str(self.markers_dir / name)) from e


def _require_name(name: str) -> None:
    if not name or "/" in name or name.startswith("."):
        raise InvalidInput(f"Invalid module name: {name!r}")
