"""
Safe file operations — atomic writes, secure permissions, backups.

Every write that other processes (or a later run) may read goes through
``AtomicFileStore.atomic_write``: the content lands in a hidden temp
file in the target's directory, the final mode is applied to that temp
file *before* any byte is written, the data is fsync'ed, and only then
is the temp file renamed over the target.  A reader sees either the old
file or the complete new one, never a prefix.

Failures raise the typed errors from ``labrat.core.errors``; nothing
here retries or exits.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
import re
import shutil
import stat
import tempfile
import time
from pathlib import Path

from labrat.core.errors import (
    ChecksumMismatch,
    FileNotFound,
    GeneralError,
    InvalidInput,
    PermissionDenied,
    from_os_error,
)

logger = logging.getLogger(__name__)

# ── Permission constants ────────────────────────────────────────

PERM_PRIVATE_FILE = 0o600
PERM_PRIVATE_DIR = 0o700
PERM_SCRIPT = 0o755
PERM_CONFIG_FILE = 0o644
PERM_CONFIG_DIR = 0o755

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
TEMP_PREFIX = ".tmp."

_DANGEROUS_CHARS = re.compile(r"[;|&$`<>]")


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def _reserve(directory: Path, stem: str) -> Path:
    """Claim a fresh ``<stem>[.N].bak`` in ``directory`` with ``O_EXCL``."""
    counter = 0
    while True:
        suffix = f".{counter}" if counter else ""
        candidate = directory / f"{stem}{suffix}.bak"
        try:
            fd = os.open(candidate, os.O_WRONLY | os.O_CREAT | os.O_EXCL, PERM_PRIVATE_FILE)
        except FileExistsError:
            counter += 1
            continue
        except OSError as e:
            raise PermissionDenied(f"Cannot create backup: {candidate}: {e}", path=str(candidate)) from e
        os.close(fd)
        return candidate


class AtomicFileStore:
    """Filesystem mutations with fixed permissions and rename semantics.

    Args:
        backups_dir: Where ``backup_file`` puts timestamped copies.
        temp_dir: Default parent for ``secure_temp`` / ``secure_temp_dir``.
    """

    def __init__(self, backups_dir: Path, temp_dir: Path | None = None):
        self.backups_dir = Path(backups_dir)
        self.temp_dir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())

    # ── Directories ─────────────────────────────────────────────

    def ensure_dir(self, path: Path | str, mode: int | None = PERM_CONFIG_DIR) -> Path:
        """Create ``path`` (and parents) if absent; re-apply ``mode`` otherwise.

        Re-applying the mode on an existing directory is best-effort:
        a chmod failure there is logged, not raised.

        Raises:
            InvalidInput: Empty path.
            PermissionDenied: The directory cannot be created or chmod'ed.
        """
        if not str(path):
            raise InvalidInput("ensure_dir: directory path required")
        target = Path(path)

        if target.is_dir():
            if mode:
                try:
                    os.chmod(target, mode)
                except OSError as e:
                    logger.debug("Cannot re-apply mode %o on %s: %s", mode, target, e)
            return target

        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PermissionDenied(f"Cannot create directory: {target}: {e}", path=str(target)) from e

        if mode:
            try:
                os.chmod(target, mode)
            except OSError as e:
                raise PermissionDenied(
                    f"Cannot set permissions on: {target}: {e}", path=str(target),
                ) from e

        logger.debug("Created directory: %s (mode: %o)", target, mode or 0)
        return target

    def ensure_private_dir(self, path: Path | str) -> Path:
        return self.ensure_dir(path, PERM_PRIVATE_DIR)

    def ensure_parent_dir(self, path: Path | str) -> Path:
        parent = Path(path).parent
        if str(parent) in ("", ".", "/"):
            return parent
        return self.ensure_dir(parent)

    # ── Temp files ──────────────────────────────────────────────

    def secure_temp(self, prefix: str = "labrat", directory: Path | None = None) -> Path:
        """Create an empty ``0600`` temp file and return its path."""
        parent = self.ensure_private_dir(directory or self.temp_dir)
        try:
            fd, name = tempfile.mkstemp(prefix=f"{prefix}.", dir=parent)
        except OSError as e:
            raise PermissionDenied(f"Cannot create temp file in: {parent}: {e}") from e
        os.fchmod(fd, PERM_PRIVATE_FILE)
        os.close(fd)
        return Path(name)

    def secure_temp_dir(self, prefix: str = "labrat", directory: Path | None = None) -> Path:
        """Create a ``0700`` temp directory and return its path."""
        parent = self.ensure_private_dir(directory or self.temp_dir)
        try:
            name = tempfile.mkdtemp(prefix=f"{prefix}.", dir=parent)
        except OSError as e:
            raise PermissionDenied(f"Cannot create temp directory in: {parent}: {e}") from e
        os.chmod(name, PERM_PRIVATE_DIR)
        return Path(name)

    # ── Atomic writes ───────────────────────────────────────────

    def atomic_write(
        self,
        path: Path | str,
        content: str | bytes,
        mode: int = PERM_CONFIG_FILE,
    ) -> Path:
        """Replace ``path`` with ``content`` atomically.

        The temp file gets ``mode`` before any content is written, so
        private data is never briefly world- or group-readable.

        Raises:
            InvalidInput: Empty path.
            PermissionDenied: Temp file cannot be created, chmod'ed or renamed.
            GeneralError: Content cannot be written or synced.
        """
        if not str(path):
            raise InvalidInput("atomic_write: target path required")

        target = Path(path)
        self.ensure_parent_dir(target)
        data = content.encode("utf-8") if isinstance(content, str) else content

        try:
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=TEMP_PREFIX)
        except OSError as e:
            raise PermissionDenied(
                f"Cannot create temp file in: {target.parent}: {e}", path=str(target),
            ) from e

        tmp = Path(tmp_name)
        try:
            try:
                os.fchmod(fd, mode)
            except OSError as e:
                raise PermissionDenied("Cannot set permissions on temp file", path=str(tmp)) from e
            try:
                _write_all(fd, data)
                os.fsync(fd)
            except OSError as e:
                raise GeneralError(f"Cannot write content to temp file: {e}", path=str(tmp)) from e
            finally:
                os.close(fd)
            try:
                os.replace(tmp, target)
            except OSError as e:
                raise PermissionDenied(
                    f"Cannot move temp file to target: {target}: {e}", path=str(target),
                ) from e
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        logger.debug("Atomic write complete: %s (mode: %o)", target, mode)
        return target

    # ── Copies ──────────────────────────────────────────────────

    def safe_copy(self, src: Path | str, dst: Path | str, mode: int | None = None) -> Path:
        """Copy ``src`` to ``dst`` through a temp file and rename.

        With ``mode`` the destination gets exactly that mode (install-style);
        without it, ``src``'s mode and timestamps are preserved.

        Raises:
            FileNotFound: ``src`` is missing or not a regular file.
            PermissionDenied: ``src`` unreadable or ``dst`` not writable.
        """
        source, target = Path(src), Path(dst)
        if not source.is_file():
            raise FileNotFound(f"Source file not found: {source}", path=str(source))
        if not os.access(source, os.R_OK):
            raise PermissionDenied(f"Source file not readable: {source}", path=str(source))

        self.ensure_parent_dir(target)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=TEMP_PREFIX)
        except OSError as e:
            raise PermissionDenied(f"Cannot copy {source} to {target}: {e}", path=str(target)) from e

        tmp = Path(tmp_name)
        try:
            if mode is not None:
                os.fchmod(fd, mode)
            os.close(fd)
            shutil.copyfile(source, tmp)
            if mode is None:
                shutil.copystat(source, tmp)
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise PermissionDenied(f"Cannot copy {source} to {target}: {e}", path=str(target)) from e

        logger.debug("Copied: %s -> %s", source, target)
        return target

    # ── Backups ─────────────────────────────────────────────────

    def backup_file(self, path: Path | str, backup_dir: Path | None = None) -> Path | None:
        """Copy ``path`` to ``<backup_dir>/<name>.<YYYYmmdd_HHMMSS>.bak``.

        Returns ``None`` when ``path`` does not exist.  Backups taken
        within the same second get a ``.1``, ``.2``... suffix so an
        existing backup is never overwritten.
        """
        source = Path(path)
        if not source.is_file():
            return None

        dest_dir = self.ensure_private_dir(backup_dir or self.backups_dir)
        stamp = time.strftime(BACKUP_TIMESTAMP_FORMAT)
        candidate = _reserve(dest_dir, f"{source.name}.{stamp}")

        try:
            shutil.copy2(source, candidate)
        except OSError as e:
            candidate.unlink(missing_ok=True)
            raise PermissionDenied(f"Cannot create backup: {candidate}: {e}", path=str(candidate)) from e

        logger.debug("Created backup: %s", candidate)
        return candidate

    def restore_backup(self, backup: Path | str, target: Path | str) -> Path:
        """Copy a backup back over ``target``, preserving the backup's mode."""
        source = Path(backup)
        if not source.is_file():
            raise FileNotFound(f"Backup file not found: {source}", path=str(source))
        restored = self.safe_copy(source, target)
        logger.debug("Restored from backup: %s -> %s", source, target)
        return restored

    # ── Symlinks ────────────────────────────────────────────────

    def safe_symlink(self, source: Path | str, target: Path | str) -> Path:
        """Point ``target`` at ``source``, replacing a file or stale link.

        Raises:
            InvalidInput: Empty arguments.
            FileNotFound: ``source`` does not exist.
            GeneralError: ``target`` is a real directory.
        """
        if not str(source) or not str(target):
            raise InvalidInput("safe_symlink: source and target required")
        src, link = Path(source), Path(target)
        if not src.exists():
            raise FileNotFound(f"Symlink source not found: {src}", path=str(src))

        self.ensure_parent_dir(link)
        if link.is_dir() and not link.is_symlink():
            raise GeneralError(f"Cannot replace directory with symlink: {link}", path=str(link))
        try:
            if link.exists() or link.is_symlink():
                link.unlink()
            link.symlink_to(src)
        except OSError as e:
            raise from_os_error(e, f"Cannot create symlink: {link} -> {src}", str(link)) from e

        logger.debug("Created symlink: %s -> %s", link, src)
        return link

    # ── Checksums ───────────────────────────────────────────────

    def checksum_sha256(self, path: Path | str) -> str:
        target = Path(path)
        if not target.is_file():
            raise FileNotFound(f"File not found: {target}", path=str(target))
        digest = hashlib.sha256()
        try:
            with target.open("rb") as f:
                for chunk in iter(lambda: f.read(65536), b""):
                    digest.update(chunk)
        except OSError as e:
            raise from_os_error(e, f"Cannot read {target}", str(target)) from e
        return digest.hexdigest()

    def verify_checksum(self, path: Path | str, expected: str) -> None:
        """Raise ``ChecksumMismatch`` unless ``path`` hashes to ``expected``."""
        actual = self.checksum_sha256(path)
        if actual.lower() != expected.strip().lower():
            logger.error("Checksum mismatch for %s", path)
            raise ChecksumMismatch(str(path), expected, actual)
        logger.debug("Checksum verified: %s", path)

    # ── Validation / inspection ─────────────────────────────────

    @staticmethod
    def validate_path(path: Path | str) -> None:
        """Reject empty paths, NUL bytes and shell metacharacters."""
        value = str(path)
        if not value:
            raise InvalidInput("validate_path: empty path")
        if "\x00" in value:
            raise InvalidInput("validate_path: NUL byte in path")
        if "$(" in value or _DANGEROUS_CHARS.search(value):
            raise InvalidInput(f"validate_path: dangerous characters in path: {value!r}")

    @staticmethod
    def check_permissions(path: Path | str, expected: int) -> bool:
        """Whether ``path``'s permission bits equal ``expected``."""
        target = Path(path)
        if not target.exists():
            raise FileNotFound(f"check_permissions: file not found: {target}", path=str(target))
        actual = stat.S_IMODE(target.stat().st_mode)
        if actual != expected:
            logger.info("Permission mismatch: %s (expected: %o, got: %o)", target, expected, actual)
            return False
        return True

    @staticmethod
    def is_secure(path: Path | str) -> bool:
        """No world permission bits.  A missing file counts as secure."""
        target = Path(path)
        if not target.exists():
            return True
        return stat.S_IMODE(target.stat().st_mode) & 0o007 == 0

    def cleanup_old_files(self, directory: Path | str, pattern: str = "*", days: int = 7) -> int:
        """Delete regular files in ``directory`` matching ``pattern`` older than ``days``."""
        root = Path(directory)
        if not root.is_dir():
            return 0
        cutoff = time.time() - days * 86400
        removed = 0
        for entry in root.iterdir():
            if not entry.is_file() or not fnmatch.fnmatch(entry.name, pattern):
                continue
            try:
                if entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except OSError as e:
                logger.warning("Cannot remove old file %s: %s", entry, e)
        logger.debug("Cleaned up %d file(s) older than %d days in: %s", removed, days, root)
        return removed
