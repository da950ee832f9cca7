"""
File locks — exclusive, timeout-bounded ``flock`` on a sentinel file.

The lock file never holds content; it only exists as a ``flock`` target.
Acquisition polls a non-blocking ``LOCK_EX`` until ``timeout`` elapses,
then raises ``LockFailed``.  Locks are advisory and cross-process: two
installer runs sharing a data directory serialize on the same file.

Re-entrant locking is NOT supported.  Acquiring a path this process
already holds opens a second file description, which conflicts with
the first, so the call waits out its timeout and raises ``LockFailed``.
Structure callers so guarded sections never nest.
"""

from __future__ import annotations

import fcntl
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Iterator, TypeVar

from labrat.core.errors import InvalidInput, LockFailed, PermissionDenied

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0
_POLL_INTERVAL = 0.05

T = TypeVar("T")


@dataclass
class LockToken:
    """A held lock.  Pass back to ``LockManager.release``."""

    path: Path
    timeout: float
    handle: IO[Any] | None = field(default=None, repr=False)
    acquired_at: float = field(default_factory=time.monotonic)

    @property
    def held(self) -> bool:
        return self.handle is not None and not self.handle.closed


class LockManager:
    """Acquire and release file locks.

    One manager per process is the normal arrangement; the core passes a
    single instance around so the manifest and rc-file edits share it.
    """

    def __init__(
        self,
        default_timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = _POLL_INTERVAL,
    ):
        self._default_timeout = default_timeout
        self._poll_interval = poll_interval
        self._held: list[LockToken] = []

    @property
    def held(self) -> list[LockToken]:
        """Tokens currently held through this manager."""
        return [t for t in self._held if t.held]

    def acquire(self, path: Path | str, timeout: float | None = None) -> LockToken:
        """Open (creating if needed) ``path`` and take an exclusive lock on it.

        Raises:
            InvalidInput: Empty path.
            PermissionDenied: The lock directory cannot be created.
            LockFailed: The file cannot be opened, or the lock is still
                held elsewhere after ``timeout`` seconds.
        """
        if not str(path):
            raise InvalidInput("acquire: lock path required")

        lock_path = Path(path)
        wait = self._default_timeout if timeout is None else timeout

        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PermissionDenied(
                f"Cannot create lock directory: {lock_path.parent}: {e}",
                path=str(lock_path.parent),
            ) from e

        try:
            handle = open(lock_path, "a+", encoding="utf-8")
        except OSError as e:
            logger.error("Cannot open lock file %s: %s", lock_path, e)
            raise LockFailed(f"Cannot open lock file: {lock_path}", path=str(lock_path)) from e

        deadline = time.monotonic() + max(wait, 0.0)
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    logger.error(
                        "Cannot acquire lock (timeout after %ss): %s", wait, lock_path,
                    )
                    raise LockFailed(
                        f"Cannot acquire lock (timeout after {wait}s): {lock_path}",
                        path=str(lock_path),
                    ) from None
                time.sleep(self._poll_interval)
            except OSError as e:
                handle.close()
                raise LockFailed(f"Cannot lock {lock_path}: {e}", path=str(lock_path)) from e

        token = LockToken(path=lock_path, timeout=wait, handle=handle)
        self._held.append(token)
        logger.debug("Acquired lock: %s", lock_path)
        return token

    def release(self, token: LockToken) -> None:
        """Release a held lock.  Releasing twice is a no-op."""
        handle = token.handle
        if handle is None or handle.closed:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.warning("Failed to unlock %s: %s", token.path, e)
        finally:
            handle.close()
            token.handle = None
            if token in self._held:
                self._held.remove(token)
        logger.debug("Released lock: %s", token.path)

    @contextmanager
    def locked(self, path: Path | str, timeout: float | None = None) -> Iterator[LockToken]:
        """Scoped acquire with guaranteed release on every exit path."""
        token = self.acquire(path, timeout)
        try:
            yield token
        finally:
            self.release(token)

    def with_lock(
        self,
        path: Path | str,
        fn: Callable[..., T],
        *args: Any,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> T:
        """Run ``fn(*args, **kwargs)`` while holding the lock on ``path``.

        Returns whatever ``fn`` returns; exceptions from ``fn`` propagate
        after the lock is released.
        """
        with self.locked(path, timeout):
            return fn(*args, **kwargs)

    def release_all(self) -> None:
        for token in list(self._held):
            self.release(token)


def is_locked(path: Path) -> bool:
    """Whether another file description currently holds ``path``.

    Used by status output only; the answer may be stale immediately.
    """
    if not path.is_file():
        return False
    with open(path, "a+", encoding="utf-8") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    return False
