"""
Error taxonomy — typed exceptions raised by the core primitives.

Every primitive (file store, locks, transactions, manifest) raises one
of these instead of leaking raw ``OSError``s.  Each carries a numeric
code so the CLI can map it to a process exit status:

    LabratError
    ├── GeneralError          (1)
    │   └── ConfigError
    ├── PermissionDenied      (4)
    ├── FileNotFound          (5)
    ├── InvalidInput          (6)
    │   ├── CyclicDependency
    │   └── TransactionError
    ├── ModuleFailed          (7)
    ├── LockFailed            (8)
    └── ChecksumMismatch      (9)

The core never calls ``sys.exit``; callers decide whether to continue.
"""

from __future__ import annotations

# ── Exit codes ──────────────────────────────────────────────────

E_SUCCESS = 0
E_GENERAL = 1
E_MISSING_DEP = 2
E_NETWORK = 3
E_PERMISSION = 4
E_FILE_NOT_FOUND = 5
E_INVALID_INPUT = 6
E_MODULE_FAILED = 7
E_LOCK_FAILED = 8
E_CHECKSUM_MISMATCH = 9
E_TIMEOUT = 10

_CODE_MESSAGES = {
    E_SUCCESS: "Success",
    E_GENERAL: "General error",
    E_MISSING_DEP: "Missing dependency",
    E_NETWORK: "Network error",
    E_PERMISSION: "Permission denied",
    E_FILE_NOT_FOUND: "File not found",
    E_INVALID_INPUT: "Invalid input",
    E_MODULE_FAILED: "Module installation failed",
    E_LOCK_FAILED: "Could not acquire lock",
    E_CHECKSUM_MISMATCH: "Checksum verification failed",
    E_TIMEOUT: "Operation timed out",
}


def error_code_message(code: int) -> str:
    """Human-readable description of an exit code."""
    return _CODE_MESSAGES.get(code, f"Unknown error (code: {code})")


class LabratError(Exception):
    """Base class for every error raised by the core."""

    code: int = E_GENERAL

    def __init__(self, message: str = "", *, path: str | None = None):
        super().__init__(message or error_code_message(self.code))
        self.message = message or error_code_message(self.code)
        self.path = path

    @property
    def kind(self) -> str:
        """Taxonomy name, e.g. ``"LockFailed"``."""
        return type(self).__name__

    def to_dict(self) -> dict:
        data = {"kind": self.kind, "code": self.code, "message": self.message}
        if self.path:
            data["path"] = self.path
        return data


class GeneralError(LabratError):
    """OS-level failure not otherwise classified."""

    code = E_GENERAL


class ConfigError(GeneralError):
    """Raised when settings or the module catalog are invalid."""


class PermissionDenied(LabratError):
    code = E_PERMISSION


class FileNotFound(LabratError):
    code = E_FILE_NOT_FOUND


class InvalidInput(LabratError):
    code = E_INVALID_INPUT


class CyclicDependency(InvalidInput):
    """A module's required dependencies loop back to itself."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class TransactionError(InvalidInput):
    """Transaction API misuse (e.g. ``begin`` while one is active)."""


class ModuleFailed(LabratError):
    code = E_MODULE_FAILED

    def __init__(self, module: str, message: str = ""):
        self.module = module
        super().__init__(message or f"Module '{module}' failed to install")


class LockFailed(LabratError):
    """Timed out (or could not open the file) acquiring a lock."""

    code = E_LOCK_FAILED


class ChecksumMismatch(LabratError):
    code = E_CHECKSUM_MISMATCH

    def __init__(self, path: str, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {path} (expected: {expected}, got: {actual})",
            path=path,
        )


def from_os_error(exc: OSError, message: str, path: str | None = None) -> LabratError:
    """Translate an ``OSError`` into the matching taxonomy error."""
    if isinstance(exc, PermissionError):
        return PermissionDenied(f"{message}: {exc}", path=path)
    if isinstance(exc, FileNotFoundError):
        return FileNotFound(f"{message}: {exc}", path=path)
    return GeneralError(f"{message}: {exc}", path=path)
