from __future__ import annotations

import errno
import enum
from typing import Optional


class ErrorKind(enum.Enum):
    NOT_FOUND = "not_found"
    INVALID_TYPE = "invalid_type"
    PERMISSION_DENIED = "permission_denied"
    DISK_FULL = "disk_full"
    DIRECTORY_CREATION_FAILED = "directory_creation_failed"
    CONFIG_ERROR = "config_error"
    CANCELLED = "cancelled"
    VERIFICATION_FAILED = "verification_failed"
    CORRUPTION_INJECTION_FAILED = "corruption_injection_failed"
    RENAME_FAILED = "rename_failed"
    ALREADY_EXISTS = "already_exists"
    INTERNAL = "internal"


class DirsnapError(Exception):
    """Base class for dirsnap errors.

    Every error raised out of a builder or the verifier is one of the
    subclasses below, carrying the operation name and the path involved so a
    caller can map it to an exit code.
    """

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, operation: str = "", path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.path = None if path is None else str(path)

    def __str__(self) -> str:
        parts = []
        if self.operation:
            parts.append(f"{self.operation}: ")
        parts.append(self.message)
        if self.path:
            parts.append(f" ({self.path})")
        cause = self.__cause__
        if cause is not None:
            parts.append(f": {cause}")
        return "".join(parts)


# Source validation
class NotFoundError(DirsnapError):
    kind = ErrorKind.NOT_FOUND


class InvalidTypeError(DirsnapError):
    kind = ErrorKind.INVALID_TYPE


class PermissionDeniedError(DirsnapError):
    kind = ErrorKind.PERMISSION_DENIED


# Writing
class DiskFullError(DirsnapError):
    kind = ErrorKind.DISK_FULL


class DirectoryCreationError(DirsnapError):
    kind = ErrorKind.DIRECTORY_CREATION_FAILED


class AtomicRenameError(DirsnapError):
    """Raised when the final rename of a temp file fails.

    ``cross_device`` is set when the platform reported EXDEV; callers may
    retry with copy semantics themselves.
    """

    kind = ErrorKind.RENAME_FAILED

    def __init__(self, message: str, *, operation: str = "", path: Optional[str] = None, cross_device: bool = False):
        super().__init__(message, operation=operation, path=path)
        self.cross_device = cross_device


class SnapshotExistsError(DirsnapError):
    """A snapshot with the computed name is already on disk; snapshots are never overwritten."""

    kind = ErrorKind.ALREADY_EXISTS


class ConfigError(DirsnapError):
    kind = ErrorKind.CONFIG_ERROR


class CancelledError(DirsnapError):
    kind = ErrorKind.CANCELLED


class VerificationFailedError(DirsnapError):
    kind = ErrorKind.VERIFICATION_FAILED

    def __init__(self, message: str, *, operation: str = "", path: Optional[str] = None, errors=None):
        super().__init__(message, operation=operation, path=path)
        self.errors = list(errors or [])


class CorruptionInjectionError(DirsnapError):
    kind = ErrorKind.CORRUPTION_INJECTION_FAILED


class InternalError(DirsnapError):
    kind = ErrorKind.INTERNAL


DISK_FULL_MARKERS = (
    "no space left on device",
    "no space left",
    "disk full",
    "not enough space",
    "insufficient disk space",
    "device full",
    "quota exceeded",
    "disk quota exceeded",
    "file too large",
)

PERMISSION_MARKERS = (
    "permission denied",
    "access denied",
    "operation not permitted",
    "insufficient privileges",
)

NOT_FOUND_MARKERS = (
    "no such file or directory",
    "cannot find the path",
    "directory not found",
)

_DISK_FULL_ERRNOS = {errno.ENOSPC, errno.EFBIG} | ({errno.EDQUOT} if hasattr(errno, "EDQUOT") else set())
_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM}


def _matches(exc: BaseException, markers) -> bool:
    text = str(exc).lower()
    return any(m in text for m in markers)


def is_disk_full_error(exc: BaseException) -> bool:
    if isinstance(exc, DiskFullError):
        return True
    if isinstance(exc, OSError) and exc.errno in _DISK_FULL_ERRNOS:
        return True
    return _matches(exc, DISK_FULL_MARKERS)


def is_permission_error(exc: BaseException) -> bool:
    if isinstance(exc, (PermissionError, PermissionDeniedError)):
        return True
    if isinstance(exc, OSError) and exc.errno in _PERMISSION_ERRNOS:
        return True
    return _matches(exc, PERMISSION_MARKERS)


def is_not_found_error(exc: BaseException) -> bool:
    if isinstance(exc, (FileNotFoundError, NotFoundError)):
        return True
    if isinstance(exc, OSError) and exc.errno == errno.ENOENT:
        return True
    return _matches(exc, NOT_FOUND_MARKERS)


def classify_os_error(
    exc: BaseException,
    operation: str,
    path: Optional[str] = None,
    *,
    default=InternalError,
    message: Optional[str] = None,
) -> DirsnapError:
    """Translate a raw exception into a classified :class:`DirsnapError`.

    Disk-full is checked first: the platform error for a full device is not
    always a typed ENOSPC, so the message text is matched as well.
    """
    if isinstance(exc, DirsnapError):
        return exc
    if is_disk_full_error(exc):
        err: DirsnapError = DiskFullError(message or "insufficient disk space", operation=operation, path=path)
    elif is_permission_error(exc):
        err = PermissionDeniedError(message or "permission denied", operation=operation, path=path)
    elif is_not_found_error(exc):
        err = NotFoundError(message or "path not found", operation=operation, path=path)
    else:
        err = default(message or str(exc) or exc.__class__.__name__, operation=operation, path=path)
    err.__cause__ = exc
    return err
