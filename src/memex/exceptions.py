"""
Custom exceptions for Memex.

Every error surfaced to callers carries a stable machine-readable
:class:`ErrorCode`, a human-readable message and optional structured
context, so automated callers can branch on the code without parsing prose.
"""

import enum
from typing import Any, Optional


class ErrorCode(str, enum.Enum):
    """Stable error categories."""

    DB_CONNECTION_FAILED = "DB_CONNECTION_FAILED"
    DB_CORRUPTED = "DB_CORRUPTED"
    DB_LOCKED = "DB_LOCKED"
    DISK_FULL = "DISK_FULL"
    INVALID_SESSION_ID = "INVALID_SESSION_ID"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    SOURCE_INACCESSIBLE = "SOURCE_INACCESSIBLE"
    INVALID_JSON = "INVALID_JSON"
    UNKNOWN_FORMAT = "UNKNOWN_FORMAT"
    SYNC_INTERRUPTED = "SYNC_INTERRUPTED"
    SYNC_FAILED = "SYNC_FAILED"
    INVALID_QUERY = "INVALID_QUERY"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INVALID_EXPORT = "INVALID_EXPORT"
    MISSING_ARGUMENT = "MISSING_ARGUMENT"
    UNKNOWN = "UNKNOWN"


# Codes caused by what the user typed rather than by the system
USER_ERROR_CODES = frozenset(
    {
        ErrorCode.INVALID_SESSION_ID,
        ErrorCode.SESSION_NOT_FOUND,
        ErrorCode.NOT_FOUND,
        ErrorCode.INVALID_QUERY,
        ErrorCode.INVALID_ARGUMENT,
        ErrorCode.INVALID_EXPORT,
        ErrorCode.MISSING_ARGUMENT,
    }
)


def is_user_error(code: ErrorCode) -> bool:
    """Return True if the error code describes bad user input."""
    return code in USER_ERROR_CODES


class MemexError(Exception):
    """Base class for all coded Memex errors."""

    default_code = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``{"error": {...}}`` envelope used for JSON output."""
        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.context:
            error["context"] = self.context
        return {"error": error}


class DatabaseError(MemexError):
    """The database could not be opened or used."""

    default_code = ErrorCode.DB_CONNECTION_FAILED


class DatabaseLockedError(DatabaseError):
    """Another writer held the lock past the busy timeout."""

    default_code = ErrorCode.DB_LOCKED


class DatabaseCorruptedError(DatabaseError):
    """Structural integrity check failed."""

    default_code = ErrorCode.DB_CORRUPTED


class DiskFullError(DatabaseError):
    default_code = ErrorCode.DISK_FULL


class InvalidQueryError(MemexError):
    """Search query text or filter was rejected before touching the store."""

    default_code = ErrorCode.INVALID_QUERY


class InvalidArgumentError(MemexError):
    default_code = ErrorCode.INVALID_ARGUMENT


class InvalidExportError(MemexError):
    """A backup file is missing, unreadable or not in the export format."""

    default_code = ErrorCode.INVALID_EXPORT


class NotFoundError(MemexError):
    """A session or other entity lookup missed."""

    default_code = ErrorCode.NOT_FOUND


class SourceInaccessibleError(MemexError):
    """A session source file or directory could not be read."""

    default_code = ErrorCode.SOURCE_INACCESSIBLE


class SyncError(MemexError):
    default_code = ErrorCode.SYNC_FAILED


def classify_db_error(exc: BaseException, context: Optional[dict[str, Any]] = None) -> MemexError:
    """
    Map a low-level database exception onto a coded :class:`MemexError`.

    Works with both ``sqlite3`` errors and SQLAlchemy wrappers, which expose
    the driver error through ``orig``.

    Args:
        exc: Exception raised by the driver or SQLAlchemy
        context: Optional structured context to attach

    Returns:
        The most specific coded error for the failure
    """
    if isinstance(exc, MemexError):
        return exc

    original = getattr(exc, "orig", None) or exc
    text = str(original).lower()

    if "database is locked" in text or "database is busy" in text:
        return DatabaseLockedError(
            "Database is locked by another process", context=context
        )
    if "disk is full" in text or "database or disk is full" in text:
        return DiskFullError("Disk is full", context=context)
    if "malformed" in text or "not a database" in text:
        return DatabaseCorruptedError(
            f"Database file is corrupted: {original}", context=context
        )
    if "unable to open" in text:
        return DatabaseError(f"Unable to open database: {original}", context=context)

    return MemexError(str(original), code=ErrorCode.UNKNOWN, context=context)
