"""Error taxonomy for the session and query layer."""

from __future__ import annotations

from typing import Any, Awaitable, Dict, Optional, Type


class ErrorCode:
    """Error codes attached to every kvsession exception."""
    UNKNOWN = "UNKNOWN"
    SESSION_CLOSED = "SESSION_CLOSED"
    INVALID_RANGE_KEY = "INVALID_RANGE_KEY"
    CONFLICTING_RANGE_KEYS = "CONFLICTING_RANGE_KEYS"
    STORE = "STORE"
    CONSTRAINT = "CONSTRAINT"
    DATA = "DATA"
    NOT_FOUND = "NOT_FOUND"
    READ_ONLY = "READ_ONLY"
    VERSION = "VERSION"
    INVALID_STATE = "INVALID_STATE"
    BLOCKED = "BLOCKED"
    NAME_COLLISION = "NAME_COLLISION"


class KvSessionError(Exception):
    """Base exception class for all kvsession errors."""

    def __init__(self, message: str, code: str = ErrorCode.UNKNOWN):
        super().__init__(message)
        self.code = code


class SessionClosedError(KvSessionError):
    """Error raised when an operation is attempted on a closed session."""

    def __init__(self, message: str = "session has been closed"):
        super().__init__(message, ErrorCode.SESSION_CLOSED)


class InvalidRangeKeyError(KvSessionError):
    """Error raised when a single-key comparison uses an unknown operator."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.INVALID_RANGE_KEY)


class ConflictingRangeKeysError(KvSessionError):
    """Error raised when comparison operators cannot form one range."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.CONFLICTING_RANGE_KEYS)


class StoreError(KvSessionError):
    """Failure reported by the underlying store.

    ``name`` keeps the store's own error name (``ConstraintError``,
    ``DataError``...) and the original exception is chained as ``__cause__``.
    """

    def __init__(self, message: str, *, name: Optional[str] = None, code: str = ErrorCode.STORE):
        super().__init__(message, code)
        self.name = name or "UnknownError"


class ConstraintError(StoreError):
    """Duplicate primary key or unique index violation."""

    def __init__(self, message: str, *, name: Optional[str] = None):
        super().__init__(message, name=name or "ConstraintError", code=ErrorCode.CONSTRAINT)


class DataError(StoreError):
    """Invalid key, key range or record shape."""

    def __init__(self, message: str, *, name: Optional[str] = None):
        super().__init__(message, name=name or "DataError", code=ErrorCode.DATA)


class NotFoundError(StoreError):
    """Unknown collection or index."""

    def __init__(self, message: str, *, name: Optional[str] = None):
        super().__init__(message, name=name or "NotFoundError", code=ErrorCode.NOT_FOUND)


class ReadOnlyError(StoreError):
    """Write attempted inside a read-only transaction."""

    def __init__(self, message: str, *, name: Optional[str] = None):
        super().__init__(message, name=name or "ReadOnlyError", code=ErrorCode.READ_ONLY)


class VersionError(StoreError):
    """Requested version is lower than the stored version."""

    def __init__(self, message: str, *, name: Optional[str] = None):
        super().__init__(message, name=name or "VersionError", code=ErrorCode.VERSION)


class InvalidStateError(StoreError):
    """Operation issued against a finished transaction or an exhausted cursor."""

    def __init__(self, message: str, *, name: Optional[str] = None):
        super().__init__(message, name=name or "InvalidStateError", code=ErrorCode.INVALID_STATE)


class BlockedUpgradeError(StoreError):
    """Open or delete blocked by another live connection.

    ``resume`` is an awaitable that completes the original request once the
    blocking connections close; awaiting it yields what the blocked call
    would have returned.
    """

    def __init__(
        self,
        message: str,
        *,
        resume: Optional[Awaitable[Any]] = None,
        old_version: int = 0,
        new_version: Optional[int] = None,
    ):
        super().__init__(message, name="BlockedError", code=ErrorCode.BLOCKED)
        self.resume = resume
        self.old_version = old_version
        self.new_version = new_version


class NameCollisionError(KvSessionError):
    """Collection name collides with a session attribute."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.NAME_COLLISION)


# Map of store error names to their corresponding exception classes
_ERROR_CLASS_MAP: Dict[str, Type[StoreError]] = {
    "ConstraintError": ConstraintError,
    "DataError": DataError,
    "NotFoundError": NotFoundError,
    "ReadOnlyError": ReadOnlyError,
    "VersionError": VersionError,
    "InvalidStateError": InvalidStateError,
    "TransactionInactiveError": InvalidStateError,
}


def wrap_store_error(err: BaseException) -> KvSessionError:
    """Translate an exception from the store layer into a typed error.

    Args:
        err: The exception raised by the store engine (or SQLite underneath it)

    Returns:
        A typed StoreError subclass instance with ``err`` as its cause
    """
    if isinstance(err, KvSessionError):
        return err
    name = getattr(err, "name", None)
    error_class = _ERROR_CLASS_MAP.get(name or "", StoreError)
    if error_class is StoreError:
        wrapped: StoreError = StoreError(str(err), name=name or type(err).__name__)
    else:
        wrapped = error_class(str(err), name=name)
    wrapped.__cause__ = err
    return wrapped
