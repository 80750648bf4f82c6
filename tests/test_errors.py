import sqlite3

import pytest

from kvsession import (
    BlockedUpgradeError,
    ConstraintError,
    DataError,
    ErrorCode,
    InvalidStateError,
    KvSessionError,
    NotFoundError,
    ReadOnlyError,
    SessionClosedError,
    StoreError,
    VersionError,
    wrap_store_error,
)
from kvsession._store import errors as engine_errors


@pytest.mark.parametrize(
    "engine_error, expected, code",
    [
        (engine_errors.ConstraintError("dup"), ConstraintError, ErrorCode.CONSTRAINT),
        (engine_errors.DataError("bad key"), DataError, ErrorCode.DATA),
        (engine_errors.NotFoundError("no store"), NotFoundError, ErrorCode.NOT_FOUND),
        (engine_errors.ReadOnlyError("ro"), ReadOnlyError, ErrorCode.READ_ONLY),
        (engine_errors.VersionError("old"), VersionError, ErrorCode.VERSION),
        (engine_errors.InvalidStateError("done"), InvalidStateError, ErrorCode.INVALID_STATE),
        (engine_errors.TransactionInactiveError("finished"), InvalidStateError, ErrorCode.INVALID_STATE),
    ],
)
def test_engine_errors_are_wrapped(engine_error, expected, code) -> None:
    wrapped = wrap_store_error(engine_error)
    assert isinstance(wrapped, expected)
    assert isinstance(wrapped, StoreError)
    assert wrapped.code == code
    assert wrapped.name == engine_error.name
    assert wrapped.__cause__ is engine_error
    assert str(wrapped) == str(engine_error)


def test_unknown_failures_become_plain_store_errors() -> None:
    cause = sqlite3.OperationalError("database is locked")
    wrapped = wrap_store_error(cause)
    assert type(wrapped) is StoreError
    assert wrapped.code == ErrorCode.STORE
    assert wrapped.name == "OperationalError"
    assert wrapped.__cause__ is cause


def test_session_errors_pass_through() -> None:
    closed = SessionClosedError()
    assert wrap_store_error(closed) is closed
    assert str(closed) == "session has been closed"


def test_blocked_upgrade_error_carries_versions() -> None:
    err = BlockedUpgradeError("blocked", old_version=1, new_version=3)
    assert err.code == ErrorCode.BLOCKED
    assert err.name == "BlockedError"
    assert err.resume is None
    assert (err.old_version, err.new_version) == (1, 3)


def test_error_hierarchy() -> None:
    for cls in (ConstraintError, DataError, NotFoundError, ReadOnlyError, VersionError, InvalidStateError):
        assert issubclass(cls, StoreError)
    assert issubclass(StoreError, KvSessionError)
    assert issubclass(SessionClosedError, KvSessionError)
    assert KvSessionError("x").code == ErrorCode.UNKNOWN
