"""Exceptions raised by the store engine.

Each class carries a ``name`` mirroring the error names of browser-style
key-value stores; the session layer translates them by name.
"""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    name = "UnknownError"


class ConstraintError(EngineError):
    name = "ConstraintError"


class DataError(EngineError):
    name = "DataError"


class NotFoundError(EngineError):
    name = "NotFoundError"


class ReadOnlyError(EngineError):
    name = "ReadOnlyError"


class VersionError(EngineError):
    name = "VersionError"


class InvalidStateError(EngineError):
    name = "InvalidStateError"


class TransactionInactiveError(EngineError):
    name = "TransactionInactiveError"


class BlockedError(EngineError):
    name = "BlockedError"

    def __init__(self, message: str, *, old_version: int, new_version: Optional[int]):
        super().__init__(message)
        self.old_version = old_version
        self.new_version = new_version
