from enum import IntEnum
from typing import Optional


class ErrorCode(IntEnum):
    """Machine readable reason attached to every pgscope error"""

    UNKNOWN = 0
    TRANSACTION_ERROR = 1
    INVALID_IDENTIFIER = 2
    FAILED_QUERY = 3
    INVALID_ISOLATION_LEVEL = 406


class PgScopeError(Exception):
    """Base exception for all pgscope errors"""

    default_code = ErrorCode.UNKNOWN

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.code = ErrorCode(code if code is not None else self.default_code)


class UsageError(PgScopeError):
    """Raised when a scope is used against its contract: duplicated,
    operated on after being closed, or given an invalid identifier.
    """

    default_code = ErrorCode.TRANSACTION_ERROR


class RegistryError(PgScopeError):
    """Raised when the scope registry would be corrupted, such as an
    identity being registered twice.
    """

    default_code = ErrorCode.TRANSACTION_ERROR


class DatabaseError(PgScopeError):
    """Raised when the driver rejects a statement. The original driver error
    is available as ``__cause__``.
    """

    default_code = ErrorCode.TRANSACTION_ERROR


class InvalidIsolationLevel(DatabaseError):
    """Raised when an isolation level is not one the database accepts"""

    MESSAGE = "Invalid isolation level."
    default_code = ErrorCode.INVALID_ISOLATION_LEVEL

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None):
        super().__init__(message or self.MESSAGE, code)
