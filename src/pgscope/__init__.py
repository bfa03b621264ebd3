from importlib.metadata import version

from .exception import (
    DatabaseError,
    ErrorCode,
    InvalidIsolationLevel,
    PgScopeError,
    RegistryError,
    UsageError,
)
from .interface.base import BaseConnection
from .interface.postgres import PostgresConnection
from .manager import IsolationLevel, ScopeManager
from .registry import ScopeRegistry
from .scope import Scope, ScopeState

__version__ = version("pgscope")

__all__ = (
    "BaseConnection",
    "DatabaseError",
    "ErrorCode",
    "InvalidIsolationLevel",
    "IsolationLevel",
    "PgScopeError",
    "PostgresConnection",
    "RegistryError",
    "Scope",
    "ScopeManager",
    "ScopeRegistry",
    "ScopeState",
    "UsageError",
)
