from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Optional, Union
from uuid import uuid4

from pgscope.exception import (
    DatabaseError,
    InvalidIsolationLevel,
    UsageError,
)
from pgscope.interface.base import BaseConnection
from pgscope.registry import ScopeRegistry
from pgscope.scope import Scope

logger = logging.getLogger(__name__)


class IsolationLevel(Enum):
    """SQL transaction isolation levels"""

    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"

    @classmethod
    def resolve(cls, value: Union[IsolationLevel, str]) -> IsolationLevel:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = " ".join(value.split()).upper()
            for level in cls:
                if normalized in (level.value, level.name):
                    return level
        raise InvalidIsolationLevel(f"Invalid isolation level: {value!r}")


class ScopeManager:
    """Owner of one connection and its identity in a scope registry.

    Several managers may share a registry; each manager's entries are keyed
    by its own connection identity, which survives reconnects.

    Example:

    ```python
    registry = ScopeRegistry()
    with ScopeManager(PostgresConnection(dsn), registry=registry) as db:
        with db.scope(IsolationLevel.SERIALIZABLE) as outer:
            ...
            with db.scope() as inner:
                ...
    ```
    """

    def __init__(
        self,
        connection: BaseConnection,
        *,
        registry: Optional[ScopeRegistry] = None,
        connection_id: Optional[str] = None,
    ):
        """
        Args:
            connection (BaseConnection): Connection that scopes are opened on
            registry (ScopeRegistry, optional): Shared registry of open
                scopes. Defaults to a new registry.
            connection_id (str, optional): Stable identity of the connection.
                Defaults to a generated one.
        """
        self.connection = connection
        self.registry = registry if registry is not None else ScopeRegistry()
        self.connection_id = connection_id or f"conn_{uuid4().hex}"

    def __enter__(self) -> ScopeManager:
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __str__(self) -> str:
        return f"<ScopeManager {self.connection_id} {self.connection}>"

    @property
    def in_transaction(self) -> bool:
        """Check if a scope opened by this manager is still open"""
        current = self.registry.current_transaction(self.connection_id)
        return current is not None

    def begin(
        self, isolation_level: Optional[Union[IsolationLevel, str]] = None
    ) -> Scope:
        """Open a transaction, or a savepoint if one is already open

        Args:
            isolation_level (Union[IsolationLevel, str], optional): Isolation
                level of a new top-level transaction. Defaults to `None`.

        Raises:
            UsageError: When an isolation level is given for a nested scope
            InvalidIsolationLevel: When the isolation level is rejected

        Returns:
            Scope: The newly opened scope
        """
        if isolation_level is not None and self.in_transaction:
            raise UsageError(
                "Isolation level can only be set on a top-level transaction"
            )

        level = None
        if isolation_level is not None:
            level = IsolationLevel.resolve(isolation_level)

        scope = Scope(self.connection, self.connection_id, self.registry)
        if level is not None:
            try:
                self._set_isolation_level(level)
            except InvalidIsolationLevel:
                try:
                    scope.rollback()
                except DatabaseError as e:
                    logger.error(
                        "Rollback after rejected isolation level failed: %s",
                        e.__cause__,
                    )
                raise
        return scope

    @contextmanager
    def scope(
        self, isolation_level: Optional[Union[IsolationLevel, str]] = None
    ) -> Iterator[Scope]:
        """Open a scope that commits when the block completes and rolls
        back when it raises
        """
        with self.begin(isolation_level) as scope:
            yield scope
            scope.commit()

    def abandon(self) -> None:
        """Forget every open scope of this connection without any SQL"""
        if self.registry.purge_connection(self.connection_id):
            logger.info("Abandoned open scopes of %s", self.connection_id)

    def open(self) -> None:
        """Open the connection, forgetting scopes of any earlier one"""
        self.abandon()
        self._call("open")

    def reconnect(self) -> None:
        """Abandon open scopes and connect again under the same identity"""
        self.abandon()
        self._call("reconnect")

    def close(self) -> None:
        """Abandon open scopes and close the connection"""
        self.abandon()
        self._call("close")

    def _set_isolation_level(self, level: IsolationLevel) -> None:
        logger.debug(
            "Setting isolation level %s on %s", level.value, self.connection_id
        )
        try:
            self.connection.execute(
                f"SET TRANSACTION ISOLATION LEVEL {level.value}"
            )
        except self.connection.driver_error as e:
            raise InvalidIsolationLevel(
                f"Isolation level rejected: {level.value}"
            ) from e

    def _call(self, method: str) -> None:
        try:
            getattr(self.connection, method)()
        except self.connection.driver_error as e:
            logger.error(
                "Connection %s failed to %s: %s", self.connection_id, method, e
            )
            raise DatabaseError(
                f"Connection error in method: {method}"
            ) from e
