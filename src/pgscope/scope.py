"""
Scope handles: one open transaction or savepoint on a connection.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from pgscope.exception import DatabaseError, ErrorCode, UsageError
from pgscope.registry import SAVEPOINT_IDS, TRANSACTION_IDS

if TYPE_CHECKING:
    from pgscope.interface.base import BaseConnection
    from pgscope.registry import ScopeRegistry

logger = logging.getLogger(__name__)

# Setting names cannot be bound as parameters, so only plain identifiers
# may reach the statement.
SETTING_NAME_PATTERN = re.compile(r"[a-z0-9_.\s]+", re.IGNORECASE)
TIME_ZONE_PATTERN = re.compile(r"\s*TIME\s+ZONE\s*", re.IGNORECASE)


class ScopeState(Enum):
    """Scope state machine states"""

    OPEN = "open"
    FINALIZED = "finalized"


class Scope:
    """
    A transaction, or a savepoint inside one, opened on a borrowed
    connection.

    Creating a scope begins a transaction when the connection has none in
    progress, and creates a savepoint otherwise. Only the first of
    `commit` or `rollback` has an effect; finalizing a scope also closes
    every scope nested inside it.

    Use it as a context manager so that a scope left unfinalized is rolled
    back when the block exits:

    ```python
    with Scope(connection, "conn_1", registry) as scope:
        scope.set_local("statement_timeout", "5s")
        ...
        scope.commit()
    ```
    """

    def __init__(
        self,
        connection: BaseConnection,
        connection_id: str,
        registry: ScopeRegistry,
    ):
        self._connection = connection
        self._connection_id = str(connection_id)
        self._registry = registry
        self._transaction_id = 0
        self._savepoint_id = 0
        self._state = ScopeState.OPEN

        with self._registry.lock(self._connection_id):
            if self._invoke("in_transaction"):
                self._create_savepoint()
            else:
                self._begin_transaction()

    def __enter__(self) -> Scope:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._state is ScopeState.OPEN:
            try:
                self.rollback()
            except DatabaseError as e:
                # Let the original exception win if there was one
                if exc_type is None:
                    raise
                logger.error(
                    "Rollback of %s on exit failed: %s", self, e.__cause__
                )
        return False

    def __copy__(self):
        raise UsageError("Scope duplication is forbidden")

    def __deepcopy__(self, memo):
        raise UsageError("Scope duplication is forbidden")

    def __reduce_ex__(self, protocol):
        raise UsageError("Scope duplication is forbidden")

    def __repr__(self) -> str:
        kind = (
            f"savepoint sp{self._savepoint_id}"
            if self.is_savepoint
            else "transaction"
        )
        return (
            f"<Scope {kind} of transaction {self._transaction_id} on "
            f"{self._connection_id} ({self.state.value})>"
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def transaction_id(self) -> int:
        return self._transaction_id

    @property
    def savepoint_id(self) -> int:
        """Identity of the savepoint, 0 for a top-level transaction"""
        return self._savepoint_id

    @property
    def is_savepoint(self) -> bool:
        return self._savepoint_id != 0

    @property
    def is_open(self) -> bool:
        """Check whether the registry still holds this scope open"""
        if self.is_savepoint:
            return self._registry.has_open_savepoint(
                self._connection_id, self._transaction_id, self._savepoint_id
            )
        return self._registry.has_open_transaction(
            self._connection_id, self._transaction_id
        )

    @property
    def state(self) -> ScopeState:
        if self._state is ScopeState.OPEN and not self.is_open:
            return ScopeState.FINALIZED
        return self._state

    def commit(self) -> bool:
        """Commit the transaction or release the savepoint

        Returns:
            bool: Whether the command was really issued
        """
        if self.is_savepoint:
            return self._finalize_savepoint(
                f"RELEASE SAVEPOINT sp{self._savepoint_id}"
            )
        return self._finalize_transaction("commit")

    def rollback(self) -> bool:
        """Rollback the transaction or roll back to the savepoint

        Returns:
            bool: Whether the command was really issued
        """
        if self.is_savepoint:
            return self._finalize_savepoint(
                f"ROLLBACK TO SAVEPOINT sp{self._savepoint_id}"
            )
        return self._finalize_transaction("rollback")

    def set_local(self, name: str, value: Any) -> None:
        """Set a configuration parameter for the rest of this scope

        Args:
            name (str): Setting name, such as `statement_timeout`
            value (Any): Setting value, always passed as a bound parameter

        Raises:
            UsageError: When the scope is closed or the name is invalid
            DatabaseError: When the statement fails
        """
        with self._registry.lock(self._connection_id):
            if not self.is_open:
                raise UsageError(
                    "Transaction or connection is already closed",
                    ErrorCode.TRANSACTION_ERROR,
                )

            valid = isinstance(name, str) and SETTING_NAME_PATTERN.fullmatch(
                name
            )
            if not valid:
                raise UsageError(
                    f"Setting name is invalid: {name}",
                    ErrorCode.INVALID_IDENTIFIER,
                )

            statement = f"SET LOCAL {name} TO %(value)s"
            if TIME_ZONE_PATTERN.fullmatch(name):
                statement = "SET LOCAL TIME ZONE %(value)s"

            logger.debug("Setting %s in %s", name, self)
            try:
                self._connection.execute(statement, {"value": value})
            except self._connection.driver_error as e:
                logger.error("Failed to set %s: %s", name, e)
                raise DatabaseError(
                    f"Error on setting configuration parameter: {name}",
                    ErrorCode.FAILED_QUERY,
                ) from e

    def _begin_transaction(self) -> None:
        self._transaction_id = TRANSACTION_IDS.next()
        self._invoke("begin_transaction")
        self._registry.register_transaction(
            self._connection_id, self._transaction_id
        )
        logger.info(
            "Transaction %s started on %s",
            self._transaction_id,
            self._connection_id,
        )

    def _create_savepoint(self) -> None:
        transaction_id: Optional[int] = self._registry.current_transaction(
            self._connection_id
        )
        if transaction_id is None:
            raise UsageError(
                f"Connection {self._connection_id} is in a transaction "
                "that was not opened as a scope"
            )

        self._transaction_id = transaction_id
        self._savepoint_id = SAVEPOINT_IDS.next()
        self._query(f"SAVEPOINT sp{self._savepoint_id}")
        self._registry.register_savepoint(
            self._connection_id, self._transaction_id, self._savepoint_id
        )

    def _finalize_transaction(self, method: str) -> bool:
        with self._registry.lock(self._connection_id):
            if not self._registry.has_open_transaction(
                self._connection_id, self._transaction_id
            ):
                self._state = ScopeState.FINALIZED
                return False

            self._invoke(method)
            self._registry.close_transaction(
                self._connection_id, self._transaction_id
            )
            self._state = ScopeState.FINALIZED

        logger.info(
            "Transaction %s finished with %s on %s",
            self._transaction_id,
            method,
            self._connection_id,
        )
        return True

    def _finalize_savepoint(self, statement: str) -> bool:
        with self._registry.lock(self._connection_id):
            if not self._registry.has_open_savepoint(
                self._connection_id, self._transaction_id, self._savepoint_id
            ):
                self._state = ScopeState.FINALIZED
                return False

            self._query(statement)
            self._registry.close_savepoints_from(
                self._connection_id, self._transaction_id, self._savepoint_id
            )
            self._state = ScopeState.FINALIZED
        return True

    def _invoke(self, method: str) -> Any:
        logger.debug("Invoking %s on %s", method, self._connection_id)
        try:
            return getattr(self._connection, method)()
        except self._connection.driver_error as e:
            logger.error("Transaction error in method %s: %s", method, e)
            raise DatabaseError(
                f"Transaction error in method: {method}",
                ErrorCode.TRANSACTION_ERROR,
            ) from e

    def _query(self, statement: str) -> None:
        logger.debug("Executing %s on %s", statement, self._connection_id)
        try:
            self._connection.execute(statement)
        except self._connection.driver_error as e:
            logger.error("Savepoint error in query %s: %s", statement, e)
            raise DatabaseError(
                f"Savepoint error in query: {statement}",
                ErrorCode.TRANSACTION_ERROR,
            ) from e
