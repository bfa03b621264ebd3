import logging
from typing import Any, Mapping, Optional

from psycopg import ClientCursor, Connection, Error, OperationalError
from psycopg.pq import TransactionStatus

from pgscope.interface.base import BaseConnection

logger = logging.getLogger(__name__)

IN_TRANSACTION_STATUSES = (
    TransactionStatus.INTRANS,
    TransactionStatus.INERROR,
)


class PostgresConnection(BaseConnection):
    """Connection to a Postgres database using psycopg

    The underlying connection runs in autocommit mode so that transactions
    only start when `begin_transaction` is called. Parameters are bound on
    the client, since Postgres does not accept bound parameters in `SET`
    statements.
    """

    scheme = "postgres"
    driver_error = (Error,)

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        connection: Optional[Connection] = None,
        **kwargs,
    ) -> None:
        """
        Args:
            dsn (str, optional): DB data source name
            connection (Connection, optional): An already open psycopg
                connection to borrow instead of connecting with the DSN.
                Defaults to `None`.
        """
        super().__init__(dsn=dsn, **kwargs)
        self._connection: Optional[Connection] = connection

    def open(self) -> None:
        """Open the connection unless it already is"""
        if self._connection is not None and not self._connection.closed:
            return
        logger.debug("Opening connection to %s", self.dsn)
        self._connection = Connection.connect(
            self.full_dsn,
            autocommit=True,
            cursor_factory=ClientCursor,
        )

    def close(self) -> None:
        """Close the connection"""
        if self._connection is None:
            return
        logger.debug("Closing connection to %s", self.dsn)
        self._connection.close()
        self._connection = None

    @property
    def connection(self) -> Connection:
        """The open psycopg connection

        A closed connection is never reopened here: scopes registered for
        it would otherwise outlive it. Reopen through `ScopeManager.open` or
        `ScopeManager.reconnect`, which forget those scopes first.

        Raises:
            OperationalError: When the connection is not open
        """
        if self._connection is None or self._connection.closed:
            raise OperationalError(f"Connection to {self.dsn} is not open")
        return self._connection

    def in_transaction(self) -> bool:
        status = self.connection.info.transaction_status
        return status in IN_TRANSACTION_STATUSES

    def begin_transaction(self) -> None:
        self.connection.execute("BEGIN")

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    def execute(
        self, statement: str, params: Optional[Mapping[str, Any]] = None
    ) -> None:
        logger.debug("Executing %s", statement)
        self.connection.execute(statement, params)  # type: ignore
