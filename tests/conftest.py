from typing import Any, List, Mapping, Optional, Tuple

import pytest

from pgscope import ScopeManager, ScopeRegistry
from pgscope.interface.base import BaseConnection


class DriverError(Exception):
    ...


class FakeConnection(BaseConnection):
    scheme = "fake"
    driver_error = (DriverError,)

    def __init__(self):
        super().__init__(host="localhost", port=5432, user="user", db="db")
        self.transaction = False
        self.calls: List[str] = []
        self.statements: List[Tuple[str, Optional[Mapping[str, Any]]]] = []

    def open(self):
        self.calls.append("open")

    def close(self):
        self.calls.append("close")

    def reconnect(self):
        self.calls.append("reconnect")
        self.transaction = False

    def in_transaction(self):
        return self.transaction

    def begin_transaction(self):
        self.calls.append("begin_transaction")
        self.transaction = True

    def commit(self):
        self.calls.append("commit")
        self.transaction = False

    def rollback(self):
        self.calls.append("rollback")
        self.transaction = False

    def execute(self, statement, params=None):
        self.statements.append((statement, params))

    @property
    def sql(self) -> List[str]:
        return [statement for statement, _ in self.statements]


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def registry():
    return ScopeRegistry()


@pytest.fixture
def manager(connection, registry):
    return ScopeManager(connection, registry=registry, connection_id="conn_1")


@pytest.fixture
def driver_error():
    return DriverError
