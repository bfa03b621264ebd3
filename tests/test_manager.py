from unittest.mock import Mock

import pytest

from pgscope import (
    DatabaseError,
    InvalidIsolationLevel,
    IsolationLevel,
    ScopeManager,
    ScopeRegistry,
    UsageError,
)
from pgscope.exception import ErrorCode, PgScopeError

from .conftest import FakeConnection


def test_generated_connection_id(connection):
    first = ScopeManager(connection)
    second = ScopeManager(connection)

    assert first.connection_id.startswith("conn_")
    assert first.connection_id != second.connection_id
    assert isinstance(first.registry, ScopeRegistry)


def test_scope_commits_on_success(connection, manager):
    with manager.scope() as outer:
        assert manager.in_transaction
        with manager.scope() as inner:
            pass

    assert connection.sql == [
        f"SAVEPOINT sp{inner.savepoint_id}",
        f"RELEASE SAVEPOINT sp{inner.savepoint_id}",
    ]
    assert connection.calls == ["begin_transaction", "commit"]
    assert not outer.is_open
    assert not manager.in_transaction


def test_scope_rolls_back_on_error(connection, manager):
    with manager.scope():
        with pytest.raises(RuntimeError):
            with manager.scope() as inner:
                raise RuntimeError("inner boom")

    assert connection.sql == [
        f"SAVEPOINT sp{inner.savepoint_id}",
        f"ROLLBACK TO SAVEPOINT sp{inner.savepoint_id}",
    ]
    assert connection.calls == ["begin_transaction", "commit"]


def test_scope_explicit_rollback_inside_block(connection, manager):
    with manager.scope() as scope:
        scope.rollback()

    assert connection.calls == ["begin_transaction", "rollback"]


@pytest.mark.parametrize(
    "level,expected",
    (
        (IsolationLevel.SERIALIZABLE, "SERIALIZABLE"),
        ("repeatable read", "REPEATABLE READ"),
        ("  read   committed ", "READ COMMITTED"),
        ("READ_UNCOMMITTED", "READ UNCOMMITTED"),
    ),
)
def test_isolation_level(connection, manager, level, expected):
    scope = manager.begin(level)

    assert connection.sql == [f"SET TRANSACTION ISOLATION LEVEL {expected}"]
    assert scope.is_open


@pytest.mark.parametrize("level", ("snapshot", "READ COMMITTED; --", 3))
def test_invalid_isolation_level(connection, manager, level):
    with pytest.raises(InvalidIsolationLevel) as exc_info:
        manager.begin(level)

    assert exc_info.value.code is ErrorCode.INVALID_ISOLATION_LEVEL
    assert isinstance(exc_info.value, DatabaseError)
    assert connection.calls == []
    assert connection.statements == []
    assert not manager.in_transaction


def test_isolation_level_rejected_by_driver(
    monkeypatch, connection, manager, driver_error
):
    error = driver_error("SET TRANSACTION ISOLATION LEVEL must be called")
    monkeypatch.setattr(connection, "execute", Mock(side_effect=error))

    with pytest.raises(InvalidIsolationLevel) as exc_info:
        manager.begin(IsolationLevel.SERIALIZABLE)

    assert exc_info.value.__cause__ is error
    assert connection.calls == ["begin_transaction", "rollback"]


def test_isolation_level_default_message():
    assert str(InvalidIsolationLevel()) == "Invalid isolation level."


def test_isolation_level_on_nested_scope(connection, manager):
    manager.begin()

    with pytest.raises(UsageError):
        manager.begin(IsolationLevel.SERIALIZABLE)

    assert connection.statements == []


def test_abandon_purges_without_sql(connection, manager, registry):
    outer = manager.begin()
    inner = manager.begin()
    manager.begin()

    manager.abandon()

    assert not manager.in_transaction
    assert not outer.is_open
    assert not inner.is_open
    assert connection.calls == ["begin_transaction"]
    assert len(connection.statements) == 2
    assert outer.rollback() is False
    assert inner.commit() is False


def test_abandon_only_touches_own_connection(registry):
    first = ScopeManager(FakeConnection(), registry=registry)
    second = ScopeManager(FakeConnection(), registry=registry)
    first.begin()
    kept = second.begin()

    first.close()

    assert not first.in_transaction
    assert second.in_transaction
    assert kept.is_open
    assert first.connection.calls == ["begin_transaction", "close"]


def test_reconnect_keeps_connection_id(connection, manager):
    manager.begin()
    connection_id = manager.connection_id

    manager.reconnect()

    assert manager.connection_id == connection_id
    assert not manager.in_transaction
    assert connection.calls == ["begin_transaction", "reconnect"]

    scope = manager.begin()
    assert not scope.is_savepoint


def test_context_manager_opens_and_closes(connection, manager):
    with manager as entered:
        assert entered is manager
        manager.begin()

    assert connection.calls == ["open", "begin_transaction", "close"]
    assert not manager.in_transaction


def test_connection_failure_is_translated(
    monkeypatch, connection, manager, driver_error
):
    error = driver_error("connection refused")
    monkeypatch.setattr(connection, "open", Mock(side_effect=error))

    with pytest.raises(DatabaseError) as exc_info:
        manager.open()

    assert exc_info.value.__cause__ is error


def test_error_hierarchy():
    assert issubclass(UsageError, PgScopeError)
    assert issubclass(DatabaseError, PgScopeError)
    assert issubclass(InvalidIsolationLevel, DatabaseError)
    assert not issubclass(UsageError, DatabaseError)


def test_rollback_failure_keeps_isolation_level_error(
    monkeypatch, connection, manager, driver_error
):
    monkeypatch.setattr(
        connection, "execute", Mock(side_effect=driver_error("rejected"))
    )
    monkeypatch.setattr(
        connection, "rollback", Mock(side_effect=driver_error("gone"))
    )

    with pytest.raises(InvalidIsolationLevel):
        manager.begin(IsolationLevel.SERIALIZABLE)


def test_open_forgets_scopes_of_earlier_connection(connection, manager):
    stale = manager.begin()

    manager.open()

    assert not stale.is_open
    assert not manager.in_transaction


def test_closed_managers_leave_no_locks_behind(registry):
    for _ in range(50):
        manager = ScopeManager(FakeConnection(), registry=registry)
        with manager:
            manager.begin()
            manager.begin().commit()

    assert registry.connections() == frozenset()
    assert not registry._locks
