from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock, RLock
from typing import DefaultDict, Dict, FrozenSet, Iterator, Optional, Set

from pgscope.exception import RegistryError

logger = logging.getLogger(__name__)


class IdentitySequence:
    """Monotonically increasing counter shared by every thread"""

    def __init__(self, name: str):
        self.name = name
        self._value = 0
        self._lock = Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def current(self) -> int:
        return self._value

    def __repr__(self) -> str:
        return f"<IdentitySequence {self.name}={self._value}>"


# Identities are never reused while the process lives, even across
# registries, so the sequences are module level.
TRANSACTION_IDS = IdentitySequence("transaction")
SAVEPOINT_IDS = IdentitySequence("savepoint")


class ScopeRegistry:
    """
    Record of every open transaction and savepoint, keyed by connection
    identity, then by transaction identity.

    A transaction identity is present while that transaction is open, and a
    savepoint identity is present in its transaction's set while that
    savepoint is open. Entries of distinct connection identities are guarded
    by distinct locks, so connections driven from different threads never
    contend with each other.
    """

    def __init__(self) -> None:
        self._scopes: Dict[str, Dict[int, Set[int]]] = {}
        self._locks: DefaultDict[str, RLock] = defaultdict(RLock)
        self._guard = Lock()

    @contextmanager
    def lock(self, connection_id: str) -> Iterator[None]:
        """Hold the lock of a single connection identity"""
        with self._guard:
            connection_lock = self._locks[connection_id]
        with connection_lock:
            yield

    def register_transaction(
        self, connection_id: str, transaction_id: int
    ) -> None:
        with self.lock(connection_id):
            with self._guard:
                transactions = self._scopes.setdefault(connection_id, {})
            if transaction_id in transactions:
                raise RegistryError(
                    f"Transaction {transaction_id} is already registered "
                    f"on connection {connection_id}"
                )
            transactions[transaction_id] = set()
        logger.debug(
            "Registered transaction %s on connection %s",
            transaction_id,
            connection_id,
        )

    def register_savepoint(
        self, connection_id: str, transaction_id: int, savepoint_id: int
    ) -> None:
        with self.lock(connection_id):
            savepoints = self._scopes.get(connection_id, {}).get(
                transaction_id
            )
            if savepoints is None:
                raise RegistryError(
                    f"Transaction {transaction_id} is not open on "
                    f"connection {connection_id}"
                )
            if savepoint_id in savepoints:
                raise RegistryError(
                    f"Savepoint {savepoint_id} is already registered in "
                    f"transaction {transaction_id}"
                )
            savepoints.add(savepoint_id)
        logger.debug(
            "Registered savepoint %s in transaction %s on connection %s",
            savepoint_id,
            transaction_id,
            connection_id,
        )

    def has_open_transaction(
        self, connection_id: str, transaction_id: int
    ) -> bool:
        with self.lock(connection_id):
            return transaction_id in self._scopes.get(connection_id, {})

    def has_open_savepoint(
        self, connection_id: str, transaction_id: int, savepoint_id: int
    ) -> bool:
        with self.lock(connection_id):
            return savepoint_id in self._scopes.get(connection_id, {}).get(
                transaction_id, ()
            )

    def current_transaction(self, connection_id: str) -> Optional[int]:
        """The most recently registered open transaction of a connection.

        Only one transaction tree is open per connection at a time, so the
        highest identity is the active one.
        """
        with self.lock(connection_id):
            transactions = self._scopes.get(connection_id)
            if not transactions:
                return None
            return max(transactions)

    def close_transaction(
        self, connection_id: str, transaction_id: int
    ) -> bool:
        """Remove a transaction and all of its savepoints.

        Returns:
            bool: `False` when the transaction was already closed
        """
        with self.lock(connection_id):
            transactions = self._scopes.get(connection_id)
            if not transactions or transaction_id not in transactions:
                return False
            del transactions[transaction_id]
            if not transactions:
                with self._guard:
                    del self._scopes[connection_id]
        logger.debug(
            "Closed transaction %s on connection %s",
            transaction_id,
            connection_id,
        )
        return True

    def close_savepoints_from(
        self, connection_id: str, transaction_id: int, threshold: int
    ) -> bool:
        """Remove every savepoint with an identity of at least `threshold`.

        Returns:
            bool: Whether any savepoint was removed
        """
        with self.lock(connection_id):
            savepoints = self._scopes.get(connection_id, {}).get(
                transaction_id
            )
            if not savepoints:
                return False
            closing = {
                savepoint_id
                for savepoint_id in savepoints
                if savepoint_id >= threshold
            }
            savepoints -= closing
        if closing:
            logger.debug(
                "Closed savepoints %s in transaction %s on connection %s",
                sorted(closing),
                transaction_id,
                connection_id,
            )
        return bool(closing)

    def purge_connection(self, connection_id: str) -> bool:
        """Forget every scope of a connection without issuing any SQL.

        The connection's lock is dropped as well, while it is held, so that
        a registry shared by short-lived connections does not keep growing.
        """
        with self.lock(connection_id):
            with self._guard:
                purged = self._scopes.pop(connection_id, None)
                self._locks.pop(connection_id, None)
        if purged is not None:
            logger.debug(
                "Purged %d transaction(s) of connection %s",
                len(purged),
                connection_id,
            )
        return purged is not None

    def open_savepoints(
        self, connection_id: str, transaction_id: int
    ) -> FrozenSet[int]:
        with self.lock(connection_id):
            return frozenset(
                self._scopes.get(connection_id, {}).get(transaction_id, ())
            )

    def connections(self) -> FrozenSet[str]:
        with self._guard:
            return frozenset(self._scopes)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._scopes

    def __repr__(self) -> str:
        return f"<ScopeRegistry {self._scopes!r}>"
