from __future__ import annotations

from abc import ABC, abstractmethod
from collections import namedtuple
from typing import Any, Mapping, Optional, Tuple, Type
from urllib.parse import quote, unquote, urlparse

from pgscope.exception import PgScopeError

UrlMapping = namedtuple("UrlMapping", ("key", "cast"))


URLPARSE_MAPPING = {
    "hostname": UrlMapping("_host", str),
    "username": UrlMapping("_user", unquote),
    "password": UrlMapping("_password", unquote),
    "port": UrlMapping("_port", int),
    "path": UrlMapping(
        "_db", lambda value: unquote(value.replace("/", ""))
    ),
}


class BaseConnection(ABC):
    """A single synchronous database connection that scopes borrow.

    Subclasses declare which exceptions their driver raises in
    `driver_error`; those are the only exceptions translated into
    `DatabaseError` by the scope layer.
    """

    scheme = "dummy"
    driver_error: Tuple[Type[BaseException], ...] = (Exception,)

    @abstractmethod
    def open(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def in_transaction(self) -> bool:
        ...

    @abstractmethod
    def begin_transaction(self) -> None:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...

    @abstractmethod
    def execute(
        self, statement: str, params: Optional[Mapping[str, Any]] = None
    ) -> None:
        ...

    def reconnect(self) -> None:
        self.close()
        self.open()

    def __init__(
        self,
        dsn: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        db: Optional[str] = None,
    ) -> None:
        """Connection initialization.

        Args:
            dsn (str, optional): DB data source name
            host (str, optional): DB address URL or IP
            port (int, optional): DB port
            user (str, optional): DB user
            password (str, optional): DB password
            db (str, optional): DB name
        """

        if dsn and host:
            raise PgScopeError("Cannot connect to DB using host and dsn")

        if not dsn:
            if port and (
                not isinstance(port, int) or port not in range(0, 65536)
            ):
                raise PgScopeError(
                    "port: must be an integer between 0 and 65535"
                )

            if host is not None and (
                not isinstance(host, str) or not len(host) > 0
            ):
                raise PgScopeError(
                    "host: must be a string at least 1 character long"
                )

        if password is not None and (
            not isinstance(password, str) or not len(password) > 0
        ):
            raise PgScopeError(
                "password: must be a string at least 1 character long"
            )

        self._dsn = dsn
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._db = db
        self._full_dsn: Optional[str] = None
        self._options = ""

        self._populate_connection_args()
        self._populate_dsn()

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} {self.dsn}>"

    def _populate_connection_args(self):
        dsn = self.dsn or ""
        if dsn:
            parts = urlparse(dsn)
            for key, mapping in URLPARSE_MAPPING.items():
                if not getattr(self, mapping.key):
                    value = getattr(parts, key, None)
                    if value:
                        setattr(self, mapping.key, mapping.cast(value))
            self._options = parts.query

    def _populate_dsn(self):
        self._dsn = self._build_dsn("..." if self.password else None)
        self._full_dsn = self._build_dsn(self.password)

    def _build_dsn(self, password: Optional[str]) -> str:
        # Parts that are not set are left out so libpq applies its defaults
        credentials = ""
        if self.user or password:
            credentials = quote(self.user or "", safe="")
            if password:
                credentials += f":{quote(password, safe='')}"
            credentials += "@"

        location = self.host or ""
        if self.port is not None:
            location += f":{self.port}"

        dsn = (
            f"{self.scheme}://{credentials}{location}/"
            f"{quote(self.db or '', safe='')}"
        )
        if self._options:
            dsn += f"?{self._options}"
        return dsn

    @property
    def dsn(self):
        return self._dsn

    @property
    def host(self):
        return self._host

    @property
    def port(self):
        return self._port

    @property
    def user(self):
        return self._user

    @property
    def password(self):
        return self._password

    @property
    def db(self):
        return self._db

    @property
    def full_dsn(self):
        return self._full_dsn
