from .base import BaseConnection
from .postgres import PostgresConnection

__all__ = ("BaseConnection", "PostgresConnection")
