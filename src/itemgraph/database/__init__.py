"""
Database module - engine, dialect helpers, introspection and error translation.
"""

from __future__ import annotations

from .connection import Database, close_db, connect, create_engine, get_engine, transaction
from .errors import translate_database_error
from .helpers import DialectHelpers, get_helpers
from .inspector import get_overview

__all__ = [
    "Database",
    "close_db",
    "connect",
    "create_engine",
    "get_engine",
    "transaction",
    "translate_database_error",
    "DialectHelpers",
    "get_helpers",
    "get_overview",
]
