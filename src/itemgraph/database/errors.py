"""
Translate driver errors into the itemgraph exception taxonomy.

The application-level uniqueness check is race prone; the database constraint
is the real guard. When it fires, callers get the same RecordNotUnique /
payload exceptions they would get from the pre-check, whatever the backend.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    OperationalError,
    ProgrammingError,
)

from ..core.errors import (
    InvalidForeignKeyException,
    InvalidPayloadException,
    InvalidQueryException,
    ItemGraphError,
    NotNullViolationException,
    RecordNotUniqueException,
    ServiceUnavailableException,
    ValueTooLongException,
)

logger = logging.getLogger(__name__)


# SQLite messages
_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (?P<columns>.+)$")
_SQLITE_NOT_NULL = re.compile(r"NOT NULL constraint failed: (?P<column>\S+)")

# PostgreSQL detail / message
_PG_KEY_DETAIL = re.compile(r"Key \((?P<columns>[^)]+)\)=")
_PG_COLUMN = re.compile(r'column "(?P<column>[^"]+)"')

# MySQL messages
_MYSQL_DUPLICATE = re.compile(r"for key '(?:[^.']+\.)?(?P<key>[^']+)'")
_MYSQL_COLUMN = re.compile(r"Column '(?P<column>[^']+)'")


def translate_database_error(exc: DBAPIError, collection: Optional[str] = None) -> ItemGraphError:
    """
    Map a SQLAlchemy DBAPIError to an ItemGraphError.

    Args:
        exc: The error raised by SQLAlchemy
        collection: Collection being written, attached to uniqueness errors

    Returns:
        The exception to raise instead
    """
    orig = getattr(exc, "orig", None)
    message = str(orig) if orig is not None else str(exc)

    sqlstate = _pg_sqlstate(orig)
    if sqlstate:
        return _translate_postgres(sqlstate, orig, message, collection)

    errno = _mysql_errno(orig)
    if errno:
        return _translate_mysql(errno, message, collection)

    return _translate_generic(exc, message, collection)


def _translate_generic(exc: DBAPIError, message: str, collection: Optional[str]) -> ItemGraphError:
    """SQLite and anything else that only gives us a message."""
    match = _SQLITE_UNIQUE.search(message)
    if match:
        columns = [c.strip().split(".")[-1] for c in match.group("columns").split(",")]
        return RecordNotUniqueException(collection, columns[0])

    match = _SQLITE_NOT_NULL.search(message)
    if match:
        return NotNullViolationException(match.group("column").split(".")[-1])

    if "FOREIGN KEY constraint failed" in message:
        return InvalidForeignKeyException()

    if isinstance(exc, IntegrityError):
        return InvalidPayloadException(message)
    if isinstance(exc, DataError):
        return InvalidPayloadException(message)
    if isinstance(exc, ProgrammingError):
        return InvalidQueryException(message)

    logger.error(f"Unhandled database error: {message}")
    if isinstance(exc, OperationalError):
        return ServiceUnavailableException(message)
    return ItemGraphError(message)


def _translate_postgres(sqlstate: str, orig, message: str, collection: Optional[str]) -> ItemGraphError:
    detail = _pg_attr(orig, "detail") or message
    column_name = _pg_attr(orig, "column_name")

    if sqlstate == "23505":
        match = _PG_KEY_DETAIL.search(detail)
        field = match.group("columns").split(",")[0].strip() if match else None
        return RecordNotUniqueException(collection, field)
    if sqlstate == "23502":
        if not column_name:
            match = _PG_COLUMN.search(message)
            column_name = match.group("column") if match else None
        return NotNullViolationException(column_name)
    if sqlstate == "23503":
        match = _PG_KEY_DETAIL.search(detail)
        return InvalidForeignKeyException(match.group("columns") if match else None)
    if sqlstate == "22001":
        return ValueTooLongException(column_name)
    if sqlstate.startswith("23") or sqlstate.startswith("22"):
        return InvalidPayloadException(message)
    if sqlstate.startswith("42"):
        return InvalidQueryException(message)
    if sqlstate.startswith("08") or sqlstate.startswith("57"):
        return ServiceUnavailableException(message)

    logger.error(f"Unhandled PostgreSQL error {sqlstate}: {message}")
    return ItemGraphError(message)


def _translate_mysql(errno: int, message: str, collection: Optional[str]) -> ItemGraphError:
    if errno == 1062:
        match = _MYSQL_DUPLICATE.search(message)
        return RecordNotUniqueException(collection, match.group("key") if match else None)
    if errno in (1048, 1364):
        match = _MYSQL_COLUMN.search(message) or re.search(r"Field '(?P<column>[^']+)'", message)
        return NotNullViolationException(match.group("column") if match else None)
    if errno in (1451, 1452):
        return InvalidForeignKeyException()
    if errno == 1406:
        match = re.search(r"column '(?P<column>[^']+)'", message)
        return ValueTooLongException(match.group("column") if match else None)

    logger.error(f"Unhandled MySQL error {errno}: {message}")
    return ItemGraphError(message)


def _pg_sqlstate(orig) -> Optional[str]:
    # asyncpg errors are wrapped by SQLAlchemy's adapter; psycopg exposes pgcode
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if isinstance(code, str):
            return code
    return None


def _pg_attr(orig, name: str) -> Optional[str]:
    for candidate in (orig, getattr(orig, "__cause__", None), getattr(orig, "diag", None)):
        value = getattr(candidate, name, None)
        if isinstance(value, str):
            return value
    return None


def _mysql_errno(orig) -> Optional[int]:
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int) and args[0] > 1000:
        return args[0]
    return None
