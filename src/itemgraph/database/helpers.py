"""
Dialect helpers.

Backends disagree on how numbers, booleans and dates come back from the driver
and on which SQL features exist. Everything dialect-specific the engine needs
goes through one ``DialectHelpers`` instance:

    helpers = get_helpers(conn)
    value = helpers.read_value(raw, field)       # after SELECT
    value = helpers.write_value(value, field)    # before INSERT/UPDATE
"""

from __future__ import annotations

import sqlite3
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

from ..core.defs import FieldOverview
from ..core.errors import InvalidPayloadException


INTEGER_TYPES = {"integer", "bigInteger"}
FLOAT_TYPES = {"float", "decimal"}
DATE_TYPES = {"date", "dateTime", "timestamp", "time"}


class DialectHelpers:
    """Defaults shared by every dialect; subclasses override what differs."""

    supports_returning = True
    supports_window_functions = True

    def __init__(self, dialect: Any = None):
        self.dialect = dialect
        if dialect is not None:
            self.supports_returning = self.supports_returning and bool(getattr(dialect, "insert_returning", True))

    # --- read side ---

    def read_value(self, value: Any, field: FieldOverview) -> Any:
        """Coerce a value fetched from the driver to its API representation."""
        if value is None:
            return None
        if field.type in INTEGER_TYPES or field.type in FLOAT_TYPES:
            return self.parse_number(value, field)
        if field.type == "boolean":
            return self.parse_boolean(value)
        if field.type in DATE_TYPES:
            return self.parse_date(value, field)
        return value

    def parse_number(self, value: Any, field: FieldOverview) -> Any:
        if isinstance(value, bool):
            return value
        if field.type in INTEGER_TYPES:
            if isinstance(value, (str, Decimal, float)):
                try:
                    return int(value)
                except ValueError:
                    return value
            return value
        if isinstance(value, (str, Decimal)):
            try:
                return float(value)
            except ValueError:
                return value
        return value

    def parse_boolean(self, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, Decimal)):
            return bool(value)
        if isinstance(value, str):
            return value.lower() in ("1", "true", "t", "yes")
        return value

    def parse_date(self, value: Any, field: FieldOverview) -> Any:
        """Render dates as ISO 8601 strings."""
        if isinstance(value, datetime):
            if field.type == "date":
                return value.date().isoformat()
            return value.isoformat()
        if isinstance(value, (date, time)):
            return value.isoformat()
        if isinstance(value, str) and field.type in ("dateTime", "timestamp") and " " in value:
            return value.replace(" ", "T", 1)
        return value

    # --- write side ---

    def write_value(self, value: Any, field: FieldOverview) -> Any:
        """Coerce a payload value to what the driver accepts for ``field``."""
        if value is None:
            return None

        if field.type in ("string", "text"):
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return str(value)
            return value

        if field.type in INTEGER_TYPES:
            if isinstance(value, str):
                try:
                    return int(value)
                except ValueError:
                    raise InvalidPayloadException(f'Value for field "{field.field}" has to be an integer.')
            return value

        if field.type in FLOAT_TYPES:
            if isinstance(value, str):
                try:
                    return float(value)
                except ValueError:
                    raise InvalidPayloadException(f'Value for field "{field.field}" has to be a number.')
            return value

        if field.type == "boolean":
            return self.parse_boolean(value)

        if field.type in DATE_TYPES:
            return self.write_date(self.to_temporal(value, field), field)

        return value

    def to_temporal(self, value: Any, field: FieldOverview) -> Any:
        """Parse ISO strings into date/datetime/time objects."""
        if not isinstance(value, str):
            return value
        try:
            if field.type == "date":
                return date.fromisoformat(value[:10])
            if field.type == "time":
                return time.fromisoformat(value)
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise InvalidPayloadException(f'Value for field "{field.field}" has to be a valid {field.type}.')

    def write_date(self, value: Any, field: FieldOverview) -> Any:
        return value


class SQLiteHelpers(DialectHelpers):
    """SQLite keeps dates as text and booleans as 0/1."""

    supports_window_functions = sqlite3.sqlite_version_info >= (3, 25, 0)

    def write_date(self, value: Any, field: FieldOverview) -> Any:
        if isinstance(value, datetime) and field.type == "date":
            return value.date().isoformat()
        if isinstance(value, (date, datetime, time)):
            return value.isoformat()
        return value


class PostgresHelpers(DialectHelpers):
    """PostgreSQL returns numeric columns as Decimal."""

    def write_date(self, value: Any, field: FieldOverview) -> Any:
        # dateTime is "timestamp without time zone"; timestamp keeps the offset
        if isinstance(value, datetime) and field.type == "dateTime" and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        if isinstance(value, datetime) and field.type == "date":
            return value.date()
        return value


class MySQLHelpers(DialectHelpers):
    """MySQL before 8.0 has no window functions and no RETURNING."""

    supports_returning = False

    def __init__(self, dialect: Any = None):
        super().__init__(dialect)
        version = getattr(dialect, "server_version_info", None) or (8,)
        self.supports_window_functions = tuple(version) >= (8,)
        self.supports_returning = False

    def write_date(self, value: Any, field: FieldOverview) -> Any:
        # MySQL DATETIME has no timezone
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.replace(tzinfo=None)
        return value


_HELPERS = {
    "sqlite": SQLiteHelpers,
    "postgresql": PostgresHelpers,
    "mysql": MySQLHelpers,
    "mariadb": MySQLHelpers,
}


def get_helpers(conn_or_dialect: Any) -> DialectHelpers:
    """Helpers for the dialect of a connection, engine or dialect object."""
    dialect = getattr(conn_or_dialect, "dialect", conn_or_dialect)
    helpers_class = _HELPERS.get(getattr(dialect, "name", None), DialectHelpers)
    return helpers_class(dialect)
