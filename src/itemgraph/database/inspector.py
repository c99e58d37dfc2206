"""
Driver-agnostic physical schema introspection.

Wraps SQLAlchemy's Inspector (run through ``AsyncConnection.run_sync``) and
reports tables, columns, primary keys, foreign keys and unique columns in a
shape the schema overview builder can merge with the metadata tables.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import inspect, types as sqltypes
from sqlalchemy.ext.asyncio import AsyncConnection

logger = logging.getLogger(__name__)


@dataclass
class ColumnInfo:
    """One physical column."""
    name: str
    type: str  # local type
    db_type: str
    is_nullable: bool = True
    default_value: Any = None
    is_generated: bool = False
    is_unique: bool = False
    max_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None


@dataclass
class ForeignKeyInfo:
    """A single-column foreign key."""
    table: str
    column: str
    foreign_key_table: str
    foreign_key_column: str
    on_delete: Optional[str] = None


@dataclass
class TableInfo:
    """One physical table."""
    name: str
    primary_keys: list[str] = field(default_factory=list)
    columns: dict[str, ColumnInfo] = field(default_factory=dict)
    foreign_keys: list[ForeignKeyInfo] = field(default_factory=list)


async def get_overview(conn: AsyncConnection, exclude: Optional[list[str]] = None) -> dict[str, TableInfo]:
    """
    Introspect every table in the default schema.

    Args:
        conn: Open async connection
        exclude: Table names to skip

    Returns:
        Table name -> TableInfo
    """
    exclude = set(exclude or [])

    def _inspect(sync_conn) -> dict[str, TableInfo]:
        inspector = inspect(sync_conn)
        tables: dict[str, TableInfo] = {}

        for table_name in inspector.get_table_names():
            if table_name in exclude:
                continue

            pk = inspector.get_pk_constraint(table_name) or {}
            primary_keys = list(pk.get("constrained_columns") or [])

            unique_columns = set()
            for constraint in inspector.get_unique_constraints(table_name):
                if len(constraint["column_names"]) == 1:
                    unique_columns.add(constraint["column_names"][0])
            for index in inspector.get_indexes(table_name):
                if index.get("unique") and len(index["column_names"]) == 1:
                    unique_columns.add(index["column_names"][0])

            columns: dict[str, ColumnInfo] = {}
            for column in inspector.get_columns(table_name):
                columns[column["name"]] = _column_info(
                    column,
                    is_primary=column["name"] in primary_keys,
                    single_primary=len(primary_keys) == 1,
                    is_unique=column["name"] in unique_columns
                )

            foreign_keys = []
            for fk in inspector.get_foreign_keys(table_name):
                if len(fk["constrained_columns"]) != 1:
                    continue
                foreign_keys.append(
                    ForeignKeyInfo(
                        table=table_name,
                        column=fk["constrained_columns"][0],
                        foreign_key_table=fk["referred_table"],
                        foreign_key_column=fk["referred_columns"][0],
                        on_delete=(fk.get("options") or {}).get("ondelete"),
                    )
                )

            tables[table_name] = TableInfo(
                name=table_name,
                primary_keys=primary_keys,
                columns=columns,
                foreign_keys=foreign_keys,
            )

        return tables

    return await conn.run_sync(_inspect)


def _column_info(
    column: dict, *, is_primary: bool, single_primary: bool, is_unique: bool
) -> ColumnInfo:
    column_type = column["type"]
    local_type = get_local_type(column_type)

    autoincrement = column.get("autoincrement")
    # A single integer primary key is a rowid alias / serial unless reflected otherwise
    is_generated = bool(column.get("computed")) or autoincrement is True or (
        is_primary
        and single_primary
        and local_type in ("integer", "bigInteger")
        and autoincrement is not False
    )

    return ColumnInfo(
        name=column["name"],
        type=local_type,
        db_type=str(column_type),
        is_nullable=bool(column.get("nullable", True)) and not is_primary,
        default_value=parse_default_value(column.get("default"), local_type),
        is_generated=is_generated,
        is_unique=is_unique or is_primary,
        max_length=getattr(column_type, "length", None),
        numeric_precision=getattr(column_type, "precision", None),
        numeric_scale=getattr(column_type, "scale", None),
    )


def get_local_type(column_type: sqltypes.TypeEngine) -> str:
    """Map a reflected SQLAlchemy type to the engine's local type name."""
    if isinstance(column_type, sqltypes.Boolean):
        return "boolean"
    if isinstance(column_type, sqltypes.BigInteger):
        return "bigInteger"
    if isinstance(column_type, sqltypes.Integer):
        return "integer"
    if isinstance(column_type, sqltypes.Float):
        return "float"
    if isinstance(column_type, sqltypes.Numeric):
        return "decimal"
    if isinstance(column_type, sqltypes.DateTime):
        return "timestamp" if getattr(column_type, "timezone", False) else "dateTime"
    if isinstance(column_type, sqltypes.Date):
        return "date"
    if isinstance(column_type, sqltypes.Time):
        return "time"
    if isinstance(column_type, sqltypes.JSON):
        return "json"
    if isinstance(column_type, sqltypes.Uuid):
        return "uuid"
    if isinstance(column_type, sqltypes.Text):
        return "text"
    if isinstance(column_type, sqltypes.String):
        return "string"
    return "unknown"


_QUOTED = re.compile(r"^'(.*)'(::.*)?$", re.S)
_NOW_DEFAULTS = ("current_timestamp", "now()", "current_date", "current_time")


def parse_default_value(raw: Optional[str], local_type: str) -> Any:
    """Turn a reflected server default expression into a plain value."""
    if raw is None:
        return None

    value = str(raw).strip()
    while value.startswith("(") and value.endswith(")"):
        value = value[1:-1].strip()

    if value.lower() in _NOW_DEFAULTS:
        return "NOW"
    if value.lower() == "null":
        return None

    match = _QUOTED.match(value)
    if match:
        value = match.group(1).replace("''", "'")

    try:
        if local_type in ("integer", "bigInteger"):
            return int(value)
        if local_type in ("float", "decimal"):
            return float(value)
    except ValueError:
        # Function defaults (nextval(...), gen_random_uuid()) carry no static value
        return None
    if local_type == "boolean":
        return value.lower() in ("1", "true", "t")

    return value
