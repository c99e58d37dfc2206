"""
Fields service - add, describe and remove the fields of a collection.

A field is a physical column plus an optional ``directus_fields`` row. Alias
fields (o2m and friends) have no column, only the row.

Field payload:
    {
        "field": "title",
        "type": "string",
        "schema": {"max_length": 200, "is_nullable": False, "default_value": "untitled"},
        "meta": {"required": True, "note": "Shown in lists"},
    }
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import sqlalchemy as sa
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.schema import CreateColumn

from ..core.defs import ALIAS_TYPES, FieldOverview
from ..core.errors import ForbiddenException, InvalidPayloadException
from ..core.query_types import MutationOptions, Query
from ..database.connection import connect, transaction
from ..database.errors import translate_database_error
from ..schema.system import fields_table, relations_table
from .base import MetadataService, delete_rows, quote

logger = logging.getLogger(__name__)


COLUMN_TYPES: dict[str, Callable[[dict], Any]] = {
    "string": lambda o: sa.String(o.get("max_length") or 255),
    "text": lambda o: sa.Text(),
    "integer": lambda o: sa.Integer(),
    "bigInteger": lambda o: sa.BigInteger(),
    "float": lambda o: sa.Float(),
    "decimal": lambda o: sa.Numeric(o.get("numeric_precision") or 10, o.get("numeric_scale") or 5),
    "boolean": lambda o: sa.Boolean(),
    "json": lambda o: sa.JSON(),
    "uuid": lambda o: sa.Uuid(as_uuid=False),
    "date": lambda o: sa.Date(),
    "dateTime": lambda o: sa.DateTime(),
    "timestamp": lambda o: sa.DateTime(timezone=True),
    "time": lambda o: sa.Time(),
    "csv": lambda o: sa.Text(),
    "hash": lambda o: sa.String(255),
}


def is_alias(field: dict[str, Any]) -> bool:
    return field.get("type") in ALIAS_TYPES


def column_for(field: dict[str, Any]) -> sa.Column:
    """
    SQLAlchemy Column for a field payload.

    Raises:
        InvalidPayloadException: Unknown type
    """
    name = field["field"]
    local_type = field.get("type") or "string"
    options = field.get("schema") or {}

    factory = COLUMN_TYPES.get(local_type)
    if factory is None:
        raise InvalidPayloadException(f'Unsupported type "{local_type}" for field "{name}".')

    kwargs: dict[str, Any] = {}
    if options.get("is_primary_key"):
        kwargs["primary_key"] = True
        kwargs["autoincrement"] = bool(options.get("has_auto_increment"))
    else:
        kwargs["nullable"] = options.get("is_nullable", True)
        kwargs["unique"] = bool(options.get("is_unique"))

    default = options.get("default_value")
    if default is not None:
        kwargs["server_default"] = _server_default(default)

    return sa.Column(name, factory(options), **kwargs)


def _server_default(value: Any) -> Any:
    if isinstance(value, bool):
        return sa.true() if value else sa.false()
    if value == "NOW":
        return sa.func.current_timestamp()
    return str(value)


def meta_row(collection: str, field: dict[str, Any]) -> Optional[dict[str, Any]]:
    """The ``directus_fields`` row for a field payload; None when there is nothing to store."""
    meta = dict(field.get("meta") or {})
    if is_alias(field) and field["type"] != "alias" and not meta.get("special"):
        meta["special"] = [field["type"]]
    if not meta and not is_alias(field):
        return None
    meta.pop("id", None)
    return {**meta, "collection": collection, "field": field["field"]}


def describe_field(collection: str, field: FieldOverview, primary: str, meta: Optional[dict]) -> dict[str, Any]:
    schema = None
    if not field.alias:
        schema = {
            "name": field.field,
            "table": collection,
            "data_type": field.db_type,
            "default_value": field.default_value,
            "max_length": field.max_length,
            "numeric_precision": field.precision,
            "numeric_scale": field.scale,
            "is_nullable": field.nullable,
            "is_primary_key": field.field == primary,
            "has_auto_increment": field.generated,
        }
    return {"collection": collection, "field": field.field, "type": field.type, "schema": schema, "meta": meta}


class FieldsService(MetadataService):
    """
    Usage:
        fields = FieldsService(schema=schema, db=engine, accountability=accountability)
        await fields.create_field("articles", {"field": "rating", "type": "integer"})
        await fields.delete_field("articles", "rating")

    The service works from the schema snapshot it was given; fetch a fresh
    schema after a mutation to see the change.
    """

    # --- reads ---

    async def read_all(self, collection: Optional[str] = None) -> list[dict[str, Any]]:
        self._require_admin()
        if collection is not None and collection not in self.schema.collections:
            raise ForbiddenException()

        meta_rows = await self._meta_rows(collection)
        fields = []

        for name, overview in self.schema.collections.items():
            if collection is not None and name != collection:
                continue
            for field in overview.fields.values():
                meta = meta_rows.pop((name, field.field), None)
                fields.append(describe_field(name, field, overview.primary, meta))

        # Rows for alias fields the snapshot doesn't know about yet
        for (name, field_name), meta in meta_rows.items():
            if name in self.schema.collections:
                fields.append(
                    {"collection": name, "field": field_name, "type": "alias", "schema": None, "meta": meta}
                )

        return fields

    async def read_one(self, collection: str, field: str) -> dict[str, Any]:
        for item in await self.read_all(collection):
            if item["field"] == field:
                return item
        raise ForbiddenException()

    async def _meta_rows(self, collection: Optional[str]) -> dict[tuple[str, str], dict]:
        query = Query(limit=-1, sort=["sort", "id"])
        if collection is not None:
            query.filter = {"collection": {"_eq": collection}}
        rows = await self._items("directus_fields", self.db).read_by_query(query)
        return {(row["collection"], row["field"]): row for row in rows}

    async def _meta_id(self, conn: AsyncConnection, collection: str, field: str) -> Any:
        result = await conn.execute(
            sa.select(fields_table.c.id).where(fields_table.c.collection == collection, fields_table.c.field == field)
        )
        return result.scalar()

    # --- mutations ---

    async def create_field(
        self, collection: str, field: dict[str, Any], opts: Optional[MutationOptions] = None
    ) -> str:
        """
        Add a column (unless the field is an alias) and its meta row.

        Raises:
            ForbiddenException: Caller is not an admin
            InvalidPayloadException: Unknown collection, duplicate field or bad type
        """
        self._require_admin()
        overview = self.schema.collections.get(collection)
        if overview is None:
            raise InvalidPayloadException(f'Collection "{collection}" doesn\'t exist.')

        name = field.get("field")
        if not name:
            raise InvalidPayloadException('"field" is required.')
        if name in overview.fields:
            raise InvalidPayloadException(f'Field "{name}" already exists in collection "{collection}".')

        try:
            async with transaction(self.db) as conn:
                if not is_alias(field):
                    await add_column(conn, collection, column_for(field))

                row = meta_row(collection, field)
                if row is not None:
                    await self._items("directus_fields", conn).create_one(
                        row, MutationOptions(auto_purge_cache=False)
                    )
        finally:
            await self._invalidate(opts)

        logger.info(f'Created field "{collection}.{name}"')
        return name

    async def update_field(
        self, collection: str, field: str, data: dict[str, Any], opts: Optional[MutationOptions] = None
    ) -> str:
        """Update the meta row of a field, creating it when missing. Columns are left alone."""
        self._require_admin()
        overview = self.schema.collections.get(collection)
        if overview is None or field not in overview.fields:
            raise ForbiddenException()

        meta = dict(data.get("meta") or {})
        meta.pop("id", None)
        meta.pop("collection", None)
        meta.pop("field", None)

        try:
            async with transaction(self.db) as conn:
                service = self._items("directus_fields", conn)
                key = await self._meta_id(conn, collection, field)
                if key is not None:
                    if meta:
                        await service.update_one(key, meta, MutationOptions(auto_purge_cache=False))
                else:
                    await service.create_one(
                        {**meta, "collection": collection, "field": field}, MutationOptions(auto_purge_cache=False)
                    )
        finally:
            await self._invalidate(opts)

        return field

    async def delete_field(self, collection: str, field: str, opts: Optional[MutationOptions] = None) -> None:
        """
        Drop the column, its meta row and the relations defined on it.

        o2m relations that used this field as their alias keep the foreign
        key; only their ``one_field`` is cleared.
        """
        self._require_admin()
        overview = self.schema.collections.get(collection)
        if overview is None:
            raise ForbiddenException()

        definition = overview.fields.get(field)
        if definition is None:
            async with connect(self.db) as conn:
                if await self._meta_id(conn, collection, field) is None:
                    raise ForbiddenException()
        elif field == overview.primary:
            raise InvalidPayloadException(f'Can\'t delete the primary key field "{field}".')

        try:
            async with transaction(self.db) as conn:
                if definition is not None and not definition.alias:
                    await drop_column(conn, collection, field)

                await delete_rows(
                    conn, fields_table, fields_table.c.collection == collection, fields_table.c.field == field
                )
                await delete_rows(
                    conn,
                    relations_table,
                    relations_table.c.many_collection == collection,
                    relations_table.c.many_field == field,
                )
                await conn.execute(
                    sa.update(relations_table)
                    .where(relations_table.c.one_collection == collection, relations_table.c.one_field == field)
                    .values(one_field=None)
                )
        finally:
            await self._invalidate(opts)

        logger.info(f'Deleted field "{collection}.{field}"')


async def add_column(conn: AsyncConnection, collection: str, column: sa.Column) -> None:
    """ALTER TABLE ADD COLUMN; a unique column gets its own unique index."""
    unique = bool(column.unique)
    column.unique = None
    # CreateColumn compiles against a table for dialect specifics
    sa.Table(collection, sa.MetaData(), column)
    ddl = CreateColumn(column).compile(dialect=conn.dialect)

    try:
        await conn.execute(sa.text(f"ALTER TABLE {quote(conn, collection)} ADD COLUMN {ddl}"))
        if unique:
            index = sa.Index(f"{collection}_{column.name}_unique", column, unique=True)
            await conn.run_sync(index.create)
    except DBAPIError as e:
        raise translate_database_error(e, collection) from e


async def drop_column(conn: AsyncConnection, collection: str, field: str) -> None:
    try:
        await conn.execute(sa.text(f"ALTER TABLE {quote(conn, collection)} DROP COLUMN {quote(conn, field)}"))
    except DBAPIError as e:
        raise translate_database_error(e, collection) from e
