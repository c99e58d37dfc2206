"""
Collections service - create, describe and drop collections.

A collection is a table plus an optional ``directus_collections`` row.
Creating one builds the table from the field payloads (see
``services.fields``) and writes the meta rows in the same transaction.

Collection payload:
    {
        "collection": "articles",
        "meta": {"note": "Blog posts", "is_soft_delete": True},
        "schema": {},          # None creates a meta-only collection (no table)
        "fields": [{"field": "id", "type": "integer", "schema": {"is_primary_key": True}}, ...],
    }
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection

from ..core.errors import ForbiddenException, InvalidPayloadException
from ..core.query_types import MutationOptions, Query
from ..database.connection import transaction
from ..database.errors import translate_database_error
from ..schema.system import (
    SYSTEM_PREFIX,
    activity_table,
    collections_table,
    fields_table,
    is_system_collection,
    permissions_table,
    relations_table,
    revisions_table,
)
from .base import MetadataService, delete_rows
from .fields import column_for, is_alias, meta_row

logger = logging.getLogger(__name__)


DEFAULT_PRIMARY_KEY = {
    "field": "id",
    "type": "integer",
    "schema": {"is_primary_key": True, "has_auto_increment": True},
    "meta": {"hidden": True, "readonly": True, "interface": "numeric"},
}


def _no_purge() -> MutationOptions:
    return MutationOptions(auto_purge_cache=False)


class CollectionsService(MetadataService):
    """
    Usage:
        collections = CollectionsService(schema=schema, db=engine, accountability=accountability)
        await collections.create_one({"collection": "tags", "fields": [...], "meta": {"note": "Tags"}})
        await collections.delete_one("tags")
    """

    # --- reads ---

    async def read_by_query(self, query: Optional[Query] = None) -> list[dict[str, Any]]:
        """
        Every collection with its meta row and table.

        ``query`` applies to the meta rows; with a filter, only collections
        whose meta row matched are returned.
        """
        self._require_admin()
        query = query or Query(limit=-1)
        if query.limit is None:
            query.limit = -1

        rows = await self._items("directus_collections", self.db).read_by_query(query)
        meta = {row["collection"]: row for row in rows}

        names = set(meta) if query.filter else set(meta) | set(self.schema.collections)
        return [
            {
                "collection": name,
                "meta": meta.get(name),
                "schema": {"name": name} if name in self.schema.collections else None,
            }
            for name in sorted(names)
        ]

    async def read_one(self, collection: str) -> dict[str, Any]:
        items = await self.read_many([collection])
        if not items:
            raise ForbiddenException()
        return items[0]

    async def read_many(self, collections: list[str]) -> list[dict[str, Any]]:
        wanted = set(collections)
        return [item for item in await self.read_by_query() if item["collection"] in wanted]

    # --- create ---

    async def create_one(self, payload: dict[str, Any], opts: Optional[MutationOptions] = None) -> str:
        """
        Create a collection.

        Raises:
            ForbiddenException: Caller is not an admin
            InvalidPayloadException: Missing/reserved/existing name, or no primary key
        """
        self._require_admin()
        try:
            async with transaction(self.db) as conn:
                name = await self._create(conn, payload)
        finally:
            await self._invalidate(opts)

        logger.info(f'Created collection "{name}"')
        return name

    async def create_many(self, payloads: list[dict[str, Any]], opts: Optional[MutationOptions] = None) -> list[str]:
        self._require_admin()
        names = []
        try:
            async with transaction(self.db) as conn:
                for payload in payloads:
                    names.append(await self._create(conn, payload))
        finally:
            await self._invalidate(opts)
        return names

    async def _create(self, conn: AsyncConnection, payload: dict[str, Any]) -> str:
        name = payload.get("collection")
        if not name:
            raise InvalidPayloadException('"collection" is required.')
        if is_system_collection(name):
            raise InvalidPayloadException(f'Collections can\'t start with "{SYSTEM_PREFIX}".')
        if await self._has_table(conn, name) or await self._meta_exists(conn, name):
            raise InvalidPayloadException(f'Collection "{name}" already exists.')

        fields = [dict(field) for field in payload.get("fields") or []]

        if payload.get("schema", {}) is not None:
            if not fields:
                fields = [dict(DEFAULT_PRIMARY_KEY)]
            if not any((field.get("schema") or {}).get("is_primary_key") for field in fields):
                raise InvalidPayloadException(f'Collection "{name}" needs a primary key field.')

            table = sa.Table(name, sa.MetaData(), *[column_for(f) for f in fields if not is_alias(f)])
            try:
                await conn.run_sync(table.create)
            except DBAPIError as e:
                raise translate_database_error(e, name) from e

        rows = [row for row in (meta_row(name, field) for field in fields) if row is not None]
        if rows:
            await self._items("directus_fields", conn).create_many(rows, _no_purge())

        if payload.get("meta") is not None:
            await self._items("directus_collections", conn).create_one(
                {**payload["meta"], "collection": name}, _no_purge()
            )

        return name

    # --- update ---

    async def update_one(self, collection: str, data: dict[str, Any], opts: Optional[MutationOptions] = None) -> str:
        """Upsert the meta row of a collection. The table is left alone."""
        await self.update_many([collection], data, opts)
        return collection

    async def update_many(
        self, collections: list[str], data: dict[str, Any], opts: Optional[MutationOptions] = None
    ) -> list[str]:
        self._require_admin()
        meta = {k: v for k, v in (data.get("meta") or {}).items() if k != "collection"}

        try:
            async with transaction(self.db) as conn:
                service = self._items("directus_collections", conn)
                for collection in collections:
                    if await self._meta_exists(conn, collection):
                        if meta:
                            await service.update_one(collection, meta, _no_purge())
                    elif collection in self.schema.collections:
                        await service.create_one({**meta, "collection": collection}, _no_purge())
                    else:
                        raise ForbiddenException()
        finally:
            await self._invalidate(opts)

        return collections

    # --- delete ---

    async def delete_one(self, collection: str, opts: Optional[MutationOptions] = None) -> str:
        await self.delete_many([collection], opts)
        return collection

    async def delete_many(self, collections: list[str], opts: Optional[MutationOptions] = None) -> list[str]:
        """
        Drop the tables and every metadata row that belongs to them.

        Relations from other collections into a dropped one lose their
        ``one_collection``/``one_field``.
        """
        self._require_admin()
        try:
            async with transaction(self.db) as conn:
                for collection in collections:
                    await self._delete(conn, collection)
        finally:
            await self._invalidate(opts)

        logger.info(f"Deleted collections {collections}")
        return collections

    async def _delete(self, conn: AsyncConnection, collection: str) -> None:
        if is_system_collection(collection):
            raise ForbiddenException(f'System collection "{collection}" can\'t be deleted.')

        physical = await self._has_table(conn, collection)
        if not physical and not await self._meta_exists(conn, collection):
            raise ForbiddenException()

        if physical:
            try:
                await conn.run_sync(sa.Table(collection, sa.MetaData()).drop)
            except DBAPIError as e:
                raise translate_database_error(e, collection) from e

        await delete_rows(conn, collections_table, collections_table.c.collection == collection)
        await delete_rows(conn, fields_table, fields_table.c.collection == collection)
        await delete_rows(conn, relations_table, relations_table.c.many_collection == collection)
        await delete_rows(conn, permissions_table, permissions_table.c.collection == collection)
        await delete_rows(conn, revisions_table, revisions_table.c.collection == collection)
        await delete_rows(conn, activity_table, activity_table.c.collection == collection)
        await conn.execute(
            sa.update(relations_table)
            .where(relations_table.c.one_collection == collection)
            .values(one_collection=None, one_field=None)
        )

    # --- helpers ---

    async def _has_table(self, conn: AsyncConnection, collection: str) -> bool:
        return await conn.run_sync(lambda sync_conn: sa.inspect(sync_conn).has_table(collection))

    async def _meta_exists(self, conn: AsyncConnection, collection: str) -> bool:
        result = await conn.execute(
            sa.select(collections_table.c.collection).where(collections_table.c.collection == collection)
        )
        return result.first() is not None

