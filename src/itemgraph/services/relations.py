"""
Relations service - the ``directus_relations`` rows.

Reads merge physical foreign keys with the meta rows, the same way the
schema builder does. Writes only touch the meta rows; creating or dropping
foreign key constraints is left to migrations.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection

from ..core.defs import Relation
from ..core.errors import ForbiddenException, InvalidPayloadException
from ..core.query_types import MutationOptions
from ..database.connection import connect, transaction
from ..database.inspector import get_overview
from ..schema.overview import load_relations
from ..schema.system import relations_table
from .base import MetadataService

logger = logging.getLogger(__name__)

META_FIELDS = [
    "one_field",
    "one_collection_field",
    "one_allowed_collections",
    "junction_field",
    "sort_field",
    "one_deselect_action",
]


def describe_relation(relation: Relation) -> dict[str, Any]:
    return {
        "collection": relation.collection,
        "field": relation.field,
        "related_collection": relation.related_collection,
        "meta": asdict(relation.meta) if relation.meta else None,
    }


class RelationsService(MetadataService):
    """
    Usage:
        relations = RelationsService(schema=schema, db=engine)
        await relations.create_one({
            "collection": "comments",
            "field": "article",
            "related_collection": "articles",
            "meta": {"one_field": "comments"},
        })
    """

    async def read_all(self, collection: Optional[str] = None) -> list[dict[str, Any]]:
        """Relations defined on ``collection`` (the many side), or all of them."""
        self._require_admin()
        async with connect(self.db) as conn:
            tables = await get_overview(conn, exclude=self.settings.db_exclude_tables)
            relations = await load_relations(conn, tables)

        return [
            describe_relation(relation)
            for relation in relations
            if collection is None or relation.collection == collection
        ]

    async def read_one(self, collection: str, field: str) -> dict[str, Any]:
        for relation in await self.read_all(collection):
            if relation["field"] == field:
                return relation
        raise ForbiddenException()

    async def create_one(self, payload: dict[str, Any], opts: Optional[MutationOptions] = None) -> Any:
        """
        Store a relation meta row.

        Raises:
            InvalidPayloadException: Unknown collection/field or the relation already has a row
        """
        self._require_admin()
        collection = payload.get("collection")
        field = payload.get("field")
        related = payload.get("related_collection")

        overview = self.schema.collections.get(collection)
        if overview is None:
            raise InvalidPayloadException(f'Collection "{collection}" doesn\'t exist.')
        if field not in overview.fields:
            raise InvalidPayloadException(f'Field "{field}" doesn\'t exist in collection "{collection}".')
        if related is not None and related not in self.schema.collections:
            raise InvalidPayloadException(f'Collection "{related}" doesn\'t exist.')

        meta = payload.get("meta") or {}
        row = {name: meta[name] for name in META_FIELDS if name in meta}
        row.update(many_collection=collection, many_field=field, one_collection=related)

        try:
            async with transaction(self.db) as conn:
                if await self._meta_id(conn, collection, field) is not None:
                    raise InvalidPayloadException(f'Field "{collection}.{field}" already has a relationship.')
                key = await self._items("directus_relations", conn).create_one(
                    row, MutationOptions(auto_purge_cache=False)
                )
        finally:
            await self._invalidate(opts)

        logger.info(f'Created relation "{collection}.{field}" -> {related}')
        return key

    async def update_one(
        self, collection: str, field: str, payload: dict[str, Any], opts: Optional[MutationOptions] = None
    ) -> Any:
        """Update the meta row of a relation; a foreign key without a row gets one."""
        self._require_admin()
        meta = payload.get("meta") or {}
        values = {name: meta[name] for name in META_FIELDS if name in meta}
        if "related_collection" in payload:
            values["one_collection"] = payload["related_collection"]

        try:
            async with transaction(self.db) as conn:
                service = self._items("directus_relations", conn)
                key = await self._meta_id(conn, collection, field)
                if key is not None:
                    if values:
                        await service.update_one(key, values, MutationOptions(auto_purge_cache=False))
                else:
                    _, relation = self.schema.get_relation(collection, field)
                    if relation is None or relation.collection != collection:
                        raise ForbiddenException()
                    values.setdefault("one_collection", relation.related_collection)
                    key = await service.create_one(
                        {**values, "many_collection": collection, "many_field": field},
                        MutationOptions(auto_purge_cache=False),
                    )
        finally:
            await self._invalidate(opts)

        return key

    async def delete_one(self, collection: str, field: str, opts: Optional[MutationOptions] = None) -> None:
        """Delete the meta row of a relation. The foreign key, if any, stays."""
        self._require_admin()
        try:
            async with transaction(self.db) as conn:
                key = await self._meta_id(conn, collection, field)
                if key is None:
                    raise ForbiddenException()
                await self._items("directus_relations", conn).delete_one(key, MutationOptions(auto_purge_cache=False))
        finally:
            await self._invalidate(opts)

    async def _meta_id(self, conn: AsyncConnection, collection: str, field: str) -> Any:
        result = await conn.execute(
            sa.select(relations_table.c.id).where(
                relations_table.c.many_collection == collection,
                relations_table.c.many_field == field,
            )
        )
        return result.scalar()
