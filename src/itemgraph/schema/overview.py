"""
Schema overview builder.

Merges physical introspection with the metadata tables into a SchemaOverview:

1. Introspect tables/columns/keys (``database.inspector``)
2. Overlay ``directus_collections`` rows (singleton, soft delete, accountability)
3. Overlay ``directus_fields`` rows (special flags, validation, uniqueness)
4. Derive relations from foreign keys, overlay ``directus_relations`` rows
5. Index relations by both sides

The snapshot is cached under ``"schema"`` and rebuilt on a miss. A cache
failure is logged and the snapshot is rebuilt, never raised.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection

from ..config import Settings, get_settings
from ..core.defs import (
    ALIAS_TYPES,
    CollectionOverview,
    FieldOverview,
    Relation,
    RelationMeta,
    SchemaOverview,
    build_relation_map,
)
from ..database.connection import Database, connect
from ..database.inspector import TableInfo, get_overview
from ..messaging.cache import SchemaCache, schema_cache as default_schema_cache
from .system import (
    SYSTEM_FIELD_SPECIALS,
    collections_table,
    fields_table,
    get_policy,
    is_system_collection,
    relations_table,
)

logger = logging.getLogger(__name__)

# Specials that change the local type of a column
TYPE_SPECIALS = {"json": "json", "csv": "csv", "hash": "hash", "uuid": "uuid"}


async def get_schema(
    db: Database,
    *,
    settings: Optional[Settings] = None,
    schema_cache: Optional[SchemaCache] = None,
) -> SchemaOverview:
    """
    Return the schema overview, from cache when possible.

    Usage:
        schema = await get_schema(engine)
        service = ItemsService("articles", schema=schema, db=engine)
    """
    settings = settings or get_settings()
    schema_cache = schema_cache if schema_cache is not None else default_schema_cache

    if settings.cache_schema:
        try:
            cached = await schema_cache.get()
            if cached is not None:
                return cached
        except Exception as e:
            logger.warning(f"Couldn't read schema from cache: {e}")

    async with connect(db) as conn:
        schema = await build_schema(conn, settings)

    if settings.cache_schema:
        try:
            await schema_cache.set(schema)
        except Exception as e:
            logger.warning(f"Couldn't write schema to cache: {e}")

    return schema


async def build_schema(conn: AsyncConnection, settings: Optional[Settings] = None) -> SchemaOverview:
    """Build a fresh SchemaOverview from the database."""
    settings = settings or get_settings()
    tables = await get_overview(conn, exclude=settings.db_exclude_tables)

    collection_rows = await _read_rows(conn, collections_table, tables)
    field_rows = await _read_rows(conn, fields_table, tables)

    collection_meta = {row["collection"]: row for row in collection_rows}
    collections: dict[str, CollectionOverview] = {}

    for name, table in tables.items():
        if " " in name:
            logger.warning(f'Collection "{name}" has a space in its name and is ignored.')
            continue
        if len(table.primary_keys) != 1:
            logger.warning(f'Collection "{name}" doesn\'t have exactly one primary key column and is ignored.')
            continue
        collections[name] = _collection_overview(table, collection_meta.get(name))

    _apply_system_specials(collections)
    _apply_field_rows(collections, field_rows)

    relations = [
        r
        for r in await load_relations(conn, tables)
        if r.collection in collections
        and (r.related_collection is None or r.related_collection in collections)
    ]
    _add_o2m_aliases(collections, relations)

    logger.debug(f"Built schema overview: {len(collections)} collections, {len(relations)} relations")

    return SchemaOverview(
        collections=collections,
        relations=relations,
        relation_map=build_relation_map(relations),
    )


async def load_relations(conn: AsyncConnection, tables: dict[str, TableInfo]) -> list[Relation]:
    """
    Relations from foreign keys, overlaid with ``directus_relations`` rows.

    A metadata row without a foreign key still yields a relation (o2m aliases,
    any-to-one fields and relations on backends without FK support).
    """
    foreign_keys = {
        (fk.table, fk.column): fk for table in tables.values() for fk in table.foreign_keys
    }

    relations: list[Relation] = []
    seen: set[tuple[str, str]] = set()

    for row in await _read_rows(conn, relations_table, tables):
        key = (row["many_collection"], row["many_field"])
        fk = foreign_keys.get(key)
        allowed = _csv(row.get("one_allowed_collections")) or None
        relations.append(
            Relation(
                collection=row["many_collection"],
                field=row["many_field"],
                related_collection=row.get("one_collection") or (fk.foreign_key_table if fk else None),
                meta=RelationMeta(
                    id=row.get("id"),
                    many_collection=row["many_collection"],
                    many_field=row["many_field"],
                    one_collection=row.get("one_collection"),
                    one_field=row.get("one_field"),
                    one_collection_field=row.get("one_collection_field"),
                    one_allowed_collections=allowed,
                    junction_field=row.get("junction_field"),
                    sort_field=row.get("sort_field"),
                    one_deselect_action=row.get("one_deselect_action") or "nullify",
                ),
            )
        )
        seen.add(key)

    for key, fk in foreign_keys.items():
        if key in seen:
            continue
        relations.append(Relation(collection=fk.table, field=fk.column, related_collection=fk.foreign_key_table))

    return relations


def _collection_overview(table: TableInfo, meta: Optional[dict]) -> CollectionOverview:
    policy = get_policy(table.name)

    if is_system_collection(table.name):
        accountability = policy.accountability
    elif meta is not None:
        accountability = meta.get("accountability")
    else:
        accountability = "all"

    fields: dict[str, FieldOverview] = {}
    for column in table.columns.values():
        if " " in column.name:
            logger.warning(f'Field "{table.name}.{column.name}" has a space in its name and is ignored.')
            continue
        fields[column.name] = FieldOverview(
            field=column.name,
            type=column.type,
            db_type=column.db_type,
            nullable=column.is_nullable,
            generated=column.is_generated,
            default_value=column.default_value,
            precision=column.numeric_precision,
            scale=column.numeric_scale,
            max_length=column.max_length,
        )

    return CollectionOverview(
        collection=table.name,
        primary=table.primary_keys[0],
        fields=fields,
        singleton=bool(meta and meta.get("singleton")),
        is_soft_delete=bool(meta and meta.get("is_soft_delete")),
        sort_field=meta.get("sort_field") if meta else None,
        note=meta.get("note") if meta else None,
        accountability=accountability,
    )


def _apply_system_specials(collections: dict[str, CollectionOverview]) -> None:
    for collection, specials in SYSTEM_FIELD_SPECIALS.items():
        overview = collections.get(collection)
        if overview is None:
            continue
        for field_name, special in specials.items():
            field = overview.fields.get(field_name)
            if field is not None:
                field.special = list(special)
                field.type = _local_type(field.type, field.special)


def _apply_field_rows(collections: dict[str, CollectionOverview], rows: list[dict]) -> None:
    for row in rows:
        overview = collections.get(row["collection"])
        if overview is None:
            continue

        name = row["field"]
        special = _csv(row.get("special"))

        if "no-data" in special:
            continue
        if " " in name:
            logger.warning(f'Field "{overview.collection}.{name}" has a space in its name and is ignored.')
            continue

        field = overview.fields.get(name)
        if field is None:
            if not any(s in ALIAS_TYPES for s in special):
                continue
            field = FieldOverview(field=name, type="alias", alias=True)
            overview.fields[name] = field

        field.special = special
        field.note = row.get("note")
        field.validation = _json(row.get("validation"))
        field.unique = bool(row.get("unique"))
        field.unique_combination = bool(row.get("unique_combination"))
        field.required = bool(row.get("required"))
        if not field.alias:
            field.type = _local_type(field.type, special)


def _add_o2m_aliases(collections: dict[str, CollectionOverview], relations: list[Relation]) -> None:
    for relation in relations:
        one_field = relation.meta.one_field if relation.meta else None
        if not one_field or relation.related_collection not in collections:
            continue
        overview = collections[relation.related_collection]
        if one_field not in overview.fields:
            overview.fields[one_field] = FieldOverview(
                field=one_field, type="alias", alias=True, special=["o2m"]
            )


def _local_type(current: str, special: list[str]) -> str:
    for flag, local_type in TYPE_SPECIALS.items():
        if flag in special:
            return local_type
    return current


async def _read_rows(conn: AsyncConnection, table: sa.Table, tables: dict[str, TableInfo]) -> list[dict]:
    if table.name not in tables:
        return []
    result = await conn.execute(sa.select(table))
    return [dict(row) for row in result.mappings()]


def _csv(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, list):
        return value
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value
