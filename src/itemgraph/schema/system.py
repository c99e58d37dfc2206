"""
System collections: the metadata tables and the policy attached to them.

System behavior is expressed as data. ``SYSTEM_POLICIES`` maps each system
collection to the extra constraints the generic engine applies to it, and
``SYSTEM_FIELD_SPECIALS`` adds the special flags its columns need.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import sqlalchemy as sa

from ..database.connection import Database, transaction


SYSTEM_PREFIX = "directus_"

system_metadata = sa.MetaData()

collections_table = sa.Table(
    "directus_collections",
    system_metadata,
    sa.Column("collection", sa.String(64), primary_key=True),
    sa.Column("icon", sa.String(30)),
    sa.Column("note", sa.Text),
    sa.Column("hidden", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("singleton", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("accountability", sa.String(255), server_default="all"),
    sa.Column("sort_field", sa.String(64)),
    sa.Column("is_soft_delete", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("sort", sa.Integer),
    sa.Column("group", sa.String(64)),
)

fields_table = sa.Table(
    "directus_fields",
    system_metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("collection", sa.String(64), nullable=False),
    sa.Column("field", sa.String(64), nullable=False),
    sa.Column("special", sa.String(64)),
    sa.Column("interface", sa.String(64)),
    sa.Column("options", sa.JSON),
    sa.Column("readonly", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("hidden", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("sort", sa.Integer),
    sa.Column("note", sa.Text),
    sa.Column("required", sa.Boolean, server_default=sa.false()),
    sa.Column("validation", sa.JSON),
    sa.Column("unique", sa.Boolean, server_default=sa.false()),
    sa.Column("unique_combination", sa.Boolean, server_default=sa.false()),
)

relations_table = sa.Table(
    "directus_relations",
    system_metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("many_collection", sa.String(64), nullable=False),
    sa.Column("many_field", sa.String(64), nullable=False),
    sa.Column("one_collection", sa.String(64)),
    sa.Column("one_field", sa.String(64)),
    sa.Column("one_collection_field", sa.String(64)),
    sa.Column("one_allowed_collections", sa.Text),
    sa.Column("junction_field", sa.String(64)),
    sa.Column("sort_field", sa.String(64)),
    sa.Column("one_deselect_action", sa.String(255), nullable=False, server_default="nullify"),
)

permissions_table = sa.Table(
    "directus_permissions",
    system_metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("role", sa.String(64)),
    sa.Column("collection", sa.String(64), nullable=False),
    sa.Column("action", sa.String(10), nullable=False),
    sa.Column("permissions", sa.JSON),
    sa.Column("validation", sa.JSON),
    sa.Column("presets", sa.JSON),
    sa.Column("fields", sa.Text),
)

activity_table = sa.Table(
    "directus_activity",
    system_metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("action", sa.String(45), nullable=False),
    sa.Column("user", sa.String(64)),
    sa.Column("timestamp", sa.DateTime, nullable=False, server_default=sa.func.current_timestamp()),
    sa.Column("ip", sa.String(50)),
    sa.Column("user_agent", sa.String(255)),
    sa.Column("collection", sa.String(64), nullable=False),
    sa.Column("item", sa.String(255), nullable=False),
    sa.Column("comment", sa.Text),
)

revisions_table = sa.Table(
    "directus_revisions",
    system_metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("activity", sa.Integer, nullable=False),
    sa.Column("collection", sa.String(64), nullable=False),
    sa.Column("item", sa.String(255), nullable=False),
    sa.Column("data", sa.JSON),
    sa.Column("delta", sa.JSON),
    sa.Column("parent", sa.Integer),
)


@dataclass(frozen=True)
class CollectionPolicy:
    """Extra constraints the engine applies to one collection."""
    event_scope: str = "items"
    accountability: Optional[Literal["all", "activity"]] = "all"
    unique_check: bool = True
    admin_only: bool = False


DEFAULT_POLICY = CollectionPolicy()

SYSTEM_POLICIES: dict[str, CollectionPolicy] = {
    "directus_collections": CollectionPolicy(event_scope="collections", admin_only=True),
    "directus_fields": CollectionPolicy(event_scope="fields", unique_check=False, admin_only=True),
    "directus_relations": CollectionPolicy(event_scope="relations", admin_only=True),
    "directus_permissions": CollectionPolicy(event_scope="permissions", admin_only=True),
    "directus_activity": CollectionPolicy(event_scope="activity", accountability=None),
    "directus_revisions": CollectionPolicy(event_scope="revisions", accountability=None),
}

SYSTEM_FIELD_SPECIALS: dict[str, dict[str, list[str]]] = {
    "directus_fields": {"special": ["csv"], "options": ["json"], "validation": ["json"]},
    "directus_relations": {"one_allowed_collections": ["csv"]},
    "directus_permissions": {
        "permissions": ["json"],
        "validation": ["json"],
        "presets": ["json"],
        "fields": ["csv"],
    },
    "directus_activity": {"timestamp": ["date-created"]},
    "directus_revisions": {"data": ["json"], "delta": ["json"]},
}


def get_policy(collection: str) -> CollectionPolicy:
    return SYSTEM_POLICIES.get(collection, DEFAULT_POLICY)


def is_system_collection(collection: str) -> bool:
    return collection.startswith(SYSTEM_PREFIX)


async def install_system_tables(db: Database) -> None:
    """Create the metadata tables that don't exist yet."""
    async with transaction(db) as conn:
        await conn.run_sync(system_metadata.create_all)
