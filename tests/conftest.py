"""
Shared fixtures.

Every test gets a fresh SQLite database (aiosqlite, under tmp_path) with the
system tables installed and a small blog + shop schema:

    authors  1──*  articles  1──*  comments
    orders   1──*  order_items          (children deleted on deselect)
    blocks   item -> any of articles/authors (any-to-one)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest
import sqlalchemy as sa

from itemgraph.config import Settings
from itemgraph.core.defs import SchemaOverview
from itemgraph.database.connection import create_engine
from itemgraph.messaging.cache import SchemaCache
from itemgraph.messaging.events import HookEmitter
from itemgraph.runtime.context import Accountability, Permission
from itemgraph.schema.overview import get_schema
from itemgraph.schema.system import collections_table, fields_table, install_system_tables, relations_table
from itemgraph.services.items import ItemsService


metadata = sa.MetaData()

authors = sa.Table(
    "authors",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("email", sa.String(255)),
)

articles = sa.Table(
    "articles",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("title", sa.String(200), nullable=False),
    sa.Column("status", sa.String(20), server_default="draft"),
    sa.Column("body", sa.Text),
    sa.Column("rating", sa.Integer),
    sa.Column("score", sa.Float),
    sa.Column("published", sa.Boolean),
    sa.Column("published_on", sa.Date),
    sa.Column("extra", sa.JSON),
    sa.Column("tags", sa.Text),
    sa.Column("secret", sa.String(255)),
    sa.Column("author", sa.Integer, sa.ForeignKey("authors.id")),
    sa.Column("date_created", sa.DateTime),
    sa.Column("deleted_at", sa.DateTime),
    sa.Column("deleted_by", sa.String(64)),
)

comments = sa.Table(
    "comments",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("article", sa.Integer, sa.ForeignKey("articles.id")),
    sa.Column("body", sa.Text),
    sa.Column("sort", sa.Integer),
)

orders = sa.Table(
    "orders",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("reference", sa.String(50), unique=True),
    sa.Column("note", sa.Text),
)

order_items = sa.Table(
    "order_items",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id"), nullable=False),
    sa.Column("sku", sa.String(50), nullable=False),
    sa.Column("qty", sa.Integer),
)

blocks = sa.Table(
    "blocks",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("collection", sa.String(64)),
    sa.Column("item", sa.String(255)),
)


COLLECTION_ROWS = [
    {"collection": "articles", "is_soft_delete": True, "accountability": "all"},
    {"collection": "orders", "accountability": "all"},
]

FIELD_ROWS = [
    {"collection": "articles", "field": "title", "required": True},
    {"collection": "articles", "field": "tags", "special": "csv"},
    {"collection": "articles", "field": "secret", "special": "hash"},
    {"collection": "articles", "field": "date_created", "special": "date-created"},
    {"collection": "authors", "field": "email", "unique": True},
]

RELATION_ROWS = [
    {"many_collection": "articles", "many_field": "author", "one_collection": "authors", "one_field": "articles"},
    {
        "many_collection": "comments",
        "many_field": "article",
        "one_collection": "articles",
        "one_field": "comments",
        "sort_field": "sort",
    },
    {
        "many_collection": "order_items",
        "many_field": "order_id",
        "one_collection": "orders",
        "one_field": "items",
        "one_deselect_action": "delete",
    },
    {
        "many_collection": "blocks",
        "many_field": "item",
        "one_collection_field": "collection",
        "one_allowed_collections": "articles,authors",
    },
]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings for a throwaway database; schema caching off."""
    return Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", cache_schema=False)


@pytest.fixture
async def engine(settings: Settings):
    """Engine with system tables, the test schema and its metadata rows."""
    engine = create_engine(settings)
    await install_system_tables(engine)

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        for row in COLLECTION_ROWS:
            await conn.execute(sa.insert(collections_table).values(**row))
        for row in FIELD_ROWS:
            await conn.execute(sa.insert(fields_table).values(**row))
        for row in RELATION_ROWS:
            await conn.execute(sa.insert(relations_table).values(**row))

    yield engine
    await engine.dispose()


@pytest.fixture
def load_schema(engine, settings: Settings):
    """Rebuild the schema overview from the database."""

    async def load() -> SchemaOverview:
        return await get_schema(engine, settings=settings, schema_cache=SchemaCache(enabled=False))

    return load


@pytest.fixture
async def schema(load_schema) -> SchemaOverview:
    return await load_schema()


@pytest.fixture
def emitter() -> HookEmitter:
    return HookEmitter()


@pytest.fixture
def items(schema: SchemaOverview, engine, settings: Settings, emitter: HookEmitter):
    """Factory for ItemsService on the test database."""

    def make(collection: str, accountability: Optional[Accountability] = None, **kwargs: Any) -> ItemsService:
        return ItemsService(
            collection,
            schema=schema,
            db=engine,
            accountability=accountability,
            emitter=kwargs.pop("emitter", emitter),
            settings=kwargs.pop("settings", settings),
            **kwargs,
        )

    return make


@pytest.fixture
def admin() -> Accountability:
    return Accountability(user="admin-1", role="admin", admin=True)


@pytest.fixture
def make_role():
    """Factory for a non-admin accountability holding the given permissions."""

    def make(*permissions: Permission, user: str = "user-1", role: str = "editor") -> Accountability:
        return Accountability(user=user, role=role, admin=False, permissions=list(permissions))

    return make
