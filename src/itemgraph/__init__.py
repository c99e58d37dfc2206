"""
itemgraph - headless CMS engine over any SQL database.

Reads a live database plus a handful of metadata tables into a schema
overview, and serves it through:
- a declarative query language compiled to a nested AST and run as SQL
- permission rewriting of that AST per role
- a transactional mutation pipeline with nested relational writes,
  activity and revision history
- admin services that create and alter collections, fields and relations

Usage:
    from itemgraph import ItemsService, Query, create_engine, get_schema

    engine = create_engine()
    schema = await get_schema(engine)
    articles = ItemsService("articles", schema=schema, db=engine)
    items = await articles.read_by_query(Query(fields=["id", "title", "author.name"]))
"""

from __future__ import annotations

from .api import create_items_router, register_exception_handlers
from .config import Settings, get_settings, load_settings
from .core import (
    ForbiddenException,
    InvalidPayloadException,
    InvalidQueryException,
    ItemGraphError,
    Meta,
    MutationOptions,
    Query,
    QueryOptions,
    RecordNotUniqueException,
    SchemaOverview,
)
from .database import close_db, create_engine, get_engine
from .messaging import CacheManager, HookEmitter, SchemaCache
from .runtime import Accountability, Permission
from .schema import get_schema, install_system_tables
from .services import (
    CollectionsService,
    FieldsService,
    ItemsService,
    MetaService,
    RelationsService,
)

__version__ = "0.1.0"

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "load_settings",
    # Core
    "ForbiddenException",
    "InvalidPayloadException",
    "InvalidQueryException",
    "ItemGraphError",
    "Meta",
    "MutationOptions",
    "Query",
    "QueryOptions",
    "RecordNotUniqueException",
    "SchemaOverview",
    # Database
    "close_db",
    "create_engine",
    "get_engine",
    "install_system_tables",
    "get_schema",
    # Runtime
    "Accountability",
    "Permission",
    # Messaging
    "CacheManager",
    "HookEmitter",
    "SchemaCache",
    # Services
    "CollectionsService",
    "FieldsService",
    "ItemsService",
    "MetaService",
    "RelationsService",
    # API
    "create_items_router",
    "register_exception_handlers",
]
