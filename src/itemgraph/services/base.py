"""
Shared plumbing for the metadata services (collections, fields, relations).

They change the schema itself, so they are admin only and every mutation
ends by dropping the cached schema snapshot and the query cache.
"""

from __future__ import annotations

from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection

from ..config import Settings, get_settings
from ..core.defs import SchemaOverview
from ..core.errors import ForbiddenException
from ..core.query_types import MutationOptions
from ..database.connection import Database
from ..messaging.cache import CacheManager, SchemaCache, schema_cache as default_schema_cache
from ..messaging.events import HookEmitter
from ..runtime.context import Accountability
from .items import ItemsService


class MetadataService:
    def __init__(
        self,
        *,
        schema: SchemaOverview,
        db: Database,
        accountability: Optional[Accountability] = None,
        emitter: Optional[HookEmitter] = None,
        cache: Optional[CacheManager] = None,
        schema_cache: Optional[SchemaCache] = None,
        settings: Optional[Settings] = None,
    ):
        self.schema = schema
        self.db = db
        self.accountability = accountability
        self.emitter = emitter or HookEmitter()
        self.cache = cache
        self.schema_cache = schema_cache if schema_cache is not None else default_schema_cache
        self.settings = settings or get_settings()

    def _require_admin(self) -> None:
        if self.accountability is not None and not self.accountability.admin:
            raise ForbiddenException()

    def _items(self, collection: str, db: Database) -> ItemsService:
        return ItemsService(
            collection,
            schema=self.schema,
            db=db,
            accountability=self.accountability,
            emitter=self.emitter,
            cache=self.cache,
            settings=self.settings,
        )

    async def _invalidate(self, opts: Optional[MutationOptions] = None) -> None:
        opts = opts or MutationOptions()
        await self.schema_cache.invalidate()
        if self.cache is not None and self.settings.cache_auto_purge and opts.auto_purge_cache:
            await self.cache.clear()


def quote(conn: AsyncConnection, name: str) -> str:
    return conn.dialect.identifier_preparer.quote(name)


async def delete_rows(conn: AsyncConnection, table: sa.Table, *conditions: Any) -> int:
    """Plain DELETE on a metadata table, bypassing hooks and activity."""
    result = await conn.execute(sa.delete(table).where(*conditions))
    return result.rowcount or 0
