"""
Meta service - counts returned next to a list read.

    total_count   rows the caller may see (permission filter + soft delete)
    filter_count  rows matching the query as well (filter + search)
    current_page / total_page  derived from limit/offset/page
"""

from __future__ import annotations

import math
from typing import Any, Optional

import sqlalchemy as sa

from ..config import Settings, get_settings
from ..core.defs import SchemaOverview
from ..core.errors import ForbiddenException, InvalidQueryException
from ..core.filters import and_filters, merge_soft_delete_filter, parse_filter
from ..core.query_types import Meta, Query
from ..core.validator import QueryValidator
from ..database.connection import Database, connect
from ..database.helpers import get_helpers
from ..runtime.context import Accountability
from ..runtime.sql import FilterCompiler, get_table, search_clause


class MetaService:
    """
    Usage:
        meta = await MetaService(schema=schema, db=engine).get_meta_for_query("articles", query)
        meta.filter_count
    """

    def __init__(
        self,
        *,
        schema: SchemaOverview,
        db: Database,
        accountability: Optional[Accountability] = None,
        settings: Optional[Settings] = None,
    ):
        self.schema = schema
        self.db = db
        self.accountability = accountability
        self.settings = settings or get_settings()

    async def get_meta_for_query(self, collection: str, query: Query) -> Optional[Meta]:
        """Counts for the keys listed in ``query.meta``; None when none are asked for."""
        if not query.meta:
            return None

        meta = Meta()
        wants_pages = "current_page" in query.meta or "total_page" in query.meta

        if "total_count" in query.meta:
            meta.total_count = await self._count(collection, self._base_filter(collection, None, query))

        if "filter_count" in query.meta or wants_pages:
            if query.filter:
                errors = QueryValidator(self.schema).validate_filter(collection, query.filter)
                if errors:
                    raise InvalidQueryException(errors)
            meta.filter_count = await self._count(
                collection, self._base_filter(collection, query.filter, query), search=query.search
            )

        if wants_pages:
            limit = query.limit if query.limit is not None else self.settings.query_limit_default
            if query.page:
                meta.current_page = query.page
            elif limit and limit > 0:
                meta.current_page = (query.offset or 0) // limit + 1
            else:
                meta.current_page = 1
            meta.total_page = math.ceil(meta.filter_count / limit) if limit and limit > 0 else 1

        if "filter_count" not in query.meta:
            meta.filter_count = None

        return meta

    def _base_filter(self, collection: str, filter: Optional[dict], query: Query) -> Optional[dict]:
        overview = self.schema.collections[collection]
        filter = parse_filter(filter, self.accountability)

        if self.accountability is not None and not self.accountability.admin:
            permission = self.accountability.get_permission(collection, "read")
            if permission is None:
                raise ForbiddenException()
            filter = and_filters(filter, parse_filter(permission.permissions, self.accountability))

        deleted_at = overview.deleted_at_field
        if overview.is_soft_delete and deleted_at and not query.show_soft_delete:
            filter = merge_soft_delete_filter(filter, deleted_at)
        return filter

    async def _count(self, collection: str, filter: Optional[dict], search: Optional[str] = None) -> int:
        table = get_table(self.schema, collection)
        stmt = sa.select(sa.func.count()).select_from(table)

        async with connect(self.db) as conn:
            compiler = FilterCompiler(self.schema, get_helpers(conn))
            conditions: list[Any] = [compiler.compile(collection, table, filter)]
            if search:
                conditions.append(search_clause(self.schema, collection, table, search))
            conditions = [c for c in conditions if c is not None]
            if conditions:
                stmt = stmt.where(*conditions)
            return int(await conn.scalar(stmt) or 0)
