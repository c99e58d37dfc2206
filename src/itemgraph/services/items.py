"""
Items service - generic CRUD over any collection.

Reads:
    query -> planner (AST) -> permission guard -> runner -> read hooks

Writes run one pipeline inside one transaction:
    uniqueness -> filter hook -> permission presets/validation -> m2o/a2o
    -> own row -> o2m -> activity/revisions -> commit -> action hook
    -> cache purge

Any failure rolls back the whole tree, nested relational writes included.
System collections go through the same code; the differences are data in
``schema.system.SYSTEM_POLICIES``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection

from ..config import Settings, get_settings
from ..core.defs import DATE_SPECIALS, USER_SPECIALS, SchemaOverview
from ..core.errors import (
    ForbiddenException,
    InvalidPayloadException,
    ItemGraphError,
    RecordNotUniqueCombinationException,
    RecordNotUniqueException,
    UniquenessErrors,
)
from ..core.filters import and_filters
from ..core.query_types import MutationOptions, Query, QueryOptions
from ..database.connection import Database, connect, transaction
from ..database.errors import translate_database_error
from ..database.helpers import get_helpers
from ..iam.service import AuthorizationService
from ..messaging.cache import CacheManager
from ..messaging.events import HookEmitter
from ..runtime.context import Accountability
from ..runtime.executor import run_ast
from ..runtime.planner import build_ast
from ..runtime.sql import get_table
from ..schema.system import get_policy
from .payload import PayloadService

logger = logging.getLogger(__name__)


class ItemsService:
    """
    CRUD for one collection.

    Usage:
        service = ItemsService("articles", schema=schema, db=engine, accountability=accountability)
        key = await service.create_one({"title": "Hello"})
        item = await service.read_one(key, Query(fields=["*", "author.name"]))
        await service.delete_one(key)

    ``db`` may be an engine or a connection. Services built on a connection
    that is inside a transaction join it instead of opening their own.
    """

    def __init__(
        self,
        collection: str,
        *,
        schema: SchemaOverview,
        db: Database,
        accountability: Optional[Accountability] = None,
        emitter: Optional[HookEmitter] = None,
        cache: Optional[CacheManager] = None,
        settings: Optional[Settings] = None,
    ):
        if collection not in schema.collections:
            raise InvalidPayloadException(f"Collection {collection} doesn't exist")

        self.collection = collection
        self.schema = schema
        self.db = db
        self.accountability = accountability
        self.emitter = emitter or HookEmitter()
        self.cache = cache
        self.settings = settings or get_settings()
        self.overview = schema.collections[collection]
        self.policy = get_policy(collection)

    # --- helpers ---

    @property
    def primary(self) -> str:
        return self.overview.primary

    def _events(self, action: str) -> list[str]:
        scope = self.policy.event_scope
        return [f"{scope}.{action}", f"{self.collection}.{scope}.{action}"]

    def _context(self, db: Database) -> dict[str, Any]:
        return {"database": db, "schema": self.schema, "accountability": self.accountability}

    def _require_admin_if_needed(self) -> None:
        if self.policy.admin_only and self.accountability is not None and not self.accountability.admin:
            raise ForbiddenException()

    def _with_db(self, db: Database, accountability: Any = ...) -> "ItemsService":
        """Same service on another handle (usually the open transaction)."""
        return ItemsService(
            self.collection,
            schema=self.schema,
            db=db,
            accountability=self.accountability if accountability is ... else accountability,
            emitter=self.emitter,
            cache=self.cache,
            settings=self.settings,
        )

    async def _purge_cache(self, opts: MutationOptions) -> None:
        if self.cache is not None and self.settings.cache_auto_purge and opts.auto_purge_cache:
            await self.cache.clear()

    def _bind_keys(self, conn: AsyncConnection, keys: list[Any]) -> list[Any]:
        helpers = get_helpers(conn)
        field = self.overview.fields[self.primary]
        return [helpers.write_value(key, field) for key in keys]

    # --- reads ---

    async def read_by_query(self, query: Optional[Query] = None, opts: Optional[QueryOptions] = None) -> list[dict]:
        """
        Read items matching ``query``.

        Raises:
            ForbiddenException: Nothing in the request is readable for the caller
            InvalidQueryException: The query doesn't fit the schema
        """
        query = query or Query()
        opts = opts or QueryOptions()
        self._require_admin_if_needed()

        cache_key = self._query_cache_key(query, opts)
        if cache_key is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        ast = build_ast(
            self.collection, query, self.schema, settings=self.settings, accountability=self.accountability
        )

        async with connect(self.db) as conn:
            if self.accountability is not None and not self.accountability.admin:
                auth = AuthorizationService(self.schema, conn, self.accountability, self.settings)
                ast = auth.process_ast(ast, opts.permissions_action)

            records = await run_ast(
                ast,
                self.schema,
                conn,
                settings=self.settings,
                strip_non_requested=opts.strip_non_requested,
                transformers=opts.transformers,
            )

            if records is None:
                raise ForbiddenException()

            if opts.emit_events:
                meta = {"query": query.model_dump(exclude_none=True), "collection": self.collection}
                records = await self.emitter.emit_filter(self._events("read"), records, meta, self._context(conn))
                await self.emitter.emit_action(
                    self._events("read"), {**meta, "payload": records}, self._context(self.db)
                )

        if cache_key is not None:
            await self.cache.set(cache_key, records, ttl=self.settings.cache_ttl)

        return records

    def _query_cache_key(self, query: Query, opts: QueryOptions) -> Optional[str]:
        if self.cache is None or not self.settings.cache_enabled:
            return None
        role = self.accountability.role if self.accountability else None
        admin = bool(self.accountability and self.accountability.admin)
        raw = json.dumps(
            {
                "query": query.model_dump(exclude_none=True),
                "role": role,
                "admin": admin,
                "action": opts.permissions_action,
                "strip": opts.strip_non_requested,
            },
            sort_keys=True,
            default=str,
        )
        return f"items:{self.collection}:{hashlib.md5(raw.encode()).hexdigest()}"

    async def read_one(self, key: Any, query: Optional[Query] = None, opts: Optional[QueryOptions] = None) -> dict:
        """
        Raises:
            ForbiddenException: The item doesn't exist or isn't readable
        """
        query = query or Query()
        keyed = query.model_copy(update={"filter": and_filters({self.primary: {"_eq": key}}, query.filter)})
        results = await self.read_by_query(keyed, opts)
        if not results:
            raise ForbiddenException()
        return results[0]

    async def read_many(
        self, keys: list[Any], query: Optional[Query] = None, opts: Optional[QueryOptions] = None
    ) -> list[dict]:
        query = query or Query()
        update: dict[str, Any] = {"filter": and_filters({self.primary: {"_in": list(keys)}}, query.filter)}
        if keys and query.limit is None:
            update["limit"] = len(keys)
        return await self.read_by_query(query.model_copy(update=update), opts)

    async def read_singleton(self, query: Optional[Query] = None, opts: Optional[QueryOptions] = None) -> dict:
        """
        The one item of a singleton collection.

        Without a row, returns the field defaults (primary key None).
        """
        query = (query or Query()).model_copy(update={"limit": 1})
        records = await self.read_by_query(query, opts)
        if records:
            return records[0]

        requested = query.fields or ["*"]
        defaults: dict[str, Any] = {}
        for name, field in self.overview.fields.items():
            if field.alias or ("*" not in requested and name not in requested):
                continue
            if name == self.primary:
                defaults[name] = None
            elif field.default_value is not None:
                defaults[name] = field.default_value
        return defaults

    async def get_keys_by_query(self, query: Optional[Query] = None) -> list[Any]:
        """
        Primary keys of the items matching ``query``.

        Reads without permission checks; the write that uses the keys does
        its own access check.
        """
        query = (query or Query()).model_copy(update={"fields": [self.primary]})
        service = self._with_db(self.db, accountability=None)
        items = await service.read_by_query(query, QueryOptions(emit_events=False))
        return [item[self.primary] for item in items if item.get(self.primary) is not None]

    # --- create ---

    async def create_one(self, data: dict[str, Any], opts: Optional[MutationOptions] = None) -> Any:
        """
        Create one item, with nested relational writes.

        Returns:
            Primary key of the new item
        """
        opts = opts or MutationOptions()
        self._require_admin_if_needed()
        payload = dict(data)

        async with transaction(self.db) as conn:
            await self._check_uniqueness(conn, payload)

            if opts.emit_events:
                payload = await self.emitter.emit_filter(
                    self._events("create"), payload, {"collection": self.collection}, self._context(conn)
                )

            if self.accountability is not None:
                auth = AuthorizationService(self.schema, conn, self.accountability, self.settings)
                payload = auth.validate_payload("create", self.collection, payload)

            payload_service = self._payload_service(conn)
            payload, revisions_m2o = await payload_service.process_m2o(payload)
            payload, revisions_a2o = await payload_service.process_a2o(payload)

            physical = {k: v for k, v in payload.items() if k in self.overview.fields and not self.overview.fields[k].alias}
            values = payload_service.process_values("create", physical)
            payload_service.check_required(values)

            key = await self._insert(conn, values)
            payload[self.primary] = key

            revisions_o2m = await payload_service.process_o2m(payload, key)

            await self._track(
                conn,
                "create",
                [key],
                payload_service,
                values,
                revisions_m2o + revisions_a2o + revisions_o2m,
                opts,
            )

        if opts.emit_events:
            await self.emitter.emit_action(
                self._events("create"),
                {"payload": payload, "key": key, "collection": self.collection},
                self._context(self.db),
            )

        await self._purge_cache(opts)
        return key

    async def create_many(self, data: list[dict[str, Any]], opts: Optional[MutationOptions] = None) -> list[Any]:
        """Create items one by one inside one transaction."""
        opts = opts or MutationOptions()
        keys = []

        async with transaction(self.db) as conn:
            service = self._with_db(conn)
            for item in data:
                keys.append(await service.create_one(item, _without_purge(opts)))

        await self._purge_cache(opts)
        return keys

    async def _insert(self, conn: AsyncConnection, values: dict[str, Any]) -> Any:
        """Insert one row; the key comes from the payload, RETURNING, or MAX(pk)."""
        helpers = get_helpers(conn)
        table = get_table(self.schema, self.collection)
        primary_column = table.c[self.primary]
        stmt = sa.insert(table).values(values)
        key = values.get(self.primary)

        try:
            if helpers.supports_returning:
                result = await conn.execute(stmt.returning(primary_column))
                returned = result.scalar()
            else:
                await conn.execute(stmt)
                returned = None
        except DBAPIError as e:
            raise translate_database_error(e, self.collection) from e

        if key is None:
            key = returned
        if key is None:
            # No RETURNING: the newest key within this transaction
            result = await conn.execute(sa.select(sa.func.max(primary_column)))
            key = result.scalar()

        return helpers.read_value(key, self.overview.fields[self.primary])

    # --- update ---

    async def update_one(self, key: Any, data: dict[str, Any], opts: Optional[MutationOptions] = None) -> Any:
        await self.update_many([key], data, opts)
        return key

    async def update_by_query(
        self, query: Query, data: dict[str, Any], opts: Optional[MutationOptions] = None
    ) -> list[Any]:
        keys = await self.get_keys_by_query(query)
        return await self.update_many(keys, data, opts) if keys else []

    async def update_many(self, keys: list[Any], data: dict[str, Any], opts: Optional[MutationOptions] = None) -> list[Any]:
        """
        Apply the same ``data`` to every key.

        Keys are sorted first so revisions are written in a stable order.
        """
        opts = opts or MutationOptions()
        self._require_admin_if_needed()
        keys = sorted(keys)
        payload = dict(data)

        async with transaction(self.db) as conn:
            await self._check_uniqueness(conn, payload, keys)

            if opts.emit_events:
                payload = await self.emitter.emit_filter(
                    self._events("update"), payload, {"keys": keys, "collection": self.collection}, self._context(conn)
                )

            if self.accountability is not None:
                auth = AuthorizationService(self.schema, conn, self.accountability, self.settings)
                await auth.check_access("update", self.collection, keys)
                payload = auth.validate_payload("update", self.collection, payload)

            payload_service = self._payload_service(conn)
            payload, revisions_m2o = await payload_service.process_m2o(payload)
            payload, revisions_a2o = await payload_service.process_a2o(payload)

            physical = {
                k: v
                for k, v in payload.items()
                if k in self.overview.fields and not self.overview.fields[k].alias and k != self.primary
            }
            values = payload_service.process_values("update", physical)

            if values:
                table = get_table(self.schema, self.collection)
                stmt = sa.update(table).where(table.c[self.primary].in_(self._bind_keys(conn, keys))).values(values)
                try:
                    await conn.execute(stmt)
                except DBAPIError as e:
                    raise translate_database_error(e, self.collection) from e

            children = revisions_m2o + revisions_a2o
            for key in keys:
                children.extend(await payload_service.process_o2m(payload, key))

            await self._track(conn, "update", keys, payload_service, values, children, opts)

        await self._purge_cache(opts)

        if opts.emit_events:
            await self.emitter.emit_action(
                self._events("update"),
                {"payload": payload, "keys": keys, "collection": self.collection},
                self._context(self.db),
            )

        return keys

    # --- upsert ---

    async def upsert_one(self, payload: dict[str, Any], opts: Optional[MutationOptions] = None) -> Any:
        """
        Update when the payload's key exists, create otherwise.

        The existence check runs before the write opens its transaction, so two
        concurrent upserts of the same new key can both try to create it; the
        primary key constraint rejects the second.
        """
        key = payload.get(self.primary)

        exists = False
        if key is not None:
            async with connect(self.db) as conn:
                table = get_table(self.schema, self.collection)
                result = await conn.execute(
                    sa.select(table.c[self.primary]).where(table.c[self.primary] == self._bind_keys(conn, [key])[0])
                )
                exists = result.first() is not None

        if exists:
            return await self.update_one(key, payload, opts)
        return await self.create_one(payload, opts)

    async def upsert_many(self, payloads: list[dict[str, Any]], opts: Optional[MutationOptions] = None) -> list[Any]:
        opts = opts or MutationOptions()
        keys = []

        async with transaction(self.db) as conn:
            service = self._with_db(conn)
            for payload in payloads:
                keys.append(await service.upsert_one(payload, _without_purge(opts)))

        await self._purge_cache(opts)
        return keys

    async def upsert_singleton(self, data: dict[str, Any], opts: Optional[MutationOptions] = None) -> Any:
        async with connect(self.db) as conn:
            table = get_table(self.schema, self.collection)
            result = await conn.execute(sa.select(table.c[self.primary]).limit(1))
            row = result.first()

        if row is not None:
            return await self.update_one(row[0], data, opts)
        return await self.create_one(data, opts)

    # --- delete ---

    async def delete_one(self, key: Any, opts: Optional[MutationOptions] = None) -> Any:
        await self.delete_many([key], opts)
        return key

    async def delete_by_query(self, query: Query, opts: Optional[MutationOptions] = None) -> list[Any]:
        keys = await self.get_keys_by_query(query)
        return await self.delete_many(keys, opts) if keys else []

    async def delete_many(self, keys: list[Any], opts: Optional[MutationOptions] = None) -> list[Any]:
        """
        Delete items; soft-deletes on soft-delete collections unless forced.

        o2m children are deleted first only for relations named in
        ``opts.deleteds`` (by o2m field or by child collection).
        """
        opts = opts or MutationOptions()
        self._require_admin_if_needed()
        keys = list(keys)
        action = "delete"

        async with transaction(self.db) as conn:
            await self._cascade(conn, keys, opts)

            if self.accountability is not None and not self.accountability.admin:
                auth = AuthorizationService(self.schema, conn, self.accountability, self.settings)
                await auth.check_access("delete", self.collection, keys)

            if opts.emit_events:
                await self.emitter.emit_filter(
                    self._events("delete"), keys, {"collection": self.collection}, self._context(conn)
                )

            helpers = get_helpers(conn)
            table = get_table(self.schema, self.collection)
            in_keys = table.c[self.primary].in_(self._bind_keys(conn, keys))
            deleted_at = self.overview.deleted_at_field
            tracked = keys

            try:
                if self.overview.is_soft_delete and deleted_at and not opts.force_delete:
                    result = await conn.execute(
                        sa.select(table.c[self.primary]).where(in_keys, table.c[deleted_at].is_(None))
                    )
                    primary_field = self.overview.fields[self.primary]
                    tracked = [helpers.read_value(key, primary_field) for key in result.scalars()]
                    values = {deleted_at: helpers.write_value(_now(), self.overview.fields[deleted_at])}
                    deleted_by = self.overview.deleted_by_field
                    if deleted_by:
                        user = self.accountability.user if self.accountability else None
                        values[deleted_by] = helpers.write_value(user, self.overview.fields[deleted_by])
                    await conn.execute(
                        sa.update(table).where(in_keys, table.c[deleted_at].is_(None)).values(values)
                    )
                    action = "soft-delete"
                else:
                    await conn.execute(sa.delete(table).where(in_keys))
            except DBAPIError as e:
                raise translate_database_error(e, self.collection) from e

            if tracked:
                await self._track(conn, action, tracked, None, None, [], opts)

        await self._purge_cache(opts)

        if opts.emit_events:
            await self.emitter.emit_action(
                self._events("delete"),
                {"payload": keys, "keys": keys, "collection": self.collection},
                self._context(self.db),
            )

        return keys

    async def _cascade(self, conn: AsyncConnection, keys: list[Any], opts: MutationOptions) -> None:
        if not opts.deleteds:
            return

        for relation in self.schema.relations_for(self.collection):
            meta = relation.meta
            if relation.related_collection != self.collection or meta is None:
                continue
            if meta.one_field not in opts.deleteds and relation.collection not in opts.deleteds:
                continue

            related = ItemsService(
                relation.collection,
                schema=self.schema,
                db=conn,
                accountability=self.accountability,
                emitter=self.emitter,
                settings=self.settings,
            )
            related_keys = await related.get_keys_by_query(
                Query(filter={relation.field: {"_in": keys}}, limit=-1, show_soft_delete=True)
            )
            if related_keys:
                logger.debug(f"Cascading delete to {len(related_keys)} {relation.collection} items")
                await related.delete_many(related_keys, _without_purge(opts))

    # --- restore ---

    async def restore(self, keys: list[Any], opts: Optional[MutationOptions] = None) -> list[Any]:
        """
        Undo soft deletes.

        Keys that aren't soft-deleted are skipped; restoring them again is a
        no-op that writes no activity.

        Returns:
            The keys that were restored

        Raises:
            InvalidPayloadException: The collection has no soft delete
            RecordNotUniqueException: A restored unique value is now taken
        """
        opts = opts or MutationOptions()
        deleted_at = self.overview.deleted_at_field
        if not self.overview.is_soft_delete or not deleted_at:
            raise InvalidPayloadException("Soft delete is not enabled for this collection")
        self._require_admin_if_needed()

        async with transaction(self.db) as conn:
            if opts.emit_events:
                await self.emitter.emit_filter(
                    self._events("restore"), list(keys), {"collection": self.collection}, self._context(conn)
                )

            if self.accountability is not None and not self.accountability.admin:
                auth = AuthorizationService(self.schema, conn, self.accountability, self.settings)
                await auth.check_access("update", self.collection, list(keys), show_soft_delete=True)

            helpers = get_helpers(conn)
            table = get_table(self.schema, self.collection)
            result = await conn.execute(
                sa.select(table).where(
                    table.c[self.primary].in_(self._bind_keys(conn, keys)),
                    table.c[deleted_at].is_not(None),
                )
            )
            rows = list(result.mappings())
            if not rows:
                return []

            await self._check_restore_uniqueness(conn, rows)

            restored = [helpers.read_value(row[self.primary], self.overview.fields[self.primary]) for row in rows]
            values = {deleted_at: None}
            if self.overview.deleted_by_field:
                values[self.overview.deleted_by_field] = None
            await conn.execute(
                sa.update(table).where(table.c[self.primary].in_(self._bind_keys(conn, restored))).values(values)
            )

            await self._track(conn, "restore", restored, None, None, [], opts)

        await self._purge_cache(opts)

        if opts.emit_events:
            await self.emitter.emit_action(
                self._events("restore"),
                {"payload": restored, "keys": restored, "collection": self.collection},
                self._context(self.db),
            )

        return restored

    async def _check_restore_uniqueness(self, conn: AsyncConnection, rows: list) -> None:
        if not self.policy.unique_check:
            return

        table = get_table(self.schema, self.collection)
        deleted_at = self.overview.deleted_at_field
        errors: list[ItemGraphError] = []

        for row in rows:
            for name in self._unique_fields():
                value = row[name]
                if value is None:
                    continue
                count = await conn.scalar(
                    sa.select(sa.func.count()).select_from(table).where(
                        table.c[name] == value,
                        table.c[self.primary] != row[self.primary],
                        table.c[deleted_at].is_(None),
                    )
                )
                if count:
                    errors.append(RecordNotUniqueException(self.collection, name))

        _raise_uniqueness(errors)

    # --- uniqueness ---

    def _unique_fields(self, combination: bool = False) -> list[str]:
        managed = set(DATE_SPECIALS + USER_SPECIALS)
        names = []
        for name, field in self.overview.fields.items():
            if field.alias or name == self.primary or managed & set(field.special):
                continue
            if (field.unique_combination if combination else field.unique):
                names.append(name)
        return names

    async def _check_uniqueness(
        self, conn: AsyncConnection, data: dict[str, Any], keys: Optional[list[Any]] = None
    ) -> None:
        """
        Check ``unique`` and ``unique_combination`` fields against stored rows.

        Soft-deleted rows and the rows being updated don't count. Only a
        database constraint makes this safe under concurrency; this check
        gives the friendlier error in the common case.
        """
        if not self.policy.unique_check:
            return

        helpers = get_helpers(conn)
        table = get_table(self.schema, self.collection)
        deleted_at = self.overview.deleted_at_field if self.overview.is_soft_delete else None
        errors: list[ItemGraphError] = []

        def scoped(stmt):
            if deleted_at:
                stmt = stmt.where(table.c[deleted_at].is_(None))
            if keys:
                stmt = stmt.where(table.c[self.primary].not_in(self._bind_keys(conn, keys)))
            return stmt

        for name in self._unique_fields():
            if data.get(name) is None:
                continue
            if keys and len(keys) > 1:
                errors.append(RecordNotUniqueException(self.collection, name))
                continue
            value = helpers.write_value(data[name], self.overview.fields[name])
            count = await conn.scalar(scoped(sa.select(sa.func.count()).select_from(table).where(table.c[name] == value)))
            if count:
                errors.append(RecordNotUniqueException(self.collection, name))

        combination = self._unique_fields(combination=True)
        provided = [name for name in combination if name in data]

        if combination and provided:
            if not keys:
                conditions = [_match(table.c[name], helpers.write_value(data.get(name), self.overview.fields[name]))
                              for name in combination]
                count = await conn.scalar(scoped(sa.select(sa.func.count()).select_from(table).where(*conditions)))
                if count:
                    errors.extend(RecordNotUniqueCombinationException(self.collection, name) for name in combination)

            elif len(keys) > 1:
                errors.extend(await self._check_combination_many(conn, table, combination, provided, keys))

            else:
                errors.extend(await self._check_combination_one(conn, table, combination, data, keys[0]))

        _raise_uniqueness(errors)

    async def _check_combination_many(self, conn, table, combination, provided, keys) -> list[ItemGraphError]:
        """The same combination values written to several rows collide unless the other members differ."""
        errors = [RecordNotUniqueCombinationException(self.collection, name) for name in provided]
        not_provided = [name for name in combination if name not in provided]
        if not not_provided:
            return errors

        stmt = (
            sa.select(sa.func.count().label("count"))
            .select_from(table)
            .where(table.c[self.primary].in_(self._bind_keys(conn, keys)))
            .group_by(*[table.c[name] for name in not_provided])
            .order_by(sa.desc("count"))
            .limit(1)
        )
        deleted_at = self.overview.deleted_at_field if self.overview.is_soft_delete else None
        if deleted_at:
            stmt = stmt.where(table.c[deleted_at].is_(None))
        count = await conn.scalar(stmt)
        return errors if count and count > 1 else []

    async def _check_combination_one(self, conn, table, combination, data, key) -> list[ItemGraphError]:
        helpers = get_helpers(conn)
        deleted_at = self.overview.deleted_at_field if self.overview.is_soft_delete else None
        bound_key = self._bind_keys(conn, [key])[0]

        current_stmt = sa.select(table).where(table.c[self.primary] == bound_key)
        if deleted_at:
            current_stmt = current_stmt.where(table.c[deleted_at].is_(None))
        current = (await conn.execute(current_stmt)).mappings().first()
        if current is None:
            return []

        conditions = []
        for name in combination:
            value = helpers.write_value(data[name], self.overview.fields[name]) if name in data else current[name]
            conditions.append(_match(table.c[name], value))

        stmt = sa.select(sa.func.count()).select_from(table).where(*conditions, table.c[self.primary] != bound_key)
        if deleted_at:
            stmt = stmt.where(table.c[deleted_at].is_(None))
        count = await conn.scalar(stmt)
        if count:
            return [RecordNotUniqueCombinationException(self.collection, name) for name in combination]
        return []

    # --- activity / revisions ---

    def _payload_service(self, conn: AsyncConnection) -> PayloadService:
        return PayloadService(
            self.collection,
            schema=self.schema,
            conn=conn,
            accountability=self.accountability,
            emitter=self.emitter,
            settings=self.settings,
        )

    async def _track(
        self,
        conn: AsyncConnection,
        action: str,
        keys: list[Any],
        payload_service: Optional[PayloadService],
        values: Optional[dict[str, Any]],
        children: list[Any],
        opts: MutationOptions,
    ) -> None:
        """
        Write activity rows (and revisions for ``accountability == "all"``).

        Revisions of nested writes are parented to the first revision written
        here.
        """
        if self.accountability is None or self.overview.accountability is None:
            return

        from .activity import ActivityService
        from .revisions import RevisionsService

        activity_service = ActivityService(schema=self.schema, db=conn, emitter=self.emitter, settings=self.settings)
        activity_ids = await activity_service.create_many(
            [
                {
                    "action": action,
                    "user": self.accountability.user,
                    "collection": self.collection,
                    "ip": self.accountability.ip,
                    "user_agent": self.accountability.user_agent,
                    "item": key,
                }
                for key in keys
            ],
            MutationOptions(auto_purge_cache=False),
        )

        if self.overview.accountability != "all" or payload_service is None:
            return

        delta = payload_service.prepare_delta(values or {})
        if delta is None and action == "update":
            return

        snapshots = await self._with_db(conn, accountability=None).read_many(
            keys, Query(fields=["*"]), QueryOptions(emit_events=False)
        )
        by_key = {str(item[self.primary]): item for item in snapshots}

        revisions_service = RevisionsService(schema=self.schema, db=conn, emitter=self.emitter, settings=self.settings)
        revision_ids = await revisions_service.create_many(
            [
                {
                    "activity": activity_id,
                    "collection": self.collection,
                    "item": key,
                    "data": payload_service.prepare_delta(by_key.get(str(key)) or {}),
                    "delta": delta,
                }
                for activity_id, key in zip(activity_ids, keys)
            ],
            MutationOptions(auto_purge_cache=False),
        )

        if opts.on_revision_create:
            for revision_id in revision_ids:
                opts.on_revision_create(revision_id)

        if revision_ids and children:
            await revisions_service.update_many(
                children, {"parent": revision_ids[0]}, MutationOptions(auto_purge_cache=False)
            )


def _match(column, value):
    return column.is_(None) if value is None else column == value


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _without_purge(opts: MutationOptions) -> MutationOptions:
    return MutationOptions(
        emit_events=opts.emit_events,
        auto_purge_cache=False,
        force_delete=opts.force_delete,
        deleteds=opts.deleteds,
        on_revision_create=opts.on_revision_create,
    )


def _raise_uniqueness(errors: list[ItemGraphError]) -> None:
    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise UniquenessErrors(errors)
