"""
Payload processing for the mutation pipeline.

PayloadService turns a caller's payload into column values (special flags,
hashing, JSON/CSV serialization, dialect coercion) and performs the nested
relational writes around the parent row:

    m2o / a2o  nested objects are saved first and replaced by their keys
    o2m        children are saved after the parent exists, linked to its key

Nested writes go through ItemsService on the same connection, so they share
the parent's transaction and roll back with it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection

from ..config import Settings, get_settings
from ..core.defs import DATE_SPECIALS, USER_SPECIALS, Relation, SchemaOverview
from ..core.errors import InvalidPayloadException
from ..core.query_types import MutationOptions
from ..database.helpers import get_helpers
from ..messaging.events import HookEmitter
from ..runtime.context import Accountability
from ..runtime.sql import get_table
from ..runtime.transformers import MASK

if TYPE_CHECKING:
    from .items import ItemsService

logger = logging.getLogger(__name__)

HASH_ITERATIONS = 100000
_HASHED = re.compile(r"^[0-9a-f]{32}\$[0-9a-f]{64}$")


def hash_value(value: str, salt: Optional[str] = None) -> str:
    """PBKDF2-SHA256 hash stored as ``salt$hex``."""
    if salt is None:
        salt = secrets.token_hex(16)
    key = hashlib.pbkdf2_hmac("sha256", value.encode("utf-8"), salt.encode("utf-8"), HASH_ITERATIONS)
    return f"{salt}${key.hex()}"


def verify_hash(value: str, hashed: str) -> bool:
    try:
        salt, _ = hashed.split("$")
        return secrets.compare_digest(hash_value(value, salt), hashed)
    except ValueError:
        return False


def is_hashed(value: Any) -> bool:
    return isinstance(value, str) and bool(_HASHED.match(value))


class PayloadService:
    """
    Payload transformations for one collection, bound to one connection.

    Usage:
        payload_service = PayloadService("orders", schema=schema, conn=conn)
        payload, revisions = await payload_service.process_m2o(payload)
        values = payload_service.process_values("create", payload)
    """

    def __init__(
        self,
        collection: str,
        *,
        schema: SchemaOverview,
        conn: AsyncConnection,
        accountability: Optional[Accountability] = None,
        emitter: Optional[HookEmitter] = None,
        settings: Optional[Settings] = None,
    ):
        self.collection = collection
        self.schema = schema
        self.conn = conn
        self.accountability = accountability
        self.emitter = emitter
        self.settings = settings or get_settings()
        self.helpers = get_helpers(conn)
        self.overview = schema.collections[collection]

    # --- values ---

    def process_values(self, action: Literal["create", "update"], payload: dict[str, Any]) -> dict[str, Any]:
        """
        Column values for an INSERT/UPDATE of physical fields.

        Managed specials (dates/users) are set here and any value the caller
        sent for them is discarded.
        """
        values = dict(payload)
        now = datetime.now(timezone.utc)
        user = self.accountability.user if self.accountability else None

        for name, field in self.overview.fields.items():
            if field.alias:
                continue
            special = field.special

            if any(s in special for s in DATE_SPECIALS + USER_SPECIALS):
                values.pop(name, None)

            if action == "create":
                if "uuid" in special and values.get(name) is None:
                    values[name] = str(uuid.uuid4())
                if "date-created" in special:
                    values[name] = now
                if "user-created" in special:
                    values[name] = user

            if action == "update":
                if "date-updated" in special:
                    values[name] = now
                if "user-updated" in special:
                    values[name] = user

            if name not in values:
                continue

            value = values[name]

            if "conceal" in special and value == MASK:
                # Mask echoed back from a read; keep what's stored
                del values[name]
                continue

            if "hash" in special and isinstance(value, str) and not is_hashed(value):
                value = hash_value(value)

            elif (field.type == "json" or "json" in special or "cast-json" in special) and value is not None:
                if not ("json-stringify" in special and isinstance(value, str)):
                    value = json.dumps(value, default=str)

            elif (field.type == "csv" or "csv" in special) and isinstance(value, (list, tuple)):
                value = ",".join(str(v) for v in value)

            values[name] = self.helpers.write_value(value, field)

        return values

    def check_required(self, payload: dict[str, Any]) -> None:
        """
        Raises:
            InvalidPayloadException: A required field is missing or null
        """
        missing = [
            name
            for name, field in self.overview.fields.items()
            if field.required and not field.alias and not field.generated and payload.get(name) is None
        ]
        if missing:
            raise InvalidPayloadException(
                f'Field{"s" if len(missing) > 1 else ""} {", ".join(missing)} required.',
                {"fields": missing},
            )

    def prepare_delta(self, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """JSON-safe copy of a payload for revision rows; None when empty."""
        if not payload:
            return None
        delta = {}
        for name, value in payload.items():
            field = self.overview.fields.get(name)
            if field is not None and field.type == "json" and isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    pass
            delta[name] = value
        return json.loads(json.dumps(delta, default=str))

    # --- relations ---

    async def process_m2o(self, payload: dict[str, Any]) -> tuple[dict[str, Any], list[Any]]:
        """Save nested m2o objects and replace them with their keys."""
        payload = dict(payload)
        revisions: list[Any] = []

        for name, value in list(payload.items()):
            kind, relation = self.schema.get_relation(self.collection, name)
            if kind != "m2o" or not isinstance(value, dict):
                continue
            payload[name] = await self._save_related(relation.related_collection, value, revisions)

        return payload, revisions

    async def process_a2o(self, payload: dict[str, Any]) -> tuple[dict[str, Any], list[Any]]:
        """Save nested a2o objects into the collection named by the payload."""
        payload = dict(payload)
        revisions: list[Any] = []

        for name, value in list(payload.items()):
            kind, relation = self.schema.get_relation(self.collection, name)
            if kind != "a2o" or not isinstance(value, dict):
                continue

            collection_field = relation.meta.one_collection_field
            target = payload.get(collection_field)
            if not target:
                raise InvalidPayloadException(f'Can\'t update nested record in "{name}" without a collection.')
            if target not in (relation.meta.one_allowed_collections or []):
                raise InvalidPayloadException(
                    f'"{target}" is not an allowed collection for field "{name}".'
                )

            key = await self._save_related(target, value, revisions)
            payload[name] = str(key) if key is not None else None

        return payload, revisions

    async def process_o2m(self, payload: dict[str, Any], parent_key: Any) -> list[Any]:
        """
        Write o2m children of one parent.

        Accepted values per o2m field:
            [1, 2, {"id": 3, "qty": 1}, {"sku": "new"}]   full list; others are deselected
            {"create": [...], "update": [...], "delete": [keys]}

        Returns:
            Revision ids written by the nested services
        """
        revisions: list[Any] = []

        for name, value in payload.items():
            kind, relation = self.schema.get_relation(self.collection, name)
            if kind != "o2m" or value is None:
                continue

            if isinstance(value, list):
                await self._replace_children(relation, value, parent_key, revisions)
            elif isinstance(value, dict):
                await self._alter_children(relation, value, parent_key, revisions)
            else:
                raise InvalidPayloadException(f'Invalid value for one-to-many field "{name}".')

        return revisions

    async def _replace_children(self, relation: Relation, value: list, parent_key: Any, revisions: list) -> None:
        service = self._items_service(relation.collection)
        primary = service.overview.primary
        link = relation.field
        saved = []

        for child in value:
            if isinstance(child, dict):
                key = child.get(primary)
                if key is not None and await self._exists(relation.collection, key):
                    await service.update_one(key, {**child, link: parent_key}, self._options(revisions))
                else:
                    key = await service.create_one({**child, link: parent_key}, self._options(revisions))
            else:
                key = child
                await service.update_one(key, {link: parent_key}, self._options(revisions))
            saved.append(key)

        table = get_table(self.schema, relation.collection)
        stmt = sa.select(table.c[primary]).where(table.c[link] == parent_key)
        if saved:
            primary_field = service.overview.fields[primary]
            stmt = stmt.where(table.c[primary].not_in([self.helpers.write_value(k, primary_field) for k in saved]))
        deselected = [row[0] for row in (await self.conn.execute(stmt)).all()]

        await self._deselect(service, relation, deselected, revisions)

    async def _alter_children(self, relation: Relation, value: dict, parent_key: Any, revisions: list) -> None:
        service = self._items_service(relation.collection)
        primary = service.overview.primary
        link = relation.field

        for child in value.get("create") or []:
            await service.create_one({**child, link: parent_key}, self._options(revisions))

        for child in value.get("update") or []:
            key = child.get(primary)
            if key is None:
                raise InvalidPayloadException(f'Updates in "{relation.meta.one_field}" need a primary key.')
            await service.update_one(key, {**child, link: parent_key}, self._options(revisions))

        keys = value.get("delete") or []
        if keys:
            table = get_table(self.schema, relation.collection)
            primary_field = service.overview.fields[primary]
            stmt = sa.select(table.c[primary]).where(
                table.c[link] == parent_key,
                table.c[primary].in_([self.helpers.write_value(k, primary_field) for k in keys]),
            )
            await self._deselect(service, relation, [row[0] for row in (await self.conn.execute(stmt)).all()], revisions)

    async def _deselect(self, service: "ItemsService", relation: Relation, keys: list, revisions: list) -> None:
        if not keys:
            return
        if relation.meta and relation.meta.one_deselect_action == "delete":
            await service.delete_many(keys, self._options(revisions))
            return

        link_field = service.overview.fields[relation.field]
        if not link_field.nullable:
            raise InvalidPayloadException(
                f'Field "{relation.field}" of "{relation.collection}" can\'t be null; '
                f'set one_deselect_action to "delete" to remove deselected items.'
            )
        await service.update_many(keys, {relation.field: None}, self._options(revisions))

    async def _save_related(self, collection: str, value: dict, revisions: list) -> Any:
        service = self._items_service(collection)
        primary = service.overview.primary
        key = value.get(primary)

        if key is not None and await self._exists(collection, key):
            if len(value) > 1:
                await service.update_one(key, value, self._options(revisions))
            return key

        return await service.create_one(value, self._options(revisions))

    async def _exists(self, collection: str, key: Any) -> bool:
        overview = self.schema.collections[collection]
        table = get_table(self.schema, collection)
        bound = self.helpers.write_value(key, overview.fields[overview.primary])
        result = await self.conn.execute(sa.select(table.c[overview.primary]).where(table.c[overview.primary] == bound))
        return result.first() is not None

    def _items_service(self, collection: str) -> "ItemsService":
        from .items import ItemsService

        return ItemsService(
            collection,
            schema=self.schema,
            db=self.conn,
            accountability=self.accountability,
            emitter=self.emitter,
            settings=self.settings,
        )

    def _options(self, revisions: list) -> MutationOptions:
        return MutationOptions(auto_purge_cache=False, on_revision_create=revisions.append)
