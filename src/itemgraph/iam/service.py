"""
Authorization service - permission checks for the items pipeline.

Reads go through ``process_ast`` (the guard). Writes go through
``validate_payload`` before the row is written and ``check_access`` for the
keys an update or delete touches.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import sqlalchemy as sa

from ..config import Settings, get_settings
from ..core.defs import SchemaOverview
from ..core.errors import ForbiddenException, InvalidPayloadException
from ..core.filters import parse_filter, validate_payload
from ..core.query_types import Query
from ..database.connection import Database, connect
from ..runtime.ast import AST
from ..runtime.context import Accountability, Permission
from ..runtime.executor import run_ast
from ..runtime.planner import build_ast
from ..schema.system import permissions_table
from .guard import apply_permissions

logger = logging.getLogger(__name__)


class AuthorizationService:
    """
    Permission checks for one request.

    Usage:
        auth = AuthorizationService(schema, db, accountability)
        ast = auth.process_ast(ast)
        payload = auth.validate_payload("create", "articles", payload)
        await auth.check_access("update", "articles", [1, 2])
    """

    def __init__(
        self,
        schema: SchemaOverview,
        db: Database,
        accountability: Optional[Accountability] = None,
        settings: Optional[Settings] = None,
    ):
        self.schema = schema
        self.db = db
        self.accountability = accountability
        self.settings = settings or get_settings()

    @property
    def is_admin(self) -> bool:
        return self.accountability is None or self.accountability.admin

    def process_ast(self, ast: AST, action: str = "read") -> AST:
        return apply_permissions(ast, self.accountability, action)

    def validate_payload(self, action: str, collection: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Check a create/update payload against the caller's permission.

        Presets are merged under the payload. The permission ``validation``
        filter and every field's own ``validation`` rule are evaluated against
        the merged payload.

        Returns:
            The payload with presets applied

        Raises:
            ForbiddenException: No permission, or a field outside the allow-list
            InvalidPayloadException: A validation rule failed
        """
        overview = self.schema.collections[collection]
        errors: list[str] = []

        if not self.is_admin:
            permission = self.accountability.get_permission(collection, action)
            if permission is None:
                raise ForbiddenException(
                    f'You don\'t have permission to "{action}" from collection "{collection}" or it does not exist.'
                )

            forbidden = [name for name in payload if not permission.allows_field(name)]
            if forbidden:
                raise ForbiddenException(
                    f'You don\'t have permission to access the fields {", ".join(forbidden)} in collection "{collection}".'
                )

            presets = parse_filter(permission.presets, self.accountability) or {}
            payload = {**presets, **payload}

            if permission.validation:
                errors.extend(
                    validate_payload(parse_filter(permission.validation, self.accountability), payload)
                )

        for name, field in overview.fields.items():
            if field.validation and name in payload:
                errors.extend(validate_payload({name: field.validation}, payload))

        if errors:
            raise InvalidPayloadException("; ".join(errors), {"errors": errors})

        return payload

    async def check_access(
        self, action: str, collection: str, keys: list[Any], show_soft_delete: bool = False
    ) -> None:
        """
        Every key must be visible through the ``action`` permission filter.

        Soft-deleted rows count as missing unless ``show_soft_delete`` is set.

        Raises:
            ForbiddenException: A key is missing or filtered out
        """
        if self.is_admin or not keys:
            return

        primary = self.schema.collections[collection].primary
        query = Query(
            fields=[primary], filter={primary: {"_in": list(keys)}}, limit=-1, show_soft_delete=show_soft_delete
        )
        ast = build_ast(collection, query, self.schema, settings=self.settings, accountability=self.accountability)
        ast = apply_permissions(ast, self.accountability, action)

        async with connect(self.db) as conn:
            items = await run_ast(ast, self.schema, conn, settings=self.settings)

        found = {str(item[primary]) for item in items or []}
        if not items or any(str(key) not in found for key in keys):
            raise ForbiddenException()


async def load_permissions(db: Database, role: Optional[str]) -> list[Permission]:
    """Stored permission rows for ``role`` (role None = public)."""
    condition = permissions_table.c.role.is_(None) if role is None else permissions_table.c.role == role
    async with connect(db) as conn:
        result = await conn.execute(sa.select(permissions_table).where(condition))
        rows = list(result.mappings())

    permissions = []
    for row in rows:
        fields = row["fields"]
        permissions.append(
            Permission(
                collection=row["collection"],
                action=row["action"],
                role=row["role"],
                permissions=row["permissions"],
                validation=row["validation"],
                presets=row["presets"],
                fields=[f.strip() for f in fields.split(",") if f.strip()] if fields else None,
            )
        )
    logger.debug(f"Loaded {len(permissions)} permissions for role {role!r}")
    return permissions
