"""
Permission guard - rewrites a read AST for a non-admin caller.

For every collection the AST touches:
- a stored permission for (collection, action) must exist, else Forbidden
- the permission filter is intersected (``_and``) with the node's filter;
  the caller can narrow it but never widen it
- children outside the permission's field list are pruned silently

Nested nodes are checked against the permission of the *related* collection.
"""

from __future__ import annotations

from typing import Optional

from ..core.errors import ForbiddenException
from ..core.filters import and_filters, parse_filter
from ..core.query_types import Query
from ..runtime.ast import AST, A2ONode, Child, FieldNode, NestedCollectionNode
from ..runtime.context import Accountability, Permission


def apply_permissions(
    ast: AST,
    accountability: Optional[Accountability],
    action: str = "read",
) -> AST:
    """
    Intersect an AST with the caller's permissions.

    Args:
        ast: AST from the planner (modified in place)
        accountability: Caller; None or admin passes through untouched
        action: Permission action to check, usually "read"

    Returns:
        The same AST, rewritten

    Raises:
        ForbiddenException: A touched collection has no permission row
    """
    if accountability is None or accountability.admin:
        return ast

    permission = _require(accountability, ast.name, action)
    ast.query.filter = _intersect(ast.query, permission, accountability)

    for name in _aggregated_fields(ast.query):
        if not permission.allows_field(name):
            raise ForbiddenException(f'You don\'t have permission to access field "{name}".')

    ast.children = _prune(ast.children, permission, accountability, action)
    return ast


def _prune(
    children: list[Child],
    permission: Permission,
    accountability: Accountability,
    action: str,
) -> list[Child]:
    allowed: list[Child] = []

    for child in children:
        source = child.name if isinstance(child, FieldNode) else child.field
        if not permission.allows_field(source):
            continue

        if isinstance(child, NestedCollectionNode):
            related_permission = _require(accountability, child.name, action)
            child.query.filter = _intersect(child.query, related_permission, accountability)
            child.children = _prune(child.children, related_permission, accountability, action)
            if not child.children:
                continue

        elif isinstance(child, A2ONode):
            for target in list(child.names):
                related_permission = _require(accountability, target, action)
                query = child.query[target]
                query.filter = _intersect(query, related_permission, accountability)
                child.children[target] = _prune(
                    child.children[target], related_permission, accountability, action
                )

        allowed.append(child)

    return allowed


def _require(accountability: Accountability, collection: str, action: str) -> Permission:
    permission = accountability.get_permission(collection, action)
    if permission is None:
        raise ForbiddenException(
            f'You don\'t have permission to "{action}" from collection "{collection}" or it does not exist.'
        )
    return permission


def _intersect(query: Query, permission: Permission, accountability: Accountability) -> Optional[dict]:
    return and_filters(query.filter, parse_filter(permission.permissions, accountability))


def _aggregated_fields(query: Query) -> list[str]:
    names = [name for fields in (query.aggregate or {}).values() for name in fields if name != "*"]
    return names + list(query.group or [])

