"""
Per-request identity context.

An Accountability is built by the auth layer and passed by value into every
service constructor. Nothing in the engine reads identity from global state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Permission:
    """
    One stored permission row for ``(role, collection, action)``.

    Attributes:
        permissions: Filter rows must satisfy (intersected into reads)
        validation: Filter payloads must satisfy on create/update
        presets: Default values merged under the payload
        fields: Allowed fields; None or ["*"] allows all
    """
    collection: str
    action: str  # create, read, update, delete
    role: Optional[str] = None
    permissions: Optional[dict] = None
    validation: Optional[dict] = None
    presets: Optional[dict] = None
    fields: Optional[list[str]] = None

    def allows_field(self, name: str) -> bool:
        return self.fields is None or "*" in self.fields or name in self.fields


@dataclass
class Accountability:
    """
    Represents the user/app making the request.

    Used by the authorization rewriter and for activity/revision rows.
    """
    user: Optional[Any] = None
    role: Optional[str] = None
    admin: bool = False
    app: bool = False
    permissions: list[Permission] = field(default_factory=list)
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def get_permission(self, collection: str, action: str) -> Optional[Permission]:
        """Stored permission for ``(collection, action)``, if any."""
        for permission in self.permissions:
            if permission.collection == collection and permission.action == action:
                return permission
        return None
