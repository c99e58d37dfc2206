"""
IAM module - permission rewriting and payload checks.
"""

from __future__ import annotations

from .guard import apply_permissions
from .service import AuthorizationService, load_permissions

__all__ = [
    "apply_permissions",
    "AuthorizationService",
    "load_permissions",
]
