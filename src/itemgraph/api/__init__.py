"""
API module - FastAPI endpoints.
"""

from __future__ import annotations

from .router import (
    create_items_router,
    get_accountability,
    get_db,
    get_schema,
    register_exception_handlers,
    router,
)

__all__ = [
    "router",
    "create_items_router",
    "get_accountability",
    "get_db",
    "get_schema",
    "register_exception_handlers",
]
