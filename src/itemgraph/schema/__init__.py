"""
Schema module - system tables and the schema overview builder.
"""

from __future__ import annotations

from .overview import build_schema, get_schema
from .system import get_policy, install_system_tables, is_system_collection

__all__ = [
    "build_schema",
    "get_schema",
    "get_policy",
    "install_system_tables",
    "is_system_collection",
]
