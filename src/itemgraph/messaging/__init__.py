"""
Messaging module - Redis cache and hook events.
"""

from __future__ import annotations

from .cache import CacheManager, SchemaCache, schema_cache
from .events import HookEmitter, redis_action_publisher, register_webhooks, webhook_action

__all__ = [
    "CacheManager",
    "SchemaCache",
    "schema_cache",
    "HookEmitter",
    "redis_action_publisher",
    "register_webhooks",
    "webhook_action",
]
