"""
Two-phase hooks for the read/mutation pipeline.

Filter hooks run before commit. They receive the payload, may return a
replacement, and abort the operation by raising. Action hooks run after
commit as side effects only. Their errors are logged, never raised.

Event names are ``<scope>.<action>`` (``items.create``) and
``<collection>.<scope>.<action>`` (``articles.items.create``).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

logger = logging.getLogger(__name__)


FilterHandler = Callable[[Any, dict, dict], Union[Any, Awaitable[Any]]]
ActionHandler = Callable[[dict, dict], Union[None, Awaitable[None]]]


class HookEmitter:
    """
    Registry and dispatcher for filter and action hooks.

    Usage:
        emitter = HookEmitter()

        @emitter.filter("articles.items.create")
        async def stamp_slug(payload, meta, context):
            return {**payload, "slug": slugify(payload["title"])}

        emitter.on_action("items.create", notify_search_index)

        service = ItemsService("articles", schema=schema, db=engine, emitter=emitter)
    """

    def __init__(self):
        self._filters: dict[str, list[FilterHandler]] = defaultdict(list)
        self._actions: dict[str, list[ActionHandler]] = defaultdict(list)

    def on_filter(self, event: str, handler: FilterHandler) -> None:
        self._filters[event].append(handler)

    def on_action(self, event: str, handler: ActionHandler) -> None:
        self._actions[event].append(handler)

    def filter(self, event: str):
        """Decorator form of on_filter"""
        def decorator(handler: FilterHandler) -> FilterHandler:
            self.on_filter(event, handler)
            return handler
        return decorator

    def action(self, event: str):
        """Decorator form of on_action"""
        def decorator(handler: ActionHandler) -> ActionHandler:
            self.on_action(event, handler)
            return handler
        return decorator

    async def emit_filter(
        self,
        events: Union[str, list[str]],
        payload: Any,
        meta: Optional[dict] = None,
        context: Optional[dict] = None,
    ) -> Any:
        """
        Run filter hooks in registration order.

        Each handler receives the payload left by the previous one; returning
        None keeps the payload unchanged. Exceptions propagate.

        Returns:
            The (possibly replaced) payload
        """
        meta = meta or {}
        context = context or {}

        for event in _as_list(events):
            for handler in self._filters.get(event, []):
                result = handler(payload, {**meta, "event": event}, context)
                if asyncio.iscoroutine(result):
                    result = await result
                if result is not None:
                    payload = result

        return payload

    async def emit_action(
        self,
        events: Union[str, list[str]],
        meta: Optional[dict] = None,
        context: Optional[dict] = None,
    ) -> None:
        """Run action hooks; failures are logged and swallowed."""
        meta = meta or {}
        context = context or {}

        for event in _as_list(events):
            for handler in self._actions.get(event, []):
                try:
                    result = handler({**meta, "event": event}, context)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error(f"Action hook for {event} failed: {e}", exc_info=True)


def redis_action_publisher(client: Any, channel_prefix: str = "itemgraph") -> ActionHandler:
    """
    Build an action hook that forwards events to Redis Pub/Sub.

    Usage:
        emitter.on_action("items.create", redis_action_publisher(redis))

    The channel is ``<channel_prefix>.<event>``.
    """

    async def publish(meta: dict, context: dict) -> None:
        channel = f"{channel_prefix}.{meta.get('event')}"
        payload = json.dumps(meta, ensure_ascii=False, default=str)
        count = await client.publish(channel, payload)
        logger.info(f"Published {meta.get('event')} to {channel}: {count} subscribers")

    return publish


def webhook_action(webhook: dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> ActionHandler:
    """
    Build an action hook that sends events to an HTTP endpoint.

    Args:
        webhook: {"name", "url", "method", "collections", "headers", "data"}
        client: Shared httpx client; one is opened per call when omitted

    Usage:
        hook = {"name": "search", "url": "http://search:8000/hooks", "collections": ["articles"]}
        emitter.on_action("items.create", webhook_action(hook))

    Delivery failures are logged; the action that triggered them has
    already committed.
    """
    collections = webhook.get("collections")
    headers = {"user-agent": "itemgraph", **(webhook.get("headers") or {})}

    async def send(meta: dict, context: dict) -> None:
        if collections is not None and meta.get("collection") not in collections:
            return

        accountability = context.get("accountability")
        body = {
            **meta,
            "accountability": (
                {"user": accountability.user, "role": accountability.role} if accountability else None
            ),
        }
        content = json.dumps(body, ensure_ascii=False, default=str) if webhook.get("data", True) else None

        try:
            if client is not None:
                response = await client.request(
                    webhook.get("method", "POST"), webhook["url"], content=content, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=30.0) as own_client:
                    response = await own_client.request(
                        webhook.get("method", "POST"), webhook["url"], content=content, headers=headers
                    )
            response.raise_for_status()
            logger.info(f'Webhook "{webhook.get("name", webhook["url"])}" sent successfully')
        except httpx.HTTPError as e:
            logger.warning(f'Webhook "{webhook.get("name", webhook["url"])}" failed: {e}')

    return send


def register_webhooks(
    emitter: HookEmitter, webhooks: list[dict[str, Any]], client: Optional[httpx.AsyncClient] = None
) -> None:
    """Register every webhook for the ``items.<action>`` events it lists."""
    for webhook in webhooks:
        handler = webhook_action(webhook, client)
        for action in webhook.get("actions") or ["create", "update", "delete"]:
            emitter.on_action(f"items.{action}", handler)


def _as_list(events: Union[str, list[str]]) -> list[str]:
    return [events] if isinstance(events, str) else list(events)
