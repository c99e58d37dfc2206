"""
FastAPI router for the items endpoints.

Endpoints:
- GET    /items/{collection}          - List items (query params: fields, filter, sort, limit, ...)
- GET    /items/{collection}/{pk}     - Read one item
- POST   /items/{collection}          - Create one item (object body) or many (list body)
- PATCH  /items/{collection}/{pk}     - Update one item
- PATCH  /items/{collection}          - Update many: {"keys": [...], "data": {...}} or {"query": {...}, "data": {...}}
- DELETE /items/{collection}/{pk}     - Delete one item
- DELETE /items/{collection}          - Delete many: [keys] or {"keys": [...]} or {"query": {...}}
- POST   /items/{collection}/restore  - Restore soft-deleted items: [keys] or {"keys": [...]}

Responses are {"data": ...} (plus "meta" when asked for); errors are
{"errors": [{"message": ..., "extensions": {"code": ...}}]}.

Usage:
    app = FastAPI()
    app.include_router(create_items_router(engine))
    register_exception_handlers(app)

    # Authentication is the host application's job
    app.dependency_overrides[get_accountability] = my_accountability_dependency
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..core.defs import SchemaOverview
from ..core.errors import ForbiddenException, InvalidPayloadException, ItemGraphError
from ..core.query_types import Query
from ..core.validator import sanitize_query
from ..database.connection import Database
from ..messaging.cache import CacheManager
from ..messaging.events import HookEmitter, register_webhooks
from ..runtime.context import Accountability
from ..schema.overview import get_schema as load_schema
from ..schema.system import is_system_collection
from ..services.items import ItemsService
from ..services.meta import MetaService

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/items", tags=["items"])

# Set by create_items_router (or overridden through app.dependency_overrides)
_db: Optional[Database] = None
_settings: Optional[Settings] = None
_emitter: Optional[HookEmitter] = None
_cache: Optional[CacheManager] = None


def get_db() -> Database:
    if _db is None:
        raise RuntimeError("Database not configured. Call create_items_router() first.")
    return _db


async def get_schema(db: Database = Depends(get_db)) -> SchemaOverview:
    return await load_schema(db, settings=_settings)


async def get_accountability() -> Optional[Accountability]:
    """
    Who is calling.

    None means an internal caller that bypasses permissions. Override this
    dependency to resolve the caller from a token or session.
    """
    return None


def _service(
    collection: str,
    schema: SchemaOverview,
    db: Database,
    accountability: Optional[Accountability],
) -> ItemsService:
    if collection not in schema.collections or is_system_collection(collection):
        raise ForbiddenException()
    return ItemsService(
        collection,
        schema=schema,
        db=db,
        accountability=accountability,
        emitter=_emitter,
        cache=_cache,
        settings=_settings,
    )


def _query(request: Request) -> Query:
    return sanitize_query(dict(request.query_params), _settings or get_settings())


def _keys(body: Any) -> list[Any]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("keys"), list):
        return body["keys"]
    raise InvalidPayloadException('Body has to be a list of keys or {"keys": [...]}.')


async def _read_back(service: ItemsService, keys: list[Any], query: Query, many: bool) -> Any:
    """Return what was written, or 204 when the caller can't read it."""
    try:
        if many:
            return {"data": await service.read_many(keys, query.model_copy(update={"limit": len(keys)}))}
        return {"data": await service.read_one(keys[0], query)}
    except ForbiddenException:
        return Response(status_code=204)


# =============================================================================
# Reads
# =============================================================================


@router.get("/{collection}")
async def read_items(
    collection: str,
    request: Request,
    schema: SchemaOverview = Depends(get_schema),
    db: Database = Depends(get_db),
    accountability: Optional[Accountability] = Depends(get_accountability),
) -> dict[str, Any]:
    """
    GET /items/articles?fields=id,title,author.name&filter={"status":{"_eq":"published"}}&meta=*
    """
    service = _service(collection, schema, db, accountability)
    query = _query(request)

    if service.overview.singleton:
        return {"data": await service.read_singleton(query)}

    items = await service.read_by_query(query)
    response: dict[str, Any] = {"data": items}

    meta = await MetaService(
        schema=schema, db=db, accountability=accountability, settings=_settings
    ).get_meta_for_query(collection, query)
    if meta is not None:
        response["meta"] = meta.model_dump(exclude_none=True)

    return response


@router.get("/{collection}/{pk}")
async def read_item(
    collection: str,
    pk: str,
    request: Request,
    schema: SchemaOverview = Depends(get_schema),
    db: Database = Depends(get_db),
    accountability: Optional[Accountability] = Depends(get_accountability),
) -> dict[str, Any]:
    service = _service(collection, schema, db, accountability)
    return {"data": await service.read_one(pk, _query(request))}


# =============================================================================
# Mutations
# =============================================================================


@router.post("/{collection}/restore")
async def restore_items(
    collection: str,
    body: Any = Body(...),
    schema: SchemaOverview = Depends(get_schema),
    db: Database = Depends(get_db),
    accountability: Optional[Accountability] = Depends(get_accountability),
) -> dict[str, Any]:
    """POST /items/articles/restore  [1, 2]"""
    service = _service(collection, schema, db, accountability)
    return {"data": await service.restore(_keys(body))}


@router.post("/{collection}")
async def create_items(
    collection: str,
    request: Request,
    body: Any = Body(...),
    schema: SchemaOverview = Depends(get_schema),
    db: Database = Depends(get_db),
    accountability: Optional[Accountability] = Depends(get_accountability),
) -> Any:
    """
    POST /items/articles  {"title": "Hello", "comments": [{"body": "First"}]}
    POST /items/articles  [{"title": "One"}, {"title": "Two"}]
    """
    service = _service(collection, schema, db, accountability)
    query = _query(request)

    if isinstance(body, list):
        keys = await service.create_many(body)
        return await _read_back(service, keys, query, many=True)
    if isinstance(body, dict):
        key = await service.create_one(body)
        return await _read_back(service, [key], query, many=False)
    raise InvalidPayloadException("Body has to be an object or a list of objects.")


@router.patch("/{collection}/{pk}")
async def update_item(
    collection: str,
    pk: str,
    request: Request,
    body: dict[str, Any] = Body(...),
    schema: SchemaOverview = Depends(get_schema),
    db: Database = Depends(get_db),
    accountability: Optional[Accountability] = Depends(get_accountability),
) -> Any:
    service = _service(collection, schema, db, accountability)
    key = await service.update_one(pk, body)
    return await _read_back(service, [key], _query(request), many=False)


@router.patch("/{collection}")
async def update_items(
    collection: str,
    request: Request,
    body: dict[str, Any] = Body(...),
    schema: SchemaOverview = Depends(get_schema),
    db: Database = Depends(get_db),
    accountability: Optional[Accountability] = Depends(get_accountability),
) -> Any:
    """
    PATCH /items/articles  {"keys": [1, 2], "data": {"status": "archived"}}
    PATCH /items/articles  {"query": {"filter": {"status": {"_eq": "draft"}}}, "data": {...}}
    """
    service = _service(collection, schema, db, accountability)
    data = body.get("data")
    if not isinstance(data, dict):
        raise InvalidPayloadException('"data" has to be an object.')

    if isinstance(body.get("keys"), list):
        keys = await service.update_many(body["keys"], data)
    elif isinstance(body.get("query"), dict):
        keys = await service.update_by_query(sanitize_query(body["query"]), data)
    else:
        raise InvalidPayloadException('Either "keys" or "query" is required.')

    return await _read_back(service, keys, _query(request), many=True)


@router.delete("/{collection}/{pk}", status_code=204)
async def delete_item(
    collection: str,
    pk: str,
    schema: SchemaOverview = Depends(get_schema),
    db: Database = Depends(get_db),
    accountability: Optional[Accountability] = Depends(get_accountability),
) -> Response:
    service = _service(collection, schema, db, accountability)
    await service.delete_one(pk)
    return Response(status_code=204)


@router.delete("/{collection}", status_code=204)
async def delete_items(
    collection: str,
    body: Any = Body(...),
    schema: SchemaOverview = Depends(get_schema),
    db: Database = Depends(get_db),
    accountability: Optional[Accountability] = Depends(get_accountability),
) -> Response:
    """DELETE /items/articles  [1, 2]  or  {"query": {"filter": {...}}}"""
    service = _service(collection, schema, db, accountability)

    if isinstance(body, dict) and isinstance(body.get("query"), dict):
        await service.delete_by_query(sanitize_query(body["query"]))
    else:
        await service.delete_many(_keys(body))

    return Response(status_code=204)


# =============================================================================
# Setup
# =============================================================================


def create_items_router(
    db: Database,
    *,
    settings: Optional[Settings] = None,
    emitter: Optional[HookEmitter] = None,
    cache: Optional[CacheManager] = None,
) -> APIRouter:
    """
    Configure the items router.

    Args:
        db: Engine (or connection) the services run on
        settings: Engine settings; defaults to the process settings
        emitter: Hook emitter shared by every request; configured webhooks are added to it
        cache: Query cache; None disables query caching

    Returns:
        The configured router, ready for ``app.include_router``
    """
    global _db, _settings, _emitter, _cache
    _db = db
    _settings = settings or get_settings()
    _emitter = emitter or HookEmitter()
    if _settings.webhooks:
        register_webhooks(_emitter, _settings.webhooks)
    _cache = cache
    return router


def register_exception_handlers(app: FastAPI) -> None:
    """Render ItemGraphError as {"errors": [...]} with its HTTP status."""

    @app.exception_handler(ItemGraphError)
    async def handle_itemgraph_error(request: Request, exc: ItemGraphError) -> JSONResponse:
        if exc.status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status, content={"errors": [exc.to_dict()]})
