"""
Pydantic models for the query object and option containers for service calls.

A Query is what the HTTP/GraphQL layer hands to the items service after
sanitizing the raw request (see ``core.validator.sanitize_query``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


# Aggregate functions accepted in ``Query.aggregate``
AGGREGATE_FUNCTIONS = [
    "count",
    "countDistinct",
    "sum",
    "sumDistinct",
    "avg",
    "avgDistinct",
    "min",
    "max",
]

META_KEYS = ["total_count", "filter_count"]


class Query(BaseModel):
    """
    Declarative read query.

    Example:
    {
        "fields": ["id", "title", "author.name", "comments.*"],
        "filter": {"status": {"_eq": "published"}},
        "sort": ["-date_created"],
        "limit": 25,
        "deep": {"comments": {"_limit": 5, "_sort": ["-id"]}}
    }
    """
    model_config = ConfigDict(populate_by_name=True)

    fields: Optional[list[str]] = None
    filter: Optional[dict[str, Any]] = None
    sort: Optional[list[str]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    page: Optional[int] = None
    aggregate: Optional[dict[str, list[str]]] = None
    group: Optional[list[str]] = None
    search: Optional[str] = None
    deep: Optional[dict[str, Any]] = None  # field -> sub-query (``_filter``, ``_limit``, ...)
    alias: Optional[dict[str, str]] = None  # output key -> field
    show_soft_delete: bool = Field(default=False, alias="showSoftDelete")
    meta: Optional[list[str]] = None


class Meta(BaseModel):
    """Counts returned next to a list read when ``Query.meta`` asks for them."""
    total_count: Optional[int] = None
    filter_count: Optional[int] = None
    current_page: Optional[int] = None
    total_page: Optional[int] = None


@dataclass
class QueryOptions:
    """Options for a read through the items service."""
    strip_non_requested: bool = True
    permissions_action: str = "read"
    emit_events: bool = True
    transformers: dict[str, bool] = field(
        default_factory=lambda: {"conceal": True, "hash": True, "json": True}
    )


@dataclass
class MutationOptions:
    """
    Options for create/update/delete calls.

    Attributes:
        emit_events: Run filter/action hooks
        auto_purge_cache: Clear the query cache after the write
        force_delete: Physically delete rows of a soft-delete collection
        deleteds: o2m fields (or related collection names) whose children are
            deleted along with the parent
        on_revision_create: Callback receiving every revision id written,
            used to parent nested revisions
    """
    emit_events: bool = True
    auto_purge_cache: bool = True
    force_delete: bool = False
    deleteds: list[str] = field(default_factory=list)
    on_revision_create: Optional[Callable[[Any], None]] = None
