"""
Core module - definitions, query types, filters and validation.
"""

from __future__ import annotations

from .defs import (
    ALIAS_TYPES,
    CollectionOverview,
    FieldOverview,
    Relation,
    RelationMeta,
    SchemaOverview,
)
from .errors import (
    ForbiddenException,
    InvalidForeignKeyException,
    InvalidPayloadException,
    InvalidQueryException,
    ItemGraphError,
    NotNullViolationException,
    RecordNotUniqueCombinationException,
    RecordNotUniqueException,
    ServiceUnavailableException,
    UniquenessErrors,
    ValueTooLongException,
)
from .query_types import Meta, MutationOptions, Query, QueryOptions
from .validator import QueryValidator, sanitize_query

__all__ = [
    # Definitions
    "ALIAS_TYPES",
    "CollectionOverview",
    "FieldOverview",
    "Relation",
    "RelationMeta",
    "SchemaOverview",
    # Errors
    "ForbiddenException",
    "InvalidForeignKeyException",
    "InvalidPayloadException",
    "InvalidQueryException",
    "ItemGraphError",
    "NotNullViolationException",
    "RecordNotUniqueCombinationException",
    "RecordNotUniqueException",
    "ServiceUnavailableException",
    "UniquenessErrors",
    "ValueTooLongException",
    # Query types
    "Meta",
    "MutationOptions",
    "Query",
    "QueryOptions",
    # Validation
    "QueryValidator",
    "sanitize_query",
]
