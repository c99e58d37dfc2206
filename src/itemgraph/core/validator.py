"""
Query sanitizer and validator.

``sanitize_query`` turns loosely typed request input (comma separated strings,
JSON strings, ``meta=*``) into a ``Query``. ``QueryValidator`` checks a Query
against the schema overview: fields exist, operators are known and fit the
field type, sort/aggregate/group target real columns.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from .defs import CollectionOverview, SchemaOverview
from .errors import InvalidQueryException
from .filters import (
    LIST_OPERATORS,
    LOGICAL_OPERATORS,
    OPERATORS,
    RANGE_OPERATORS,
    RANGE_TYPES,
    RELATIONAL_OPERATORS,
    STRING_OPERATORS,
    STRING_TYPES,
    is_operator_map,
)
from .query_types import AGGREGATE_FUNCTIONS, META_KEYS, Query


class QueryValidator:
    """
    Validates queries against the schema overview.

    Usage:
        validator = QueryValidator(schema)
        errors = validator.validate("articles", query)
        if errors:
            raise InvalidQueryException(errors)
    """

    def __init__(self, schema: SchemaOverview):
        self.schema = schema

    def validate(self, collection: str, query: Query) -> list[str]:
        """
        Validate the query-level parts of a read against one collection.

        Returns:
            List of errors; empty when the query is valid
        """
        errors: list[str] = []

        overview = self.schema.collections.get(collection)
        if overview is None:
            return [f"Collection '{collection}' not found"]

        if query.filter:
            errors.extend(self.validate_filter(collection, query.filter))

        for sort_field in query.sort or []:
            errors.extend(self._validate_sort(overview, sort_field))

        if query.limit is not None and query.limit < -1:
            errors.append(f"{collection}: limit must be -1 or a positive number")
        if query.offset is not None and query.offset < 0:
            errors.append(f"{collection}: offset can't be negative")
        if query.page is not None and query.page < 1:
            errors.append(f"{collection}: page must be 1 or higher")

        for fn, fields in (query.aggregate or {}).items():
            if fn not in AGGREGATE_FUNCTIONS:
                errors.append(f"{collection}: aggregate function '{fn}' not supported")
                continue
            for name in fields:
                if name == "*" and fn == "count":
                    continue
                if name not in overview.fields or overview.fields[name].alias:
                    errors.append(f"{collection}: can't aggregate field '{name}'")

        for name in query.group or []:
            if name not in overview.fields or overview.fields[name].alias:
                errors.append(f"{collection}: can't group by field '{name}'")

        return errors

    def validate_filter(self, collection: str, filter: dict, path: str = "") -> list[str]:
        """Check fields and operators of a filter tree, following relations."""
        errors: list[str] = []
        overview = self.schema.collections.get(collection)
        prefix = f"{collection}{path}"

        if overview is None:
            return [f"Collection '{collection}' not found"]
        if not isinstance(filter, dict):
            return [f"{prefix}: filter must be an object"]

        for key, value in filter.items():
            if key in LOGICAL_OPERATORS:
                if not isinstance(value, list):
                    errors.append(f"{prefix}: '{key}' expects a list")
                    continue
                for sub in value:
                    errors.extend(self.validate_filter(collection, sub, path))
                continue

            field = overview.fields.get(key)
            if field is None:
                errors.append(f"{prefix}: field '{key}' not found")
                continue

            kind, relation = self.schema.get_relation(collection, key)

            if is_operator_map(value):
                if field.alias:
                    errors.append(f"{prefix}: can't filter alias field '{key}' directly")
                    continue
                for op, operand in value.items():
                    errors.extend(self._validate_operator(prefix, key, field.type, op, operand))
                continue

            if not isinstance(value, dict):
                errors.append(f"{prefix}: field '{key}' expects an operator object")
                continue

            unknown = [k for k in value if k.startswith("_") and k not in OPERATORS | RELATIONAL_OPERATORS | LOGICAL_OPERATORS]
            if unknown:
                errors.append(f"{prefix}: operator '{unknown[0]}' not supported")
                continue

            if kind == "m2o":
                errors.extend(self.validate_filter(relation.related_collection, value, f"{path}.{key}"))
            elif kind == "o2m":
                for quantifier in RELATIONAL_OPERATORS:
                    if quantifier in value:
                        value = value[quantifier]
                        break
                errors.extend(self.validate_filter(relation.collection, value, f"{path}.{key}"))
            elif kind == "a2o":
                errors.append(f"{prefix}: relational filters on any-to-one field '{key}' are not supported")
            else:
                errors.append(f"{prefix}: field '{key}' is not a relation")

        return errors

    def _validate_operator(
        self, prefix: str, field_name: str, field_type: str, op: str, operand: Any
    ) -> list[str]:
        if op not in OPERATORS:
            return [f"{prefix}: operator '{op}' not supported"]
        if op in STRING_OPERATORS and field_type not in STRING_TYPES:
            return [f"{prefix}: operator '{op}' can't be used on {field_type} field '{field_name}'"]
        if op in RANGE_OPERATORS and field_type not in RANGE_TYPES:
            return [f"{prefix}: operator '{op}' can't be used on {field_type} field '{field_name}'"]
        if op in LIST_OPERATORS and not isinstance(operand, list):
            return [f"{prefix}: operator '{op}' on '{field_name}' expects a list"]
        if op in ("_between", "_nbetween") and len(operand) != 2:
            return [f"{prefix}: operator '{op}' on '{field_name}' expects two values"]
        return []

    def _validate_sort(self, overview: CollectionOverview, sort_field: str) -> list[str]:
        name = sort_field[1:] if sort_field.startswith("-") else sort_field
        head, _, rest = name.partition(".")

        if head not in overview.fields:
            return [f"{overview.collection}: sort field '{head}' not found"]
        if not rest:
            if overview.fields[head].alias:
                return [f"{overview.collection}: can't sort by alias field '{head}'"]
            return []

        kind, relation = self.schema.get_relation(overview.collection, head)
        if kind != "m2o":
            return [f"{overview.collection}: can only sort through many-to-one field, not '{head}'"]
        related = self.schema.collections.get(relation.related_collection)
        if related is None or rest not in related.fields or related.fields[rest].alias:
            return [f"{overview.collection}: sort field '{name}' not found"]
        return []


def sanitize_query(raw: dict[str, Any], settings: Optional[Any] = None) -> Query:
    """
    Build a Query from request-style input.

    Usage:
        query = sanitize_query({"fields": "id,title", "limit": "10", "meta": "*"})

    Raises:
        InvalidQueryException: When a value can't be parsed
    """
    data: dict[str, Any] = {}

    if raw.get("fields") is not None:
        data["fields"] = _split_list(raw["fields"])

    if raw.get("filter") is not None:
        data["filter"] = _parse_json(raw["filter"], "filter")

    if raw.get("sort") is not None:
        data["sort"] = _split_list(raw["sort"])

    for key in ("limit", "offset", "page"):
        if raw.get(key) is not None:
            try:
                data[key] = int(raw[key])
            except (TypeError, ValueError):
                raise InvalidQueryException(f"'{key}' has to be a number")

    if raw.get("aggregate") is not None:
        aggregate = _parse_json(raw["aggregate"], "aggregate")
        data["aggregate"] = {fn: _split_list(fields) for fn, fields in aggregate.items()}

    if raw.get("group") is not None:
        data["group"] = _split_list(raw["group"])

    if raw.get("search") is not None:
        data["search"] = str(raw["search"])

    if raw.get("deep") is not None:
        data["deep"] = _parse_json(raw["deep"], "deep")

    if raw.get("alias") is not None:
        data["alias"] = _parse_json(raw["alias"], "alias")

    show_deleted = raw.get("showSoftDelete", raw.get("show_soft_delete"))
    if show_deleted is not None:
        if isinstance(show_deleted, str):
            show_deleted = show_deleted.lower() in ("true", "1", "yes")
        data["show_soft_delete"] = bool(show_deleted)

    if raw.get("meta") is not None:
        meta = _split_list(raw["meta"])
        data["meta"] = list(META_KEYS) if "*" in meta else meta

    if settings is not None and "limit" not in data and raw.get("limit") is None:
        data["limit"] = settings.query_limit_default

    try:
        return Query.model_validate(data)
    except PydanticValidationError as e:
        raise InvalidQueryException([err["msg"] for err in e.errors()])


def _split_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    result: list[str] = []
    for item in value:
        result.extend(_split_list(item) if isinstance(item, str) else [item])
    return result


def _parse_json(value: Any, name: str) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        raise InvalidQueryException(f"'{name}' has to be valid JSON")
