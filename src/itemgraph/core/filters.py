"""
Filter tree helpers.

A filter is a logical tree:

    {"_and": [...], "_or": [...], "<field>": {"<operator>": value}}

Relational paths nest field maps: ``{"author": {"name": {"_eq": "Ann"}}}``.
Everything here is pure; compiling a filter to SQL lives in ``runtime.sql``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional


LOGICAL_OPERATORS = {"_and", "_or"}

# Quantifiers for o2m relational filters
RELATIONAL_OPERATORS = {"_some", "_none"}

OPERATORS = {
    "_eq",
    "_neq",
    "_lt",
    "_lte",
    "_gt",
    "_gte",
    "_in",
    "_nin",
    "_null",
    "_nnull",
    "_contains",
    "_ncontains",
    "_icontains",
    "_starts_with",
    "_nstarts_with",
    "_ends_with",
    "_nends_with",
    "_between",
    "_nbetween",
    "_empty",
    "_nempty",
}

# Operators that only make sense on some field types
STRING_OPERATORS = {
    "_contains",
    "_ncontains",
    "_icontains",
    "_starts_with",
    "_nstarts_with",
    "_ends_with",
    "_nends_with",
}
RANGE_OPERATORS = {"_lt", "_lte", "_gt", "_gte", "_between", "_nbetween"}
LIST_OPERATORS = {"_in", "_nin", "_between", "_nbetween"}

STRING_TYPES = {"string", "text", "uuid", "hash", "csv", "json", "unknown"}
RANGE_TYPES = {
    "integer",
    "bigInteger",
    "float",
    "decimal",
    "date",
    "dateTime",
    "timestamp",
    "time",
    "string",
    "text",
    "uuid",
    "unknown",
}


def is_operator_map(value: Any) -> bool:
    """True when ``value`` is ``{"_op": ...}`` rather than a nested field map."""
    return (
        isinstance(value, dict)
        and bool(value)
        and all(key in OPERATORS for key in value)
    )


def and_filters(*filters: Optional[dict]) -> Optional[dict]:
    """Conjoin filters, skipping empty ones."""
    parts = [f for f in filters if f]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return {"_and": parts}


def merge_soft_delete_filter(filter: Optional[dict], deleted_field: str) -> dict:
    """
    Conjoin ``{deleted_field: {_null: true}}`` onto an existing filter tree.

    A bare ``_or`` root is wrapped into an ``_and`` so the clause constrains
    every branch instead of becoming one more alternative.

    Examples:
        None                   -> {"deleted_at": {"_null": True}}
        {"_and": [a]}          -> {"_and": [a, clause]}
        {"_or": [a, b]}        -> {"_and": [{"_or": [a, b]}, clause]}
        {"status": {...}}      -> {"status": {...}, "deleted_at": {"_null": True}}
    """
    clause = {deleted_field: {"_null": True}}

    if not filter:
        return clause

    keys = set(filter)
    if keys == {"_and"}:
        return {"_and": [*filter["_and"], clause]}
    if keys & LOGICAL_OPERATORS or deleted_field in filter:
        return {"_and": [filter, clause]}
    return {**filter, **clause}


def parse_filter(filter: Optional[dict], accountability: Any = None) -> Optional[dict]:
    """
    Resolve dynamic variables inside a filter.

    Supported: ``$NOW``, ``$CURRENT_USER``, ``$CURRENT_ROLE``.
    """
    if filter is None:
        return None

    def resolve(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [resolve(v) for v in value]
        if value == "$NOW":
            return datetime.now(timezone.utc).isoformat()
        if value == "$CURRENT_USER":
            return getattr(accountability, "user", None)
        if value == "$CURRENT_ROLE":
            return getattr(accountability, "role", None)
        return value

    return resolve(filter)


def validate_payload(filter: dict, payload: dict, path: str = "") -> list[str]:
    """
    Evaluate ``filter`` against an in-memory payload.

    Returns:
        List of human readable failures, empty when the payload passes
    """
    errors: list[str] = []

    for key, value in filter.items():
        if key == "_and":
            for sub in value:
                errors.extend(validate_payload(sub, payload, path))
        elif key == "_or":
            branch_errors = [validate_payload(sub, payload, path) for sub in value]
            if branch_errors and all(branch_errors):
                errors.append(
                    f"{path or 'payload'}: none of the alternatives matched "
                    f"({'; '.join(e for b in branch_errors for e in b)})"
                )
        elif is_operator_map(value):
            actual = payload.get(key)
            for op, expected in value.items():
                if not matches(op, actual, expected):
                    errors.append(f'{path}{key}: failed "{op}" {expected!r}')
        elif isinstance(value, dict):
            nested = payload.get(key)
            if isinstance(nested, dict):
                errors.extend(validate_payload(value, nested, f"{path}{key}."))

    return errors


def matches(op: str, actual: Any, expected: Any) -> bool:
    """Evaluate a single operator against a value."""
    if op == "_eq":
        return actual == expected
    if op == "_neq":
        return actual != expected
    if op == "_null":
        return (actual is None) == bool(expected)
    if op == "_nnull":
        return (actual is not None) == bool(expected)
    if op == "_empty":
        return actual in (None, "", [], {})
    if op == "_nempty":
        return actual not in (None, "", [], {})
    if op == "_in":
        return actual in (expected or [])
    if op == "_nin":
        return actual not in (expected or [])

    if actual is None:
        return False

    if op in ("_lt", "_lte", "_gt", "_gte"):
        try:
            if op == "_lt":
                return actual < expected
            if op == "_lte":
                return actual <= expected
            if op == "_gt":
                return actual > expected
            return actual >= expected
        except TypeError:
            return False
    if op in ("_between", "_nbetween"):
        low, high = expected
        try:
            inside = low <= actual <= high
        except TypeError:
            return False
        return inside if op == "_between" else not inside

    text = str(actual)
    needle = str(expected)
    if op == "_contains":
        return needle in text
    if op == "_ncontains":
        return needle not in text
    if op == "_icontains":
        return needle.lower() in text.lower()
    if op == "_starts_with":
        return text.startswith(needle)
    if op == "_nstarts_with":
        return not text.startswith(needle)
    if op == "_ends_with":
        return text.endswith(needle)
    if op == "_nends_with":
        return not text.endswith(needle)

    raise ValueError(f"Unknown filter operator '{op}'")


_DEEP_KEY_PATTERN = re.compile(r"^_?(filter|sort|limit|offset|page|search)$")


def split_deep(deep: dict) -> tuple[dict, dict]:
    """
    Split a deep entry into its own query params and nested deep entries.

    ``{"_limit": 5, "_filter": {...}, "author": {...}}``
    -> ``({"limit": 5, "filter": {...}}, {"author": {...}})``
    """
    params: dict = {}
    nested: dict = {}
    for key, value in deep.items():
        match = _DEEP_KEY_PATTERN.match(key)
        if match and (key.startswith("_") or not isinstance(value, dict) or match.group(1) == "filter"):
            params[match.group(1)] = value
        else:
            nested[key] = value
    return params, nested
