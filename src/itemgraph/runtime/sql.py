"""
SQL building blocks for the runner and the mutation pipeline.

Compiles filter trees, sorts, search terms and aggregates into SQLAlchemy Core
expressions over lightweight table clauses built from the schema overview.
Relational filters become ``IN (subquery)`` so they never multiply rows.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.sql import ColumnElement

from ..core.defs import FieldOverview, SchemaOverview
from ..core.errors import InvalidPayloadException, InvalidQueryException
from ..core.filters import LOGICAL_OPERATORS, is_operator_map
from ..database.helpers import DialectHelpers


def get_table(schema: SchemaOverview, collection: str, alias: Optional[str] = None):
    """
    Table clause with every physical column of ``collection``.

    Columns are untyped; value coercion goes through the dialect helpers.
    """
    overview = schema.collections[collection]
    table = sa.table(collection, *[sa.column(name) for name in overview.physical_fields()])
    return table.alias(alias) if alias else table


def escape_like(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def conjoin(clauses: list) -> Optional[ColumnElement]:
    clauses = [c for c in clauses if c is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return sa.and_(*clauses)


class FilterCompiler:
    """
    Compiles a filter tree into a WHERE clause.

    Usage:
        compiler = FilterCompiler(schema, helpers)
        table = get_table(schema, "articles")
        clause = compiler.compile("articles", table, {"status": {"_eq": "published"}})
        stmt = sa.select(table).where(clause)
    """

    def __init__(self, schema: SchemaOverview, helpers: DialectHelpers):
        self.schema = schema
        self.helpers = helpers
        self._subquery_counter = 0

    def compile(self, collection: str, table, filter: Optional[dict]) -> Optional[ColumnElement]:
        if not filter:
            return None

        overview = self.schema.collections[collection]
        clauses: list = []

        for key, value in filter.items():
            if key == "_and":
                clauses.append(conjoin([self.compile(collection, table, sub) for sub in value]))
                continue
            if key == "_or":
                parts = [c for c in (self.compile(collection, table, sub) for sub in value) if c is not None]
                if parts:
                    clauses.append(sa.or_(*parts))
                continue

            field = overview.fields.get(key)
            if field is None:
                raise InvalidQueryException(f"{collection}: field '{key}' not found")

            if is_operator_map(value):
                for op, operand in value.items():
                    clauses.append(self._operator(table.c[key], field, op, operand))
                continue

            kind, relation = self.schema.get_relation(collection, key)

            if kind == "m2o":
                related = self.schema.collections[relation.related_collection]
                related_table = self._subquery_table(relation.related_collection)
                sub = sa.select(related_table.c[related.primary])
                condition = self.compile(relation.related_collection, related_table, value)
                if condition is not None:
                    sub = sub.where(condition)
                clauses.append(table.c[key].in_(sub))

            elif kind == "o2m":
                negate = "_none" in value
                inner = value.get("_none", value.get("_some", value))
                related_table = self._subquery_table(relation.collection)
                sub = sa.select(related_table.c[relation.field]).where(
                    related_table.c[relation.field].is_not(None)
                )
                condition = self.compile(relation.collection, related_table, inner)
                if condition is not None:
                    sub = sub.where(condition)
                expression = table.c[overview.primary].in_(sub)
                clauses.append(sa.not_(expression) if negate else expression)

            else:
                raise InvalidQueryException(f"{collection}: can't filter on field '{key}' with {value!r}")

        return conjoin(clauses)

    def _subquery_table(self, collection: str):
        self._subquery_counter += 1
        return get_table(self.schema, collection, alias=f"f{self._subquery_counter}")

    def _operator(self, column, field: FieldOverview, op: str, operand: Any) -> ColumnElement:
        if op == "_eq":
            return column.is_(None) if operand is None else column == self._bind(field, operand)
        if op == "_neq":
            return column.is_not(None) if operand is None else column != self._bind(field, operand)
        if op == "_lt":
            return column < self._bind(field, operand)
        if op == "_lte":
            return column <= self._bind(field, operand)
        if op == "_gt":
            return column > self._bind(field, operand)
        if op == "_gte":
            return column >= self._bind(field, operand)
        if op == "_in":
            return column.in_([self._bind(field, v) for v in operand])
        if op == "_nin":
            return column.not_in([self._bind(field, v) for v in operand])
        if op == "_null":
            return column.is_(None) if _truthy(operand) else column.is_not(None)
        if op == "_nnull":
            return column.is_not(None) if _truthy(operand) else column.is_(None)
        if op == "_contains":
            return column.like(f"%{escape_like(operand)}%", escape="\\")
        if op == "_ncontains":
            return sa.not_(column.like(f"%{escape_like(operand)}%", escape="\\"))
        if op == "_icontains":
            return sa.func.lower(column).like(f"%{escape_like(str(operand).lower())}%", escape="\\")
        if op == "_starts_with":
            return column.like(f"{escape_like(operand)}%", escape="\\")
        if op == "_nstarts_with":
            return sa.not_(column.like(f"{escape_like(operand)}%", escape="\\"))
        if op == "_ends_with":
            return column.like(f"%{escape_like(operand)}", escape="\\")
        if op == "_nends_with":
            return sa.not_(column.like(f"%{escape_like(operand)}", escape="\\"))
        if op == "_between":
            low, high = operand
            return column.between(self._bind(field, low), self._bind(field, high))
        if op == "_nbetween":
            low, high = operand
            return sa.not_(column.between(self._bind(field, low), self._bind(field, high)))
        if op == "_empty":
            return sa.or_(column.is_(None), column == "")
        if op == "_nempty":
            return sa.and_(column.is_not(None), column != "")
        raise InvalidQueryException(f"Operator '{op}' not supported")

    def _bind(self, field: FieldOverview, value: Any) -> Any:
        try:
            return self.helpers.write_value(value, field)
        except InvalidPayloadException as e:
            raise InvalidQueryException(e.message)


def sort_clauses(schema: SchemaOverview, collection: str, table, sort: Optional[list[str]]) -> list:
    """ORDER BY expressions; ``-field`` is descending, ``rel.field`` sorts through an m2o."""
    clauses = []
    for entry in sort or []:
        descending = entry.startswith("-")
        name = entry.lstrip("-")
        head, _, rest = name.partition(".")

        if rest:
            _, relation = schema.get_relation(collection, head)
            related = schema.collections[relation.related_collection]
            related_table = get_table(schema, relation.related_collection, alias=f"s_{head}")
            expression = (
                sa.select(related_table.c[rest])
                .where(related_table.c[related.primary] == table.c[head])
                .scalar_subquery()
            )
        else:
            expression = table.c[name]

        clauses.append(expression.desc() if descending else expression.asc())
    return clauses


def search_clause(schema: SchemaOverview, collection: str, table, term: str) -> ColumnElement:
    """Case-insensitive match of ``term`` over the searchable columns."""
    overview = schema.collections[collection]
    clauses = []
    pattern = f"%{escape_like(term.lower())}%"

    for name, field in overview.fields.items():
        if field.alias or "conceal" in field.special or "hash" in field.special:
            continue
        if field.type in ("string", "text"):
            clauses.append(sa.func.lower(table.c[name]).like(pattern, escape="\\"))
        elif field.type in ("integer", "bigInteger") and _is_int(term):
            clauses.append(table.c[name] == int(term))
        elif field.type in ("float", "decimal") and _is_float(term):
            clauses.append(table.c[name] == float(term))
        elif field.type == "uuid" and _is_uuid(term):
            clauses.append(table.c[name] == term)

    return sa.or_(*clauses) if clauses else sa.false()


AGGREGATES = {
    "count": lambda column: sa.func.count(column),
    "countDistinct": lambda column: sa.func.count(sa.distinct(column)),
    "sum": lambda column: sa.func.sum(column),
    "sumDistinct": lambda column: sa.func.sum(sa.distinct(column)),
    "avg": lambda column: sa.func.avg(column),
    "avgDistinct": lambda column: sa.func.avg(sa.distinct(column)),
    "min": lambda column: sa.func.min(column),
    "max": lambda column: sa.func.max(column),
}


def aggregate_columns(table, aggregate: dict[str, list[str]]) -> dict[str, tuple[str, str, Any]]:
    """
    Labeled aggregate expressions.

    Returns:
        label -> (function, field, expression)
    """
    columns = {}
    for fn, fields in aggregate.items():
        for field_name in fields:
            label = f"agg_{len(columns)}"
            if field_name == "*":
                expression = sa.func.count()
            else:
                expression = AGGREGATES[fn](table.c[field_name])
            columns[label] = (fn, field_name, expression.label(label))
    return columns


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() not in ("false", "0", "")
    return bool(value)


def _is_int(value: str) -> bool:
    try:
        int(value)
        return True
    except ValueError:
        return False


def _is_float(value: str) -> bool:
    try:
        float(value)
        return True
    except ValueError:
        return False


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
        return True
    except ValueError:
        return False
