"""
AST runner - executes a read AST against the database.

Execution strategy:
- The root collection and every m2o below it are read in ONE select with
  LEFT OUTER JOINs; the related filter goes into the join condition so a
  filtered-out related row reads as null instead of dropping the parent.
- o2m children are read in batches keyed by the parents' keys, with the
  per-parent limit applied via ROW_NUMBER() where the backend has window
  functions, otherwise with one query per parent.
- a2o targets are read per target collection by primary key.

Query count is bounded by the shape of the AST, never by the number of rows.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection

from ..config import Settings, get_settings
from ..core.defs import CollectionOverview, SchemaOverview
from ..database.helpers import get_helpers
from .assembler import JoinedEntry, attach_any_to_one, attach_to_many, shape_items, unflatten_rows
from .ast import AST, A2ONode, Child, FieldNode, NestedCollectionNode
from .sql import FilterCompiler, aggregate_columns, conjoin, get_table, search_clause, sort_clauses
from .transformers import transform_value

logger = logging.getLogger(__name__)

ROW_NUMBER_LABEL = "__row_number"


async def run_ast(
    ast: AST,
    schema: SchemaOverview,
    conn: AsyncConnection,
    *,
    settings: Optional[Settings] = None,
    strip_non_requested: bool = True,
    transformers: Optional[dict[str, bool]] = None,
) -> Optional[list[dict]]:
    """
    Execute an AST and return nested items.

    Args:
        ast: Planned (and permission-rewritten) AST
        schema: Schema snapshot the AST was planned against
        conn: Open connection
        strip_non_requested: Drop link fields the runner had to read
        transformers: Read transformer switches, e.g. {"conceal": False}

    Returns:
        List of items, aggregate rows for aggregate queries, or None when
        nothing is readable
    """
    runner = ASTRunner(schema, conn, settings=settings, transformers=transformers)
    return await runner.run(ast, strip_non_requested=strip_non_requested)


class ASTRunner:
    """
    Runs one AST.

    Usage:
        runner = ASTRunner(schema, conn)
        items = await runner.run(ast)
    """

    def __init__(
        self,
        schema: SchemaOverview,
        conn: AsyncConnection,
        *,
        settings: Optional[Settings] = None,
        transformers: Optional[dict[str, bool]] = None,
    ):
        self.schema = schema
        self.conn = conn
        self.settings = settings or get_settings()
        self.transformers = transformers or {}
        self.helpers = get_helpers(conn)
        self.filters = FilterCompiler(schema, self.helpers)

    async def run(self, ast: AST, strip_non_requested: bool = True) -> Optional[list[dict]]:
        if ast.query.aggregate:
            return await self._run_aggregate(ast)

        if not ast.children:
            return None

        query = ast.query
        stmt, base, entries = self._build_select(ast.name, ast.children)

        stmt = stmt.where(
            *[c for c in (
                self.filters.compile(ast.name, base, query.filter),
                search_clause(self.schema, ast.name, base, query.search) if query.search else None,
            ) if c is not None]
        )
        stmt = stmt.order_by(*sort_clauses(self.schema, ast.name, base, query.sort))
        if query.limit is not None and query.limit != -1:
            stmt = stmt.limit(query.limit)
        if query.offset:
            stmt = stmt.offset(query.offset)

        result = await self.conn.execute(stmt)
        items = unflatten_rows(list(result.mappings()), entries, self._read_value)
        await self._load_deferred(entries)

        return shape_items(items, ast.name, ast.children, self.schema, strip_non_requested)

    # --- select building ---

    def _build_select(
        self,
        collection: str,
        children: list[Child],
        extra: tuple[str, ...] = (),
    ):
        """
        Select of ``collection`` with its requested m2o tree joined in.

        Returns:
            (statement, base table alias, joined entries parents first)
        """
        base = get_table(self.schema, collection, alias="t0")
        columns: list = []
        entries: list[JoinedEntry] = []
        from_clause = base
        counter = 0

        def add(name: str, table, nodes: list[Child], path: tuple[str, ...], link_fields: tuple[str, ...]):
            nonlocal from_clause, counter

            overview = self.schema.collections[name]
            labels = {}
            for field_name in self._needed_fields(overview, nodes, link_fields):
                label = f"{table.name}__{field_name}"
                columns.append(table.c[field_name].label(label))
                labels[label] = field_name
            entries.append(JoinedEntry(name, path, overview.primary, labels, nodes))

            for node in nodes:
                if not (isinstance(node, NestedCollectionNode) and node.type == "m2o"):
                    continue
                counter += 1
                related = get_table(self.schema, node.name, alias=f"t{counter}")
                on = conjoin([
                    related.c[node.related_key] == table.c[node.parent_key],
                    self.filters.compile(node.name, related, node.query.filter),
                ])
                from_clause = from_clause.outerjoin(related, on)
                add(node.name, related, node.children, path + (node.field_key,), ())

        add(collection, base, children, (), extra)
        return sa.select(*columns).select_from(from_clause), base, entries

    def _needed_fields(
        self, overview: CollectionOverview, children: list[Child], extra: tuple[str, ...]
    ) -> list[str]:
        """Requested columns plus the keys needed to stitch relations together."""
        names = [overview.primary, *extra]
        for child in children:
            if isinstance(child, FieldNode):
                names.append(child.name)
            elif isinstance(child, NestedCollectionNode):
                names.append(child.parent_key)
            elif isinstance(child, A2ONode):
                names.extend([child.field, child.collection_field])

        physical = set(overview.physical_fields())
        return [name for name in dict.fromkeys(names) if name in physical]

    def _read_value(self, collection: str, field_name: str, value: Any) -> Any:
        field = self.schema.collections[collection].fields[field_name]
        return transform_value(self.helpers.read_value(value, field), field, self.transformers)

    # --- deferred relations ---

    async def _load_deferred(self, entries: list[JoinedEntry]) -> None:
        for entry in entries:
            for child in entry.children:
                if isinstance(child, NestedCollectionNode) and child.type == "o2m":
                    await self._load_o2m(entry.parents, child)
                elif isinstance(child, A2ONode):
                    await self._load_a2o(entry.parents, child)

    async def _load_o2m(self, parents: list[dict], node: NestedCollectionNode) -> None:
        keys = list(dict.fromkeys(p[node.parent_key] for p in parents if p.get(node.parent_key) is not None))
        if not keys:
            for parent in parents:
                parent[node.field_key] = []
            return

        query = node.query
        link_field = self.schema.collections[node.name].fields[node.related_key]
        stmt, base, entries = self._build_select(node.name, node.children, extra=(node.related_key,))
        order = sort_clauses(self.schema, node.name, base, query.sort)
        conditions = [
            self.filters.compile(node.name, base, query.filter),
            search_clause(self.schema, node.name, base, query.search) if query.search else None,
        ]
        limit = query.limit if query.limit is not None else -1
        offset = query.offset or 0

        rows: list = []
        batch_size = self.settings.relational_batch_size

        for start in range(0, len(keys), batch_size):
            chunk = [self.helpers.write_value(k, link_field) for k in keys[start:start + batch_size]]

            if limit == -1 and not offset:
                batch = stmt.where(*[c for c in conditions if c is not None], base.c[node.related_key].in_(chunk))
                result = await self.conn.execute(batch.order_by(*order))
                rows.extend(result.mappings())

            elif self.helpers.supports_window_functions:
                row_number = sa.func.row_number().over(
                    partition_by=base.c[node.related_key], order_by=order
                ).label(ROW_NUMBER_LABEL)
                inner = stmt.add_columns(row_number).where(
                    *[c for c in conditions if c is not None], base.c[node.related_key].in_(chunk)
                ).subquery("ranked")
                rank = inner.c[ROW_NUMBER_LABEL]
                window = [rank > offset]
                if limit != -1:
                    window.append(rank <= offset + limit)
                labels = [label for entry in entries for label in entry.labels]
                outer = sa.select(*[inner.c[label] for label in labels]).where(*window).order_by(rank)
                result = await self.conn.execute(outer)
                rows.extend(result.mappings())

            else:
                logger.debug(f"No window functions; reading '{node.field_key}' one parent at a time")
                for key in chunk:
                    single = stmt.where(
                        *[c for c in conditions if c is not None], base.c[node.related_key] == key
                    ).order_by(*order)
                    if limit != -1:
                        single = single.limit(limit)
                    if offset:
                        single = single.offset(offset)
                    result = await self.conn.execute(single)
                    rows.extend(result.mappings())

        children = unflatten_rows(rows, entries, self._read_value)
        await self._load_deferred(entries)
        attach_to_many(parents, children, node)

    async def _load_a2o(self, parents: list[dict], node: A2ONode) -> None:
        fetched: dict[str, dict[str, dict]] = {}

        for target in node.names:
            keys = list(dict.fromkeys(
                p[node.field] for p in parents
                if p.get(node.collection_field) == target and p.get(node.field) is not None
            ))
            if not keys:
                continue

            overview = self.schema.collections[target]
            primary = overview.fields[overview.primary]
            query = node.query[target]
            stmt, base, entries = self._build_select(target, node.children[target])

            bound = []
            for key in keys:
                # Keys are stored as text on the parent; cast them to the target's key type
                bound.append(self.helpers.write_value(key, primary))

            stmt = stmt.where(
                *[c for c in (
                    base.c[overview.primary].in_(bound),
                    self.filters.compile(target, base, query.filter),
                ) if c is not None]
            )
            result = await self.conn.execute(stmt)
            items = unflatten_rows(list(result.mappings()), entries, self._read_value)
            await self._load_deferred(entries)
            fetched[target] = {str(item[overview.primary]): item for item in items}

        attach_any_to_one(parents, fetched, node)

    # --- aggregates ---

    async def _run_aggregate(self, ast: AST) -> list[dict]:
        query = ast.query
        overview = self.schema.collections[ast.name]
        table = get_table(self.schema, ast.name)
        aggregates = aggregate_columns(table, query.aggregate)
        group = list(query.group or [])

        stmt = sa.select(*[table.c[name] for name in group], *[expr for _, _, expr in aggregates.values()])
        where = conjoin([
            self.filters.compile(ast.name, table, query.filter),
            search_clause(self.schema, ast.name, table, query.search) if query.search else None,
        ])
        if where is not None:
            stmt = stmt.where(where)

        if group:
            stmt = stmt.group_by(*[table.c[name] for name in group])
            grouped_sort = [s for s in query.sort or [] if s.lstrip("-") in group]
            stmt = stmt.order_by(*sort_clauses(self.schema, ast.name, table, grouped_sort))
            if query.limit is not None and query.limit != -1:
                stmt = stmt.limit(query.limit)
            if query.offset:
                stmt = stmt.offset(query.offset)

        result = await self.conn.execute(stmt)

        items = []
        for row in result.mappings():
            item: dict[str, Any] = {}
            for name in group:
                item[name] = self._read_value(overview.collection, name, row[name])
            for label, (fn, field_name, _) in aggregates.items():
                item.setdefault(fn, {})[field_name] = _aggregate_value(fn, row[label])
            items.append(item)
        return items


def _aggregate_value(fn: str, value: Any) -> Any:
    if value is None:
        return None
    if fn.startswith("count"):
        return int(value)
    if isinstance(value, Decimal):
        return float(value)
    return value
