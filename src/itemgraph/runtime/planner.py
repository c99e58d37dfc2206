"""
Query planner - builds the read AST from a Query.

The planner is a pure function of (collection, query, schema): it resolves
requested field paths into scalar and relational nodes, scopes deep
sub-queries to their relation, applies limits and the soft-delete clause,
and validates the filter. It performs no I/O.

Relations are followed only where the caller spelled out a path, so
self-referencing and cyclic relations can't recurse on their own.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..config import Settings, get_settings
from ..core.defs import CollectionOverview, SchemaOverview
from ..core.errors import InvalidQueryException
from ..core.filters import merge_soft_delete_filter, parse_filter, split_deep
from ..core.query_types import Query
from ..core.validator import QueryValidator
from .ast import AST, A2ONode, Child, FieldNode, NestedCollectionNode
from .context import Accountability

logger = logging.getLogger(__name__)


def build_ast(
    collection: str,
    query: Query,
    schema: SchemaOverview,
    *,
    settings: Optional[Settings] = None,
    accountability: Optional[Accountability] = None,
) -> AST:
    """
    Build the AST for a read.

    Usage:
        ast = build_ast("articles", Query(fields=["*", "author.name"]), schema)

    Raises:
        InvalidQueryException: Unknown fields, bad operators, non-relational paths
    """
    planner = QueryPlanner(schema, settings=settings, accountability=accountability)
    return planner.plan(collection, query)


class QueryPlanner:
    """
    Builds AST from a query.

    Usage:
        planner = QueryPlanner(schema)
        ast = planner.plan("articles", query)
    """

    def __init__(
        self,
        schema: SchemaOverview,
        *,
        settings: Optional[Settings] = None,
        accountability: Optional[Accountability] = None,
    ):
        """
        Initialize planner with the schema overview.

        Args:
            schema: Schema snapshot for this request
            settings: Limits (default root limit, deep cap)
            accountability: Used to resolve $CURRENT_USER/$CURRENT_ROLE in filters
        """
        self.schema = schema
        self.settings = settings or get_settings()
        self.accountability = accountability
        self.validator = QueryValidator(schema)

    def plan(self, collection: str, query: Query) -> AST:
        if collection not in self.schema.collections:
            raise InvalidQueryException(f"Collection '{collection}' not found")

        errors = self.validator.validate(collection, query)
        if errors:
            raise InvalidQueryException(errors)

        overview = self.schema.collections[collection]
        limit = query.limit if query.limit is not None else self.settings.query_limit_default
        offset = query.offset or 0
        if query.page and limit != -1:
            offset = (query.page - 1) * limit

        root_query = query.model_copy(
            update={
                "filter": self._filter_for(overview, query.filter, query.show_soft_delete),
                "sort": query.sort or self._default_sort(overview),
                "limit": limit,
                "offset": offset,
            }
        )

        children: list[Child] = []
        if not query.aggregate:
            children = self._parse_fields(
                collection,
                query.fields or ["*"],
                deep=query.deep or {},
                alias=query.alias or {},
                show_soft_delete=query.show_soft_delete,
            )

        return AST(name=collection, query=root_query, children=children)

    def _parse_fields(
        self,
        collection: str,
        fields: list[str],
        *,
        deep: dict[str, Any],
        alias: dict[str, str],
        show_soft_delete: bool,
    ) -> list[Child]:
        """Resolve requested field paths of one collection into child nodes."""
        overview = self.schema.collections[collection]
        children: list[Child] = []
        scalar_keys: set[str] = set()

        # field_key -> (source field, {a2o scope or None: [nested paths]})
        relational: dict[str, tuple[str, dict[Optional[str], list[str]]]] = {}

        for requested in self._expand_wildcards(overview, fields):
            head, _, rest = requested.partition(".")
            head_name, _, scope = head.partition(":")
            source = alias.get(head_name, head_name)

            if source not in overview.fields:
                raise InvalidQueryException(f"{collection}: field '{source}' not found")

            kind, relation = self.schema.get_relation(collection, source)

            if rest or scope:
                if kind is None:
                    raise InvalidQueryException(f"{collection}: field '{source}' is not a relation")
                if scope and kind != "a2o":
                    raise InvalidQueryException(
                        f"{collection}: collection scope '{head}' is only valid on any-to-one fields"
                    )
                entry = relational.setdefault(head_name, (source, {}))
                entry[1].setdefault(scope or None, []).append(rest or "*")
                continue

            if kind == "o2m":
                relational.setdefault(head_name, (source, {}))
                continue

            if overview.fields[source].alias:
                # Non-relational alias (group, presentation): nothing to read
                continue

            if head_name not in scalar_keys:
                scalar_keys.add(head_name)
                children.append(FieldNode(name=source, field_key=head_name))

        for field_key, (source, nested) in relational.items():
            kind, relation = self.schema.get_relation(collection, source)
            sub_deep = deep.get(field_key) or {}

            if kind == "a2o":
                if not nested:
                    continue
                node = self._a2o_node(collection, source, field_key, relation, nested, deep, show_soft_delete)
            else:
                node = self._nested_node(
                    kind, collection, source, field_key, relation,
                    nested.get(None, []), sub_deep, show_soft_delete,
                )

            # A nested read replaces the raw key of the same name
            children = [c for c in children if c.field_key != field_key]
            children.append(node)

        return children

    def _nested_node(
        self,
        kind: str,
        collection: str,
        source: str,
        field_key: str,
        relation,
        nested_fields: list[str],
        sub_deep: dict,
        show_soft_delete: bool,
    ) -> NestedCollectionNode:
        parent = self.schema.collections[collection]

        if kind == "m2o":
            related_collection = relation.related_collection
            related = self.schema.collections[related_collection]
            parent_key, related_key = source, related.primary
        else:
            related_collection = relation.collection
            related = self.schema.collections[related_collection]
            parent_key, related_key = parent.primary, relation.field

        params, nested_deep = split_deep(sub_deep)
        keys_only = kind == "o2m" and not nested_fields

        sub_query = self._sub_query(related, params, to_many=kind == "o2m", show_soft_delete=show_soft_delete)
        if kind == "o2m" and not params.get("sort"):
            sort_field = relation.meta.sort_field if relation.meta else None
            sub_query.sort = [sort_field] if sort_field else [related.primary]

        children = self._parse_fields(
            related_collection,
            [related.primary] if keys_only else nested_fields,
            deep=nested_deep,
            alias={},
            show_soft_delete=show_soft_delete,
        )

        return NestedCollectionNode(
            type=kind,
            name=related_collection,
            field=source,
            field_key=field_key,
            relation=relation,
            parent_key=parent_key,
            related_key=related_key,
            query=sub_query,
            children=children,
            keys_only=keys_only,
        )

    def _a2o_node(
        self,
        collection: str,
        source: str,
        field_key: str,
        relation,
        nested: dict[Optional[str], list[str]],
        deep: dict,
        show_soft_delete: bool,
    ) -> A2ONode:
        allowed = relation.meta.one_allowed_collections or []
        for scope in nested:
            if scope is not None and scope not in allowed:
                raise InvalidQueryException(
                    f"{collection}: '{scope}' is not an allowed collection of '{source}'"
                )

        node = A2ONode(
            names=[],
            field=source,
            field_key=field_key,
            relation=relation,
            collection_field=relation.meta.one_collection_field,
        )

        for target in allowed:
            if target not in self.schema.collections:
                continue
            paths = nested.get(None, []) + nested.get(target, [])
            if not paths:
                continue
            related = self.schema.collections[target]
            params, nested_deep = split_deep(deep.get(f"{field_key}:{target}") or deep.get(field_key) or {})

            node.names.append(target)
            node.related_key[target] = related.primary
            node.query[target] = self._sub_query(related, params, to_many=False, show_soft_delete=show_soft_delete)
            node.children[target] = self._parse_fields(
                target, paths, deep=nested_deep, alias={}, show_soft_delete=show_soft_delete
            )

        return node

    def _sub_query(
        self, related: CollectionOverview, params: dict, *, to_many: bool, show_soft_delete: bool
    ) -> Query:
        """Query scoped to one nested relation, from its deep params."""
        filter = params.get("filter")
        if filter:
            errors = self.validator.validate_filter(related.collection, filter)
            if errors:
                raise InvalidQueryException(errors)

        sort = params.get("sort")
        if isinstance(sort, str):
            sort = [s.strip() for s in sort.split(",") if s.strip()]

        limit = None
        if to_many:
            limit = self._clamp_limit(params.get("limit"))

        return Query(
            filter=self._filter_for(related, filter, show_soft_delete),
            sort=sort,
            limit=limit,
            offset=int(params.get("offset") or 0),
            search=params.get("search"),
        )

    def _clamp_limit(self, requested: Any) -> int:
        """Per-parent limit of a to-many relation, capped at the configured max."""
        cap = self.settings.relational_limit_max
        if requested is None:
            return cap
        requested = int(requested)
        if cap == -1:
            return requested
        if requested == -1 or requested > cap:
            logger.debug(f"Clamping deep limit {requested} to {cap}")
            return cap
        return requested

    def _filter_for(
        self, overview: CollectionOverview, filter: Optional[dict], show_soft_delete: bool
    ) -> Optional[dict]:
        filter = parse_filter(filter, self.accountability) if filter else None
        deleted_field = overview.deleted_at_field
        if overview.is_soft_delete and deleted_field and not show_soft_delete:
            return merge_soft_delete_filter(filter, deleted_field)
        return filter

    def _default_sort(self, overview: CollectionOverview) -> list[str]:
        return [overview.sort_field] if overview.sort_field else [overview.primary]

    def _expand_wildcards(self, overview: CollectionOverview, fields: list[str]) -> list[str]:
        """Expand ``*`` to all physical fields, keeping order and dropping duplicates."""
        expanded: list[str] = []
        for name in fields:
            if name == "*":
                expanded.extend(overview.physical_fields())
            else:
                expanded.append(name)
        return list(dict.fromkeys(expanded))
