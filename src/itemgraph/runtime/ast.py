"""
AST node types.

An AST is built per read by the planner, rewritten by the permission guard,
executed by the runner and then discarded.

    AST(root) ─┬─ FieldNode("title")
               ├─ NestedCollectionNode(m2o, "authors")   joined into the parent query
               ├─ NestedCollectionNode(o2m, "comments")  batched by parent keys
               └─ A2ONode(["pages", "posts"])            batched per target collection
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union

from ..core.defs import Relation
from ..core.query_types import Query


@dataclass
class FieldNode:
    """A scalar column read."""
    name: str  # column on the collection
    field_key: str  # key in the output item
    type: Literal["field"] = "field"


@dataclass
class NestedCollectionNode:
    """
    A to-one (m2o) or to-many (o2m) relational read.

    Attributes:
        name: Related collection
        field: Field on the parent collection the caller requested
        parent_key: Parent field holding the link value (fk for m2o, pk for o2m)
        related_key: Related field matched against it (pk for m2o, fk for o2m)
        keys_only: o2m requested without nested fields; output is a key list
    """
    type: Literal["m2o", "o2m"]
    name: str
    field: str
    field_key: str
    relation: Relation
    parent_key: str
    related_key: str
    query: Query
    children: list["Child"] = field(default_factory=list)
    keys_only: bool = False


@dataclass
class A2ONode:
    """
    An any-to-one read: the target collection is stored per row.

    ``children``, ``query`` and ``related_key`` are keyed by target collection.
    """
    names: list[str]
    field: str
    field_key: str
    relation: Relation
    collection_field: str  # parent field naming the target collection
    children: dict[str, list["Child"]] = field(default_factory=dict)
    query: dict[str, Query] = field(default_factory=dict)
    related_key: dict[str, str] = field(default_factory=dict)
    type: Literal["a2o"] = "a2o"

    @property
    def parent_key(self) -> str:
        return self.field


@dataclass
class AST:
    """Root read of one collection."""
    name: str
    query: Query
    children: list["Child"] = field(default_factory=list)
    type: Literal["root"] = "root"


Child = Union[FieldNode, NestedCollectionNode, A2ONode]
