"""
Result assembler - combines fetched rows into nested item trees.

Handles:
- Splitting joined (m2o) columns of a row into nested objects
- Attaching batched to-many / any-to-one children to their parents
- Stripping fields the caller didn't request and applying aliases
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from ..core.defs import SchemaOverview
from .ast import A2ONode, Child, FieldNode, NestedCollectionNode


@dataclass
class JoinedEntry:
    """
    One table of a flattened select: the base table or a joined m2o.

    ``labels`` maps result column labels to field names of ``collection``.
    """
    collection: str
    path: tuple[str, ...]
    primary: str
    labels: dict[str, str]
    children: list[Child]
    parents: list[dict] = field(default_factory=list)


def unflatten_rows(
    rows: list[Mapping[str, Any]],
    entries: list[JoinedEntry],
    read_value: Callable[[str, str, Any], Any],
) -> list[dict]:
    """
    Rebuild nested items from joined rows.

    Entries are ordered parents first. A joined entry whose primary key is
    null (no related row, or the join filter excluded it) becomes None.

    Args:
        rows: Result mappings keyed by label
        entries: Tables of the select, base first
        read_value: (collection, field, raw) -> value, for coercion/transformers
    """
    items: list[dict] = []

    for row in rows:
        objects: dict[tuple[str, ...], Optional[dict]] = {}

        for entry in entries:
            if entry.path:
                parent = objects.get(entry.path[:-1])
                if parent is None:
                    objects[entry.path] = None
                    continue
                pk_label = next(label for label, name in entry.labels.items() if name == entry.primary)
                if row[pk_label] is None:
                    parent[entry.path[-1]] = None
                    objects[entry.path] = None
                    continue

            target = {name: read_value(entry.collection, name, row[label]) for label, name in entry.labels.items()}
            if entry.path:
                objects[entry.path[:-1]][entry.path[-1]] = target
            else:
                items.append(target)
            objects[entry.path] = target
            entry.parents.append(target)

    return items


def attach_to_many(parents: list[dict], children: list[dict], node: NestedCollectionNode) -> None:
    """Attach o2m children to every parent by ``parent_key == related_key``."""
    children_by_key: dict[Any, list[dict]] = defaultdict(list)
    for child in children:
        key = child.get(node.related_key)
        if key is not None:
            children_by_key[key].append(child)

    for parent in parents:
        parent[node.field_key] = children_by_key.get(parent.get(node.parent_key), [])


def attach_any_to_one(parents: list[dict], fetched: dict[str, dict[str, dict]], node: A2ONode) -> None:
    """Attach a2o targets; ``fetched`` is collection -> str(primary key) -> item."""
    for parent in parents:
        target = parent.get(node.collection_field)
        key = parent.get(node.parent_key)
        if key is None or target not in fetched:
            parent[node.field_key] = None if key is None else key
            continue
        parent[node.field_key] = fetched[target].get(str(key))


def shape_items(
    items: list[Optional[dict]],
    collection: str,
    children: list[Child],
    schema: SchemaOverview,
    strip_non_requested: bool = True,
) -> list[Optional[dict]]:
    return [shape_item(item, collection, children, schema, strip_non_requested) for item in items]


def shape_item(
    item: Optional[dict],
    collection: str,
    children: list[Child],
    schema: SchemaOverview,
    strip_non_requested: bool = True,
) -> Optional[dict]:
    """
    Keep requested fields only (under their output keys), recursively.

    With ``strip_non_requested=False`` the link fields the runner added are
    kept as well.
    """
    if item is None:
        return None

    output: dict[str, Any] = {} if strip_non_requested else dict(item)

    for child in children:
        if isinstance(child, FieldNode):
            output[child.field_key] = item.get(child.name)

        elif isinstance(child, NestedCollectionNode) and child.type == "m2o":
            value = item.get(child.field_key)
            if isinstance(value, dict):
                value = shape_item(value, child.name, child.children, schema, strip_non_requested)
            output[child.field_key] = value

        elif isinstance(child, NestedCollectionNode):
            rows = item.get(child.field_key) or []
            if child.keys_only:
                primary = schema.collections[child.name].primary
                output[child.field_key] = [row.get(primary) for row in rows]
            else:
                output[child.field_key] = shape_items(rows, child.name, child.children, schema, strip_non_requested)

        elif isinstance(child, A2ONode):
            value = item.get(child.field_key)
            target = item.get(child.collection_field)
            if isinstance(value, dict) and target in child.children:
                value = shape_item(value, target, child.children[target], schema, strip_non_requested)
            output[child.field_key] = value

    return output
