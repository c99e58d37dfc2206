"""
Core dataclass definitions for the itemgraph engine.

These describe the schema overview: collections, their fields, and the
relations between them. A SchemaOverview is built once per schema version and
treated as a read-only snapshot by everything downstream.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional


RelationType = Literal["m2o", "o2m", "a2o"]

# Specials that mark a field as virtual (no physical column)
ALIAS_TYPES = ["alias", "o2m", "m2m", "m2a", "o2a", "files", "translations", "group", "no-data"]

# Specials managed by the mutation pipeline, never taken from the caller's payload
DATE_SPECIALS = ["date-created", "date-updated", "date-deleted"]
USER_SPECIALS = ["user-created", "user-updated", "user-deleted"]


@dataclass
class FieldOverview:
    """Definition of a collection field."""
    field: str
    type: str  # local type: integer, bigInteger, float, decimal, string, text, boolean, json, uuid, date, dateTime, timestamp, time, csv, hash, alias, unknown
    db_type: Optional[str] = None
    nullable: bool = True
    generated: bool = False
    default_value: Any = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    max_length: Optional[int] = None
    special: list[str] = field(default_factory=list)
    note: Optional[str] = None
    validation: Optional[dict] = None  # filter expression the value must satisfy
    alias: bool = False
    unique: bool = False
    unique_combination: bool = False
    required: bool = False


@dataclass
class CollectionOverview:
    """Definition of one collection in the schema overview."""
    collection: str
    primary: str
    fields: dict[str, FieldOverview] = field(default_factory=dict)
    singleton: bool = False
    is_soft_delete: bool = False
    sort_field: Optional[str] = None
    note: Optional[str] = None
    accountability: Optional[Literal["all", "activity"]] = "all"

    @property
    def deleted_at_field(self) -> Optional[str]:
        """Field holding the soft-delete timestamp."""
        for name, f in self.fields.items():
            if "date-deleted" in f.special:
                return name
        if "deleted_at" in self.fields:
            return "deleted_at"
        return None

    @property
    def deleted_by_field(self) -> Optional[str]:
        """Field holding the user that soft-deleted the row."""
        for name, f in self.fields.items():
            if "user-deleted" in f.special:
                return name
        if "deleted_by" in self.fields:
            return "deleted_by"
        return None

    def physical_fields(self) -> list[str]:
        """Names of all column-backed fields, in order."""
        return [name for name, f in self.fields.items() if not f.alias]


@dataclass
class RelationMeta:
    """Metadata overrides for a relation (reverse field, junction, a2o info)."""
    id: Optional[int] = None
    many_collection: Optional[str] = None
    many_field: Optional[str] = None
    one_collection: Optional[str] = None
    one_field: Optional[str] = None
    one_collection_field: Optional[str] = None
    one_allowed_collections: Optional[list[str]] = None
    junction_field: Optional[str] = None
    sort_field: Optional[str] = None
    one_deselect_action: Literal["nullify", "delete"] = "nullify"


@dataclass
class Relation:
    """
    A many-to-one edge: ``collection.field`` points at ``related_collection``.

    ``related_collection`` is None for any-to-one relations, where the target
    collection is stored per row in ``meta.one_collection_field``.
    """
    collection: str
    field: str
    related_collection: Optional[str] = None
    meta: Optional[RelationMeta] = None


@dataclass
class SchemaOverview:
    """
    Snapshot of every collection, field and relation.

    Usage:
        schema = await get_schema(engine)
        overview = schema.collections["articles"]
        kind, relation = schema.get_relation("articles", "author")
    """
    collections: dict[str, CollectionOverview] = field(default_factory=dict)
    relations: list[Relation] = field(default_factory=list)
    relation_map: dict[str, list[Relation]] = field(default_factory=dict)

    def __post_init__(self):
        if self.relations and not self.relation_map:
            self.relation_map = build_relation_map(self.relations)

    def relations_for(self, collection: str) -> list[Relation]:
        """Every relation where ``collection`` is either side."""
        return self.relation_map.get(collection, [])

    def get_relation(
        self, collection: str, field_name: str
    ) -> tuple[Optional[RelationType], Optional[Relation]]:
        """
        Resolve the relation behind ``collection.field_name``.

        Returns:
            (type, relation) or (None, None) when the field isn't relational
        """
        for relation in self.relations_for(collection):
            kind = get_relation_type(relation, collection, field_name)
            if kind:
                return kind, relation
        return None, None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collections": {name: asdict(c) for name, c in self.collections.items()},
            "relations": [asdict(r) for r in self.relations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SchemaOverview":
        collections = {}
        for name, raw in data.get("collections", {}).items():
            raw = dict(raw)
            fields = {k: FieldOverview(**v) for k, v in raw.pop("fields", {}).items()}
            collections[name] = CollectionOverview(fields=fields, **raw)

        relations = []
        for raw in data.get("relations", []):
            raw = dict(raw)
            meta = raw.pop("meta", None)
            relations.append(Relation(meta=RelationMeta(**meta) if meta else None, **raw))

        return cls(collections=collections, relations=relations)


def get_relation_type(
    relation: Relation, collection: str, field_name: str
) -> Optional[RelationType]:
    """Kind of ``relation`` when seen from ``collection.field_name``."""
    meta = relation.meta
    if relation.collection == collection and relation.field == field_name:
        if relation.related_collection:
            return "m2o"
        if meta and meta.one_collection_field and meta.one_allowed_collections:
            return "a2o"
    if (
        relation.related_collection == collection
        and meta is not None
        and meta.one_field == field_name
    ):
        return "o2m"
    return None


def build_relation_map(relations: list[Relation]) -> dict[str, list[Relation]]:
    """Index relations by both sides."""
    relation_map: dict[str, list[Relation]] = {}
    for relation in relations:
        relation_map.setdefault(relation.collection, []).append(relation)
        if relation.related_collection and relation.related_collection != relation.collection:
            relation_map.setdefault(relation.related_collection, []).append(relation)
        if relation.meta and relation.meta.one_allowed_collections:
            for name in relation.meta.one_allowed_collections:
                if relation not in relation_map.setdefault(name, []):
                    relation_map[name].append(relation)
    return relation_map
