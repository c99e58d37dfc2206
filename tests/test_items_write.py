"""
Tests for the mutation pipeline: nested relational writes, transactions,
uniqueness, required fields, permissions, hooks, soft delete and the
activity/revision trail.
"""

import asyncio

import pytest

from itemgraph.core.errors import (
    ForbiddenException,
    InvalidPayloadException,
    NotNullViolationException,
    RecordNotUniqueException,
)
from itemgraph.core.query_types import MutationOptions, Query
from itemgraph.database.helpers import SQLiteHelpers
from itemgraph.runtime.context import Permission
from itemgraph.services.activity import ActivityService
from itemgraph.services.revisions import RevisionsService


async def _count(service, **filter):
    query = Query(fields=[service.primary], filter=filter or None, limit=-1, show_soft_delete=True)
    return len(await service.read_by_query(query))


# =============================================================================
# Create / update / delete
# =============================================================================


class TestCreate:
    async def test_create_one_returns_key(self, items):
        key = await items("authors").create_one({"name": "Ann"})
        assert isinstance(key, int)
        assert (await items("authors").read_one(key))["name"] == "Ann"

    async def test_key_without_returning(self, items, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(SQLiteHelpers, "supports_returning", False)
        authors = items("authors")

        first = await authors.create_one({"name": "Ann"})
        second = await authors.create_one({"name": "Bob", "articles": [{"title": "Nested"}]})

        assert second == first + 1
        assert (await authors.read_one(second, Query(fields=["name", "articles.title"]))) == {
            "name": "Bob",
            "articles": [{"title": "Nested"}],
        }

    async def test_create_many(self, items):
        keys = await items("authors").create_many([{"name": "Ann"}, {"name": "Bob"}])
        assert len(keys) == 2

    async def test_create_many_is_atomic(self, items):
        with pytest.raises(InvalidPayloadException):
            await items("articles").create_many([{"title": "Fine"}, {"rating": 1}])
        assert await _count(items("articles")) == 0

    async def test_required_field(self, items):
        with pytest.raises(InvalidPayloadException) as exc_info:
            await items("articles").create_one({"body": "no title"})
        assert exc_info.value.extensions["fields"] == ["title"]

    async def test_unknown_fields_are_ignored(self, items):
        key = await items("authors").create_one({"name": "Ann", "nickname": "A"})
        assert "nickname" not in await items("authors").read_one(key)

    async def test_not_null_from_database(self, items):
        order = await items("orders").create_one({"reference": "R-1"})
        with pytest.raises(NotNullViolationException):
            await items("order_items").create_one({"order_id": order})

    async def test_bad_integer(self, items):
        with pytest.raises(InvalidPayloadException):
            await items("articles").create_one({"title": "x", "rating": "lots"})


class TestUpdate:
    async def test_update_one(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Old"})
        await articles.update_one(key, {"title": "New"})
        assert (await articles.read_one(key))["title"] == "New"

    async def test_primary_key_is_not_updated(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Old"})
        await articles.update_one(key, {"id": 999, "title": "New"})
        assert (await articles.read_one(key))["title"] == "New"

    async def test_update_many(self, items):
        articles = items("articles")
        keys = await articles.create_many([{"title": "A"}, {"title": "B"}])
        result = await articles.update_many(list(reversed(keys)), {"status": "archived"})

        assert result == sorted(keys)
        assert await _count(articles, status={"_eq": "archived"}) == 2

    async def test_update_by_query(self, items):
        articles = items("articles")
        await articles.create_many([{"title": "A", "rating": 1}, {"title": "B", "rating": 5}])
        keys = await articles.update_by_query(Query(filter={"rating": {"_gt": 2}}), {"status": "featured"})

        assert len(keys) == 1
        assert (await articles.read_one(keys[0]))["title"] == "B"

    async def test_update_by_query_without_matches(self, items):
        assert await items("articles").update_by_query(Query(filter={"rating": {"_gt": 100}}), {"status": "x"}) == []

    async def test_upsert(self, items):
        authors = items("authors")
        key = await authors.upsert_one({"name": "Ann"})
        assert await authors.upsert_one({"id": key, "name": "Anne"}) == key
        assert (await authors.read_one(key))["name"] == "Anne"
        assert await _count(authors) == 1

    async def test_upsert_many(self, items):
        authors = items("authors")
        key = await authors.create_one({"name": "Ann"})

        keys = await authors.upsert_many([{"id": key, "name": "Anne"}, {"name": "Bob"}])

        assert keys[0] == key
        assert await _count(authors) == 2
        assert (await authors.read_one(key))["name"] == "Anne"

    async def test_upsert_singleton(self, items):
        orders = items("orders")
        key = await orders.upsert_singleton({"reference": "settings"})
        assert await orders.upsert_singleton({"note": "changed"}) == key
        assert await _count(orders) == 1


class TestDelete:
    async def test_hard_delete(self, items):
        authors = items("authors")
        key = await authors.create_one({"name": "Ann"})
        await authors.delete_one(key)
        assert await _count(authors) == 0

    async def test_delete_by_query(self, items):
        comments = items("comments")
        await comments.create_many([{"body": "spam"}, {"body": "ham"}])
        await comments.delete_by_query(Query(filter={"body": {"_eq": "spam"}}))
        assert await _count(comments) == 1

    async def test_cascade_named_children(self, items):
        orders = items("orders")
        key = await orders.create_one({"reference": "R-1", "items": [{"sku": "A"}, {"sku": "B"}]})
        await orders.delete_one(key, MutationOptions(deleteds=["items"]))

        assert await _count(orders) == 0
        assert await _count(items("order_items")) == 0


# =============================================================================
# Nested relational writes
# =============================================================================


class TestNestedWrites:
    async def test_m2o_object_is_created(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Hello", "author": {"name": "Ann"}})
        article = await articles.read_one(key, Query(fields=["author.name"]))
        assert article["author"] == {"name": "Ann"}

    async def test_m2o_existing_object_is_updated(self, items):
        author = await items("authors").create_one({"name": "Ann"})
        await items("articles").create_one({"title": "Hello", "author": {"id": author, "name": "Anne"}})
        assert (await items("authors").read_one(author))["name"] == "Anne"

    async def test_o2m_children_are_created(self, items):
        orders = items("orders")
        key = await orders.create_one({"reference": "R-1", "items": [{"sku": "A", "qty": 1}, {"sku": "B"}]})
        order = await orders.read_one(key, Query(fields=["items.sku"]))
        assert sorted(i["sku"] for i in order["items"]) == ["A", "B"]

    async def test_failing_child_rolls_back_parent(self, items):
        with pytest.raises(NotNullViolationException):
            await items("orders").create_one({"reference": "R-1", "items": [{"sku": "A"}, {"qty": 2}]})

        assert await _count(items("orders")) == 0
        assert await _count(items("order_items")) == 0

    async def test_deselected_children_are_deleted(self, items):
        orders = items("orders")
        key = await orders.create_one({"reference": "R-1", "items": [{"sku": "A"}, {"sku": "B"}]})
        order = await orders.read_one(key, Query(fields=["items"]))
        kept = order["items"][0]

        await orders.update_one(key, {"items": [kept]})

        assert (await orders.read_one(key, Query(fields=["items"])))["items"] == [kept]
        assert await _count(items("order_items")) == 1

    async def test_deselected_children_are_nullified(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Hello", "comments": [{"body": "a"}, {"body": "b"}]})
        comment_keys = (await articles.read_one(key, Query(fields=["comments"])))["comments"]

        await articles.update_one(key, {"comments": comment_keys[:1]})

        orphan = await items("comments").read_one(comment_keys[1], Query(fields=["article"]))
        assert orphan == {"article": None}

    async def test_alter_children(self, items):
        orders = items("orders")
        key = await orders.create_one({"reference": "R-1", "items": [{"sku": "A"}]})
        first = (await orders.read_one(key, Query(fields=["items"])))["items"][0]

        await orders.update_one(
            key,
            {"items": {"create": [{"sku": "B"}], "update": [{"id": first, "qty": 7}], "delete": []}},
        )

        order = await orders.read_one(key, Query(fields=["items.sku", "items.qty"]))
        assert sorted((i["sku"], i["qty"]) for i in order["items"]) == [("A", 7), ("B", None)]

    async def test_a2o_needs_collection(self, items):
        with pytest.raises(InvalidPayloadException):
            await items("blocks").create_one({"item": {"name": "Ann"}})

    async def test_a2o_nested_create(self, items):
        blocks = items("blocks")
        key = await blocks.create_one({"collection": "authors", "item": {"name": "Ann"}})
        block = await blocks.read_one(key, Query(fields=["item:authors.name"]))
        assert block["item"] == {"name": "Ann"}


# =============================================================================
# Uniqueness
# =============================================================================


class TestUniqueness:
    async def test_concurrent_creates(self, items):
        results = await asyncio.gather(
            items("orders").create_one({"reference": "R-9"}),
            items("orders").create_one({"reference": "R-9"}),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], RecordNotUniqueException)
        assert await _count(items("orders")) == 1

    async def test_unique_field(self, items):
        authors = items("authors")
        await authors.create_one({"name": "Ann", "email": "a@example.com"})
        with pytest.raises(RecordNotUniqueException) as exc_info:
            await authors.create_one({"name": "Other Ann", "email": "a@example.com"})
        assert exc_info.value.to_dict()["extensions"]["code"] == "RECORD_NOT_UNIQUE"

    async def test_update_to_own_value(self, items):
        authors = items("authors")
        key = await authors.create_one({"name": "Ann", "email": "a@example.com"})
        await authors.update_one(key, {"email": "a@example.com", "name": "Anne"})

    async def test_unique_value_on_many_rows(self, items):
        authors = items("authors")
        keys = await authors.create_many([{"name": "A"}, {"name": "B"}])
        with pytest.raises(RecordNotUniqueException):
            await authors.update_many(keys, {"email": "same@example.com"})

    async def test_database_constraint_is_translated(self, items):
        orders = items("orders")
        await orders.create_one({"reference": "R-1"})
        with pytest.raises(RecordNotUniqueException):
            await orders.create_one({"reference": "R-1"})


# =============================================================================
# Soft delete and restore
# =============================================================================


class TestSoftDelete:
    async def test_delete_marks_row(self, items, admin):
        articles = items("articles", admin)
        key = await articles.create_one({"title": "Hello"})
        await articles.delete_one(key)

        row = await articles.read_one(key, Query(fields=["deleted_at", "deleted_by"], show_soft_delete=True))
        assert row["deleted_at"] is not None
        assert row["deleted_by"] == "admin-1"

    async def test_force_delete(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Hello"})
        await articles.delete_one(key, MutationOptions(force_delete=True))
        assert await _count(articles) == 0

    async def test_restore(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Hello"})
        await articles.delete_one(key)

        assert await articles.restore([key]) == [key]
        assert (await articles.read_one(key))["deleted_at"] is None

    async def test_restore_twice_is_a_noop(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Hello"})
        await articles.delete_one(key)
        await articles.restore([key])

        assert await articles.restore([key]) == []

    async def test_restore_as_role(self, items, make_role):
        articles = items("articles")
        key = await articles.create_one({"title": "Hello"})
        await articles.delete_one(key)

        role = make_role(Permission(collection="articles", action="update"))
        assert await items("articles", role).restore([key]) == [key]
        assert (await articles.read_one(key))["deleted_at"] is None

    async def test_restore_outside_update_permission(self, items, make_role):
        articles = items("articles")
        key = await articles.create_one({"title": "Hello", "status": "draft"})
        await articles.delete_one(key)

        role = make_role(
            Permission(collection="articles", action="update", permissions={"status": {"_eq": "published"}})
        )
        with pytest.raises(ForbiddenException):
            await items("articles", role).restore([key])

    async def test_restore_without_soft_delete(self, items):
        with pytest.raises(InvalidPayloadException):
            await items("authors").restore([1])


# =============================================================================
# Permissions on writes
# =============================================================================


class TestPermissionWrites:
    async def test_no_create_permission(self, items, make_role):
        with pytest.raises(ForbiddenException):
            await items("articles", make_role()).create_one({"title": "Hello"})

    async def test_field_not_allowed(self, items, make_role):
        role = make_role(Permission(collection="articles", action="create", fields=["title"]))
        with pytest.raises(ForbiddenException):
            await items("articles", role).create_one({"title": "Hello", "rating": 5})

    async def test_presets_are_applied(self, items, make_role):
        role = make_role(
            Permission(collection="articles", action="create", presets={"status": "review", "deleted_by": "$CURRENT_USER"})
        )
        key = await items("articles", role).create_one({"title": "Hello"})
        article = await items("articles").read_one(key, Query(fields=["status", "deleted_by"]))
        assert article == {"status": "review", "deleted_by": "user-1"}

    async def test_payload_overrides_presets(self, items, make_role):
        role = make_role(Permission(collection="articles", action="create", presets={"status": "review"}))
        key = await items("articles", role).create_one({"title": "Hello", "status": "draft"})
        assert (await items("articles").read_one(key))["status"] == "draft"

    async def test_validation_rule(self, items, make_role):
        role = make_role(Permission(collection="articles", action="create", validation={"rating": {"_lte": 5}}))
        with pytest.raises(InvalidPayloadException):
            await items("articles", role).create_one({"title": "Hello", "rating": 9})

    async def test_update_outside_permission_filter(self, items, make_role):
        key = await items("articles").create_one({"title": "Hello", "status": "published"})
        role = make_role(
            Permission(collection="articles", action="update", permissions={"status": {"_eq": "draft"}})
        )
        with pytest.raises(ForbiddenException):
            await items("articles", role).update_one(key, {"title": "Changed"})
        assert (await items("articles").read_one(key))["title"] == "Hello"

    async def test_delete_outside_permission_filter(self, items, make_role):
        key = await items("comments").create_one({"body": "keep"})
        role = make_role(
            Permission(collection="comments", action="delete", permissions={"body": {"_eq": "spam"}})
        )
        with pytest.raises(ForbiddenException):
            await items("comments", role).delete_one(key)


# =============================================================================
# Hooks
# =============================================================================


class TestWriteHooks:
    async def test_filter_hook_changes_payload(self, items, emitter):
        emitter.on_filter("articles.items.create", lambda payload, meta, context: {**payload, "status": "hooked"})
        key = await items("articles").create_one({"title": "Hello"})
        assert (await items("articles").read_one(key))["status"] == "hooked"

    async def test_filter_hook_aborts(self, items, emitter):
        def reject(payload, meta, context):
            raise InvalidPayloadException("rejected")

        emitter.on_filter("items.create", reject)
        with pytest.raises(InvalidPayloadException):
            await items("authors").create_one({"name": "Ann"})
        assert await _count(items("authors", emitter=None)) == 0

    async def test_action_hook_after_commit(self, items, emitter):
        seen = []
        emitter.on_action("items.create", lambda meta, context: seen.append((meta["collection"], meta["key"])))
        key = await items("authors").create_one({"name": "Ann"})
        assert seen == [("authors", key)]

    async def test_failing_action_hook_does_not_fail_write(self, items, emitter):
        def boom(meta, context):
            raise RuntimeError("boom")

        emitter.on_action("items.create", boom)
        key = await items("authors").create_one({"name": "Ann"})
        assert (await items("authors").read_one(key))["name"] == "Ann"


# =============================================================================
# Activity and revisions
# =============================================================================


class TestActivityAndRevisions:
    async def test_no_accountability_no_trail(self, items, schema, engine, settings):
        await items("orders").create_one({"reference": "R-1"})
        activity = ActivityService(schema=schema, db=engine, settings=settings)
        assert await activity.read_by_query(Query(limit=-1)) == []

    async def test_create_writes_activity_and_revision(self, items, schema, engine, settings, admin):
        key = await items("orders", admin).create_one({"reference": "R-1", "note": "first"})

        activity = await ActivityService(schema=schema, db=engine, settings=settings).read_by_query(
            Query(filter={"collection": {"_eq": "orders"}}, limit=-1)
        )
        assert len(activity) == 1
        assert activity[0]["action"] == "create"
        assert activity[0]["user"] == "admin-1"
        assert activity[0]["item"] == str(key)

        revisions = await RevisionsService(schema=schema, db=engine, settings=settings).read_by_query(
            Query(filter={"collection": {"_eq": "orders"}}, limit=-1)
        )
        assert len(revisions) == 1
        assert revisions[0]["activity"] == activity[0]["id"]
        assert revisions[0]["data"]["reference"] == "R-1"
        assert revisions[0]["delta"]["note"] == "first"

    async def test_nested_revisions_point_at_parent(self, items, schema, engine, settings, admin):
        await items("orders", admin).create_one({"reference": "R-1", "items": [{"sku": "A"}, {"sku": "B"}]})

        service = RevisionsService(schema=schema, db=engine, settings=settings)
        parent = (await service.read_by_query(Query(filter={"collection": {"_eq": "orders"}}, limit=-1)))[0]
        children = await service.read_children(parent["id"])

        assert len(children) == 2
        assert {c["collection"] for c in children} == {"order_items"}

    async def test_soft_delete_activity(self, items, schema, engine, settings, admin):
        articles = items("articles", admin)
        key = await articles.create_one({"title": "Hello"})
        await articles.delete_one(key)
        await articles.restore([key])

        activity = await ActivityService(schema=schema, db=engine, settings=settings).read_by_query(
            Query(filter={"collection": {"_eq": "articles"}}, sort=["id"], limit=-1)
        )
        assert [a["action"] for a in activity] == ["create", "soft-delete", "restore"]

    async def test_repeated_soft_delete_logs_once(self, items, schema, engine, settings, admin):
        articles = items("articles", admin)
        key = await articles.create_one({"title": "Hello"})
        await articles.delete_one(key)
        await articles.delete_one(key)

        activity = await ActivityService(schema=schema, db=engine, settings=settings).read_by_query(
            Query(filter={"collection": {"_eq": "articles"}}, sort=["id"], limit=-1)
        )
        assert [a["action"] for a in activity] == ["create", "soft-delete"]

    async def test_update_without_changes_writes_no_revision(self, items, schema, engine, settings, admin):
        orders = items("orders", admin)
        key = await orders.create_one({"reference": "R-1"})
        await orders.update_one(key, {})

        revisions = await RevisionsService(schema=schema, db=engine, settings=settings).read_by_query(
            Query(limit=-1)
        )
        assert len(revisions) == 1
