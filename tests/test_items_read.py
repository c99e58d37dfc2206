"""
Tests for reads through ItemsService: nested relations, type coercion,
aggregates, soft delete, permissions and meta counts.
"""

import pytest

from itemgraph.core.errors import ForbiddenException, InvalidQueryException
from itemgraph.core.query_types import Query
from itemgraph.database.helpers import SQLiteHelpers
from itemgraph.runtime.context import Permission
from itemgraph.services.meta import MetaService
from itemgraph.services.payload import is_hashed, verify_hash


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def blog(items):
    """Two authors, three articles, comments on the first article."""
    authors = items("authors")
    ann = await authors.create_one({"name": "Ann", "email": "ann@example.com"})
    bob = await authors.create_one({"name": "Bob"})

    articles = items("articles")
    first = await articles.create_one(
        {
            "title": "First",
            "status": "published",
            "rating": 5,
            "author": ann,
            "comments": [{"body": "Great", "sort": 2}, {"body": "Nice", "sort": 1}],
        }
    )
    second = await articles.create_one({"title": "Second", "status": "draft", "rating": 3, "author": ann})
    third = await articles.create_one({"title": "Third", "status": "published", "rating": 1, "author": bob})

    return {"ann": ann, "bob": bob, "articles": [first, second, third]}


# =============================================================================
# Basic reads
# =============================================================================


class TestReadByQuery:
    async def test_fields_filter_sort(self, items, blog):
        result = await items("articles").read_by_query(
            Query(fields=["id", "title"], filter={"status": {"_eq": "published"}}, sort=["-rating"])
        )
        assert [a["title"] for a in result] == ["First", "Third"]
        assert set(result[0]) == {"id", "title"}

    async def test_limit_offset(self, items, blog):
        result = await items("articles").read_by_query(Query(fields=["title"], sort=["id"], limit=1, offset=1))
        assert result == [{"title": "Second"}]

    async def test_search(self, items, blog):
        result = await items("articles").read_by_query(Query(fields=["title"], search="thi"))
        assert result == [{"title": "Third"}]

    async def test_sort_through_m2o(self, items, blog):
        result = await items("articles").read_by_query(Query(fields=["title"], sort=["-author.name", "id"]))
        assert [a["title"] for a in result] == ["Third", "First", "Second"]

    async def test_invalid_query(self, items, blog):
        with pytest.raises(InvalidQueryException):
            await items("articles").read_by_query(Query(fields=["nope"]))

    async def test_read_one(self, items, blog):
        article = await items("articles").read_one(blog["articles"][1], Query(fields=["title"]))
        assert article == {"title": "Second"}

    async def test_read_one_missing(self, items, blog):
        with pytest.raises(ForbiddenException):
            await items("articles").read_one(999)

    async def test_read_many(self, items, blog):
        result = await items("articles").read_many(blog["articles"][:2], Query(fields=["id"]))
        assert sorted(a["id"] for a in result) == sorted(blog["articles"][:2])


class TestNested:
    async def test_m2o(self, items, blog):
        article = await items("articles").read_one(blog["articles"][0], Query(fields=["title", "author.name"]))
        assert article == {"title": "First", "author": {"name": "Ann"}}

    async def test_o2m_sorted_by_sort_field(self, items, blog):
        article = await items("articles").read_one(blog["articles"][0], Query(fields=["comments.body"]))
        assert article["comments"] == [{"body": "Nice"}, {"body": "Great"}]

    async def test_o2m_keys_only(self, items, blog):
        article = await items("articles").read_one(blog["articles"][0], Query(fields=["comments"]))
        assert len(article["comments"]) == 2
        assert all(isinstance(key, int) for key in article["comments"])

    async def test_o2m_empty(self, items, blog):
        article = await items("articles").read_one(blog["articles"][1], Query(fields=["comments.body"]))
        assert article["comments"] == []

    async def test_reverse_o2m_with_deep_limit(self, items, blog):
        author = await items("authors").read_one(
            blog["ann"], Query(fields=["articles.title"], deep={"articles": {"_limit": 1, "_sort": "-id"}})
        )
        assert author["articles"] == [{"title": "Second"}]

    async def test_per_parent_limit_without_window_functions(self, items, blog, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(SQLiteHelpers, "supports_window_functions", False)

        authors = await items("authors").read_by_query(
            Query(fields=["name", "articles.title"], sort=["id"], deep={"articles": {"_limit": 1, "_sort": "-id"}})
        )
        assert authors == [
            {"name": "Ann", "articles": [{"title": "Second"}]},
            {"name": "Bob", "articles": [{"title": "Third"}]},
        ]

    async def test_per_parent_offset_without_window_functions(self, items, blog, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(SQLiteHelpers, "supports_window_functions", False)

        authors = await items("authors").read_by_query(
            Query(
                fields=["name", "articles.title"],
                sort=["id"],
                deep={"articles": {"_limit": 1, "_offset": 1, "_sort": "id"}},
            )
        )
        assert authors == [
            {"name": "Ann", "articles": [{"title": "Second"}]},
            {"name": "Bob", "articles": []},
        ]

    async def test_filter_through_m2o(self, items, blog):
        result = await items("articles").read_by_query(
            Query(fields=["title"], filter={"author": {"name": {"_eq": "Bob"}}})
        )
        assert result == [{"title": "Third"}]

    async def test_filter_through_o2m_some(self, items, blog):
        result = await items("articles").read_by_query(
            Query(fields=["title"], filter={"comments": {"_some": {"body": {"_eq": "Great"}}}})
        )
        assert result == [{"title": "First"}]

    async def test_a2o(self, items, blog):
        blocks = items("blocks")
        key = await blocks.create_one({"collection": "authors", "item": str(blog["bob"])})
        block = await blocks.read_one(key, Query(fields=["collection", "item:authors.name"]))
        assert block == {"collection": "authors", "item": {"name": "Bob"}}


# =============================================================================
# Values
# =============================================================================


class TestValues:
    async def test_types_come_back_as_written(self, items):
        articles = items("articles")
        key = await articles.create_one(
            {
                "title": "Typed",
                "published": True,
                "score": 1.5,
                "published_on": "2024-05-01",
                "extra": {"blocks": [1, 2]},
                "tags": ["a", "b"],
            }
        )
        article = await articles.read_one(
            key, Query(fields=["published", "score", "published_on", "extra", "tags"])
        )
        assert article == {
            "published": True,
            "score": 1.5,
            "published_on": "2024-05-01",
            "extra": {"blocks": [1, 2]},
            "tags": ["a", "b"],
        }

    async def test_hash_is_stored_once(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Secret", "secret": "hunter2"})
        stored = (await articles.read_one(key, Query(fields=["secret"])))["secret"]
        assert is_hashed(stored)
        assert verify_hash("hunter2", stored)
        assert not verify_hash("hunter3", stored)

        await articles.update_one(key, {"secret": stored})
        assert (await articles.read_one(key, Query(fields=["secret"])))["secret"] == stored

    async def test_singleton_defaults_without_row(self, items):
        singleton = await items("articles").read_singleton(Query(fields=["id", "status"]))
        assert singleton == {"id": None, "status": "draft"}

    async def test_singleton_reads_the_row(self, items):
        articles = items("articles")
        await articles.create_one({"title": "Only"})
        assert (await articles.read_singleton(Query(fields=["title"])))["title"] == "Only"

    async def test_server_default(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Defaulted"})
        assert (await articles.read_one(key, Query(fields=["status"])))["status"] == "draft"

    async def test_date_created_is_set(self, items):
        articles = items("articles")
        key = await articles.create_one({"title": "Dated", "date_created": "1999-01-01T00:00:00"})
        created = (await articles.read_one(key, Query(fields=["date_created"])))["date_created"]
        assert created is not None
        assert not created.startswith("1999")


# =============================================================================
# Aggregates
# =============================================================================


class TestAggregate:
    async def test_count(self, items, blog):
        result = await items("articles").read_by_query(Query(aggregate={"count": ["*"]}))
        assert result == [{"count": {"*": 3}}]

    async def test_grouped(self, items, blog):
        result = await items("articles").read_by_query(
            Query(aggregate={"sum": ["rating"]}, group=["status"], sort=["status"])
        )
        assert result == [
            {"status": "draft", "sum": {"rating": 3}},
            {"status": "published", "sum": {"rating": 6}},
        ]


# =============================================================================
# Soft delete
# =============================================================================


class TestSoftDeleteReads:
    async def test_deleted_rows_hidden(self, items, blog):
        articles = items("articles")
        await articles.delete_one(blog["articles"][0])

        result = await articles.read_by_query(Query(fields=["title"], sort=["id"]))
        assert [a["title"] for a in result] == ["Second", "Third"]

    async def test_show_soft_delete(self, items, blog):
        articles = items("articles")
        await articles.delete_one(blog["articles"][0])

        result = await articles.read_by_query(Query(fields=["title"], show_soft_delete=True))
        assert len(result) == 3

    async def test_or_filter_keeps_deleted_rows_hidden(self, items, blog):
        articles = items("articles")
        await articles.delete_one(blog["articles"][0])

        result = await articles.read_by_query(
            Query(
                fields=["title"],
                filter={"_or": [{"status": {"_eq": "published"}}, {"rating": {"_gt": 2}}]},
                sort=["id"],
            )
        )
        assert [a["title"] for a in result] == ["Second", "Third"]

    async def test_deleted_rows_hidden_in_nested_reads(self, items, blog):
        await items("articles").delete_one(blog["articles"][1])
        author = await items("authors").read_one(blog["ann"], Query(fields=["articles.title"]))
        assert author["articles"] == [{"title": "First"}]


# =============================================================================
# Permissions
# =============================================================================


class TestPermissionReads:
    async def test_rows_filtered_by_permission(self, items, blog, make_role):
        role = make_role(
            Permission(
                collection="articles",
                action="read",
                permissions={"status": {"_eq": "published"}},
                fields=["id", "title"],
            )
        )
        result = await items("articles", role).read_by_query(Query(fields=["*"], sort=["id"]))
        assert result == [
            {"id": blog["articles"][0], "title": "First"},
            {"id": blog["articles"][2], "title": "Third"},
        ]

    async def test_caller_filter_is_intersected(self, items, blog, make_role):
        role = make_role(
            Permission(collection="articles", action="read", permissions={"status": {"_eq": "published"}})
        )
        result = await items("articles", role).read_by_query(
            Query(fields=["title"], filter={"status": {"_neq": "published"}})
        )
        assert result == []

    async def test_filtered_out_item_is_forbidden(self, items, blog, make_role):
        role = make_role(
            Permission(collection="articles", action="read", permissions={"status": {"_eq": "published"}})
        )
        with pytest.raises(ForbiddenException):
            await items("articles", role).read_one(blog["articles"][1])

    async def test_no_permission(self, items, blog, make_role):
        with pytest.raises(ForbiddenException):
            await items("authors", make_role()).read_by_query()


# =============================================================================
# Hooks
# =============================================================================


class TestReadHooks:
    async def test_filter_hook_can_rewrite_results(self, items, blog, emitter):
        async def redact(records, meta, context):
            return [{**r, "title": r["title"].upper()} for r in records]

        emitter.on_filter("items.read", redact)
        result = await items("articles").read_by_query(Query(fields=["title"], sort=["id"], limit=1))
        assert result == [{"title": "FIRST"}]


# =============================================================================
# Meta
# =============================================================================


class TestMetaService:
    async def test_counts(self, engine, schema, settings, items, blog):
        meta = await MetaService(schema=schema, db=engine, settings=settings).get_meta_for_query(
            "articles", Query(filter={"status": {"_eq": "published"}}, meta=["total_count", "filter_count"])
        )
        assert meta.total_count == 3
        assert meta.filter_count == 2

    async def test_soft_deleted_rows_not_counted(self, engine, schema, settings, items, blog):
        await items("articles").delete_one(blog["articles"][0])
        meta = await MetaService(schema=schema, db=engine, settings=settings).get_meta_for_query(
            "articles", Query(meta=["total_count"])
        )
        assert meta.total_count == 2

    async def test_nothing_requested(self, engine, schema, settings):
        meta = await MetaService(schema=schema, db=engine, settings=settings).get_meta_for_query(
            "articles", Query()
        )
        assert meta is None
