"""
Tests for query validation and request-query sanitizing.
"""

import pytest

from itemgraph.config import Settings
from itemgraph.core.errors import InvalidQueryException
from itemgraph.core.query_types import META_KEYS, Query
from itemgraph.core.validator import QueryValidator, sanitize_query


class TestQueryValidator:
    def test_valid_query(self, schema):
        query = Query(
            fields=["id", "title"],
            filter={"_or": [{"status": {"_eq": "published"}}, {"author": {"name": {"_contains": "An"}}}]},
            sort=["-rating", "author.name"],
            limit=10,
        )
        assert QueryValidator(schema).validate("articles", query) == []

    def test_unknown_collection(self, schema):
        assert QueryValidator(schema).validate("missing", Query()) == ["Collection 'missing' not found"]

    def test_unknown_filter_field(self, schema):
        errors = QueryValidator(schema).validate_filter("articles", {"nope": {"_eq": 1}})
        assert errors == ["articles: field 'nope' not found"]

    def test_unknown_operator(self, schema):
        errors = QueryValidator(schema).validate_filter("articles", {"title": {"_like": "x"}})
        assert errors and "not supported" in errors[0]

    def test_string_operator_on_number(self, schema):
        errors = QueryValidator(schema).validate_filter("articles", {"rating": {"_contains": "1"}})
        assert errors and "can't be used on integer" in errors[0]

    def test_range_operator_on_boolean(self, schema):
        errors = QueryValidator(schema).validate_filter("articles", {"published": {"_gt": True}})
        assert errors and "can't be used on boolean" in errors[0]

    def test_list_operator_needs_list(self, schema):
        errors = QueryValidator(schema).validate_filter("articles", {"id": {"_in": 1}})
        assert errors == ["articles: operator '_in' on 'id' expects a list"]

    def test_filter_through_o2m_quantifier(self, schema):
        rule = {"comments": {"_some": {"body": {"_icontains": "great"}}}}
        assert QueryValidator(schema).validate_filter("articles", rule) == []

    def test_nested_error_has_path(self, schema):
        errors = QueryValidator(schema).validate_filter("articles", {"author": {"nickname": {"_eq": "x"}}})
        assert len(errors) == 1
        assert "field 'nickname' not found" in errors[0]

    def test_filter_on_plain_field_as_relation(self, schema):
        errors = QueryValidator(schema).validate_filter("articles", {"title": {"name": {"_eq": "x"}}})
        assert errors == ["articles: field 'title' is not a relation"]

    def test_sort_through_o2m_rejected(self, schema):
        errors = QueryValidator(schema).validate("articles", Query(sort=["comments.body"]))
        assert errors and "many-to-one" in errors[0]

    def test_bad_paging(self, schema):
        errors = QueryValidator(schema).validate("articles", Query(limit=-2, offset=-1, page=0))
        assert len(errors) == 3

    def test_aggregate_and_group(self, schema):
        validator = QueryValidator(schema)
        assert validator.validate("articles", Query(aggregate={"count": ["*"]}, group=["status"])) == []
        errors = validator.validate("articles", Query(aggregate={"median": ["rating"]}, group=["comments"]))
        assert len(errors) == 2


class TestSanitizeQuery:
    def test_comma_separated_and_json_strings(self):
        query = sanitize_query(
            {
                "fields": "id,title, author.name",
                "filter": '{"status": {"_eq": "published"}}',
                "sort": "-rating",
                "limit": "10",
                "deep": '{"comments": {"_limit": 2}}',
            }
        )
        assert query.fields == ["id", "title", "author.name"]
        assert query.filter == {"status": {"_eq": "published"}}
        assert query.sort == ["-rating"]
        assert query.limit == 10
        assert query.deep == {"comments": {"_limit": 2}}

    def test_meta_star(self):
        assert sanitize_query({"meta": "*"}).meta == list(META_KEYS)

    def test_show_soft_delete_flag(self):
        assert sanitize_query({"showSoftDelete": "true"}).show_soft_delete is True

    def test_default_limit_from_settings(self):
        query = sanitize_query({}, Settings(query_limit_default=25))
        assert query.limit == 25

    def test_bad_number(self):
        with pytest.raises(InvalidQueryException):
            sanitize_query({"limit": "ten"})

    def test_bad_json(self):
        with pytest.raises(InvalidQueryException):
            sanitize_query({"filter": "{not json"})
