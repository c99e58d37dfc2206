"""
Tests for filter helpers: conjunction, soft-delete merging, dynamic
variables, in-memory validation and deep splitting.
"""

import pytest

from itemgraph.core.filters import (
    and_filters,
    is_operator_map,
    matches,
    merge_soft_delete_filter,
    parse_filter,
    split_deep,
    validate_payload,
)
from itemgraph.runtime.context import Accountability


# =============================================================================
# Conjunction
# =============================================================================


class TestAndFilters:
    def test_all_empty_is_none(self):
        assert and_filters(None, {}, None) is None

    def test_single_filter_is_returned_as_is(self):
        f = {"status": {"_eq": "published"}}
        assert and_filters(None, f) is f

    def test_several_filters_are_wrapped(self):
        a = {"status": {"_eq": "published"}}
        b = {"rating": {"_gt": 3}}
        assert and_filters(a, b) == {"_and": [a, b]}


class TestIsOperatorMap:
    def test_operator_map(self):
        assert is_operator_map({"_eq": 1, "_neq": 2})

    def test_nested_field_map(self):
        assert not is_operator_map({"name": {"_eq": "x"}})

    def test_empty(self):
        assert not is_operator_map({})


# =============================================================================
# Soft delete
# =============================================================================


class TestMergeSoftDeleteFilter:
    def test_no_filter(self):
        assert merge_soft_delete_filter(None, "deleted_at") == {"deleted_at": {"_null": True}}

    def test_field_filter_gets_clause_added(self):
        result = merge_soft_delete_filter({"status": {"_eq": "draft"}}, "deleted_at")
        assert result == {"status": {"_eq": "draft"}, "deleted_at": {"_null": True}}

    def test_and_root_is_extended(self):
        a = {"status": {"_eq": "draft"}}
        result = merge_soft_delete_filter({"_and": [a]}, "deleted_at")
        assert result == {"_and": [a, {"deleted_at": {"_null": True}}]}

    def test_or_root_is_wrapped_not_extended(self):
        """The clause must constrain every branch, not become another alternative."""
        original = {"_or": [{"status": {"_eq": "draft"}}, {"rating": {"_gt": 3}}]}
        result = merge_soft_delete_filter(original, "deleted_at")
        assert result == {"_and": [original, {"deleted_at": {"_null": True}}]}

    def test_existing_clause_on_same_field_is_kept(self):
        original = {"deleted_at": {"_nnull": True}}
        result = merge_soft_delete_filter(original, "deleted_at")
        assert result == {"_and": [original, {"deleted_at": {"_null": True}}]}


# =============================================================================
# Dynamic variables
# =============================================================================


class TestParseFilter:
    def test_none(self):
        assert parse_filter(None) is None

    def test_current_user_and_role(self):
        accountability = Accountability(user="u-7", role="editor")
        result = parse_filter(
            {"_or": [{"owner": {"_eq": "$CURRENT_USER"}}, {"role": {"_in": ["$CURRENT_ROLE"]}}]},
            accountability,
        )
        assert result == {"_or": [{"owner": {"_eq": "u-7"}}, {"role": {"_in": ["editor"]}}]}

    def test_now_is_an_iso_timestamp(self):
        result = parse_filter({"publish_at": {"_lte": "$NOW"}})
        assert "T" in result["publish_at"]["_lte"]

    def test_without_accountability_user_is_none(self):
        assert parse_filter({"owner": {"_eq": "$CURRENT_USER"}}) == {"owner": {"_eq": None}}


# =============================================================================
# In-memory evaluation
# =============================================================================


class TestMatches:
    @pytest.mark.parametrize(
        "op,actual,expected,result",
        [
            ("_eq", 1, 1, True),
            ("_neq", 1, 1, False),
            ("_null", None, True, True),
            ("_nnull", None, True, False),
            ("_in", "a", ["a", "b"], True),
            ("_nin", "a", ["a", "b"], False),
            ("_gt", 5, 3, True),
            ("_lte", 3, 3, True),
            ("_between", 5, [1, 10], True),
            ("_nbetween", 5, [1, 10], False),
            ("_contains", "hello world", "world", True),
            ("_icontains", "Hello", "hell", True),
            ("_starts_with", "hello", "he", True),
            ("_ends_with", "hello", "lo", True),
            ("_empty", "", True, True),
        ],
    )
    def test_operators(self, op, actual, expected, result):
        assert matches(op, actual, expected) is result

    def test_range_on_null_is_false(self):
        assert matches("_gt", None, 1) is False

    def test_incomparable_types_are_false(self):
        assert matches("_lt", "a", 1) is False

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            matches("_regex", "a", "a")


class TestValidatePayload:
    def test_passing_payload(self):
        assert validate_payload({"rating": {"_gte": 1, "_lte": 5}}, {"rating": 3}) == []

    def test_failing_field(self):
        errors = validate_payload({"rating": {"_lte": 5}}, {"rating": 9})
        assert len(errors) == 1
        assert "rating" in errors[0]

    def test_or_needs_one_branch(self):
        rule = {"_or": [{"status": {"_eq": "draft"}}, {"status": {"_eq": "review"}}]}
        assert validate_payload(rule, {"status": "review"}) == []
        assert validate_payload(rule, {"status": "published"})

    def test_and_collects_every_failure(self):
        rule = {"_and": [{"rating": {"_gt": 0}}, {"title": {"_nnull": True}}]}
        assert len(validate_payload(rule, {"rating": 0, "title": None})) == 2

    def test_nested_object(self):
        rule = {"author": {"name": {"_eq": "Ann"}}}
        assert validate_payload(rule, {"author": {"name": "Ann"}}) == []
        assert validate_payload(rule, {"author": {"name": "Bob"}})


# =============================================================================
# Deep
# =============================================================================


class TestSplitDeep:
    def test_params_and_nested(self):
        params, nested = split_deep({"_limit": 5, "_filter": {"x": {"_eq": 1}}, "author": {"_limit": 1}})
        assert params == {"limit": 5, "filter": {"x": {"_eq": 1}}}
        assert nested == {"author": {"_limit": 1}}

    def test_relation_named_like_a_param(self):
        """A nested relation called "sort" is still a relation."""
        params, nested = split_deep({"sort": {"_limit": 2}})
        assert params == {}
        assert nested == {"sort": {"_limit": 2}}
