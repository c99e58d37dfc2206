"""
Tests for the error taxonomy and driver error translation.
"""

import sqlite3

import pytest
from sqlalchemy.exc import DataError, IntegrityError, OperationalError, ProgrammingError

from itemgraph.core.errors import (
    ForbiddenException,
    InvalidForeignKeyException,
    InvalidPayloadException,
    InvalidQueryException,
    NotNullViolationException,
    RecordNotUniqueException,
    ServiceUnavailableException,
    UniquenessErrors,
    ValueTooLongException,
)
from itemgraph.database.errors import translate_database_error


class FakePostgresError(Exception):
    def __init__(self, sqlstate, message, detail=None, column_name=None):
        super().__init__(message)
        self.sqlstate = sqlstate
        self.detail = detail
        self.column_name = column_name


def _wrap(error_class, orig):
    return error_class("INSERT INTO t ...", {}, orig)


class TestErrorShape:
    def test_to_dict(self):
        error = RecordNotUniqueException("authors", "email")
        assert error.status == 400
        assert error.to_dict() == {
            "message": 'Field "email" has to be unique.',
            "extensions": {"code": "RECORD_NOT_UNIQUE", "collection": "authors", "field": "email"},
        }

    def test_forbidden_default_message(self):
        error = ForbiddenException()
        assert error.status == 403
        assert error.to_dict()["extensions"] == {"code": "FORBIDDEN"}

    def test_query_errors_joined(self):
        error = InvalidQueryException(["a", "b"])
        assert error.code == "INVALID_QUERY"
        assert "a" in error.message and "b" in error.message

    def test_uniqueness_errors_nest(self):
        error = UniquenessErrors(
            [RecordNotUniqueException("authors", "email"), RecordNotUniqueException("authors", "name")]
        )
        data = error.to_dict()
        assert data["extensions"]["code"] == "RECORD_NOT_UNIQUE"
        assert [e["extensions"]["field"] for e in data["extensions"]["errors"]] == ["email", "name"]


class TestSQLite:
    def test_unique(self):
        exc = _wrap(IntegrityError, sqlite3.IntegrityError("UNIQUE constraint failed: authors.email"))
        error = translate_database_error(exc, "authors")
        assert isinstance(error, RecordNotUniqueException)
        assert error.collection == "authors"
        assert error.field == "email"

    def test_unique_over_several_columns(self):
        exc = _wrap(IntegrityError, sqlite3.IntegrityError("UNIQUE constraint failed: pages.site, pages.slug"))
        error = translate_database_error(exc, "pages")
        assert error.field == "site"

    def test_not_null(self):
        exc = _wrap(IntegrityError, sqlite3.IntegrityError("NOT NULL constraint failed: order_items.sku"))
        error = translate_database_error(exc)
        assert isinstance(error, NotNullViolationException)
        assert error.extensions["field"] == "sku"

    def test_foreign_key(self):
        exc = _wrap(IntegrityError, sqlite3.IntegrityError("FOREIGN KEY constraint failed"))
        assert isinstance(translate_database_error(exc), InvalidForeignKeyException)

    def test_other_integrity_error(self):
        exc = _wrap(IntegrityError, sqlite3.IntegrityError("CHECK constraint failed: rating"))
        assert type(translate_database_error(exc)) is InvalidPayloadException

    def test_data_error(self):
        exc = _wrap(DataError, sqlite3.DataError("bad value"))
        assert isinstance(translate_database_error(exc), InvalidPayloadException)

    def test_programming_error(self):
        exc = _wrap(ProgrammingError, sqlite3.ProgrammingError("no such column: nope"))
        assert isinstance(translate_database_error(exc), InvalidQueryException)

    def test_operational_error(self):
        exc = _wrap(OperationalError, sqlite3.OperationalError("database is locked"))
        assert isinstance(translate_database_error(exc), ServiceUnavailableException)


class TestPostgres:
    def test_unique_violation(self):
        orig = FakePostgresError(
            "23505",
            "duplicate key value violates unique constraint",
            detail="Key (email)=(a@example.com) already exists.",
        )
        error = translate_database_error(_wrap(IntegrityError, orig), "authors")
        assert isinstance(error, RecordNotUniqueException)
        assert error.field == "email"

    def test_not_null_violation(self):
        orig = FakePostgresError("23502", 'null value in column "sku" violates not-null constraint')
        error = translate_database_error(_wrap(IntegrityError, orig))
        assert isinstance(error, NotNullViolationException)
        assert error.extensions["field"] == "sku"

    def test_foreign_key_violation(self):
        orig = FakePostgresError("23503", "violates foreign key constraint", detail="Key (author)=(9) is not present")
        assert isinstance(translate_database_error(_wrap(IntegrityError, orig)), InvalidForeignKeyException)

    def test_value_too_long(self):
        orig = FakePostgresError("22001", "value too long for type character varying(5)", column_name="code")
        assert isinstance(translate_database_error(_wrap(DataError, orig)), ValueTooLongException)

    @pytest.mark.parametrize(
        "sqlstate,expected",
        [("23514", InvalidPayloadException), ("42703", InvalidQueryException), ("08006", ServiceUnavailableException)],
    )
    def test_classes(self, sqlstate, expected):
        orig = FakePostgresError(sqlstate, "failed")
        assert isinstance(translate_database_error(_wrap(DataError, orig)), expected)


class TestMySQL:
    def test_duplicate_entry(self):
        orig = Exception(1062, "Duplicate entry 'R-1' for key 'orders.reference'")
        error = translate_database_error(_wrap(IntegrityError, orig), "orders")
        assert isinstance(error, RecordNotUniqueException)
        assert error.field == "reference"

    def test_column_cannot_be_null(self):
        orig = Exception(1048, "Column 'sku' cannot be null")
        error = translate_database_error(_wrap(IntegrityError, orig))
        assert isinstance(error, NotNullViolationException)
