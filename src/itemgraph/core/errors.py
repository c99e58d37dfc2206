"""
Custom exceptions for the itemgraph engine.

Every error a service raises is one of these kinds. Each kind carries a stable
HTTP ``status`` and a machine-readable ``code`` so the boundary layer can render
it without knowing anything about the failure.
"""

from __future__ import annotations

from typing import Any, Optional


class ItemGraphError(Exception):
    """Base exception for all itemgraph errors."""

    status: int = 500
    code: str = "INTERNAL"

    def __init__(self, message: str, extensions: Optional[dict[str, Any]] = None):
        self.message = message
        self.extensions = extensions or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "extensions": {"code": self.code, **self.extensions},
        }


class ForbiddenException(ItemGraphError):
    """
    Raised when the caller may not perform an action.

    Also used for zero-row results on single-item reads, so the caller can't
    tell "does not exist" apart from "not allowed to see".
    """

    status = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "You don't have permission to access this."):
        super().__init__(message)


class InvalidPayloadException(ItemGraphError):
    """Raised when a mutation payload is malformed or not allowed here."""

    status = 400
    code = "INVALID_PAYLOAD"


class InvalidQueryException(ItemGraphError):
    """Raised when a query fails validation."""

    status = 400
    code = "INVALID_QUERY"

    def __init__(self, errors: list[str] | str):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class InvalidForeignKeyException(InvalidPayloadException):
    """Raised when a written value references a missing related row."""

    code = "INVALID_FOREIGN_KEY"

    def __init__(self, field: Optional[str] = None):
        self.field = field
        if field:
            message = f'Invalid foreign key in field "{field}".'
        else:
            message = "Invalid foreign key."
        super().__init__(message, {"field": field})


class NotNullViolationException(InvalidPayloadException):
    """Raised when a NOT NULL column would receive null."""

    code = "NOT_NULL_VIOLATION"

    def __init__(self, field: Optional[str] = None):
        self.field = field
        super().__init__(f'Value for field "{field}" can\'t be null.', {"field": field})


class ValueTooLongException(InvalidPayloadException):
    """Raised when a value exceeds the column's maximum length."""

    code = "VALUE_TOO_LONG"

    def __init__(self, field: Optional[str] = None):
        self.field = field
        super().__init__(f'Value for field "{field}" is too long.', {"field": field})


class RecordNotUniqueException(ItemGraphError):
    """Raised when a value of a unique field already exists."""

    status = 400
    code = "RECORD_NOT_UNIQUE"

    def __init__(self, collection: Optional[str], field: Optional[str]):
        self.collection = collection
        self.field = field
        super().__init__(
            f'Field "{field}" has to be unique.',
            {"collection": collection, "field": field},
        )


class RecordNotUniqueCombinationException(ItemGraphError):
    """Raised for one field of a violated unique combination."""

    status = 400
    code = "RECORD_NOT_UNIQUE_COMBINATION"

    def __init__(self, collection: Optional[str], field: str):
        self.collection = collection
        self.field = field
        super().__init__(
            f'Field "{field}" has to be unique in combination.',
            {"collection": collection, "field": field},
        )


class UniquenessErrors(ItemGraphError):
    """
    Several uniqueness violations raised together.

    Attributes:
        errors: The individual RecordNotUnique* exceptions, one per field
    """

    status = 400

    def __init__(self, errors: list[ItemGraphError]):
        self.errors = errors
        self.code = errors[0].code if errors else RecordNotUniqueException.code
        super().__init__("; ".join(e.message for e in errors))

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "extensions": {
                "code": self.code,
                "errors": [e.to_dict() for e in self.errors],
            },
        }


class ServiceUnavailableException(ItemGraphError):
    """Raised when the database can't serve the request."""

    status = 503
    code = "SERVICE_UNAVAILABLE"
