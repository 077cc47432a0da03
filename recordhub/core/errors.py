"""
Error taxonomy for the record service.

Every error raised by the query engine or the write path is a
``RecordHubError``.  The API layer renders it with ``to_body()`` into the
uniform envelope::

    {"error": {"statusCode": 404, "name": "NotFoundError",
               "message": "...", "code": "ENTITY-NOT-FOUND",
               "status": 404, "details": [...]}}
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ErrorDetail:
    """One entry of the ``details`` array."""
    code: str
    message: str
    info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "info": self.info}


class RecordHubError(Exception):
    status_code = 500
    name = "InternalServerError"

    def __init__(
        self,
        message: str,
        code: str,
        details: list[ErrorDetail] | None = None,
        *,
        name: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or []
        if name is not None:
            self.name = name

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "statusCode": self.status_code,
            "name": self.name,
            "message": self.message,
            "code": self.code,
            "status": self.status_code,
        }
        if self.details:
            body["details"] = [d.to_dict() for d in self.details]
        return {"error": body}


# ── 400 ─────────────────────────────────────────────────


class BadRequestError(RecordHubError):
    status_code = 400
    name = "BadRequestError"


class FilterParseError(BadRequestError):
    """Raised for a filter / set expression the parser cannot accept."""
    name = "InvalidFilterError"

    def __init__(self, message: str, code: str = "INVALID-FILTER"):
        super().__init__(message, code)


# ── 404 ─────────────────────────────────────────────────


class NotFoundError(RecordHubError):
    status_code = 404
    name = "NotFoundError"


# ── 409 / 422 / 429 ─────────────────────────────────────


class UniquenessViolationError(RecordHubError):
    status_code = 409
    name = "DataUniquenessViolationError"


class ValidationError(RecordHubError):
    status_code = 422
    name = "ValidationError"


class InvalidKindError(ValidationError):
    name = "InvalidKindError"


class ImmutableKindError(ValidationError):
    name = "ImmutableKindError"


class ImmutableFieldError(ValidationError):
    """A fixed reference field (``_entityId``, ``_listId``) was changed."""


class LimitExceededError(RecordHubError):
    status_code = 429
    name = "LimitExceededError"
