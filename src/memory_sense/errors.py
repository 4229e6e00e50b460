"""Exception hierarchy for MemorySense."""

from __future__ import annotations

from typing import Any


class MemorySenseError(Exception):
    """Base class for all MemorySense errors."""

    code = "MEMORY_SENSE_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for CLI / API output."""
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(MemorySenseError):
    """A referenced entity or record does not exist for the tenant."""

    code = "NOT_FOUND"


class InvalidFilterError(MemorySenseError):
    """A filter or path expression is malformed."""

    code = "INVALID_FILTER"


class InvalidEntitySpecError(MemorySenseError):
    """An entity field spec ('type' or 'type:threshold') is malformed."""

    code = "INVALID_ENTITY_SPEC"


class ServiceUnavailableError(MemorySenseError):
    """A required collaborator (embedding function, LLM) is not configured."""

    code = "SERVICE_UNAVAILABLE"


class UpstreamFailureError(MemorySenseError):
    """The embedding provider or LLM failed."""

    code = "UPSTREAM_FAILURE"


class QueryError(MemorySenseError):
    """A database error raised while evaluating a query.

    Carries the query parameters so callers can log or retry.
    """

    code = "QUERY_ERROR"

    def __init__(self, message: str, *, params: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={"params": params or {}})
        self.params = params or {}
