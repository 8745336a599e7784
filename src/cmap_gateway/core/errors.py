"""Typed failures raised by the gateway.

Every error derives from `GatewayError` so callers can catch the whole family.
None of them are retried internally; all operations are read-only, so a caller
may retry any of them safely.
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway failures."""

    def __init__(self, message: str, *, query: Optional[str] = None):
        self.message = message
        self.query = query
        super().__init__(self.message)


class RemoteUnavailable(GatewayError):
    """Transport or service failure (connection error, 5xx, rejected credentials)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        query: Optional[str] = None,
    ):
        self.status_code = status_code
        super().__init__(message, query=query)


class QueryRejected(GatewayError):
    """The remote service refused the query text itself (4xx other than auth)."""

    def __init__(self, message: str, *, status_code: int, query: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message, query=query)


class UnknownTable(GatewayError):
    """Table name is not present in the catalog or is not a valid identifier."""

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Unknown table: {table}")


class UnknownColumn(GatewayError):
    """Column/variable name is not present for the table or not a valid identifier."""

    def __init__(self, column: str, table: Optional[str] = None):
        self.column = column
        self.table = table
        where = f" in table {table}" if table else ""
        super().__init__(f"Unknown column: {column}{where}")


class InvalidQuerySpec(GatewayError):
    """A selection request cannot be turned into a valid query spec."""


class InvalidRange(InvalidQuerySpec):
    """Reversed bounds (min > max) or a negative tolerance."""

    def __init__(self, message: str, *, axis: Optional[str] = None):
        self.axis = axis
        super().__init__(message)


class ForbiddenStatement(GatewayError):
    """Query text contains a mutating keyword and was not sent."""

    def __init__(self, keyword: str, query: Optional[str] = None):
        self.keyword = keyword
        super().__init__(f"Forbidden statement keyword: {keyword}", query=query)


class MalformedResponse(GatewayError):
    """Remote payload could not be parsed into a consistent table."""


class QueryTimeout(GatewayError):
    """Deadline exceeded between submission and result materialization."""


class QueryCancelled(GatewayError):
    """Caller cancelled the request before the result was materialized."""


__all__ = [
    "GatewayError",
    "RemoteUnavailable",
    "QueryRejected",
    "UnknownTable",
    "UnknownColumn",
    "InvalidQuerySpec",
    "InvalidRange",
    "ForbiddenStatement",
    "MalformedResponse",
    "QueryTimeout",
    "QueryCancelled",
]
