"""
Typed domain errors for the dispatch and payment services.

Each error maps to an HTTP status code. The application registers a single
handler for ``FieldOpsError`` so route handlers never translate errors
themselves.
"""
from __future__ import annotations


class FieldOpsError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(FieldOpsError):
    """Missing or malformed required input (400)."""

    status_code = 400


class NotFoundError(FieldOpsError):
    """Referenced intervention, attempt or authorization is absent (404)."""

    status_code = 404


class ConcurrencyConflict(FieldOpsError):
    """A conditional update lost against another writer (409)."""

    status_code = 409


class ProviderError(FieldOpsError):
    """The payment provider call failed (502)."""

    status_code = 502
