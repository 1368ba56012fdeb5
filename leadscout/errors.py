"""Exception types raised by the Apollo pipeline.

Three kinds are distinguished:

- :class:`ApolloAPIError` -- the provider answered with a non-2xx status, or the
  transport failed before an answer arrived (``status_code == 0``).
- :class:`ApolloValidationError` -- parameters were rejected before any call was made.
- :class:`ApolloDatabaseError` -- a store operation failed outside row-level handling.

Row-level outcomes (no match, placeholder email) are not exceptions; they are
reported as error entries by the enrichment engine.
"""
from __future__ import annotations

from typing import Any


class ApolloError(Exception):
    """Base class for pipeline errors."""


class ApolloAPIError(ApolloError):
    def __init__(
        self,
        message: str,
        status_code: int,
        response_body: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.context = context or {}

    @property
    def is_rate_limit(self) -> bool:
        return self.status_code == 429

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    @property
    def retryable(self) -> bool:
        """Server errors and transport failures may succeed on a later run."""
        return self.is_server_error or self.status_code == 0

    def user_message(self) -> str:
        if self.is_rate_limit:
            return "Apollo API rate limit exceeded. Please wait before trying again."
        if self.status_code == 401:
            return "Apollo API authentication failed. Please check your API key."
        if self.status_code == 403:
            return "Apollo API access forbidden. Please check your API permissions."
        if self.is_client_error:
            return f"Apollo API request failed: {self}"
        if self.is_server_error:
            return "Apollo API server error. Please try again later."
        return str(self)

    def __repr__(self) -> str:
        return f"ApolloAPIError(status_code={self.status_code}, message={str(self)!r})"


class ApolloValidationError(ApolloError):
    def __init__(self, message: str, field: str | None = None, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value


class ApolloDatabaseError(ApolloError):
    def __init__(self, message: str, operation: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.operation = operation
        self.context = context or {}
