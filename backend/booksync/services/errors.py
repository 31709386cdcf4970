from __future__ import annotations

from typing import Any, Dict, Optional


class BooksSyncError(Exception):
    """Base class for failures talking to, or syncing with, the accounting API.

    ``retryable`` tells the retry scheduler whether the failure may clear up
    on its own (network, rate limit) or needs an operator (credentials,
    mappings, currencies).
    """

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class AuthError(BooksSyncError):
    """Credentials rejected. Terminal until someone reconnects."""


class RateLimitError(BooksSyncError):
    retryable = True


class NetworkError(BooksSyncError):
    """Timeouts, connection failures and 5xx responses."""

    retryable = True


class ValidationError(BooksSyncError):
    """The remote side (or a local business rule) refused the data."""


class NotFoundError(BooksSyncError):
    pass
