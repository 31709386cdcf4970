from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, status

from booksync.config import settings
from booksync.services.errors import (
    AuthError,
    BooksSyncError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)


_STATUS_BY_ERROR = (
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (NetworkError, status.HTTP_502_BAD_GATEWAY),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
)


def http_status_for(exc: BooksSyncError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_http(exc: BooksSyncError) -> NoReturn:
    raise HTTPException(status_code=http_status_for(exc), detail=exc.to_dict()) from exc


def check_internal_api_key(provided: str) -> None:
    expected_key = settings.INTERNAL_API_KEY or ""
    if not expected_key or provided != expected_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid_internal_api_key",
        )
