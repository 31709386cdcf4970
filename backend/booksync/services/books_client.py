"""Authenticated HTTP client for the accounting API.

Callers describe a call as an :class:`Operation` (see ``books_operations``)
or use :meth:`BooksClient.raw_request` for endpoints without one. Both paths
share the same behaviour:

- a fresh access token from :class:`TokenManager` on every call;
- on 401, one forced refresh and one retry; a second 401 raises ``AuthError``;
- on 429, bounded exponential backoff, then ``RateLimitError``;
- responses are normalized into the error taxonomy in ``errors.py``.

The client never writes sync state; it only returns payloads or raises.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from booksync.config import resolve_datacenter, settings
from booksync.services.errors import AuthError, NetworkError, NotFoundError, RateLimitError, ValidationError
from booksync.services.rate_limiter import RateLimiter
from booksync.services.token_manager import TokenManager
from booksync.utils.logger import ConnectionEventLog, connection_log, logger


API_PREFIX = "/books/v3"


@dataclass(frozen=True)
class Operation:
    name: str
    method: str
    path: str
    params: Optional[Dict[str, Any]] = None
    body: Optional[Dict[str, Any]] = None
    # Key of the entity inside the response envelope, e.g. "invoice".
    result_key: Optional[str] = None


class BooksClient:
    def __init__(
        self,
        token_manager: TokenManager,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_rate_limit_retries: Optional[int] = None,
        rate_limit_base_delay: Optional[float] = None,
        event_log: ConnectionEventLog = connection_log,
    ):
        self.token_manager = token_manager
        self._transport = transport
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.BOOKS_RATE_LIMIT_PER_MINUTE,
            settings.BOOKS_RATE_LIMIT_MAX_WAIT_SECONDS,
        )
        self._sleep = sleep
        self.max_rate_limit_retries = (
            settings.BOOKS_MAX_RATE_LIMIT_RETRIES if max_rate_limit_retries is None else max_rate_limit_retries
        )
        self.rate_limit_base_delay = (
            settings.BOOKS_RATE_LIMIT_BASE_DELAY_SECONDS if rate_limit_base_delay is None else rate_limit_base_delay
        )
        self.event_log = event_log

    async def request(self, operation: Operation, context: Optional[Dict[str, Any]] = None) -> Any:
        payload = await self._execute(
            operation.name,
            operation.method,
            operation.path,
            params=operation.params,
            body=operation.body,
            context=context,
        )
        if operation.result_key:
            return payload.get(operation.result_key)
        return payload

    async def raw_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self._execute(f"raw {path}", method, path, params=params, body=body, context=context)

    async def _execute(
        self,
        name: str,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]],
        body: Optional[Dict[str, Any]],
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        creds = self.token_manager.store.load()
        api_base, _ = resolve_datacenter(creds.datacenter)
        url = f"{api_base}{API_PREFIX}{path}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if creds.organization_id and "organization_id" not in query:
            query["organization_id"] = creds.organization_id

        token = await self.token_manager.get_access_token()
        auth_retried = False
        rate_attempts = 0

        while True:
            await self.rate_limiter.acquire(name)
            response = await self._send(method, url, query, body, token, name, context)

            if response.status_code == 401:
                if auth_retried:
                    self._log(name, method, path, context, response.status_code, "unauthorized after refresh")
                    raise AuthError("Accounting API rejected the refreshed access token", code="unauthorized", status_code=401)
                auth_retried = True
                logger.info("[books_client] 401 on %s, refreshing token and retrying once", name)
                token = await self.token_manager.force_refresh(token)
                continue

            if response.status_code == 429:
                if rate_attempts >= self.max_rate_limit_retries:
                    self._log(name, method, path, context, 429, "rate limit retries exhausted")
                    raise RateLimitError(
                        f"Accounting API rate limit hit {rate_attempts + 1} times for {name}",
                        code="rate_limited",
                        status_code=429,
                    )
                delay = self._backoff_delay(response, rate_attempts)
                rate_attempts += 1
                logger.warning("[books_client] 429 on %s, backing off %.1fs (attempt %s)", name, delay, rate_attempts)
                await self._sleep(delay)
                continue

            return self._parse(response, name, method, path, context)

    async def _send(
        self,
        method: str,
        url: str,
        query: Dict[str, Any],
        body: Optional[Dict[str, Any]],
        token: str,
        name: str,
        context: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        headers = {"Authorization": f"Zoho-oauthtoken {token}"}
        timeout = httpx.Timeout(settings.BOOKS_HTTP_TIMEOUT_SECONDS, connect=settings.BOOKS_HTTP_CONNECT_TIMEOUT_SECONDS)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                return await client.request(method, url, params=query, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            self._log(name, method, url, context, None, f"timeout: {exc}")
            raise NetworkError(f"Timed out calling {name}", code="timeout") from exc
        except httpx.RequestError as exc:
            self._log(name, method, url, context, None, f"request error: {exc}")
            raise NetworkError(f"Could not reach the accounting API: {exc}", code="connection_error") from exc

    def _backoff_delay(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        return self.rate_limit_base_delay * (2 ** attempt)

    def _parse(
        self,
        response: httpx.Response,
        name: str,
        method: str,
        path: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        status = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        message = payload.get("message") or f"HTTP {status}"
        remote_code = payload.get("code")

        if status >= 500:
            self._log(name, method, path, context, status, message)
            raise NetworkError(f"Accounting API error on {name}: {message}", code="server_error", status_code=status)
        if status == 404:
            self._log(name, method, path, context, status, message)
            raise NotFoundError(message, code=str(remote_code) if remote_code is not None else "not_found", status_code=404)
        if status >= 400 or remote_code not in (0, None):
            self._log(name, method, path, context, status, message)
            raise ValidationError(
                message,
                code=str(remote_code) if remote_code is not None else None,
                status_code=status,
                details={"operation": name},
            )

        self._log(name, method, path, context, status, None)
        return payload

    def _log(
        self,
        name: str,
        method: str,
        path: str,
        context: Optional[Dict[str, Any]],
        status: Optional[int],
        error: Optional[str],
    ) -> None:
        self.event_log.log_event(
            name,
            f"{method} {path} -> {status if status is not None else 'no response'}",
            context=context,
            status="error" if error else "success",
            error=error,
        )
