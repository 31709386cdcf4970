"""OAuth2 lifecycle for the accounting API.

Everything that needs an access token goes through :class:`TokenManager`:

1. ``get_access_token`` returns the cached token while it is outside the
   expiry margin and refreshes otherwise.
2. Refreshes are single-flight. Refresh tokens can be single-use depending on
   the client configuration, so two concurrent refresh calls could invalidate
   the session. One ``asyncio.Lock`` serializes them and callers re-check the
   cache after acquiring it.
3. A rejected refresh token raises ``AuthError(code="refresh_denied")``. This
   is terminal: the operator must reconnect.

Connecting takes one value that may be either a refresh token or a fresh
grant code (both look alike). ``connect`` treats it as a refresh token first
and only on rejection exchanges it as a grant code. The reverse order would
burn a one-shot grant code on a failed exchange attempt.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from booksync.config import resolve_datacenter, settings
from booksync.services.credential_store import CredentialStore, StoredCredentials
from booksync.services.errors import AuthError, NetworkError
from booksync.utils.logger import connection_log, logger


DEFAULT_EXPIRES_IN_SECONDS = 3600

GRANT_CODE_PATTERN = re.compile(r"^1000\.[a-f0-9]{32}\.[a-f0-9]{32,}$", re.IGNORECASE)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _token_hash(token: Optional[str]) -> str:
    if not token:
        return "empty"
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def looks_like_grant_code(value: str) -> bool:
    return bool(GRANT_CODE_PATTERN.match((value or "").strip()))


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


@dataclass
class ConnectResult:
    mode: str  # "refresh_token" or "grant_code"
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode, "expires_at": self.expires_at.isoformat()}


class TokenManager:
    def __init__(
        self,
        store: CredentialStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        margin_seconds: Optional[int] = None,
    ):
        self.store = store
        self._transport = transport
        self._margin = timedelta(
            seconds=settings.TOKEN_EXPIRY_MARGIN_SECONDS if margin_seconds is None else margin_seconds
        )
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Credential state
    # ------------------------------------------------------------------
    def has_credentials(self) -> bool:
        return self.store.load().is_complete

    def save_credentials(self, client_id: str, client_secret: str, refresh_token: str, datacenter: Optional[str] = None) -> None:
        self.store.save_credentials(client_id, client_secret, refresh_token, datacenter)

    def save_access_token(self, token: str, expires_in_seconds: int) -> datetime:
        expires_at = _now_utc() + timedelta(seconds=int(expires_in_seconds))
        self.store.save_access_token(token, expires_at)
        return expires_at

    def clear_tokens(self) -> None:
        self.store.clear_tokens()

    def _is_fresh(self, creds: StoredCredentials) -> bool:
        if not creds.access_token or not creds.access_token_expires_at:
            return False
        return _now_utc() < creds.access_token_expires_at - self._margin

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------
    async def get_access_token(self) -> str:
        creds = self.store.load()
        if self._is_fresh(creds):
            return creds.access_token

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited.
            creds = self.store.load()
            if self._is_fresh(creds):
                return creds.access_token
            return await self._refresh_locked(creds)

    async def refresh_access_token(self) -> str:
        async with self._refresh_lock:
            return await self._refresh_locked(self.store.load())

    async def force_refresh(self, stale_token: Optional[str]) -> str:
        """Refresh after the API rejected ``stale_token``.

        If a concurrent caller already swapped the token, the new one is
        returned without another refresh call.
        """
        async with self._refresh_lock:
            creds = self.store.load()
            if creds.access_token and creds.access_token != stale_token and self._is_fresh(creds):
                return creds.access_token
            return await self._refresh_locked(creds)

    async def _refresh_locked(self, creds: StoredCredentials) -> str:
        if not creds.is_complete:
            raise AuthError("Accounting connection is not configured", code="not_configured")

        try:
            grant = await self._token_request(
                creds.datacenter,
                {
                    "grant_type": "refresh_token",
                    "client_id": creds.client_id,
                    "client_secret": creds.client_secret,
                    "refresh_token": creds.refresh_token,
                },
                operation="refresh_token",
            )
        except AuthError as exc:
            self.store.record_refresh_error(exc.message)
            raise

        self.save_access_token(grant.access_token, grant.expires_in)
        logger.info("[token_manager] access token refreshed token_hash=%s", _token_hash(grant.access_token))
        return grant.access_token

    # ------------------------------------------------------------------
    # Grant codes and connecting
    # ------------------------------------------------------------------
    async def exchange_grant_code(self, client_id: str, client_secret: str, code: str, datacenter: str) -> TokenGrant:
        """One-shot exchange. Grant codes expire within minutes; use immediately."""
        grant = await self._token_request(
            datacenter,
            {
                "grant_type": "authorization_code",
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code.strip(),
            },
            operation="exchange_grant_code",
            denied_code="invalid_grant",
        )
        if not grant.refresh_token:
            raise AuthError(
                "No refresh token received. Ensure the grant code was generated with offline access.",
                code="missing_refresh_token",
            )
        return grant

    async def connect(self, client_id: str, client_secret: str, code_or_refresh_token: str, datacenter: str) -> ConnectResult:
        resolve_datacenter(datacenter)
        value = code_or_refresh_token.strip()

        try:
            grant = await self._try_refresh(client_id, client_secret, value, datacenter)
            refresh_token = value
            mode = "refresh_token"
        except AuthError as refresh_error:
            if not looks_like_grant_code(value):
                raise AuthError(
                    "The value was rejected as a refresh token and is not a grant code. Generate a new grant code.",
                    code="invalid_credentials",
                ) from refresh_error
            logger.info("[token_manager] refresh rejected, exchanging value as grant code")
            grant = await self._exchange_as_grant_code(client_id, client_secret, value, datacenter)
            refresh_token = grant.refresh_token
            mode = "grant_code"

        self.store.save_credentials(client_id, client_secret, refresh_token, datacenter)
        expires_at = self.save_access_token(grant.access_token, grant.expires_in)
        logger.info("[token_manager] connected mode=%s datacenter=%s", mode, datacenter)
        return ConnectResult(mode=mode, expires_at=expires_at)

    async def _try_refresh(self, client_id: str, client_secret: str, refresh_token: str, datacenter: str) -> TokenGrant:
        return await self._token_request(
            datacenter,
            {
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
            operation="connect_try_refresh",
        )

    async def _exchange_as_grant_code(self, client_id: str, client_secret: str, code: str, datacenter: str) -> TokenGrant:
        return await self.exchange_grant_code(client_id, client_secret, code, datacenter)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    async def _token_request(
        self,
        datacenter: str,
        params: Dict[str, str],
        *,
        operation: str,
        denied_code: str = "refresh_denied",
    ) -> TokenGrant:
        _, accounts_base = resolve_datacenter(datacenter)
        url = f"{accounts_base}/oauth/v2/token"
        timeout = httpx.Timeout(settings.BOOKS_HTTP_TIMEOUT_SECONDS, connect=settings.BOOKS_HTTP_CONNECT_TIMEOUT_SECONDS)

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, params=params)
        except httpx.RequestError as exc:
            connection_log.log_event(operation, f"POST {url}", request_data=params, status="error", error=str(exc))
            raise NetworkError(f"Could not reach the OAuth server: {exc}", code="network_error") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        error = payload.get("error") if isinstance(payload, dict) else None
        if response.status_code >= 500:
            connection_log.log_event(operation, f"POST {url}", request_data=params, status="error", error=f"HTTP {response.status_code}")
            raise NetworkError(f"OAuth server error HTTP {response.status_code}", status_code=response.status_code)
        if error or response.status_code >= 400 or not payload.get("access_token"):
            reason = error or f"HTTP {response.status_code}"
            connection_log.log_event(operation, f"POST {url}", request_data=params, status="error", error=reason)
            raise AuthError(
                f"OAuth server rejected the request: {reason}",
                code=denied_code,
                status_code=response.status_code,
            )

        connection_log.log_event(operation, f"POST {url}", request_data=params, status="success")
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS),
        )
