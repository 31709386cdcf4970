from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from booksync.models.connection import ConnectionStatus, ConnectionTestResponse, ConnectRequest, ConnectResponse
from booksync.routers.common import raise_http
from booksync.services.errors import BooksSyncError
from booksync.services.runtime import SyncRuntime, get_runtime
from booksync.utils.logger import connection_log, logger


router = APIRouter(prefix="/api/connection", tags=["connection"])


@router.post("/connect", response_model=ConnectResponse)
async def connect(payload: ConnectRequest, runtime: SyncRuntime = Depends(get_runtime)):
    """Store client credentials and obtain tokens.

    ``code`` may be a refresh token or a fresh grant code; the token manager
    tries it as a refresh token first.
    """
    try:
        result = await runtime.token_manager.connect(
            payload.client_id,
            payload.client_secret,
            payload.code,
            payload.datacenter,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except BooksSyncError as exc:
        raise_http(exc)

    if payload.organization_id:
        runtime.credential_store.set_organization_id(payload.organization_id)
    runtime.health.invalidate()
    runtime.catalog.invalidate()

    check = await runtime.health.check()
    logger.info("[connection] connected mode=%s connected=%s", result.mode, check["connected"])
    return ConnectResponse(
        connected=check["connected"],
        mode=result.mode,
        organization_id=check.get("organization_id"),
    )


@router.get("/status", response_model=ConnectionStatus)
async def connection_status(runtime: SyncRuntime = Depends(get_runtime)):
    creds = runtime.credential_store.load()
    return ConnectionStatus(
        configured=creds.is_complete,
        datacenter=creds.datacenter,
        organization_id=creds.organization_id,
        access_token_expires_at=creds.access_token_expires_at,
        last_refreshed_at=creds.last_refreshed_at,
        refresh_error=creds.refresh_error,
    )


@router.post("/test", response_model=ConnectionTestResponse)
async def test_connection(runtime: SyncRuntime = Depends(get_runtime)):
    connected = await runtime.health.test_connection()
    result = runtime.health.last_result
    return ConnectionTestResponse(
        connected=connected,
        organization_id=result.get("organization_id"),
        error=result.get("error"),
    )


@router.delete("/tokens")
async def clear_tokens(runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    runtime.token_manager.clear_tokens()
    runtime.health.invalidate()
    return {"success": True}


@router.get("/logs")
async def connection_logs(limit: Optional[int] = Query(100, ge=1, le=1000)) -> List[Dict[str, Any]]:
    return connection_log.get_logs(limit)
