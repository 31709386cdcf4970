from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from booksync.models.sync import (
    BulkSyncRequest,
    GeneralSettings,
    InternalTickRequest,
    NotificationSettings,
    RetryPolicy,
    RetryTickResponse,
    SyncOrderRequest,
    SyncState,
    SyncTriggers,
)
from booksync.services.runtime import SyncRuntime, get_runtime
from booksync.routers.common import check_internal_api_key
from booksync.utils.logger import logger


router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/orders/{order_id}")
async def sync_order(
    order_id: str,
    payload: SyncOrderRequest = SyncOrderRequest(),
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Manual "sync now" / "sync as draft". Bypasses the status triggers."""
    result = await runtime.engine.sync_order(order_id, payload.as_draft)
    return result.to_dict()


@router.post("/orders/{order_id}/payment")
async def apply_payment(order_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    result = await runtime.engine.apply_payment(order_id)
    return result.to_dict()


@router.post("/orders/{order_id}/refunds")
async def process_refunds(order_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    result = await runtime.engine.process_refunds(order_id)
    return result.to_dict()


@router.post("/orders/{order_id}/void")
async def void_invoice(order_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    result = await runtime.engine.void_invoice(order_id)
    return result.to_dict()


@router.get("/orders/{order_id}/status", response_model=SyncState)
async def get_sync_status(order_id: str, runtime: SyncRuntime = Depends(get_runtime)):
    return runtime.engine.get_sync_status(order_id)


@router.get("/summary")
async def sync_summary(runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, int]:
    return runtime.state_repo.counts_by_status()


@router.post("/bulk")
async def bulk_sync(payload: BulkSyncRequest, runtime: SyncRuntime = Depends(get_runtime)):
    """Run a bulk sync and stream progress as Server-Sent Events.

    The first event (``started``) carries the ``job_id`` needed to cancel.
    """
    if payload.order_ids:
        job = runtime.bulk.create_job(payload.order_ids, payload.as_draft)
    elif payload.date_from or payload.date_to:
        job = runtime.bulk.create_job_for_range(
            payload.date_from,
            payload.date_to,
            payload.statuses,
            payload.as_draft,
            payload.limit,
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide order_ids or a date range",
        )

    async def event_generator():
        async for event in runtime.bulk.run(job):
            yield f"event: {event['event']}\n"
            yield f"data: {json.dumps(event, default=str)}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/bulk/{job_id}/cancel")
async def cancel_bulk_sync(job_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    if not runtime.bulk.cancel(job_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="bulk_job_not_found")
    return {"success": True, "job_id": job_id}


@router.post("/internal/retry-tick", response_model=RetryTickResponse)
async def internal_retry_tick(payload: InternalTickRequest, runtime: SyncRuntime = Depends(get_runtime)):
    """Entry point for the retry worker. Requires the shared INTERNAL_API_KEY."""
    check_internal_api_key(payload.internal_api_key)
    try:
        result = await runtime.retry_scheduler.run_tick()
    except Exception as e:
        logger.error("Retry tick failed: %s", e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"retry_tick_failed: {str(e)}",
        )
    return RetryTickResponse(**result.to_dict())


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------
@router.get("/settings/retry-policy", response_model=RetryPolicy)
async def get_retry_policy(runtime: SyncRuntime = Depends(get_runtime)):
    return runtime.settings_service.get_retry_policy()


@router.put("/settings/retry-policy", response_model=RetryPolicy)
async def update_retry_policy(payload: RetryPolicy, runtime: SyncRuntime = Depends(get_runtime)):
    runtime.settings_service.set_retry_policy(payload)
    return payload


@router.get("/settings/triggers", response_model=SyncTriggers)
async def get_triggers(runtime: SyncRuntime = Depends(get_runtime)):
    return runtime.settings_service.get_triggers()


@router.put("/settings/triggers", response_model=SyncTriggers)
async def update_triggers(payload: SyncTriggers, runtime: SyncRuntime = Depends(get_runtime)):
    runtime.settings_service.set_triggers(payload)
    return payload


@router.get("/settings/general", response_model=GeneralSettings)
async def get_general(runtime: SyncRuntime = Depends(get_runtime)):
    return runtime.settings_service.get_general()


@router.put("/settings/general", response_model=GeneralSettings)
async def update_general(payload: GeneralSettings, runtime: SyncRuntime = Depends(get_runtime)):
    runtime.settings_service.set_general(payload)
    return payload


@router.get("/settings/notifications", response_model=NotificationSettings)
async def get_notification_settings(runtime: SyncRuntime = Depends(get_runtime)):
    return runtime.settings_service.get_notifications()


@router.put("/settings/notifications", response_model=NotificationSettings)
async def update_notification_settings(payload: NotificationSettings, runtime: SyncRuntime = Depends(get_runtime)):
    runtime.settings_service.set_notifications(payload)
    return payload
