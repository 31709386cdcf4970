from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from booksync.models.orders import LocalProduct, Order, OrderStatusEvent
from booksync.services.runtime import SyncRuntime, get_runtime


router = APIRouter(prefix="/api/store", tags=["store"])


@router.put("/orders/{order_id}")
async def upsert_order(order_id: str, order: Order, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    if order.id != order_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="order_id_mismatch")
    runtime.order_store.upsert_order(order)
    return {"success": True, "order_id": order_id}


@router.post("/orders/{order_id}/status")
async def order_status_changed(
    order_id: str,
    event: OrderStatusEvent,
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Status-change hook from the store. Runs the configured trigger action, if any."""
    if event.order is not None:
        if event.order.id != order_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="order_id_mismatch")
        runtime.order_store.upsert_order(event.order)

    result = await runtime.engine.handle_status_change(order_id, event.status)
    if result is None:
        return {"triggered": False, "order_id": order_id, "status": event.status}
    return {"triggered": True, **result.to_dict()}


@router.put("/products")
async def upsert_products(products: List[LocalProduct], runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    count = runtime.order_store.upsert_products(products)
    return {"success": True, "count": count}
