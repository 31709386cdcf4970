from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from booksync.routers.common import raise_http
from booksync.services.errors import BooksSyncError
from booksync.services.mapping_repository import FieldMappingRepository
from booksync.services.runtime import SyncRuntime, get_runtime


router = APIRouter(prefix="/api/mappings", tags=["mappings"])


class MappingUpdate(BaseModel):
    remote_id: str
    remote_label: Optional[str] = None
    remote_type: Optional[str] = None


class BulkMappingUpdate(BaseModel):
    # local_key -> remote_id; an empty remote_id removes the mapping
    mappings: Dict[str, str]


def _field_repo(runtime: SyncRuntime, entity: str) -> FieldMappingRepository:
    if entity == "invoice":
        return runtime.invoice_field_mappings
    if entity == "contact":
        return runtime.contact_field_mappings
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown_entity")


@router.get("/items")
async def list_item_mappings(runtime: SyncRuntime = Depends(get_runtime)) -> List[Dict[str, Any]]:
    return runtime.item_mappings.list_mappings()


@router.put("/items")
async def bulk_update_item_mappings(payload: BulkMappingUpdate, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    runtime.item_mappings.set_mappings(payload.mappings)
    return {"success": True, "count": runtime.item_mappings.count()}


@router.put("/items/{product_id}")
async def set_item_mapping(product_id: str, payload: MappingUpdate, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    runtime.item_mappings.set_mapping(product_id, payload.remote_id, payload.remote_label, payload.remote_type or "item")
    return {"success": True, "product_id": product_id, "remote_id": payload.remote_id}


@router.delete("/items/{product_id}")
async def remove_item_mapping(product_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return {"success": runtime.item_mappings.remove_mapping(product_id)}


@router.post("/items/auto-map")
async def auto_map_items(runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    try:
        remote_items = await runtime.catalog.get_items()
    except BooksSyncError as exc:
        raise_http(exc)
    created = runtime.item_mappings.auto_map_by_sku(remote_items)
    return {"success": True, "mapped": created, "total_mapped": runtime.item_mappings.count()}


@router.get("/items/{product_id}/candidates")
async def item_candidates(
    product_id: str,
    limit: int = Query(10, ge=1, le=100),
    runtime: SyncRuntime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    """Remote items ranked for a person choosing a mapping by hand."""
    product = runtime.order_store.get_product(product_id)
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="product_not_found")
    try:
        remote_items = await runtime.catalog.get_items()
    except BooksSyncError as exc:
        raise_http(exc)
    ranked = runtime.item_mappings.sort_by_relevance(remote_items, product)
    return [item.model_dump() for item in ranked[:limit]]


@router.post("/refresh")
async def refresh_remote_cache(runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    runtime.catalog.invalidate()
    return {"success": True}


@router.get("/fields/{entity}")
async def list_field_mappings(entity: str, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    repo = _field_repo(runtime, entity)
    try:
        remote_fields = await runtime.catalog.get_custom_fields(entity)
    except BooksSyncError as exc:
        raise_http(exc)
    return {"mappings": repo.list_mappings(), "remote_fields": remote_fields}


@router.put("/fields/{entity}/{local_key}")
async def set_field_mapping(
    entity: str,
    local_key: str,
    payload: MappingUpdate,
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    repo = _field_repo(runtime, entity)
    repo.set_mapping(local_key, payload.remote_id, payload.remote_label, payload.remote_type)
    return {"success": True}


@router.delete("/fields/{entity}/{local_key}")
async def remove_field_mapping(entity: str, local_key: str, runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    repo = _field_repo(runtime, entity)
    return {"success": repo.remove_mapping(local_key)}
