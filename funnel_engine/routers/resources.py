from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status

from funnel_engine.deps import get_engine
from funnel_engine.enums import ValueCategoryEnum
from funnel_engine.schemas import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    NameAvailabilityResponse,
    Resource,
    ResourceDraft,
    ResourcePatch,
)
from funnel_engine.services.engine import FunnelEngine

router = APIRouter(prefix="/resources", tags=["resources"])


def serialize_resource(resource: Resource) -> dict[str, Any]:
    return resource.model_dump(mode="json", by_alias=True)


@router.get("")
def list_resources(
    category: Optional[ValueCategoryEnum] = Query(default=None),
    engine: FunnelEngine = Depends(get_engine),
) -> list[dict[str, Any]]:
    return [serialize_resource(resource) for resource in engine.list_resources(category)]


@router.get("/name-availability", response_model=NameAvailabilityResponse)
def name_availability(
    name: str,
    excludingId: Optional[str] = None,
    engine: FunnelEngine = Depends(get_engine),
) -> NameAvailabilityResponse:
    return NameAvailabilityResponse(name=name, available=engine.is_name_available(name, excludingId))


@router.get("/{resource_id}")
def get_resource(resource_id: str, engine: FunnelEngine = Depends(get_engine)) -> dict[str, Any]:
    return serialize_resource(engine.catalog.get(resource_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_resource(payload: ResourceDraft, engine: FunnelEngine = Depends(get_engine)) -> dict[str, Any]:
    return serialize_resource(await engine.create_resource(payload))


@router.patch("/{resource_id}")
async def update_resource(
    resource_id: str,
    payload: ResourcePatch,
    engine: FunnelEngine = Depends(get_engine),
) -> dict[str, Any]:
    return serialize_resource(await engine.update_resource(resource_id, payload))


@router.delete("/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(resource_id: str, engine: FunnelEngine = Depends(get_engine)) -> None:
    await engine.delete_resource(resource_id)


@router.post("/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete_resources(
    payload: BulkDeleteRequest,
    engine: FunnelEngine = Depends(get_engine),
) -> BulkDeleteResponse:
    deleted = await engine.delete_resources(payload.resourceIds)
    return BulkDeleteResponse(deleted=deleted)


@router.post("/resync")
async def resync_resources(engine: FunnelEngine = Depends(get_engine)) -> dict[str, Any]:
    affected = await engine.resync()
    return {
        "resources": [serialize_resource(resource) for resource in engine.list_resources()],
        "affectedFunnelIds": affected,
    }
