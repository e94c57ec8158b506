from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from funnel_engine.deps import get_engine
from funnel_engine.routers.resources import serialize_resource
from funnel_engine.schemas import (
    CanAssignResponse,
    Funnel,
    FunnelRegisterRequest,
    FunnelResponse,
    ReadinessResponse,
)
from funnel_engine.services.engine import FunnelEngine
from funnel_engine.services.readiness import ReadinessReport

router = APIRouter(prefix="/funnels", tags=["funnels"])


def _serialize_readiness(report: ReadinessReport) -> ReadinessResponse:
    return ReadinessResponse(
        funnelId=report.funnel_id,
        state=report.state,
        deficiencies=sorted(report.deficiencies, key=lambda deficiency: deficiency.value),
        assignedCount=report.assigned_count,
        freeCount=report.free_count,
        paidCount=report.paid_count,
        isLocked=report.is_locked,
        highlightedResourceIds=sorted(report.highlighted_ids),
    )


def _serialize_funnel(engine: FunnelEngine, funnel_id: str) -> FunnelResponse:
    view = engine.funnel_view(funnel_id)
    return FunnelResponse(
        id=view.id,
        name=view.name,
        resources=[serialize_resource(resource) for resource in view.resources],
        generatedFlow=view.funnel.generated_flow,
        isDeployed=view.funnel.is_deployed,
        readiness=_serialize_readiness(engine.readiness_report(funnel_id)),
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=FunnelResponse)
def register_funnel(payload: FunnelRegisterRequest, engine: FunnelEngine = Depends(get_engine)) -> FunnelResponse:
    funnel = Funnel(
        id=payload.id,
        name=payload.name,
        resource_ids=payload.resourceIds,
        generated_flow=payload.generatedFlow,
        is_deployed=payload.isDeployed,
    )
    engine.register_funnel(funnel)
    return _serialize_funnel(engine, funnel.id)


@router.get("/{funnel_id}", response_model=FunnelResponse)
def get_funnel(funnel_id: str, engine: FunnelEngine = Depends(get_engine)) -> FunnelResponse:
    return _serialize_funnel(engine, funnel_id)


@router.delete("/{funnel_id}", status_code=status.HTTP_204_NO_CONTENT)
def unregister_funnel(funnel_id: str, engine: FunnelEngine = Depends(get_engine)) -> None:
    engine.unregister_funnel(funnel_id)


@router.get("/{funnel_id}/readiness", response_model=ReadinessResponse)
def get_readiness(funnel_id: str, engine: FunnelEngine = Depends(get_engine)) -> ReadinessResponse:
    return _serialize_readiness(engine.readiness_report(funnel_id))


@router.get("/{funnel_id}/can-assign/{resource_id}", response_model=CanAssignResponse)
def can_assign(funnel_id: str, resource_id: str, engine: FunnelEngine = Depends(get_engine)) -> CanAssignResponse:
    reason = engine.assignments.block_reason(funnel_id, resource_id)
    return CanAssignResponse(
        funnelId=funnel_id,
        resourceId=resource_id,
        canAssign=reason is None,
        blockedBy=reason.value if reason is not None else None,
    )


@router.post("/{funnel_id}/resources/{resource_id}")
async def assign_resource(
    funnel_id: str,
    resource_id: str,
    engine: FunnelEngine = Depends(get_engine),
) -> dict[str, Any]:
    applied = await engine.assign(funnel_id, resource_id)
    return {"applied": applied, "funnel": _serialize_funnel(engine, funnel_id).model_dump(mode="json")}


@router.delete("/{funnel_id}/resources/{resource_id}")
async def unassign_resource(
    funnel_id: str,
    resource_id: str,
    engine: FunnelEngine = Depends(get_engine),
) -> dict[str, Any]:
    applied = await engine.unassign(funnel_id, resource_id)
    return {"applied": applied, "funnel": _serialize_funnel(engine, funnel_id).model_dump(mode="json")}


@router.post("/{funnel_id}/highlights")
def highlight_deficient(funnel_id: str, engine: FunnelEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"funnelId": funnel_id, "resourceIds": engine.highlight_deficient(funnel_id)}


@router.post("/{funnel_id}/generate", response_model=FunnelResponse)
async def generate_funnel(funnel_id: str, engine: FunnelEngine = Depends(get_engine)) -> FunnelResponse:
    await engine.generate(funnel_id)
    return _serialize_funnel(engine, funnel_id)


@router.post("/{funnel_id}/deploy", response_model=FunnelResponse)
async def deploy_funnel(funnel_id: str, engine: FunnelEngine = Depends(get_engine)) -> FunnelResponse:
    await engine.deploy(funnel_id)
    return _serialize_funnel(engine, funnel_id)


@router.post("/{funnel_id}/take-offline", response_model=FunnelResponse)
async def take_funnel_offline(funnel_id: str, engine: FunnelEngine = Depends(get_engine)) -> FunnelResponse:
    await engine.take_offline(funnel_id)
    return _serialize_funnel(engine, funnel_id)
