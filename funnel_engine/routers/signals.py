from __future__ import annotations

from fastapi import APIRouter, Depends

from funnel_engine.deps import get_engine
from funnel_engine.schemas import FeedbackSignalResponse
from funnel_engine.services.engine import FunnelEngine

router = APIRouter(prefix="/signals", tags=["signals"])


@router.get("", response_model=list[FeedbackSignalResponse])
def list_active_signals(engine: FunnelEngine = Depends(get_engine)) -> list[FeedbackSignalResponse]:
    return [
        FeedbackSignalResponse(
            kind=signal.kind,
            succeeded=signal.succeeded,
            resource=signal.resource.model_dump(mode="json", by_alias=True),
            funnelId=signal.funnel_id,
            errorKind=signal.error_kind.value if signal.error_kind is not None else None,
            message=signal.message,
            createdAt=signal.created_at,
            expiresAt=signal.expires_at,
        )
        for signal in engine.active_signals()
    ]
