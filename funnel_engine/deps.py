from __future__ import annotations

from fastapi import HTTPException, Request, status

from funnel_engine.services.engine import FunnelEngine


def get_engine(request: Request) -> FunnelEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Funnel engine is not initialized yet.",
        )
    return engine
