from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
from pydantic import ValidationError

from funnel_engine.clients.flows import HttpDeploymentClient, HttpGenerationClient
from funnel_engine.clients.persistence import HttpPersistenceClient
from funnel_engine.config import EngineLimits, Settings, settings
from funnel_engine.db.base import init_db
from funnel_engine.db.persistence import SqlPersistenceService
from funnel_engine.errors import DeploymentMismatchError, FunnelEngineError, NotReadyError
from funnel_engine.routers import funnels, resources, signals
from funnel_engine.services.engine import FunnelEngine

logger = logging.getLogger(__name__)


def build_funnel_engine(source: Settings = settings) -> FunnelEngine:
    """Wire the engine to the configured collaborators.

    Without ``PERSISTENCE_BASE_URL`` resources and assignments are stored in
    the engine's own database at ``ENGINE_DB_URL``.
    """
    if source.persistence_base_url:
        persistence = HttpPersistenceClient(
            base_url=source.persistence_base_url,
            api_token=source.SERVICE_API_TOKEN,
            timeout=source.SERVICE_REQUEST_TIMEOUT_SECONDS,
        )
    else:
        init_db()
        persistence = SqlPersistenceService()
    generation = HttpGenerationClient(
        base_url=source.generation_service_url,
        api_token=source.SERVICE_API_TOKEN,
        timeout=source.SERVICE_REQUEST_TIMEOUT_SECONDS,
    )
    deployment = HttpDeploymentClient(
        base_url=source.deployment_service_url,
        api_token=source.SERVICE_API_TOKEN,
        timeout=source.SERVICE_REQUEST_TIMEOUT_SECONDS,
    )
    return FunnelEngine(
        persistence=persistence,
        generation=generation,
        deployment=deployment,
        limits=EngineLimits.from_settings(source),
    )


def _error_content(exc: FunnelEngineError) -> dict:
    content: dict = {"detail": str(exc), "kind": exc.kind.value}
    if isinstance(exc, NotReadyError) and exc.deficiencies:
        content["deficiencies"] = sorted(deficiency.value for deficiency in exc.deficiencies)
    if isinstance(exc, DeploymentMismatchError):
        content["missingProducts"] = exc.missing_products
        content["extraResourceIds"] = exc.extra_resource_ids
    return content


def create_app(engine: Optional[FunnelEngine] = None) -> FastAPI:
    @asynccontextmanager
    async def _app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "engine", None) is None:
            app.state.engine = build_funnel_engine()
            try:
                await app.state.engine.resync()
            except FunnelEngineError as exc:
                logger.warning("engine.initial_resync_failed", extra={"error": str(exc)})
        yield

    app = FastAPI(
        title="Resource Funnel Engine",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )
    app.state.engine = engine

    @app.exception_handler(FunnelEngineError)
    async def funnel_engine_error_handler(_request: Request, exc: FunnelEngineError) -> ORJSONResponse:
        return ORJSONResponse(status_code=exc.status_code, content=_error_content(exc))

    @app.exception_handler(ValidationError)
    async def validation_error_handler(_request: Request, exc: ValidationError) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=422,
            content={"detail": exc.errors(include_url=False, include_context=False)},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    app.include_router(resources.router)
    app.include_router(funnels.router)
    app.include_router(signals.router)

    return app


app = create_app()
