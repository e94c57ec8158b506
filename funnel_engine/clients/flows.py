from __future__ import annotations

from typing import Any

from funnel_engine.clients.http import JsonServiceClient, ServiceError
from funnel_engine.schemas import Resource


class GenerationServiceError(ServiceError):
    service_name = "Generation service"


class DeploymentServiceError(ServiceError):
    service_name = "Deployment service"


class HttpGenerationClient(JsonServiceClient):
    error_class = GenerationServiceError
    setting_name = "GENERATION_SERVICE_URL"

    async def generate(self, funnel_id: str, resources: list[Resource]) -> dict[str, Any]:
        body = await self._request(
            method="POST",
            path=f"/funnels/{funnel_id}/generate",
            json_body={"resources": [resource.model_dump(mode="json", by_alias=True) for resource in resources]},
        )
        flow = body.get("flow") if isinstance(body, dict) else None
        if not isinstance(flow, dict):
            raise GenerationServiceError(message="Generation service response is missing flow.")
        return flow


class HttpDeploymentClient(JsonServiceClient):
    error_class = DeploymentServiceError
    setting_name = "DEPLOYMENT_SERVICE_URL"

    async def deploy(self, funnel_id: str) -> None:
        await self._request(method="POST", path=f"/funnels/{funnel_id}/deploy")

    async def take_offline(self, funnel_id: str) -> None:
        await self._request(method="POST", path=f"/funnels/{funnel_id}/take-offline")
