from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from funnel_engine.clients.http import JsonServiceClient, ServiceError
from funnel_engine.schemas import Resource, ResourceDraft, ResourcePatch


class PersistenceServiceError(ServiceError):
    service_name = "Persistence service"


def _parse_resource(payload: Any) -> Resource:
    if isinstance(payload, dict) and isinstance(payload.get("resource"), dict):
        payload = payload["resource"]
    if not isinstance(payload, dict):
        raise PersistenceServiceError(message="Persistence service response is missing the resource.")
    try:
        return Resource.model_validate(payload)
    except ValidationError as exc:
        raise PersistenceServiceError(message=f"Persistence service returned an invalid resource: {exc}") from exc


class HttpPersistenceClient(JsonServiceClient):
    """Remote persistence for resources and funnel assignments.

    Every method returns the canonical server object or raises
    ``PersistenceServiceError`` (timeouts included).
    """

    error_class = PersistenceServiceError
    setting_name = "PERSISTENCE_BASE_URL"

    async def list_resources(self) -> list[Resource]:
        body = await self._request(method="GET", path="/resources")
        items = body.get("resources") if isinstance(body, dict) else body
        if not isinstance(items, list):
            raise PersistenceServiceError(message="Persistence service response is missing resources.")
        return [_parse_resource(item) for item in items]

    async def create_resource(self, draft: ResourceDraft) -> Resource:
        body = await self._request(
            method="POST",
            path="/resources",
            json_body=draft.model_dump(mode="json", by_alias=True),
        )
        return _parse_resource(body)

    async def update_resource(self, resource_id: str, patch: ResourcePatch) -> Resource:
        body = await self._request(
            method="PATCH",
            path=f"/resources/{resource_id}",
            json_body=patch.model_dump(mode="json", by_alias=True, exclude_unset=True),
        )
        return _parse_resource(body)

    async def delete_resource(self, resource_id: str) -> None:
        await self._request(method="DELETE", path=f"/resources/{resource_id}")

    async def set_funnel_assignments(self, funnel_id: str, resource_ids: list[str]) -> list[str]:
        body = await self._request(
            method="PUT",
            path=f"/funnels/{funnel_id}/resources",
            json_body={"resourceIds": list(resource_ids)},
        )
        confirmed = body.get("resourceIds") if isinstance(body, dict) else None
        if not isinstance(confirmed, list) or not all(isinstance(item, str) for item in confirmed):
            raise PersistenceServiceError(message="Persistence service response is missing resourceIds.")
        return confirmed
