from __future__ import annotations

from typing import Any

import httpx


class ServiceError(RuntimeError):
    service_name = "External service"

    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_detail_from_response(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text or response.reason_phrase

    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, str):
            return detail
    return str(body)


class JsonServiceClient:
    """Base for the JSON-over-HTTP collaborators; subclasses set ``error_class``."""

    error_class: type[ServiceError] = ServiceError
    setting_name = "SERVICE_URL"

    def __init__(
        self,
        *,
        base_url: str | None,
        api_token: str | None = None,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._api_token = api_token
        self._timeout = timeout
        self._transport = transport

    def _require_base_url(self) -> str:
        if not self._base_url:
            raise self.error_class(
                message=(
                    f"{self.error_class.service_name} is not configured. "
                    f"Set {self.setting_name} and restart."
                ),
                status_code=500,
            )
        return self._base_url

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def _request(
        self,
        *,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        base_url = self._require_base_url()
        service = self.error_class.service_name
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{base_url}{path}",
                    headers=self._headers(),
                    json=json_body,
                )
        except httpx.TimeoutException as exc:
            raise self.error_class(message=f"{service} request timed out: {exc}", status_code=504) from exc
        except httpx.RequestError as exc:
            raise self.error_class(message=f"{service} request failed: {exc}") from exc

        if response.status_code >= 400:
            detail = _error_detail_from_response(response)
            status_code = response.status_code if response.status_code < 500 else 502
            raise self.error_class(
                message=f"{service} error ({response.status_code}): {detail}",
                status_code=status_code,
            )

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise self.error_class(message=f"{service} returned invalid JSON.") from exc
