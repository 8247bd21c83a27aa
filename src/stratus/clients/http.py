"""Shared HTTP plumbing for Google REST API clients."""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from ..common.errors import (
    ApiError,
    MetadataConflictError,
    ResourceNotFoundError,
    ServiceUnavailableError,
)
from ..common.settings import AuthorizerSettings

LOGGER = structlog.get_logger("stratus.clients.http")


def create_api_client(
    settings: AuthorizerSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Provide an httpx.AsyncClient that sends the configured bearer token."""
    token = settings.access_token.get_secret_value() if settings.access_token else None

    async def _on_request(request: httpx.Request) -> None:
        if token and "Authorization" not in request.headers:
            request.headers["Authorization"] = f"Bearer {token}"

    return httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        event_hooks={"request": [_on_request]},
        transport=transport,
    )


def _error_details(response: httpx.Response) -> tuple[str, Optional[str]]:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return response.text or response.reason_phrase, None
    reason = None
    details = error.get("errors")
    if isinstance(details, list) and details and isinstance(details[0], dict):
        reason = details[0].get("reason")
    return str(error.get("message") or response.reason_phrase), reason or error.get("status")


def api_error(response: httpx.Response) -> ApiError:
    """Translate a non-successful response into the domain error taxonomy."""
    message, reason = _error_details(response)
    status = response.status_code
    if status == 404:
        return ResourceNotFoundError(message, reason=reason)
    if status == 412:
        return MetadataConflictError(message, reason=reason)
    if status == 503:
        return ServiceUnavailableError(message, reason=reason)
    return ApiError(message, status_code=status, reason=reason)


class GoogleApiClient:
    """Base class for thin JSON clients of a single Google API."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str) -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        response = await self._http.request(method, self._url(path), params=params, json=json)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error = api_error(exc.response)
            LOGGER.debug(
                "API request failed",
                method=method,
                path=path,
                status=error.status_code,
                reason=error.reason,
            )
            raise error from exc
        if not response.content:
            return {}
        return response.json()
