"""Compute Engine client implementing the metadata store contract."""

from __future__ import annotations

from typing import Any, Callable, Optional

import httpx
import structlog

from ..common.errors import ApiError
from ..common.schemas import Instance, InstanceLocator, Metadata, Project
from ..ssh.metadata import DEFAULT_UPDATE_ATTEMPTS, update_common_instance_metadata, update_instance_metadata
from .http import GoogleApiClient

LOGGER = structlog.get_logger("stratus.clients.compute")

MAX_OPERATION_POLLS = 30


class ComputeEngineClient(GoogleApiClient):
    """Reads instances and projects and writes their metadata."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = "https://compute.googleapis.com/compute/v1",
    ) -> None:
        super().__init__(http_client, base_url)

    async def get_instance(self, instance: InstanceLocator) -> Instance:
        payload = await self._request(
            "GET", f"projects/{instance.project_id}/zones/{instance.zone}/instances/{instance.name}"
        )
        return Instance.model_validate(payload)

    async def get_project(self, project_id: str) -> Project:
        payload = await self._request("GET", f"projects/{project_id}")
        return Project.model_validate(payload)

    async def set_instance_metadata(self, instance: InstanceLocator, metadata: Metadata) -> None:
        operation = await self._request(
            "POST",
            f"projects/{instance.project_id}/zones/{instance.zone}/instances/{instance.name}/setMetadata",
            json=metadata.to_api(),
        )
        await self._wait(operation, f"projects/{instance.project_id}/zones/{instance.zone}/operations")

    async def set_common_instance_metadata(self, project_id: str, metadata: Metadata) -> None:
        operation = await self._request(
            "POST",
            f"projects/{project_id}/setCommonInstanceMetadata",
            json=metadata.to_api(),
        )
        await self._wait(operation, f"projects/{project_id}/global/operations")

    async def update_instance_metadata(
        self,
        instance: InstanceLocator,
        mutate: Callable[[Metadata], Metadata],
        max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
    ) -> Metadata:
        return await update_instance_metadata(self, instance, mutate, max_attempts=max_attempts)

    async def update_common_instance_metadata(
        self,
        project_id: str,
        mutate: Callable[[Metadata], Metadata],
        max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
    ) -> Metadata:
        return await update_common_instance_metadata(self, project_id, mutate, max_attempts=max_attempts)

    async def _wait(self, operation: dict[str, Any], collection: str) -> None:
        for _ in range(MAX_OPERATION_POLLS):
            if operation.get("status") == "DONE" or not operation.get("name"):
                break
            operation = await self._request("POST", f"{collection}/{operation['name']}/wait")
        else:
            raise ApiError(
                f"Operation {operation.get('name')} did not complete",
                status_code=504,
            )
        _raise_for_operation(operation)


def _raise_for_operation(operation: dict[str, Any]) -> None:
    errors = (operation.get("error") or {}).get("errors") or []
    if not errors:
        return
    first: dict[str, Any] = errors[0]
    status: Optional[int] = operation.get("httpErrorStatusCode")
    LOGGER.warning("Operation failed", operation=operation.get("name"), code=first.get("code"))
    raise ApiError(
        first.get("message") or operation.get("httpErrorMessage") or "Operation failed",
        status_code=int(status or 500),
        reason=first.get("code"),
    )
