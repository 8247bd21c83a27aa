"""Cloud Resource Manager client implementing the permission check contract."""

from __future__ import annotations

from typing import Sequence

import httpx
import structlog

from .http import GoogleApiClient

LOGGER = structlog.get_logger("stratus.clients.resource_manager")


class ResourceManagerClient(GoogleApiClient):
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = "https://cloudresourcemanager.googleapis.com/v1",
    ) -> None:
        super().__init__(http_client, base_url)

    async def is_access_granted(self, project_id: str, permissions: Sequence[str]) -> bool:
        """Return True only if the caller holds every permission on the project."""
        payload = await self._request(
            "POST",
            f"projects/{project_id}:testIamPermissions",
            json={"permissions": list(permissions)},
        )
        granted = set(payload.get("permissions") or [])
        missing = [permission for permission in permissions if permission not in granted]
        if missing:
            LOGGER.debug("Permissions not granted", project=project_id, missing=missing)
        return not missing
