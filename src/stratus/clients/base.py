"""Collaborator interfaces consumed by the credential authorization layers."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol, Sequence
from urllib.parse import quote

from ..common.schemas import Instance, InstanceLocator, LoginProfile, Metadata, Project, ZoneLocator


@dataclass(frozen=True)
class Session:
    """The signed-in caller.

    ``username`` is the login name (an email address for Google accounts).
    Workforce sessions carry the federated principal identifier instead.
    """

    username: str
    principal_identifier: Optional[str] = None

    @property
    def is_workforce(self) -> bool:
        return self.principal_identifier is not None

    @property
    def user_path_component(self) -> str:
        """URL-encoded user component of OS Login resource names."""
        return quote(self.principal_identifier or self.username, safe="")


class MetadataStore(Protocol):
    """Reads and writes instance and project metadata."""

    @abc.abstractmethod
    async def get_instance(self, instance: InstanceLocator) -> Instance:
        ...

    @abc.abstractmethod
    async def get_project(self, project_id: str) -> Project:
        ...

    @abc.abstractmethod
    async def set_instance_metadata(self, instance: InstanceLocator, metadata: Metadata) -> None:
        """Write metadata; raises ``MetadataConflictError`` if its fingerprint is stale."""
        ...

    @abc.abstractmethod
    async def set_common_instance_metadata(self, project_id: str, metadata: Metadata) -> None:
        """Write project metadata; raises ``MetadataConflictError`` if its fingerprint is stale."""
        ...


class PermissionChecker(Protocol):
    @abc.abstractmethod
    async def is_access_granted(self, project_id: str, permissions: Sequence[str]) -> bool:
        ...


class OsLoginBackend(Protocol):
    """Operations of the OS Login API used to authorize keys."""

    @abc.abstractmethod
    async def import_ssh_public_key(self, project_id: str, key: str, validity: timedelta) -> LoginProfile:
        ...

    @abc.abstractmethod
    async def get_login_profile(self, project_id: str) -> LoginProfile:
        ...

    @abc.abstractmethod
    async def delete_ssh_public_key(self, fingerprint: str) -> None:
        ...

    @abc.abstractmethod
    async def sign_public_key(
        self,
        zone: ZoneLocator,
        instance_id: Optional[int],
        service_account: Optional[str],
        key: str,
    ) -> str:
        """Return the certified key as ``<cert-type> <base64>``."""
        ...

    @abc.abstractmethod
    async def provision_posix_profile(self, project_id: str, region: str) -> None:
        ...
