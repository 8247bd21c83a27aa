"""Shared data models for Compute Engine and OS Login resources."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for payloads exchanged with Google APIs (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ZoneLocator(BaseModel):
    """Identifies a zone within a project."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    name: str

    @property
    def region(self) -> str:
        return self.name.rsplit("-", 1)[0]

    def __str__(self) -> str:
        return f"projects/{self.project_id}/zones/{self.name}"


class InstanceLocator(BaseModel):
    """Identifies a VM instance."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    zone: str
    name: str

    @property
    def zone_locator(self) -> ZoneLocator:
        return ZoneLocator(project_id=self.project_id, name=self.zone)

    def __str__(self) -> str:
        return f"projects/{self.project_id}/zones/{self.zone}/instances/{self.name}"


class MetadataItem(ApiModel):
    key: str
    value: Optional[str] = None


class Metadata(ApiModel):
    """Key/value metadata of an instance or project.

    ``fingerprint`` is the version observed at read time; writes that carry a
    stale fingerprint are rejected by the API.
    """

    items: list[MetadataItem] = Field(default_factory=list)
    fingerprint: Optional[str] = None

    def get(self, key: str) -> Optional[str]:
        for item in self.items:
            if item.key == key:
                return item.value
        return None

    def with_item(self, key: str, value: Optional[str]) -> "Metadata":
        items = [item for item in self.items if item.key != key]
        items.append(MetadataItem(key=key, value=value))
        return Metadata(items=items, fingerprint=self.fingerprint)


class ServiceAccount(ApiModel):
    email: str
    scopes: list[str] = Field(default_factory=list)


class Instance(ApiModel):
    id: Optional[str] = None
    name: str
    zone: Optional[str] = None
    metadata: Metadata = Field(default_factory=Metadata)
    service_accounts: list[ServiceAccount] = Field(default_factory=list)

    @property
    def instance_id(self) -> Optional[int]:
        return int(self.id) if self.id else None

    @property
    def attached_service_account(self) -> Optional[str]:
        if self.service_accounts:
            return self.service_accounts[0].email
        return None


class Project(ApiModel):
    name: str
    common_instance_metadata: Metadata = Field(default_factory=Metadata)


class PosixAccount(ApiModel):
    username: str
    primary: Optional[bool] = None
    operating_system_type: Optional[str] = None
    uid: Optional[str] = None
    gid: Optional[str] = None
    home_directory: Optional[str] = None
    account_id: Optional[str] = None


class SshPublicKey(ApiModel):
    key: str
    name: Optional[str] = None
    fingerprint: Optional[str] = None
    expiration_time_usec: Optional[int] = None

    @property
    def expire_on(self) -> Optional[datetime]:
        if self.expiration_time_usec is None:
            return None
        return datetime.fromtimestamp(self.expiration_time_usec / 1_000_000, tz=timezone.utc)


class LoginProfile(ApiModel):
    name: Optional[str] = None
    posix_accounts: list[PosixAccount] = Field(default_factory=list)
    ssh_public_keys: dict[str, SshPublicKey] = Field(default_factory=dict)
