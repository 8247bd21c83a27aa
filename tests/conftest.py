from __future__ import annotations

import itertools
from datetime import timedelta
from typing import Optional, Sequence

import pytest

from stratus.clients.base import Session
from stratus.common.errors import MetadataConflictError, ResourceNotFoundError
from stratus.common.schemas import (
    Instance,
    InstanceLocator,
    LoginProfile,
    Metadata,
    MetadataItem,
    PosixAccount,
    Project,
    ServiceAccount,
    SshPublicKey,
    ZoneLocator,
)
from stratus.common.settings import AuthorizerSettings
from stratus.ssh.signers import AsymmetricKeySigner, KeyType

SAMPLE_EMAIL = "bob@example.com"
SAMPLE_INSTANCE = InstanceLocator(project_id="project-1", zone="us-central1-a", name="instance-1")


def make_metadata(items: Optional[dict[str, str]] = None, fingerprint: str = "fp-0") -> Metadata:
    return Metadata(
        items=[MetadataItem(key=key, value=value) for key, value in (items or {}).items()],
        fingerprint=fingerprint,
    )


class FakeMetadataStore:
    """In-memory metadata store that versions writes by fingerprint."""

    def __init__(
        self,
        instance_items: Optional[dict[str, str]] = None,
        project_items: Optional[dict[str, str]] = None,
        *,
        service_account: Optional[str] = None,
    ) -> None:
        self._versions = itertools.count(1)
        self.instance = Instance(
            id="1234567890",
            name=SAMPLE_INSTANCE.name,
            zone=SAMPLE_INSTANCE.zone,
            metadata=make_metadata(instance_items, "instance-fp-0"),
            service_accounts=[ServiceAccount(email=service_account)] if service_account else [],
        )
        self.project = Project(
            name=SAMPLE_INSTANCE.project_id,
            common_instance_metadata=make_metadata(project_items, "project-fp-0"),
        )
        self.instance_reads = 0
        self.project_reads = 0
        self.instance_writes: list[Metadata] = []
        self.project_writes: list[Metadata] = []
        self.write_errors: list[Exception] = []

    @property
    def writes(self) -> int:
        return len(self.instance_writes) + len(self.project_writes)

    def instance_keys(self) -> Optional[str]:
        return self.instance.metadata.get("ssh-keys")

    def project_keys(self) -> Optional[str]:
        return self.project.common_instance_metadata.get("ssh-keys")

    async def get_instance(self, instance: InstanceLocator) -> Instance:
        self.instance_reads += 1
        return self.instance.model_copy(deep=True)

    async def get_project(self, project_id: str) -> Project:
        self.project_reads += 1
        return self.project.model_copy(deep=True)

    def _check(self, current: Metadata, desired: Metadata) -> None:
        if self.write_errors:
            raise self.write_errors.pop(0)
        if desired.fingerprint != current.fingerprint:
            raise MetadataConflictError("fingerprint mismatch")

    async def set_instance_metadata(self, instance: InstanceLocator, metadata: Metadata) -> None:
        self.instance_writes.append(metadata)
        self._check(self.instance.metadata, metadata)
        stored = Metadata(items=metadata.items, fingerprint=f"instance-fp-{next(self._versions)}")
        self.instance = self.instance.model_copy(update={"metadata": stored})

    async def set_common_instance_metadata(self, project_id: str, metadata: Metadata) -> None:
        self.project_writes.append(metadata)
        self._check(self.project.common_instance_metadata, metadata)
        stored = Metadata(items=metadata.items, fingerprint=f"project-fp-{next(self._versions)}")
        self.project = self.project.model_copy(update={"common_instance_metadata": stored})


class FakePermissionChecker:
    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    async def is_access_granted(self, project_id: str, permissions: Sequence[str]) -> bool:
        self.calls.append((project_id, tuple(permissions)))
        return self.granted


class FakeOsLoginBackend:
    def __init__(self, username: str = "bob_example_com") -> None:
        self.username = username
        self.imported: list[tuple[str, str, timedelta]] = []
        self.signed: list[tuple[ZoneLocator, Optional[int], Optional[str], str]] = []
        self.provisioned: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.sign_not_found = 0
        self.certified_key = "ecdsa-sha2-nistp256-cert-v01@openssh.com AAAA joe"
        self.profile_keys: dict[str, SshPublicKey] = {}

    def _profile(self) -> LoginProfile:
        return LoginProfile(
            name=SAMPLE_EMAIL,
            posix_accounts=[
                PosixAccount(username="other", primary=False, operating_system_type="LINUX"),
                PosixAccount(username=self.username, primary=True, operating_system_type="LINUX"),
            ],
            ssh_public_keys=self.profile_keys,
        )

    async def import_ssh_public_key(self, project_id: str, key: str, validity: timedelta) -> LoginProfile:
        self.imported.append((project_id, key, validity))
        return self._profile()

    async def get_login_profile(self, project_id: str) -> LoginProfile:
        return self._profile()

    async def delete_ssh_public_key(self, fingerprint: str) -> None:
        self.deleted.append(fingerprint)

    async def sign_public_key(
        self,
        zone: ZoneLocator,
        instance_id: Optional[int],
        service_account: Optional[str],
        key: str,
    ) -> str:
        self.signed.append((zone, instance_id, service_account, key))
        if self.sign_not_found:
            self.sign_not_found -= 1
            raise ResourceNotFoundError("no POSIX account")
        return self.certified_key

    async def provision_posix_profile(self, project_id: str, region: str) -> None:
        self.provisioned.append((project_id, region))


@pytest.fixture
def session() -> Session:
    return Session(username=SAMPLE_EMAIL)


@pytest.fixture
def workforce_session() -> Session:
    return Session(
        username="joe",
        principal_identifier="principal://iam.googleapis.com/locations/global/workforcePools/pool/subject/joe",
    )


@pytest.fixture
def instance_locator() -> InstanceLocator:
    return SAMPLE_INSTANCE


@pytest.fixture
def settings(monkeypatch) -> AuthorizerSettings:
    for name in ("STRATUS_ALLOWED_METHODS", "STRATUS_PREFERRED_USERNAME", "STRATUS_KEY_TYPE"):
        monkeypatch.delenv(name, raising=False)
    return AuthorizerSettings(_env_file=None, metadata_retry_base_seconds=0.0)


@pytest.fixture(scope="session")
def ecdsa_signer() -> AsymmetricKeySigner:
    return AsymmetricKeySigner.generate(KeyType.ECDSA_NISTP256)
