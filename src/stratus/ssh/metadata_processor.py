"""Authorize SSH keys by publishing them to instance or project metadata."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from ..clients.base import MetadataStore, PermissionChecker, Session
from ..common.errors import (
    ApiError,
    KeyPushPermissionError,
    LegacyKeyFormatError,
    PolicyError,
)
from ..common.schemas import Instance, InstanceLocator, Metadata, Project
from .authorized_keys import AuthorizedKeyRecord, AuthorizedKeySet
from .credential import AuthorizationMethod, PlatformCredential, Signer
from .metadata import (
    BLOCK_PROJECT_SSH_KEYS_FLAG,
    DEFAULT_UPDATE_ATTEMPTS,
    ENABLE_OS_LOGIN_FLAG,
    ENABLE_OS_LOGIN_WITH_SECURITY_KEY_FLAG,
    InstancePolicySnapshot,
    get_flag,
    update_common_instance_metadata,
    update_instance_metadata,
)
from .username import resolve_username

LOGGER = structlog.get_logger("stratus.ssh.metadata_processor")

MANAGING_KEYS_HELP = "https://cloud.google.com/compute/docs/connect/add-ssh-keys"

SET_COMMON_INSTANCE_METADATA_PERMISSION = "compute.projects.setCommonInstanceMetadata"
ACT_AS_PERMISSION = "iam.serviceAccounts.actAs"
PROJECT_WRITE_PERMISSIONS = (SET_COMMON_INSTANCE_METADATA_PERMISSION, ACT_AS_PERMISSION)

T = TypeVar("T")


def select_scope(
    allowed: AuthorizationMethod,
    project_keys_blocked: bool,
    can_write_project: Optional[bool],
    *,
    project_id: str = "",
) -> AuthorizationMethod:
    """Pick the metadata scope a new key is published to.

    ``can_write_project`` only matters when both scopes are allowed.
    """
    project_allowed = AuthorizationMethod.PROJECT_METADATA in allowed
    instance_allowed = AuthorizationMethod.INSTANCE_METADATA in allowed

    if project_allowed and instance_allowed:
        if project_keys_blocked or not can_write_project:
            return AuthorizationMethod.INSTANCE_METADATA
        return AuthorizationMethod.PROJECT_METADATA
    if project_allowed:
        if project_keys_blocked:
            raise PolicyError(
                f"Project {project_id} does not allow project-level SSH keys",
                help_topic=MANAGING_KEYS_HELP,
            )
        return AuthorizationMethod.PROJECT_METADATA
    if instance_allowed:
        return AuthorizationMethod.INSTANCE_METADATA
    raise PolicyError(
        "OS Login is not enabled for the VM instance and no metadata scope is an allowed authorization method",
        help_topic=MANAGING_KEYS_HELP,
    )


def add_key(record: AuthorizedKeyRecord) -> Callable[[Metadata], Metadata]:
    def mutate(metadata: Metadata) -> Metadata:
        current = AuthorizedKeySet.from_metadata(metadata)
        updated = current.remove_expired().add(record)
        if updated is current:
            return metadata
        return updated.apply_to(metadata)

    return mutate


def remove_key(record: AuthorizedKeyRecord) -> Callable[[Metadata], Metadata]:
    def mutate(metadata: Metadata) -> Metadata:
        current = AuthorizedKeySet.from_metadata(metadata)
        updated = current.remove(record)
        if updated is current:
            return metadata
        return updated.apply_to(metadata)

    return mutate


async def _translate_permission_errors(operation: Awaitable[T]) -> T:
    try:
        return await operation
    except ApiError as exc:
        if exc.status_code == 403:
            LOGGER.info("Metadata write denied", status=exc.status_code, reason=exc.reason)
            raise KeyPushPermissionError(
                "You do not have sufficient permissions to publish an SSH key. "
                "You need the 'Service Account User' and 'Compute Instance Admin' roles "
                "(or equivalent custom roles) to perform this action.",
                help_topic=MANAGING_KEYS_HELP,
            ) from exc
        if exc.status_code == 400:
            # Raised when the caller may modify the instance but lacks actAs on
            # its attached service account.
            LOGGER.info("Metadata write rejected", status=exc.status_code, reason=exc.reason)
            raise KeyPushPermissionError(
                "You do not have sufficient permissions to publish an SSH key. "
                "Because this VM instance uses a service account, you also need the "
                "'Service Account User' role.",
                help_topic=MANAGING_KEYS_HELP,
            ) from exc
        raise


class ProjectMetadataCredentialProcessor:
    """Manages keys published in a project's common instance metadata."""

    def __init__(
        self,
        store: MetadataStore,
        project: Project,
        *,
        project_id: Optional[str] = None,
        max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
        backoff_seconds: float = 0.01,
    ) -> None:
        self._store = store
        self._project = project
        self._project_id = project_id or project.name
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds

    @classmethod
    async def for_project(
        cls,
        store: MetadataStore,
        project_id: str,
        **kwargs,
    ) -> "ProjectMetadataCredentialProcessor":
        project = await store.get_project(project_id)
        return cls(store, project, project_id=project_id, **kwargs)

    @property
    def is_os_login_enabled(self) -> bool:
        return get_flag(self._project.common_instance_metadata, ENABLE_OS_LOGIN_FLAG) is True

    @property
    def is_os_login_with_security_key_enabled(self) -> bool:
        return get_flag(self._project.common_instance_metadata, ENABLE_OS_LOGIN_WITH_SECURITY_KEY_FLAG) is True

    @property
    def are_project_keys_blocked(self) -> bool:
        return get_flag(self._project.common_instance_metadata, BLOCK_PROJECT_SSH_KEYS_FLAG) is True

    def list_authorized_keys(self, allowed: AuthorizationMethod = AuthorizationMethod.ALL) -> list[AuthorizedKeyRecord]:
        if AuthorizationMethod.PROJECT_METADATA not in allowed:
            return []
        return AuthorizedKeySet.from_metadata(self._project.common_instance_metadata).keys

    async def remove_authorized_key(self, record: AuthorizedKeyRecord) -> None:
        await _translate_permission_errors(
            update_common_instance_metadata(
                self._store,
                self._project_id,
                remove_key(record),
                max_attempts=self._max_attempts,
                backoff_seconds=self._backoff_seconds,
            )
        )
        LOGGER.info("Removed authorized key", scope="project", username=record.posix_username)


class InstanceMetadataCredentialProcessor:
    """Manages keys for a single instance, in its own or its project's metadata."""

    def __init__(
        self,
        store: MetadataStore,
        permissions: PermissionChecker,
        instance: InstanceLocator,
        instance_details: Instance,
        project_details: Project,
        *,
        max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
        backoff_seconds: float = 0.01,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._instance = instance
        self._instance_details = instance_details
        self._project_details = project_details
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self.policy = InstancePolicySnapshot.from_resources(instance_details, project_details)

    @classmethod
    async def for_instance(
        cls,
        store: MetadataStore,
        permissions: PermissionChecker,
        instance: InstanceLocator,
        **kwargs,
    ) -> "InstanceMetadataCredentialProcessor":
        instance_details, project_details = await asyncio.gather(
            store.get_instance(instance),
            store.get_project(instance.project_id),
        )
        return cls(store, permissions, instance, instance_details, project_details, **kwargs)

    @property
    def instance(self) -> InstanceLocator:
        return self._instance

    @property
    def instance_details(self) -> Instance:
        return self._instance_details

    def list_authorized_keys(self, allowed: AuthorizationMethod = AuthorizationMethod.ALL) -> list[AuthorizedKeyRecord]:
        keys: list[AuthorizedKeyRecord] = []
        if AuthorizationMethod.PROJECT_METADATA in allowed:
            keys.extend(AuthorizedKeySet.from_metadata(self._project_details.common_instance_metadata))
        if AuthorizationMethod.INSTANCE_METADATA in allowed:
            keys.extend(AuthorizedKeySet.from_metadata(self._instance_details.metadata))
        return keys

    async def remove_authorized_key(
        self,
        record: AuthorizedKeyRecord,
        allowed: AuthorizationMethod = AuthorizationMethod.METADATA,
    ) -> None:
        """Remove ``record`` from every allowed scope; absent keys are ignored."""
        if AuthorizationMethod.PROJECT_METADATA in allowed:
            await self._update(AuthorizationMethod.PROJECT_METADATA, remove_key(record))
        if AuthorizationMethod.INSTANCE_METADATA in allowed:
            await self._update(AuthorizationMethod.INSTANCE_METADATA, remove_key(record))
        LOGGER.info(
            "Removed authorized key",
            instance=str(self._instance),
            username=record.posix_username,
        )

    async def authorize_key(
        self,
        signer: Signer,
        validity: timedelta,
        session: Session,
        *,
        preferred_username: Optional[str] = None,
        allowed: AuthorizationMethod = AuthorizationMethod.METADATA,
        now: Optional[datetime] = None,
    ) -> PlatformCredential:
        if self.policy.legacy_key_present:
            raise LegacyKeyFormatError(
                f"Connecting to the VM instance {self._instance.name} is not supported "
                "because the instance uses legacy SSH keys in its metadata (sshKeys)",
                help_topic=MANAGING_KEYS_HELP,
            )

        username = resolve_username(preferred_username, session.username)

        can_write_project: Optional[bool] = None
        if AuthorizationMethod.METADATA in allowed:
            can_write_project = await self._permissions.is_access_granted(
                self._instance.project_id, PROJECT_WRITE_PERMISSIONS
            )
        scope = select_scope(
            allowed,
            self.policy.project_keys_blocked,
            can_write_project,
            project_id=self._instance.project_id,
        )

        now = now or datetime.now(timezone.utc)
        record = AuthorizedKeyRecord.managed(
            username,
            signer.public_key_type,
            signer.public_key_blob,
            email=session.username,
            expire_on=now + validity,
        )

        existing = AuthorizedKeySet.from_metadata(
            self._instance_details.metadata
            if scope is AuthorizationMethod.INSTANCE_METADATA
            else self._project_details.common_instance_metadata
        )
        if record in existing.remove_expired(now):
            LOGGER.info(
                "Reusing existing authorized key",
                scope=scope.label,
                username=username,
                instance=str(self._instance),
            )
        else:
            LOGGER.info(
                "Publishing authorized key",
                scope=scope.label,
                username=username,
                instance=str(self._instance),
                expire_on=record.expire_on.isoformat() if record.expire_on else None,
            )
            await self._update(scope, add_key(record))

        return PlatformCredential(signer, username, scope)

    async def _update(self, scope: AuthorizationMethod, mutate: Callable[[Metadata], Metadata]) -> Metadata:
        if scope is AuthorizationMethod.PROJECT_METADATA:
            operation = update_common_instance_metadata(
                self._store,
                self._instance.project_id,
                mutate,
                max_attempts=self._max_attempts,
                backoff_seconds=self._backoff_seconds,
            )
        else:
            operation = update_instance_metadata(
                self._store,
                self._instance,
                mutate,
                max_attempts=self._max_attempts,
                backoff_seconds=self._backoff_seconds,
            )
        return await _translate_permission_errors(operation)
