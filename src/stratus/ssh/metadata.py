"""Metadata flags, policy snapshots, and optimistic-concurrency metadata updates."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog
from opentelemetry import trace

from ..clients.base import MetadataStore
from ..common.errors import MetadataConflictError, ServiceUnavailableError
from ..common.schemas import Instance, InstanceLocator, Metadata, Project
from .authorized_keys import LEGACY_METADATA_KEY

LOGGER = structlog.get_logger("stratus.ssh.metadata")
TRACER = trace.get_tracer("stratus.ssh.metadata")

ENABLE_OS_LOGIN_FLAG = "enable-oslogin"
ENABLE_OS_LOGIN_WITH_SECURITY_KEY_FLAG = "enable-oslogin-sk"
BLOCK_PROJECT_SSH_KEYS_FLAG = "block-project-ssh-keys"

DEFAULT_UPDATE_ATTEMPTS = 6

_TRUTHY = {"true", "1", "y", "yes"}
_FALSY = {"false", "0", "n", "no"}

Mutation = Callable[[Metadata], Metadata]


def get_flag(metadata: Optional[Metadata], flag: str) -> Optional[bool]:
    """Evaluate a boolean metadata flag; ``None`` when absent or not a boolean."""
    if metadata is None:
        return None
    value = metadata.get(flag)
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    return None


def get_effective_flag(instance_metadata: Metadata, project_metadata: Metadata, flag: str) -> bool:
    # Instance values take precedence, even when false.
    value = get_flag(instance_metadata, flag)
    if value is None:
        value = get_flag(project_metadata, flag)
    return value is True


@dataclass(frozen=True)
class InstancePolicySnapshot:
    os_login_enabled: bool
    os_login_requires_security_key: bool
    project_keys_blocked: bool
    legacy_key_present: bool

    @classmethod
    def from_resources(cls, instance: Instance, project: Project) -> "InstancePolicySnapshot":
        instance_metadata = instance.metadata
        project_metadata = project.common_instance_metadata
        # Legacy keys were only ever supported on instances.
        legacy_value = instance_metadata.get(LEGACY_METADATA_KEY)
        return cls(
            os_login_enabled=get_effective_flag(instance_metadata, project_metadata, ENABLE_OS_LOGIN_FLAG),
            os_login_requires_security_key=get_effective_flag(
                instance_metadata, project_metadata, ENABLE_OS_LOGIN_WITH_SECURITY_KEY_FLAG
            ),
            project_keys_blocked=get_effective_flag(instance_metadata, project_metadata, BLOCK_PROJECT_SSH_KEYS_FLAG),
            legacy_key_present=bool(legacy_value and legacy_value.strip()),
        )


async def update_metadata(
    read: Callable[[], Awaitable[Metadata]],
    write: Callable[[Metadata], Awaitable[None]],
    mutate: Mutation,
    *,
    max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
    backoff_seconds: float = 0.01,
) -> Metadata:
    """Read, mutate, and conditionally write metadata until the write sticks.

    ``mutate`` must be a pure function of the metadata it receives; it is
    re-applied to freshly read metadata after every conflict. Writes rejected
    as stale (HTTP 412) or unavailable (HTTP 503) are retried with linear
    backoff; after ``max_attempts`` writes the last conflict is raised.
    """
    attempts = max(1, max_attempts)
    with TRACER.start_as_current_span("metadata.update") as span:
        for attempt in range(1, attempts + 1):
            current = await read()
            desired = mutate(current)
            if desired is current:
                LOGGER.debug("Metadata already up to date", attempt=attempt)
                return current
            try:
                await write(desired)
            except (MetadataConflictError, ServiceUnavailableError) as exc:
                if attempt >= attempts:
                    LOGGER.warning(
                        "Metadata update failed, giving up",
                        attempts=attempt,
                        status=exc.status_code,
                    )
                    span.set_attribute("metadata.attempts", attempt)
                    raise MetadataConflictError(
                        f"Metadata was modified concurrently; giving up after {attempt} attempts",
                        attempts=attempt,
                    ) from exc
                delay = backoff_seconds * attempt
                LOGGER.warning(
                    "Metadata update rejected, retrying",
                    attempt=attempt,
                    status=exc.status_code,
                    retry_in=delay,
                )
                if delay:
                    await asyncio.sleep(delay)
                continue
            span.set_attribute("metadata.attempts", attempt)
            return desired
    raise RuntimeError("Metadata update loop exited unexpectedly")


async def update_instance_metadata(
    store: MetadataStore,
    instance: InstanceLocator,
    mutate: Mutation,
    *,
    max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
    backoff_seconds: float = 0.01,
) -> Metadata:
    async def read() -> Metadata:
        return (await store.get_instance(instance)).metadata

    async def write(metadata: Metadata) -> None:
        await store.set_instance_metadata(instance, metadata)

    return await update_metadata(read, write, mutate, max_attempts=max_attempts, backoff_seconds=backoff_seconds)


async def update_common_instance_metadata(
    store: MetadataStore,
    project_id: str,
    mutate: Mutation,
    *,
    max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
    backoff_seconds: float = 0.01,
) -> Metadata:
    async def read() -> Metadata:
        return (await store.get_project(project_id)).common_instance_metadata

    async def write(metadata: Metadata) -> None:
        await store.set_common_instance_metadata(project_id, metadata)

    return await update_metadata(read, write, mutate, max_attempts=max_attempts, backoff_seconds=backoff_seconds)
