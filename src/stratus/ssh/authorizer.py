"""Top-level SSH credential authorization.

An authorization attempt reads instance and project policy, picks OS Login or
metadata-based keys, and either returns a ``PlatformCredential`` or raises. It
never returns a partially authorized credential.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

import structlog
from opentelemetry import trace

from ..clients.base import MetadataStore, OsLoginBackend, PermissionChecker, Session
from ..common.errors import AuthorizationCancelledError, CredentialValidationError, PolicyError
from ..common.schemas import InstanceLocator
from ..common.settings import AuthorizerSettings
from .credential import AuthorizationMethod, PlatformCredential
from .metadata import InstancePolicySnapshot
from .metadata_processor import InstanceMetadataCredentialProcessor
from .oslogin import TROUBLESHOOTING_HELP, OsLoginCredentialIssuer
from .signers import AsymmetricKeySigner, EphemeralSignerCache, KeyType
from .username import is_valid_username

LOGGER = structlog.get_logger("stratus.ssh.authorizer")
TRACER = trace.get_tracer("stratus.ssh.authorizer")


def select_backend(policy: InstancePolicySnapshot, allowed: AuthorizationMethod) -> AuthorizationMethod:
    """Return ``OS_LOGIN`` or ``METADATA`` for the given policy and allowed methods."""
    if not policy.os_login_enabled:
        return AuthorizationMethod.METADATA
    if policy.os_login_requires_security_key:
        raise PolicyError(
            "The VM instance requires OS Login with security keys, which is not supported",
            help_topic=TROUBLESHOOTING_HELP,
        )
    if AuthorizationMethod.OS_LOGIN not in allowed:
        raise PolicyError("The VM instance requires OS Login, but OS Login is not an allowed authorization method")
    return AuthorizationMethod.OS_LOGIN


class CredentialAuthorizer:
    """Authorizes ephemeral or caller-provided signers for VM instances."""

    def __init__(
        self,
        store: MetadataStore,
        permissions: PermissionChecker,
        oslogin: OsLoginBackend,
        session: Session,
        *,
        settings: Optional[AuthorizerSettings] = None,
        signer_cache: Optional[EphemeralSignerCache] = None,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._issuer = OsLoginCredentialIssuer(oslogin, session)
        self._session = session
        self._settings = settings or AuthorizerSettings()
        self._signer_cache = signer_cache or EphemeralSignerCache()

    @property
    def signer_cache(self) -> EphemeralSignerCache:
        return self._signer_cache

    @property
    def issuer(self) -> OsLoginCredentialIssuer:
        return self._issuer

    async def open_processor(self, instance: InstanceLocator) -> InstanceMetadataCredentialProcessor:
        return await InstanceMetadataCredentialProcessor.for_instance(
            self._store,
            self._permissions,
            instance,
            max_attempts=self._settings.metadata_update_attempts,
            backoff_seconds=self._settings.metadata_retry_base_seconds,
        )

    async def authorize(
        self,
        instance: InstanceLocator,
        *,
        signer: Optional[AsymmetricKeySigner] = None,
        key_type: Optional[KeyType] = None,
        validity: Optional[timedelta] = None,
        preferred_username: Optional[str] = None,
        allowed: Optional[AuthorizationMethod] = None,
        timeout: Optional[float] = None,
    ) -> PlatformCredential:
        """Authorize a signer for ``instance``.

        Without an explicit ``signer`` the cached ephemeral signer for
        ``key_type`` is used; cached signers survive closing the credential.
        ``timeout`` bounds the whole attempt and does not affect ``validity``.
        """
        settings = self._settings
        allowed = settings.authorization_methods if allowed is None else allowed
        validity = settings.key_validity if validity is None else validity
        if preferred_username is None:
            preferred_username = settings.preferred_username
        timeout = settings.operation_timeout_seconds if timeout is None else timeout

        if not allowed:
            raise CredentialValidationError("At least one authorization method must be allowed")
        if validity.total_seconds() <= 0:
            raise CredentialValidationError("Validity must be positive")
        if preferred_username is not None and not is_valid_username(preferred_username):
            raise CredentialValidationError(f"{preferred_username!r} is not a valid POSIX username")

        owns_signer = signer is not None
        if signer is None:
            signer = self._signer_cache.get(key_type or settings.key_type)

        with TRACER.start_as_current_span("credential_authorizer.authorize") as span:
            span.set_attribute("stratus.instance", str(instance))
            try:
                async with asyncio.timeout(timeout):
                    credential = await self._authorize(instance, signer, validity, preferred_username, allowed)
            except AuthorizationCancelledError:
                raise
            except asyncio.CancelledError as exc:
                LOGGER.info("Authorization cancelled", instance=str(instance))
                raise AuthorizationCancelledError(f"Authorizing a key for {instance.name} was cancelled") from exc
            span.set_attribute("stratus.method", credential.method.label)

        credential.owns_signer = owns_signer
        LOGGER.info(
            "Authorized credential",
            instance=str(instance),
            method=credential.method.label,
            username=credential.username,
        )
        return credential

    async def _authorize(
        self,
        instance: InstanceLocator,
        signer: AsymmetricKeySigner,
        validity: timedelta,
        preferred_username: Optional[str],
        allowed: AuthorizationMethod,
    ) -> PlatformCredential:
        processor = await self.open_processor(instance)
        backend = select_backend(processor.policy, allowed)
        LOGGER.info(
            "Resolved instance policy",
            instance=str(instance),
            backend="metadata" if backend is AuthorizationMethod.METADATA else backend.label,
            os_login=processor.policy.os_login_enabled,
            project_keys_blocked=processor.policy.project_keys_blocked,
        )

        if backend is AuthorizationMethod.OS_LOGIN:
            details = processor.instance_details
            return await self._issuer.authorize_key(
                instance.zone_locator,
                details.instance_id,
                details.attached_service_account,
                signer,
                validity,
            )

        return await processor.authorize_key(
            signer,
            validity,
            self._session,
            preferred_username=preferred_username,
            allowed=allowed,
        )
