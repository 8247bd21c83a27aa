"""Authorize SSH keys through the OS Login service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

import structlog
from opentelemetry import trace

from ..clients.base import OsLoginBackend, Session
from ..common.errors import CredentialValidationError, InvalidOsLoginProfileError, ResourceNotFoundError
from ..common.schemas import LoginProfile, SshPublicKey, ZoneLocator
from .credential import AuthorizationMethod, PlatformCredential
from .signers import AsymmetricKeySigner, CertificateSigner

LOGGER = structlog.get_logger("stratus.ssh.oslogin")
TRACER = trace.get_tracer("stratus.ssh.oslogin")

# SSH keys belong to the user rather than to a project, so any project that
# every user can resolve works for listing them.
WELL_KNOWN_PROJECT = "windows-cloud"

TROUBLESHOOTING_HELP = "https://cloud.google.com/compute/docs/oslogin/troubleshoot-os-login"


def lookup_username(profile: LoginProfile) -> str:
    """Return the POSIX username of the profile's primary Linux account."""
    for account in profile.posix_accounts:
        if account.primary and account.operating_system_type == "LINUX":
            return account.username
    raise InvalidOsLoginProfileError(
        "The login profile does not contain a suitable POSIX account",
        help_topic=TROUBLESHOOTING_HELP,
    )


@dataclass(frozen=True)
class OsLoginAuthorizedKey:
    fingerprint: str
    email: str
    key_type: str
    public_key: str
    expire_on: Optional[datetime] = None

    @classmethod
    def try_parse(cls, key: SshPublicKey) -> Optional["OsLoginAuthorizedKey"]:
        # The API does not enforce "<type> <key>" values, so skip anything else.
        key_parts = key.key.strip().split(" ")
        name_parts = (key.name or "").split("/")
        if (
            len(key_parts) != 2
            or len(name_parts) != 4
            or name_parts[0] != "users"
            or name_parts[2] != "sshPublicKeys"
            or not name_parts[1]
        ):
            return None
        return cls(
            fingerprint=key.fingerprint or name_parts[3],
            email=name_parts[1],
            key_type=key_parts[0],
            public_key=key_parts[1],
            expire_on=key.expire_on,
        )

    def __str__(self) -> str:
        return self.fingerprint


class OsLoginCredentialIssuer:
    """Imports keys for Google identities and certifies them for workforce identities."""

    def __init__(self, backend: OsLoginBackend, session: Session) -> None:
        self._backend = backend
        self._session = session

    async def authorize_key(
        self,
        zone: ZoneLocator,
        instance_id: Optional[int],
        service_account: Optional[str],
        signer: AsymmetricKeySigner,
        validity: timedelta,
    ) -> PlatformCredential:
        if validity.total_seconds() <= 0:
            raise CredentialValidationError("Validity must be positive")

        public_key = signer.public_key_openssh()
        with TRACER.start_as_current_span("oslogin.authorize_key") as span:
            span.set_attribute("oslogin.zone", str(zone))
            span.set_attribute("oslogin.workforce", self._session.is_workforce)

            if self._session.is_workforce:
                certified_key = await self._sign(zone, instance_id, service_account, public_key)
                certificate = CertificateSigner(signer, certified_key)
                LOGGER.info(
                    "Certified public key",
                    zone=str(zone),
                    username=certificate.username,
                    fingerprint=signer.fingerprint,
                )
                return PlatformCredential(certificate, certificate.username, AuthorizationMethod.OS_LOGIN)

            profile = await self._backend.import_ssh_public_key(zone.project_id, public_key, validity)
            username = lookup_username(profile)
            LOGGER.info(
                "Imported public key",
                project=zone.project_id,
                username=username,
                fingerprint=signer.fingerprint,
            )
            return PlatformCredential(signer, username, AuthorizationMethod.OS_LOGIN)

    async def _sign(
        self,
        zone: ZoneLocator,
        instance_id: Optional[int],
        service_account: Optional[str],
        public_key: str,
    ) -> str:
        try:
            return await self._backend.sign_public_key(zone, instance_id, service_account, public_key)
        except ResourceNotFoundError:
            LOGGER.info("No POSIX profile yet, provisioning", region=zone.region)
            await self._backend.provision_posix_profile(zone.project_id, zone.region)
            return await self._backend.sign_public_key(zone, instance_id, service_account, public_key)

    async def list_authorized_keys(self) -> list[OsLoginAuthorizedKey]:
        profile = await self._backend.get_login_profile(WELL_KNOWN_PROJECT)
        keys = []
        for key in profile.ssh_public_keys.values():
            parsed = OsLoginAuthorizedKey.try_parse(key)
            if parsed is not None:
                keys.append(parsed)
        return keys

    async def delete_authorized_key(self, key: Union[OsLoginAuthorizedKey, str]) -> None:
        fingerprint = key.fingerprint if isinstance(key, OsLoginAuthorizedKey) else key
        await self._backend.delete_ssh_public_key(fingerprint)
        LOGGER.info("Deleted OS Login key", fingerprint=fingerprint)
