"""OS Login client implementing the OS Login backend contract."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import structlog

from ..common.errors import AccessDeniedError, ApiError, ExternalIdpNotConfiguredError, ResourceNotFoundError
from ..common.schemas import LoginProfile, ZoneLocator
from .base import Session
from .http import GoogleApiClient

LOGGER = structlog.get_logger("stratus.clients.oslogin")

MANAGING_OS_LOGIN_HELP = "https://cloud.google.com/compute/docs/oslogin/manage-oslogin-in-an-org"
WORKFORCE_OS_LOGIN_HELP = "https://cloud.google.com/iam/docs/workforce-sign-in-oslogin"


class WorkforceNotSupportedError(AccessDeniedError):
    """Raised for OS Login operations that workforce identities cannot use."""

    def __init__(self) -> None:
        super().__init__(
            "This feature is not supported when you sign in with workforce identity federation",
            help_topic=WORKFORCE_OS_LOGIN_HELP,
        )


def _access_denied(exc: ApiError, action: str = "use OS Login") -> AccessDeniedError:
    return AccessDeniedError(
        f"You do not have sufficient permissions to {action}: {exc.message or 'access denied'}",
        help_topic=MANAGING_OS_LOGIN_HELP,
    )


class OsLoginClient(GoogleApiClient):
    """Client for the OS Login v1 and v1beta REST APIs on behalf of one user."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        session: Session,
        base_url: str = "https://oslogin.googleapis.com",
    ) -> None:
        super().__init__(http_client, base_url)
        self._session = session

    @property
    def _user(self) -> str:
        return f"users/{self._session.user_path_component}"

    def _require_native_identity(self) -> None:
        if self._session.is_workforce:
            raise WorkforceNotSupportedError()

    async def import_ssh_public_key(self, project_id: str, key: str, validity: timedelta) -> LoginProfile:
        self._require_native_identity()
        expire_on = datetime.now(timezone.utc) + validity
        try:
            payload = await self._request(
                "POST",
                f"v1/{self._user}:importSshPublicKey",
                params={"projectId": project_id},
                json={"key": key, "expirationTimeUsec": str(int(expire_on.timestamp()) * 1_000_000)},
            )
        except ApiError as exc:
            if exc.status_code == 403:
                raise _access_denied(exc) from exc
            raise

        profile = LoginProfile.model_validate(payload.get("loginProfile") or {})
        # The key is silently dropped when the directory does not let users
        # manage their own SSH keys.
        if not any(key.strip() in published.key for published in profile.ssh_public_keys.values()):
            LOGGER.warning("Imported key missing from login profile", project=project_id)
            raise AccessDeniedError(
                "You do not have sufficient permissions to publish an SSH key to OS Login",
                help_topic=MANAGING_OS_LOGIN_HELP,
            )
        return profile

    async def get_login_profile(self, project_id: str) -> LoginProfile:
        self._require_native_identity()
        try:
            payload = await self._request("GET", f"v1/{self._user}/loginProfile", params={"projectId": project_id})
        except ResourceNotFoundError as exc:
            raise ResourceNotFoundError(
                "The login profile could not be found, it has not been allocated yet",
                reason=exc.reason,
            ) from exc
        except ApiError as exc:
            if exc.status_code == 403:
                raise _access_denied(exc) from exc
            raise
        return LoginProfile.model_validate(payload)

    async def delete_ssh_public_key(self, fingerprint: str) -> None:
        self._require_native_identity()
        try:
            await self._request("DELETE", f"v1/{self._user}/sshPublicKeys/{fingerprint}")
        except ResourceNotFoundError:
            LOGGER.debug("OS Login key already deleted", fingerprint=fingerprint)
        except ApiError as exc:
            if exc.status_code == 403:
                raise _access_denied(exc) from exc
            raise

    async def sign_public_key(
        self,
        zone: ZoneLocator,
        instance_id: Optional[int],
        service_account: Optional[str],
        key: str,
    ) -> str:
        body: dict[str, str] = {"sshPublicKey": key}
        if instance_id is not None:
            body["computeInstance"] = f"projects/{zone.project_id}/zones/{zone.name}/instances/{instance_id}"
        if service_account:
            body["serviceAccount"] = service_account
        # Workforce identities cannot charge the request to the OAuth client's
        # project, so bill the target project instead.
        params = {"userProject": zone.project_id} if self._session.is_workforce else None
        try:
            payload = await self._request(
                "POST",
                f"v1beta/{self._user}/projects/{zone.project_id}/locations/{zone.name}:signSshPublicKey",
                params=params,
                json=body,
            )
        except ApiError as exc:
            if exc.status_code == 400 and "google.posix_username" in exc.message:
                raise ExternalIdpNotConfiguredError(
                    "Your workforce identity provider configuration doesn't contain an attribute "
                    "mapping for 'google.posix_username'. This mapping is required for using OS Login.",
                    help_topic=WORKFORCE_OS_LOGIN_HELP,
                ) from exc
            if exc.status_code == 403 and "roles/serviceusage.serviceUsageConsumer" in exc.message:
                raise AccessDeniedError(
                    "You do not have sufficient access to log in. Because you've authenticated "
                    "using workforce identity federation, you additionally need the "
                    "'Service Usage Consumer' role (or an equivalent custom role) to log in.",
                    help_topic=WORKFORCE_OS_LOGIN_HELP,
                ) from exc
            if exc.status_code == 403:
                raise _access_denied(exc, "log in") from exc
            raise

        signed = payload.get("signedSshPublicKey")
        if not signed:
            raise ApiError("The OS Login API returned no signed key", status_code=502)
        return signed

    async def provision_posix_profile(self, project_id: str, region: str) -> None:
        try:
            await self._request(
                "POST",
                f"v1/{self._user}/projects/{project_id}:provisionPosixAccount",
                json={"regions": [region]},
            )
        except ApiError as exc:
            if exc.status_code == 403:
                raise _access_denied(exc) from exc
            raise
        LOGGER.info("Provisioned POSIX profile", project=project_id, region=region)
