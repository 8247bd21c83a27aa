from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from stratus.clients.base import Session
from stratus.clients.compute import ComputeEngineClient
from stratus.clients.http import api_error, create_api_client
from stratus.clients.oslogin import OsLoginClient, WorkforceNotSupportedError
from stratus.clients.resource_manager import ResourceManagerClient
from stratus.common.errors import (
    AccessDeniedError,
    ApiError,
    ExternalIdpNotConfiguredError,
    MetadataConflictError,
    ResourceNotFoundError,
    ServiceUnavailableError,
)
from stratus.common.schemas import ZoneLocator
from stratus.common.settings import AuthorizerSettings

from conftest import SAMPLE_INSTANCE, make_metadata


def _error(status: int, message: str, reason: str = "forbidden") -> httpx.Response:
    return httpx.Response(
        status,
        json={"error": {"code": status, "message": message, "errors": [{"reason": reason, "message": message}]}},
    )


class Recorder:
    """Routes requests to canned responses and remembers what was sent."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def client(self, settings) -> httpx.AsyncClient:
        return create_api_client(settings, transport=httpx.MockTransport(self))

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


@pytest.mark.parametrize(
    "status, error_type",
    [
        (404, ResourceNotFoundError),
        (412, MetadataConflictError),
        (503, ServiceUnavailableError),
        (403, ApiError),
    ],
)
def test_api_error_mapping(status, error_type) -> None:
    error = api_error(_error(status, "boom", "conditionNotMet"))
    assert type(error) is error_type
    assert error.status_code == status
    assert error.message == "boom"
    assert error.reason == "conditionNotMet"


def test_api_error_without_json_body() -> None:
    error = api_error(httpx.Response(500, text="upstream exploded"))
    assert error.status_code == 500
    assert error.message == "upstream exploded"
    assert error.reason is None


@pytest.mark.asyncio
async def test_client_sends_bearer_token(settings) -> None:
    settings = AuthorizerSettings(_env_file=None, access_token="token-1")
    recorder = Recorder(httpx.Response(200, json={"name": "project-1"}))

    async with recorder.client(settings) as http_client:
        project = await ComputeEngineClient(http_client).get_project("project-1")

    assert project.name == "project-1"
    assert recorder.requests[0].headers["Authorization"] == "Bearer token-1"
    assert recorder.requests[0].url == "https://compute.googleapis.com/compute/v1/projects/project-1"


@pytest.mark.asyncio
async def test_get_instance_parses_metadata_and_service_accounts(settings) -> None:
    recorder = Recorder(
        httpx.Response(
            200,
            json={
                "id": "987",
                "name": "instance-1",
                "metadata": {"fingerprint": "abc=", "items": [{"key": "enable-oslogin", "value": "TRUE"}]},
                "serviceAccounts": [{"email": "sa@project-1.iam.gserviceaccount.com", "scopes": []}],
            },
        )
    )

    async with recorder.client(settings) as http_client:
        instance = await ComputeEngineClient(http_client).get_instance(SAMPLE_INSTANCE)

    assert instance.instance_id == 987
    assert instance.metadata.fingerprint == "abc="
    assert instance.metadata.get("enable-oslogin") == "TRUE"
    assert instance.attached_service_account == "sa@project-1.iam.gserviceaccount.com"
    assert recorder.requests[0].url.path.endswith("/projects/project-1/zones/us-central1-a/instances/instance-1")


@pytest.mark.asyncio
async def test_set_instance_metadata_waits_for_operation(settings) -> None:
    recorder = Recorder(
        httpx.Response(200, json={"name": "op-1", "status": "RUNNING"}),
        httpx.Response(200, json={"name": "op-1", "status": "RUNNING"}),
        httpx.Response(200, json={"name": "op-1", "status": "DONE"}),
    )

    async with recorder.client(settings) as http_client:
        await ComputeEngineClient(http_client).set_instance_metadata(
            SAMPLE_INSTANCE, make_metadata({"ssh-keys": "bob:ssh-rsa AAAA bob"}, "fp-1")
        )

    assert recorder.body(0) == {"items": [{"key": "ssh-keys", "value": "bob:ssh-rsa AAAA bob"}], "fingerprint": "fp-1"}
    assert recorder.requests[0].url.path.endswith("/instances/instance-1/setMetadata")
    assert recorder.requests[1].url.path.endswith("/zones/us-central1-a/operations/op-1/wait")
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_set_common_instance_metadata_maps_conflicts(settings) -> None:
    recorder = Recorder(_error(412, "Supplied fingerprint does not match current metadata fingerprint.", "conditionNotMet"))

    async with recorder.client(settings) as http_client:
        with pytest.raises(MetadataConflictError):
            await ComputeEngineClient(http_client).set_common_instance_metadata("project-1", make_metadata())

    assert recorder.requests[0].url.path.endswith("/projects/project-1/setCommonInstanceMetadata")


@pytest.mark.asyncio
async def test_failed_operation_raises_api_error(settings) -> None:
    recorder = Recorder(
        httpx.Response(
            200,
            json={
                "name": "op-2",
                "status": "DONE",
                "httpErrorStatusCode": 403,
                "error": {"errors": [{"code": "PERMISSION_DENIED", "message": "no actAs"}]},
            },
        )
    )

    async with recorder.client(settings) as http_client:
        with pytest.raises(ApiError) as excinfo:
            await ComputeEngineClient(http_client).set_common_instance_metadata("project-1", make_metadata())

    assert excinfo.value.status_code == 403
    assert excinfo.value.reason == "PERMISSION_DENIED"


@pytest.mark.asyncio
async def test_update_instance_metadata_retries_conflicts_over_http(settings) -> None:
    instance = {"name": "instance-1", "metadata": {"fingerprint": "fp-1", "items": []}}
    recorder = Recorder(
        httpx.Response(200, json=instance),
        _error(412, "stale", "conditionNotMet"),
        httpx.Response(200, json={**instance, "metadata": {"fingerprint": "fp-2", "items": []}}),
        httpx.Response(200, json={"name": "op-3", "status": "DONE"}),
    )

    async with recorder.client(settings) as http_client:
        result = await ComputeEngineClient(http_client).update_instance_metadata(
            SAMPLE_INSTANCE, lambda metadata: metadata.with_item("greeting", "hello")
        )

    assert result.get("greeting") == "hello"
    assert recorder.body(1)["fingerprint"] == "fp-1"
    assert recorder.body(3)["fingerprint"] == "fp-2"


@pytest.mark.asyncio
@pytest.mark.parametrize("granted, expected", [(["a", "b"], True), (["a"], False), ([], False)])
async def test_is_access_granted_requires_every_permission(settings, granted, expected) -> None:
    recorder = Recorder(httpx.Response(200, json={"permissions": granted} if granted else {}))

    async with recorder.client(settings) as http_client:
        result = await ResourceManagerClient(http_client).is_access_granted("project-1", ["a", "b"])

    assert result is expected
    assert recorder.requests[0].url.path.endswith("/projects/project-1:testIamPermissions")
    assert recorder.body() == {"permissions": ["a", "b"]}


def _profile(key: str) -> dict:
    return {
        "loginProfile": {
            "name": "bob@example.com",
            "posixAccounts": [{"username": "bob_example_com", "primary": True, "operatingSystemType": "LINUX"}],
            "sshPublicKeys": {"fp": {"key": key, "fingerprint": "fp"}},
        }
    }


@pytest.mark.asyncio
async def test_import_ssh_public_key(settings) -> None:
    recorder = Recorder(httpx.Response(200, json=_profile("ssh-ed25519 AAAA")))

    async with recorder.client(settings) as http_client:
        client = OsLoginClient(http_client, Session("bob@example.com"))
        profile = await client.import_ssh_public_key("project-1", "ssh-ed25519 AAAA", timedelta(minutes=5))

    assert profile.posix_accounts[0].username == "bob_example_com"
    request = recorder.requests[0]
    assert str(request.url).startswith("https://oslogin.googleapis.com/v1/users/bob%40example.com:importSshPublicKey?")
    assert request.url.params["projectId"] == "project-1"
    assert recorder.body()["key"] == "ssh-ed25519 AAAA"
    assert int(recorder.body()["expirationTimeUsec"]) > 0


@pytest.mark.asyncio
async def test_import_fails_when_key_was_dropped(settings) -> None:
    recorder = Recorder(httpx.Response(200, json=_profile("ssh-rsa SOMETHINGELSE")))

    async with recorder.client(settings) as http_client:
        client = OsLoginClient(http_client, Session("bob@example.com"))
        with pytest.raises(AccessDeniedError):
            await client.import_ssh_public_key("project-1", "ssh-ed25519 AAAA", timedelta(minutes=5))


@pytest.mark.asyncio
async def test_get_login_profile_not_found(settings) -> None:
    recorder = Recorder(_error(404, "not found", "notFound"))

    async with recorder.client(settings) as http_client:
        client = OsLoginClient(http_client, Session("bob@example.com"))
        with pytest.raises(ResourceNotFoundError) as excinfo:
            await client.get_login_profile("windows-cloud")

    assert "has not been allocated yet" in excinfo.value.message


@pytest.mark.asyncio
async def test_delete_ignores_missing_keys(settings) -> None:
    recorder = Recorder(_error(404, "not found", "notFound"))

    async with recorder.client(settings) as http_client:
        await OsLoginClient(http_client, Session("bob@example.com")).delete_ssh_public_key("fp")

    assert recorder.requests[0].method == "DELETE"
    assert str(recorder.requests[0].url) == "https://oslogin.googleapis.com/v1/users/bob%40example.com/sshPublicKeys/fp"


@pytest.mark.asyncio
async def test_workforce_sessions_cannot_import_keys(settings, workforce_session) -> None:
    recorder = Recorder()

    async with recorder.client(settings) as http_client:
        client = OsLoginClient(http_client, workforce_session)
        with pytest.raises(WorkforceNotSupportedError):
            await client.import_ssh_public_key("project-1", "ssh-ed25519 AAAA", timedelta(minutes=5))

    assert recorder.requests == []


@pytest.mark.asyncio
async def test_sign_public_key_for_workforce_identity(settings, workforce_session) -> None:
    recorder = Recorder(httpx.Response(200, json={"signedSshPublicKey": "ecdsa-sha2-nistp256-cert-v01@openssh.com AAAA"}))
    zone = ZoneLocator(project_id="project-1", name="us-central1-a")

    async with recorder.client(settings) as http_client:
        signed = await OsLoginClient(http_client, workforce_session).sign_public_key(
            zone, 42, "sa@project-1.iam.gserviceaccount.com", "ecdsa-sha2-nistp256 AAAA"
        )

    assert signed.startswith("ecdsa-sha2-nistp256-cert-v01@openssh.com")
    request = recorder.requests[0]
    assert request.url.params["userProject"] == "project-1"
    assert request.url.path.endswith("/projects/project-1/locations/us-central1-a:signSshPublicKey")
    assert recorder.body() == {
        "sshPublicKey": "ecdsa-sha2-nistp256 AAAA",
        "computeInstance": "projects/project-1/zones/us-central1-a/instances/42",
        "serviceAccount": "sa@project-1.iam.gserviceaccount.com",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, error_type",
    [
        (_error(400, "Missing attribute google.posix_username", "badRequest"), ExternalIdpNotConfiguredError),
        (_error(403, "Requires roles/serviceusage.serviceUsageConsumer"), AccessDeniedError),
        (_error(403, "Permission denied"), AccessDeniedError),
        (_error(404, "No POSIX account", "notFound"), ResourceNotFoundError),
    ],
)
async def test_sign_public_key_error_mapping(settings, workforce_session, response, error_type) -> None:
    recorder = Recorder(response)
    zone = ZoneLocator(project_id="project-1", name="us-central1-a")

    async with recorder.client(settings) as http_client:
        with pytest.raises(error_type):
            await OsLoginClient(http_client, workforce_session).sign_public_key(zone, None, None, "ssh-ed25519 AAAA")


@pytest.mark.asyncio
async def test_provision_posix_profile(settings, workforce_session) -> None:
    recorder = Recorder(httpx.Response(200, json={}))

    async with recorder.client(settings) as http_client:
        await OsLoginClient(http_client, workforce_session).provision_posix_profile("project-1", "us-central1")

    assert recorder.requests[0].url.path.endswith("/projects/project-1:provisionPosixAccount")
    assert recorder.body() == {"regions": ["us-central1"]}
