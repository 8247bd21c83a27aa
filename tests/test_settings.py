from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from stratus.common.settings import AuthorizerSettings
from stratus.ssh.credential import AuthorizationMethod
from stratus.ssh.signers import KeyType


def test_defaults(settings: AuthorizerSettings) -> None:
    assert settings.key_type is KeyType.ECDSA_NISTP256
    assert settings.key_validity == timedelta(days=30)
    assert settings.authorization_methods == AuthorizationMethod.ALL
    assert settings.preferred_username is None
    assert settings.metadata_update_attempts == 6
    assert settings.access_token is None


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("STRATUS_KEY_TYPE", "ssh-ed25519")
    monkeypatch.setenv("STRATUS_KEY_VALIDITY", "300")
    monkeypatch.setenv("STRATUS_ALLOWED_METHODS", " Instance , os-login ")
    monkeypatch.setenv("STRATUS_PREFERRED_USERNAME", "alice")
    monkeypatch.setenv("STRATUS_ACCESS_TOKEN", "secret-token")

    settings = AuthorizerSettings(_env_file=None)

    assert settings.key_type is KeyType.ED25519
    assert settings.key_validity == timedelta(minutes=5)
    assert settings.allowed_methods == "instance,os-login"
    assert settings.authorization_methods == AuthorizationMethod.INSTANCE_METADATA | AuthorizationMethod.OS_LOGIN
    assert settings.preferred_username == "alice"
    assert settings.access_token.get_secret_value() == "secret-token"
    assert "secret-token" not in repr(settings)


def test_blank_preferred_username_is_unset(monkeypatch) -> None:
    monkeypatch.setenv("STRATUS_PREFERRED_USERNAME", "  ")
    assert AuthorizerSettings(_env_file=None).preferred_username is None


@pytest.mark.parametrize(
    "name, value",
    [
        ("STRATUS_KEY_VALIDITY", "0"),
        ("STRATUS_METADATA_UPDATE_ATTEMPTS", "0"),
        ("STRATUS_ALLOWED_METHODS", ","),
        ("STRATUS_ALLOWED_METHODS", "oslogin,carrier-pigeon"),
        ("STRATUS_KEY_TYPE", "ssh-dss"),
    ],
)
def test_invalid_settings_are_rejected(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        AuthorizerSettings(_env_file=None)
