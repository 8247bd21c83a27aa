"""Runtime configuration for the credential authorizer and its clients."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..ssh.credential import AuthorizationMethod
from ..ssh.signers import KeyType


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class AuthorizerSettings(BaseSettings):
    """Settings for authorizing SSH credentials."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    key_type: KeyType = env_field(KeyType.ECDSA_NISTP256, "STRATUS_KEY_TYPE")
    key_validity_seconds: int = env_field(30 * 24 * 3600, "STRATUS_KEY_VALIDITY")
    allowed_methods: str = env_field("oslogin,project,instance", "STRATUS_ALLOWED_METHODS")
    preferred_username: Optional[str] = env_field(None, "STRATUS_PREFERRED_USERNAME")
    metadata_update_attempts: int = env_field(6, "STRATUS_METADATA_UPDATE_ATTEMPTS")
    metadata_retry_base_seconds: float = env_field(0.01, "STRATUS_METADATA_RETRY_BASE")
    operation_timeout_seconds: float = env_field(60.0, "STRATUS_OPERATION_TIMEOUT")
    http_timeout_seconds: float = env_field(30.0, "STRATUS_HTTP_TIMEOUT")
    compute_base_url: str = env_field("https://compute.googleapis.com/compute/v1", "STRATUS_COMPUTE_URL")
    oslogin_base_url: str = env_field("https://oslogin.googleapis.com", "STRATUS_OSLOGIN_URL")
    resource_manager_base_url: str = env_field(
        "https://cloudresourcemanager.googleapis.com/v1",
        "STRATUS_RESOURCE_MANAGER_URL",
    )
    access_token: Optional[SecretStr] = env_field(None, "STRATUS_ACCESS_TOKEN")
    account: Optional[str] = env_field(None, "STRATUS_ACCOUNT")
    workforce_principal: Optional[str] = env_field(None, "STRATUS_WORKFORCE_PRINCIPAL")
    log_level: str = env_field("INFO", "STRATUS_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(1.0, "STRATUS_OTEL_SAMPLER_RATIO")

    @field_validator("key_validity_seconds")
    @classmethod
    def _positive_validity(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("key validity must be positive")
        return value

    @field_validator("metadata_update_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("at least one metadata update attempt is required")
        return value

    @field_validator("allowed_methods")
    @classmethod
    def _known_methods(cls, value: str) -> str:
        names = [item.strip().lower() for item in value.split(",") if item.strip()]
        if not names:
            raise ValueError("at least one authorization method must be allowed")
        AuthorizationMethod.parse(names)
        return ",".join(names)

    @field_validator("preferred_username", mode="before")
    @classmethod
    def _blank_username_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def authorization_methods(self) -> AuthorizationMethod:
        return AuthorizationMethod.parse(self.allowed_methods.split(","))

    @property
    def key_validity(self) -> timedelta:
        return timedelta(seconds=self.key_validity_seconds)
