"""Authorization methods and the credential bundle handed to SSH connections."""

from __future__ import annotations

import enum
from typing import Iterable, Optional, Union

from ..common.errors import CredentialValidationError
from .signers import AsymmetricKeySigner, CertificateSigner

Signer = Union[AsymmetricKeySigner, CertificateSigner]


class AuthorizationMethod(enum.Flag):
    """Ways an SSH public key can be authorized for an instance."""

    NONE = 0
    INSTANCE_METADATA = enum.auto()
    PROJECT_METADATA = enum.auto()
    OS_LOGIN = enum.auto()

    METADATA = INSTANCE_METADATA | PROJECT_METADATA
    ALL = INSTANCE_METADATA | PROJECT_METADATA | OS_LOGIN

    @classmethod
    def parse(cls, values: Iterable[str]) -> "AuthorizationMethod":
        """Combine method names such as ``oslogin``, ``project`` or ``instance``."""
        result = cls.NONE
        for value in values:
            name = value.strip().lower().replace("-", "_")
            if not name:
                continue
            try:
                result |= _METHOD_NAMES[name]
            except KeyError:
                raise CredentialValidationError(
                    f"Unknown authorization method {value!r}; expected one of {', '.join(sorted(_METHOD_NAMES))}"
                ) from None
        return result

    @property
    def label(self) -> str:
        return describe(self)


_METHOD_NAMES = {
    "instance": AuthorizationMethod.INSTANCE_METADATA,
    "project": AuthorizationMethod.PROJECT_METADATA,
    "oslogin": AuthorizationMethod.OS_LOGIN,
    "os_login": AuthorizationMethod.OS_LOGIN,
}

_LABELS = {
    AuthorizationMethod.INSTANCE_METADATA: "instance",
    AuthorizationMethod.PROJECT_METADATA: "project",
    AuthorizationMethod.OS_LOGIN: "oslogin",
}


class PlatformCredential:
    """A signer plus the POSIX username and method it was authorized with.

    Closing the credential closes its signer unless ``owns_signer`` is false,
    which is the case for signers held by an ``EphemeralSignerCache``.
    """

    def __init__(
        self,
        signer: Signer,
        username: str,
        method: AuthorizationMethod,
        *,
        owns_signer: bool = True,
    ) -> None:
        self.signer = signer
        self.username = username
        self.method = method
        self.owns_signer = owns_signer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.owns_signer:
            self.signer.close()

    def __enter__(self) -> "PlatformCredential":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"PlatformCredential(username={self.username!r}, method={self.method.label})"


def describe(method: Optional[AuthorizationMethod]) -> str:
    if method is None:
        return "none"
    return ",".join(_LABELS[m] for m in _LABELS if m in method) or "none"
