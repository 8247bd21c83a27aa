"""Asymmetric SSH signers and the ephemeral signer cache."""

from __future__ import annotations

import base64
import hashlib
import threading
from enum import Enum
from typing import Dict, Optional, Union

import structlog
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from ..common.errors import KeyFormatError

LOGGER = structlog.get_logger("stratus.ssh.signers")

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey]

CERTIFICATE_TYPE_SUFFIX = "-cert-v01@openssh.com"


class KeyType(str, Enum):
    """Key types that can be generated for ephemeral signers."""

    RSA_3072 = "rsa-3072"
    ECDSA_NISTP256 = "ecdsa-sha2-nistp256"
    ECDSA_NISTP384 = "ecdsa-sha2-nistp384"
    ECDSA_NISTP521 = "ecdsa-sha2-nistp521"
    ED25519 = "ssh-ed25519"


_CURVES = {
    KeyType.ECDSA_NISTP256: (ec.SECP256R1, hashes.SHA256),
    KeyType.ECDSA_NISTP384: (ec.SECP384R1, hashes.SHA384),
    KeyType.ECDSA_NISTP521: (ec.SECP521R1, hashes.SHA512),
}


def _generate(key_type: KeyType) -> PrivateKey:
    if key_type is KeyType.RSA_3072:
        return rsa.generate_private_key(public_exponent=65537, key_size=3072)
    if key_type is KeyType.ED25519:
        return ed25519.Ed25519PrivateKey.generate()
    curve, _ = _CURVES[key_type]
    return ec.generate_private_key(curve())


class AsymmetricKeySigner:
    """Signs data with a local private key and exposes its SSH public key."""

    def __init__(self, key_type: KeyType, private_key: PrivateKey) -> None:
        self._key_type = key_type
        self._private_key: Optional[PrivateKey] = private_key
        openssh = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode("ascii")
        self._public_type, self._public_blob = openssh.split(" ", 1)

    @classmethod
    def generate(cls, key_type: KeyType) -> "AsymmetricKeySigner":
        return cls(key_type, _generate(key_type))

    @property
    def key_type(self) -> KeyType:
        return self._key_type

    @property
    def public_key_type(self) -> str:
        """SSH key type string, for example ``ecdsa-sha2-nistp256``."""
        return self._public_type

    @property
    def public_key_blob(self) -> str:
        """Base64-encoded public key in SSH wire format."""
        return self._public_blob

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha256(base64.b64decode(self._public_blob)).digest()
        return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")

    @property
    def closed(self) -> bool:
        return self._private_key is None

    def public_key_openssh(self) -> str:
        return f"{self._public_type} {self._public_blob}"

    def sign(self, data: bytes) -> bytes:
        key = self._private_key
        if key is None:
            raise ValueError("signer has been closed")
        if isinstance(key, rsa.RSAPrivateKey):
            return key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        if isinstance(key, ec.EllipticCurvePrivateKey):
            _, digest = _CURVES[self._key_type]
            return key.sign(data, ec.ECDSA(digest()))
        return key.sign(data)

    def close(self) -> None:
        self._private_key = None

    def __enter__(self) -> "AsymmetricKeySigner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"AsymmetricKeySigner(type={self._public_type}, fingerprint={self.fingerprint})"


class CertificateSigner:
    """Presents an OS Login certificate while delegating signatures to a local signer."""

    def __init__(self, signer: AsymmetricKeySigner, certified_key: str) -> None:
        parts = certified_key.strip().split()
        if len(parts) < 2 or not parts[0].endswith(CERTIFICATE_TYPE_SUFFIX):
            raise KeyFormatError.for_excerpt("Certified key", certified_key)
        self._signer = signer
        self._certificate_type = parts[0]
        self._certificate_blob = parts[1]
        self._username = parts[2] if len(parts) > 2 else _first_principal(certified_key)

    @property
    def signer(self) -> AsymmetricKeySigner:
        return self._signer

    @property
    def public_key_type(self) -> str:
        return self._certificate_type

    @property
    def public_key_blob(self) -> str:
        return self._certificate_blob

    @property
    def username(self) -> str:
        """POSIX username the certificate was issued for."""
        return self._username

    @property
    def closed(self) -> bool:
        return self._signer.closed

    def public_key_openssh(self) -> str:
        return f"{self._certificate_type} {self._certificate_blob}"

    def sign(self, data: bytes) -> bytes:
        return self._signer.sign(data)

    def close(self) -> None:
        self._signer.close()

    def __enter__(self) -> "CertificateSigner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _first_principal(certified_key: str) -> str:
    try:
        certificate = serialization.load_ssh_public_identity(certified_key.strip().encode("ascii"))
    except (ValueError, UnicodeEncodeError, TypeError) as exc:
        raise KeyFormatError.for_excerpt("Certified key", certified_key) from exc
    principals = getattr(certificate, "valid_principals", None)
    if not principals:
        raise KeyFormatError.for_excerpt("Certified key without principals", certified_key)
    return principals[0].decode("utf-8")


class EphemeralSignerCache:
    """Lazily creates one signer per key type and keeps it for the cache's lifetime."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._signers: Dict[KeyType, AsymmetricKeySigner] = {}

    def get(self, key_type: KeyType) -> AsymmetricKeySigner:
        signer = self._signers.get(key_type)
        if signer is not None:
            return signer
        with self._lock:
            signer = self._signers.get(key_type)
            if signer is None:
                signer = AsymmetricKeySigner.generate(key_type)
                self._signers[key_type] = signer
                LOGGER.info(
                    "Created ephemeral signer",
                    key_type=key_type.value,
                    fingerprint=signer.fingerprint,
                )
        return signer

    def owns(self, signer: object) -> bool:
        return any(cached is signer for cached in self._signers.values())

    def __len__(self) -> int:
        return len(self._signers)
