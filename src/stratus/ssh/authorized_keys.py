"""Authorized key records as stored in the ``ssh-keys`` metadata item.

Each line of the metadata value has one of two shapes::

    <username>:<keytype> <key> <owner>
    <username>:<keytype> <key> google-ssh {"userName":"<email>","expireOn":"<timestamp>"}

The first is an unmanaged key, the second a managed key that the guest
environment removes once it expires. Lines that match neither shape are kept
verbatim so that rewriting the value never loses content.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional, Union

from ..common.errors import KeyFormatError
from ..common.schemas import Metadata, MetadataItem

METADATA_KEY = "ssh-keys"
LEGACY_METADATA_KEY = "sshKeys"
MANAGED_KEY_TOKEN = "google-ssh"

EXPIRE_ON_FORMAT = "%Y-%m-%dT%H:%M:%S+0000"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_expire_on(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(EXPIRE_ON_FORMAT)


def parse_expire_on(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class UnmanagedProvenance:
    owner: str


@dataclass(frozen=True)
class ManagedProvenance:
    email: str
    expire_on: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expire_on < (now or _utc_now())


Provenance = Union[UnmanagedProvenance, ManagedProvenance]


@dataclass(frozen=True)
class AuthorizedKeyRecord:
    """A single authorized key; equality ignores who added it and when it expires."""

    posix_username: str
    key_type: str
    public_key: str
    provenance: Provenance = field(compare=False)

    @classmethod
    def managed(
        cls,
        posix_username: str,
        key_type: str,
        public_key: str,
        *,
        email: str,
        expire_on: datetime,
    ) -> "AuthorizedKeyRecord":
        return cls(posix_username, key_type, public_key, ManagedProvenance(email, expire_on))

    @classmethod
    def parse(cls, line: str) -> "AuthorizedKeyRecord":
        text = line.strip()
        username, separator, remainder = text.partition(":")
        if not separator:
            raise KeyFormatError.for_excerpt("Authorized key", text)

        parts = remainder.split(None, 2)
        if len(parts) < 2:
            raise KeyFormatError.for_excerpt("Authorized key", text)
        key_type, public_key = parts[0], parts[1]
        trailer = parts[2].strip() if len(parts) > 2 else ""

        token, _, payload = trailer.partition(" ")
        if token != MANAGED_KEY_TOKEN:
            return cls(username, key_type, public_key, UnmanagedProvenance(trailer))

        try:
            metadata = json.loads(payload)
            email = metadata["userName"]
            expire_on = parse_expire_on(metadata["expireOn"])
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise KeyFormatError.for_excerpt("Managed authorized key", text) from exc
        if not isinstance(email, str):
            raise KeyFormatError.for_excerpt("Managed authorized key", text)
        return cls(username, key_type, public_key, ManagedProvenance(email, expire_on))

    @classmethod
    def try_parse(cls, line: str) -> Optional["AuthorizedKeyRecord"]:
        try:
            return cls.parse(line)
        except KeyFormatError:
            return None

    @property
    def is_managed(self) -> bool:
        return isinstance(self.provenance, ManagedProvenance)

    @property
    def email(self) -> Optional[str]:
        if isinstance(self.provenance, ManagedProvenance):
            return self.provenance.email
        return None

    @property
    def expire_on(self) -> Optional[datetime]:
        if isinstance(self.provenance, ManagedProvenance):
            return self.provenance.expire_on
        return None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if isinstance(self.provenance, ManagedProvenance):
            return self.provenance.is_expired(now)
        return False

    def serialize(self) -> str:
        prefix = f"{self.posix_username}:{self.key_type} {self.public_key}"
        provenance = self.provenance
        if isinstance(provenance, ManagedProvenance):
            payload = json.dumps(
                {"userName": provenance.email, "expireOn": format_expire_on(provenance.expire_on)},
                separators=(",", ":"),
            )
            return f"{prefix} {MANAGED_KEY_TOKEN} {payload}"
        if provenance.owner:
            return f"{prefix} {provenance.owner}"
        return prefix

    def __str__(self) -> str:
        return self.serialize()


_Item = Union[AuthorizedKeyRecord, str]


def _outlives(candidate: AuthorizedKeyRecord, current: AuthorizedKeyRecord) -> bool:
    if current.expire_on is None:
        return False
    if candidate.expire_on is None:
        return True
    return candidate.expire_on > current.expire_on


class AuthorizedKeySet:
    """Ordered, duplicate-free collection of authorized keys.

    Sets are immutable; every mutating operation returns a new set, or the same
    set when nothing changed.
    """

    def __init__(self, items: Iterable[_Item] = ()) -> None:
        self._items: tuple[_Item, ...] = tuple(items)

    @classmethod
    def from_value(cls, value: Optional[str]) -> "AuthorizedKeySet":
        items: list[_Item] = []
        positions: dict[AuthorizedKeyRecord, int] = {}
        for raw_line in (value or "").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            record = AuthorizedKeyRecord.try_parse(line)
            if record is None:
                items.append(line)
            elif record not in positions:
                positions[record] = len(items)
                items.append(record)
            else:
                # Equal lines collapse onto the first position, keeping the
                # provenance that survives longest.
                index = positions[record]
                current = items[index]
                if isinstance(current, AuthorizedKeyRecord) and _outlives(record, current):
                    items[index] = record
        return cls(items)

    @classmethod
    def from_metadata(cls, metadata: Optional[Metadata]) -> "AuthorizedKeySet":
        if metadata is None:
            return cls()
        return cls.from_value(metadata.get(METADATA_KEY))

    @classmethod
    def from_metadata_item(cls, item: MetadataItem) -> "AuthorizedKeySet":
        if item.key != METADATA_KEY:
            raise ValueError(f"metadata item {item.key!r} does not contain authorized keys")
        return cls.from_value(item.value)

    @property
    def keys(self) -> list[AuthorizedKeyRecord]:
        return [item for item in self._items if isinstance(item, AuthorizedKeyRecord)]

    @property
    def items(self) -> tuple[_Item, ...]:
        return self._items

    def __iter__(self) -> Iterator[AuthorizedKeyRecord]:
        return iter(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __contains__(self, record: object) -> bool:
        return any(item == record for item in self._items if isinstance(item, AuthorizedKeyRecord))

    def add(self, record: AuthorizedKeyRecord) -> "AuthorizedKeySet":
        if record in self:
            return self
        return AuthorizedKeySet(self._items + (record,))

    def remove(self, record: AuthorizedKeyRecord) -> "AuthorizedKeySet":
        if record not in self:
            return self
        return AuthorizedKeySet(
            item for item in self._items if not (isinstance(item, AuthorizedKeyRecord) and item == record)
        )

    def remove_expired(self, now: Optional[datetime] = None) -> "AuthorizedKeySet":
        now = now or _utc_now()
        kept = [
            item for item in self._items if not (isinstance(item, AuthorizedKeyRecord) and item.is_expired(now))
        ]
        if len(kept) == len(self._items):
            return self
        return AuthorizedKeySet(kept)

    def to_value(self) -> str:
        lines = (item.serialize() if isinstance(item, AuthorizedKeyRecord) else item for item in self._items)
        return "\n".join(line for line in lines if line)

    def apply_to(self, metadata: Metadata) -> Metadata:
        """Return a copy of ``metadata`` with this set stored under ``ssh-keys``."""
        return metadata.with_item(METADATA_KEY, self.to_value())

    def __str__(self) -> str:
        return self.to_value()

    def __repr__(self) -> str:
        return f"AuthorizedKeySet(keys={len(self)}, items={len(self._items)})"
