"""POSIX username validation and derivation."""

from __future__ import annotations

import re
from typing import Optional

from ..common.errors import CredentialValidationError

MAX_USERNAME_LENGTH = 32

_VALID_USERNAME = re.compile(r"^[a-z0-9][a-z0-9._-]{0,31}$", re.IGNORECASE)
_INVALID_CHARACTERS = re.compile(r"[^a-z0-9]")


def is_valid_username(username: Optional[str]) -> bool:
    if not username:
        return False
    return _VALID_USERNAME.fullmatch(username) is not None


def suggest_username(login: str) -> str:
    """Derive a POSIX username from a login name such as an email address.

    Only the local part of an email address is used. The result is lowercase,
    has every character other than ``[a-z0-9]`` replaced by ``_``, starts with
    a letter (``g`` is prepended otherwise) and is at most 32 characters long.
    """
    local_part = login.split("@", 1)[0].lower()
    username = _INVALID_CHARACTERS.sub("_", local_part)
    if not username or not username[0].isalpha():
        username = "g" + username
    return username[:MAX_USERNAME_LENGTH]


def resolve_username(preferred: Optional[str], login: str) -> str:
    """Return the validated preferred username, or one derived from ``login``."""
    if preferred is not None:
        if not is_valid_username(preferred):
            raise CredentialValidationError(f"{preferred!r} is not a valid POSIX username")
        return preferred
    return suggest_username(login)
