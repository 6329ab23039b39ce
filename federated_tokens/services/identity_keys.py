"""Derivation of local user keys from provider profile identifiers."""

from __future__ import annotations

import hashlib
import re

from federated_tokens.core.config import MAX_PROVIDER_ID_LENGTH

MAX_LOCAL_KEY_LENGTH = 64

_HANDLE_PATTERN = re.compile(r"[a-zA-Z0-9_.@-]+")


def derive_local_user_key(identifier: str, provider_id: str) -> str:
    """Build the local user key for a profile ``identifier``.

    The last path component of the identifier becomes the handle; handles
    that would make the key too long or contain characters outside
    ``[a-zA-Z0-9_.@-]`` are replaced by their MD5 hex digest. Provider ids
    longer than ``MAX_PROVIDER_ID_LENGTH`` raise ``ValueError`` because even
    a hashed key could not stay within ``MAX_LOCAL_KEY_LENGTH``.
    """
    if not provider_id or len(provider_id) > MAX_PROVIDER_ID_LENGTH:
        raise ValueError(
            f"provider_id must be 1 to {MAX_PROVIDER_ID_LENGTH} characters, "
            f"got {provider_id!r}"
        )
    handle = identifier.rstrip("/").rsplit("/", 1)[-1]
    key = f"{provider_id}-{handle}"
    if len(key) > MAX_LOCAL_KEY_LENGTH or not _HANDLE_PATTERN.fullmatch(handle):
        digest = hashlib.md5(handle.encode("utf-8")).hexdigest()
        key = f"{provider_id}-{digest}"
    return key


__all__ = ["MAX_LOCAL_KEY_LENGTH", "MAX_PROVIDER_ID_LENGTH", "derive_local_user_key"]
