"""API key generation, hashing and preview utilities."""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from enum import StrEnum

KEY_BYTES = 32
PREVIEW_CHARS = 4


class KeyKind(StrEnum):
    """Credential class. The value is the human-visible key prefix."""

    LIVE = "wo_live_"
    INTEGRATION = "wo_int_"


@dataclass(frozen=True)
class GeneratedKey:
    """Freshly generated credential.

    ``plain_key`` is shown to the caller exactly once and never stored.
    """

    kind: KeyKind
    plain_key: str
    key_hash: str
    key_preview: str


def generate_key(kind: KeyKind = KeyKind.LIVE) -> GeneratedKey:
    """Generate a new key of the given kind.

    The payload is 32 bytes (256 bits) from ``secrets``, base64url
    encoded without padding.

    Args:
        kind: ``KeyKind.LIVE`` for business keys, ``KeyKind.INTEGRATION``
            for platform integrations.

    Returns:
        GeneratedKey with plaintext, SHA-256 hash and preview.
    """
    payload = (
        base64.urlsafe_b64encode(secrets.token_bytes(KEY_BYTES)).rstrip(b"=").decode()
    )
    plain_key = f"{kind}{payload}"
    return GeneratedKey(
        kind=kind,
        plain_key=plain_key,
        key_hash=hash_key(plain_key),
        key_preview=make_preview(plain_key),
    )


def hash_key(plain_key: str) -> str:
    """Hash a key for storage and lookup.

    Args:
        plain_key: The full key string, prefix included.

    Returns:
        SHA-256 hex digest of the key.
    """
    return hashlib.sha256(plain_key.encode()).hexdigest()


def make_preview(plain_key: str) -> str:
    """Build the display form, e.g. ``wo_live_AbC1...xY9z``."""
    kind = detect_kind(plain_key)
    prefix = str(kind) if kind is not None else ""
    payload = plain_key[len(prefix) :]
    if len(payload) <= PREVIEW_CHARS * 2:
        return f"{prefix}...{payload[-PREVIEW_CHARS:]}"
    return f"{prefix}{payload[:PREVIEW_CHARS]}...{payload[-PREVIEW_CHARS:]}"


def detect_kind(key: str) -> KeyKind | None:
    """Classify a presented key by its prefix, ``None`` if unrecognized."""
    for kind in KeyKind:
        if key.startswith(kind.value) and len(key) > len(kind.value):
            return kind
    return None
