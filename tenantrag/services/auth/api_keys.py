from __future__ import annotations

from dataclasses import dataclass
import hashlib
import secrets
from uuid import uuid4


API_KEY_PREFIX = "trk"
# Stored prefix length; enough to recognise a key in listings without revealing the secret.
KEY_PREFIX_CHARS = 12


@dataclass(frozen=True)
class KeyMaterial:
    """A freshly generated key; ``raw_key`` is shown once and never stored."""

    key_id: str
    raw_key: str
    key_prefix: str
    key_hash: str


def hash_api_key(raw_key: str) -> str:
    # Only the digest is persisted; lookups hash the presented key the same way.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> KeyMaterial:
    # Format: trk_<key id>_<secret>, so operators can map a leaked key to its record.
    resolved_id = key_id or uuid4().hex
    raw_key = f"{API_KEY_PREFIX}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return KeyMaterial(
        key_id=resolved_id,
        raw_key=raw_key,
        key_prefix=raw_key[:KEY_PREFIX_CHARS],
        key_hash=hash_api_key(raw_key),
    )


def key_id_from_raw(raw_key: str) -> str | None:
    # Seeded or hand-made keys may not follow the format; those have no embedded id.
    prefix, sep, rest = raw_key.partition("_")
    if prefix != API_KEY_PREFIX or not sep:
        return None
    # The secret is urlsafe base64 and may itself contain underscores; the id never does.
    key_id, sep, secret = rest.partition("_")
    if not sep or not key_id or not secret:
        return None
    return key_id
