"""API key generation, hashing and the credential store contract."""

import hashlib
import secrets
from typing import Protocol

from apigate.models.client import Client

API_KEY_PREFIX = "agk_"


def generate_api_key() -> str:
    """Return a new raw API key. Shown once to the operator, never stored."""
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def hash_api_key(raw_key: str) -> str:
    """One-way SHA-256 hex digest used as the lookup key for clients."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


class CredentialStore(Protocol):
    """Looks up clients by hashed API key.

    Implementations raise ``CredentialStoreError`` when the backend is
    unreachable and return None when no client matches.
    """

    async def find_by_hashed_key(self, key_hash: str) -> Client | None: ...
