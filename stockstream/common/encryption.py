"""Fernet encoding helpers for storing the credential at rest.

Uses Fernet symmetric encryption (AES-128-CBC + HMAC-SHA256).
The bearer token and user profile are JSON-serialized, encrypted, and
written to local storage; they are decrypted only in memory.

Usage:
    from stockstream.common.encryption import encode_value, decode_value

    stored = encode_value({"id": "u1", "username": "asha"})
    profile = decode_value(stored)
"""

from __future__ import annotations

import json
from typing import Any

from cryptography.fernet import Fernet

from stockstream.common.config import get_settings


def _get_fernet(key: str | None = None) -> Fernet:
    """Create a Fernet instance from the given key or the app encryption key."""
    if key is None:
        key = get_settings().encryption_key
    return Fernet(key.encode())


def encode_value(value: Any, key: str | None = None) -> str:
    """Serialize and encrypt a JSON-compatible value for local storage.

    Args:
        value: Any JSON-serializable value (token string, profile dict).
        key: Optional Fernet key; defaults to Settings.encryption_key.

    Returns:
        URL-safe base64 ciphertext string.
    """
    f = _get_fernet(key)
    return f.encrypt(json.dumps(value).encode()).decode()


def decode_value(ciphertext: str, key: str | None = None) -> Any:
    """Decrypt and deserialize a value written by encode_value.

    Args:
        ciphertext: The encrypted string from storage.
        key: Optional Fernet key; defaults to Settings.encryption_key.

    Returns:
        The original JSON value.

    Raises:
        cryptography.fernet.InvalidToken: If the ciphertext is invalid or
            was encrypted with a different key.
        json.JSONDecodeError: If the decrypted payload is not JSON.
    """
    f = _get_fernet(key)
    return json.loads(f.decrypt(ciphertext.encode()).decode())
