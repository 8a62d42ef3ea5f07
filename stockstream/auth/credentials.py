"""Bearer credential lifecycle: store, read, expire, clear.

The CredentialStore owns exactly two storage entries (encoded token and
encoded user profile). It never raises: corrupt or undecodable entries
read as "no credential", and write failures are logged and reported via
the boolean return value.

Expiry is judged from the token's own `exp` claim plus a fixed validity
window (24h by default). A token whose claims cannot be parsed is treated
as NOT expired.

Usage:
    from stockstream.auth.credentials import CredentialStore
    from stockstream.auth.storage import FileStorage

    store = CredentialStore(FileStorage(settings.credential_path))
    store.set_credential(token, {"username": "asha"})
    if store.has_credential() and not store.is_expired():
        credential = store.get_credential()
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from collections.abc import Callable
from typing import Any

from cryptography.fernet import InvalidToken
from pydantic import ValidationError

from stockstream.auth.storage import KeyValueStorage
from stockstream.common.encryption import decode_value, encode_value
from stockstream.common.logging import get_logger
from stockstream.models import Credential, UserRef

logger = get_logger("AUTH")

TOKEN_KEY = "stock_market_token"
USER_KEY = "stock_market_user"
DEFAULT_VALIDITY_SECONDS = 24 * 60 * 60

_DECODE_ERRORS = (InvalidToken, ValueError, TypeError)


def _token_claims(token: str) -> dict[str, Any]:
    """Decode the payload segment of a dotted `header.payload.sig` token.

    Raises:
        ValueError: If the token is not dotted or the payload is not a JSON object.
    """
    parts = token.split(".")
    if len(parts) < 2:
        raise ValueError("token has no claims segment")
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode()))
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError("claims segment is not base64 JSON") from exc
    if not isinstance(payload, dict):
        raise ValueError("claims segment is not an object")
    return payload


class CredentialStore:
    """Owns the bearer credential and cached user profile.

    Args:
        storage: Persistent key/value backend.
        encryption_key: Optional Fernet key; defaults to Settings.encryption_key.
        validity_seconds: Window added to the `exp` claim before the token
            counts as expired.
        clock: Returns the current UNIX time in seconds (injectable for tests).
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        encryption_key: str | None = None,
        validity_seconds: float = DEFAULT_VALIDITY_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self._key = encryption_key
        self.validity_seconds = validity_seconds
        self._clock = clock

    # ─── Write ───

    def set_credential(self, token: str, user: UserRef | dict | None = None) -> bool:
        """Persist the token and user profile, overwriting prior values.

        Returns:
            True if both entries were written, False otherwise.
        """
        if isinstance(user, UserRef):
            user_data = user.model_dump(by_alias=True, exclude_none=True)
        else:
            user_data = user or {}

        try:
            self.storage.set(TOKEN_KEY, encode_value(token, self._key))
            self.storage.set(USER_KEY, encode_value(user_data, self._key))
        except Exception as exc:
            logger.error(
                "Failed to store credential",
                extra={"data": {"error": type(exc).__name__}},
            )
            return False

        logger.info(
            "Credential stored",
            extra={"data": {"username": user_data.get("username")}},
        )
        return True

    def set_user(self, user: UserRef | dict) -> bool:
        """Refresh the cached profile without touching the token."""
        if isinstance(user, UserRef):
            user = user.model_dump(by_alias=True, exclude_none=True)
        try:
            self.storage.set(USER_KEY, encode_value(user, self._key))
        except Exception as exc:
            logger.error(
                "Failed to store user profile",
                extra={"data": {"error": type(exc).__name__}},
            )
            return False
        return True

    def clear(self) -> bool:
        """Remove both entries. Safe to call repeatedly."""
        try:
            self.storage.remove(TOKEN_KEY)
            self.storage.remove(USER_KEY)
        except Exception as exc:
            logger.error(
                "Failed to clear credential",
                extra={"data": {"error": type(exc).__name__}},
            )
            return False
        logger.info("Credential cleared")
        return True

    # ─── Read ───

    def _read(self, key: str) -> Any:
        try:
            raw = self.storage.get(key)
        except Exception as exc:
            logger.warning(
                "Credential storage read failed",
                extra={"data": {"entry": key, "error": type(exc).__name__}},
            )
            return None
        if raw is None:
            return None
        try:
            return decode_value(raw, self._key)
        except _DECODE_ERRORS:
            logger.warning(
                "Stored credential entry is corrupt, treating as absent",
                extra={"data": {"entry": key}},
            )
            return None

    def get_token(self) -> str | None:
        token = self._read(TOKEN_KEY)
        if isinstance(token, str) and token:
            return token
        return None

    def get_user(self) -> UserRef | None:
        data = self._read(USER_KEY)
        if not isinstance(data, dict):
            return None
        try:
            return UserRef.model_validate(data)
        except ValidationError:
            return None

    def get_credential(self) -> Credential | None:
        """Return the stored credential, or None if absent or undecodable."""
        token = self.get_token()
        if token is None:
            return None
        return Credential(token=token, user=self.get_user())

    def has_credential(self) -> bool:
        return self.get_token() is not None

    # ─── Expiry ───

    def token_age(self) -> float | None:
        """Seconds elapsed since the token's `exp` claim.

        Returns:
            None if there is no credential, 0.0 if the claims cannot be
            parsed or carry no numeric `exp`, otherwise now - exp.
        """
        token = self.get_token()
        if token is None:
            return None
        try:
            claims = _token_claims(token)
        except ValueError:
            return 0.0
        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return 0.0
        return self._clock() - float(exp)

    def is_expired(self) -> bool:
        """True when no credential exists or exp + validity window has passed.

        Unparseable tokens are reported as not expired.
        """
        age = self.token_age()
        if age is None:
            return True
        return age > self.validity_seconds
