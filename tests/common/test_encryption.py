"""Tests for the Fernet credential encoding helpers."""

from __future__ import annotations

import json

import pytest
from cryptography.fernet import Fernet, InvalidToken

from stockstream.common.encryption import decode_value, encode_value


class TestEncoding:
    """Test encode/decode of stored credential entries."""

    def test_roundtrip_token_string(self):
        """A bearer token survives encode then decode."""
        original = "header.payload.signature"
        assert decode_value(encode_value(original)) == original

    def test_roundtrip_profile_dict(self):
        """A user profile dict survives encode then decode."""
        profile = {"_id": "u1", "username": "asha", "email": "asha@example.com"}
        assert decode_value(encode_value(profile)) == profile

    def test_same_input_produces_different_ciphertexts(self):
        """Fernet includes a timestamp and IV, so output differs each time."""
        assert encode_value("same-token") != encode_value("same-token")

    def test_encoded_is_not_plaintext(self):
        """The stored string does not contain the token."""
        encoded = encode_value("my-secret-token")
        assert "my-secret-token" not in encoded

    def test_explicit_key(self):
        """A caller-supplied key is used for both directions."""
        key = Fernet.generate_key().decode()
        encoded = encode_value({"a": 1}, key=key)
        assert decode_value(encoded, key=key) == {"a": 1}


class TestDecodingFailures:
    """Test that corrupt entries raise the documented errors."""

    def test_wrong_key_raises_invalid_token(self):
        """Ciphertext from another key is rejected."""
        other = Fernet.generate_key().decode()
        encoded = encode_value("token", key=other)
        with pytest.raises(InvalidToken):
            decode_value(encoded)

    def test_garbage_raises_invalid_token(self):
        """Non-Fernet text is rejected."""
        with pytest.raises(InvalidToken):
            decode_value("definitely-not-fernet")

    def test_non_json_payload_raises(self):
        """Valid ciphertext over a non-JSON payload raises JSONDecodeError."""
        key = Fernet.generate_key()
        ciphertext = Fernet(key).encrypt(b"not json").decode()
        with pytest.raises(json.JSONDecodeError):
            decode_value(ciphertext, key=key.decode())
