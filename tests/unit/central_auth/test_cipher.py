"""Unit tests for the upstream-token envelope and StringCipher."""

from __future__ import annotations

import base64

import pytest

from mcp_token_broker.central_auth.cipher import (
    DecryptionError,
    StringCipher,
    decrypt_token,
    derive_token_key,
    encrypt_token,
)

KEY = derive_token_key("a-very-long-signing-secret-value-123")


@pytest.mark.parametrize("plaintext", ["", "x", "ya29." + "A" * 2048, "ünïcødé 🔑"])
def test_token_envelope_round_trip(plaintext: str) -> None:
    encoded = encrypt_token(plaintext, KEY)
    assert decrypt_token(encoded, KEY) == plaintext


def test_token_envelope_uses_fresh_iv() -> None:
    assert encrypt_token("same", KEY) != encrypt_token("same", KEY)
    raw = base64.b64decode(encrypt_token("same", KEY))
    assert len(raw) == 32  # iv + one block


def test_derived_key_is_aes256() -> None:
    assert len(KEY) == 32
    assert derive_token_key("a") != derive_token_key("b")


@pytest.mark.parametrize("bad", ["", "!!!", base64.b64encode(b"short").decode(), base64.b64encode(b"x" * 33).decode()])
def test_token_envelope_rejects_garbage(bad: str) -> None:
    with pytest.raises(DecryptionError):
        decrypt_token(bad, KEY)


@pytest.mark.parametrize("strength", ["fast", "strong"])
def test_string_cipher_round_trip(strength) -> None:
    text = StringCipher.encrypt("12345", "shared-secret", strength=strength)
    assert text.startswith("F-" if strength == "fast" else "S-")
    assert "=" not in text
    assert StringCipher.decrypt(text, "shared-secret") == "12345"


def test_string_cipher_empty_and_long_values() -> None:
    for value in ("", "9" * 5000):
        assert StringCipher.decrypt(StringCipher.encrypt(value, "pw"), "pw") == value


def test_string_cipher_legacy_format() -> None:
    # unprefixed payloads use 1,000 PBKDF2 iterations
    import os

    salt, iv = os.urandom(16), os.urandom(16)
    key = StringCipher._derive("pw", salt, StringCipher.LEGACY_ITERATIONS)  # type: ignore[attr-defined]
    from mcp_token_broker.central_auth.cipher import _aes_cbc_encrypt

    body = salt + iv + _aes_cbc_encrypt(key, iv, b"777")
    text = base64.urlsafe_b64encode(body).rstrip(b"=").decode()
    assert StringCipher.decrypt(text, "pw") == "777"


def test_string_cipher_wrong_passphrase_or_garbage() -> None:
    text = StringCipher.encrypt("12345", "right")
    with pytest.raises(DecryptionError):
        StringCipher.decrypt(text, "")
    with pytest.raises(DecryptionError):
        StringCipher.decrypt("F-" + "A" * 10, "right")
    with pytest.raises(DecryptionError):
        StringCipher.decrypt("", "right")
    try:
        assert StringCipher.decrypt(text, "wrong") != "12345"
    except DecryptionError:
        pass
