"""Symmetric encryption helpers.

Two independent constructions live here:

* :func:`encrypt_token` / :func:`decrypt_token` protect the upstream access
  token embedded in broker-issued JWTs.  AES-256-CBC with PKCS#7 padding, key =
  SHA-256 of the configured secret, a fresh 16-byte IV per call prepended to
  the ciphertext, standard base64 on the outside.
* :class:`StringCipher` reads (and writes) the shared-secret format the
  downstream API uses for the user identifiers it hands back to the resolver.

Signing is deliberately not done here; see
:mod:`mcp_token_broker.central_auth.tokens`.
"""

from __future__ import annotations

import base64
import binascii
import os
from hashlib import sha256
from typing import Final, Literal

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

_BLOCK_BYTES: Final[int] = 16


class DecryptionError(ValueError):
    """Ciphertext could not be decoded, decrypted or unpadded."""


def _aes_cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _aes_cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    if not ciphertext or len(ciphertext) % _BLOCK_BYTES:
        raise DecryptionError("ciphertext is not a whole number of blocks")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise DecryptionError("bad padding") from exc


# --------------------------------------------------------------------------- #
# Upstream token envelope                                                     #
# --------------------------------------------------------------------------- #
def derive_token_key(secret: str) -> bytes:
    """Return the 32-byte AES key for *secret*."""
    return sha256(secret.encode("utf-8")).digest()


def encrypt_token(plaintext: str, key: bytes) -> str:
    """Encrypt *plaintext* as ``base64(IV || AES-CBC(plaintext))``."""
    iv = os.urandom(_BLOCK_BYTES)
    ciphertext = _aes_cbc_encrypt(key, iv, plaintext.encode("utf-8"))
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_token(encoded: str, key: bytes) -> str:
    """Reverse :func:`encrypt_token`; raises :class:`DecryptionError`."""
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("invalid base64") from exc
    iv, ciphertext = raw[:_BLOCK_BYTES], raw[_BLOCK_BYTES:]
    if len(iv) != _BLOCK_BYTES:
        raise DecryptionError("payload too short")
    plaintext = _aes_cbc_decrypt(key, iv, ciphertext)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("plaintext is not UTF-8") from exc


# --------------------------------------------------------------------------- #
# Shared-secret identifiers                                                   #
# --------------------------------------------------------------------------- #
Strength = Literal["fast", "strong"]


class StringCipher:
    """PBKDF2 + AES-128-CBC string cipher shared with the downstream API.

    Wire format: an optional strength prefix followed by URL-safe base64
    (no padding) of ``salt(16) || iv(16) || ciphertext``.

    ======  ==================
    prefix  PBKDF2 iterations
    ======  ==================
    ``F-``  1
    ``S-``  1,000,000
    (none)  1,000 (legacy)
    ======  ==================
    """

    SALT_BYTES: Final[int] = 16
    KEY_BYTES: Final[int] = 16
    PREFIXES: Final[dict[str, int]] = {"F-": 1, "S-": 1_000_000}
    LEGACY_ITERATIONS: Final[int] = 1_000

    @classmethod
    def _derive(cls, passphrase: str, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=cls.KEY_BYTES,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    @staticmethod
    def _b64decode(text: str) -> bytes:
        padded = text + "=" * (-len(text) % 4)
        try:
            return base64.urlsafe_b64decode(padded.encode("ascii"))
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("invalid base64") from exc

    @classmethod
    def encrypt(cls, plaintext: str, passphrase: str, *, strength: Strength = "fast") -> str:
        prefix = "F-" if strength == "fast" else "S-"
        salt = os.urandom(cls.SALT_BYTES)
        iv = os.urandom(_BLOCK_BYTES)
        key = cls._derive(passphrase, salt, cls.PREFIXES[prefix])
        ciphertext = _aes_cbc_encrypt(key, iv, plaintext.encode("utf-8"))
        body = base64.urlsafe_b64encode(salt + iv + ciphertext).rstrip(b"=").decode("ascii")
        return prefix + body

    @classmethod
    def decrypt(cls, text: str, passphrase: str) -> str:
        """Decrypt *text*; raises :class:`DecryptionError` on any failure."""
        if not text or not passphrase:
            raise DecryptionError("nothing to decrypt")
        iterations = cls.LEGACY_ITERATIONS
        for prefix, count in cls.PREFIXES.items():
            if text.startswith(prefix):
                text, iterations = text[len(prefix) :], count
                break

        raw = cls._b64decode(text)
        header = cls.SALT_BYTES + _BLOCK_BYTES
        if len(raw) <= header:
            raise DecryptionError("payload too short")
        salt, iv, ciphertext = raw[: cls.SALT_BYTES], raw[cls.SALT_BYTES : header], raw[header:]
        key = cls._derive(passphrase, salt, iterations)
        try:
            return _aes_cbc_decrypt(key, iv, ciphertext).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("plaintext is not UTF-8") from exc
