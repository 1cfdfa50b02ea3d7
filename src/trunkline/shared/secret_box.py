"""
Symmetric encryption of provider credentials at rest.

Payload format: ``v1.<base64url(nonce || tag || ciphertext)>`` using AES-256-GCM
with a 12-byte random nonce. Fingerprints are SHA-256 hex digests and are only
ever used for lookup and log correlation.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
VERSION_PREFIX = "v1"


class SecretBoxError(Exception):
    """Base class for vault failures."""


class KeyLengthInvalid(SecretBoxError):
    """The encryption key is not exactly 32 bytes."""


class InvalidPayload(SecretBoxError):
    """The payload is not a well-formed versioned ciphertext."""


class AuthenticationFailed(SecretBoxError):
    """The ciphertext does not authenticate under the given key."""


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise KeyLengthInvalid(f"Encryption key must be {KEY_LENGTH} bytes")


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def encrypt_bytes(plaintext: bytes, key: bytes) -> str:
    _check_key(key)
    nonce = os.urandom(NONCE_LENGTH)
    # AESGCM appends the tag to the ciphertext; the stored layout puts it first.
    sealed = AESGCM(bytes(key)).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{VERSION_PREFIX}.{_b64encode(nonce + tag + ciphertext)}"


def decrypt_bytes(payload: str, key: bytes) -> bytes:
    _check_key(key)
    if not isinstance(payload, str):
        raise InvalidPayload("Encrypted payload must be a string")

    parts = payload.split(".")
    if len(parts) != 2 or parts[0] != VERSION_PREFIX:
        raise InvalidPayload("Invalid encrypted payload format")

    try:
        data = _b64decode(parts[1])
    except (binascii.Error, ValueError) as e:
        raise InvalidPayload("Encrypted payload is not valid base64") from e

    if len(data) < NONCE_LENGTH + TAG_LENGTH:
        raise InvalidPayload("Encrypted payload too short")

    nonce = data[:NONCE_LENGTH]
    tag = data[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
    ciphertext = data[NONCE_LENGTH + TAG_LENGTH:]

    try:
        return AESGCM(bytes(key)).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as e:
        raise AuthenticationFailed("Encrypted payload failed authentication") from e


def encrypt_string(plaintext: str, key: bytes) -> str:
    """Encrypt a UTF-8 string with the vault key."""
    return encrypt_bytes(plaintext.encode("utf-8"), key)


def decrypt_string(payload: str, key: bytes) -> str:
    """Decrypt a payload produced by :func:`encrypt_string`."""
    raw = decrypt_bytes(payload, key)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidPayload("Decrypted payload is not valid UTF-8") from e


def fingerprint_secret(plaintext: str | bytes) -> str:
    """Stable one-way fingerprint (hex SHA-256) of a secret."""
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    return hashlib.sha256(data).hexdigest()


def decode_key(encoded: str) -> bytes:
    """Decode a base64 (standard or urlsafe) key and check its length."""
    try:
        raw = base64.b64decode(encoded.strip(), altchars=b"-_", validate=False)
    except (binascii.Error, ValueError) as e:
        raise KeyLengthInvalid("Encryption key is not valid base64") from e
    _check_key(raw)
    return raw
