"""AES-256-GCM encryption for the encrypted-file credential backend.

Blob format (base64-encoded):

    salt (64 bytes) || iv (16 bytes) || auth tag (16 bytes) || ciphertext

The key is derived with PBKDF2-HMAC-SHA256 from host-identifying material
(hostname, platform, architecture, home directory). The PBKDF2 salt is
SHA-256 of a fixed application constant followed by the blob's random
salt, so every write uses a fresh key and a fresh IV. A blob only
decrypts on the host that wrote it.

Blobs written by older releases were plain base64 of the token. Those are
recognized by decode_legacy_secret() so the caller can re-encrypt them.
"""

from __future__ import annotations

__all__ = [
    "decode_legacy_secret",
    "decrypt_secret",
    "derive_key",
    "encrypt_secret",
    "get_host_key_material",
]

import base64
import binascii
import hashlib
import os
import platform
import re
import socket
import sys
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from repochief.constants import (
    APP_KEY_SALT,
    ENCRYPTION_HEADER_LENGTH,
    ENCRYPTION_IV_LENGTH,
    ENCRYPTION_KEY_LENGTH,
    ENCRYPTION_SALT_LENGTH,
    ENCRYPTION_TAG_LENGTH,
    PBKDF2_ITERATIONS,
)
from repochief.exceptions import DecryptionError, InvalidCiphertextError

# Shapes of tokens written unencrypted by older releases:
# personal access tokens ("sbp_...") and dot-separated JWT-like tokens
_LEGACY_TOKEN_PATTERN = re.compile(r"^(sbp_[A-Za-z0-9_\-]+|[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)+)$")

_APP_SALT_DIGEST = hashlib.sha256(APP_KEY_SALT).digest()


def get_host_key_material() -> str:
    """Host-identifying string the encryption key is derived from.

    Returns:
        "{hostname}-{platform}-{arch}-{home}".
    """
    return f"{socket.gethostname()}-{sys.platform}-{platform.machine()}-{Path.home()}"


def derive_key(salt: bytes, material: str | None = None) -> bytes:
    """Derive the 256-bit AES key for one blob.

    Args:
        salt: The blob's random salt.
        material: Host key material. Defaults to get_host_key_material().

    Returns:
        32-byte key.
    """
    if material is None:
        material = get_host_key_material()
    return hashlib.pbkdf2_hmac(
        "sha256",
        material.encode("utf-8"),
        _APP_SALT_DIGEST + salt,
        iterations=PBKDF2_ITERATIONS,
        dklen=ENCRYPTION_KEY_LENGTH,
    )


def encrypt_secret(plaintext: str, material: str | None = None) -> str:
    """Encrypt a secret into a base64 blob.

    Args:
        plaintext: Secret to encrypt.
        material: Host key material override (tests).

    Returns:
        base64(salt || iv || tag || ciphertext).
    """
    salt = os.urandom(ENCRYPTION_SALT_LENGTH)
    iv = os.urandom(ENCRYPTION_IV_LENGTH)
    key = derive_key(salt, material)

    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-ENCRYPTION_TAG_LENGTH], sealed[-ENCRYPTION_TAG_LENGTH:]

    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def decrypt_secret(blob: str, material: str | None = None) -> str:
    """Decrypt a blob produced by encrypt_secret().

    Args:
        blob: base64-encoded blob.
        material: Host key material override (tests).

    Returns:
        The plaintext secret.

    Raises:
        InvalidCiphertextError: If the blob is not base64 or shorter than the header.
        DecryptionError: If authentication fails (other host, tampering).
    """
    try:
        data = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidCiphertextError("Stored credential is not valid base64") from e

    if len(data) < ENCRYPTION_HEADER_LENGTH:
        raise InvalidCiphertextError(
            f"Stored credential is truncated ({len(data)} bytes, "
            f"expected at least {ENCRYPTION_HEADER_LENGTH})"
        )

    salt = data[:ENCRYPTION_SALT_LENGTH]
    iv = data[ENCRYPTION_SALT_LENGTH : ENCRYPTION_SALT_LENGTH + ENCRYPTION_IV_LENGTH]
    tag = data[ENCRYPTION_SALT_LENGTH + ENCRYPTION_IV_LENGTH : ENCRYPTION_HEADER_LENGTH]
    ciphertext = data[ENCRYPTION_HEADER_LENGTH:]

    key = derive_key(salt, material)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise DecryptionError(
            "Failed to decrypt stored credential (written on another host or corrupted)"
        ) from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted credential is not valid UTF-8") from e


def decode_legacy_secret(blob: str) -> str | None:
    """Interpret a blob as a legacy base64-obfuscated token.

    Args:
        blob: Stored value that failed to decrypt.

    Returns:
        The token if the decoded value has a known token shape, else None.
    """
    try:
        decoded = base64.b64decode(blob, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        # UnicodeDecodeError is a ValueError
        return None

    if _LEGACY_TOKEN_PATTERN.match(decoded):
        return decoded
    return None
