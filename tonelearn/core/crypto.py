"""Symmetric encryption for stored provider credentials.

AES-256-GCM with a PBKDF2-HMAC-SHA256 derived key. The serialized form is
``salt:iv:tag:ciphertext`` with each part base64 encoded, so a fresh salt
and IV travel with every value.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from tonelearn.core.config import settings
from tonelearn.core.exceptions import EncryptionError, ValidationError

logger = logging.getLogger(__name__)

_SALT_LENGTH = 32
_IV_LENGTH = 16
_TAG_LENGTH = 16
_KEY_LENGTH = 32
_PBKDF2_ITERATIONS = 100_000


def _resolve_key(key: str | None) -> str:
    secret = key if key is not None else settings.ENCRYPTION_KEY.get_secret_value()
    if not secret:
        raise ValidationError("ENCRYPTION_KEY is not configured", field="ENCRYPTION_KEY")
    return secret


def _derive_key(secret: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH,
        salt=salt,
        iterations=_PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt_secret(plaintext: str, key: str | None = None) -> str:
    """Encrypt a string for storage.

    Args:
        plaintext: Value to encrypt. May be empty.
        key: Passphrase. Defaults to ``ENCRYPTION_KEY``.

    Returns:
        ``salt:iv:tag:ciphertext`` in base64.

    Raises:
        ValidationError: If no key is configured.
    """
    secret = _resolve_key(key)
    salt = os.urandom(_SALT_LENGTH)
    iv = os.urandom(_IV_LENGTH)
    sealed = AESGCM(_derive_key(secret, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
    return ":".join(
        base64.b64encode(part).decode("ascii") for part in (salt, iv, tag, ciphertext)
    )


def decrypt_secret(encrypted: str, key: str | None = None) -> str:
    """Decrypt a value produced by :func:`encrypt_secret`.

    Args:
        encrypted: Serialized ``salt:iv:tag:ciphertext`` string.
        key: Passphrase. Defaults to ``ENCRYPTION_KEY``.

    Returns:
        The original plaintext.

    Raises:
        ValidationError: If no key is configured.
        EncryptionError: If the value is malformed, was tampered with, or
            the key is wrong.
    """
    secret = _resolve_key(key)
    parts = encrypted.split(":") if encrypted else []
    if len(parts) != 4:
        raise EncryptionError("Invalid encrypted data format")

    try:
        salt, iv, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError("Invalid encrypted data encoding") from e

    if len(salt) != _SALT_LENGTH or len(iv) != _IV_LENGTH or len(tag) != _TAG_LENGTH:
        raise EncryptionError("Invalid encrypted data format")

    try:
        plaintext = AESGCM(_derive_key(secret, salt)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        logger.warning("Credential decryption failed: authentication tag mismatch")
        raise EncryptionError() from e

    return plaintext.decode("utf-8")
