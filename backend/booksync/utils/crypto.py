"""Encryption helpers for the stored accounting API credentials.

:func:`encrypt` and :func:`decrypt` wrap AES-GCM with a key derived from
``settings.encryption_key``. Ciphertexts are versioned and prefixed:

    ENC:v1:<base64(nonce || ciphertext || tag)>

``decrypt`` passes through values without the prefix so rows written before
encryption was enabled keep working. A value that carries the prefix but fails
authentication is logged and returned unchanged; the OAuth server will then
reject it and the operator is asked to reconnect.
"""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from booksync.config import settings


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12
_KEY_SIZE = 32


def _get_key() -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"booksync-credential-encryption",
    )
    return hkdf.derive(settings.encryption_key.encode("utf-8"))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a string value. ``None`` stays ``None``."""

    if plaintext is None:
        return None
    if not isinstance(plaintext, str):
        plaintext = str(plaintext)

    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(_NONCE_SIZE)
    ct = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)
    return _PREFIX + base64.b64encode(nonce + ct).decode("ascii")


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt`, passing through plain text."""

    if value is None:
        return None
    if not is_encrypted(value):
        return value

    try:
        raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"))
        if len(raw) <= _NONCE_SIZE:
            return value
        nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        return AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None).decode("utf-8")
    except Exception as e:
        from booksync.utils.logger import logger
        logger.error("[crypto] decryption failed: %s: %s", type(e).__name__, e)
        return value
