"""Encryption helpers for carrier and marketplace secrets stored in the database.

Values are AES-GCM encrypted with a key derived from the application secret
and stored as::

    ENC:v1:<base64(nonce || ciphertext || tag)>

``decrypt`` passes through anything without the prefix, so rows written
before encryption was enabled keep working until they are rewritten.
Passwords never go through here; they are hashed in ``services.auth``.
"""

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from prepfox.config import settings
from prepfox.utils.logger import logger


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM
_KEY_SIZE = 32


def _get_key() -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"prepfox-credential-encryption",
    )
    return hkdf.derive(settings.secret_key.encode("utf-8"))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a string; ``None`` stays ``None``."""

    if plaintext is None:
        return None
    if not isinstance(plaintext, str):
        plaintext = str(plaintext)

    nonce = os.urandom(_NONCE_SIZE)
    ct = AESGCM(_get_key()).encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)
    return _PREFIX + base64.b64encode(nonce + ct).decode("ascii")


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt`.

    Legacy plain-text values and blobs that fail to decrypt are returned
    unchanged; failures are logged.
    """

    if value is None or not is_encrypted(value):
        return value

    try:
        raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"))
        if len(raw) <= _NONCE_SIZE:
            return value
        nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        return AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None).decode("utf-8")
    except (InvalidTag, ValueError) as e:
        logger.error(f"Crypto decryption failed: {type(e).__name__}: {e}")
        return value
