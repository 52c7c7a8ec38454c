"""Fernet encryption for platform access credentials stored at rest.

The Fernet key is derived from SECRET_KEY via PBKDF2 and cached per-process.
Installation rows keep the Whop access token only in encrypted form.
"""

import base64
import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Changing the salt invalidates every stored access token.
_KDF_SALT = b"whoplytics-installation-token-v1"
_KDF_ITERATIONS = 480_000

# Fernet token prefix (base64-encoded version byte 0x80)
FERNET_PREFIX = "gAAAAA"


def _derive_key(secret: str) -> bytes:
    """Derive a 32-byte Fernet key from *secret* using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


# NOTE: a new SECRET_KEY is only picked up after a process restart.
@lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    """Return a process-cached Fernet instance keyed from SECRET_KEY."""
    from ..config import get_settings

    return Fernet(_derive_key(get_settings().secret_key))


def encrypt_value(plaintext: str) -> str:
    """Encrypt *plaintext* and return the Fernet token as a string."""
    return get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_value(ciphertext: str) -> str:
    """Decrypt *ciphertext*.

    Rows written by provisioning scripts may still hold a plaintext token;
    anything that is not a Fernet token is returned unchanged.
    """
    if not ciphertext:
        return ciphertext
    try:
        return get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        if is_encrypted(ciphertext):
            # Looks like Fernet but was written under another key.
            logger.warning("Stored access token could not be decrypted with the current key")
        return ciphertext


def is_encrypted(value: Optional[str]) -> bool:
    """Check whether *value* looks like a Fernet token."""
    if not value:
        return False
    return value.startswith(FERNET_PREFIX)
